#!/usr/bin/env python3
"""
Terminal reports and PNG charts for analysis results.

Charts use matplotlib's Agg backend so they render headless (a Pi on the
quad, a CI box) with the same dark style as the terminal output.

Usage:
    from bf_report import print_filter_report, create_noise_chart

    print_filter_report(result)
    create_noise_chart(result, "noise.png")
"""

import textwrap

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from bf_constants import AXIS_NAMES

AXIS_COLORS = ["#FF6B6B", "#4ECDC4", "#FFD93D"]

R, B, C, G, Y, RED, DIM = "\033[0m", "\033[1m", "\033[96m", "\033[92m", "\033[93m", "\033[91m", "\033[2m"
CONFIDENCE_COLOR = {"high": G, "medium": Y, "low": DIM}
TIER_COLOR = {"excellent": G, "good": G, "fair": Y, "poor": RED}


# ─── Charts ───────────────────────────────────────────────────────────────────

def setup_dark_style():
    plt.rcParams.update({
        "figure.facecolor": "#1a1b26", "axes.facecolor": "#1a1b26",
        "axes.edgecolor": "#565f89", "axes.labelcolor": "#c0caf5",
        "text.color": "#c0caf5", "xtick.color": "#565f89", "ytick.color": "#565f89",
        "grid.color": "#24283b", "grid.alpha": 0.6, "font.size": 10,
        "axes.titlesize": 13, "axes.grid": True,
    })


def save_fig(fig, path, dpi=120):
    fig.savefig(path, format="png", dpi=dpi, bbox_inches="tight",
                facecolor=fig.get_facecolor(), edgecolor="none")
    plt.close(fig)
    return path


def create_noise_chart(result, path):
    """Per-axis gyro spectrum with the detected peaks marked."""
    setup_dark_style()
    noise = result["noise"]
    fig, axes = plt.subplots(1, 3, figsize=(16, 4.5), sharey=True)
    fig.suptitle(f"Gyro Noise Spectrum ({noise['level']} noise)", fontsize=14,
                 color="#c0caf5", fontweight="bold", y=1.02)
    for i, axis in enumerate(AXIS_NAMES):
        ax = axes[i]
        prof = noise[axis]
        f, db = prof["spectrum"]["freqs"], prof["spectrum"]["db"]
        ax.set_title(axis.capitalize(), color=AXIS_COLORS[i], fontweight="bold")
        ax.set_xlabel("Frequency (Hz)")
        if i == 0:
            ax.set_ylabel("Amplitude (dB)")
        if len(f) == 0:
            continue
        ax.plot(f, db, color=AXIS_COLORS[i], linewidth=1.2, alpha=0.9)
        ax.fill_between(f, db, np.min(db), alpha=0.15, color=AXIS_COLORS[i])
        ax.axhline(prof["noise_floor_db"], color="#565f89", linestyle=":", linewidth=0.8)
        for peak in prof["peaks"][:3]:
            ax.axvline(peak["frequency"], color="#ff9e64", alpha=0.6, linestyle="--", linewidth=0.8)
            ax.annotate(f"{peak['frequency']:.0f}Hz", xy=(peak["frequency"], peak["amplitude"]),
                        fontsize=8, color="#ff9e64", ha="center", va="bottom",
                        xytext=(0, 8), textcoords="offset points")
        ax.set_xlim(f[0], f[-1])
    fig.tight_layout()
    return save_fig(fig, path)


def create_step_chart(result, path, per_axis=3):
    """Largest step responses per axis, setpoint vs gyro."""
    setup_dark_style()
    axes_with = [a for a in AXIS_NAMES if result["axes"][a]["responses"]]
    if not axes_with:
        return None
    fig, axes = plt.subplots(len(axes_with), 1, figsize=(16, 3.5 * len(axes_with)))
    if len(axes_with) == 1:
        axes = [axes]
    fig.suptitle("Step Response: Setpoint vs Gyro", fontsize=14, color="#c0caf5",
                 fontweight="bold", y=1.01)
    for ax, name in zip(axes, axes_with):
        ci = AXIS_NAMES.index(name)
        prof = result["axes"][name]
        for k, resp in enumerate(prof["responses"][:per_axis]):
            tr = resp["trace"]
            ax.plot(tr["time_ms"], tr["setpoint"], color="#565f89", linewidth=1.5, alpha=0.8,
                    label="Setpoint" if k == 0 else None)
            ax.plot(tr["time_ms"], tr["gyro"], color=AXIS_COLORS[ci], linewidth=1.2,
                    alpha=0.9 - 0.2 * k, label="Gyro" if k == 0 else None)
        ax.set_title(f"{name.capitalize()}: overshoot {prof['mean_overshoot']:.1f}% | "
                     f"rise {prof['mean_rise_time_ms']:.0f}ms | "
                     f"settling {prof['mean_settling_time_ms']:.0f}ms",
                     color=AXIS_COLORS[ci], fontweight="bold", fontsize=11)
        ax.set_ylabel("deg/s")
        ax.legend(loc="upper right", fontsize=8, facecolor="#1a1b26", edgecolor="#565f89")
    axes[-1].set_xlabel("Time (ms)")
    fig.tight_layout()
    return save_fig(fig, path)


def create_bode_chart(chirp, path):
    """Magnitude, phase and coherence of the chirp transfer function."""
    setup_dark_style()
    entry = chirp["axes"][0]
    tf, m = entry["transfer_function"], entry["metrics"]
    ci = AXIS_NAMES.index(entry["axis"])
    f = tf["freqs"]
    keep = (f > 0) & (f <= 500)
    fig, (ax1, ax2, ax3) = plt.subplots(3, 1, figsize=(12, 9), sharex=True,
                                        gridspec_kw={"height_ratios": [2, 2, 1]})
    fig.suptitle(f"Closed-loop Response: {entry['axis'].capitalize()}", fontsize=14,
                 color="#c0caf5", fontweight="bold", y=1.01)
    with np.errstate(divide="ignore"):
        ax1.semilogx(f[keep], 20 * np.log10(tf["magnitude"][keep]), color=AXIS_COLORS[ci])
    ax1.axhline(-3, color="#565f89", linestyle=":", linewidth=0.8)
    ax1.axvline(m["bandwidth_hz"], color="#ff9e64", linestyle="--", linewidth=0.8)
    ax1.set_ylabel("Magnitude (dB)")
    ax1.set_title(f"Bandwidth {m['bandwidth_hz']:.0f} Hz | peak {m['peak_resonance']:.2f} "
                  f"@ {m['peak_resonance_hz']:.0f} Hz", fontsize=11)
    ax2.semilogx(f[keep], tf["phase"][keep], color=AXIS_COLORS[ci])
    ax2.axhline(-180, color="#565f89", linestyle=":", linewidth=0.8)
    ax2.set_ylabel("Phase (deg)")
    ax3.semilogx(f[keep], tf["coherence"][keep], color="#A78BFA")
    ax3.set_ylim(0, 1.05)
    ax3.set_ylabel("Coherence")
    ax3.set_xlabel("Frequency (Hz)")
    fig.tight_layout()
    return save_fig(fig, path)


# ─── Terminal ─────────────────────────────────────────────────────────────────

def _header(title):
    print(f"\n{B}{C}{'═' * 70}{R}")
    print(f"  {B}{title}{R}")
    print(f"{B}{C}{'═' * 70}{R}")


def _quality_line(dq):
    col = TIER_COLOR.get(dq["tier"], C)
    bar = "█" * (dq["overall"] // 5) + "░" * (20 - dq["overall"] // 5)
    print(f"  {B}DATA QUALITY: {col}{bar} {dq['overall']}/100 ({dq['tier']}){R}")


def _warnings(items):
    for w in items:
        col = RED if w["severity"] == "error" else Y
        for k, line in enumerate(textwrap.wrap(w["message"], width=64)):
            print(f"  {col}{'⚠' if k == 0 else ' '} {line}{R}")


def cli_commands(recs):
    return [f"set {r['setting']} = {r['recommended']}" for r in recs]


def _recommendations(recs):
    if not recs:
        print(f"\n  {G}No changes recommended.{R}")
        return
    print(f"\n  {B}RECOMMENDED CHANGES ({len(recs)}):{R}")
    for i, r in enumerate(recs, 1):
        col = CONFIDENCE_COLOR.get(r["confidence"], DIM)
        print(f"\n  {B}{C}{i}.{R} {B}{r['setting']}: {r['current']} → {r['recommended']}{R}"
              f"  {col}[{r['confidence']}]{R}")
        for line in textwrap.wrap(r["reason"], width=64):
            print(f"     {DIM}{line}{R}")
    print(f"\n  {B}CLI:{R}")
    for cmd in cli_commands(recs):
        print(f"    {G}{cmd}{R}")


def print_filter_report(result):
    _header("FILTER ANALYSIS")
    noise = result["noise"]
    _quality_line(result["data_quality"])
    _warnings(result["warnings"])
    print(f"\n  Segments used: {result['segments_used']}"
          f"{' (throttle sweeps)' if result.get('used_sweeps') else ''}")
    print(f"  Noise level:   {noise['level']}")
    for axis in AXIS_NAMES:
        prof = noise[axis]
        peaks = ", ".join(f"{p['frequency']:.0f}Hz {p['type']}" for p in prof["peaks"][:4])
        print(f"    {axis.capitalize():6s} floor {prof['noise_floor_db']:6.1f} dB"
              f"{'  peaks: ' + peaks if peaks else ''}")
    gd = result.get("group_delay")
    if gd:
        print(f"  Filter delay @{gd['reference_hz']}Hz: gyro {gd['gyro_total_ms']:.2f}ms, "
              f"D-term {gd['dterm_total_ms']:.2f}ms")
        if gd["warning"]:
            _warnings([{"severity": "warning", "message": gd["warning"]}])
    print()
    for line in textwrap.wrap(result["summary"], width=66):
        print(f"  {line}")
    _recommendations(result["recommendations"])
    print()


def print_pid_report(result):
    _header(f"PID ANALYSIS ({result['style']})")
    _quality_line(result["data_quality"])
    _warnings(result["warnings"])
    print(f"\n  Steps detected: {result['steps_detected']}")
    print(f"    {'Axis':6s} {'Steps':>5s} {'Overshoot':>10s} {'Rise':>8s} {'Settling':>9s} {'Latency':>8s}")
    for axis in AXIS_NAMES:
        p = result["axes"][axis]
        print(f"    {axis.capitalize():6s} {len(p['responses']):5d} {p['mean_overshoot']:9.1f}% "
              f"{p['mean_rise_time_ms']:6.0f}ms {p['mean_settling_time_ms']:7.0f}ms "
              f"{p['mean_latency_ms']:6.1f}ms")
    if result.get("flight_pids"):
        print(f"\n  {DIM}PIDs in log header:{R}")
        for axis in AXIS_NAMES:
            g = result["flight_pids"][axis]
            print(f"    {DIM}{axis.capitalize():6s} P={g['p']:>3}  I={g['i']:>3}  D={g['d']:>3}{R}")
    print()
    for line in textwrap.wrap(result["summary"], width=66):
        print(f"  {line}")
    _recommendations(result["recommendations"])
    print()


def print_chirp_report(chirp):
    _header("SYSTEM IDENTIFICATION (CHIRP)")
    if chirp is None:
        print("  No chirp excitation found in this log.\n")
        return
    meta = chirp["metadata"]
    print(f"  Source: {meta['source']}, {meta['duration']:.1f}s")
    _warnings([{"severity": "warning", "message": w} for w in chirp["warnings"]])
    for entry in chirp["axes"]:
        m = entry["metrics"]
        pm = f"{m['phase_margin_deg']:.0f}°" + ("" if m["phase_margin_measured"] else " (no crossover)")
        gm = f"{m['gain_margin_db']:.1f} dB" + ("" if m["gain_margin_measured"] else " (no crossover)")
        print(f"\n  {B}{entry['axis'].capitalize()}{R}  coherence {entry['mean_coherence']:.2f}")
        print(f"    Bandwidth (-3 dB): {m['bandwidth_hz']:.1f} Hz")
        print(f"    Peak resonance:    {m['peak_resonance']:.2f} @ {m['peak_resonance_hz']:.0f} Hz")
        print(f"    Phase margin:      {pm}")
        print(f"    Gain margin:       {gm}")
    print()


def print_session_status(session):
    if session is None:
        print("  No active tuning session.")
        return
    from bf_tuning import PHASES
    idx = PHASES.index(session["phase"])
    print(f"\n  {B}Tuning session{R} {DIM}{session['profile_id']}{R}")
    print(f"  Started {session['started_at'][:19]}, updated {session['updated_at'][:19]}")
    for k, phase in enumerate(PHASES):
        mark = f"{G}✓{R}" if k < idx else f"{C}▸{R}" if k == idx else f"{DIM}·{R}"
        print(f"    {mark} {phase}")
    print()


def print_history(records):
    if not records:
        print("  No completed tuning sessions.")
        return
    print(f"\n  {B}TUNING HISTORY ({len(records)}){R}")
    for rec in records:
        q = rec.get("tune_quality")
        score = f"{q['overall']}/100 {q['tier']}" if q else "no score"
        n = len(rec["applied_filter_changes"]) + len(rec["applied_pid_changes"]) \
            + len(rec["applied_feedforward_changes"])
        print(f"  {rec['completed_at'][:19]}  {rec['outcome']:9s}  {n:2d} change(s)  {score}")
    print()
