#!/usr/bin/env python3
"""
Data-quality scoring for analysis input.

A 0-100 score with a tier (excellent/good/fair/poor) is attached to every
analysis result. It never blocks analysis; low tiers downgrade the
confidence of recommendations and add pilot-facing warnings.

Usage:
    from bf_quality import score_filter_data, score_pid_data, validate_header
"""

import numpy as np

from bf_blackbox import parse_firmware_version, sample_rate_from_header
from bf_constants import (
    DEBUG_MODE_GYRO_SCALED, GYRO_SCALED_FIXED_VERSION, MIN_LOGGING_RATE_HZ,
    QUALITY_TIERS,
)

FILTER_WEIGHTS = {"segment_count": 0.20, "hover_time": 0.35,
                  "throttle_coverage": 0.25, "segment_type": 0.20}
PID_WEIGHTS = {"step_count": 0.30, "axis_coverage": 0.30,
               "magnitude_variety": 0.20, "hold_quality": 0.20}

# Tune score: (best, worst) per component
TUNE_COMPONENTS = {
    "noise_floor": (-60, -20),
    "tracking_rms": (0, 0.5),
    "overshoot": (0, 50),
    "settling_time": (50, 500),
}


def tier_for(score):
    for floor, name in QUALITY_TIERS:
        if score >= floor:
            return name
    return QUALITY_TIERS[-1][1]


def _clamp100(v):
    return int(max(0, min(100, round(v))))


def _warning(code, message, severity="warning"):
    return {"code": code, "message": message, "severity": severity}


def _overall(sub, weights):
    score = _clamp100(sum(sub[k] * w for k, w in weights.items()))
    return {"overall": score, "tier": tier_for(score),
            "sub_scores": [{"name": k, "score": sub[k], "weight": w} for k, w in weights.items()]}


# ─── Filter Data ──────────────────────────────────────────────────────────────

def score_filter_data(segments, has_sweeps):
    """Score segment input for noise analysis. Returns (score, warnings)."""
    warnings = []
    count = len(segments)
    if count < 2:
        warnings.append(_warning(
            "few_segments",
            f"Only {count} flight segment{'' if count == 1 else 's'} found. Fly at least "
            "3 stable hover periods of 2+ seconds each."))

    hover = sum(s["duration"] for s in segments)
    if hover < 2:
        warnings.append(_warning(
            "short_hover_time",
            f"Total hover time is {hover:.1f}s. At least 5 seconds of stable hover is "
            "recommended for reliable filter analysis.",
            "error" if hover < 0.5 else "warning"))

    coverage = 0.0
    if segments:
        thr = [s["avg_throttle"] * 100 for s in segments]
        coverage = max(thr) - min(thr)
        if coverage < 20:
            warnings.append(_warning(
                "narrow_throttle_coverage",
                f"Throttle coverage is only {coverage:.0f}%. Smooth throttle sweeps over a "
                "wider range show noise across more of the RPM band."))

    sub = {
        "segment_count": _clamp100(count / 3 * 100),
        "hover_time": _clamp100((hover - 0.5) / 4.5 * 100),
        "throttle_coverage": _clamp100((coverage - 10) / 30 * 100),
        "segment_type": 100 if has_sweeps else 0,
    }
    return _overall(sub, FILTER_WEIGHTS), warnings


# ─── PID Data ─────────────────────────────────────────────────────────────────

def score_pid_data(axis_responses):
    """Score step-response input. axis_responses: {'roll': [response, ...], ...}."""
    warnings = []
    total = sum(len(v) for v in axis_responses.values())
    if total < 5:
        warnings.append(_warning(
            "few_steps",
            f"Only {total} step input{'' if total == 1 else 's'} detected. Perform at least "
            "15 quick stick snaps across all axes.",
            "error" if total == 0 else "warning"))

    covered = 0
    for axis, responses in axis_responses.items():
        k = len(responses)
        if k >= 3:
            covered += 1
        elif k == 0:
            warnings.append(_warning(
                "missing_axis_coverage",
                f"No step inputs on {axis.capitalize()} axis. Include stick snaps on all axes."))
        else:
            warnings.append(_warning(
                "few_steps_per_axis",
                f"Only {k} step{'' if k == 1 else 's'} on {axis.capitalize()} axis. At least 3 "
                "per axis recommended."))

    everything = [r for v in axis_responses.values() for r in v]
    mags = np.array([abs(r["step"]["magnitude"]) for r in everything])
    variety = 0
    if len(mags):
        mean = float(mags.mean())
        if mean < 200:
            warnings.append(_warning(
                "low_step_magnitude",
                f"Average step magnitude is {mean:.0f} deg/s. Harder stick snaps (200+ deg/s) "
                "give clearer step responses."))
        if len(mags) >= 2 and mean > 0:
            variety = _clamp100(float(mags.std()) / mean / 0.3 * 100)

    hold = 0
    if everything:
        hold = _clamp100(sum(1 for r in everything if r["settling_time_ms"] > 0)
                         / len(everything) * 100)

    sub = {
        "step_count": _clamp100(total / 15 * 100),
        "axis_coverage": _clamp100(covered / 3 * 100),
        "magnitude_variety": variety,
        "hold_quality": hold,
    }
    return _overall(sub, PID_WEIGHTS), warnings


# ─── Confidence ───────────────────────────────────────────────────────────────

_DOWNGRADE = {
    "fair": {"high": "medium"},
    "poor": {"high": "medium", "medium": "low"},
}


def adjust_confidence(recs, tier):
    """Copies of recs with confidence lowered for fair/poor data."""
    table = _DOWNGRADE.get(tier)
    if not table:
        return list(recs)
    out = []
    for rec in recs:
        new = table.get(rec["confidence"])
        out.append(dict(rec, confidence=new) if new else rec)
    return out


# ─── Header Checks ────────────────────────────────────────────────────────────

def validate_header(header, raw_headers):
    warnings = []
    if header.get("looptime", 0) > 0:
        rate = sample_rate_from_header(header)
        if rate < MIN_LOGGING_RATE_HZ:
            warnings.append(_warning(
                "low_logging_rate",
                f"Logging rate is {rate:.0f} Hz (Nyquist: {rate / 2:.0f} Hz). Motor noise "
                "(200-600 Hz) may not be visible. Recommended: 2 kHz or higher."))

    # 4.6+ logs unfiltered gyro without GYRO_SCALED
    version = parse_firmware_version(header)
    if version is None or version[:2] < GYRO_SCALED_FIXED_VERSION:
        mode = raw_headers.get("debug_mode")
        if mode is not None:
            try:
                mode_num = int(mode)
            except ValueError:
                mode_num = None
            if mode_num is not None and mode_num != DEBUG_MODE_GYRO_SCALED:
                warnings.append(_warning(
                    "wrong_debug_mode",
                    f"Debug mode is not GYRO_SCALED (current: {mode}). The FFT may see filtered "
                    "gyro instead of raw noise. Set debug_mode = GYRO_SCALED for filter analysis."))
    return warnings


def enrich_filter_settings(settings, raw_headers):
    """Fill RPM/notch fields missing from settings with values from the log header."""
    out = dict(settings)
    for key in ("rpm_filter_harmonics", "rpm_filter_min_hz", "dyn_notch_count", "dyn_notch_q"):
        if out.get(key) is None and key in raw_headers:
            try:
                out[key] = int(raw_headers[key])
            except ValueError:
                continue
    return out


# ─── Tune Quality ─────────────────────────────────────────────────────────────

def _linear_points(value, best, worst, max_points):
    t = (value - worst) / (best - worst)
    return int(round(max(0.0, min(1.0, t)) * max_points))


def tune_quality_score(filter_metrics, pid_metrics):
    """0-100 score of a finished tune from compact metrics; None without metrics.

    Points are split evenly over the components that have data.
    """
    values = {}
    if filter_metrics:
        values["noise_floor"] = float(np.mean(
            [filter_metrics[a]["noise_floor_db"] for a in ("roll", "pitch", "yaw")]))
    if pid_metrics:
        axes = [pid_metrics[a] for a in ("roll", "pitch", "yaw")]
        tracking = [a["mean_tracking_rms"] for a in axes if a.get("mean_tracking_rms") is not None]
        if tracking:
            values["tracking_rms"] = float(np.mean(tracking))
        values["overshoot"] = float(np.mean([a["mean_overshoot"] for a in axes]))
        values["settling_time"] = float(np.mean([a["mean_settling_time_ms"] for a in axes]))
    if not values:
        return None

    per = int(round(100 / len(values)))
    components = []
    for name, (best, worst) in TUNE_COMPONENTS.items():
        if name in values:
            components.append({"name": name, "max_points": per,
                               "score": _linear_points(values[name], best, worst, per),
                               "raw_value": round(values[name], 2)})
    overall = min(100, sum(c["score"] for c in components))
    return {"overall": overall, "tier": tier_for(overall), "components": components}
