#!/usr/bin/env python3
"""
Step-response analysis and PID recommendations.

Stick snaps show up in the setpoint as sharp, held edges. For each one the
gyro trace over the following 300 ms gives:
  latency    first move beyond 5% of the step
  rise time  10% to 90% of the settled value
  overshoot  peak past the settled value, percent of the settled step
  settling   last exit from a 2% band around the settled value
  ringing    oscillation cycles after the rise

Usage:
    from bf_step import detect_steps, compute_step_response, aggregate_axis, recommend_pids

    steps = detect_steps(setpoints, sample_rate)
"""

import numpy as np

from bf_constants import (
    AXIS_NAMES, D_GAIN_MAX, D_GAIN_MIN, D_HIGH_RATIO, DEFAULT_FLIGHT_STYLE,
    I_GAIN_MAX, I_GAIN_MIN, LATENCY_THRESHOLD, MAX_VALID_OVERSHOOT, P_GAIN_MAX,
    P_GAIN_MIN, PID_STEP, PID_STYLE_THRESHOLDS, RISE_TIME_HIGH, RISE_TIME_LOW,
    SETTLING_TOLERANCE, STEADY_STATE_FRACTION, STEP_COOLDOWN_MS,
    STEP_DERIVATIVE_THRESHOLD, STEP_EDGE_CONTINUE_RATIO, STEP_HOLD_TOLERANCE,
    STEP_MIN_HOLD_MS, STEP_MIN_MAGNITUDE_DEG_S, STEP_RESPONSE_WINDOW_MS,
    YAW_OVERSHOOT_FACTOR, YAW_SLUGGISH_RISE_MS,
)

GAIN_BOUNDS = {"p": (P_GAIN_MIN, P_GAIN_MAX), "i": (I_GAIN_MIN, I_GAIN_MAX),
               "d": (D_GAIN_MIN, D_GAIN_MAX)}


# ─── Step Detection ───────────────────────────────────────────────────────────

def _hold_ok(sp, start, target, hold, magnitude):
    tol = abs(magnitude) * STEP_HOLD_TOLERANCE
    end = min(start + hold, len(sp))
    if end - start < hold * 0.5:
        return True  # too close to the end of the log to judge
    return bool(np.all(np.abs(sp[start:end] - target) <= tol))


def detect_axis_steps(setpoint, sample_rate, axis):
    sp = np.asarray(setpoint, dtype=np.float64)
    n = len(sp)
    if n < 2:
        return []
    cooldown = int(np.ceil(STEP_COOLDOWN_MS / 1000 * sample_rate))
    hold = int(np.ceil(STEP_MIN_HOLD_MS / 1000 * sample_rate))
    window = int(np.ceil(STEP_RESPONSE_WINDOW_MS / 1000 * sample_rate))
    deriv = np.diff(sp) * sample_rate
    relaxed = STEP_DERIVATIVE_THRESHOLD * STEP_EDGE_CONTINUE_RATIO

    steps = []
    last_end = -cooldown
    i = 0
    while i < n - 1:
        if abs(deriv[i]) < STEP_DERIVATIVE_THRESHOLD:
            i += 1
            continue
        edge_start = i
        positive = deriv[i] > 0
        edge_end = i
        while edge_end + 1 < n - 1:
            d = deriv[edge_end + 1]
            if not ((positive and d > relaxed) or (not positive and d < -relaxed)):
                break
            edge_end += 1
        baseline = sp[edge_start]
        after = sp[min(edge_end + 1, n - 1)]
        magnitude = float(after - baseline)
        i = edge_end + 1

        if abs(magnitude) < STEP_MIN_MAGNITUDE_DEG_S:
            continue
        if edge_start - last_end < cooldown:
            continue
        if not _hold_ok(sp, edge_end + 1, after, hold, magnitude):
            continue
        end = min(edge_start + window, n)
        steps.append({"axis": axis, "start": edge_start, "end": end, "magnitude": magnitude,
                      "direction": "positive" if magnitude > 0 else "negative"})
        last_end = end
    return steps


def detect_steps(setpoints, sample_rate):
    """Steps on roll, pitch and yaw, largest magnitude first."""
    steps = []
    for axis in range(3):
        steps.extend(detect_axis_steps(setpoints[axis], sample_rate, axis))
    steps.sort(key=lambda s: abs(s["magnitude"]), reverse=True)
    return steps


# ─── Step Metrics ─────────────────────────────────────────────────────────────

def compute_step_response(setpoint, gyro, step, sample_rate):
    start, end, magnitude = step["start"], step["end"], step["magnitude"]
    ms = 1000.0 / sample_rate
    g = np.asarray(gyro[start:end], dtype=np.float64)
    n = len(g)
    full_ms = n * ms
    baseline = float(gyro[start - 1] if start > 0 else gyro[start])
    tail = g[int(n * (1 - STEADY_STATE_FRACTION)):]
    steady = float(np.mean(tail)) if len(tail) else baseline
    eff = steady - baseline
    sp = np.asarray(setpoint[start:end], dtype=np.float64)
    tracking = float(np.sqrt(np.mean((g - sp) ** 2)) / abs(magnitude)) if n else 0.0

    trace = {"time_ms": [round(k * ms, 3) for k in range(n)],
             "setpoint": [float(v) for v in sp],
             "gyro": [float(v) for v in g]}

    if abs(eff) < 1:
        return {"step": step, "rise_time_ms": full_ms, "overshoot_pct": 0.0,
                "settling_time_ms": full_ms, "latency_ms": full_ms, "ringing": 0,
                "peak": baseline, "steady_state": steady, "tracking_rms": tracking,
                "trace": trace}

    moved = np.flatnonzero(np.abs(g - baseline) > LATENCY_THRESHOLD * abs(magnitude))
    latency = moved[0] * ms if len(moved) else full_ms

    up = eff > 0
    lo_thr = baseline + eff * RISE_TIME_LOW
    hi_thr = baseline + eff * RISE_TIME_HIGH
    lo_hit = np.flatnonzero(g >= lo_thr if up else g <= lo_thr)
    hi_hit = np.flatnonzero(g >= hi_thr if up else g <= hi_thr)
    rise_hi = int(hi_hit[0]) if len(hi_hit) else -1
    if len(lo_hit) and rise_hi >= 0:
        rise = (rise_hi - int(lo_hit[0])) * ms
    else:
        rise = full_ms

    peak = float(max(baseline, g.max()) if up else min(baseline, g.min()))
    overshoot = max(0.0, ((peak - steady) if up else (steady - peak)) / abs(eff) * 100)

    band = abs(eff) * SETTLING_TOLERANCE
    outside = np.flatnonzero(np.abs(g - steady) > band)
    settling = (outside[-1] + 1) * ms if len(outside) else 0.0

    ring_start = rise_hi if rise_hi >= 0 else int(n * 0.3)
    diff = g[ring_start:] - steady
    signs = np.sign(diff)
    signs = signs[signs != 0]
    crossings = int(np.count_nonzero(signs[1:] != signs[:-1])) if len(signs) > 1 else 0

    return {"step": step, "rise_time_ms": float(rise), "overshoot_pct": float(overshoot),
            "settling_time_ms": float(settling), "latency_ms": float(latency),
            "ringing": crossings // 2, "peak": peak, "steady_state": steady,
            "tracking_rms": tracking, "trace": trace}


def aggregate_axis(responses):
    """Axis means over non-degenerate responses; all responses if every one is degenerate."""
    if not responses:
        return {"responses": [], "mean_overshoot": 0.0, "mean_rise_time_ms": 0.0,
                "mean_settling_time_ms": 0.0, "mean_latency_ms": 0.0,
                "mean_tracking_rms": 0.0}
    valid = [r for r in responses
             if r["rise_time_ms"] > 0 and r["overshoot_pct"] < MAX_VALID_OVERSHOOT]
    src = valid or responses
    return {
        "responses": responses,
        "mean_overshoot": float(np.mean([r["overshoot_pct"] for r in src])),
        "mean_rise_time_ms": float(np.mean([r["rise_time_ms"] for r in src])),
        "mean_settling_time_ms": float(np.mean([r["settling_time_ms"] for r in src])),
        "mean_latency_ms": float(np.mean([r["latency_ms"] for r in src])),
        "mean_tracking_rms": float(np.mean([r["tracking_rms"] for r in responses])),
    }


# ─── PID Recommendations ──────────────────────────────────────────────────────

def extract_flight_pids(raw_headers):
    """{'roll': {'p','i','d'}, ...} from rollPID/pitchPID/yawPID header lines, or None."""
    out = {}
    for axis in AXIS_NAMES:
        value = raw_headers.get(f"{axis}PID")
        if not value:
            return None
        parts = []
        for x in value.split(",")[:3]:
            try:
                parts.append(int(float(x)))
            except ValueError:
                parts.append(0)
        parts += [0] * (3 - len(parts))
        out[axis] = dict(zip("pid", parts))
    return out


def _gain(value, term):
    lo, hi = GAIN_BOUNDS[term]
    return int(max(lo, min(hi, round(value))))


def axis_thresholds(style, axis):
    t = dict(PID_STYLE_THRESHOLDS.get(style, PID_STYLE_THRESHOLDS[DEFAULT_FLIGHT_STYLE]))
    t["severe_overshoot"] = t["overshoot_max"]
    if axis == "yaw":
        t["severe_overshoot"] = t["overshoot_max"] * YAW_OVERSHOOT_FACTOR
        t["moderate_overshoot"] = t["overshoot_max"]
        t["sluggish_rise"] = YAW_SLUGGISH_RISE_MS
    return t


def recommend_pids(profiles, current, flight_pids=None, style=DEFAULT_FLIGHT_STYLE):
    """PID changes per axis.

    profiles: {'roll': aggregate, ...}; current/flight_pids: {'roll': {'p','i','d'}, ...}.
    Targets are computed from the gains the log was flown with when known.
    """
    recs = []

    def add(axis, term, target, reason, impact, confidence):
        cur = current[axis][term]
        target = _gain(target, term)
        if target != cur:
            recs.append({"setting": f"{term}_{axis}", "current": cur, "recommended": target,
                         "reason": reason, "impact": impact, "confidence": confidence})
            return True
        return False

    def has(axis, term):
        return any(r["setting"] == f"{term}_{axis}" for r in recs)

    for axis in AXIS_NAMES:
        prof = profiles.get(axis)
        if not prof or not prof["responses"]:
            continue
        base = (flight_pids or current)[axis]
        t = axis_thresholds(style, axis)
        os_ = prof["mean_overshoot"]

        if os_ > t["severe_overshoot"]:
            add(axis, "d", base["d"] + PID_STEP,
                f"Significant overshoot on {axis} ({os_:.0f}%). More D-term dampens the bounce-back.",
                "both", "high")
            if base["d"] >= D_GAIN_MAX * D_HIGH_RATIO:
                add(axis, "p", base["p"] - PID_STEP,
                    f"Significant overshoot on {axis} ({os_:.0f}%) with D already high. "
                    "Less P-term keeps the quad from overshooting its target.", "both", "high")
        elif os_ > t["moderate_overshoot"]:
            add(axis, "d", base["d"] + PID_STEP,
                f"Your quad overshoots on {axis} stick inputs ({os_:.0f}%). More D-term will dampen it.",
                "stability", "medium")

        if os_ < t["overshoot_ideal"] and prof["mean_rise_time_ms"] > t["sluggish_rise"]:
            add(axis, "p", base["p"] + PID_STEP,
                f"Response is sluggish on {axis} ({prof['mean_rise_time_ms']:.0f}ms rise time). "
                "More P will make it feel locked in.", "response", "medium")

        ringing = max(r["ringing"] for r in prof["responses"])
        if ringing > t["ringing_max"] and not has(axis, "d"):
            add(axis, "d", base["d"] + PID_STEP,
                f"Oscillation on {axis} after stick moves ({ringing} cycles). More D-term will calm the wobble.",
                "stability", "medium")

        if (prof["mean_settling_time_ms"] > t["settling_max"] and os_ < t["moderate_overshoot"]
                and not has(axis, "d")):
            add(axis, "d", base["d"] + PID_STEP,
                f"{axis.capitalize()} takes {prof['mean_settling_time_ms']:.0f}ms to settle. "
                "A slight D increase helps it lock in faster.", "stability", "low")
    return recs


def pid_summary(profiles, recs):
    total = sum(len(p["responses"]) for p in profiles.values())
    if total == 0:
        return ("No step inputs detected in this flight. Fly quick, decisive stick "
                "movements for PID analysis.")
    if not recs:
        return (f"Analyzed {total} stick inputs. Your PID tune looks good: quick response, "
                "minimal overshoot. No changes recommended.")
    reasons = " ".join(r["reason"].lower() for r in recs)
    issues = [label for key, label in (("overshoot", "overshoot"), ("sluggish", "sluggish response"),
                                       ("oscillation", "oscillation")) if key in reasons]
    issue_text = " and ".join(issues) if issues else "room for improvement"
    return (f"Analyzed {total} stick inputs and found {issue_text}. {len(recs)} adjustment"
            f"{'' if len(recs) == 1 else 's'} recommended.")
