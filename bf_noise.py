#!/usr/bin/env python3
"""
Gyro noise analysis and filter recommendations.

  1. Averaged amplitude spectrum per axis (Hann, 4096 samples, 50% overlap),
     trimmed to 20-1000 Hz and averaged across flight segments
  2. Noise floor (lower quartile) and peaks standing out of the local median
  3. Peak classification: motor harmonic, frame resonance, electrical, unknown
  4. Filter changes: noise-floor cutoff targeting, resonance fixes,
     dynamic notch range and RPM-aware notch count/Q

Recommendations are dicts:
    {"setting", "current", "recommended", "reason", "impact", "confidence"}

Usage:
    from bf_noise import compute_spectrum, analyze_axis_noise, build_noise_profile, recommend_filters

    profile = build_noise_profile(roll, pitch, yaw)
    recs = recommend_filters(profile, current_filters)
"""

import numpy as np
from scipy import signal

from bf_constants import (
    DEFAULT_FILTERS, DTERM_LPF1_MAX_HZ, DTERM_LPF1_MAX_HZ_RPM, DTERM_LPF1_MIN_HZ,
    DYN_NOTCH_COUNT_WITH_RPM, DYN_NOTCH_COUNT_WITHOUT_RPM, DYN_NOTCH_MAX_CEILING_HZ,
    DYN_NOTCH_MIN_FLOOR_HZ, DYN_NOTCH_Q_WITH_RPM, ELECTRICAL_NOISE_MIN_HZ,
    FFT_MIN_WINDOW, FFT_OVERLAP, FFT_WINDOW_SIZE, FRAME_RESONANCE_MAX_HZ,
    FRAME_RESONANCE_MIN_HZ, FREQUENCY_MAX_HZ, FREQUENCY_MIN_HZ, GYRO_LPF1_MAX_HZ,
    GYRO_LPF1_MAX_HZ_RPM, GYRO_LPF1_MIN_HZ, MOTOR_HARMONIC_MIN_FUNDAMENTAL_HZ,
    MOTOR_HARMONIC_MIN_PEAKS, MOTOR_HARMONIC_TOLERANCE_MIN_HZ,
    MOTOR_HARMONIC_TOLERANCE_RATIO, NOISE_FLOOR_PERCENTILE, NOISE_FLOOR_VERY_CLEAN_DB,
    NOISE_FLOOR_VERY_NOISY_DB, NOISE_LEVEL_HIGH_DB, NOISE_LEVEL_MEDIUM_DB,
    NOISE_TARGET_DEADZONE_HZ, PEAK_LOCAL_EXCLUDE_BINS, PEAK_LOCAL_WINDOW_BINS,
    PEAK_PROMINENCE_DB, RESONANCE_ACTION_THRESHOLD_DB, RESONANCE_CUTOFF_MARGIN_HZ,
)

SILENT_DB = -240.0

PEAK_LABELS = {
    "frame_resonance": "frame resonance",
    "motor_harmonic": "motor harmonic",
    "electrical": "electrical noise",
    "unknown": "noise spike",
}


# ─── Spectrum ─────────────────────────────────────────────────────────────────

def _largest_pow2(n):
    p = 1
    while p * 2 <= n:
        p *= 2
    return p


def _to_db(linear):
    linear = np.asarray(linear, dtype=np.float64)
    out = np.full(linear.shape, SILENT_DB)
    ok = linear > 1e-12
    out[ok] = 20 * np.log10(linear[ok])
    return out


def compute_spectrum(values, sample_rate, window_size=FFT_WINDOW_SIZE):
    """Averaged amplitude spectrum in dB: {"freqs": ndarray, "db": ndarray}.

    Each Hann window contributes |rfft(w * x)| / N, averaged linearly, so a
    unit sine sits near -12 dB. Signals shorter than one window use the
    largest power-of-two prefix. Raises ValueError below 16 samples.
    """
    x = np.asarray(values, dtype=np.float64)
    x = x[~np.isnan(x)]
    if len(x) < window_size:
        window_size = _largest_pow2(len(x))
        if window_size < FFT_MIN_WINDOW:
            raise ValueError(f"Signal too short for FFT: {len(x)} samples")
        x = x[:window_size]
    win = signal.windows.hann(window_size, sym=True)
    freqs, _, mags = signal.spectrogram(x, fs=sample_rate, window=win, nperseg=window_size,
                                        noverlap=int(window_size * FFT_OVERLAP), detrend=False,
                                        scaling="spectrum", mode="magnitude")
    # scipy normalizes by sum(w); thresholds assume 1/N
    mags = mags.mean(axis=1) * (win.sum() / window_size)
    return {"freqs": freqs, "db": _to_db(mags)}


def trim_spectrum(spectrum, min_hz=FREQUENCY_MIN_HZ, max_hz=FREQUENCY_MAX_HZ):
    f = spectrum["freqs"]
    keep = (f >= min_hz) & (f <= max_hz)
    return {"freqs": f[keep], "db": spectrum["db"][keep]}


def average_spectra(spectra):
    """Average in linear magnitude, not in dB."""
    if len(spectra) == 1:
        return spectra[0]
    n = min(len(s["db"]) for s in spectra)
    lin = np.mean([10 ** (s["db"][:n] / 20) for s in spectra], axis=0)
    return {"freqs": spectra[0]["freqs"][:n], "db": _to_db(lin)}


# ─── Noise Floor and Peaks ────────────────────────────────────────────────────

def estimate_noise_floor(db):
    if len(db) == 0:
        return SILENT_DB
    ordered = np.sort(db)
    return float(ordered[int(len(ordered) * NOISE_FLOOR_PERCENTILE / 100)])


def local_noise_floor(db, idx, window=PEAK_LOCAL_WINDOW_BINS):
    """Median of the neighbourhood around a bin, ignoring the bin's own skirt."""
    start = max(0, idx - window)
    end = min(len(db), idx + window + 1)
    k = np.arange(start, end)
    vals = db[start:end][np.abs(k - idx) > PEAK_LOCAL_EXCLUDE_BINS]
    if len(vals) == 0:
        return float(db[idx])
    vals = np.sort(vals)
    return float(vals[len(vals) // 2])


def detect_peaks(spectrum, prominence_db=PEAK_PROMINENCE_DB):
    """Local maxima at least prominence_db above the local floor, strongest first."""
    f, db = spectrum["freqs"], spectrum["db"]
    if len(db) < 3:
        return []
    peaks = []
    candidates = np.flatnonzero((db[1:-1] > db[:-2]) & (db[1:-1] > db[2:])) + 1
    for i in candidates:
        prominence = float(db[i]) - local_noise_floor(db, i)
        if prominence >= prominence_db:
            peaks.append({"frequency": float(f[i]), "amplitude": prominence, "bin": int(i)})
    peaks.sort(key=lambda p: p["amplitude"], reverse=True)
    return peaks


def _harmonic_tolerance(expected):
    return max(MOTOR_HARMONIC_TOLERANCE_MIN_HZ, expected * MOTOR_HARMONIC_TOLERANCE_RATIO)


def _is_harmonic_of(freq, fundamental):
    n = round(freq / fundamental)
    return n >= 1 and abs(freq - fundamental * n) < _harmonic_tolerance(fundamental * n)


def is_motor_harmonic(freq, all_freqs):
    if len(all_freqs) < MOTOR_HARMONIC_MIN_PEAKS:
        return False
    ordered = sorted(all_freqs)
    for fundamental in ordered:
        if fundamental < MOTOR_HARMONIC_MIN_FUNDAMENTAL_HZ:
            continue
        count = sum(1 for pf in ordered if _is_harmonic_of(pf, fundamental))
        if count >= MOTOR_HARMONIC_MIN_PEAKS and _is_harmonic_of(freq, fundamental):
            return True
    return False


def classify_peak(freq, all_freqs):
    if is_motor_harmonic(freq, all_freqs):
        return "motor_harmonic"
    if FRAME_RESONANCE_MIN_HZ <= freq <= FRAME_RESONANCE_MAX_HZ:
        return "frame_resonance"
    if freq >= ELECTRICAL_NOISE_MIN_HZ:
        return "electrical"
    return "unknown"


def analyze_axis_noise(spectra):
    """Average one axis' segment spectra, then floor, peaks and classes."""
    if not spectra:
        return {"spectrum": {"freqs": np.zeros(0), "db": np.zeros(0)},
                "noise_floor_db": SILENT_DB, "peaks": []}
    avg = average_spectra(spectra)
    raw = detect_peaks(avg)
    freqs = [p["frequency"] for p in raw]
    peaks = [{"frequency": p["frequency"], "amplitude": p["amplitude"],
              "type": classify_peak(p["frequency"], freqs)} for p in raw]
    return {"spectrum": avg, "noise_floor_db": estimate_noise_floor(avg["db"]), "peaks": peaks}


def categorize_noise_level(roll, pitch):
    worst = max(roll["noise_floor_db"], pitch["noise_floor_db"])
    if worst > NOISE_LEVEL_HIGH_DB:
        return "high"
    if worst > NOISE_LEVEL_MEDIUM_DB:
        return "medium"
    return "low"


def build_noise_profile(roll, pitch, yaw):
    return {"roll": roll, "pitch": pitch, "yaw": yaw,
            "level": categorize_noise_level(roll, pitch)}


# ─── Filter Recommendations ───────────────────────────────────────────────────

def _clamp(value, lo, hi):
    return max(lo, min(hi, value))


def _rec(setting, current, recommended, reason, impact, confidence):
    return {"setting": setting, "current": current, "recommended": int(recommended),
            "reason": reason, "impact": impact, "confidence": confidence}


def rpm_filter_active(current):
    return (current.get("rpm_filter_harmonics") or 0) > 0


def noise_target_cutoff(floor_db, lo, hi):
    """Linear map: very clean floor gives the max cutoff, very noisy the min."""
    span = NOISE_FLOOR_VERY_NOISY_DB - NOISE_FLOOR_VERY_CLEAN_DB
    t = _clamp((floor_db - NOISE_FLOOR_VERY_CLEAN_DB) / span, 0.0, 1.0)
    return int(round(hi - t * (hi - lo)))


def _noise_floor_rules(noise, current, bounds, out):
    level = noise["level"]
    if level == "medium":
        return
    floor = max(noise["roll"]["noise_floor_db"], noise["pitch"]["noise_floor_db"])
    for setting, (lo, hi), label in (
            ("gyro_lpf1_static_hz", bounds["gyro"], "gyro"),
            ("dterm_lpf1_static_hz", bounds["dterm"], "D-term")):
        cur = current.get(setting, DEFAULT_FILTERS[setting])
        if setting == "gyro_lpf1_static_hz" and cur == 0:
            continue  # disabled lowpass, typical with RPM filtering
        target = noise_target_cutoff(floor, lo, hi)
        if abs(target - cur) <= NOISE_TARGET_DEADZONE_HZ:
            continue
        if level == "high" and target < cur:
            out.append(_rec(setting, cur, target,
                            f"Your {label} data is noisy (floor {floor:.0f} dB). Lowering the {label} lowpass "
                            f"to {target} Hz cleans the signal so the flight controller reacts to real movement, "
                            "not vibration.", "both", "high"))
        elif level == "low" and target > cur:
            out.append(_rec(setting, cur, target,
                            f"Your quad is clean (floor {floor:.0f} dB). Raising the {label} lowpass to "
                            f"{target} Hz gives sharper response with little downside.", "latency", "medium"))


def _resonance_rules(noise, current, bounds, out):
    significant = [p for axis in ("roll", "pitch") for p in noise[axis]["peaks"]
                   if p["amplitude"] >= RESONANCE_ACTION_THRESHOLD_DB]
    if not significant:
        return
    lowest = min(significant, key=lambda p: p["frequency"])
    freq = lowest["frequency"]
    label = PEAK_LABELS.get(lowest["type"], "noise spike")

    gyro = current.get("gyro_lpf1_static_hz", DEFAULT_FILTERS["gyro_lpf1_static_hz"])
    disabled = gyro == 0
    if disabled or freq < gyro:
        target = int(round(_clamp(freq - RESONANCE_CUTOFF_MARGIN_HZ, *bounds["gyro"])))
        if disabled or target < gyro:
            if disabled:
                reason = (f"A strong {label} was detected at {freq:.0f} Hz, but your gyro lowpass filter "
                          f"is disabled. Enabling it at {target} Hz will block this vibration.")
            else:
                reason = (f"A strong {label} was detected at {freq:.0f} Hz, below your gyro filter cutoff "
                          f"of {gyro} Hz. Lowering the filter will block this vibration.")
            out.append(_rec("gyro_lpf1_static_hz", gyro, target, reason, "both", "high"))

    dterm = current.get("dterm_lpf1_static_hz", DEFAULT_FILTERS["dterm_lpf1_static_hz"])
    if freq < dterm:
        target = int(round(_clamp(freq - RESONANCE_CUTOFF_MARGIN_HZ, *bounds["dterm"])))
        if target < dterm:
            out.append(_rec("dterm_lpf1_static_hz", dterm, target,
                            f"A strong resonance peak at {freq:.0f} Hz is reaching the D-term. Lowering the "
                            "D-term filter reduces motor heat and improves smoothness.", "both", "high"))


def _dynamic_notch_rules(noise, current, out):
    peaks = [p for axis in ("roll", "pitch", "yaw") for p in noise[axis]["peaks"]
             if p["amplitude"] >= RESONANCE_ACTION_THRESHOLD_DB]
    rpm = rpm_filter_active(current)
    cur_min = current.get("dyn_notch_min_hz", DEFAULT_FILTERS["dyn_notch_min_hz"])
    cur_max = current.get("dyn_notch_max_hz", DEFAULT_FILTERS["dyn_notch_max_hz"])

    below = [p["frequency"] for p in peaks if p["frequency"] < cur_min]
    if below:
        low = min(below)
        new_min = max(DYN_NOTCH_MIN_FLOOR_HZ, int(round(low - 20)))
        if new_min < cur_min:
            out.append(_rec("dyn_notch_min_hz", cur_min, new_min,
                            f"A noise peak at {low:.0f} Hz sits below the dynamic notch minimum of {cur_min} Hz. "
                            "Lowering the minimum lets the notch track it.", "noise", "medium"))
    above = [p["frequency"] for p in peaks if p["frequency"] > cur_max]
    if above:
        high = max(above)
        new_max = min(DYN_NOTCH_MAX_CEILING_HZ, int(round(high + 20)))
        if new_max > cur_max:
            out.append(_rec("dyn_notch_max_hz", cur_max, new_max,
                            f"A noise peak at {high:.0f} Hz is above the dynamic notch maximum of {cur_max} Hz. "
                            "Raising the maximum lets the notch catch it.", "noise", "medium"))

    count = current.get("dyn_notch_count")
    q = current.get("dyn_notch_q")
    if rpm:
        if count is not None and count > DYN_NOTCH_COUNT_WITH_RPM:
            out.append(_rec("dyn_notch_count", count, DYN_NOTCH_COUNT_WITH_RPM,
                            "The RPM filter already removes motor noise. One dynamic notch is enough "
                            "for frame resonance and cuts filter delay.", "latency", "medium"))
        if q is not None and q < DYN_NOTCH_Q_WITH_RPM:
            out.append(_rec("dyn_notch_q", q, DYN_NOTCH_Q_WITH_RPM,
                            "With the RPM filter active a narrower dynamic notch (higher Q) is enough.",
                            "latency", "medium"))
    elif count is not None and count < DYN_NOTCH_COUNT_WITHOUT_RPM:
        out.append(_rec("dyn_notch_count", count, DYN_NOTCH_COUNT_WITHOUT_RPM,
                        "Without the RPM filter the dynamic notch has to track motor noise. "
                        f"Use {DYN_NOTCH_COUNT_WITHOUT_RPM} notches.", "noise", "medium"))


def _merge_confidence(a, b):
    return "high" if "high" in (a["confidence"], b["confidence"]) else "medium"


def deduplicate(recs):
    """One recommendation per setting: lowest value for lowpass/min, highest otherwise."""
    by_setting = {}
    for rec in recs:
        existing = by_setting.get(rec["setting"])
        if existing is None:
            by_setting[rec["setting"]] = rec
            continue
        lower_wins = "lpf" in rec["setting"] or "min" in rec["setting"]
        better = rec["recommended"] < existing["recommended"] if lower_wins \
            else rec["recommended"] > existing["recommended"]
        if better:
            by_setting[rec["setting"]] = dict(rec, confidence=_merge_confidence(rec, existing))
    return list(by_setting.values())


def filter_bounds(current):
    if rpm_filter_active(current):
        return {"gyro": (GYRO_LPF1_MIN_HZ, GYRO_LPF1_MAX_HZ_RPM),
                "dterm": (DTERM_LPF1_MIN_HZ, DTERM_LPF1_MAX_HZ_RPM)}
    return {"gyro": (GYRO_LPF1_MIN_HZ, GYRO_LPF1_MAX_HZ),
            "dterm": (DTERM_LPF1_MIN_HZ, DTERM_LPF1_MAX_HZ)}


def recommend_filters(noise, current=None):
    """Filter changes for a noise profile, one per setting."""
    current = dict(DEFAULT_FILTERS, **(current or {}))
    bounds = filter_bounds(current)
    recs = []
    _noise_floor_rules(noise, current, bounds, recs)
    _resonance_rules(noise, current, bounds, recs)
    _dynamic_notch_rules(noise, current, recs)
    return deduplicate(recs)


def filter_summary(noise, recs):
    level = noise["level"]
    parts = [{"high": "Your quad has significant vibration or noise.",
              "low": "Your quad is running very clean!"}.get(level, "Your noise levels are moderate.")]
    peaks = noise["roll"]["peaks"] + noise["pitch"]["peaks"]
    frame = next((p for p in peaks if p["type"] == "frame_resonance"), None)
    motor = next((p for p in peaks if p["type"] == "motor_harmonic"), None)
    if frame:
        parts.append(f"Frame resonance detected around {frame['frequency']:.0f} Hz.")
    if motor:
        parts.append(f"Motor harmonic noise detected around {motor['frequency']:.0f} Hz.")
    if not recs:
        parts.append("Current filter settings look good, no changes needed.")
    else:
        parts.append(f"{len(recs)} filter change{'s' if len(recs) > 1 else ''} recommended.")
    return " ".join(parts)
