#!/usr/bin/env python3
"""
Closed-loop system identification from swept-sine (chirp) flights.

A chirp flight is recognised from the log header (debug_mode CHIRP/SYS_ID on
newer firmware) or from the setpoint itself by tracking the dominant
frequency across short overlapping FFT windows. Over the detected window:

    H(f)  = Sxy(f) / Sxx(f)
    γ²(f) = |Sxy(f)|² / (Sxx(f) · Syy(f))

Both come from scipy's Welch estimators with the same Hann windowing as the
noise analysis. Any flight (no chirp needed) can also give a regularised
Wiener estimate H = Syx / (Sxx + λ) and a synthetic step response.

Usage:
    from bf_chirp import analyze_chirp_session, estimate_transfer_functions

    result = analyze_chirp_session(session)   # None when no chirp is found
"""

import logging

import numpy as np
from scipy import signal

from bf_constants import (
    AXIS_NAMES, CHIRP_DETECT_WINDOW, CHIRP_MAX_FREQ_HZ, CHIRP_MIN_COHERENCE,
    CHIRP_MIN_DURATION_S, CHIRP_MIN_ENERGY, CHIRP_MIN_FREQ_HZ, CHIRP_MIN_OCTAVES,
    CHIRP_MONOTONIC_RATIO, CHIRP_WINDOW_SIZE, DEBUG_MODE_CHIRP,
    DEFAULT_GAIN_MARGIN_DB, DEFAULT_PHASE_MARGIN_DEG, FFT_OVERLAP,
    TF_MAX_FREQ_HZ, TF_MIN_INPUT_ENERGY, TF_STEP_SAMPLES, TF_WIENER_REGULARIZATION,
    TF_WINDOW_SIZE,
)

log = logging.getLogger("bftune.chirp")

HEADER_CHIRP_MODES = (DEBUG_MODE_CHIRP, "SYS_ID")


# ─── Detection ────────────────────────────────────────────────────────────────

def detect_swept_sine(values, sample_rate, window=CHIRP_DETECT_WINDOW):
    """Locate a rising-frequency sweep in one signal.

    Returns {start, end, min_hz, max_hz} or None.
    """
    x = np.asarray(values, dtype=np.float64)
    step = window // 2
    n_windows = (len(x) - window) // step if len(x) >= window else 0
    if n_windows < 4:
        return None

    lo_bin = int(np.ceil(CHIRP_MIN_FREQ_HZ * window / sample_rate))
    hi_bin = min(int(CHIRP_MAX_FREQ_HZ * window / sample_rate), window // 2 - 1)
    if hi_bin < lo_bin:
        return None
    taper = signal.get_window("hann", window, fftbins=False)

    peaks, starts = [], []
    for w in range(n_windows):
        start = w * step
        seg = x[start:start + window]
        if np.mean(seg * seg) < CHIRP_MIN_ENERGY:
            continue
        mag = np.abs(np.fft.rfft(seg * taper))
        b = lo_bin + int(np.argmax(mag[lo_bin:hi_bin + 1]))
        if b > 0 and mag[b] > 0:
            peaks.append(b * sample_rate / window)
            starts.append(start)

    if len(peaks) < 4:
        return None
    peaks = np.asarray(peaks)
    rising = np.count_nonzero(np.diff(peaks) > 0) / (len(peaks) - 1)
    if rising < CHIRP_MONOTONIC_RATIO:
        return None
    lo, hi = float(peaks.min()), float(peaks.max())
    if lo <= 0 or np.log2(hi / lo) < CHIRP_MIN_OCTAVES:
        return None
    if (starts[-1] - starts[0] + window) / sample_rate < CHIRP_MIN_DURATION_S:
        return None
    return {"start": starts[0], "end": starts[-1] + window, "min_hz": lo, "max_hz": hi}


def detect_chirp(session):
    """Chirp metadata dict; 'detected' is False when nothing is found."""
    n = len(session.channels["gyro"][0])
    mode = str(session.raw_headers.get("debug_mode", "")).upper()
    if mode in HEADER_CHIRP_MODES:
        try:
            axis = int(session.raw_headers.get("chirp_axis", "0"))
        except ValueError:
            axis = 0
        if axis not in (0, 1, 2):
            axis = 0
        return {"detected": True, "source": "header", "axis": axis, "start": 0, "end": n,
                "duration": session.duration, "min_hz": None, "max_hz": None}

    for axis in range(3):
        found = detect_swept_sine(session.channels["setpoint"][axis], session.sample_rate)
        if found:
            log.debug(f"Swept sine on {AXIS_NAMES[axis]}: {found['min_hz']:.0f}-{found['max_hz']:.0f} Hz")
            return {"detected": True, "source": "pattern", "axis": axis,
                    "start": found["start"], "end": found["end"],
                    "duration": (found["end"] - found["start"]) / session.sample_rate,
                    "min_hz": found["min_hz"], "max_hz": found["max_hz"]}
    return {"detected": False, "source": "none"}


# ─── Cross-Spectral Transfer Function ─────────────────────────────────────────

def cross_spectral_transfer(x, y, sample_rate, window_size=CHIRP_WINDOW_SIZE):
    """Welch-averaged H(f) and coherence, or None when shorter than one window."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    n = min(len(x), len(y))
    if n < window_size:
        return None
    x, y = x[:n], y[:n]
    kw = dict(fs=sample_rate, window="hann", nperseg=window_size,
              noverlap=window_size // 2, detrend=False)
    freqs, sxy = signal.csd(x, y, **kw)
    _, sxx = signal.welch(x, **kw)
    _, syy = signal.welch(y, **kw)

    h = np.zeros_like(sxy)
    ok = sxx > 1e-12
    h[ok] = sxy[ok] / sxx[ok]
    denom = sxx * syy
    coherence = np.zeros_like(sxx)
    good = denom > 1e-24
    coherence[good] = np.abs(sxy[good]) ** 2 / denom[good]
    return {
        "freqs": freqs,
        "magnitude": np.abs(h),
        "phase": np.degrees(np.angle(h)),
        "coherence": np.clip(coherence, 0, 1),
    }


def _interp(x0, x1, y0, y1, target):
    return x0 + ((y0 - target) / (y0 - y1) if y0 - y1 > 1e-12 else 0.0) * (x1 - x0)


def bode_metrics(tf, sample_rate):
    """Bandwidth, peak resonance and stability margins from a transfer function.

    Margins fall back to 90 deg / 20 dB when no crossing exists in band;
    phase_margin_measured / gain_margin_measured tell the two cases apart.
    """
    f, mag, ph = tf["freqs"], tf["magnitude"], tf["phase"]
    max_freq = min(sample_rate / 2, CHIRP_MAX_FREQ_HZ)
    n = int(np.searchsorted(f, max_freq, side="right"))

    dc = mag[1] if len(mag) > 1 and mag[1] > 0 else (mag[0] if mag[0] > 0 else 1.0)
    threshold = dc * np.sqrt(0.5)
    bandwidth = max_freq
    for i in range(2, n):
        if mag[i] < threshold <= mag[i - 1]:
            bandwidth = _interp(f[i - 1], f[i], mag[i - 1], mag[i], threshold)
            break

    if n > 1:
        k = 1 + int(np.argmax(mag[1:n]))
        peak, peak_freq = float(mag[k]), float(f[k])
    else:
        peak, peak_freq = 0.0, 0.0

    phase_margin, pm_measured = DEFAULT_PHASE_MARGIN_DEG, False
    for i in range(2, n):
        if mag[i - 1] >= 1 > mag[i]:
            ratio = (mag[i - 1] - 1) / (mag[i - 1] - mag[i]) if mag[i - 1] - mag[i] > 1e-12 else 0.0
            phase_margin = 180 + ph[i - 1] + ratio * (ph[i] - ph[i - 1])
            pm_measured = True
            break

    gain_margin, gm_measured = DEFAULT_GAIN_MARGIN_DB, False
    for i in range(2, n):
        if ph[i - 1] > -180 >= ph[i]:
            ratio = (ph[i - 1] + 180) / (ph[i - 1] - ph[i]) if ph[i - 1] - ph[i] > 1e-12 else 0.0
            cross = mag[i - 1] + ratio * (mag[i] - mag[i - 1])
            if cross > 1e-12:
                gain_margin, gm_measured = 20 * np.log10(1 / cross), True
            break

    return {
        "bandwidth_hz": float(bandwidth),
        "peak_resonance": peak,
        "peak_resonance_hz": peak_freq,
        "phase_margin_deg": float(phase_margin),
        "gain_margin_db": float(gain_margin),
        "phase_margin_measured": pm_measured,
        "gain_margin_measured": gm_measured,
    }


def analyze_chirp_session(session):
    """Transfer function and Bode metrics for the chirp axis, or None."""
    meta = detect_chirp(session)
    if not meta["detected"]:
        return None
    axis = meta["axis"]
    s, e = meta["start"], meta["end"]
    x = session.channels["setpoint"][axis][s:e]
    y = session.channels["gyro"][axis][s:e]
    tf = cross_spectral_transfer(x, y, session.sample_rate)
    if tf is None:
        log.info("Chirp window shorter than one transform window")
        return None

    lo = meta["min_hz"] or CHIRP_MIN_FREQ_HZ
    hi = meta["max_hz"] or CHIRP_MAX_FREQ_HZ
    band = (tf["freqs"] >= lo) & (tf["freqs"] <= hi)
    mean_coh = float(np.mean(tf["coherence"][band])) if band.any() else 0.0
    warnings = []
    if mean_coh < CHIRP_MIN_COHERENCE:
        warnings.append(f"Low coherence ({mean_coh:.2f}): response may be dominated by noise "
                        "or pilot input")

    return {
        "metadata": meta,
        "axes": [{
            "axis": AXIS_NAMES[axis],
            "transfer_function": tf,
            "metrics": bode_metrics(tf, session.sample_rate),
            "mean_coherence": mean_coh,
        }],
        "warnings": warnings,
    }


# ─── Wiener Estimate ──────────────────────────────────────────────────────────

def wiener_transfer_function(setpoint, gyro, sample_rate, window_size=TF_WINDOW_SIZE):
    """H = Syx / (Sxx + λ) over windows with enough stick input, or None."""
    x = np.asarray(setpoint, dtype=np.float64)
    y = np.asarray(gyro, dtype=np.float64)
    n = min(len(x), len(y))
    if n < window_size:
        return None
    step = max(1, int(window_size * (1 - FFT_OVERLAP)))
    taper = signal.get_window("hann", window_size)
    starts = range(0, n - window_size + 1, step)

    sxx = np.zeros(window_size // 2 + 1)
    syx = np.zeros(window_size // 2 + 1, dtype=np.complex128)
    used = 0
    for s in starts:
        xs = x[s:s + window_size]
        if np.mean(xs * xs) < TF_MIN_INPUT_ENERGY:
            continue
        X = np.fft.rfft(xs * taper)
        Y = np.fft.rfft(y[s:s + window_size] * taper)
        sxx += np.abs(X) ** 2
        syx += Y * np.conj(X)
        used += 1
    if used == 0:
        return None
    sxx /= used
    syx /= used
    lam = TF_WIENER_REGULARIZATION * float(np.mean(sxx))
    h = syx / (sxx + lam)
    return {
        "freqs": np.fft.rfftfreq(window_size, 1 / sample_rate),
        "magnitude": np.abs(h),
        "phase": np.degrees(np.angle(h)),
    }


def synthetic_step_response(tf, sample_rate):
    """Overshoot % and 10-90% rise time of the step implied by H(f)."""
    n_bins = len(tf["magnitude"])
    n = (n_bins - 1) * 2
    if n < 16:
        return {"overshoot": 0.0, "rise_time_ms": 0.0}
    h = tf["magnitude"] * np.exp(1j * np.radians(tf["phase"]))
    step = np.cumsum(np.fft.irfft(h, n))
    look = min(TF_STEP_SAMPLES, n)
    resp = step[:look]
    steady = float(np.mean(resp[int(look * 0.75):]))
    if abs(steady) < 1e-10:
        return {"overshoot": 0.0, "rise_time_ms": 0.0}
    peak = resp[int(np.argmax(np.abs(resp)))]
    overshoot = max(0.0, (abs(peak) - abs(steady)) / abs(steady) * 100)

    if steady > 0:
        lo_hit, hi_hit = resp >= 0.1 * steady, resp >= 0.9 * steady
    else:
        lo_hit, hi_hit = resp <= 0.1 * steady, resp <= 0.9 * steady
    t_lo = int(np.argmax(lo_hit)) if lo_hit.any() else -1
    t_hi = int(np.argmax(hi_hit)) if hi_hit.any() else -1
    rise = (t_hi - t_lo) * 1000 / sample_rate if t_lo >= 0 and t_hi > t_lo else 0.0
    return {"overshoot": float(overshoot), "rise_time_ms": float(rise)}


def frequency_metrics(tf, sample_rate):
    f, mag, ph = tf["freqs"], tf["magnitude"], tf["phase"]
    n = int(np.searchsorted(f, TF_MAX_FREQ_HZ, side="right"))
    n = max(1, min(n, len(f)))
    dc = float(mag[1]) if len(mag) > 1 else 1.0
    threshold = 0.707 * dc
    bandwidth = float(f[n - 1])
    for i in range(1, n):
        if mag[i] < threshold:
            if mag[i] != mag[i - 1]:
                bandwidth = f[i - 1] + (threshold - mag[i - 1]) / (mag[i] - mag[i - 1]) * (f[i] - f[i - 1])
            else:
                bandwidth = f[i - 1]
            break
    phase_at_bw = float(ph[int(np.argmin(np.abs(f - bandwidth)))])

    if n > 1:
        k = 1 + int(np.argmax(mag[1:n]))
        peak, peak_freq = float(mag[k]), float(f[k])
    else:
        peak, peak_freq = 0.0, 0.0
    step = synthetic_step_response(tf, sample_rate)
    return {
        "bandwidth_hz": round(float(bandwidth), 1),
        "phase_margin_deg": round(180 + phase_at_bw, 1),
        "peak_resonance": round(peak / dc if dc > 0 else peak, 3),
        "peak_resonance_hz": round(peak_freq, 1),
        "estimated_overshoot": round(step["overshoot"], 1),
        "estimated_rise_time_ms": round(step["rise_time_ms"], 1),
    }


def estimate_transfer_functions(session):
    """Per-axis Wiener estimates for any flight; None when no axis has enough input."""
    out = {}
    for axis, name in enumerate(AXIS_NAMES):
        tf = wiener_transfer_function(session.channels["setpoint"][axis],
                                      session.channels["gyro"][axis], session.sample_rate)
        if tf is not None:
            out[name] = {"axis": name, "transfer_function": tf,
                         "metrics": frequency_metrics(tf, session.sample_rate)}
    return out or None
