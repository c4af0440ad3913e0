#!/usr/bin/env python3
"""
Filter-chain group delay.

Betaflight's filter stack:
  gyro path:    LPF1 (PT1) -> LPF2 (biquad) -> dynamic notch(es)
  D-term path:  LPF1 (PT1) -> LPF2 (biquad)

Each stage's group delay is evaluated at a reference frequency (80 Hz by
default, roughly the control bandwidth) and summed per path. A cutoff of 0
means the stage is disabled and contributes nothing.

    PT1:     τ(ω) = ωc / (ωc² + ω²)
    biquad:  τ(ω) = (ω0/Q)(ω0² + ω²) / ((ω0² - ω²)² + (ω0ω/Q)²)

Usage:
    from bf_group_delay import estimate_group_delay
    delay = estimate_group_delay(filter_settings)
"""

import math

from bf_constants import GROUP_DELAY_REFERENCE_HZ, GROUP_DELAY_WARNING_MS

BUTTERWORTH_Q = 1 / math.sqrt(2)
DEFAULT_NOTCH_Q = 300
DEFAULT_NOTCH_COUNT = 3


def pt1_group_delay(cutoff_hz, freq_hz):
    """Seconds."""
    if cutoff_hz <= 0:
        return 0.0
    wc = 2 * math.pi * cutoff_hz
    w = 2 * math.pi * freq_hz
    return wc / (wc * wc + w * w)


def biquad_group_delay(cutoff_hz, freq_hz, q=BUTTERWORTH_Q):
    if cutoff_hz <= 0:
        return 0.0
    w0 = 2 * math.pi * cutoff_hz
    w = 2 * math.pi * freq_hz
    w0sq, wsq = w0 * w0, w * w
    num = (w0 / q) * (w0sq + wsq)
    den = (w0sq - wsq) ** 2 + (w0 * w / q) ** 2
    return num / den if den else 0.0


def notch_group_delay(notch_hz, freq_hz, q=3.0):
    """Approximate delay of a biquad notch away from its centre."""
    if notch_hz <= 0:
        return 0.0
    w0 = 2 * math.pi * notch_hz
    w = 2 * math.pi * freq_hz
    w0sq, wsq = w0 * w0, w * w
    bw = w0 / q
    num_term = 2 * w / (w0sq + wsq)
    den_term = bw * (w0sq + wsq) / ((w0sq - wsq) ** 2 + bw * bw * wsq)
    return abs(den_term - num_term)


def estimate_group_delay(settings, reference_hz=GROUP_DELAY_REFERENCE_HZ,
                         warning_ms=GROUP_DELAY_WARNING_MS):
    """Per-stage and per-path delay in ms for a filter settings dict."""
    stages = []
    gyro_s = dterm_s = 0.0

    def stage(name, cutoff, delay):
        stages.append({"type": name, "cutoff_hz": cutoff, "delay_ms": delay * 1000})
        return delay

    lpf1 = settings.get("gyro_lpf1_static_hz", 0)
    if lpf1 > 0:
        gyro_s += stage("gyro_lpf1", lpf1, pt1_group_delay(lpf1, reference_hz))
    lpf2 = settings.get("gyro_lpf2_static_hz", 0)
    if lpf2 > 0:
        gyro_s += stage("gyro_lpf2", lpf2, biquad_group_delay(lpf2, reference_hz))

    n_min, n_max = settings.get("dyn_notch_min_hz", 0), settings.get("dyn_notch_max_hz", 0)
    count = settings.get("dyn_notch_count", DEFAULT_NOTCH_COUNT)
    if n_min > 0 and n_max > 0 and count > 0:
        centre = (n_min + n_max) / 2
        q = settings.get("dyn_notch_q", DEFAULT_NOTCH_Q)
        q = q / 100 if q > 10 else q    # stored as Q*100 on the FC
        gyro_s += stage("dyn_notch", centre, notch_group_delay(centre, reference_hz, q) * count)

    d1 = settings.get("dterm_lpf1_static_hz", 0)
    if d1 > 0:
        dterm_s += stage("dterm_lpf1", d1, pt1_group_delay(d1, reference_hz))
    d2 = settings.get("dterm_lpf2_static_hz", 0)
    if d2 > 0:
        dterm_s += stage("dterm_lpf2", d2, biquad_group_delay(d2, reference_hz))

    gyro_ms = gyro_s * 1000
    result = {
        "filters": stages,
        "gyro_total_ms": round(gyro_ms, 2),
        "dterm_total_ms": round(dterm_s * 1000, 2),
        "reference_hz": reference_hz,
        "warning": None,
    }
    if gyro_ms > warning_ms:
        result["warning"] = (
            f"Gyro filter chain adds {gyro_ms:.1f}ms of delay at {reference_hz} Hz. "
            "This may cause sluggish response; consider raising cutoffs or enabling the "
            "RPM filter to lean less on software filtering.")
    return result
