#!/usr/bin/env python3
"""
Flight segment selection for noise analysis.

Two kinds of segment:
  - steady hover: mid throttle, low roll/pitch gyro variance
  - throttle sweep: a roughly linear throttle ramp across a wide range,
    which carries noise across the whole RPM band

Segments are dicts: start/end sample index (end exclusive), duration in
seconds and average normalized throttle.

Usage:
    from bf_segments import find_steady_segments, find_throttle_sweeps

    steady = find_steady_segments(throttle, gyro_roll, gyro_pitch, sample_rate)
"""

import numpy as np

from bf_constants import (
    GYRO_STEADY_MAX_STD, SEGMENT_MIN_DURATION_S, SEGMENT_WINDOW_DURATION_S,
    SWEEP_MAX_DURATION_S, SWEEP_MAX_RESIDUAL, SWEEP_MIN_DURATION_S,
    SWEEP_MIN_THROTTLE_RANGE, SWEEP_SMOOTHING_S, THROTTLE_MAX_HOVER,
    THROTTLE_MIN_FLIGHT,
)

# Throttle is slow; sweeps are searched on a decimated copy
SWEEP_SEARCH_RATE_HZ = 100


def normalize_throttle(values):
    """Map throttle to 0-1 whether logged as 1000-2000, 0-1000, 0-100 or 0-1."""
    v = np.asarray(values, dtype=np.float64)
    return np.where(v > 1000, (v - 1000) / 1000,
                    np.where(v > 100, v / 1000,
                             np.where(v > 1, v / 100, v)))


def rolling_std(x, half):
    """Population std over [i-half, i+half) for every i, clipped at the edges."""
    x = np.asarray(x, dtype=np.float64)
    n = len(x)
    c1 = np.concatenate(([0.0], np.cumsum(x)))
    c2 = np.concatenate(([0.0], np.cumsum(x * x)))
    idx = np.arange(n)
    lo = np.maximum(0, idx - half)
    hi = np.minimum(n, idx + half)
    cnt = hi - lo
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = (c1[hi] - c1[lo]) / cnt
        var = (c2[hi] - c2[lo]) / cnt - mean * mean
    std = np.sqrt(np.clip(var, 0, None))
    std[cnt <= 1] = 0.0
    return std


def _runs(mask):
    """(start, end) pairs of contiguous True runs, end exclusive."""
    padded = np.concatenate(([False], mask, [False]))
    edges = np.flatnonzero(np.diff(padded.astype(np.int8)))
    return list(zip(edges[::2], edges[1::2]))


def _segment(start, end, throttle_norm, sample_rate, time_s=None):
    start, end = int(start), int(end)
    if time_s is not None and end - 1 < len(time_s):
        duration = float(time_s[end - 1] - time_s[start])
    else:
        duration = 0.0
    if duration <= 0:
        duration = (end - start) / sample_rate
    return {
        "start": start,
        "end": end,
        "duration": duration,
        "avg_throttle": float(np.mean(throttle_norm[start:end])),
    }


def find_steady_segments(throttle, gyro_roll, gyro_pitch, sample_rate, time_s=None):
    """Stable hover segments, longest first."""
    n = len(throttle)
    if n == 0:
        return []
    thr = normalize_throttle(throttle)
    window = min(int(SEGMENT_WINDOW_DURATION_S * sample_rate), n)
    half = window // 2
    min_samples = int(SEGMENT_MIN_DURATION_S * sample_rate)

    mask = (thr >= THROTTLE_MIN_FLIGHT) & (thr <= THROTTLE_MAX_HOVER)
    mask &= rolling_std(gyro_roll, half) <= GYRO_STEADY_MAX_STD
    mask &= rolling_std(gyro_pitch, half) <= GYRO_STEADY_MAX_STD

    segments = [_segment(s, e, thr, sample_rate, time_s)
                for s, e in _runs(mask) if e - s >= min_samples]
    segments.sort(key=lambda s: s["duration"], reverse=True)
    return segments


def smooth_throttle(values, window):
    """Normalized throttle through a centred moving average."""
    thr = normalize_throttle(values)
    if window <= 1:
        return thr
    n = len(thr)
    half = window // 2
    c = np.concatenate(([0.0], np.cumsum(thr)))
    idx = np.arange(n)
    lo = np.maximum(0, idx - half)
    hi = np.minimum(n, idx + half + 1)
    return (c[hi] - c[lo]) / (hi - lo)


def linear_residual(y):
    """RMSE of a straight-line fit divided by the data range; 1 for a flat line."""
    y = np.asarray(y, dtype=np.float64)
    n = len(y)
    if n <= 2:
        return 0.0
    rng = y.max() - y.min()
    if rng == 0:
        return 1.0
    x = np.arange(n)
    b, a = np.polyfit(x, y, 1)
    rmse = np.sqrt(np.mean((y - (a + b * x)) ** 2))
    return float(rmse / rng)


def _prefix_sums(y):
    k = np.arange(len(y), dtype=np.float64)
    return (np.concatenate(([0.0], np.cumsum(y))),
            np.concatenate(([0.0], np.cumsum(k * y))),
            np.concatenate(([0.0], np.cumsum(y * y))))


def _rmse_for_ends(sums, start, ends):
    """Straight-line fit RMSE of y[start:end] for many ends at once."""
    s_y, s_ky, s_yy = sums
    n = (ends - start).astype(np.float64)
    sy = s_y[ends] - s_y[start]
    sxy = (s_ky[ends] - s_ky[start]) - start * sy   # x = k - start
    syy = s_yy[ends] - s_yy[start]
    sx = n * (n - 1) / 2
    sxx = (n - 1) * n * (2 * n - 1) / 6
    with np.errstate(invalid="ignore", divide="ignore"):
        b = (n * sxy - sx * sy) / (n * sxx - sx * sx)
        a = (sy - b * sx) / n
        ss_res = syy - 2 * a * sy - 2 * b * sxy + n * a * a + 2 * a * b * sx + b * b * sxx
        rmse = np.sqrt(np.clip(ss_res, 0, None) / n)
    return rmse


def find_throttle_sweeps(throttle, sample_rate, time_s=None):
    """Throttle ramp segments, widest throttle range first."""
    n = len(throttle)
    if n == 0:
        return []
    smooth = smooth_throttle(throttle, max(1, int(sample_rate * SWEEP_SMOOTHING_S)))

    step = max(1, int(sample_rate // SWEEP_SEARCH_RATE_HZ))
    y = smooth[::step]
    rate = sample_rate / step
    m = len(y)
    min_len = int(SWEEP_MIN_DURATION_S * rate)
    max_len = int(SWEEP_MAX_DURATION_S * rate)
    if m < min_len or min_len < 3:
        return []

    sums = _prefix_sums(y)
    found = []
    i = 0
    while i < m - min_len:
        if y[i] < THROTTLE_MIN_FLIGHT:
            i += 1
            continue
        ends = np.arange(i + min_len, min(i + max_len, m) + 1)
        ranges = np.abs(y[ends - 1] - y[i])
        ok = ranges >= SWEEP_MIN_THROTTLE_RANGE
        if not ok.any():
            i += 1
            continue
        ends, ranges = ends[ok], ranges[ok]
        tail = y[i:ends[-1]]
        spans = (np.maximum.accumulate(tail) - np.minimum.accumulate(tail))[ends - 1 - i]
        rmse = _rmse_for_ends(sums, i, ends)
        with np.errstate(invalid="ignore", divide="ignore"):
            resid = np.where(spans > 0, rmse / spans, 1.0)
        good = resid <= SWEEP_MAX_RESIDUAL
        if not good.any():
            i += 1
            continue
        best = ends[good][np.argmax(ranges[good])]
        found.append((i, int(best)))
        i = int(best)

    segments = []
    for s, e in found:
        start, end = s * step, min(n, e * step)
        seg = _segment(start, end, smooth, sample_rate, time_s)
        seg["throttle_range"] = float(smooth[start:end].max() - smooth[start:end].min())
        segments.append(seg)
    segments.sort(key=lambda s: s["throttle_range"], reverse=True)
    return segments
