#!/usr/bin/env python3
"""
Analysis pipeline entry points.

    analyze_filters  segments -> spectra -> noise profile -> filter recommendations
    analyze_pid      step detection -> step metrics -> PID recommendations
    analyze_chirp    swept-sine detection -> transfer function -> Bode metrics

Every function takes a decoded LogSession plus current device settings and
returns a plain dict. No I/O, no hidden state. Coarse progress checkpoints
go to an optional on_progress({"step", "percent"}) callback; a set
threading.Event passed as cancel aborts at the next checkpoint with
AnalysisCancelled.

AnalysisJob runs any of them on a worker thread and exposes the checkpoints
as an iterator, for callers that need to stay responsive on large logs.

Usage:
    from bf_analysis import analyze_filters, AnalysisJob

    result = analyze_filters(session, current_filters)

    job = AnalysisJob(analyze_pid, session, current_pids)
    for event in job.events():
        print(event["step"], event["percent"])
    result = job.result()
"""

import logging
import queue
import threading
import time

from bf_chirp import analyze_chirp_session, estimate_transfer_functions
from bf_constants import (
    AXIS_NAMES, DEFAULT_FILTERS, DEFAULT_FLIGHT_STYLE, DEFAULT_PIDS,
    FFT_MIN_WINDOW, FFT_WINDOW_SIZE, MAX_SEGMENTS,
)
from bf_errors import AnalysisCancelled
from bf_group_delay import estimate_group_delay
from bf_noise import (
    analyze_axis_noise, build_noise_profile, compute_spectrum, filter_summary,
    recommend_filters, trim_spectrum,
)
from bf_quality import (
    adjust_confidence, enrich_filter_settings, score_filter_data, score_pid_data,
    validate_header,
)
from bf_segments import find_steady_segments, find_throttle_sweeps
from bf_step import (
    aggregate_axis, compute_step_response, detect_steps, extract_flight_pids,
    pid_summary, recommend_pids,
)

log = logging.getLogger("bftune.analysis")


def _checkpoint(on_progress, cancel, step, percent):
    if cancel is not None and cancel.is_set():
        raise AnalysisCancelled(f"Analysis cancelled at {step}")
    if on_progress:
        on_progress({"step": step, "percent": percent})


# ─── Filters ──────────────────────────────────────────────────────────────────

def select_segments(session):
    """Segments for noise analysis: throttle sweeps if any, else steady hovers.

    Returns (segments, used_sweeps).
    """
    ch = session.channels
    throttle = ch["setpoint"][3]
    sweeps = find_throttle_sweeps(throttle, session.sample_rate, session.time_s)
    if sweeps:
        return sweeps[:MAX_SEGMENTS], True
    steady = find_steady_segments(throttle, ch["gyro"][0], ch["gyro"][1],
                                  session.sample_rate, session.time_s)
    return steady[:MAX_SEGMENTS], False


def analyze_filters(session, current=None, on_progress=None, cancel=None):
    """Noise profile and filter recommendations for one flight."""
    started = time.time()
    # device values, then log header, then firmware defaults
    current = dict(DEFAULT_FILTERS, **enrich_filter_settings(current or {}, session.raw_headers))

    _checkpoint(on_progress, cancel, "segmenting", 5)
    segments, used_sweeps = select_segments(session)
    gyro = session.channels["gyro"]
    if segments:
        windows = [(s["start"], s["end"]) for s in segments]
    else:
        log.info("No steady segments found, analyzing the whole flight")
        windows = [(0, len(gyro[0]))]

    _checkpoint(on_progress, cancel, "fft", 20)
    spectra = [[], [], []]
    for k, (start, end) in enumerate(windows):
        for axis in range(3):
            values = gyro[axis][start:end]
            if len(values) < FFT_MIN_WINDOW:
                continue
            spectrum = compute_spectrum(values, session.sample_rate, FFT_WINDOW_SIZE)
            spectra[axis].append(trim_spectrum(spectrum))
        _checkpoint(on_progress, cancel, "fft", round(20 + (k + 1) / len(windows) * 40))

    _checkpoint(on_progress, cancel, "analyzing", 65)
    noise = build_noise_profile(*(analyze_axis_noise(s) for s in spectra))

    _checkpoint(on_progress, cancel, "recommending", 85)
    quality, warnings = score_filter_data(segments, used_sweeps)
    warnings = validate_header(session.header, session.raw_headers) + warnings
    recs = adjust_confidence(recommend_filters(noise, current), quality["tier"])
    proposed = dict(current, **{r["setting"]: r["recommended"] for r in recs})
    result = {
        "session_index": session.index,
        "noise": noise,
        "recommendations": recs,
        "summary": filter_summary(noise, recs),
        "segments_used": len(segments),
        "used_sweeps": used_sweeps,
        "data_quality": quality,
        "warnings": warnings,
        "group_delay": estimate_group_delay(current),
        "proposed_group_delay": estimate_group_delay(proposed),
        "analysis_time_ms": round((time.time() - started) * 1000),
    }
    _checkpoint(on_progress, cancel, "recommending", 100)
    log.debug(f"Filter analysis: {len(recs)} recommendation(s), noise {noise['level']}")
    return result


# ─── PID ──────────────────────────────────────────────────────────────────────

def analyze_pid(session, current=None, style=DEFAULT_FLIGHT_STYLE, on_progress=None,
                cancel=None):
    """Step-response profile and PID recommendations for one flight."""
    started = time.time()
    current = current or DEFAULT_PIDS
    ch = session.channels

    _checkpoint(on_progress, cancel, "detecting", 10)
    steps = detect_steps(ch["setpoint"][:3], session.sample_rate)

    _checkpoint(on_progress, cancel, "measuring", 30)
    by_axis = {name: [] for name in AXIS_NAMES}
    for k, step in enumerate(steps):
        a = step["axis"]
        by_axis[AXIS_NAMES[a]].append(
            compute_step_response(ch["setpoint"][a], ch["gyro"][a], step, session.sample_rate))
        if k % 10 == 9:
            _checkpoint(on_progress, cancel, "measuring", round(30 + (k + 1) / len(steps) * 40))
    _checkpoint(on_progress, cancel, "measuring", 70)

    _checkpoint(on_progress, cancel, "scoring", 80)
    profiles = {name: aggregate_axis(rs) for name, rs in by_axis.items()}
    flight_pids = extract_flight_pids(session.raw_headers)
    quality, warnings = score_pid_data(by_axis)
    recs = adjust_confidence(recommend_pids(profiles, current, flight_pids, style),
                             quality["tier"])
    result = {
        "session_index": session.index,
        "axes": profiles,
        "recommendations": recs,
        "summary": pid_summary(profiles, recs),
        "steps_detected": len(steps),
        "flight_pids": flight_pids,
        "style": style,
        "data_quality": quality,
        "warnings": warnings,
        "transfer_functions": estimate_transfer_functions(session),
        "analysis_time_ms": round((time.time() - started) * 1000),
    }
    _checkpoint(on_progress, cancel, "scoring", 100)
    log.debug(f"PID analysis: {len(steps)} step(s), {len(recs)} recommendation(s)")
    return result


# ─── Chirp ────────────────────────────────────────────────────────────────────

def analyze_chirp(session, on_progress=None, cancel=None):
    """Chirp result dict, or None when the flight carries no swept sine."""
    _checkpoint(on_progress, cancel, "detecting", 10)
    result = analyze_chirp_session(session)
    _checkpoint(on_progress, cancel, "transfer", 100)
    return result


# ─── Background Runner ────────────────────────────────────────────────────────

_DONE = object()


class AnalysisJob:
    """Run an analysis function on a worker thread.

    events() yields progress dicts until the function finishes; result()
    returns its value or re-raises its exception. cancel() stops it at the
    next checkpoint.
    """

    def __init__(self, func, *args, **kwargs):
        self._queue = queue.Queue()
        self._cancel = threading.Event()
        self._result = None
        self._error = None
        kwargs["on_progress"] = self._queue.put
        kwargs["cancel"] = self._cancel
        self._thread = threading.Thread(target=self._run, args=(func, args, kwargs),
                                        name="bftune-analysis", daemon=True)
        self._thread.start()

    def _run(self, func, args, kwargs):
        try:
            self._result = func(*args, **kwargs)
        except Exception as e:
            self._error = e
        finally:
            self._queue.put(_DONE)

    def events(self):
        while True:
            item = self._queue.get()
            if item is _DONE:
                return
            yield item

    def cancel(self):
        self._cancel.set()

    def result(self, timeout=None):
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("Analysis still running")
        if self._error is not None:
            raise self._error
        return self._result
