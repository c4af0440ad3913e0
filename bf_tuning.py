#!/usr/bin/env python3
"""
Betaflight Tuning Orchestrator
──────────────────────────────
Two-flight tuning cycle with a persistent per-device session.

  1. Filter flight (hover + throttle sweeps) -> noise analysis -> apply filters
  2. PID flight (stick snaps) -> step-response analysis -> apply PIDs
  3. Optional verification flight

Phases, in order:

    filter_flight_pending -> filter_log_ready -> filter_analysis -> filter_applied
    -> pid_flight_pending -> pid_log_ready -> pid_analysis -> pid_applied
    -> verification_pending -> completed

Only the single next phase is reachable, except pid_applied -> completed
(verification skipped). A session survives restarts and disconnects: it is
persisted keyed by the FC's UID. When the FC reconnects while a
*_flight_pending phase is active and its flash holds data, the session
advances to *_log_ready on its own.

Usage:
    from bf_tuning import TuningOrchestrator, SessionStore
    from bf_session_db import SQLiteBackend

    store = SessionStore(SQLiteBackend("~/.bftune/bftune.db"))
    tuner = TuningOrchestrator(device, store, data_dir="~/.bftune")
    tuner.start_session()
"""

import logging
import os
import re
import threading
import time

import numpy as np

import bf_analysis
from bf_blackbox import decode_file
from bf_constants import AXIS_NAMES, DEFAULT_FLIGHT_STYLE
from bf_errors import BFTuneError, SnapshotError, TuningStateError
from bf_msp import REBOOT_WAIT
from bf_noise import rpm_filter_active
from bf_quality import tune_quality_score
from bf_session_db import MemoryBackend, new_id, now_iso

log = logging.getLogger("bftune.tuning")

PHASES = (
    "filter_flight_pending",
    "filter_log_ready",
    "filter_analysis",
    "filter_applied",
    "pid_flight_pending",
    "pid_log_ready",
    "pid_analysis",
    "pid_applied",
    "verification_pending",
    "completed",
)

TRANSITIONS = {a: {b} for a, b in zip(PHASES, PHASES[1:])}
TRANSITIONS["pid_applied"].add("completed")
TRANSITIONS["completed"] = set()

FLIGHT_PENDING = {"filter_flight_pending": "filter_log_ready",
                  "pid_flight_pending": "pid_log_ready"}

COMPACT_SPECTRUM_BINS = 128

PID_SETTING = re.compile(r"^([pid])_(roll|pitch|yaw)$")
FEEDFORWARD_SETTING = re.compile(r"^(f_(roll|pitch|yaw)|feedforward_\w+)$")


def can_transition(current, target):
    return target in TRANSITIONS.get(current, ())


# ─── Session Store ────────────────────────────────────────────────────────────

class SessionStore:
    """Active sessions keyed by profile id, over a persistence backend.

    Every change is pushed to subscribers as fn(profile_id, session_or_None).
    """

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else MemoryBackend()
        self._subscribers = []
        self._lock = threading.RLock()

    def subscribe(self, fn):
        """Register fn; returns a callable that unsubscribes it."""
        self._subscribers.append(fn)
        return lambda: self._subscribers.remove(fn) if fn in self._subscribers else None

    def _notify(self, profile_id, session):
        for fn in list(self._subscribers):
            fn(profile_id, session)

    def get(self, profile_id):
        return self.backend.load_session(profile_id)

    def create(self, profile_id, **extra):
        now = now_iso()
        session = {"profile_id": profile_id, "phase": PHASES[0],
                   "started_at": now, "updated_at": now}
        session.update(extra)
        with self._lock:
            self.backend.save_session(session)
        log.info(f"Tuning session created for {profile_id}")
        self._notify(profile_id, session)
        return session

    def update(self, profile_id, phase=None, **extra):
        """Merge extra fields and optionally move to phase; illegal moves raise."""
        with self._lock:
            session = self.backend.load_session(profile_id)
            if session is None:
                raise TuningStateError(f"No tuning session for {profile_id}")
            if phase is not None and phase != session["phase"]:
                if not can_transition(session["phase"], phase):
                    raise TuningStateError(
                        f"Cannot move from {session['phase']} to {phase}")
                log.info(f"Tuning phase: {session['phase']} -> {phase}")
                session["phase"] = phase
            session.update(extra)
            session["updated_at"] = now_iso()
            self.backend.save_session(session)
        self._notify(profile_id, session)
        return session

    def delete(self, profile_id):
        with self._lock:
            self.backend.delete_session(profile_id)
        self._notify(profile_id, None)


# ─── Compact Metrics ──────────────────────────────────────────────────────────

def compact_spectrum(noise, bins=COMPACT_SPECTRUM_BINS):
    """Downsample each axis spectrum to at most `bins` points (mean per bin)."""
    freqs = np.asarray(noise["roll"]["spectrum"]["freqs"])
    if len(freqs) == 0:
        return None
    groups = np.array_split(np.arange(len(freqs)), min(bins, len(freqs)))
    out = {"frequencies": [round(float(freqs[g].mean()), 1) for g in groups]}
    for axis in AXIS_NAMES:
        db = np.asarray(noise[axis]["spectrum"]["db"])
        if len(db) != len(freqs):
            out[axis] = None
            continue
        out[axis] = [round(float(db[g].mean()), 2) for g in groups]
    return out


def filter_metrics(result, current_filters=None):
    noise = result["noise"]
    metrics = {
        "noise_level": noise["level"],
        "segments_used": result["segments_used"],
        "rpm_filter_active": rpm_filter_active(current_filters or {}),
        "summary": result["summary"],
        "spectrum": compact_spectrum(noise),
        "data_quality": {"overall": result["data_quality"]["overall"],
                         "tier": result["data_quality"]["tier"]},
    }
    for axis in AXIS_NAMES:
        metrics[axis] = {"noise_floor_db": round(noise[axis]["noise_floor_db"], 2),
                         "peak_count": len(noise[axis]["peaks"])}
    return metrics


def pid_metrics(result, current_pids):
    metrics = {
        "steps_detected": result["steps_detected"],
        "current_pids": current_pids,
        "summary": result["summary"],
        "data_quality": {"overall": result["data_quality"]["overall"],
                         "tier": result["data_quality"]["tier"]},
    }
    for axis in AXIS_NAMES:
        prof = result["axes"][axis]
        metrics[axis] = {k: round(prof[k], 2) for k in (
            "mean_overshoot", "mean_rise_time_ms", "mean_settling_time_ms",
            "mean_latency_ms", "mean_tracking_rms")}
    return metrics


# ─── Orchestrator ─────────────────────────────────────────────────────────────

class TuningOrchestrator:
    """Drives one device through the tuning phases.

    device:   BetaflightDevice (or anything with the same methods)
    store:    SessionStore
    analysis: object with analyze_filters / analyze_pid (the bf_analysis module by default)
    """

    def __init__(self, device, store=None, data_dir=".", analysis=bf_analysis,
                 style=DEFAULT_FLIGHT_STYLE, reboot_wait=REBOOT_WAIT, profile_id=None):
        self.device = device
        self.store = store or SessionStore()
        self.data_dir = os.path.expanduser(data_dir)
        self.analysis = analysis
        self.style = style
        self.reboot_wait = reboot_wait
        self._profile_id = profile_id
        self._lock = threading.RLock()
        self.last_result = None
        if hasattr(device, "add_connect_listener"):
            device.add_connect_listener(lambda dev: self.on_device_connected())

    @property
    def backend(self):
        return self.store.backend

    @property
    def profile_id(self):
        if self._profile_id is None:
            self._profile_id = self.device.get_info()["uid"]
        return self._profile_id

    # ── Session access ────────────────────────────────────────────────────

    def get_session(self):
        return self.store.get(self.profile_id)

    def subscribe(self, fn):
        return self.store.subscribe(fn)

    def history(self):
        """Completed tuning records, newest first."""
        return self.backend.list_history(self.profile_id)

    def _require(self, *phases):
        session = self.get_session()
        if session is None:
            raise TuningStateError("No active tuning session")
        if phases and session["phase"] not in phases:
            raise TuningStateError(
                f"Not allowed in phase {session['phase']} (needs {' or '.join(phases)})")
        return session

    def update_phase(self, phase, **extra):
        with self._lock:
            return self.store.update(self.profile_id, phase, **extra)

    def reset_session(self):
        """Drop the active session without archiving it."""
        with self._lock:
            self.store.delete(self.profile_id)
        log.info("Tuning session reset")

    # ── Snapshots ─────────────────────────────────────────────────────────

    def take_snapshot(self, label):
        try:
            content = self.device.snapshot_settings()
        except BFTuneError as e:
            raise SnapshotError(f"Could not read settings for snapshot '{label}': {e}") from e
        sid = self.backend.save_snapshot(self.profile_id, label, content)
        log.info(f"Snapshot '{label}' saved ({sid})")
        return sid

    # ── Actions ───────────────────────────────────────────────────────────

    def start_session(self):
        """Begin a tuning cycle with a baseline snapshot of the current settings."""
        with self._lock:
            if self.get_session() is not None:
                raise TuningStateError("A tuning session is already active; reset it first")
            baseline = self.take_snapshot("Pre-tuning (auto)")
            return self.store.create(self.profile_id, baseline_snapshot_id=baseline)

    def mark_flight_flown(self):
        """Manual confirmation that the pending test flight has been flown."""
        with self._lock:
            session = self._require(*FLIGHT_PENDING)
            return self.update_phase(FLIGHT_PENDING[session["phase"]])

    def on_device_connected(self):
        """Reconnect observer: auto-advance a pending flight when flash holds data."""
        with self._lock:
            session = self.get_session()
            if session is None or session["phase"] not in FLIGHT_PENDING:
                return session
            summary = self.device.get_dataflash_summary()
            if summary["used_size"] <= 0:
                log.debug("Reconnected with empty flash, still waiting for the flight")
                return session
            log.info(f"Flash holds {summary['used_size']:,} bytes, flight detected")
            return self.update_phase(FLIGHT_PENDING[session["phase"]])

    def erase_flash(self):
        """Erase the FC's flash ahead of the next test flight.

        From filter_applied / pid_applied this also moves on to the next flight phase.
        """
        with self._lock:
            session = self._require("filter_applied", "pid_applied",
                                    "filter_flight_pending", "pid_flight_pending",
                                    "verification_pending")
            if not self.device.erase_dataflash():
                raise BFTuneError("Flash erase did not finish")
            nxt = {"filter_applied": "pid_flight_pending",
                   "pid_applied": "verification_pending"}.get(session["phase"])
            if nxt:
                return self.update_phase(nxt)
            return session

    def download_log(self, progress_callback=None):
        """Pull the flash contents into the data directory and record the log."""
        with self._lock:
            session = self._require("filter_log_ready", "pid_log_ready", "verification_pending")
            data = self.device.download_blackbox(progress_callback=progress_callback)
            if not data:
                raise BFTuneError("Flash is empty, nothing to download")
            kind = session["phase"].split("_")[0]
            log_dir = os.path.join(self.data_dir, "logs", self.profile_id)
            os.makedirs(log_dir, exist_ok=True)
            path = os.path.join(log_dir, f"{time.strftime('%Y%m%d_%H%M%S')}_{kind}.bbl")
            with open(path, "wb") as f:
                f.write(data)
            log_id = self.backend.save_log(self.profile_id, path, len(data), {"kind": kind})
            log.info(f"Saved {len(data):,} bytes to {path}")

            if kind == "verification":
                return self.store.update(self.profile_id, verification_log_id=log_id)
            return self.update_phase(f"{kind}_analysis", **{f"{kind}_log_id": log_id})

    def _load_flight(self, log_id, session_index=None):
        entry = self.backend.get_log(log_id) if log_id else None
        if entry is None:
            raise TuningStateError("No downloaded log for this phase")
        sessions = decode_file(entry["path"])
        if session_index is None:
            return max(sessions, key=lambda s: s.frame_count)
        return sessions[session_index]

    def _current_filters(self):
        if self.device.is_connected:
            return self.device.get_filter_config()
        return None

    def run_filter_analysis(self, session_index=None, on_progress=None, cancel=None):
        with self._lock:
            session = self._require("filter_analysis")
            flight = self._load_flight(session.get("filter_log_id"), session_index)
            current = self._current_filters()
            result = self.analysis.analyze_filters(flight, current, on_progress=on_progress,
                                                   cancel=cancel)
            self.store.update(self.profile_id, filter_metrics=filter_metrics(result, current))
            self.last_result = result
            return result

    def run_pid_analysis(self, session_index=None, on_progress=None, cancel=None):
        with self._lock:
            session = self._require("pid_analysis")
            flight = self._load_flight(session.get("pid_log_id"), session_index)
            current = self.device.get_pid_config() if self.device.is_connected else None
            result = self.analysis.analyze_pid(flight, current, self.style,
                                               on_progress=on_progress, cancel=cancel)
            self.store.update(self.profile_id,
                              pid_metrics=pid_metrics(result, current or result["flight_pids"]))
            self.last_result = result
            return result

    # ── Apply ─────────────────────────────────────────────────────────────

    def _apply(self, filter_recs, pid_recs, ff_recs, label):
        """Write recommendations to the FC and reboot it.

        Binary writes go first: once the FC is in CLI mode it ignores MSP
        until it reboots. Returns (filter, pid, feedforward changes, pre, post snapshot ids).
        """
        pre = self.take_snapshot(f"Before {label} (auto)")

        pid_changes = []
        if pid_recs:
            pids = {}
            for rec in pid_recs:
                term, axis = PID_SETTING.match(rec["setting"]).groups()
                pids.setdefault(axis, {})[term] = int(round(rec["recommended"]))
                pid_changes.append(_change(rec))
            self.device.set_pid_config(pids)

        ff_changes = []
        if ff_recs:
            self.device.set_feedforward_config(
                {r["setting"]: int(round(r["recommended"])) for r in ff_recs})
            ff_changes = [_change(r) for r in ff_recs]

        filter_changes = []
        if filter_recs:
            self.device.cli_set({r["setting"]: int(round(r["recommended"])) for r in filter_recs})
            filter_changes = [_change(r) for r in filter_recs]
            self.device.save_and_reboot()
        else:
            self.device.write_eeprom()
            self.device.reboot()

        self.device.reconnect(wait=self.reboot_wait)
        post = self.take_snapshot(f"After {label} (auto)")
        return filter_changes, pid_changes, ff_changes, pre, post

    def apply_filters(self, recommendations):
        """Apply filter recommendations; commits filter_applied only after the FC is back."""
        with self._lock:
            self._require("filter_analysis")
            if not recommendations:
                raise BFTuneError("No filter recommendations to apply")
            changes, _, _, pre, post = self._apply(recommendations, [], [], "filter tuning")
            return self.update_phase("filter_applied", applied_filter_changes=changes,
                                     pre_filter_snapshot_id=pre, post_filter_snapshot_id=post)

    def apply_pids(self, recommendations, feedforward=None):
        with self._lock:
            self._require("pid_analysis")
            pid_recs = [r for r in recommendations if PID_SETTING.match(r["setting"])]
            ff_recs = [r for r in recommendations if FEEDFORWARD_SETTING.match(r["setting"])]
            ff_recs += list(feedforward or [])
            unknown = [r["setting"] for r in recommendations
                       if r not in pid_recs and r not in ff_recs]
            if unknown:
                raise BFTuneError(f"Not PID or feedforward settings: {', '.join(unknown)}")
            if not pid_recs and not ff_recs:
                raise BFTuneError("No PID recommendations to apply")
            _, pid_changes, ff_changes, pre, post = self._apply([], pid_recs, ff_recs, "PID tuning")
            return self.update_phase("pid_applied", applied_pid_changes=pid_changes,
                                     applied_feedforward_changes=ff_changes,
                                     pre_pid_snapshot_id=pre, post_tuning_snapshot_id=post)

    # ── Completion ────────────────────────────────────────────────────────

    def skip_verification(self):
        with self._lock:
            self._require("pid_applied")
            return self._complete()

    def complete_verification(self, session_index=None, on_progress=None):
        """Analyze the verification flight's noise, then finish the cycle."""
        with self._lock:
            session = self._require("verification_pending")
            metrics = None
            if session.get("verification_log_id"):
                flight = self._load_flight(session["verification_log_id"], session_index)
                current = self._current_filters()
                result = self.analysis.analyze_filters(flight, current, on_progress=on_progress)
                metrics = filter_metrics(result, current)
            return self._complete(verification_metrics=metrics)

    def dismiss(self):
        """Abandon the cycle, keeping what was applied so far in the history."""
        with self._lock:
            session = self._require()
            record = self._archive(dict(session, updated_at=now_iso()), outcome="dismissed")
            self.store.delete(self.profile_id)
            return record

    def _complete(self, **extra):
        session = self.update_phase("completed", **extra)
        record = self._archive(session, outcome="completed")
        self.store.delete(self.profile_id)
        return record

    def _archive(self, session, outcome):
        fm = session.get("filter_metrics")
        pm = session.get("pid_metrics")
        record = {
            "id": new_id(),
            "profile_id": session["profile_id"],
            "outcome": outcome,
            "final_phase": session["phase"],
            "started_at": session["started_at"],
            "completed_at": session["updated_at"],
            "baseline_snapshot_id": session.get("baseline_snapshot_id"),
            "post_filter_snapshot_id": session.get("post_filter_snapshot_id"),
            "post_tuning_snapshot_id": session.get("post_tuning_snapshot_id"),
            "filter_log_id": session.get("filter_log_id"),
            "pid_log_id": session.get("pid_log_id"),
            "verification_log_id": session.get("verification_log_id"),
            "applied_filter_changes": session.get("applied_filter_changes", []),
            "applied_pid_changes": session.get("applied_pid_changes", []),
            "applied_feedforward_changes": session.get("applied_feedforward_changes", []),
            "filter_metrics": fm,
            "pid_metrics": pm,
            "verification_metrics": session.get("verification_metrics"),
            "tune_quality": tune_quality_score(fm, pm),
        }
        self.backend.append_history(record)
        log.info(f"Tuning {outcome}: archived as {record['id']}")
        return record


def _change(rec):
    return {"setting": rec["setting"], "previous": rec["current"],
            "new": int(round(rec["recommended"]))}
