#!/usr/bin/env python3
"""
Betaflight Tune
───────────────
Command-line front end: analyze blackbox logs offline, or drive the
two-flight tuning cycle against a connected flight controller.

Usage:
    # Offline analysis of a downloaded log
    bftune analyze flight.bbl --charts ./out
    bftune analyze flight.bbl --pid --style aggressive

    # FC identification and raw flash download
    bftune --port /dev/ttyACM0 info
    bftune download -o flight.bbl

    # Guided tuning cycle (state persists in ~/.bftune between runs)
    bftune start          # baseline snapshot, fly the filter flight
    bftune status
    bftune fetch          # download the test flight log
    bftune filters --apply
    bftune erase          # ready for the PID flight
    bftune fetch
    bftune pids --apply
    bftune skip-verify    # or: bftune erase / fetch / verify
    bftune history
"""

import argparse
import logging
import os
import sys

from bf_analysis import AnalysisJob, analyze_chirp, analyze_filters, analyze_pid
from bf_blackbox import decode_file
from bf_constants import DEFAULT_FLIGHT_STYLE, FLIGHT_STYLES
from bf_errors import BFTuneError
from bf_msp import DEFAULT_BAUD, BetaflightDevice, auto_detect_fc
from bf_report import (
    create_bode_chart, create_noise_chart, create_step_chart, print_chirp_report,
    print_filter_report, print_history, print_pid_report, print_session_status,
)
from bf_session_db import DB_FILENAME, SQLiteBackend, default_data_dir
from bf_tuning import SessionStore, TuningOrchestrator

VERSION = "1.0.0"

log = logging.getLogger("bftune")


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _progress(label):
    def cb(done, total):
        print(f"\r  {label}: {done * 100 // max(total, 1):3d}%", end="", flush=True)
        if done >= total:
            print()
    return cb


def _run_with_progress(func, *args, **kwargs):
    job = AnalysisJob(func, *args, **kwargs)
    for event in job.events():
        log.debug(f"  {event['step']} {event['percent']}%")
    return job.result()


def open_device(args):
    if args.port == "auto":
        fc, _ = auto_detect_fc(baudrate=args.baud)
        if fc is None:
            raise BFTuneError("No Betaflight flight controller found")
        return fc
    fc = BetaflightDevice(args.port, baudrate=args.baud)
    fc.open()
    return fc


def open_orchestrator(args, fc):
    data_dir = os.path.expanduser(args.data_dir)
    db_path = args.db or os.path.join(data_dir, DB_FILENAME)
    store = SessionStore(SQLiteBackend(db_path))
    return TuningOrchestrator(fc, store, data_dir=data_dir, style=args.style)


def _select(sessions, index):
    if index is None:
        return max(sessions, key=lambda s: s.frame_count)
    return sessions[index]


# ─── Offline Commands ─────────────────────────────────────────────────────────

def cmd_analyze(args):
    sessions = decode_file(args.logfile, progress_callback=None)
    flight = _select(sessions, args.session)
    print(f"\n  Log: {args.logfile} ({len(sessions)} session(s)), using #{flight.index}: "
          f"{flight.frame_count:,} frames @ {flight.sample_rate:.0f}Hz, {flight.duration:.1f}s")
    for w in flight.warnings:
        print(f"  ⚠ {w}")
    if flight.corrupted_frames:
        print(f"  ⚠ {flight.corrupted_frames} corrupt frame(s) skipped")

    run_all = not (args.filters or args.pid or args.chirp)
    charts = os.path.expanduser(args.charts) if args.charts else None
    if charts:
        os.makedirs(charts, exist_ok=True)

    if run_all or args.filters:
        result = _run_with_progress(analyze_filters, flight)
        print_filter_report(result)
        if charts:
            print(f"  Chart: {create_noise_chart(result, os.path.join(charts, 'noise.png'))}")
    if run_all or args.pid:
        result = _run_with_progress(analyze_pid, flight, None, args.style)
        print_pid_report(result)
        if charts:
            path = create_step_chart(result, os.path.join(charts, "steps.png"))
            if path:
                print(f"  Chart: {path}")
    if run_all or args.chirp:
        chirp = _run_with_progress(analyze_chirp, flight)
        if chirp or args.chirp:
            print_chirp_report(chirp)
        if chirp and charts:
            print(f"  Chart: {create_bode_chart(chirp, os.path.join(charts, 'bode.png'))}")
    return 0


# ─── Device Commands ──────────────────────────────────────────────────────────

def cmd_info(args, fc):
    info = fc.get_info()
    summary = fc.get_dataflash_summary()
    print(f"  Firmware:   {info['firmware']} (API {info['api_version']})")
    print(f"  Craft:      {info['craft_name'] or '(not set)'}")
    print(f"  Target:     {info['target'] or info['board']}")
    print(f"  UID:        {info['uid']}")
    print(f"  Dataflash:  {summary['used_size'] / 1024:.0f}KB / {summary['total_size'] / 1024:.0f}KB")
    pids = fc.get_pid_config()
    for axis, g in pids.items():
        print(f"    {axis.capitalize():6s} P={g['p']:>3}  I={g['i']:>3}  D={g['d']:>3}")
    return 0


def cmd_download(args, fc):
    data = fc.download_blackbox(progress_callback=_progress("Downloading"))
    if not data:
        print("  Flash is empty.")
        return 1
    with open(args.output, "wb") as f:
        f.write(data)
    print(f"  Saved {len(data):,} bytes to {args.output}")
    return 0


def cmd_tuning(args, fc):
    tuner = open_orchestrator(args, fc)
    try:
        action = args.command
        if action == "status":
            print_session_status(tuner.get_session())
        elif action == "start":
            print_session_status(tuner.start_session())
        elif action == "flown":
            print_session_status(tuner.mark_flight_flown())
        elif action == "erase":
            print_session_status(tuner.erase_flash())
        elif action == "fetch":
            tuner.on_device_connected()
            print_session_status(tuner.download_log(progress_callback=_progress("Downloading")))
        elif action == "filters":
            result = tuner.run_filter_analysis(session_index=args.session)
            print_filter_report(result)
            if args.apply and result["recommendations"]:
                print_session_status(tuner.apply_filters(result["recommendations"]))
        elif action == "pids":
            result = tuner.run_pid_analysis(session_index=args.session)
            print_pid_report(result)
            if args.apply and result["recommendations"]:
                print_session_status(tuner.apply_pids(result["recommendations"]))
        elif action == "skip-verify":
            record = tuner.skip_verification()
            print(f"  Tuning complete ({record['id']})")
        elif action == "verify":
            record = tuner.complete_verification(session_index=args.session)
            print(f"  Tuning complete ({record['id']})")
        elif action == "dismiss":
            record = tuner.dismiss()
            print(f"  Session dismissed ({record['id']})")
        elif action == "reset":
            tuner.reset_session()
            print("  Session reset.")
        elif action == "history":
            print_history(tuner.history())
    finally:
        tuner.backend.close()
    return 0


# ─── CLI Entrypoint ───────────────────────────────────────────────────────────

TUNING_COMMANDS = ("status", "start", "flown", "erase", "fetch", "filters", "pids",
                   "skip-verify", "verify", "dismiss", "reset", "history")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="bftune",
        description="Betaflight blackbox analysis and guided filter/PID tuning")
    parser.add_argument("--port", "-p", default="auto",
                        help="Serial port (e.g., /dev/ttyACM0) or 'auto' to scan")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                        help=f"Baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--data-dir", default=default_data_dir(),
                        help="Directory for the session database and downloaded logs")
    parser.add_argument("--db", help="Session database path (default: <data-dir>/bftune.db)")
    parser.add_argument("--style", choices=FLIGHT_STYLES, default=DEFAULT_FLIGHT_STYLE,
                        help="Flight style for PID thresholds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("analyze", help="Analyze a .bbl file without an FC")
    p.add_argument("logfile")
    p.add_argument("--session", type=int, help="Session index in the log (default: longest)")
    p.add_argument("--filters", action="store_true", help="Noise/filter analysis only")
    p.add_argument("--pid", action="store_true", help="Step-response/PID analysis only")
    p.add_argument("--chirp", action="store_true", help="Chirp system identification only")
    p.add_argument("--charts", help="Write PNG charts to this directory")

    sub.add_parser("info", help="Identify the connected FC")
    p = sub.add_parser("download", help="Download the blackbox flash to a file")
    p.add_argument("--output", "-o", required=True)

    for name in TUNING_COMMANDS:
        p = sub.add_parser(name, help=f"Tuning session: {name}")
        if name in ("filters", "pids", "verify"):
            p.add_argument("--session", type=int, help="Session index in the log (default: longest)")
        if name in ("filters", "pids"):
            p.add_argument("--apply", action="store_true",
                           help="Write the recommendations to the FC (reboots it)")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="  %(message)s")
    print(f"\n  ▲ Betaflight Tune v{VERSION}")

    if args.command == "analyze":
        try:
            return cmd_analyze(args)
        except (BFTuneError, OSError) as e:
            print(f"  ERROR: {e}")
            return 1

    try:
        fc = open_device(args)
    except BFTuneError as e:
        print(f"  ERROR: {e}")
        return 1
    try:
        if args.command == "info":
            return cmd_info(args, fc)
        if args.command == "download":
            return cmd_download(args, fc)
        return cmd_tuning(args, fc)
    except BFTuneError as e:
        print(f"  ERROR: {e}")
        return 1
    finally:
        fc.close()


if __name__ == "__main__":
    sys.exit(main())
