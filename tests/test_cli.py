#!/usr/bin/env python3
"""
test_cli.py - Reports, charts and the bftune command line.
"""

import os

import numpy as np
import pytest

import bf_msp as msp
import bf_tune
from bf_analysis import analyze_chirp, analyze_filters, analyze_pid
from bf_report import (
    cli_commands, create_bode_chart, create_noise_chart, create_step_chart, print_chirp_report,
    print_filter_report, print_history, print_pid_report, print_session_status,
)

from conftest import FAKE_UID, build_bbl, hover_flight, make_session, stick_snaps


@pytest.fixture
def snaps_file(tmp_path):
    path = tmp_path / "snaps.bbl"
    path.write_bytes(build_bbl(*stick_snaps()))
    return str(path)


@pytest.fixture
def fc_opener(monkeypatch, port_factory):
    """Route bf_tune's device opening to the loopback FC."""
    def opener(args):
        dev = msp.BetaflightDevice("/dev/fake0", timeout=1.0, port_factory=port_factory)
        dev.open()
        return dev

    monkeypatch.setattr(bf_tune, "open_device", opener)
    return opener


# ═══════════════════════════════════════════════════════════════════════
# REPORTS AND CHARTS
# ═══════════════════════════════════════════════════════════════════════

class TestReports:

    def test_filter_report(self, hover_session, capsys):
        result = analyze_filters(hover_session)
        print_filter_report(result)
        out = capsys.readouterr().out
        assert "FILTER ANALYSIS" in out
        assert "DATA QUALITY" in out
        for cmd in cli_commands(result["recommendations"]):
            assert cmd in out

    def test_pid_report(self, snap_session, capsys):
        print_pid_report(analyze_pid(snap_session))
        out = capsys.readouterr().out
        assert "set d_roll = 35" in out
        assert "PIDs in log header" in out

    def test_session_status(self, capsys):
        print_session_status({"profile_id": "ABC", "phase": "pid_log_ready",
                              "started_at": "2024-05-01T10:00:00", "updated_at": "2024-05-01T11:00:00"})
        out = capsys.readouterr().out
        assert "ABC" in out
        assert "pid_log_ready" in out
        print_session_status(None)
        assert "No active tuning session" in capsys.readouterr().out

    def test_history(self, capsys):
        print_history([{"completed_at": "2024-05-01T10:00:00", "outcome": "dismissed",
                        "applied_filter_changes": [{}], "applied_pid_changes": [],
                        "applied_feedforward_changes": [], "tune_quality": None}])
        out = capsys.readouterr().out
        assert "dismissed" in out
        assert "1 change(s)" in out

    def test_charts(self, hover_session, snap_session, tmp_path):
        noise_png = create_noise_chart(analyze_filters(hover_session), str(tmp_path / "noise.png"))
        step_png = create_step_chart(analyze_pid(snap_session), str(tmp_path / "steps.png"))
        for path in (noise_png, step_png):
            with open(path, "rb") as f:
                assert f.read(8) == b"\x89PNG\r\n\x1a\n"

    def test_bode_chart(self, tmp_path, capsys):
        n = 6000
        t = np.arange(n) / 2000
        x = 100 * np.sin(2 * np.pi * (5 + 20 * t) * t)
        setpoint = np.zeros((4, n))
        setpoint[0] = x
        gyro = np.zeros((3, n))
        gyro[0] = x
        chirp = analyze_chirp(make_session(gyro, setpoint, raw_headers={"debug_mode": "CHIRP"}))
        path = create_bode_chart(chirp, str(tmp_path / "bode.png"))
        assert os.path.getsize(path) > 0
        print_chirp_report(chirp)
        out = capsys.readouterr().out
        assert "Roll" in out
        assert "Phase margin" in out

    def test_step_chart_without_steps(self, hover_session, tmp_path):
        assert create_step_chart(analyze_pid(hover_session), str(tmp_path / "x.png")) is None


# ═══════════════════════════════════════════════════════════════════════
# OFFLINE ANALYSIS
# ═══════════════════════════════════════════════════════════════════════

class TestAnalyzeCommand:

    def test_analyze_with_charts(self, snaps_file, tmp_path, capsys):
        charts = tmp_path / "charts"
        assert bf_tune.main(["analyze", snaps_file, "--charts", str(charts)]) == 0
        out = capsys.readouterr().out
        assert "FILTER ANALYSIS" in out
        assert "PID ANALYSIS" in out
        assert os.path.exists(charts / "noise.png")
        assert os.path.exists(charts / "steps.png")

    def test_pid_only(self, snaps_file, capsys):
        assert bf_tune.main(["analyze", snaps_file, "--pid", "--style", "aggressive"]) == 0
        out = capsys.readouterr().out
        assert "PID ANALYSIS (aggressive)" in out
        assert "FILTER ANALYSIS" not in out

    def test_chirp_only_reports_absence(self, tmp_path, capsys):
        path = tmp_path / "hover.bbl"
        path.write_bytes(build_bbl(*hover_flight(seconds=2.0)))
        assert bf_tune.main(["analyze", str(path), "--chirp"]) == 0
        assert "No chirp excitation" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        assert bf_tune.main(["analyze", str(tmp_path / "nope.bbl")]) == 1
        assert "ERROR" in capsys.readouterr().out

    def test_not_a_log(self, tmp_path, capsys):
        path = tmp_path / "junk.bbl"
        path.write_bytes(b"\x00" * 64)
        assert bf_tune.main(["analyze", str(path)]) == 1


# ═══════════════════════════════════════════════════════════════════════
# DEVICE COMMANDS
# ═══════════════════════════════════════════════════════════════════════

class TestDeviceCommands:

    def test_info(self, fc_opener, capsys):
        assert bf_tune.main(["info"]) == 0
        out = capsys.readouterr().out
        assert FAKE_UID.hex().upper() in out
        assert "Betaflight" in out or "BTFL" in out

    def test_download(self, fc_opener, fake_fc, hover_bbl, tmp_path):
        fake_fc.flash = hover_bbl
        out = tmp_path / "flash.bbl"
        assert bf_tune.main(["download", "-o", str(out)]) == 0
        assert out.read_bytes() == hover_bbl

    def test_download_empty(self, fc_opener, tmp_path):
        assert bf_tune.main(["download", "-o", str(tmp_path / "x.bbl")]) == 1

    def test_session_across_runs(self, fc_opener, tmp_path, capsys):
        base = ["--data-dir", str(tmp_path)]
        assert bf_tune.main(base + ["start"]) == 0
        assert bf_tune.main(base + ["status"]) == 0
        assert "filter_flight_pending" in capsys.readouterr().out
        # a second start is refused
        assert bf_tune.main(base + ["start"]) == 1
        assert bf_tune.main(base + ["dismiss"]) == 0
        assert bf_tune.main(base + ["history"]) == 0
        assert "dismissed" in capsys.readouterr().out
        assert os.path.exists(tmp_path / "bftune.db")

    def test_wrong_phase_is_an_error(self, fc_opener, tmp_path, capsys):
        base = ["--data-dir", str(tmp_path)]
        assert bf_tune.main(base + ["start"]) == 0
        assert bf_tune.main(base + ["filters"]) == 1
        assert "ERROR" in capsys.readouterr().out
