"""
conftest.py - Shared fixtures for the bftune test suite.

  FakeFC / LoopbackSerial   in-memory Betaflight flight controller behind a
                            pyserial-shaped port (binary MSP + text CLI)
  build_bbl                 synthetic blackbox log writer
  make_session              LogSession built straight from numpy channels
"""
import struct
import sys
import threading
from pathlib import Path

import numpy as np
import pytest
import serial

# Ensure the parent directory is on sys.path so we can import the modules
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import bf_msp as msp  # noqa: E402
from bf_blackbox import LogSession, build_header, parse_header_lines  # noqa: E402

SAMPLE_RATE = 2000      # looptime 500us, P interval 1/1
FAKE_UID = bytes(range(0x10, 0x1C))


# ═══════════════════════════════════════════════════════════════════════
# FAKE FLIGHT CONTROLLER
# ═══════════════════════════════════════════════════════════════════════

class FakeFC:
    """State of a simulated Betaflight FC. Survives port close/reopen."""

    def __init__(self):
        self.pid = bytearray(30)
        self.pid[0:9] = bytes([45, 80, 30, 47, 84, 32, 45, 80, 0])
        self.filters = {
            "dterm_lpf1_static_hz": 150, "gyro_lpf1_static_hz": 250,
            "gyro_lpf2_static_hz": 500, "dterm_lpf2_static_hz": 150,
            "dyn_notch_q": 300, "dyn_notch_min_hz": 150, "dyn_notch_max_hz": 600,
            "rpm_filter_harmonics": 0, "rpm_filter_min_hz": 100, "dyn_notch_count": 3,
        }
        self.pid_advanced = bytearray(56)
        struct.pack_into("<HHH", self.pid_advanced, 32, 120, 125, 100)
        self.flash = b""
        self.flash_total = 16 * 1024 * 1024
        self.cli_settings = {}
        self.pending_cli = {}
        self.rejected_names = set()
        self.silent = set()
        self.events = []
        self.saves = 0
        self.reboots = 0
        self.eeprom_writes = 0
        self.opens = 0
        self.lock = threading.Lock()

    # ── Binary ────────────────────────────────────────────────────────────

    def filter_payload(self):
        return msp._pack_fields(bytes(49), msp._FILTER_FIELDS, self.filters)

    def handle(self, cmd, payload):
        """Response payload, or None for an error reply."""
        self.events.append(("msp", cmd))
        if cmd == msp.MSP_API_VERSION:
            return bytes([0, 1, 46])
        if cmd == msp.MSP_FC_VARIANT:
            return b"BTFL"
        if cmd == msp.MSP_FC_VERSION:
            return bytes([4, 5, 1])
        if cmd == msp.MSP_BOARD_INFO:
            target = b"STM32F7X2"
            return b"S7X2" + struct.pack("<H", 0) + b"\x00\x00" + bytes([len(target)]) + target
        if cmd == msp.MSP_NAME:
            return b"TestQuad"
        if cmd == msp.MSP_UID:
            return FAKE_UID
        if cmd == msp.MSP_PID:
            return bytes(self.pid)
        if cmd == msp.MSP_SET_PID:
            self.pid = bytearray(payload)
            return b""
        if cmd == msp.MSP_FILTER_CONFIG:
            return self.filter_payload()
        if cmd == msp.MSP_PID_ADVANCED:
            return bytes(self.pid_advanced)
        if cmd == msp.MSP_SET_PID_ADVANCED:
            self.pid_advanced = bytearray(payload)
            return b""
        if cmd == msp.MSP_EEPROM_WRITE:
            self.eeprom_writes += 1
            return b""
        if cmd == msp.MSP_REBOOT:
            self.reboots += 1
            return b""
        if cmd == msp.MSP_DATAFLASH_SUMMARY:
            return struct.pack("<BIII", 0x03, 64, self.flash_total, len(self.flash))
        if cmd == msp.MSP_DATAFLASH_READ:
            address, size, _ = struct.unpack_from("<IHB", payload, 0)
            data = self.flash[address:address + size]
            return struct.pack("<IHB", address, len(data), 0) + data
        if cmd == msp.MSP_DATAFLASH_ERASE:
            self.flash = b""
            return b""
        return None

    # ── CLI ───────────────────────────────────────────────────────────────

    def cli(self, line):
        """Output text for one CLI line, or None when the FC stays silent."""
        self.events.append(("cli", line))
        if line == "save":
            self.saves += 1
            self.apply_cli()
            return None
        if line.startswith("set "):
            name, _, value = line[4:].partition("=")
            name = name.strip()
            if name in self.rejected_names:
                return "Invalid name"
            self.pending_cli[name] = int(value.strip())
            return f"{name} set to {value.strip()}"
        if line in ("diff all", "dump"):
            rows = [f"set {k} = {v}" for k, v in sorted(self.filters.items())]
            return "# diff all\r\n\r\n# master\r\n" + "\r\n".join(rows)
        return "Unknown command, try 'help'"

    def apply_cli(self):
        for name, value in self.pending_cli.items():
            self.cli_settings[name] = value
            if name in self.filters:
                self.filters[name] = value
        self.pending_cli = {}


class LoopbackSerial:
    """pyserial-like port wired to a FakeFC."""

    def __init__(self, fc):
        self.fc = fc
        self.is_open = True
        self.cli_mode = False
        self._rx = bytearray()
        self._tx = b""
        self._line = ""
        self._cond = threading.Condition()
        self._unplugged = False
        fc.opens += 1

    @property
    def in_waiting(self):
        with self._cond:
            return len(self._rx)

    def read(self, size=1):
        with self._cond:
            if self._unplugged:
                raise serial.SerialException("device disconnected")
            if not self._rx:
                self._cond.wait(0.02)
            if self._unplugged:
                raise serial.SerialException("device disconnected")
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def inject(self, data):
        """Bytes arriving from the FC without a request."""
        with self._cond:
            self._rx += data
            self._cond.notify_all()

    def unplug(self):
        with self._cond:
            self._unplugged = True
            self._cond.notify_all()

    def write(self, data):
        if not self.is_open:
            raise serial.SerialException("port closed")
        with self.fc.lock:
            if self.cli_mode:
                self._cli_input(data.decode("ascii", errors="replace"))
            else:
                self._binary_input(bytes(data))
        return len(data)

    def _binary_input(self, data):
        if data == msp.CLI_ENTER:
            self.cli_mode = True
            self.inject(b"\r\nEntering CLI Mode, type 'exit' to return, or 'help'\r\n\r\n# ")
            return
        frames, self._tx = msp.parse_buffer(self._tx + data)
        for frame in frames:
            if frame.command in self.fc.silent:
                continue
            reply = self.fc.handle(frame.command, frame.payload)
            if reply is None:
                self.inject(msp.msp_encode(frame.command, b"", msp.DIR_ERROR))
            else:
                self.inject(msp.msp_encode(frame.command, reply, msp.DIR_FROM_FC))

    def _cli_input(self, text):
        self._line += text
        while "\n" in self._line:
            line, self._line = self._line.split("\n", 1)
            line = line.strip()
            out = self.fc.cli(line)
            if out is None:
                continue
            self.inject(f"{line}\r\n{out}\r\n\r\n# ".encode("ascii"))

    def close(self):
        self.is_open = False


@pytest.fixture
def fake_fc():
    return FakeFC()


@pytest.fixture
def port_factory(fake_fc):
    """port_factory for MSPConnection; ports are kept in .ports."""
    ports = []

    def factory(path, baudrate):
        port = LoopbackSerial(fake_fc)
        ports.append(port)
        return port

    factory.ports = ports
    return factory


@pytest.fixture
def device(port_factory):
    """Open BetaflightDevice on the loopback port."""
    dev = msp.BetaflightDevice("/dev/fake0", timeout=1.0, port_factory=port_factory)
    dev.open()
    yield dev
    dev.close()


# ═══════════════════════════════════════════════════════════════════════
# SYNTHETIC BLACKBOX LOGS
# ═══════════════════════════════════════════════════════════════════════

FIELDS = (["loopIteration", "time"] + [f"gyroADC[{i}]" for i in range(3)]
          + [f"setpoint[{i}]" for i in range(4)] + [f"motor[{i}]" for i in range(4)])
I_SIGNED = [0, 0] + [1] * 7 + [0] * 4
I_PREDICTOR = [0, 0] + [0] * 7 + [4, 5, 5, 5]      # minthrottle, motor[0]
I_ENCODING = [1, 1] + [0] * 11
P_PREDICTOR = [6, 2] + [1] * 11                    # increment, straight line, previous
P_ENCODING = [9, 0] + [0] * 11
MINTHROTTLE = 1070


def write_unsigned_vb(value):
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def write_signed_vb(value):
    # ZigZag
    return write_unsigned_vb(value << 1 if value >= 0 else (-value << 1) - 1)


def bbl_header(looptime=500, extra=None):
    lines = [
        "H Product:Blackbox flight data recorder by Nicholas Sherlock",
        "H Data version:2",
        "H I interval:32",
        "H P interval:1/1",
        "H Firmware type:Cleanflight",
        "H Firmware revision:Betaflight 4.5.1 (77d01ba3b) STM32F7X2",
        "H Craft name:TestQuad",
        f"H looptime:{looptime}",
        f"H minthrottle:{MINTHROTTLE}",
        "H maxthrottle:2000",
        "H debug_mode:6",
        "H rollPID:45,80,30",
        "H pitchPID:47,84,32",
        "H yawPID:45,80,0",
        "H Field I name:" + ",".join(FIELDS),
        "H Field I signed:" + ",".join(map(str, I_SIGNED)),
        "H Field I predictor:" + ",".join(map(str, I_PREDICTOR)),
        "H Field I encoding:" + ",".join(map(str, I_ENCODING)),
        "H Field P predictor:" + ",".join(map(str, P_PREDICTOR)),
        "H Field P encoding:" + ",".join(map(str, P_ENCODING)),
    ]
    for key, value in (extra or {}).items():
        lines.append(f"H {key}:{value}")
    return ("\n".join(lines) + "\n").encode("ascii")


def build_bbl(gyro, setpoint, motor=None, looptime=500, i_interval=32, extra_headers=None,
              log_end=True):
    """Encode channels as a Betaflight-style log (I-frames every i_interval)."""
    gyro = np.rint(np.asarray(gyro)).astype(int)
    setpoint = np.rint(np.asarray(setpoint)).astype(int)
    n = gyro.shape[1]
    if motor is None:
        motor = np.full((4, n), 1400)
    motor = np.rint(np.asarray(motor)).astype(int)

    out = bytearray(bbl_header(looptime, extra_headers))
    prev = prev2 = None
    for k in range(n):
        row = [k, k * looptime] + list(gyro[:, k]) + list(setpoint[:, k]) + list(motor[:, k])
        row = [int(v) for v in row]
        if k % i_interval == 0:
            out += b"I"
            out += write_unsigned_vb(row[0]) + write_unsigned_vb(row[1])
            for v in row[2:9]:
                out += write_signed_vb(v)
            out += write_signed_vb(row[9] - MINTHROTTLE)
            for v in row[10:13]:
                out += write_signed_vb(v - row[9])
            prev = prev2 = row
        else:
            out += b"P"
            out += write_signed_vb(row[1] - (2 * prev[1] - prev2[1]))
            for j in range(2, 13):
                out += write_signed_vb(row[j] - prev[j])
            prev2, prev = prev, row
    if log_end:
        out += b"E" + bytes([255]) + b"End of log\x00"
    return bytes(out)


def hover_flight(seconds=4.0, sample_rate=SAMPLE_RATE, resonance_hz=150.0, noise=8.0, seed=1):
    """(gyro[3,n], setpoint[4,n]) for a steady hover with one vibration line."""
    rng = np.random.default_rng(seed)
    n = int(seconds * sample_rate)
    t = np.arange(n) / sample_rate
    gyro = rng.normal(0, noise, (3, n))
    gyro[:2] += 40 * np.sin(2 * np.pi * resonance_hz * t)
    setpoint = np.zeros((4, n))
    setpoint[3] = 1400
    return gyro, setpoint


def second_order(setpoint, sample_rate, wn_hz=15.0, zeta=0.3):
    """Gyro following setpoint as a second-order system."""
    wn = 2 * np.pi * wn_hz
    dt = 1.0 / sample_rate
    x = v = 0.0
    out = np.zeros(len(setpoint))
    for k, u in enumerate(setpoint):
        v += dt * (wn * wn * (u - x) - 2 * zeta * wn * v)
        x += dt * v
        out[k] = x
    return out


def stick_snaps(seconds=4.0, sample_rate=SAMPLE_RATE, period_s=0.8, magnitude=300.0,
                zeta=0.3, axis=0):
    """(gyro[3,n], setpoint[4,n]) with square-wave stick snaps on one axis."""
    n = int(seconds * sample_rate)
    t = np.arange(n) / sample_rate
    sp = np.where((t % period_s) >= period_s / 2, magnitude, 0.0)
    sp[: int(0.2 * sample_rate)] = 0.0
    setpoint = np.zeros((4, n))
    setpoint[axis] = sp
    setpoint[3] = 1500
    gyro = np.zeros((3, n))
    gyro[axis] = second_order(sp, sample_rate, zeta=zeta)
    return gyro, setpoint


def make_session(gyro, setpoint, sample_rate=SAMPLE_RATE, raw_headers=None, index=0):
    """LogSession from numpy channels, without going through the decoder."""
    raw = parse_header_lines(bbl_header(int(round(1e6 / sample_rate))).decode().splitlines())
    raw.update(raw_headers or {})
    session = LogSession(index, build_header(raw), raw)
    gyro = np.asarray(gyro, dtype=np.float64)
    setpoint = np.asarray(setpoint, dtype=np.float64)
    n = gyro.shape[1]
    zeros = [np.zeros(n) for _ in range(3)]
    session.channels = {
        "gyro": list(gyro), "setpoint": list(setpoint),
        "pid_p": zeros, "pid_i": zeros, "pid_d": zeros, "pid_f": zeros,
        "motor": [np.full(n, 1400.0) for _ in range(4)], "debug": [],
    }
    session.time_s = np.arange(n) / sample_rate
    session.frame_count = n
    return session


@pytest.fixture
def hover_session():
    return make_session(*hover_flight())


@pytest.fixture
def snap_session():
    return make_session(*stick_snaps())


@pytest.fixture
def hover_bbl():
    return build_bbl(*hover_flight(seconds=2.0))
