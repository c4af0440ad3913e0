#!/usr/bin/env python3
"""
Betaflight MSP - MultiWii Serial Protocol v1 link to Betaflight flight controllers.

Handles serial communication with Betaflight FCs for:
  - Flight controller identification (API version, firmware, board, UID)
  - PID, filter and feedforward configuration read/write
  - Dataflash blackbox summary, chunked download and erase
  - CLI mode: diff/dump export, `set` batches, save-and-reboot

MSP v1 frame format:
  $M<  size(u8)  cmd(u8)  payload  checksum          checksum = size ^ cmd ^ payload
  $M>  ...                                           (response)
  $M!  ...                                           (error response)

Jumbo form (payload >= 255 bytes, up to 8192):
  $M<  0xFF  size(u16 LE)  cmd(u8)  payload  checksum  checksum = lo ^ hi ^ cmd ^ payload

The port is owned by MSPConnection. A reader thread feeds received bytes
either to the MSP frame parser (binary mode) or to the CLI text buffer (CLI
mode); callers block on their own pending entry until the response, an error
reply, or the timeout.

Usage:
    from bf_msp import BetaflightDevice

    with BetaflightDevice("/dev/ttyACM0") as fc:
        info = fc.get_info()
        print(f"Connected: {info['craft_name']} running {info['firmware']}")
        data = fc.download_blackbox(progress_callback=print)
"""

import enum
import glob
import logging
import struct
import sys
import threading
import time
from collections import deque, namedtuple

import serial
from serial.tools import list_ports

from bf_errors import (
    BFTuneError, CLICommandError, CLIError, CLITimeoutError, ChecksumError,
    DirectionError, MSPError, MSPTimeoutError, PreambleError,
    SerialConnectionError,
)

log = logging.getLogger("bftune.msp")

VERSION = "1.0.0"

# ─── MSP Command IDs ─────────────────────────────────────────────────────────

MSP_API_VERSION         = 1
MSP_FC_VARIANT          = 2
MSP_FC_VERSION          = 3
MSP_BOARD_INFO          = 4
MSP_BUILD_INFO          = 5
MSP_NAME                = 10
MSP_REBOOT              = 68
MSP_DATAFLASH_SUMMARY   = 70
MSP_DATAFLASH_READ      = 71
MSP_DATAFLASH_ERASE     = 72
MSP_FILTER_CONFIG       = 92
MSP_PID_ADVANCED        = 94
MSP_SET_PID_ADVANCED    = 95
MSP_STATUS              = 101
MSP_PID                 = 112
MSP_STATUS_EX           = 150
MSP_UID                 = 160
MSP_SET_PID             = 202
MSP_EEPROM_WRITE        = 250

# ─── Protocol Constants ──────────────────────────────────────────────────────

MSP_PREAMBLE = b"$M"
DIR_TO_FC = 0x3C        # '<'
DIR_FROM_FC = 0x3E      # '>'
DIR_ERROR = 0x21        # '!'
VALID_DIRECTIONS = (DIR_TO_FC, DIR_FROM_FC, DIR_ERROR)

JUMBO_FRAME_SIZE = 255
MAX_PAYLOAD_SIZE = 8192
HEADER_SIZE = 5         # $ M dir size cmd
JUMBO_HEADER_SIZE = 7   # $ M dir 0xFF lo hi cmd

DEFAULT_BAUD = 115200
COMMAND_TIMEOUT = 2.0
REBOOT_WAIT = 3.0
CLI_TIMEOUT = 5.0
CLI_SETTLE = 0.1
DATAFLASH_CHUNK = 4096
DATAFLASH_READ_TIMEOUT = 5.0

CLI_ENTER = b"#"
CLI_PROMPT = "\n# "
CLI_ERROR_SUBSTRINGS = ("Invalid name", "Invalid value", "Unknown command", "Parse error")

FC_VARIANT_BETAFLIGHT = "BTFL"

MSPFrame = namedtuple("MSPFrame", ["command", "payload", "direction"])


# ─── MSP v1 Frame Encoding/Decoding ──────────────────────────────────────────

def _xor(data, seed=0):
    chk = seed
    for b in data:
        chk ^= b
    return chk


def msp_encode(cmd, payload=b"", direction=DIR_TO_FC):
    """Encode an MSP v1 frame. Payloads of 255 bytes or more use the jumbo form."""
    if not 0 <= cmd <= 255:
        raise MSPError(f"Command id out of range: {cmd}", cmd)
    if direction not in VALID_DIRECTIONS:
        raise MSPError(f"Invalid direction byte: 0x{direction:02x}", cmd)
    payload = bytes(payload)
    size = len(payload)
    if size > MAX_PAYLOAD_SIZE:
        raise MSPError(f"Payload too large: {size} > {MAX_PAYLOAD_SIZE}", cmd)

    if size < JUMBO_FRAME_SIZE:
        header = bytes([direction, size, cmd])
        chk = _xor(payload, size ^ cmd)
    else:
        lo, hi = size & 0xFF, size >> 8
        header = bytes([direction, JUMBO_FRAME_SIZE, lo, hi, cmd])
        chk = _xor(payload, lo ^ hi ^ cmd)
    return MSP_PREAMBLE + header + payload + bytes([chk])


def msp_decode(buf):
    """Decode one MSP v1 frame at the start of buf.

    Returns:
        (MSPFrame, bytes_consumed) on success
        None if more bytes are needed

    Raises PreambleError, DirectionError or ChecksumError for corrupt input.
    """
    if len(buf) < 3:
        if MSP_PREAMBLE[:len(buf)] != bytes(buf[:2]):
            raise PreambleError("Invalid MSP preamble")
        return None
    if bytes(buf[:2]) != MSP_PREAMBLE:
        raise PreambleError(f"Invalid MSP preamble: {bytes(buf[:2])!r}")
    direction = buf[2]
    if direction not in VALID_DIRECTIONS:
        raise DirectionError(f"Invalid MSP direction: 0x{direction:02x}")
    if len(buf) < 4:
        return None

    if buf[3] == JUMBO_FRAME_SIZE:
        if len(buf) < JUMBO_HEADER_SIZE:
            return None
        size = buf[4] | (buf[5] << 8)
        cmd = buf[6]
        start = JUMBO_HEADER_SIZE
        seed = buf[4] ^ buf[5] ^ cmd
    else:
        if len(buf) < HEADER_SIZE:
            return None
        size = buf[3]
        cmd = buf[4]
        start = HEADER_SIZE
        seed = size ^ cmd

    total = start + size + 1
    if len(buf) < total:
        return None
    payload = bytes(buf[start:start + size])
    expected = _xor(payload, seed)
    actual = buf[start + size]
    if expected != actual:
        raise ChecksumError(
            f"MSP checksum mismatch for cmd {cmd}: got 0x{actual:02x}, expected 0x{expected:02x}",
            expected=expected, actual=actual)
    return MSPFrame(cmd, payload, direction), total


def parse_buffer(buf):
    """Pull every complete frame out of a receive buffer.

    Bytes may arrive split arbitrarily across reads, so the unconsumed tail
    is handed back for the next call. A corrupt candidate skips two bytes
    past its preamble and scanning continues.

    Returns (frames, remainder).
    """
    frames = []
    buf = bytes(buf)
    pos = 0
    while True:
        idx = buf.find(MSP_PREAMBLE, pos)
        if idx < 0:
            # Keep a trailing '$' that may be the first half of a preamble
            tail = buf[-1:] if buf.endswith(b"$") else b""
            return frames, tail
        try:
            result = msp_decode(buf[idx:])
        except (PreambleError, DirectionError, ChecksumError) as e:
            log.debug(f"Discarding corrupt MSP candidate at {idx}: {e}")
            pos = idx + 2
            continue
        if result is None:
            return frames, buf[idx:]
        frame, consumed = result
        frames.append(frame)
        pos = idx + consumed


def find_cli_error(output):
    """Return the offending line if CLI output contains a device error, else None."""
    for pattern in CLI_ERROR_SUBSTRINGS:
        if pattern in output:
            return pattern
    for line in output.splitlines():
        if line.strip() == "ERROR":
            return "ERROR"
    return None


def clean_cli_output(output, command=None):
    """Drop the command echo, comments, the prompt and blank lines."""
    lines = []
    for line in output.replace("\r", "").split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if command and stripped == command:
            continue
        lines.append(stripped)
    return "\n".join(lines)


# ─── Serial Port Discovery ───────────────────────────────────────────────────

def find_serial_ports():
    """Find candidate serial ports for Betaflight flight controllers.

    Returns list of port paths, ordered by likelihood (ACM first, then USB).
    """
    candidates = []
    # USB CDC (STM32 VCP) - most common for modern FCs
    candidates.extend(sorted(glob.glob("/dev/ttyACM*")))
    # FTDI / CP2102 / CH340
    candidates.extend(sorted(glob.glob("/dev/ttyUSB*")))
    # macOS
    candidates.extend(sorted(glob.glob("/dev/cu.usbmodem*")))
    candidates.extend(sorted(glob.glob("/dev/cu.SLAB_USBtoUART*")))
    # Windows COM ports only show up through pyserial's enumerator
    for info in list_ports.comports():
        if info.device not in candidates:
            candidates.append(info.device)
    return candidates


def auto_detect_fc(baudrate=DEFAULT_BAUD, timeout=COMMAND_TIMEOUT):
    """Scan serial ports and return the first one that responds as Betaflight.

    Returns:
        (BetaflightDevice, info_dict) on success - device is open, caller must close
        (None, None) if no FC found
    """
    for port in find_serial_ports():
        dev = BetaflightDevice(port, baudrate=baudrate, timeout=timeout)
        try:
            dev.open()
            info = dev.get_info()
        except BFTuneError as e:
            log.debug(f"{port}: no Betaflight response ({e})")
            dev.close()
            continue
        if info.get("fc_variant") == FC_VARIANT_BETAFLIGHT:
            return dev, info
        dev.close()
    return None, None


def _open_serial(port, baudrate):
    ser = serial.Serial(
        port=port,
        baudrate=baudrate,
        timeout=0.05,
        write_timeout=COMMAND_TIMEOUT,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
    )
    # Flush any stale data
    time.sleep(0.1)
    ser.reset_input_buffer()
    ser.reset_output_buffer()
    return ser


# ─── Connection ──────────────────────────────────────────────────────────────

class Mode(enum.Enum):
    """Which decoder the receive path feeds."""
    BINARY = "binary"
    CLI = "cli"


class _Pending:
    __slots__ = ("command", "active", "event", "frame", "error")

    def __init__(self, command):
        self.command = command
        self.active = False
        self.event = threading.Event()
        self.frame = None
        self.error = None


class MSPConnection:
    """Exclusive owner of one serial port.

    Binary requests are keyed by command id: different ids may be in flight
    together, a second request for the same id queues behind the first.
    Frames nobody is waiting for are handed to unsolicited listeners.
    """

    def __init__(self, port, baudrate=DEFAULT_BAUD, port_factory=None):
        self.port_path = port
        self.baudrate = baudrate
        self._port_factory = port_factory or _open_serial
        self._ser = None
        self._reader = None
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._write_lock = threading.Lock()
        self._cli_lock = threading.Lock()
        self._pending = {}
        self._rxbuf = b""
        self._mode = Mode.BINARY
        self._cli_buf = ""
        self._cli_last_rx = 0.0
        self._unsolicited_listeners = []
        self._disconnect_listeners = []

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def is_open(self):
        return self._ser is not None

    @property
    def mode(self):
        return self._mode

    def open(self):
        if self._ser is not None:
            raise SerialConnectionError(f"{self.port_path} is already open")
        try:
            self._ser = self._port_factory(self.port_path, self.baudrate)
        except (serial.SerialException, OSError) as e:
            raise SerialConnectionError(f"Cannot open {self.port_path}: {e}") from e
        with self._lock:
            self._rxbuf = b""
            self._cli_buf = ""
            self._mode = Mode.BINARY
        self._stop.clear()
        self._reader = threading.Thread(
            target=self._read_loop, name=f"msp-reader-{self.port_path}", daemon=True)
        self._reader.start()
        log.debug(f"Opened {self.port_path} @ {self.baudrate}")

    def close(self):
        ser = self._ser
        if ser is None:
            return
        self._stop.set()
        if self._reader and self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)
        self._reader = None
        self._ser = None
        try:
            ser.close()
        except (serial.SerialException, OSError) as e:
            log.debug(f"Error closing {self.port_path}: {e}")
        self._fail_all_pending(SerialConnectionError(f"{self.port_path} closed"))
        with self._lock:
            self._mode = Mode.BINARY
            self._rxbuf = b""
            self._cli_buf = ""
        log.debug(f"Closed {self.port_path}")

    def add_unsolicited_listener(self, fn):
        """fn(MSPFrame) for frames with no matching request (device telemetry)."""
        self._unsolicited_listeners.append(fn)

    def add_disconnect_listener(self, fn):
        """fn(exception) when the port dies underneath us."""
        self._disconnect_listeners.append(fn)

    # ── Receive path ──────────────────────────────────────────────────────

    def _read_loop(self):
        while not self._stop.is_set():
            ser = self._ser
            if ser is None:
                return
            try:
                data = ser.read(ser.in_waiting or 1)
            except (serial.SerialException, OSError) as e:
                if self._stop.is_set():
                    return
                log.warning(f"Serial read failed on {self.port_path}: {e}")
                self._port_lost(e)
                return
            if data:
                self.feed(data)

    def _port_lost(self, exc):
        self._ser = None
        self._stop.set()
        err = SerialConnectionError(f"{self.port_path} disconnected: {exc}")
        self._fail_all_pending(err)
        with self._lock:
            self._mode = Mode.BINARY
        for fn in list(self._disconnect_listeners):
            fn(err)

    def feed(self, data):
        """Route received bytes to whichever decoder the current mode selects."""
        unsolicited = []
        with self._lock:
            if self._mode is Mode.CLI:
                self._cli_buf += data.decode("ascii", errors="replace")
                self._cli_last_rx = time.monotonic()
            else:
                self._rxbuf += data
                frames, self._rxbuf = parse_buffer(self._rxbuf)
                for frame in frames:
                    if not self._resolve(frame):
                        unsolicited.append(frame)
            self._cond.notify_all()
        for frame in unsolicited:
            log.debug(f"Unsolicited MSP frame cmd={frame.command} ({len(frame.payload)} bytes)")
            for fn in list(self._unsolicited_listeners):
                fn(frame)

    def _resolve(self, frame):
        queue = self._pending.get(frame.command)
        if not queue or not queue[0].active:
            return False
        entry = queue.popleft()
        if not queue:
            del self._pending[frame.command]
        if frame.direction == DIR_ERROR:
            entry.error = MSPError(f"FC rejected command {frame.command}", frame.command)
        else:
            entry.frame = frame
        entry.event.set()
        return True

    def _fail_all_pending(self, err):
        with self._lock:
            for queue in self._pending.values():
                for entry in queue:
                    entry.error = err
                    entry.event.set()
            self._pending.clear()
            self._cond.notify_all()

    def _write(self, data):
        ser = self._ser
        if ser is None:
            raise SerialConnectionError("Port is not open")
        with self._write_lock:
            try:
                ser.write(data)
            except (serial.SerialException, OSError) as e:
                raise SerialConnectionError(f"Write to {self.port_path} failed: {e}") from e

    # ── Binary requests ───────────────────────────────────────────────────

    def send(self, command, payload=b"", timeout=COMMAND_TIMEOUT):
        """Send a request and block for its response payload."""
        if self._ser is None:
            raise SerialConnectionError("Port is not open")
        if self._mode is Mode.CLI:
            self._leave_cli_for_binary()

        entry = _Pending(command)
        deadline = time.monotonic() + timeout
        with self._lock:
            queue = self._pending.setdefault(command, deque())
            queue.append(entry)
            while queue[0] is not entry:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._drop(entry)
                    raise MSPTimeoutError(f"Command {command} timed out waiting its turn", command)
                self._cond.wait(remaining)
                if entry.event.is_set():
                    raise entry.error
            entry.active = True

        try:
            self._write(msp_encode(command, payload))
        except SerialConnectionError:
            with self._lock:
                self._drop(entry)
            raise

        if not entry.event.wait(max(0.0, deadline - time.monotonic())):
            with self._lock:
                if not entry.event.is_set():
                    self._drop(entry)
                    raise MSPTimeoutError(f"Command {command} timed out after {timeout:.1f}s", command)
        if entry.error is not None:
            raise entry.error
        return entry.frame.payload

    def _drop(self, entry):
        queue = self._pending.get(entry.command)
        if queue and entry in queue:
            queue.remove(entry)
            if not queue:
                del self._pending[entry.command]
        self._cond.notify_all()

    def pending_commands(self):
        with self._lock:
            return sorted(self._pending)

    # ── CLI mode ──────────────────────────────────────────────────────────

    def enter_cli(self, timeout=CLI_TIMEOUT):
        """Switch the device into its text CLI and wait for the prompt."""
        with self._lock:
            if self._mode is Mode.CLI:
                return
            self._mode = Mode.CLI
            self._cli_buf = ""
        try:
            self._write(CLI_ENTER)
        except SerialConnectionError:
            self.force_binary_mode()
            raise
        deadline = time.monotonic() + timeout
        with self._lock:
            while "#" not in self._cli_buf:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._mode = Mode.BINARY
                    self._cli_buf = ""
                    raise CLITimeoutError("No CLI prompt after entering CLI mode")
                self._cond.wait(remaining)
            self._cli_buf = ""
        log.debug("Entered CLI mode")

    def exit_cli(self):
        """Leave CLI mode locally.

        The firmware only leaves its CLI by rebooting, so this clears local
        state and nothing is written to the port.
        """
        if not self._cli_lock.acquire(blocking=False):
            raise CLIError("A CLI command is still in progress")
        try:
            with self._lock:
                self._mode = Mode.BINARY
                self._cli_buf = ""
                self._rxbuf = b""
        finally:
            self._cli_lock.release()
        log.debug("Left CLI mode (local)")

    def force_binary_mode(self):
        with self._lock:
            self._mode = Mode.BINARY
            self._cli_buf = ""
            self._rxbuf = b""
        log.debug("Forced binary mode")

    def _leave_cli_for_binary(self):
        try:
            self.exit_cli()
        except CLIError as e:
            log.warning(f"Graceful CLI exit failed ({e}), forcing binary mode")
            self.force_binary_mode()

    def send_cli_command(self, command, timeout=CLI_TIMEOUT, settle=CLI_SETTLE):
        """Run one CLI command and return its raw output.

        Resolves once the accumulated output ends with the prompt and nothing
        new has arrived for `settle` seconds.
        """
        if self._mode is not Mode.CLI:
            raise CLIError("Not in CLI mode")
        with self._cli_lock:
            with self._lock:
                self._cli_buf = ""
                self._cli_last_rx = time.monotonic()
            self._write((command + "\n").encode("ascii"))
            deadline = time.monotonic() + timeout
            with self._lock:
                while True:
                    now = time.monotonic()
                    if self._cli_buf.endswith(CLI_PROMPT):
                        quiet = now - self._cli_last_rx
                        if quiet >= settle:
                            break
                        self._cond.wait(settle - quiet)
                        continue
                    if now >= deadline:
                        tail = self._cli_buf[-80:]
                        raise CLITimeoutError(f"CLI command '{command}' timed out (last output: {tail!r})")
                    self._cond.wait(deadline - now)
                output = self._cli_buf
                self._cli_buf = ""
        error = find_cli_error(output)
        if error:
            raise CLICommandError(f"CLI command rejected: '{command}' ({error})",
                                  command=command, output=output)
        return output

    def send_cli_line(self, command):
        """Write a CLI line without waiting for a prompt (save, exit)."""
        if self._mode is not Mode.CLI:
            raise CLIError("Not in CLI mode")
        with self._cli_lock:
            self._write((command + "\n").encode("ascii"))


# ─── Betaflight Device ───────────────────────────────────────────────────────

AXES = ("roll", "pitch", "yaw")

# MSP_FILTER_CONFIG field offsets (Betaflight 4.3+ layout)
_FILTER_FIELDS = (
    ("dterm_lpf1_static_hz", 1, "<H"),
    ("dterm_lpf1_type", 17, "<B"),
    ("gyro_lpf1_static_hz", 20, "<H"),
    ("gyro_lpf2_static_hz", 22, "<H"),
    ("gyro_lpf1_type", 24, "<B"),
    ("gyro_lpf2_type", 25, "<B"),
    ("dterm_lpf2_static_hz", 26, "<H"),
    ("dterm_lpf2_type", 28, "<B"),
    ("dyn_notch_q", 39, "<H"),
    ("dyn_notch_min_hz", 41, "<H"),
    ("rpm_filter_harmonics", 43, "<B"),
    ("rpm_filter_min_hz", 44, "<B"),
    ("dyn_notch_max_hz", 45, "<H"),
    ("dyn_notch_count", 48, "<B"),
)

# MSP_PID_ADVANCED feedforward offsets
_FEEDFORWARD_FIELDS = (
    ("feedforward_transition", 8, "<B"),
    ("f_roll", 32, "<H"),
    ("f_pitch", 34, "<H"),
    ("f_yaw", 36, "<H"),
    ("feedforward_averaging", 50, "<B"),
    ("feedforward_smooth_factor", 51, "<B"),
    ("feedforward_boost", 52, "<B"),
    ("feedforward_max_rate_limit", 53, "<B"),
    ("feedforward_jitter_factor", 54, "<B"),
)


def _unpack_fields(payload, fields):
    out = {}
    for name, offset, fmt in fields:
        if offset + struct.calcsize(fmt) <= len(payload):
            out[name] = struct.unpack_from(fmt, payload, offset)[0]
    return out


def _pack_fields(payload, fields, values):
    buf = bytearray(payload)
    for name, offset, fmt in fields:
        if name in values:
            if offset + struct.calcsize(fmt) > len(buf):
                raise MSPError(f"Firmware payload too short for {name}")
            struct.pack_into(fmt, buf, offset, int(values[name]))
    return bytes(buf)


class BetaflightDevice:
    """Typed Betaflight operations over an MSPConnection."""

    def __init__(self, port, baudrate=DEFAULT_BAUD, timeout=COMMAND_TIMEOUT, port_factory=None):
        self.port_path = port
        self.timeout = timeout
        self.connection = MSPConnection(port, baudrate, port_factory=port_factory)
        self._info = None
        self._connect_listeners = []

    def open(self):
        """Open serial connection."""
        self.connection.open()
        self._info = None
        for fn in list(self._connect_listeners):
            try:
                fn(self)
            except BFTuneError:
                # the port stays open
                log.exception("Connect listener failed")

    def close(self):
        """Close serial connection."""
        self.connection.close()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.close()

    @property
    def is_connected(self):
        return self.connection.is_open

    def add_connect_listener(self, fn):
        """fn(device) after every successful open/reconnect."""
        self._connect_listeners.append(fn)

    def add_disconnect_listener(self, fn):
        self.connection.add_disconnect_listener(fn)

    def _request(self, cmd, payload=b"", timeout=None):
        return self.connection.send(cmd, payload, timeout or self.timeout)

    # ── Identity ──────────────────────────────────────────────────────────

    def get_api_version(self):
        payload = self._request(MSP_API_VERSION)
        if len(payload) < 3:
            raise MSPError("Invalid API_VERSION response", MSP_API_VERSION)
        return {"protocol": payload[0], "major": payload[1], "minor": payload[2],
                "api_version": f"{payload[1]}.{payload[2]}"}

    def get_fc_variant(self):
        """Get FC variant string (e.g., 'BTFL')."""
        payload = self._request(MSP_FC_VARIANT)
        return payload[:4].decode("ascii", errors="ignore")

    def get_fc_version(self):
        """Get FC firmware version as (major, minor, patch) tuple."""
        payload = self._request(MSP_FC_VERSION)
        if len(payload) < 3:
            raise MSPError("Invalid FC_VERSION response", MSP_FC_VERSION)
        return (payload[0], payload[1], payload[2])

    def get_craft_name(self):
        payload = self._request(MSP_NAME)
        return payload.decode("ascii", errors="ignore").strip("\x00").strip()

    def get_board_info(self):
        """Board identifier, hardware revision and target name."""
        payload = self._request(MSP_BOARD_INFO)
        if len(payload) < 9:
            raise MSPError("Invalid BOARD_INFO response", MSP_BOARD_INFO)
        info = {
            "board_id": payload[:4].decode("ascii", errors="ignore"),
            "hardware_revision": struct.unpack_from("<H", payload, 4)[0],
            "target_name": "",
            "board_name": "",
        }
        n = payload[8]
        info["target_name"] = payload[9:9 + n].decode("ascii", errors="ignore")
        pos = 9 + n
        if pos < len(payload):
            m = payload[pos]
            info["board_name"] = payload[pos + 1:pos + 1 + m].decode("ascii", errors="ignore")
        return info

    def get_uid(self):
        """12-byte MCU unique id as upper-case hex; used as the device serial."""
        payload = self._request(MSP_UID)
        if len(payload) < 12:
            raise MSPError("Invalid UID response", MSP_UID)
        return payload[:12].hex().upper()

    def get_info(self):
        """Get comprehensive FC identification."""
        if self._info:
            return self._info
        api = self.get_api_version()
        variant = self.get_fc_variant()
        version = self.get_fc_version()
        board = self.get_board_info()
        craft = self.get_craft_name()
        uid = self.get_uid()
        version_str = f"{version[0]}.{version[1]}.{version[2]}"
        self._info = {
            "fc_variant": variant,
            "version": version,
            "version_str": version_str,
            "api_version": api["api_version"],
            "craft_name": craft,
            "board": board["board_id"],
            "target": board["target_name"],
            "uid": uid,
            "firmware": f"{variant} {version_str}",
        }
        return self._info

    # ── PID / filter / feedforward ────────────────────────────────────────

    def get_pid_config(self):
        """Roll/pitch/yaw P, I, D as {'roll': {'p':..,'i':..,'d':..}, ...}."""
        payload = self._request(MSP_PID)
        if len(payload) < 9:
            raise MSPError("Invalid PID response", MSP_PID)
        return {ax: {"p": payload[i * 3], "i": payload[i * 3 + 1], "d": payload[i * 3 + 2]}
                for i, ax in enumerate(AXES)}

    def set_pid_config(self, pids):
        """Write roll/pitch/yaw gains, leaving every other PID item untouched."""
        current = bytearray(self._request(MSP_PID))
        for i, ax in enumerate(AXES):
            for j, term in enumerate("pid"):
                if ax in pids and term in pids[ax]:
                    current[i * 3 + j] = max(0, min(255, int(round(pids[ax][term]))))
        self._request(MSP_SET_PID, bytes(current))
        log.info(f"PIDs written: {', '.join(f'{ax} {pids[ax]}' for ax in AXES if ax in pids)}")

    def get_filter_config(self):
        payload = self._request(MSP_FILTER_CONFIG)
        if len(payload) < 29:
            raise MSPError("Invalid FILTER_CONFIG response", MSP_FILTER_CONFIG)
        return _unpack_fields(payload, _FILTER_FIELDS)

    def get_feedforward_config(self):
        payload = self._request(MSP_PID_ADVANCED)
        if len(payload) < 38:
            raise MSPError("Invalid PID_ADVANCED response", MSP_PID_ADVANCED)
        return _unpack_fields(payload, _FEEDFORWARD_FIELDS)

    def set_feedforward_config(self, values):
        current = self._request(MSP_PID_ADVANCED)
        self._request(MSP_SET_PID_ADVANCED, _pack_fields(current, _FEEDFORWARD_FIELDS, values))
        log.info(f"Feedforward written: {values}")

    def write_eeprom(self):
        self._request(MSP_EEPROM_WRITE)

    # ── Dataflash (Blackbox) ──────────────────────────────────────────────

    def get_dataflash_summary(self):
        """Get dataflash status and size info.

        Returns dict with ready, supported, sectors, total_size, used_size.
        """
        payload = self._request(MSP_DATAFLASH_SUMMARY)
        if len(payload) < 13:
            raise MSPError("Invalid DATAFLASH_SUMMARY response", MSP_DATAFLASH_SUMMARY)
        flags, sectors, total_size, used_size = struct.unpack_from("<BIII", payload, 0)
        return {
            "ready": bool(flags & 0x01),
            "supported": bool(flags & 0x02) or total_size > 0,
            "sectors": sectors,
            "total_size": total_size,
            "used_size": used_size,
        }

    def read_dataflash_chunk(self, address, size=DATAFLASH_CHUNK):
        """Read a chunk of dataflash at the given address.

        Returns (actual_address, data_bytes).
        """
        req = struct.pack("<IHB", address, size, 0)
        payload = self._request(MSP_DATAFLASH_READ, req, timeout=DATAFLASH_READ_TIMEOUT)
        if len(payload) < 6:
            raise MSPError("Short DATAFLASH_READ response", MSP_DATAFLASH_READ)
        resp_addr, data_size = struct.unpack_from("<IH", payload, 0)
        # Newer firmware appends a compression-type byte to the header
        header = 7 if len(payload) >= 7 + data_size and len(payload) != 6 + data_size else 6
        if header == 7 and payload[6] != 0:
            raise MSPError("Compressed dataflash reads are not supported", MSP_DATAFLASH_READ)
        return resp_addr, payload[header:header + data_size]

    def download_blackbox(self, progress_callback=None, chunk_size=DATAFLASH_CHUNK, retries=3):
        """Download the used part of dataflash as one bytes object.

        Args:
            progress_callback: Optional fn(bytes_read, total_bytes)
        """
        summary = self.get_dataflash_summary()
        if not summary["supported"]:
            raise MSPError("Dataflash not supported on this board")
        used = summary["used_size"]
        if used == 0:
            return b""

        buf = bytearray()
        address = 0
        while address < used:
            want = min(chunk_size, used - address)
            for attempt in range(retries):
                try:
                    resp_addr, data = self.read_dataflash_chunk(address, want)
                    break
                except MSPTimeoutError:
                    log.warning(f"Dataflash read at 0x{address:08x} timed out (attempt {attempt + 1})")
            else:
                raise MSPTimeoutError(f"Dataflash read at 0x{address:08x} failed after {retries} attempts",
                                      MSP_DATAFLASH_READ)
            if resp_addr != address or not data:
                raise MSPError(f"Dataflash read returned address 0x{resp_addr:08x}, expected 0x{address:08x}",
                               MSP_DATAFLASH_READ)
            buf += data
            address += len(data)
            if progress_callback:
                progress_callback(min(address, used), used)
        log.info(f"Downloaded {len(buf):,} bytes of blackbox data")
        return bytes(buf[:used])

    def erase_dataflash(self, timeout=30.0, poll=0.5):
        """Erase all blackbox data and wait until the flash reports empty."""
        log.info("Erasing dataflash...")
        self._request(MSP_DATAFLASH_ERASE)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            time.sleep(poll)
            try:
                summary = self.get_dataflash_summary()
            except MSPTimeoutError:
                continue  # FC is busy erasing
            if summary["ready"] and summary["used_size"] == 0:
                log.info("Dataflash erased")
                return True
        log.warning("Timeout waiting for dataflash erase (flash may still be erasing)")
        return False

    # ── CLI ───────────────────────────────────────────────────────────────

    def _cli_export(self, command, timeout):
        self.connection.enter_cli()
        output = self.connection.send_cli_command(command, timeout=timeout)
        return clean_cli_output(output, command)

    def export_cli_diff(self, timeout=10.0):
        """`diff all` text. The device stays in CLI mode until it reboots."""
        return self._cli_export("diff all", timeout)

    def export_cli_dump(self, timeout=15.0):
        return self._cli_export("dump", timeout)

    def cli_set(self, settings):
        """Apply {name: value} via `set name = value`; returns names applied."""
        self.connection.enter_cli()
        applied = []
        for name, value in settings.items():
            self.connection.send_cli_command(f"set {name} = {value}")
            applied.append(name)
            log.info(f"  set {name} = {value}")
        return applied

    def save_and_reboot(self):
        """`save` in CLI; the FC writes EEPROM and reboots, dropping the link."""
        self.connection.enter_cli()
        self.connection.send_cli_line("save")
        time.sleep(0.2)
        self.close()
        log.info("Settings saved, FC rebooting")

    def reboot(self):
        self._request(MSP_REBOOT, b"\x00")
        self.close()
        log.info("FC rebooting")

    def reconnect(self, wait=REBOOT_WAIT, attempts=5, interval=1.0):
        """Wait out a reboot and reopen the same port."""
        self.close()
        time.sleep(wait)
        last = None
        for attempt in range(attempts):
            try:
                self.open()
                log.info(f"Reconnected to {self.port_path}")
                return
            except SerialConnectionError as e:
                last = e
                log.debug(f"Reconnect attempt {attempt + 1} failed: {e}")
                time.sleep(interval)
        raise SerialConnectionError(f"Could not reconnect to {self.port_path}: {last}")

    def snapshot_settings(self):
        """Current tuning-relevant settings as restorable CLI `set` lines.

        Built from binary reads so the link stays in binary mode.
        """
        values = {}
        for ax, terms in self.get_pid_config().items():
            for term, v in terms.items():
                values[f"{term}_{ax}"] = v
        values.update(self.get_feedforward_config())
        values.update(self.get_filter_config())
        info = self.get_info()
        lines = [f"# {info['firmware']} / {info['target'] or info['board']} / {info['uid']}"]
        lines += [f"set {k} = {values[k]}" for k in sorted(values)]
        return "\n".join(lines) + "\n"


# ─── CLI Entrypoint ──────────────────────────────────────────────────────────

def main():
    """Standalone usage: identify FC and dump dataflash to a file."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Betaflight MSP - identify an FC and download its blackbox flash")
    parser.add_argument("--device", "-d", default="auto",
                        help="Serial port (e.g., /dev/ttyACM0) or 'auto' to scan")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                        help=f"Baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--output", "-o", help="Write dataflash contents to this .bbl file")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="  %(message)s")
    print(f"\n  ▲ Betaflight MSP v{VERSION}")

    if args.device == "auto":
        fc, info = auto_detect_fc(baudrate=args.baud)
        if not fc:
            print("  ERROR: No Betaflight flight controller found.")
            sys.exit(1)
    else:
        fc = BetaflightDevice(args.device, baudrate=args.baud)
        try:
            fc.open()
            info = fc.get_info()
        except BFTuneError as e:
            print(f"  ERROR: {e}")
            fc.close()
            sys.exit(1)

    try:
        print(f"  Firmware:   {info['firmware']} (API {info['api_version']})")
        print(f"  Craft:      {info['craft_name'] or '(not set)'}")
        print(f"  Target:     {info['target'] or info['board']}")
        print(f"  UID:        {info['uid']}")
        summary = fc.get_dataflash_summary()
        print(f"  Dataflash:  {summary['used_size'] / 1024:.0f}KB / {summary['total_size'] / 1024:.0f}KB")
        if args.output and summary["used_size"]:
            data = fc.download_blackbox(
                progress_callback=lambda done, total: print(
                    f"\r  Downloading: {done * 100 // total}%", end="", flush=True))
            print()
            with open(args.output, "wb") as f:
                f.write(data)
            print(f"  Saved {len(data):,} bytes to {args.output}")
    except BFTuneError as e:
        print(f"  ERROR: {e}")
        sys.exit(1)
    finally:
        fc.close()


if __name__ == "__main__":
    main()
