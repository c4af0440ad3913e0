#!/usr/bin/env python3
"""
Betaflight Blackbox - native decoder for .bbl/.bfl flight logs.

Decodes binary blackbox logs directly, no external tools needed:
  - ASCII header block ("H key:value") with per-frame-type field definitions
  - variable-byte integers, ZigZag signed encoding, 14-bit negated form
  - grouped tag encodings (TAG2_3S32, TAG2_3SVARIABLE, TAG8_4S16, TAG8_8SVB)
  - I-frame/P-frame predictors (previous, straight line, average, motor[0], ...)
  - multiple sessions per file, with stale flash garbage between them

A corrupt frame never aborts a session: it is counted, predictor history is
dropped, and decoding resumes one byte after where the frame started.

Usage:
    from bf_blackbox import decode_file

    for session in decode_file("LOG00001.BFL"):
        print(session.sample_rate, session.frame_count, session.warnings)
        gyro_roll = session.channels["gyro"][0]
"""

import logging
import re
from collections import namedtuple

import numpy as np

from bf_errors import BlackboxError

log = logging.getLogger("bftune.blackbox")

# ─── Encodings and Predictors ────────────────────────────────────────────────

ENC_SIGNED_VB = 0
ENC_UNSIGNED_VB = 1
ENC_NEG_14BIT = 3
ENC_TAG8_8SVB = 6
ENC_TAG2_3S32 = 7
ENC_TAG8_4S16 = 8
ENC_NULL = 9
ENC_TAG2_3SVARIABLE = 10

PRED_ZERO = 0
PRED_PREVIOUS = 1
PRED_STRAIGHT_LINE = 2
PRED_AVERAGE_2 = 3
PRED_MINTHROTTLE = 4
PRED_MOTOR_0 = 5
PRED_INC = 6
PRED_HOME_COORD = 7
PRED_1500 = 8
PRED_VBATREF = 9

SERVO_CENTER = 1500

FRAME_I, FRAME_P, FRAME_E = ord("I"), ord("P"), ord("E")
FRAME_S, FRAME_G, FRAME_H = ord("S"), ord("G"), ord("H")
VALID_FRAMES = {FRAME_I, FRAME_P, FRAME_E, FRAME_S, FRAME_G, FRAME_H}

EVT_SYNC_BEEP = 0
EVT_INFLIGHT_ADJUSTMENT = 13
EVT_LOGGING_RESUME = 14
EVT_DISARM = 15
EVT_FLIGHT_MODE = 30
EVT_LOG_END = 255
END_OF_LOG_MESSAGE = b"End of log\x00"

SESSION_MARKER = b"H Product:"
HEADER_PREFIX = b"H "

MAX_FRAME_LENGTH = 256
MAX_ITERATION_JUMP = 5000
MAX_TIME_JUMP_US = 10_000_000
# I-frames are absolute; predictor rounding lets them land slightly behind
MAX_I_FRAME_ITER_BACKWARD = 1000
MAX_I_FRAME_TIME_BACKWARD_US = 1_000_000

DEFAULT_MINTHROTTLE = 1070
DEFAULT_MAXTHROTTLE = 2000
DEFAULT_LOOPTIME = 312
DEFAULT_VBATREF = 0

FieldDef = namedtuple("FieldDef", ["name", "signed", "predictor", "encoding"])


# ─── Header Parsing ──────────────────────────────────────────────────────────

def _int(value, default=0):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_field_defs(raw, frame_type):
    """Field definitions for one frame type ('I', 'P', 'S', 'G', 'H').

    P-frames without their own name list reuse the I-frame names.
    """
    names = raw.get(f"Field {frame_type} name", "")
    if not names and frame_type == "P":
        names = raw.get("Field I name", "")
    if not names:
        return []
    names = [n.strip() for n in names.split(",") if n.strip()]

    def column(key, default):
        parts = [p.strip() for p in raw.get(f"Field {frame_type} {key}", "").split(",")]
        return [_int(parts[i], default) if i < len(parts) and parts[i] else default
                for i in range(len(names))]

    signed = column("signed", 0)
    predictor = column("predictor", PRED_ZERO)
    encoding = column("encoding", ENC_SIGNED_VB)
    return [FieldDef(n, bool(s), p, e) for n, s, p, e in zip(names, signed, predictor, encoding)]


def parse_header_lines(lines):
    """{key: value} from 'H key:value' text lines."""
    raw = {}
    for line in lines:
        if not line.startswith("H "):
            continue
        key, sep, value = line[2:].partition(":")
        if sep:
            raw[key.strip()] = value.strip()
    return raw


def parse_p_interval(raw):
    """(numerator, denominator) of 'P interval:N/D'; falls back to 'P ratio'."""
    value = raw.get("P interval")
    if not value:
        return 1, max(1, _int(raw.get("P ratio"), 1))
    num, _, den = value.partition("/")
    return max(1, _int(num, 1)), max(1, _int(den, 1))


def build_header(raw):
    """Typed header summary used by the decoder and the analysis layer."""
    num, den = parse_p_interval(raw)
    motor_output = raw.get("motorOutput", "")
    header = {
        "product": raw.get("Product", ""),
        "data_version": _int(raw.get("Data version"), 2),
        "firmware_type": raw.get("Firmware type", ""),
        "firmware_revision": raw.get("Firmware revision", ""),
        "firmware_date": raw.get("Firmware date", ""),
        "board_information": raw.get("Board information", ""),
        "craft_name": raw.get("Craft name", ""),
        "i_interval": _int(raw.get("I interval"), 32),
        "p_interval_num": num,
        "p_interval_den": den,
        "minthrottle": _int(raw.get("minthrottle"), DEFAULT_MINTHROTTLE),
        "maxthrottle": _int(raw.get("maxthrottle"), DEFAULT_MAXTHROTTLE),
        "vbatref": _int(raw.get("vbatref"), DEFAULT_VBATREF),
        "looptime": _int(raw.get("looptime"), DEFAULT_LOOPTIME) or DEFAULT_LOOPTIME,
        "motor_output": [_int(x) for x in motor_output.split(",")] if motor_output else [],
        "debug_mode": _int(raw.get("debug_mode"), 0),
        "fields": {t: parse_field_defs(raw, t) for t in "IPSGH"},
    }
    return header


def parse_firmware_version(header):
    """(major, minor, patch) from 'Firmware revision', e.g. 'Betaflight 4.5.1 (...)'."""
    m = re.search(r"(\d+)\.(\d+)(?:\.(\d+))?", header.get("firmware_revision", ""))
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)


def sample_rate_from_header(header):
    """Logged sample rate: 1e6 / (looptime * D / N) for 'P interval:N/D'."""
    period_us = header["looptime"] * header["p_interval_den"] / header["p_interval_num"]
    return 1e6 / period_us


# ─── Stream Reader ───────────────────────────────────────────────────────────

class _Reader:
    """Bounded byte cursor. Reading past the end raises EOFError."""

    __slots__ = ("buf", "pos", "end")

    def __init__(self, buf, start=0, end=None):
        self.buf = buf
        self.pos = start
        self.end = len(buf) if end is None else end

    @property
    def eof(self):
        return self.pos >= self.end

    def byte(self):
        if self.pos >= self.end:
            raise EOFError("unexpected end of log")
        b = self.buf[self.pos]
        self.pos += 1
        return b

    def unsigned_vb(self):
        result, shift = 0, 0
        for _ in range(5):
            b = self.byte()
            result |= (b & 0x7F) << shift
            if not (b & 0x80):
                return result
            shift += 7
        raise ValueError("variable-byte integer longer than 5 bytes")

    def signed_vb(self):
        u = self.unsigned_vb()
        return (u >> 1) ^ -(u & 1)  # ZigZag

    def read_bytes(self, n):
        if self.pos + n > self.end:
            raise EOFError("unexpected end of log")
        data = self.buf[self.pos:self.pos + n]
        self.pos += n
        return data

    def le_signed(self, nbytes):
        data = self.read_bytes(nbytes)
        return int.from_bytes(data, "little", signed=True)

    def line(self):
        nl = self.buf.find(b"\n", self.pos, self.end)
        if nl < 0:
            text = self.buf[self.pos:self.end]
            self.pos = self.end
        else:
            text = self.buf[self.pos:nl]
            self.pos = nl + 1
        return text.rstrip(b"\r")


def _sign_extend(value, bits):
    sign = 1 << (bits - 1)
    return (value & (sign - 1)) - (value & sign)


# ─── Value Decoders ──────────────────────────────────────────────────────────
# Each decoder reads one group and returns a list of raw values.

def _dec_signed_vb(r, count):
    return [r.signed_vb()]


def _dec_unsigned_vb(r, count):
    return [r.unsigned_vb()]


def _dec_neg_14bit(r, count):
    return [-_sign_extend(r.unsigned_vb(), 14)]


def _dec_null(r, count):
    return [0]


def _dec_tag8_8svb(r, count):
    """Header byte with one presence bit per field; a lone field has no header."""
    if count == 1:
        return [r.signed_vb()]
    header = r.byte()
    return [r.signed_vb() if header & (1 << i) else 0 for i in range(count)]


def _read_3_variable_width(r, lead):
    # 2-bit tag per field from the low bits up: 8/16/24/32-bit little-endian
    values = []
    for _ in range(3):
        values.append(r.le_signed((lead & 0x03) + 1))
        lead >>= 2
    return values


def _dec_tag2_3s32(r, count):
    lead = r.byte()
    selector = lead >> 6
    if selector == 0:
        return [_sign_extend((lead >> 4) & 0x03, 2),
                _sign_extend((lead >> 2) & 0x03, 2),
                _sign_extend(lead & 0x03, 2)]
    if selector == 1:
        b = r.byte()
        return [_sign_extend(lead & 0x0F, 4),
                _sign_extend(b >> 4, 4),
                _sign_extend(b & 0x0F, 4)]
    if selector == 2:
        b1, b2 = r.byte(), r.byte()
        return [_sign_extend(lead & 0x3F, 6),
                _sign_extend(b1 & 0x3F, 6),
                _sign_extend(b2 & 0x3F, 6)]
    return _read_3_variable_width(r, lead)


def _dec_tag2_3svariable(r, count):
    lead = r.byte()
    selector = lead >> 6
    if selector == 0:
        return [_sign_extend((lead >> 4) & 0x03, 2),
                _sign_extend((lead >> 2) & 0x03, 2),
                _sign_extend(lead & 0x03, 2)]
    if selector == 1:
        # 5-5-4 bit fields
        b = r.byte()
        return [_sign_extend((lead & 0x3E) >> 1, 5),
                _sign_extend(((lead & 0x01) << 4) | (b >> 4), 5),
                _sign_extend(b & 0x0F, 4)]
    if selector == 2:
        # 8-7-7 bit fields
        b1, b2 = r.byte(), r.byte()
        return [_sign_extend(((lead & 0x3F) << 2) | (b1 >> 6), 8),
                _sign_extend(((b1 & 0x3F) << 1) | (b2 >> 7), 7),
                _sign_extend(b2 & 0x7F, 7)]
    return _read_3_variable_width(r, lead)


def _dec_tag8_4s16(r, count):
    """TAG8_4S16 v2: nibble-buffered, 2-bit selectors for 4 fields."""
    selector = r.byte()
    values = [0, 0, 0, 0]
    nibble = False  # a low nibble of buf is still pending
    buf = 0
    for i in range(4):
        ft = selector & 0x03
        if ft == 1:  # 4-bit
            if not nibble:
                buf = r.byte()
                v = buf >> 4
            else:
                v = buf & 0x0F
            nibble = not nibble
            values[i] = _sign_extend(v, 4)
        elif ft == 2:  # 8-bit
            if not nibble:
                v = r.byte()
            else:
                v = (buf & 0x0F) << 4
                buf = r.byte()
                v |= buf >> 4
            values[i] = _sign_extend(v, 8)
        elif ft == 3:  # 16-bit
            if not nibble:
                b1, b2 = r.byte(), r.byte()
            else:
                b1 = (buf & 0x0F) << 4
                buf = r.byte()
                b1 |= buf >> 4
                b2 = (buf & 0x0F) << 4
                buf = r.byte()
                b2 |= buf >> 4
            values[i] = _sign_extend((b1 << 8) | b2, 16)
        selector >>= 2
    return values


# encoding -> (decoder, group size); group size None means "run of same encoding, up to 8"
VALUE_DECODERS = {
    ENC_SIGNED_VB: (_dec_signed_vb, 1),
    ENC_UNSIGNED_VB: (_dec_unsigned_vb, 1),
    ENC_NEG_14BIT: (_dec_neg_14bit, 1),
    ENC_TAG8_8SVB: (_dec_tag8_8svb, None),
    ENC_TAG2_3S32: (_dec_tag2_3s32, 3),
    ENC_TAG8_4S16: (_dec_tag8_4s16, 4),
    ENC_NULL: (_dec_null, 1),
    ENC_TAG2_3SVARIABLE: (_dec_tag2_3svariable, 3),
}


# ─── Predictors ──────────────────────────────────────────────────────────────
# fn(raw, i, ctx) where ctx carries prev, prev2, current values, header, motor0 index.

def _pred_zero(raw, i, ctx):
    return raw


def _pred_previous(raw, i, ctx):
    if ctx.intra:
        return raw
    return raw + ctx.prev[i]


def _pred_straight_line(raw, i, ctx):
    if ctx.intra:
        return raw
    return raw + 2 * ctx.prev[i] - ctx.prev2[i]


def _pred_average_2(raw, i, ctx):
    if ctx.intra:
        return raw
    return raw + ((ctx.prev[i] + ctx.prev2[i]) >> 1)


def _pred_minthrottle(raw, i, ctx):
    return raw + ctx.header["minthrottle"]


def _pred_motor_0(raw, i, ctx):
    if ctx.motor0 is None or ctx.motor0 >= i:
        return raw
    return raw + ctx.current[ctx.motor0]


def _pred_increment(raw, i, ctx):
    if ctx.intra:
        return raw
    return ctx.prev[i] + 1 + raw


def _pred_home_coord(raw, i, ctx):
    # GPS home is not tracked; treated like PREVIOUS
    return _pred_previous(raw, i, ctx)


def _pred_servo_center(raw, i, ctx):
    return raw + SERVO_CENTER


def _pred_vbatref(raw, i, ctx):
    return raw + ctx.header["vbatref"]


PREDICTORS = {
    PRED_ZERO: _pred_zero,
    PRED_PREVIOUS: _pred_previous,
    PRED_STRAIGHT_LINE: _pred_straight_line,
    PRED_AVERAGE_2: _pred_average_2,
    PRED_MINTHROTTLE: _pred_minthrottle,
    PRED_MOTOR_0: _pred_motor_0,
    PRED_INC: _pred_increment,
    PRED_HOME_COORD: _pred_home_coord,
    PRED_1500: _pred_servo_center,
    PRED_VBATREF: _pred_vbatref,
}


class _PredictionContext:
    __slots__ = ("intra", "prev", "prev2", "current", "header", "motor0")

    def __init__(self, intra, prev, prev2, current, header, motor0):
        self.intra = intra
        self.prev = prev
        self.prev2 = prev2
        self.current = current
        self.header = header
        self.motor0 = motor0


def decode_frame_values(reader, defs, header, intra, prev=None, prev2=None):
    """Decode one I or P frame body into a list of field values."""
    n = len(defs)
    values = [0] * n
    motor0 = next((k for k, d in enumerate(defs) if d.name == "motor[0]"), None)
    if prev is None:
        prev = [0] * n
    if prev2 is None:
        prev2 = prev
    ctx = _PredictionContext(intra, prev, prev2, values, header, motor0)

    i = 0
    while i < n:
        enc = defs[i].encoding
        decoder, group = VALUE_DECODERS.get(enc, (_dec_signed_vb, 1))
        if group is None:
            group = 1
            while i + group < n and defs[i + group].encoding == enc and group < 8:
                group += 1
        raw = decoder(reader, group)
        for j, v in enumerate(raw[:n - i]):
            pred = PREDICTORS.get(defs[i + j].predictor, _pred_zero)
            values[i + j] = pred(v, i + j, ctx)
        i += max(1, min(group, len(raw)))
    return values


# ─── Flash Dump Cleanup ──────────────────────────────────────────────────────

def strip_flash_headers(data):
    """Remove MSP_DATAFLASH_READ reply headers from a raw dump.

    Clean logs start with 'H'. Otherwise try a 7-byte header
    (addr u32, size u16, compression u8) then a 6-byte one; the first
    chunk's data must start with 'H'.
    """
    if len(data) < 7 or data[0] == FRAME_H:
        return data
    for hdr in (7, 6):
        size = int.from_bytes(data[4:6], "little")
        if len(data) > hdr and data[hdr] == FRAME_H and 0 < size <= 4096:
            return _strip_fixed_headers(data, hdr)
    return data


def _strip_fixed_headers(data, hdr):
    out = bytearray()
    pos = 0
    while pos + 6 <= len(data):
        size = int.from_bytes(data[pos + 4:pos + 6], "little")
        if size == 0 or size > 4096:
            out += data[pos:]
            return bytes(out)
        start = pos + hdr
        out += data[start:start + size]
        pos = start + size
    out += data[pos:]
    return bytes(out)


# ─── Session Decoding ────────────────────────────────────────────────────────

class LogSession:
    """One decoded flight: header, per-channel numpy arrays, diagnostics."""

    def __init__(self, index, header, raw_headers):
        self.index = index
        self.header = header
        self.raw_headers = raw_headers
        self.channels = {}
        self.time_s = np.zeros(0)
        self.sample_rate = sample_rate_from_header(header)
        self.frame_count = 0
        self.corrupted_frames = 0
        self.warnings = []
        self.events = []

    @property
    def duration(self):
        if len(self.time_s) > 1:
            return float(self.time_s[-1] - self.time_s[0])
        return self.frame_count / self.sample_rate

    @property
    def firmware_version(self):
        return parse_firmware_version(self.header)

    def __repr__(self):
        return (f"LogSession(index={self.index}, frames={self.frame_count}, "
                f"rate={self.sample_rate:.0f}Hz, corrupted={self.corrupted_frames})")


def find_session_boundaries(data):
    """Offsets of every 'H Product:' line."""
    out = []
    pos = data.find(SESSION_MARKER)
    while pos >= 0:
        out.append(pos)
        pos = data.find(SESSION_MARKER, pos + len(SESSION_MARKER))
    return out


def _read_headers(reader):
    lines = []
    while not reader.eof:
        saved = reader.pos
        if reader.buf[reader.pos:reader.pos + 2] != HEADER_PREFIX:
            reader.pos = saved
            break
        lines.append(reader.line().decode("ascii", errors="replace"))
    return parse_header_lines(lines)


def _read_event(reader):
    """Consume one event frame body and return its type, or -1 for a false LOG_END."""
    evt = reader.byte()
    if evt == EVT_SYNC_BEEP:
        reader.unsigned_vb()
    elif evt == EVT_LOG_END:
        saved = reader.pos
        if reader.buf[saved:saved + len(END_OF_LOG_MESSAGE)] != END_OF_LOG_MESSAGE:
            return -1
        reader.pos = saved + len(END_OF_LOG_MESSAGE)
    elif evt == EVT_DISARM:
        reader.unsigned_vb()
    elif evt == EVT_FLIGHT_MODE:
        reader.unsigned_vb()
        reader.unsigned_vb()
    elif evt == EVT_INFLIGHT_ADJUSTMENT:
        func = reader.byte()
        if func > 127:
            reader.read_bytes(4)
        else:
            reader.signed_vb()
    elif evt == EVT_LOGGING_RESUME:
        reader.unsigned_vb()
        reader.unsigned_vb()
    return evt


def _temporal_ok(values, iter_idx, time_idx, last_iter, last_time, intra):
    if iter_idx is not None and last_iter is not None:
        it = values[iter_idx]
        if it >= last_iter + MAX_ITERATION_JUMP:
            return False
        floor = last_iter - MAX_I_FRAME_ITER_BACKWARD if intra else last_iter
        if it < floor:
            return False
    if time_idx is not None and last_time is not None:
        t = values[time_idx]
        if t >= last_time + MAX_TIME_JUMP_US:
            return False
        floor = last_time - MAX_I_FRAME_TIME_BACKWARD_US if intra else last_time
        if t < floor:
            return False
    return True


class BlackboxDecoder:
    """Decodes every session in a blackbox byte buffer."""

    def __init__(self, data, progress_callback=None):
        if not data:
            raise BlackboxError("Empty log")
        self.data = strip_flash_headers(bytes(data))
        self.progress_callback = progress_callback

    def decode(self):
        """Returns list of LogSession. Raises BlackboxError when nothing decodes."""
        bounds = find_session_boundaries(self.data)
        if not bounds:
            raise BlackboxError("No valid blackbox header found")
        sessions = []
        for idx, start in enumerate(bounds):
            end = bounds[idx + 1] if idx + 1 < len(bounds) else len(self.data)
            session = self._decode_session(idx, start, end)
            if session is not None:
                sessions.append(session)
        if not sessions:
            raise BlackboxError("No parseable flight data found")
        return sessions

    def _report(self, pos):
        if self.progress_callback:
            self.progress_callback(pos, len(self.data))

    def _decode_session(self, index, start, end):
        reader = _Reader(self.data, start, end)
        raw = _read_headers(reader)
        header = build_header(raw)
        i_defs = header["fields"]["I"]
        p_defs = header["fields"]["P"]
        s_defs = header["fields"]["S"]
        if not i_defs:
            log.warning(f"Session {index}: no I-frame field definitions, skipped")
            return None

        session = LogSession(index, header, raw)
        i_names = [d.name for d in i_defs]
        p_to_i = [i_names.index(d.name) if d.name in i_names else -1 for d in p_defs]
        iter_idx = i_names.index("loopIteration") if "loopIteration" in i_names else None
        time_idx = i_names.index("time") if "time" in i_names else None

        frames = []
        prev = prev2 = None
        last_iter = last_time = None
        corrupted = 0
        next_report = reader.pos + 16384

        while not reader.eof:
            frame_start = reader.pos
            if frame_start >= next_report:
                self._report(frame_start)
                next_report = frame_start + 16384
            marker = reader.byte()
            try:
                if marker == FRAME_I or marker == FRAME_P:
                    intra = marker == FRAME_I
                    if not intra and not p_defs:
                        prev = prev2 = None
                        continue
                    values = decode_frame_values(reader, i_defs if intra else p_defs, header,
                                                 intra, prev, prev2)
                    if not intra:
                        mapped = [0] * len(i_defs)
                        for p, iidx in enumerate(p_to_i):
                            if iidx >= 0:
                                mapped[iidx] = values[p]
                        values = mapped
                    if (reader.pos - frame_start > MAX_FRAME_LENGTH
                            or (not reader.eof and reader.buf[reader.pos] not in VALID_FRAMES)):
                        raise ValueError("frame overran or not followed by a frame marker")
                    if not intra and prev is None:
                        continue  # no history to predict from
                    if not _temporal_ok(values, iter_idx, time_idx, last_iter, last_time, intra):
                        corrupted += 1
                        prev = prev2 = None
                        continue
                    frames.append(values)
                    if intra:
                        prev = prev2 = values
                    else:
                        prev2, prev = prev, values
                    if iter_idx is not None:
                        last_iter = values[iter_idx]
                    if time_idx is not None:
                        last_time = values[time_idx]
                elif marker == FRAME_S:
                    if s_defs:
                        decode_frame_values(reader, s_defs, header, True)
                elif marker == FRAME_E:
                    evt = _read_event(reader)
                    if evt == EVT_LOG_END:
                        session.events.append("log_end")
                        break
                    if evt >= 0:
                        session.events.append(evt)
                else:
                    # GPS frames are not decoded; unknown bytes are skipped
                    prev = prev2 = None
            except (EOFError, ValueError) as e:
                corrupted += 1
                prev = prev2 = None
                reader.pos = frame_start + 1
                log.debug(f"Session {index}: corrupt frame at {frame_start}: {e}")

        self._report(reader.pos)
        session.corrupted_frames = corrupted
        if corrupted:
            msg = f"{corrupted} corrupted frame(s) skipped"
            session.warnings.append(msg)
            log.warning(f"Session {index}: {msg}")
        if not frames:
            log.warning(f"Session {index}: no valid frames decoded")
            return None

        self._extract_channels(session, i_names, frames, time_idx)
        return session

    def _extract_channels(self, session, names, frames, time_idx):
        arr = np.asarray(frames, dtype=np.float64)
        n = len(arr)
        session.frame_count = n
        dt = 1.0 / session.sample_rate
        col = {name: k for k, name in enumerate(names)}

        time_s = None
        if time_idx is not None:
            t = arr[:, time_idx] / 1e6
            d = np.diff(t)
            if not len(d) or (d.min() >= -1 and d.max() <= 10):
                time_s = t
        if time_s is None:
            time_s = np.arange(n) * dt
        session.time_s = time_s

        def channel(name):
            k = col.get(name)
            return arr[:, k].copy() if k is not None else np.zeros(n)

        setpoint = []
        for i in range(4):
            sp = f"setpoint[{i}]"
            setpoint.append(channel(sp if sp in col else f"rcCommand[{i}]"))

        session.channels = {
            "gyro": [channel(f"gyroADC[{i}]") for i in range(3)],
            "setpoint": setpoint,
            "pid_p": [channel(f"axisP[{i}]") for i in range(3)],
            "pid_i": [channel(f"axisI[{i}]") for i in range(3)],
            "pid_d": [channel(f"axisD[{i}]") for i in range(3)],
            "pid_f": [channel(f"axisF[{i}]") for i in range(3)],
            "motor": [channel(f"motor[{i}]") for i in range(4)],
            "debug": [channel(f"debug[{i}]") for i in range(8) if f"debug[{i}]" in col],
        }

        if "gyroADC[0]" not in col:
            session.warnings.append("Missing gyroADC fields - gyro data will be empty")
        for axis, vals in zip(("roll", "pitch", "yaw"), session.channels["gyro"]):
            lo, hi = vals.min(), vals.max()
            zeros = int(np.count_nonzero(vals == 0))
            if hi - lo < 1:
                session.warnings.append(f"gyro {axis}: constant value {lo:.0f}, likely parsing error")
            elif zeros > 0.9 * n:
                session.warnings.append(f"gyro {axis}: {zeros * 100 // n}% zeros, likely parsing error")
            elif hi > 32000 or lo < -32000:
                session.warnings.append(f"gyro {axis}: extreme range [{lo:.0f}, {hi:.0f}], possible corruption")


def decode_log(data, progress_callback=None):
    """Decode a blackbox byte buffer into a list of LogSession."""
    return BlackboxDecoder(data, progress_callback).decode()


def decode_file(filepath, progress_callback=None):
    with open(filepath, "rb") as f:
        data = f.read()
    sessions = decode_log(data, progress_callback)
    log.info(f"Decoded {filepath}: {len(sessions)} session(s), "
             f"{sum(s.frame_count for s in sessions):,} frames")
    return sessions


def parse_headers_from_bbl(filepath):
    """Parse only the header lines of the first session in a .bbl file."""
    lines = []
    with open(filepath, "rb") as f:
        for raw_line in f:
            if raw_line.startswith(HEADER_PREFIX):
                lines.append(raw_line.decode("ascii", errors="replace").rstrip("\r\n"))
            elif lines:
                break
    return parse_header_lines(lines)
