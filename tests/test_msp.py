#!/usr/bin/env python3
"""
test_msp.py - MSP v1 codec, serial connection and Betaflight device ops.

  Section 1 - Frame encode/decode (normal + jumbo)
  Section 2 - Receive-buffer parsing (chunked, garbage, corrupt)
  Section 3 - CLI text helpers
  Section 4 - MSPConnection over a loopback port
  Section 5 - BetaflightDevice operations
"""

import random
import struct
import threading
import time

import pytest

import bf_msp as msp
from bf_errors import (
    CLICommandError, CLIError, ChecksumError, DirectionError, MSPError,
    MSPTimeoutError, PreambleError, SerialConnectionError,
)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1: FRAME CODEC
# ═══════════════════════════════════════════════════════════════════════

class TestEncode:

    def test_empty_request(self):
        # $ M < size=0 cmd=1 chk=0^1
        assert msp.msp_encode(1) == b"$M<\x00\x01\x01"

    def test_checksum_is_xor_of_size_cmd_payload(self):
        frame = msp.msp_encode(112, b"\x01\x02\x03")
        assert frame[:5] == b"$M<\x03\x70"
        assert frame[-1] == 3 ^ 112 ^ 1 ^ 2 ^ 3

    def test_response_direction(self):
        frame = msp.msp_encode(2, b"BTFL", msp.DIR_FROM_FC)
        assert frame[2:3] == b">"

    def test_254_bytes_uses_normal_form(self):
        frame = msp.msp_encode(71, bytes(254))
        assert frame[3] == 254
        assert len(frame) == 5 + 254 + 1

    def test_255_bytes_uses_jumbo_form(self):
        frame = msp.msp_encode(71, bytes(255))
        assert frame[3] == 0xFF
        assert frame[4] | (frame[5] << 8) == 255
        assert frame[6] == 71
        assert len(frame) == 7 + 255 + 1

    def test_jumbo_checksum(self):
        payload = bytes(range(256)) * 2
        frame = msp.msp_encode(71, payload)
        chk = (512 & 0xFF) ^ (512 >> 8) ^ 71
        for b in payload:
            chk ^= b
        assert frame[-1] == chk

    def test_payload_too_large(self):
        with pytest.raises(MSPError):
            msp.msp_encode(71, bytes(msp.MAX_PAYLOAD_SIZE + 1))

    def test_command_out_of_range(self):
        with pytest.raises(MSPError):
            msp.msp_encode(256)

    def test_bad_direction(self):
        with pytest.raises(MSPError):
            msp.msp_encode(1, b"", ord("x"))


class TestDecode:

    @pytest.mark.parametrize("command", [0, 1, 42, 128, 255])
    @pytest.mark.parametrize("size", [0, 1, 100, 254, 255, 256, 4096, msp.MAX_PAYLOAD_SIZE])
    def test_round_trip(self, command, size):
        payload = bytes((i * 7) & 0xFF for i in range(size))
        frame = msp.msp_encode(command, payload, msp.DIR_FROM_FC)
        decoded, consumed = msp.msp_decode(frame)
        assert decoded == msp.MSPFrame(command, payload, msp.DIR_FROM_FC)
        assert consumed == len(frame)

    @pytest.mark.parametrize("size", [0, 7, 255, 300])
    def test_every_command_code(self, size):
        payload = bytes(range(256)) * 2
        payload = payload[:size]
        for command in range(256):
            for direction in (msp.DIR_TO_FC, msp.DIR_FROM_FC):
                frame = msp.msp_encode(command, payload, direction)
                decoded, consumed = msp.msp_decode(frame)
                assert decoded == msp.MSPFrame(command, payload, direction), command
                assert consumed == len(frame)

    def test_every_prefix_needs_more_bytes(self):
        frame = msp.msp_encode(10, b"hello", msp.DIR_FROM_FC)
        for k in range(1, len(frame)):
            assert msp.msp_decode(frame[:k]) is None

    def test_every_prefix_of_jumbo_needs_more_bytes(self):
        frame = msp.msp_encode(71, bytes(300), msp.DIR_FROM_FC)
        for k in (1, 2, 3, 4, 5, 6, 7, 100, len(frame) - 1):
            assert msp.msp_decode(frame[:k]) is None

    def test_trailing_bytes_not_consumed(self):
        frame = msp.msp_encode(10, b"abc", msp.DIR_FROM_FC)
        _, consumed = msp.msp_decode(frame + b"$M>")
        assert consumed == len(frame)

    @pytest.mark.parametrize("size", [3, 300])
    def test_payload_mutation_fails_checksum(self, size):
        frame = bytearray(msp.msp_encode(10, bytes(i & 0xFF for i in range(size)), msp.DIR_FROM_FC))
        start = msp.HEADER_SIZE if size < 255 else msp.JUMBO_HEADER_SIZE
        frame[start + 1] ^= 0x40
        with pytest.raises(ChecksumError):
            msp.msp_decode(bytes(frame))

    def test_checksum_mutation(self):
        frame = bytearray(msp.msp_encode(10, b"abc", msp.DIR_FROM_FC))
        frame[-1] ^= 0xFF
        with pytest.raises(ChecksumError) as exc:
            msp.msp_decode(bytes(frame))
        assert exc.value.expected != exc.value.actual

    def test_bad_preamble(self):
        with pytest.raises(PreambleError):
            msp.msp_decode(b"XM>\x00\x01\x01")

    def test_bad_preamble_short(self):
        with pytest.raises(PreambleError):
            msp.msp_decode(b"X")

    def test_bad_direction(self):
        with pytest.raises(DirectionError):
            msp.msp_decode(b"$Mx\x00\x01\x01")

    def test_error_direction_decodes(self):
        frame = msp.msp_encode(99, b"", msp.DIR_ERROR)
        decoded, _ = msp.msp_decode(frame)
        assert decoded.direction == msp.DIR_ERROR


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2: BUFFER PARSING
# ═══════════════════════════════════════════════════════════════════════

class TestParseBuffer:

    @staticmethod
    def _frames(n):
        return [msp.msp_encode(i % 200, bytes([i]) * (i * 13 % 400), msp.DIR_FROM_FC)
                for i in range(n)]

    def test_chunked_stream_yields_all_frames(self):
        frames = self._frames(25)
        stream = b"".join(frames)
        rng = random.Random(7)
        got, rest = [], b""
        pos = 0
        while pos < len(stream):
            k = rng.randint(1, 64)
            out, rest = msp.parse_buffer(rest + stream[pos:pos + k])
            got.extend(out)
            pos += k
        assert rest == b""
        assert len(got) == 25
        assert [f.command for f in got] == [i % 200 for i in range(25)]

    def test_one_byte_at_a_time(self):
        frames = self._frames(4)
        got, rest = [], b""
        for b in b"".join(frames):
            out, rest = msp.parse_buffer(rest + bytes([b]))
            got.extend(out)
        assert len(got) == 4

    def test_garbage_between_frames(self):
        a = msp.msp_encode(1, b"x", msp.DIR_FROM_FC)
        b = msp.msp_encode(2, b"y", msp.DIR_FROM_FC)
        frames, rest = msp.parse_buffer(b"\x00\xffjunk" + a + b"noise" + b)
        assert [f.command for f in frames] == [1, 2]
        assert rest == b""

    def test_corrupt_frame_skipped(self):
        bad = bytearray(msp.msp_encode(1, b"abc", msp.DIR_FROM_FC))
        bad[-1] ^= 1
        good = msp.msp_encode(2, b"def", msp.DIR_FROM_FC)
        frames, _ = msp.parse_buffer(bytes(bad) + good)
        assert [f.command for f in frames] == [2]

    def test_partial_frame_kept(self):
        frame = msp.msp_encode(5, b"hello", msp.DIR_FROM_FC)
        frames, rest = msp.parse_buffer(frame[:6])
        assert frames == []
        assert rest == frame[:6]

    def test_trailing_dollar_kept(self):
        _, rest = msp.parse_buffer(b"junk$")
        assert rest == b"$"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3: CLI HELPERS
# ═══════════════════════════════════════════════════════════════════════

class TestCliHelpers:

    @pytest.mark.parametrize("text", ["Invalid name", "Invalid value", "Unknown command, try 'help'",
                                      "Parse error", "line\nERROR\n"])
    def test_errors_detected(self, text):
        assert msp.find_cli_error(text) is not None

    def test_clean_output_is_not_error(self):
        assert msp.find_cli_error("gyro_lpf1_static_hz set to 200\r\n# ") is None

    def test_clean_output(self):
        raw = "diff all\r\n# master\r\n\r\nset a = 1\r\nset b = 2\r\n\r\n# "
        assert msp.clean_cli_output(raw, "diff all") == "set a = 1\nset b = 2"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4: CONNECTION
# ═══════════════════════════════════════════════════════════════════════

class TestConnection:

    def test_open_twice_raises(self, device):
        with pytest.raises(SerialConnectionError):
            device.connection.open()

    def test_open_failure_wrapped(self):
        def factory(path, baud):
            raise OSError("no such port")

        conn = msp.MSPConnection("/dev/none", port_factory=factory)
        with pytest.raises(SerialConnectionError):
            conn.open()

    def test_send_when_closed(self, port_factory):
        conn = msp.MSPConnection("/dev/fake0", port_factory=port_factory)
        with pytest.raises(SerialConnectionError):
            conn.send(msp.MSP_API_VERSION)

    def test_send_returns_payload(self, device):
        assert device.connection.send(msp.MSP_FC_VARIANT) == b"BTFL"

    def test_error_reply_raises(self, device):
        with pytest.raises(MSPError):
            device.connection.send(77)
        assert device.connection.pending_commands() == []

    def test_timeout_clears_pending(self, device, fake_fc):
        fake_fc.silent.add(msp.MSP_STATUS)
        with pytest.raises(MSPTimeoutError):
            device.connection.send(msp.MSP_STATUS, timeout=0.2)
        assert device.connection.pending_commands() == []
        # link is still usable
        assert device.connection.send(msp.MSP_FC_VARIANT) == b"BTFL"

    def test_concurrent_different_commands(self, device):
        results = {}

        def worker(cmd):
            results[cmd] = device.connection.send(cmd)

        threads = [threading.Thread(target=worker, args=(c,))
                   for c in (msp.MSP_FC_VARIANT, msp.MSP_NAME, msp.MSP_UID, msp.MSP_PID)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(2)
        assert results[msp.MSP_FC_VARIANT] == b"BTFL"
        assert results[msp.MSP_NAME] == b"TestQuad"
        assert len(results[msp.MSP_UID]) == 12

    def test_same_command_queues(self, device):
        results = []

        def worker():
            results.append(device.connection.send(msp.MSP_PID))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(3)
        assert len(results) == 5
        assert all(len(r) == 30 for r in results)

    def test_unsolicited_frame_to_listener(self, device, port_factory):
        seen = []
        device.connection.add_unsolicited_listener(seen.append)
        port_factory.ports[-1].inject(msp.msp_encode(msp.MSP_STATUS, b"\x01", msp.DIR_FROM_FC))
        deadline = time.monotonic() + 1
        while not seen and time.monotonic() < deadline:
            time.sleep(0.01)
        assert seen and seen[0].command == msp.MSP_STATUS

    def test_disconnect_fails_pending_and_notifies(self, device, fake_fc, port_factory):
        lost = []
        device.add_disconnect_listener(lost.append)
        fake_fc.silent.add(msp.MSP_STATUS)
        errors = []

        def worker():
            try:
                device.connection.send(msp.MSP_STATUS, timeout=3)
            except SerialConnectionError as e:
                errors.append(e)

        t = threading.Thread(target=worker)
        t.start()
        time.sleep(0.1)
        port_factory.ports[-1].unplug()
        t.join(3)
        assert errors
        assert lost
        assert not device.is_connected

    def test_feed_routes_by_mode(self, port_factory):
        conn = msp.MSPConnection("/dev/fake0", port_factory=port_factory)
        seen = []
        conn.add_unsolicited_listener(seen.append)
        conn.feed(msp.msp_encode(5, b"", msp.DIR_FROM_FC))
        assert len(seen) == 1
        assert conn.mode is msp.Mode.BINARY


class TestCliMode:

    def test_enter_cli_switches_mode(self, device):
        device.connection.enter_cli()
        assert device.connection.mode is msp.Mode.CLI

    def test_command_output(self, device):
        device.connection.enter_cli()
        out = device.connection.send_cli_command("set gyro_lpf1_static_hz = 200")
        assert "set to 200" in out
        assert out.endswith(msp.CLI_PROMPT)

    def test_rejected_command(self, device, fake_fc):
        fake_fc.rejected_names.add("bogus")
        device.connection.enter_cli()
        with pytest.raises(CLICommandError) as exc:
            device.connection.send_cli_command("set bogus = 1")
        assert exc.value.command == "set bogus = 1"

    def test_cli_command_requires_cli_mode(self, device):
        with pytest.raises(CLIError):
            device.connection.send_cli_command("dump")

    def test_exit_cli_is_local(self, device, fake_fc):
        device.connection.enter_cli()
        n = len(fake_fc.events)
        device.connection.exit_cli()
        assert device.connection.mode is msp.Mode.BINARY
        assert len(fake_fc.events) == n

    def test_binary_send_leaves_cli_mode(self, device):
        device.connection.enter_cli()
        # the fake FC, like the real one, ignores MSP while in CLI
        with pytest.raises(MSPTimeoutError):
            device.connection.send(msp.MSP_FC_VARIANT, timeout=0.2)
        assert device.connection.mode is msp.Mode.BINARY


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5: DEVICE
# ═══════════════════════════════════════════════════════════════════════

class TestDeviceIdentity:

    def test_get_info(self, device):
        info = device.get_info()
        assert info["fc_variant"] == "BTFL"
        assert info["version"] == (4, 5, 1)
        assert info["version_str"] == "4.5.1"
        assert info["api_version"] == "1.46"
        assert info["craft_name"] == "TestQuad"
        assert info["board"] == "S7X2"
        assert info["target"] == "STM32F7X2"
        assert info["uid"] == "101112131415161718191A1B"
        assert info["firmware"] == "BTFL 4.5.1"

    def test_info_cached(self, device, fake_fc):
        device.get_info()
        n = len(fake_fc.events)
        device.get_info()
        assert len(fake_fc.events) == n

    def test_context_manager(self, port_factory):
        with msp.BetaflightDevice("/dev/fake0", port_factory=port_factory) as dev:
            assert dev.is_connected
        assert not dev.is_connected


class TestDeviceConfig:

    def test_get_pid_config(self, device):
        pids = device.get_pid_config()
        assert pids["roll"] == {"p": 45, "i": 80, "d": 30}
        assert pids["yaw"]["d"] == 0

    def test_set_pid_config_partial(self, device, fake_fc):
        device.set_pid_config({"roll": {"d": 35}, "pitch": {"p": 50}})
        pids = device.get_pid_config()
        assert pids["roll"] == {"p": 45, "i": 80, "d": 35}
        assert pids["pitch"]["p"] == 50
        # items beyond roll/pitch/yaw are preserved
        assert len(fake_fc.pid) == 30

    def test_set_pid_config_clamps(self, device):
        device.set_pid_config({"roll": {"p": 300}})
        assert device.get_pid_config()["roll"]["p"] == 255

    def test_filter_config(self, device):
        f = device.get_filter_config()
        assert f["gyro_lpf1_static_hz"] == 250
        assert f["dterm_lpf1_static_hz"] == 150
        assert f["dyn_notch_count"] == 3
        assert f["rpm_filter_harmonics"] == 0

    def test_feedforward_round_trip(self, device):
        assert device.get_feedforward_config()["f_roll"] == 120
        device.set_feedforward_config({"f_roll": 140, "feedforward_boost": 18})
        ff = device.get_feedforward_config()
        assert ff["f_roll"] == 140
        assert ff["f_pitch"] == 125
        assert ff["feedforward_boost"] == 18

    def test_write_eeprom(self, device, fake_fc):
        device.write_eeprom()
        assert fake_fc.eeprom_writes == 1

    def test_snapshot_is_cli_text(self, device):
        text = device.snapshot_settings()
        assert text.startswith("# BTFL 4.5.1")
        assert "set p_roll = 45" in text
        assert "set gyro_lpf1_static_hz = 250" in text
        assert "set f_roll = 120" in text


class TestDeviceDataflash:

    def test_summary(self, device, fake_fc):
        fake_fc.flash = b"x" * 1000
        s = device.get_dataflash_summary()
        assert s["ready"] and s["supported"]
        assert s["used_size"] == 1000
        assert s["total_size"] == fake_fc.flash_total

    def test_download(self, device, fake_fc):
        fake_fc.flash = bytes(i & 0xFF for i in range(10_000))
        progress = []
        data = device.download_blackbox(progress_callback=lambda d, t: progress.append((d, t)),
                                        chunk_size=4096)
        assert data == fake_fc.flash
        assert progress[-1] == (10_000, 10_000)
        assert len(progress) == 3

    def test_download_empty(self, device):
        assert device.download_blackbox() == b""

    def test_erase(self, device, fake_fc):
        fake_fc.flash = b"x" * 100
        assert device.erase_dataflash(timeout=2, poll=0.05)
        assert device.get_dataflash_summary()["used_size"] == 0

    def test_chunk_read_strips_reply_header(self, device, fake_fc):
        fake_fc.flash = b"0123456789"
        addr, data = device.read_dataflash_chunk(4, 3)
        assert addr == 4
        assert data == b"456"

    def test_unsupported_flash(self, device, fake_fc):
        summary = struct.pack("<BIII", 0, 0, 0, 0)
        original = fake_fc.handle

        def handle(cmd, payload):
            if cmd == msp.MSP_DATAFLASH_SUMMARY:
                return summary
            return original(cmd, payload)

        fake_fc.handle = handle
        with pytest.raises(MSPError):
            device.download_blackbox()


class TestDeviceCli:

    def test_export_diff(self, device):
        text = device.export_cli_diff()
        assert "set gyro_lpf1_static_hz = 250" in text
        assert "diff all" not in text
        assert not any(line.startswith("#") for line in text.splitlines())

    def test_cli_set_and_save(self, device, fake_fc):
        applied = device.cli_set({"gyro_lpf1_static_hz": 200, "dterm_lpf1_static_hz": 120})
        assert applied == ["gyro_lpf1_static_hz", "dterm_lpf1_static_hz"]
        device.save_and_reboot()
        assert fake_fc.saves == 1
        assert fake_fc.filters["gyro_lpf1_static_hz"] == 200
        assert not device.is_connected

    def test_reboot_closes(self, device, fake_fc):
        device.reboot()
        assert fake_fc.reboots == 1
        assert not device.is_connected

    def test_reconnect_fires_connect_listeners(self, device, fake_fc):
        seen = []
        device.add_connect_listener(seen.append)
        device.reboot()
        device.reconnect(wait=0)
        assert device.is_connected
        assert seen == [device]
        assert device.get_info()["uid"]
        # fresh port starts in binary mode
        assert device.connection.mode is msp.Mode.BINARY

    def test_failing_connect_listener_keeps_link(self, device, fake_fc):
        seen = []

        def broken(dev):
            raise MSPTimeoutError("no reply", msp.MSP_UID)

        device.add_connect_listener(broken)
        device.add_connect_listener(seen.append)
        device.reboot()
        device.reconnect(wait=0)
        assert device.is_connected
        assert seen == [device]

    def test_reconnect_gives_up(self, device):
        def factory(path, baud):
            raise OSError("gone")

        device.connection._port_factory = factory
        with pytest.raises(SerialConnectionError):
            device.reconnect(wait=0, attempts=2, interval=0)
