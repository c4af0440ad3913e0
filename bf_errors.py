#!/usr/bin/env python3
"""Exception hierarchy for the Betaflight tuning toolkit.

Every layer raises a subclass of BFTuneError so callers can catch the whole
family in one place (the CLI does exactly that).

Usage:
    from bf_errors import MSPTimeoutError

    try:
        dev.get_pid_config()
    except MSPTimeoutError:
        ...  # retryable
"""


class BFTuneError(Exception):
    """Base class for all toolkit errors."""


# ─── Link ────────────────────────────────────────────────────────────────────

class SerialConnectionError(BFTuneError):
    """Port could not be opened, is already open, or went away."""


# ─── MSP ─────────────────────────────────────────────────────────────────────

class MSPError(BFTuneError):
    """Protocol-level failure: oversize payload, error reply, bad response."""

    def __init__(self, message, command=None):
        super().__init__(message)
        self.command = command


class MSPDecodeError(MSPError):
    """A candidate frame in the receive buffer could not be trusted."""


class PreambleError(MSPDecodeError):
    pass


class DirectionError(MSPDecodeError):
    pass


class ChecksumError(MSPDecodeError):
    def __init__(self, message, expected=None, actual=None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class MSPTimeoutError(MSPError):
    """No response for a command within its timeout. Safe to retry."""


# ─── CLI ─────────────────────────────────────────────────────────────────────

class CLIError(BFTuneError):
    pass


class CLITimeoutError(CLIError):
    """The prompt never came back."""


class CLICommandError(CLIError):
    """The device answered, but the answer was an error message."""

    def __init__(self, message, command=None, output=None):
        super().__init__(message)
        self.command = command
        self.output = output


# ─── Logs, snapshots, sessions ───────────────────────────────────────────────

class BlackboxError(BFTuneError):
    """A log could not be decoded at all (no header, no usable frames)."""


class SnapshotError(BFTuneError):
    pass


class TuningStateError(BFTuneError):
    """Illegal phase transition or missing session."""


class AnalysisCancelled(BFTuneError):
    """Raised between progress checkpoints when the caller cancelled."""
