"""Exception hierarchy shared by the ledger, its codec and its transports.

Three families are kept apart because callers treat them differently:

- :class:`ProtocolError`: a deterministic rejection produced by the ledger
  state machine.  Each subclass carries the numeric exit code the ledger
  reports.  Retrying with identical input always fails again.
- :class:`TransportError`: the network layer could not deliver a request or
  read a response (timeout, connection failure, rate limiting).  Transient.
- :class:`DecodeError` / :class:`EncodeError`: a value did not fit the
  binary layout.  Decode failures on responses are surfaced, never replaced
  by defaults.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes reported by the ledger for rejected operations."""

    OK = 0
    NOT_OWNER = 401
    OVERFLOW = 402
    TOO_SOON = 403
    INVALID_OP = 404
    DUPLICATE_OP = 405
    INVALID_ARGUMENT = 406


class XPLedgerError(Exception):
    """Base exception for all ledger-related failures."""


# =============================================================================
# PROTOCOL ERRORS
# =============================================================================


class ProtocolError(XPLedgerError):
    """Deterministic rejection raised by the ledger state machine."""

    exit_code: ExitCode = ExitCode.INVALID_OP

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.exit_code.name.lower())

    @property
    def name(self) -> str:
        """Short error name used in audit rows and logs (e.g. ``NotOwner``)."""
        return exit_code_name(self.exit_code)


class NotOwnerError(ProtocolError):
    """Sender is not the stored owner."""

    exit_code = ExitCode.NOT_OWNER


class XPOverflowError(ProtocolError):
    """Balance update would exceed the unsigned 64-bit range."""

    exit_code = ExitCode.OVERFLOW


class TooSoonError(ProtocolError):
    """Write arrived inside the global cooldown window."""

    exit_code = ExitCode.TOO_SOON


class InvalidOpError(ProtocolError):
    """Unknown opcode, malformed body, or unknown query."""

    exit_code = ExitCode.INVALID_OP


class DuplicateOpError(ProtocolError):
    """The opId is already present in the user's history."""

    exit_code = ExitCode.DUPLICATE_OP


class InvalidArgumentError(ProtocolError):
    """A derived-score formula received a negative input."""

    exit_code = ExitCode.INVALID_ARGUMENT


_ERROR_NAMES: dict[ExitCode, str] = {
    ExitCode.OK: "Ok",
    ExitCode.NOT_OWNER: "NotOwner",
    ExitCode.OVERFLOW: "Overflow",
    ExitCode.TOO_SOON: "TooSoon",
    ExitCode.INVALID_OP: "InvalidOp",
    ExitCode.DUPLICATE_OP: "DuplicateOp",
    ExitCode.INVALID_ARGUMENT: "InvalidArgument",
}

_ERRORS_BY_CODE: dict[int, type[ProtocolError]] = {
    ExitCode.NOT_OWNER: NotOwnerError,
    ExitCode.OVERFLOW: XPOverflowError,
    ExitCode.TOO_SOON: TooSoonError,
    ExitCode.INVALID_OP: InvalidOpError,
    ExitCode.DUPLICATE_OP: DuplicateOpError,
    ExitCode.INVALID_ARGUMENT: InvalidArgumentError,
}


def error_for_exit_code(code: int, message: str = "") -> ProtocolError:
    """Build the protocol error matching a ledger exit code.

    Unknown non-zero codes map to :class:`InvalidOpError` so that callers
    always receive a typed error.
    """
    error_cls = _ERRORS_BY_CODE.get(int(code), InvalidOpError)
    return error_cls(message or f"ledger exit code {code}")


def exit_code_name(code: int) -> str:
    """Return the short error name for ``code`` or ``"Exit<code>"``."""
    try:
        return _ERROR_NAMES[ExitCode(code)]
    except ValueError:
        return f"Exit{code}"


# =============================================================================
# TRANSPORT / CODEC ERRORS
# =============================================================================


class TransportError(XPLedgerError):
    """Network-level failure talking to the ledger (timeout, connection, HTTP)."""


class RateLimitedError(TransportError):
    """The ledger endpoint asked us to slow down (HTTP 429).

    Attributes:
        retry_after: Seconds suggested by the server, or ``None``.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DecodeError(XPLedgerError):
    """A cell, stack item, or response body did not match the expected layout."""


class EncodeError(XPLedgerError, ValueError):
    """A value cannot be represented in the requested binary field."""


class SubmissionError(XPLedgerError):
    """The ledger node refused to accept a message.

    Raised for bad signatures, expired or replayed envelopes, unknown
    destinations and insufficient sender funds.  Unlike a
    :class:`TransportError` the refusal is deterministic for the same
    envelope.
    """
