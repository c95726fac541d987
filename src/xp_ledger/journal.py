"""Append-only JSONL journal of reconciliation events.

The audit database holds the current status of every attempt; the journal
holds the sequence of things that happened to it.  It is written alongside
the database and never read back by the engine, so a journal failure costs
only forensic detail.

Envelope format
---------------
Every line is a self-contained JSON object:

.. code-block:: json

    {
      "event_id":       "a3f91c9e2d4b5e6f...",
      "timestamp":      "2026-10-18T14:23:01.452345+00:00",
      "event_type":     "attempt.submitted",
      "schema_version": "1.0",
      "data":           {"op_id": "...", "user": "0:...", "fee": 200000000},
      "_checksum":      "sha256:b94f3e..."
    }

``_checksum`` covers every other field serialised with ``sort_keys=True``.

Event types
-----------
::

    batch.started        batch.finished      batch.aborted
    attempt.submitted    attempt.confirmed   attempt.rejected
    attempt.escalated    attempt.failed      attempt.backfilled

Concurrency
-----------
``fcntl.flock(LOCK_EX)`` is held for each append, so a CLI run and a test
harness writing the same file never interleave partial lines.  POSIX only.

Failure isolation
-----------------
:exc:`JournalWriteError` is raised on filesystem failure.  Callers log a
warning and continue::

    try:
        journal.append("attempt.submitted", data)
    except JournalWriteError:
        logger.warning("Journal write failed; batch continues.", exc_info=True)
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

# Increment when the envelope format changes in a backwards-incompatible way.
_SCHEMA_VERSION = "1.0"


class JournalWriteError(Exception):
    """Raised when an append fails due to a filesystem or encoding error."""


@dataclass(frozen=True)
class JournalVerifyResult:
    """Outcome of :meth:`Journal.verify`.

    Attributes:
        status: ``"ok"``, ``"empty"`` or ``"corrupt"``.
        events: Number of valid events read before the first problem.
        last_event_id: ``event_id`` of the last valid event.
        error_detail: Description of the first problem, if any.
    """

    status: Literal["ok", "empty", "corrupt"]
    events: int
    last_event_id: str | None
    error_detail: str | None = None


def _compute_checksum(payload: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON serialisation of ``payload``."""
    canonical = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _append_line_locked(path: Path, line: str) -> None:
    """Append one newline-terminated line to ``path`` under an exclusive lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            fh.write(line + "\n")
            fh.flush()
        finally:
            # Always release the lock, even if the write raised.
            fcntl.flock(fh, fcntl.LOCK_UN)


class Journal:
    """One JSONL journal file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def append(self, event_type: str, data: dict[str, Any]) -> str:
        """Append one event and return its ``event_id``.

        Raises:
            ValueError: If ``event_type`` is blank.
            JournalWriteError: If the payload cannot be serialised or the
                filesystem write fails.
        """
        if not event_type or not event_type.strip():
            raise ValueError("Journal.append: event_type must be a non-empty string.")

        event_id = uuid.uuid4().hex
        body: dict[str, Any] = {
            "event_id": event_id,
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "schema_version": _SCHEMA_VERSION,
            "data": data,
        }
        try:
            checksum = _compute_checksum(body)
            line = json.dumps(
                {**body, "_checksum": f"sha256:{checksum}"}, ensure_ascii=False, sort_keys=True
            )
        except (TypeError, ValueError) as exc:
            raise JournalWriteError(f"Event {event_type!r} is not JSON-serialisable: {exc}") from exc

        try:
            _append_line_locked(self.path, line)
        except OSError as exc:
            raise JournalWriteError(
                f"Failed to write event {event_id!r} to journal at {self.path}: {exc}"
            ) from exc

        logger.debug("journal: appended %r event %s", event_type, event_id)
        return event_id

    def read(self) -> Iterator[dict[str, Any]]:
        """Yield every parsed envelope in file order (no checksum check)."""
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                if line.strip():
                    yield json.loads(line)

    def verify(self) -> JournalVerifyResult:
        """Check every line: valid JSON object, matching checksum, event_id present."""
        if not self.path.exists():
            return JournalVerifyResult(status="empty", events=0, last_event_id=None)

        count = 0
        last_event_id: str | None = None
        with self.path.open("r", encoding="utf-8") as fh:
            for number, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                problem = _check_line(line)
                if isinstance(problem, str):
                    return JournalVerifyResult(
                        status="corrupt",
                        events=count,
                        last_event_id=last_event_id,
                        error_detail=f"line {number}: {problem}",
                    )
                count += 1
                last_event_id = problem["event_id"]

        if count == 0:
            return JournalVerifyResult(status="empty", events=0, last_event_id=None)
        return JournalVerifyResult(status="ok", events=count, last_event_id=last_event_id)


def _check_line(line: str) -> dict[str, Any] | str:
    """Return the envelope if ``line`` is valid, otherwise a problem description."""
    try:
        envelope = json.loads(line)
    except json.JSONDecodeError as exc:
        return f"not valid JSON: {exc}"
    if not isinstance(envelope, dict):
        return "not a JSON object"

    recorded = envelope.get("_checksum")
    if not isinstance(recorded, str):
        return "missing or non-string '_checksum'"
    body = {k: v for k, v in envelope.items() if k != "_checksum"}
    expected = f"sha256:{_compute_checksum(body)}"
    if recorded != expected:
        return f"checksum mismatch (recorded {recorded!r}, expected {expected!r})"

    event_id = envelope.get("event_id")
    if not isinstance(event_id, str) or not event_id:
        return "missing 'event_id'"
    return envelope
