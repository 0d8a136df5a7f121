"""Storage of tracking statements with per-statement locking."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable

from devseal.errors import DevsealError
from devseal.trust.model import ProofResult, TrackingStatement

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class TrackingStore:
    """Tracking statements keyed by ``(tracker, trackee)``.

    Statements are immutable and replaced as a whole, so lookups need no
    lock. Re-verification of one statement holds that statement's lock only;
    checks of different statements run concurrently. With ``path`` set every
    change is written back to a JSON document.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._statements: dict[tuple[str, str], TrackingStatement] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()
        self._write_lock = threading.Lock()
        if self.path is not None and self.path.exists():
            self._statements = {s.key: s for s in _read_document(self.path)}

    def lock_for(self, tracker: str, trackee: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get((tracker, trackee))
            if lock is None:
                lock = self._locks[(tracker, trackee)] = threading.Lock()
            return lock

    def get(self, tracker: str, trackee: str) -> TrackingStatement | None:
        return self._statements.get((tracker, trackee))

    def statements_for(self, tracker: str) -> list[TrackingStatement]:
        return sorted(
            (s for s in list(self._statements.values()) if s.tracker == tracker),
            key=lambda s: s.trackee,
        )

    def put(self, statement: TrackingStatement) -> None:
        with self.lock_for(*statement.key):
            self.write(statement)

    def remove(self, tracker: str, trackee: str) -> bool:
        with self.lock_for(tracker, trackee):
            with self._write_lock:
                removed = self._statements.pop((tracker, trackee), None) is not None
                if removed:
                    self._save()
        return removed

    def record_results(self, tracker: str, trackee: str, results: Iterable[ProofResult]) -> TrackingStatement:
        """Replace the verification cache of a statement.

        Callers performing a live check already hold :meth:`lock_for`.
        """

        statement = self.get(tracker, trackee)
        if statement is None:
            raise DevsealError(f"{tracker!r} does not track {trackee!r}")
        updated = statement.with_results(results)
        self.write(updated)
        return updated

    def write(self, statement: TrackingStatement) -> None:
        """Store ``statement``; the caller holds its :meth:`lock_for`."""

        with self._write_lock:
            self._statements[statement.key] = statement
            self._save()

    def _save(self) -> None:
        if self.path is None:
            return
        document = {
            "version": STORE_VERSION,
            "statements": [s.to_dict() for _, s in sorted(self._statements.items())],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".tracking-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.debug("saved %d tracking statement(s) to %s", len(self._statements), self.path)


def _read_document(path: Path) -> list[TrackingStatement]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise DevsealError(f"Tracking store {path} is not valid JSON") from exc
    if not isinstance(document, dict) or document.get("version") != STORE_VERSION:
        raise DevsealError(f"Unsupported tracking store format in {path}")
    return [TrackingStatement.from_dict(item) for item in document.get("statements", [])]


__all__ = ["STORE_VERSION", "TrackingStore"]
