"""Hash-chained append-only journal of external mutations.

Every call the reconciler makes to the directory or the configurator is
written here, successful or not.  The journal is the operator's trail for
runtimes that were registered but whose record write never landed.

Each line is one ``JournalEvent``.  ``prev_hash`` links it to the line
before it (the first line links to ``GENESIS_HASH``) and ``entry_hash`` is
the SHA-256 of the event without that field, so an edited, inserted or
dropped line breaks the chain.

``verify_journal`` checks the chain and, in the same walk, works out which
runtimes were registered and never deregistered.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cluster_registrar.models import ClusterKey, JournalAction, JournalEvent

GENESIS_HASH = "0" * 64

# Actions that close out a registered runtime.
_CLOSING_ACTIONS = frozenset({JournalAction.DEREGISTERED, JournalAction.RECORD_REMOVED})


class JournalError(Exception):
    """Raised when the journal cannot be read or appended to."""


@dataclass
class JournalReport:
    """Result of ``verify_journal``.

    ``open_runtimes`` maps each registered runtime ID to its
    ``namespace/name`` until a ``deregistered`` or ``record_removed``
    entry for that runtime follows.  Live clusters appear here too.  A
    runtime whose cluster is gone, or a second runtime for the same
    cluster, was left behind in the directory.
    """

    entries: int = 0
    errors: list[str] = field(default_factory=list)
    open_runtimes: dict[str, str] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors


class Journal:
    """Append-only journal file.  Appends are serialized by a lock."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._prev_hash = self._tail_hash()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def record(
        self,
        action: JournalAction,
        key: ClusterKey,
        runtime_id: str = "",
        global_account_id: str = "",
        error: str | None = None,
        timestamp: datetime | None = None,
    ) -> JournalEvent:
        """Append one event and return it with its computed hashes."""
        with self._lock:
            event = JournalEvent(
                event_id=f"jrn-{uuid.uuid4().hex[:12]}",
                timestamp=timestamp or datetime.now(tz=UTC),
                prev_hash=self._prev_hash,
                action=action,
                cluster=str(key),
                runtime_id=runtime_id,
                global_account_id=global_account_id,
                error=error,
            )
            body = event.model_dump(mode="json", exclude={"entry_hash"})
            event.entry_hash = _hash_entry(body)

            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps({**body, "entry_hash": event.entry_hash}, sort_keys=True))
                f.write("\n")
            self._prev_hash = event.entry_hash
        return event

    def read_events(self, cluster: str | None = None) -> list[JournalEvent]:
        """Read all events, optionally only those for one ``namespace/name``."""
        events: list[JournalEvent] = []
        for number, text in _entries(self._path):
            try:
                event = JournalEvent.model_validate_json(text)
            except ValidationError as e:
                raise JournalError(f"Corrupt entry {number} in {self._path}: {e}") from e
            if cluster is None or event.cluster == cluster:
                events.append(event)
        return events

    def _tail_hash(self) -> str:
        tail = None
        for _, text in _entries(self._path):
            tail = text
        if tail is None:
            return GENESIS_HASH
        try:
            return JournalEvent.model_validate_json(tail).entry_hash
        except ValidationError as exc:
            raise JournalError(
                f"Corrupt journal {self._path}: cannot continue the chain from its last entry"
            ) from exc


def verify_journal(path: str | Path) -> JournalReport:
    """Check the hash chain of a journal file and collect open registrations.

    A missing file yields an empty, valid report.
    """
    report = JournalReport()
    expected_prev = GENESIS_HASH

    for number, text in _entries(Path(path)):
        report.entries += 1
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            report.errors.append(f"Entry {number}: invalid JSON ({e})")
            continue

        where = f"Entry {number} ({data.get('cluster', '?')})"
        if data.get("prev_hash") != expected_prev:
            report.errors.append(f"{where}: chain broken, an earlier entry is missing or altered")
        stored = data.get("entry_hash", "")
        if stored != _hash_entry({k: v for k, v in data.items() if k != "entry_hash"}):
            report.errors.append(f"{where}: hash mismatch, the entry was edited")
        expected_prev = stored

        _track_registration(report.open_runtimes, data)

    return report


def _track_registration(open_runtimes: dict[str, str], data: dict[str, Any]) -> None:
    runtime_id = data.get("runtime_id", "")
    action = data.get("action")
    if action == JournalAction.REGISTERED and runtime_id:
        open_runtimes[runtime_id] = data.get("cluster", "")
    elif action in _CLOSING_ACTIONS:
        open_runtimes.pop(runtime_id, None)


def _entries(path: Path) -> Iterator[tuple[int, str]]:
    """Yield ``(entry number, text)`` for every non-blank line of ``path``."""
    if not path.exists():
        return
    with path.open("r", encoding="utf-8") as f:
        yield from enumerate(filter(None, (line.strip() for line in f)), start=1)


def _hash_entry(data: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode("utf-8")).hexdigest()
