"""Registration record store.

Records are keyed by cluster identity (namespace/name).  Every write is a
compare-and-swap on ``resource_version``: an update carrying a stale
version raises ``RecordConflictError`` instead of silently overwriting a
concurrent write.

Deletion is two-phase.  Records are created with the deletion guard in
``finalizers``; ``delete()`` on a guarded record only stamps
``deletion_requested_at``.  The record disappears once ``clear_guard()``
removes the guard (or immediately, if the guard is already gone).

Two backends live here: ``MemoryRecordStore`` for tests and dry runs,
and ``FileRecordStore`` (JSONL, rewrite-on-update) for single-process
deployments.  The Kubernetes backend is in ``k8s_store``.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from cluster_registrar.models import DELETION_GUARD, ClusterKey, RegistrationRecord


class RecordStoreError(Exception):
    """Raised when the record store cannot complete an operation."""


class RecordNotFoundError(RecordStoreError):
    """Raised when an operation targets a record that does not exist."""


class RecordExistsError(RecordStoreError):
    """Raised when creating a record whose key is already taken."""


class RecordConflictError(RecordStoreError):
    """Raised when an update carries a stale resource version."""


class DeletionGuardError(RecordStoreError):
    """Raised when an update would drop the deletion guard."""


class DuplicateRecordError(RecordStoreError):
    """Raised when a lookup that must be unique matches several records."""


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for registration record storage backends."""

    def get(self, key: ClusterKey) -> RegistrationRecord | None: ...

    def list(self, namespace: str | None = None) -> list[RegistrationRecord]: ...

    def find_by_cluster(
        self, namespace: str, cluster_name: str,
    ) -> RegistrationRecord | None: ...

    def create(self, record: RegistrationRecord) -> RegistrationRecord: ...

    def update(self, record: RegistrationRecord) -> RegistrationRecord: ...

    def delete(self, key: ClusterKey) -> bool: ...

    def clear_guard(self, key: ClusterKey) -> RegistrationRecord | None: ...


def _key_str(key: ClusterKey) -> str:
    return f"{key.namespace}/{key.name}"


def _next_version(version: str) -> str:
    try:
        return str(int(version) + 1)
    except ValueError:
        return "1"


def pick_unique(
    matches: list[RegistrationRecord], what: str,
) -> RegistrationRecord | None:
    """Return the single match, None for no match, or raise on duplicates."""
    if not matches:
        return None
    if len(matches) > 1:
        names = ", ".join(sorted(_key_str(m.key) for m in matches))
        msg = f"Expected one record for {what}, found {len(matches)}: {names}"
        raise DuplicateRecordError(msg)
    return matches[0]


class MemoryRecordStore:
    """In-memory record store.

    Thread-safe via a lock.  Subclasses persist the table by overriding
    ``_load`` and ``_save``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, RegistrationRecord] = {}

    # --- Persistence hooks ---

    def _load(self) -> dict[str, RegistrationRecord]:
        return self._records

    def _save(self, records: dict[str, RegistrationRecord]) -> None:
        self._records = records

    # --- Reads ---

    def get(self, key: ClusterKey) -> RegistrationRecord | None:
        with self._lock:
            record = self._load().get(_key_str(key))
        return record.model_copy(deep=True) if record is not None else None

    def list(self, namespace: str | None = None) -> list[RegistrationRecord]:
        with self._lock:
            records = list(self._load().values())
        return [
            r.model_copy(deep=True)
            for r in sorted(records, key=lambda r: (r.namespace, r.name))
            if namespace is None or r.namespace == namespace
        ]

    def find_by_cluster(
        self, namespace: str, cluster_name: str,
    ) -> RegistrationRecord | None:
        """Find the record mirroring ``cluster_name`` by its label value."""
        matches = [
            r for r in self.list(namespace) if r.cluster_name == cluster_name
        ]
        return pick_unique(matches, f"cluster {namespace}/{cluster_name}")

    # --- Writes ---

    def create(self, record: RegistrationRecord) -> RegistrationRecord:
        """Store a new record with the deletion guard set."""
        now = datetime.now(tz=UTC)
        finalizers = list(record.finalizers)
        if DELETION_GUARD not in finalizers:
            finalizers.append(DELETION_GUARD)
        stored = record.model_copy(deep=True, update={
            "finalizers": finalizers,
            "resource_version": "1",
            "deletion_requested_at": None,
            "created_at": now,
            "updated_at": now,
        })

        with self._lock:
            records = dict(self._load())
            k = _key_str(record.key)
            if k in records:
                msg = f"Record already exists: {k}"
                raise RecordExistsError(msg)
            records[k] = stored
            self._save(records)

        return stored.model_copy(deep=True)

    def update(self, record: RegistrationRecord) -> RegistrationRecord:
        """Replace a record if its resource version is current."""
        with self._lock:
            records = dict(self._load())
            k = _key_str(record.key)
            current = records.get(k)
            if current is None:
                msg = f"Record not found: {k}"
                raise RecordNotFoundError(msg)
            if current.resource_version != record.resource_version:
                msg = (
                    f"Record {k} was modified concurrently "
                    f"(have version {record.resource_version!r}, "
                    f"stored {current.resource_version!r})"
                )
                raise RecordConflictError(msg)
            if current.guarded and not record.guarded:
                msg = f"Record {k} is guarded; use clear_guard() to release it"
                raise DeletionGuardError(msg)

            stored = record.model_copy(deep=True, update={
                "resource_version": _next_version(current.resource_version),
                "created_at": current.created_at,
                "updated_at": datetime.now(tz=UTC),
            })
            records[k] = stored
            self._save(records)

        return stored.model_copy(deep=True)

    def delete(self, key: ClusterKey) -> bool:
        """Request deletion of a record.

        Returns True if the record was removed, False if the deletion
        guard deferred it.
        """
        with self._lock:
            records = dict(self._load())
            k = _key_str(key)
            current = records.get(k)
            if current is None:
                msg = f"Record not found: {k}"
                raise RecordNotFoundError(msg)

            if current.guarded:
                if current.deletion_requested_at is None:
                    records[k] = current.model_copy(update={
                        "deletion_requested_at": datetime.now(tz=UTC),
                        "resource_version": _next_version(current.resource_version),
                    })
                    self._save(records)
                return False

            del records[k]
            self._save(records)
        return True

    def clear_guard(self, key: ClusterKey) -> RegistrationRecord | None:
        """Remove the deletion guard.

        Returns the updated record, or None if a pending deletion removed it.
        """
        with self._lock:
            records = dict(self._load())
            k = _key_str(key)
            current = records.get(k)
            if current is None:
                msg = f"Record not found: {k}"
                raise RecordNotFoundError(msg)

            if current.deletion_requested_at is not None:
                del records[k]
                self._save(records)
                return None

            stored = current.model_copy(update={
                "finalizers": [f for f in current.finalizers if f != DELETION_GUARD],
                "resource_version": _next_version(current.resource_version),
                "updated_at": datetime.now(tz=UTC),
            })
            records[k] = stored
            self._save(records)

        return stored.model_copy(deep=True)


class FileRecordStore(MemoryRecordStore):
    """JSONL-backed record store.

    Each record is a JSON line.  Every write rewrites the file through a
    temporary file and an atomic rename.  Registration records are
    low-volume, so a full rewrite per update is acceptable.
    """

    def __init__(self, store_path: str | Path) -> None:
        super().__init__()
        self._path = Path(store_path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, RegistrationRecord]:
        if not self._path.exists():
            return {}
        records: dict[str, RegistrationRecord] = {}
        with self._path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    record = RegistrationRecord(**json.loads(stripped))
                except (json.JSONDecodeError, ValueError) as exc:
                    msg = f"Corrupt record store {self._path} at line {lineno}: {exc}"
                    raise RecordStoreError(msg) from exc
                records[_key_str(record.key)] = record
        return records

    def _save(self, records: dict[str, RegistrationRecord]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            for k in sorted(records):
                line = json.dumps(records[k].model_dump(mode="json"), sort_keys=True)
                f.write(line + "\n")
        tmp_path.replace(self._path)
