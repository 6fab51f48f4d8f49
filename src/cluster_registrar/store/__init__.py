"""Registration record storage backends."""

from cluster_registrar.store.record_store import (
    DeletionGuardError,
    DuplicateRecordError,
    FileRecordStore,
    MemoryRecordStore,
    RecordConflictError,
    RecordExistsError,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)

__all__ = [
    "DeletionGuardError",
    "DuplicateRecordError",
    "FileRecordStore",
    "MemoryRecordStore",
    "RecordConflictError",
    "RecordExistsError",
    "RecordNotFoundError",
    "RecordStore",
    "RecordStoreError",
]
