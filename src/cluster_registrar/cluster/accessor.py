"""Cluster state accessor: the reconciler's view of one cluster.

Wraps a ``ClusterSource`` and a ``RecordStore`` behind a single facade
that caches every read in a ``PassCache``.  One accessor (and one cache)
is built per reconciliation pass and thrown away afterwards, so nothing
read in one pass can leak into another.

"Not found" is always reported as ``None``.  The one place where that is
not enough is ``get_external_runtime_id``: it returns ``None`` when there
is no record and ``""`` when a record exists but has no runtime ID yet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cluster_registrar.models import (
    LABEL_CLUSTER_NAME,
    LABEL_GLOBAL_ACCOUNT_ID,
    LABEL_SUBACCOUNT_ID,
    ClusterDescriptor,
    ClusterKey,
    RegistrationRecord,
)
from cluster_registrar.status.classifier import StatusFlag, to_record_status
from cluster_registrar.store.record_store import DuplicateRecordError, RecordNotFoundError

if TYPE_CHECKING:
    from cluster_registrar.cluster.source import ClusterSource
    from cluster_registrar.store.record_store import RecordStore

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class IntegrityError(Exception):
    """Raised when stored state violates an invariant (duplicates, missing IDs)."""


@dataclass
class PassCache:
    """Reads made during a single reconciliation pass."""

    descriptor: Any = _UNSET
    bundle: Any = _UNSET
    record: Any = _UNSET
    reads: dict[str, int] = field(default_factory=dict)

    def count(self, what: str) -> None:
        self.reads[what] = self.reads.get(what, 0) + 1


class ClusterStateAccessor:
    """Cached read/write access to one cluster's descriptor, bundle and record."""

    def __init__(
        self,
        key: ClusterKey,
        source: ClusterSource,
        store: RecordStore,
        cache: PassCache | None = None,
    ) -> None:
        self._key = key
        self._source = source
        self._store = store
        self._cache = cache if cache is not None else PassCache()

    @property
    def key(self) -> ClusterKey:
        return self._key

    @property
    def cache(self) -> PassCache:
        return self._cache

    # --- Reads ---

    def get_cluster_descriptor(self) -> ClusterDescriptor | None:
        if self._cache.descriptor is _UNSET:
            self._cache.count("descriptor")
            self._cache.descriptor = self._source.get_descriptor(self._key)
        return self._cache.descriptor

    def get_credential_bundle(self) -> bytes | None:
        """Return the kubeconfig payload, or None if no bundle exists.

        An existing bundle without a payload yields ``b""``.
        """
        if self._cache.bundle is _UNSET:
            self._cache.count("bundle")
            bundles = self._source.find_credential_bundles(
                self._key.namespace, self._key.name,
            )
            if len(bundles) > 1:
                names = ", ".join(b.name for b in bundles)
                msg = (
                    f"Expected one credential bundle for {self._key}, "
                    f"found {len(bundles)}: {names}"
                )
                raise IntegrityError(msg)
            self._cache.bundle = bundles[0].payload if bundles else None
        return self._cache.bundle

    def get_registration_record(self) -> RegistrationRecord | None:
        if self._cache.record is _UNSET:
            self._cache.count("record")
            self._cache.record = self._store.get(self._key)
        return self._cache.record

    def get_external_runtime_id(self) -> str | None:
        record = self.get_registration_record()
        if record is None:
            return None
        return record.runtime_id

    # --- Writes ---

    def create_registration_record(
        self, runtime_id: str, flags: StatusFlag,
    ) -> RegistrationRecord:
        """Create the record mirroring the current descriptor.

        Raises ``IntegrityError`` when another record already mirrors the
        same cluster.
        """
        fields = self._descriptor_fields(None)
        try:
            existing = self._store.find_by_cluster(self._key.namespace, fields["cluster_name"])
        except DuplicateRecordError as exc:
            raise IntegrityError(str(exc)) from exc
        if existing is not None:
            msg = (
                f"Cluster {fields['cluster_name']} is already mirrored by record "
                f"{existing.key}, not creating {self._key}"
            )
            raise IntegrityError(msg)

        record = RegistrationRecord(
            namespace=self._key.namespace,
            name=self._key.name,
            runtime_id=runtime_id,
            status=to_record_status(flags),
            **fields,
        )
        stored = self._store.create(record)
        self._cache.record = stored
        logger.info(
            "Created registration record %s (runtime %r)", self._key, runtime_id or "",
        )
        return stored

    def upsert_registration_record(
        self, runtime_id: str, flags: StatusFlag | None = None,
    ) -> RegistrationRecord:
        """Persist ``runtime_id`` (and optionally status) in a single write."""
        current = self.get_registration_record()
        if current is None:
            return self.create_registration_record(
                runtime_id, flags if flags is not None else StatusFlag.NONE,
            )

        update: dict[str, Any] = {
            "runtime_id": runtime_id,
            **self._descriptor_fields(current),
        }
        if flags is not None:
            update["status"] = to_record_status(flags)
        stored = self._store.update(current.model_copy(update=update))
        self._cache.record = stored
        return stored

    def set_status(
        self, flags: StatusFlag, configured_digest: str | None = None,
    ) -> RegistrationRecord:
        current = self.get_registration_record()
        if current is None:
            msg = f"Record not found: {self._key}"
            raise RecordNotFoundError(msg)
        update: dict[str, Any] = {"status": to_record_status(flags)}
        if configured_digest is not None:
            update["configured_digest"] = configured_digest
        stored = self._store.update(current.model_copy(update=update))
        self._cache.record = stored
        return stored

    def release_deletion_guard(self) -> None:
        """Clear the deletion guard so the record can be removed."""
        try:
            released = self._store.clear_guard(self._key)
        except RecordNotFoundError:
            released = None
        self._cache.record = released

    def delete_registration_record(self) -> bool:
        """Delete the record; True once it is gone, False if still guarded."""
        try:
            removed = self._store.delete(self._key)
        except RecordNotFoundError:
            removed = True
        if removed:
            self._cache.record = None
        else:
            # Deferred: the stored copy now carries deletion_requested_at.
            self._cache.record = _UNSET
        return removed

    # --- Private ---

    def _descriptor_fields(self, current: RegistrationRecord | None) -> dict[str, str]:
        descriptor = self.get_cluster_descriptor()
        if descriptor is None:
            if current is None:
                return {"cluster_name": self._key.name}
            return {}
        return {
            "cluster_name": descriptor.labels.get(LABEL_CLUSTER_NAME, self._key.name),
            "global_account_id": descriptor.labels.get(LABEL_GLOBAL_ACCOUNT_ID, ""),
            "subaccount_id": descriptor.labels.get(LABEL_SUBACCOUNT_ID, ""),
        }
