"""Reconciler: one pass of the registration state machine.

A pass looks at the cluster descriptor, its credential bundle and its
registration record, picks the next step, performs at most one external
call, and persists the outcome with one record write.  Every step that
moves the machine forward ends the pass with a retry so that the next
pass starts from durable state:

  1. Descriptor gone (or terminating)      -> deletion path
  2. No credential bundle / empty bundle   -> retry
  3. No record                             -> create record, retry
  4. Empty runtime ID, registration on     -> register, persist ID, retry
  5. Otherwise                             -> configure, persist, done

Deletion path:

  1. No record                             -> done
  2. Empty runtime ID                      -> release guard, delete, done
  3. No global account on the record       -> integrity error
  4. Deregister fails                      -> retry, guard stays
  5. Deregister succeeds                   -> release guard, delete, done

The reconciler never sleeps and never retries a call itself.  Expected
failures are reported through ``ReconcileResult``; it does not raise.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

from cluster_registrar.cluster.accessor import ClusterStateAccessor, IntegrityError
from cluster_registrar.cluster.source import ClusterSourceError
from cluster_registrar.models import (
    ClusterDescriptor,
    ClusterKey,
    JournalAction,
    ReconcileOutcome,
    ReconcileResult,
    RegistrationRecord,
)
from cluster_registrar.reconciler.collaborators import (
    Configurator,
    DirectoryError,
    Registrator,
    build_runtime_labels,
)
from cluster_registrar.status.classifier import READY_STATE, StatusFlag
from cluster_registrar.store.record_store import RecordStoreError

if TYPE_CHECKING:
    from cluster_registrar.cluster.source import ClusterSource
    from cluster_registrar.journal.journal import Journal
    from cluster_registrar.store.record_store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_REQUEUE_SECONDS = 5.0


def configuration_digest(credential_bundle: bytes, runtime_id: str) -> str:
    """Fingerprint of the inputs of a successful ``configure`` call."""
    h = hashlib.sha256()
    h.update(runtime_id.encode("utf-8"))
    h.update(b"\0")
    h.update(credential_bundle)
    return h.hexdigest()


class Reconciler:
    """Drives registration, configuration and deregistration of clusters."""

    def __init__(
        self,
        source: ClusterSource,
        store: RecordStore,
        registrator: Registrator,
        configurator: Configurator,
        requeue_seconds: float = DEFAULT_REQUEUE_SECONDS,
        enabled_registration: bool = False,
        journal: Journal | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._registrator = registrator
        self._configurator = configurator
        self._requeue_seconds = requeue_seconds
        self._enabled_registration = enabled_registration
        self._journal = journal

    @property
    def requeue_seconds(self) -> float:
        return self._requeue_seconds

    def reconcile(self, key: ClusterKey) -> ReconcileResult:
        """Run one pass for ``key``."""
        logger.info("Reconciliation triggered for cluster %s", key)
        accessor = ClusterStateAccessor(key, self._source, self._store)

        try:
            return self._reconcile(accessor)
        except IntegrityError as exc:
            logger.error("Integrity error for cluster %s: %s", key, exc)
            return self._error(key, "integrity error", exc)
        except (RecordStoreError, ClusterSourceError) as exc:
            logger.warning("Storage error for cluster %s: %s", key, exc)
            return self._error(key, "storage error", exc)

    # --- Decision tree ---

    def _reconcile(self, accessor: ClusterStateAccessor) -> ReconcileResult:
        key = accessor.key
        descriptor = accessor.get_cluster_descriptor()
        if descriptor is None or descriptor.deletion_timestamp is not None:
            return self._handle_deletion(accessor)

        bundle = accessor.get_credential_bundle()
        if not bundle:
            logger.info("Credential bundle for cluster %s not available", key)
            return self._retry(key, "credential bundle not available")

        runtime_id = accessor.get_external_runtime_id()
        if runtime_id is None:
            return self._create_record(accessor, descriptor)

        if runtime_id == "" and self._enabled_registration:
            return self._register(accessor, descriptor)

        record = accessor.get_registration_record()
        assert record is not None
        return self._configure(accessor, descriptor, record, bundle)

    def _create_record(
        self, accessor: ClusterStateAccessor, descriptor: ClusterDescriptor,
    ) -> ReconcileResult:
        migration_id = descriptor.migration_runtime_id
        if migration_id:
            logger.info(
                "Cluster %s is already registered as runtime %s, adopting it",
                accessor.key, migration_id,
            )
            accessor.create_registration_record(
                migration_id, StatusFlag.REGISTERED | StatusFlag.PROCESSING,
            )
            return self._retry(accessor.key, "record created for migrated runtime")

        accessor.create_registration_record("", StatusFlag.PROCESSING)
        return self._retry(accessor.key, "record created")

    def _register(
        self, accessor: ClusterStateAccessor, descriptor: ClusterDescriptor,
    ) -> ReconcileResult:
        key = accessor.key
        labels = build_runtime_labels(descriptor)
        account = descriptor.global_account_id

        try:
            runtime_id = self._registrator.register(labels)
            if not runtime_id:
                raise DirectoryError("directory returned an empty runtime ID")
        except Exception as exc:
            logger.warning("Failed to register runtime for cluster %s: %s", key, exc)
            self._write_journal(
                JournalAction.REGISTER_FAILED, key,
                global_account_id=account, error=str(exc),
            )
            accessor.set_status(StatusFlag.FAILED)
            return self._retry(key, "registration failed", exc)

        # Journal first: if the record write below fails, this entry is
        # the only trace of the runtime.
        self._write_journal(
            JournalAction.REGISTERED, key,
            runtime_id=runtime_id, global_account_id=account,
        )
        accessor.upsert_registration_record(runtime_id, StatusFlag.REGISTERED)
        logger.info("Runtime %s registered for cluster %s", runtime_id, key)
        return self._retry(key, "runtime registered")

    def _configure(
        self,
        accessor: ClusterStateAccessor,
        descriptor: ClusterDescriptor,
        record: RegistrationRecord,
        bundle: bytes,
    ) -> ReconcileResult:
        key = accessor.key
        runtime_id = record.runtime_id
        account = record.global_account_id or descriptor.global_account_id
        digest = configuration_digest(bundle, runtime_id)

        if record.status.state == READY_STATE and record.configured_digest == digest:
            logger.debug("Cluster %s already configured for runtime %s", key, runtime_id)
            return self._completed(key, "already configured")

        if not runtime_id:
            logger.warning(
                "Registration is disabled and cluster %s has no runtime ID, "
                "configuring without one", key,
            )

        try:
            self._configurator.configure(bundle, runtime_id, account)
        except Exception as exc:
            logger.warning("Failed to configure runtime %s for cluster %s: %s", runtime_id, key, exc)
            self._write_journal(
                JournalAction.CONFIGURE_FAILED, key,
                runtime_id=runtime_id, global_account_id=account, error=str(exc),
            )
            accessor.set_status(StatusFlag.REGISTERED | StatusFlag.FAILED)
            return self._retry(key, "configuration failed", exc)

        self._write_journal(
            JournalAction.CONFIGURED, key,
            runtime_id=runtime_id, global_account_id=account,
        )
        accessor.set_status(
            StatusFlag.REGISTERED | StatusFlag.CONFIGURED, configured_digest=digest,
        )
        logger.info("Runtime %s for cluster %s configured", runtime_id, key)
        return self._completed(key, "runtime configured")

    # --- Deletion path ---

    def _handle_deletion(self, accessor: ClusterStateAccessor) -> ReconcileResult:
        key = accessor.key
        record = accessor.get_registration_record()
        if record is None:
            logger.info("Cluster %s has no registration record, nothing to delete", key)
            return self._completed(key, "nothing to delete")

        if not record.runtime_id:
            logger.info("Cluster %s was never registered, removing its record", key)
            accessor.release_deletion_guard()
            accessor.delete_registration_record()
            return self._completed(key, "record removed")

        account = record.global_account_id
        if not account:
            msg = f"Registration record {key} has no global account"
            raise IntegrityError(msg)

        logger.info("Deregistering runtime %s for cluster %s", record.runtime_id, key)
        try:
            self._registrator.deregister(record.runtime_id, account)
        except Exception as exc:
            logger.warning(
                "Failed to deregister runtime %s for cluster %s: %s",
                record.runtime_id, key, exc,
            )
            self._write_journal(
                JournalAction.DEREGISTER_FAILED, key,
                runtime_id=record.runtime_id, global_account_id=account, error=str(exc),
            )
            return self._retry(key, "deregistration failed", exc)

        self._write_journal(
            JournalAction.DEREGISTERED, key,
            runtime_id=record.runtime_id, global_account_id=account,
        )
        accessor.release_deletion_guard()
        accessor.delete_registration_record()
        logger.info("Runtime %s deregistered, record %s removed", record.runtime_id, key)
        return self._completed(key, "runtime deregistered")

    # --- Helpers ---

    def _write_journal(
        self,
        action: JournalAction,
        key: ClusterKey,
        runtime_id: str = "",
        global_account_id: str = "",
        error: str | None = None,
    ) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record(
                action, key,
                runtime_id=runtime_id, global_account_id=global_account_id, error=error,
            )
        except Exception:
            logger.warning("Failed to write journal entry %s for %s", action, key, exc_info=True)

    def _retry(
        self, key: ClusterKey, reason: str, exc: Exception | None = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            outcome=ReconcileOutcome.RETRY,
            key=key,
            requeue_after=self._requeue_seconds,
            reason=reason,
            error=str(exc) if exc is not None else None,
        )

    def _completed(self, key: ClusterKey, reason: str) -> ReconcileResult:
        return ReconcileResult(outcome=ReconcileOutcome.COMPLETED, key=key, reason=reason)

    def _error(self, key: ClusterKey, reason: str, exc: Exception) -> ReconcileResult:
        return ReconcileResult(
            outcome=ReconcileOutcome.ERROR, key=key, reason=reason, error=str(exc),
        )
