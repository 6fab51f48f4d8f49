"""Tests for the reconciliation state machine."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cluster_registrar.cluster.source import InventoryClusterSource
from cluster_registrar.journal.journal import Journal, verify_journal
from cluster_registrar.models import (
    ANNOTATION_MIGRATION_ID,
    LABEL_BROKER_PLAN_NAME,
    LABEL_CLUSTER_NAME,
    LABEL_GLOBAL_ACCOUNT_ID,
    LABEL_SHOOT_NAME,
    LABEL_SUBACCOUNT_ID,
    ClusterDescriptor,
    ClusterKey,
    CredentialBundle,
    JournalAction,
    ReconcileOutcome,
    RegistrationRecord,
)
from cluster_registrar.reconciler.collaborators import build_runtime_labels
from cluster_registrar.reconciler.reconciler import Reconciler, configuration_digest
from cluster_registrar.status.classifier import (
    FAILED_STATE,
    PROCESSING_STATE,
    READY_STATE,
)
from cluster_registrar.store.record_store import (
    MemoryRecordStore,
    RecordConflictError,
    RecordStoreError,
)

KEY = ClusterKey(namespace="kcp-system", name="c1")
KUBECONFIG = b"apiVersion: v1\nkind: Config\n"

# --- Fakes ---


class FakeRegistrator:
    """Directory stand-in that records calls and fails on demand."""

    def __init__(self) -> None:
        self.registered: list[dict[str, str]] = []
        self.deregistered: list[tuple[str, str]] = []
        self.fail_register = 0
        self.fail_deregister = 0
        self.next_id = "rt-1"
        self.on_deregister = None

    def register(self, labels: dict[str, str]) -> str:
        self.registered.append(labels)
        if self.fail_register:
            self.fail_register -= 1
            raise ConnectionError("directory unavailable")
        return self.next_id

    def deregister(self, runtime_id: str, global_account: str) -> None:
        if self.on_deregister is not None:
            self.on_deregister()
        self.deregistered.append((runtime_id, global_account))
        if self.fail_deregister:
            self.fail_deregister -= 1
            raise ConnectionError("directory unavailable")


class FakeConfigurator:
    def __init__(self) -> None:
        self.calls: list[tuple[bytes, str, str]] = []
        self.fail = 0

    def configure(self, credential_bundle: bytes, runtime_id: str, global_account: str) -> None:
        self.calls.append((credential_bundle, runtime_id, global_account))
        if self.fail:
            self.fail -= 1
            raise RuntimeError("cannot reach cluster")


class FlakyStore(MemoryRecordStore):
    """Memory store whose updates can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_updates: Exception | None = None

    def update(self, record: RegistrationRecord) -> RegistrationRecord:
        if self.fail_updates is not None:
            raise self.fail_updates
        return super().update(record)


# --- Fixtures ---


def _descriptor(**kwargs) -> ClusterDescriptor:
    defaults = {
        "namespace": "kcp-system",
        "name": "c1",
        "labels": {
            LABEL_GLOBAL_ACCOUNT_ID: "ga-1",
            LABEL_SUBACCOUNT_ID: "sa-1",
            LABEL_SHOOT_NAME: "shoot-1",
            LABEL_CLUSTER_NAME: "c1",
        },
        "modules": ["applicationconnector"],
    }
    defaults.update(kwargs)
    return ClusterDescriptor(**defaults)


def _bundle(payload: bytes = KUBECONFIG, name: str = "kubeconfig-c1") -> CredentialBundle:
    return CredentialBundle(
        namespace="kcp-system",
        name=name,
        labels={LABEL_CLUSTER_NAME: "c1"},
        data={"config": payload},
    )


@pytest.fixture()
def source() -> InventoryClusterSource:
    return InventoryClusterSource([_descriptor()], [_bundle()])


@pytest.fixture()
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture()
def registrator() -> FakeRegistrator:
    return FakeRegistrator()


@pytest.fixture()
def configurator() -> FakeConfigurator:
    return FakeConfigurator()


@pytest.fixture()
def journal(tmp_path: Path) -> Journal:
    return Journal(tmp_path / "journal.jsonl")


@pytest.fixture()
def reconciler(source, store, registrator, configurator, journal) -> Reconciler:
    return Reconciler(
        source, store, registrator, configurator,
        requeue_seconds=5.0, enabled_registration=True, journal=journal,
    )


def _run_to_ready(reconciler: Reconciler) -> None:
    for _ in range(3):
        reconciler.reconcile(KEY)


# --- Scenario A: happy path ---


class TestHappyPath:
    def test_first_pass_creates_record_without_registering(
        self, reconciler, store, registrator,
    ):
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        assert result.requeue_after == 5.0
        record = store.get(KEY)
        assert record.runtime_id == ""
        assert record.status.state == PROCESSING_STATE
        assert record.guarded
        assert registrator.registered == []

    def test_second_pass_registers(self, reconciler, store, registrator):
        reconciler.reconcile(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        assert len(registrator.registered) == 1
        record = store.get(KEY)
        assert record.runtime_id == "rt-1"
        assert record.status.registered
        assert not record.status.configured

    def test_third_pass_configures(self, reconciler, store, configurator):
        reconciler.reconcile(KEY)
        reconciler.reconcile(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.requeue_after is None
        assert configurator.calls == [(KUBECONFIG, "rt-1", "ga-1")]
        record = store.get(KEY)
        assert record.status.state == READY_STATE
        assert record.status.registered and record.status.configured

    def test_register_labels(self, reconciler, registrator):
        reconciler.reconcile(KEY)
        reconciler.reconcile(KEY)
        labels = registrator.registered[0]
        assert labels["global_account_id"] == "ga-1"
        assert labels["subaccount_id"] == "sa-1"
        assert labels["gardenerClusterName"] == "shoot-1"
        assert labels["director_connection_managed_by"] == "compass-manager"


# --- Idempotency ---


class TestIdempotency:
    def test_registration_happens_once(self, reconciler, registrator):
        for _ in range(6):
            reconciler.reconcile(KEY)
        assert len(registrator.registered) == 1

    def test_ready_cluster_is_not_reconfigured(self, reconciler, configurator):
        _run_to_ready(reconciler)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.reason == "already configured"
        assert len(configurator.calls) == 1

    def test_rotated_credentials_are_reconfigured(self, reconciler, source, configurator):
        _run_to_ready(reconciler)
        source.put_bundle(_bundle(b"rotated"))
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert configurator.calls[-1] == (b"rotated", "rt-1", "ga-1")

    def test_digest_stored(self, reconciler, store):
        _run_to_ready(reconciler)
        assert store.get(KEY).configured_digest == configuration_digest(KUBECONFIG, "rt-1")


# --- Scenario B: credentials not yet available ---


class TestMissingCredentials:
    def test_no_bundle(self, store, registrator, configurator):
        source = InventoryClusterSource([_descriptor()])
        reconciler = Reconciler(source, store, registrator, configurator, enabled_registration=True)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        assert store.get(KEY) is None
        assert registrator.registered == []
        assert configurator.calls == []

    def test_empty_bundle(self, store, registrator, configurator):
        source = InventoryClusterSource([_descriptor()], [_bundle(b"")])
        reconciler = Reconciler(source, store, registrator, configurator, enabled_registration=True)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        assert store.get(KEY) is None

    def test_duplicate_bundles(self, store, registrator, configurator):
        source = InventoryClusterSource([_descriptor()], [_bundle(name="a"), _bundle(name="b")])
        reconciler = Reconciler(source, store, registrator, configurator, enabled_registration=True)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.ERROR
        assert result.reason == "integrity error"
        assert store.get(KEY) is None


# --- Scenario C: migrated runtime ---


class TestMigration:
    @pytest.fixture()
    def source(self) -> InventoryClusterSource:
        descriptor = _descriptor(annotations={ANNOTATION_MIGRATION_ID: "rt-9"})
        return InventoryClusterSource([descriptor], [_bundle()])

    def test_record_adopts_migration_id(self, reconciler, store):
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        record = store.get(KEY)
        assert record.runtime_id == "rt-9"
        assert record.status.registered
        assert record.status.state == PROCESSING_STATE

    def test_register_never_called(self, reconciler, store, registrator, configurator):
        for _ in range(4):
            reconciler.reconcile(KEY)
        assert registrator.registered == []
        assert configurator.calls == [(KUBECONFIG, "rt-9", "ga-1")]
        assert store.get(KEY).status.state == READY_STATE


# --- Registration gate ---


class TestRegistrationDisabled:
    def test_configures_without_runtime_id(self, source, store, registrator, configurator):
        reconciler = Reconciler(source, store, registrator, configurator)
        reconciler.reconcile(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert registrator.registered == []
        assert configurator.calls == [(KUBECONFIG, "", "ga-1")]


# --- Failures ---


class TestFailures:
    def test_register_failure_persists_failed(self, reconciler, store, registrator):
        registrator.fail_register = 1
        reconciler.reconcile(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        assert "directory unavailable" in result.error
        record = store.get(KEY)
        assert record.runtime_id == ""
        assert record.status.state == FAILED_STATE

    def test_register_recovers(self, reconciler, store, registrator):
        registrator.fail_register = 1
        for _ in range(4):
            reconciler.reconcile(KEY)
        assert len(registrator.registered) == 2
        assert store.get(KEY).status.state == READY_STATE

    def test_empty_runtime_id_is_failure(self, reconciler, store, registrator):
        registrator.next_id = ""
        reconciler.reconcile(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        assert "empty runtime ID" in result.error
        assert store.get(KEY).runtime_id == ""

    def test_configure_failure(self, reconciler, store, configurator):
        configurator.fail = 1
        _run_to_ready(reconciler)
        record = store.get(KEY)
        assert record.status.registered
        assert not record.status.configured
        assert record.status.state == FAILED_STATE

        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert store.get(KEY).status.state == READY_STATE

    def test_conflict_is_error(self, reconciler, store):
        reconciler.reconcile(KEY)
        store.fail_updates = RecordConflictError("modified concurrently")
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.ERROR
        assert result.reason == "storage error"

    def test_collaborator_exceptions_never_escape(self, source, store):
        registrator = MagicMock()
        registrator.register.side_effect = KeyError("weird")
        reconciler = Reconciler(
            source, store, registrator, MagicMock(), enabled_registration=True,
        )
        reconciler.reconcile(KEY)
        assert reconciler.reconcile(KEY).outcome == ReconcileOutcome.RETRY


# --- No orphaned runtimes ---


class TestNoOrphan:
    def test_failed_persist_leads_to_new_registration(
        self, reconciler, store, registrator, journal,
    ):
        reconciler.reconcile(KEY)
        store.fail_updates = RecordStoreError("disk full")
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.ERROR
        assert store.get(KEY).runtime_id == ""

        # The runtime that never got persisted is traceable.
        [event] = journal.read_events()
        assert event.action == JournalAction.REGISTERED
        assert event.runtime_id == "rt-1"

        store.fail_updates = None
        registrator.next_id = "rt-2"
        reconciler.reconcile(KEY)
        assert len(registrator.registered) == 2
        assert store.get(KEY).runtime_id == "rt-2"
        assert verify_journal(journal.path).open_runtimes == {
            "rt-1": "kcp-system/c1",
            "rt-2": "kcp-system/c1",
        }


# --- Scenario D and the deletion path ---


class TestDeletion:
    def test_deregister_failure_then_success(self, reconciler, source, store, registrator):
        _run_to_ready(reconciler)
        source.remove_descriptor(KEY)
        registrator.fail_deregister = 1

        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.RETRY
        record = store.get(KEY)
        assert record is not None
        assert record.guarded

        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert store.get(KEY) is None
        assert registrator.deregistered == [("rt-1", "ga-1"), ("rt-1", "ga-1")]

    def test_guard_held_during_deregister(self, reconciler, source, store, registrator):
        _run_to_ready(reconciler)
        source.remove_descriptor(KEY)
        seen: list[bool] = []
        registrator.on_deregister = lambda: seen.append(store.get(KEY).guarded)
        reconciler.reconcile(KEY)
        assert seen == [True]
        assert store.get(KEY) is None

    def test_no_record(self, reconciler, source, registrator):
        source.remove_descriptor(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert registrator.deregistered == []

    def test_unregistered_record_removed_without_deregister(
        self, reconciler, source, store, registrator,
    ):
        reconciler.reconcile(KEY)
        source.remove_descriptor(KEY)
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert store.get(KEY) is None
        assert registrator.deregistered == []

    def test_missing_account_is_integrity_error(self, source, store, registrator, configurator):
        source.put_descriptor(_descriptor(labels={LABEL_CLUSTER_NAME: "c1"}))
        reconciler = Reconciler(source, store, registrator, configurator, enabled_registration=True)
        reconciler.reconcile(KEY)
        reconciler.reconcile(KEY)
        source.remove_descriptor(KEY)

        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.ERROR
        assert result.reason == "integrity error"
        assert registrator.deregistered == []
        assert store.get(KEY).guarded

    def test_terminating_descriptor_takes_deletion_path(
        self, reconciler, source, store, registrator,
    ):
        _run_to_ready(reconciler)
        source.put_descriptor(_descriptor(deletion_timestamp=datetime.now(tz=UTC)))
        result = reconciler.reconcile(KEY)
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert registrator.deregistered == [("rt-1", "ga-1")]
        assert store.get(KEY) is None


# --- Journal ---


class TestJournal:
    def test_full_lifecycle_journal(self, reconciler, source, journal):
        _run_to_ready(reconciler)
        source.remove_descriptor(KEY)
        reconciler.reconcile(KEY)

        actions = [e.action for e in journal.read_events()]
        assert actions == [
            JournalAction.REGISTERED,
            JournalAction.CONFIGURED,
            JournalAction.DEREGISTERED,
        ]
        report = verify_journal(journal.path)
        assert report.valid
        assert report.open_runtimes == {}

    def test_failures_journaled(self, reconciler, registrator, journal):
        registrator.fail_register = 1
        reconciler.reconcile(KEY)
        reconciler.reconcile(KEY)
        [event] = journal.read_events(cluster=str(KEY))
        assert event.action == JournalAction.REGISTER_FAILED
        assert "directory unavailable" in event.error

    def test_journal_failure_does_not_fail_pass(self, source, store, registrator, configurator):
        broken = MagicMock()
        broken.record.side_effect = OSError("read-only filesystem")
        reconciler = Reconciler(
            source, store, registrator, configurator,
            enabled_registration=True, journal=broken,
        )
        _run_to_ready(reconciler)
        assert store.get(KEY).status.state == READY_STATE


# --- Helpers ---


class TestHelpers:
    def test_digest_depends_on_both_inputs(self):
        base = configuration_digest(b"kc", "rt-1")
        assert base == configuration_digest(b"kc", "rt-1")
        assert base != configuration_digest(b"kc", "rt-2")
        assert base != configuration_digest(b"other", "rt-1")

    def test_runtime_labels_defaults(self):
        labels = build_runtime_labels(
            ClusterDescriptor(namespace="ns", name="c", labels={LABEL_BROKER_PLAN_NAME: "aws"}),
        )
        assert labels["broker_plan_name"] == "aws"
        assert labels["broker_instance_id"] == ""
