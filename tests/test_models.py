"""Tests for cluster-registrar data models."""

import pytest
from pydantic import ValidationError

from cluster_registrar.models import (
    ANNOTATION_MIGRATION_ID,
    DELETION_GUARD,
    LABEL_GLOBAL_ACCOUNT_ID,
    MANAGED_BY,
    ChangeEvent,
    ClusterDescriptor,
    ClusterKey,
    CredentialBundle,
    EventType,
    ReconcileOutcome,
    ReconcileResult,
    RegistrationRecord,
)

# --- ClusterKey ---


class TestClusterKey:
    def test_str(self):
        assert str(ClusterKey(namespace="kcp-system", name="c1")) == "kcp-system/c1"

    def test_hashable_and_equal(self):
        a = ClusterKey(namespace="ns", name="c1")
        b = ClusterKey(namespace="ns", name="c1")
        assert a == b
        assert len({a, b}) == 1

    def test_frozen(self):
        key = ClusterKey(namespace="ns", name="c1")
        with pytest.raises(ValidationError):
            key.name = "other"

    def test_parse_qualified(self):
        assert ClusterKey.parse("ns/c1") == ClusterKey(namespace="ns", name="c1")

    def test_parse_bare_name_uses_default(self):
        key = ClusterKey.parse("c1", default_namespace="kcp-system")
        assert key == ClusterKey(namespace="kcp-system", name="c1")


# --- ClusterDescriptor ---


class TestClusterDescriptor:
    def test_key(self):
        d = ClusterDescriptor(namespace="ns", name="c1")
        assert d.key == ClusterKey(namespace="ns", name="c1")

    def test_global_account_from_label(self):
        d = ClusterDescriptor(
            namespace="ns", name="c1", labels={LABEL_GLOBAL_ACCOUNT_ID: "ga-1"},
        )
        assert d.global_account_id == "ga-1"

    def test_global_account_missing(self):
        assert ClusterDescriptor(namespace="ns", name="c1").global_account_id == ""

    def test_migration_id_absent_is_none(self):
        assert ClusterDescriptor(namespace="ns", name="c1").migration_runtime_id is None

    def test_migration_id_present(self):
        d = ClusterDescriptor(
            namespace="ns", name="c1", annotations={ANNOTATION_MIGRATION_ID: "rt-9"},
        )
        assert d.migration_runtime_id == "rt-9"

    def test_has_module(self):
        d = ClusterDescriptor(namespace="ns", name="c1", modules=["applicationconnector"])
        assert d.has_module("applicationconnector")
        assert not d.has_module("istio")


# --- CredentialBundle ---


class TestCredentialBundle:
    def test_payload(self):
        b = CredentialBundle(namespace="ns", name="kc", data={"config": b"apiVersion: v1"})
        assert b.payload == b"apiVersion: v1"

    def test_payload_missing_key_is_empty(self):
        b = CredentialBundle(namespace="ns", name="kc", data={"other": b"x"})
        assert b.payload == b""


# --- RegistrationRecord ---


class TestRegistrationRecord:
    def test_defaults(self):
        r = RegistrationRecord(namespace="ns", name="c1")
        assert r.runtime_id == ""
        assert r.managed_by == MANAGED_BY
        assert r.status.state == ""
        assert r.finalizers == []
        assert not r.guarded

    def test_guarded(self):
        r = RegistrationRecord(namespace="ns", name="c1", finalizers=[DELETION_GUARD])
        assert r.guarded

    def test_json_roundtrip(self):
        r = RegistrationRecord(
            namespace="ns", name="c1", runtime_id="rt-1", finalizers=[DELETION_GUARD],
        )
        restored = RegistrationRecord(**r.model_dump(mode="json"))
        assert restored == r


# --- ReconcileResult / ChangeEvent ---


class TestReconcileResult:
    def test_to_dict(self):
        result = ReconcileResult(
            outcome=ReconcileOutcome.RETRY,
            key=ClusterKey(namespace="ns", name="c1"),
            requeue_after=5.0,
            reason="record created",
        )
        data = result.to_dict()
        assert data["outcome"] == "retry"
        assert data["key"] == {"namespace": "ns", "name": "c1"}
        assert data["requeue_after"] == 5.0
        assert data["error"] is None


class TestChangeEvent:
    def test_previous_defaults_to_none(self):
        event = ChangeEvent(
            type=EventType.CREATED,
            descriptor=ClusterDescriptor(namespace="ns", name="c1"),
        )
        assert event.previous is None
