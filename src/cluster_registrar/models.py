"""Core data models for cluster-registrar.

Defines the schemas for:
- Cluster identity (namespace/name key shared by all resources)
- Cluster descriptors (the externally owned lifecycle resource)
- Credential bundles (kubeconfig payloads for target clusters)
- Registration records (the mapping this controller owns)
- Reconciliation results (pass output)
- Journal events (what external mutation happened)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# --- Well-known labels and annotations ---

LABEL_BROKER_INSTANCE_ID = "kyma-project.io/instance-id"
LABEL_BROKER_PLAN_ID = "kyma-project.io/broker-plan-id"
LABEL_BROKER_PLAN_NAME = "kyma-project.io/broker-plan-name"
LABEL_RUNTIME_ID = "kyma-project.io/compass-runtime-id"
LABEL_GLOBAL_ACCOUNT_ID = "kyma-project.io/global-account-id"
LABEL_SUBACCOUNT_ID = "kyma-project.io/subaccount-id"
LABEL_SHOOT_NAME = "kyma-project.io/shoot-name"
LABEL_CLUSTER_NAME = "operator.kyma-project.io/kyma-name"
LABEL_MANAGED_BY = "operator.kyma-project.io/managed-by"

ANNOTATION_MIGRATION_ID = "compass-runtime-id-for-migration"
ANNOTATION_CONFIGURED_DIGEST = "cluster-registrar.kyma-project.io/configured-digest"

CREDENTIAL_KEY = "config"
FEATURE_MODULE = "applicationconnector"
MANAGED_BY = "cluster-registrar"
DELETION_GUARD = "cluster-registrar.kyma-project.io/deregistration"


# --- Enums ---


class ReconcileOutcome(enum.StrEnum):
    COMPLETED = "completed"
    RETRY = "retry"
    ERROR = "error"


class EventType(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class JournalAction(enum.StrEnum):
    REGISTERED = "registered"
    REGISTER_FAILED = "register_failed"
    CONFIGURED = "configured"
    CONFIGURE_FAILED = "configure_failed"
    DEREGISTERED = "deregistered"
    DEREGISTER_FAILED = "deregister_failed"
    RECORD_REMOVED = "record_removed"


# --- Identity ---


class ClusterKey(BaseModel, frozen=True):
    """Identity of a cluster: the (namespace, name) pair.

    Cluster descriptors, registration records and reconciliation passes
    are all keyed by it.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_namespace: str = "default") -> ClusterKey:
        """Parse ``namespace/name`` (or a bare ``name``) into a key."""
        if "/" in value:
            namespace, _, name = value.partition("/")
            return cls(namespace=namespace, name=name)
        return cls(namespace=default_namespace, name=value)


# --- Cluster Descriptor ---


class ClusterDescriptor(BaseModel):
    """A managed cluster's lifecycle resource.

    Owned by another controller; cluster-registrar only reads it.
    """

    namespace: str
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    modules: list[str] = Field(default_factory=list)
    generation: int = 1
    deletion_timestamp: datetime | None = None

    @property
    def key(self) -> ClusterKey:
        return ClusterKey(namespace=self.namespace, name=self.name)

    @property
    def global_account_id(self) -> str:
        return self.labels.get(LABEL_GLOBAL_ACCOUNT_ID, "")

    @property
    def migration_runtime_id(self) -> str | None:
        """Runtime ID registered out-of-band, or None when absent."""
        return self.annotations.get(ANNOTATION_MIGRATION_ID)

    def has_module(self, module: str) -> bool:
        return module in self.modules


# --- Credential Bundle ---


class CredentialBundle(BaseModel):
    """Connection credentials for a target cluster.

    Discovered by the ``LABEL_CLUSTER_NAME`` label; the kubeconfig lives
    under ``CREDENTIAL_KEY`` in ``data``.
    """

    namespace: str
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    data: dict[str, bytes] = Field(default_factory=dict)

    @property
    def payload(self) -> bytes:
        return self.data.get(CREDENTIAL_KEY, b"")


# --- Registration Record ---


class RecordStatus(BaseModel):
    """Persisted status of a registration record.

    ``registered``, ``configured`` and ``state`` are read by dashboards
    and alerts; ``state`` is one of ``Ready``, ``Processing``, ``Failed``.
    """

    registered: bool = False
    configured: bool = False
    state: str = ""


class RegistrationRecord(BaseModel):
    """Mapping between a cluster and its runtime in the external directory.

    An empty ``runtime_id`` means the runtime is not registered yet.
    ``configured_digest`` fingerprints the inputs of the last successful
    configuration.
    While ``finalizers`` holds the deletion guard the record cannot be
    physically removed.
    """

    namespace: str
    name: str
    runtime_id: str = ""
    global_account_id: str = ""
    subaccount_id: str = ""
    cluster_name: str = ""
    managed_by: str = MANAGED_BY
    configured_digest: str = ""
    finalizers: list[str] = Field(default_factory=list)
    deletion_requested_at: datetime | None = None
    status: RecordStatus = Field(default_factory=RecordStatus)
    resource_version: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> ClusterKey:
        return ClusterKey(namespace=self.namespace, name=self.name)

    @property
    def guarded(self) -> bool:
        return DELETION_GUARD in self.finalizers


# --- Reconciliation ---


class ReconcileResult(BaseModel):
    """The result of a single reconciliation pass."""

    outcome: ReconcileOutcome
    key: ClusterKey
    requeue_after: float | None = None
    reason: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ChangeEvent(BaseModel):
    """A change notification for a cluster descriptor.

    ``previous`` is only set for updates.
    """

    type: EventType
    descriptor: ClusterDescriptor
    previous: ClusterDescriptor | None = None


# --- Journal ---


class JournalEvent(BaseModel):
    """A single entry in the append-only operation journal."""

    event_id: str
    timestamp: datetime
    prev_hash: str
    entry_hash: str = ""
    action: JournalAction
    cluster: str
    runtime_id: str = ""
    global_account_id: str = ""
    error: str | None = None
