"""cluster-registrar: registers managed clusters with an external runtime directory."""

__version__ = "0.4.0"

# Optional Kubernetes backends (don't crash if the k8s extra is missing)
import contextlib

from cluster_registrar.cluster.accessor import ClusterStateAccessor, IntegrityError, PassCache
from cluster_registrar.cluster.source import (
    ClusterSource,
    ClusterSourceError,
    InventoryClusterSource,
    load_inventory,
)
from cluster_registrar.config import ConfigError, RegistrarConfig, find_config, load_config
from cluster_registrar.controller.controller import Controller
from cluster_registrar.controller.queue import RequeueQueue
from cluster_registrar.journal.journal import Journal, JournalError, JournalReport, verify_journal
from cluster_registrar.models import (
    ChangeEvent,
    ClusterDescriptor,
    ClusterKey,
    CredentialBundle,
    EventType,
    ReconcileOutcome,
    ReconcileResult,
    RecordStatus,
    RegistrationRecord,
)
from cluster_registrar.reconciler.collaborators import (
    Configurator,
    DirectoryError,
    DryRunConfigurator,
    DryRunRegistrator,
    Registrator,
)
from cluster_registrar.reconciler.filter import NotificationFilter
from cluster_registrar.reconciler.reconciler import Reconciler
from cluster_registrar.status.classifier import StatusFlag
from cluster_registrar.store.record_store import (
    FileRecordStore,
    MemoryRecordStore,
    RecordStore,
    RecordStoreError,
)

with contextlib.suppress(ImportError):
    from cluster_registrar.store.k8s_store import K8sRecordStore

with contextlib.suppress(ImportError):
    from cluster_registrar.cluster.k8s_source import K8sClusterSource

__all__ = [
    "ChangeEvent",
    "ClusterDescriptor",
    "ClusterKey",
    "ClusterSource",
    "ClusterSourceError",
    "ClusterStateAccessor",
    "ConfigError",
    "Configurator",
    "Controller",
    "CredentialBundle",
    "DirectoryError",
    "DryRunConfigurator",
    "DryRunRegistrator",
    "EventType",
    "FileRecordStore",
    "find_config",
    "IntegrityError",
    "InventoryClusterSource",
    "Journal",
    "JournalError",
    "JournalReport",
    "K8sClusterSource",
    "K8sRecordStore",
    "load_config",
    "load_inventory",
    "MemoryRecordStore",
    "NotificationFilter",
    "PassCache",
    "ReconcileOutcome",
    "ReconcileResult",
    "Reconciler",
    "RecordStatus",
    "RecordStore",
    "RecordStoreError",
    "RegistrarConfig",
    "Registrator",
    "RegistrationRecord",
    "RequeueQueue",
    "StatusFlag",
    "verify_journal",
    "__version__",
]
