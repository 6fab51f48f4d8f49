"""Reconciliation state machine, its collaborators and the notification filter."""

from cluster_registrar.reconciler.collaborators import (
    CollaboratorError,
    Configurator,
    DirectoryError,
    DryRunConfigurator,
    DryRunRegistrator,
    Registrator,
    build_runtime_labels,
    load_collaborator,
)
from cluster_registrar.reconciler.filter import NotificationFilter, is_significant_update
from cluster_registrar.reconciler.reconciler import (
    DEFAULT_REQUEUE_SECONDS,
    Reconciler,
    configuration_digest,
)

__all__ = [
    "DEFAULT_REQUEUE_SECONDS",
    "CollaboratorError",
    "Configurator",
    "DirectoryError",
    "DryRunConfigurator",
    "DryRunRegistrator",
    "NotificationFilter",
    "Reconciler",
    "Registrator",
    "build_runtime_labels",
    "configuration_digest",
    "is_significant_update",
    "load_collaborator",
]
