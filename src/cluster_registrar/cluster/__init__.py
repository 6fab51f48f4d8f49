"""Read access to cluster descriptors, credential bundles and records."""

from cluster_registrar.cluster.accessor import ClusterStateAccessor, IntegrityError, PassCache
from cluster_registrar.cluster.source import (
    ClusterSource,
    ClusterSourceError,
    InventoryClusterSource,
    load_inventory,
)

__all__ = [
    "ClusterSource",
    "ClusterSourceError",
    "ClusterStateAccessor",
    "IntegrityError",
    "InventoryClusterSource",
    "PassCache",
    "load_inventory",
]
