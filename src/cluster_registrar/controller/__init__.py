"""Event-driven scheduling of reconciliation passes."""

from cluster_registrar.controller.controller import DEFAULT_RESYNC_SECONDS, Controller
from cluster_registrar.controller.queue import RequeueQueue

__all__ = [
    "DEFAULT_RESYNC_SECONDS",
    "Controller",
    "RequeueQueue",
]
