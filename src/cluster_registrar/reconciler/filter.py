"""Notification filter: which descriptor change events start a pass.

Creates and updates are admitted for descriptors that enable the feature
module.  Updates are further narrowed to changes the controller cares
about: a new generation, or changed labels or annotations.  Status-only
updates never trigger a pass.  Deletes are always admitted so that a
descriptor which dropped the module still gets deregistered.
"""

from __future__ import annotations

import logging

from cluster_registrar.models import (
    FEATURE_MODULE,
    ChangeEvent,
    ClusterDescriptor,
    EventType,
)

logger = logging.getLogger(__name__)


class NotificationFilter:
    """Create/update/delete predicates over cluster descriptors."""

    def __init__(self, feature_module: str = FEATURE_MODULE) -> None:
        self._feature_module = feature_module

    @property
    def feature_module(self) -> str:
        return self._feature_module

    def should_reconcile(self, descriptor: ClusterDescriptor) -> bool:
        """True if the descriptor participates in registration."""
        return descriptor.has_module(self._feature_module)

    def should_finalize(self, descriptor: ClusterDescriptor) -> bool:
        """True if a deletion of this descriptor needs a pass."""
        return True

    def accepts(self, event: ChangeEvent) -> bool:
        descriptor = event.descriptor
        if event.type == EventType.DELETED:
            return self.should_finalize(descriptor)

        if not self.should_reconcile(descriptor):
            logger.debug(
                "Ignoring %s event for %s: module %s not enabled",
                event.type, descriptor.key, self._feature_module,
            )
            return False

        if event.type == EventType.UPDATED and event.previous is not None:
            return is_significant_update(event.previous, descriptor)
        return True


def is_significant_update(old: ClusterDescriptor, new: ClusterDescriptor) -> bool:
    """True if generation, labels or annotations differ between versions."""
    return (
        old.generation != new.generation
        or old.labels != new.labels
        or old.annotations != new.annotations
    )
