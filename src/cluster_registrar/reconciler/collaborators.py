"""Registrator and Configurator protocols, plus built-in dry-run backends.

The Registrator talks to the external runtime directory; the Configurator
installs connection credentials into the target cluster.  Both are
supplied from outside: any object with the right methods satisfies the
protocol, no inheritance required.  Collaborators report failure by
raising; they own their own network retry policy.
"""

from __future__ import annotations

import importlib
import logging
import uuid
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from cluster_registrar.models import (
    LABEL_BROKER_INSTANCE_ID,
    LABEL_BROKER_PLAN_ID,
    LABEL_BROKER_PLAN_NAME,
    LABEL_GLOBAL_ACCOUNT_ID,
    LABEL_SHOOT_NAME,
    LABEL_SUBACCOUNT_ID,
    ClusterDescriptor,
)

logger = logging.getLogger(__name__)

DIRECTORY_MANAGED_BY = "compass-manager"


class DirectoryError(Exception):
    """Raised when a Registrator or Configurator call fails."""


class CollaboratorError(Exception):
    """Raised when a collaborator cannot be loaded from configuration."""


@runtime_checkable
class Registrator(Protocol):
    """Protocol for runtime directory clients."""

    def register(self, labels: dict[str, str]) -> str:
        """Create a runtime in the directory and return its ID."""
        ...

    def deregister(self, runtime_id: str, global_account: str) -> None:
        """Delete a runtime from the directory."""
        ...


@runtime_checkable
class Configurator(Protocol):
    """Protocol for credential installers. Must be idempotent."""

    def configure(
        self, credential_bundle: bytes, runtime_id: str, global_account: str,
    ) -> None:
        """Install connection credentials for ``runtime_id`` into the cluster."""
        ...


class DryRunRegistrator:
    """Registrator that logs instead of calling the directory.

    ``register`` hands out a fresh UUID each call.
    """

    def register(self, labels: dict[str, str]) -> str:
        runtime_id = str(uuid.uuid4())
        logger.info(
            "[dry-run] Register runtime for global account %s: %s",
            labels.get("global_account_id", ""), runtime_id,
        )
        return runtime_id

    def deregister(self, runtime_id: str, global_account: str) -> None:
        logger.info(
            "[dry-run] Deregister runtime %s for global account %s",
            runtime_id, global_account,
        )


class DryRunConfigurator:
    """Configurator that logs instead of installing credentials."""

    def configure(
        self, credential_bundle: bytes, runtime_id: str, global_account: str,
    ) -> None:
        logger.info(
            "[dry-run] Configure runtime %s for global account %s (%d bytes of credentials)",
            runtime_id, global_account, len(credential_bundle),
        )


def build_runtime_labels(descriptor: ClusterDescriptor) -> dict[str, str]:
    """Labels sent to the directory when registering a runtime."""
    labels = descriptor.labels
    return {
        "director_connection_managed_by": DIRECTORY_MANAGED_BY,
        "broker_instance_id": labels.get(LABEL_BROKER_INSTANCE_ID, ""),
        "gardenerClusterName": labels.get(LABEL_SHOOT_NAME, ""),
        "subaccount_id": labels.get(LABEL_SUBACCOUNT_ID, ""),
        "global_account_id": labels.get(LABEL_GLOBAL_ACCOUNT_ID, ""),
        "broker_plan_id": labels.get(LABEL_BROKER_PLAN_ID, ""),
        "broker_plan_name": labels.get(LABEL_BROKER_PLAN_NAME, ""),
    }


def load_collaborator(path: str, **kwargs: Any) -> Any:
    """Instantiate a collaborator from a ``module:factory`` path.

    The factory is called with ``kwargs`` and its return value is used as
    the collaborator.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        msg = f"Collaborator path must look like 'module:factory', got {path!r}"
        raise CollaboratorError(msg)

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        msg = f"Cannot import collaborator module {module_name!r}: {exc}"
        raise CollaboratorError(msg) from exc

    factory: Callable[..., Any] | None = getattr(module, attr, None)
    if factory is None or not callable(factory):
        msg = f"{module_name!r} has no callable {attr!r}"
        raise CollaboratorError(msg)
    return factory(**kwargs)
