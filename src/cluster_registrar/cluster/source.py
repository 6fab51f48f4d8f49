"""Cluster source protocol and the inventory-backed source.

A cluster source is the read side of the control plane: it answers
"which cluster descriptors exist" and "which credential bundles belong to
a cluster".  Not-found is always ``None`` (or an empty list), never an
exception.

``InventoryClusterSource`` keeps everything in memory and can be loaded
from a YAML inventory file, which makes it the backend for local runs and
tests.  The Kubernetes source is in ``k8s_source``.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from cluster_registrar.models import (
    CREDENTIAL_KEY,
    LABEL_CLUSTER_NAME,
    ClusterDescriptor,
    ClusterKey,
    CredentialBundle,
)


class ClusterSourceError(Exception):
    """Raised when a cluster source cannot be read."""


@runtime_checkable
class ClusterSource(Protocol):
    """Protocol for cluster descriptor and credential bundle sources."""

    def get_descriptor(self, key: ClusterKey) -> ClusterDescriptor | None: ...

    def list_descriptors(self, namespace: str | None = None) -> list[ClusterDescriptor]: ...

    def find_credential_bundles(
        self, namespace: str, cluster_name: str,
    ) -> list[CredentialBundle]: ...

    def reload(self) -> None: ...


class InventoryClusterSource:
    """In-memory cluster source.

    Thread-safe via a lock, so tests and the CLI can mutate it while a
    controller is reading.  A source built by ``load_inventory`` remembers
    its file and re-reads it on ``reload()``.
    """

    def __init__(
        self,
        descriptors: list[ClusterDescriptor] | None = None,
        bundles: list[CredentialBundle] | None = None,
        path: str | Path | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._path = Path(path) if path is not None else None
        self._descriptors: dict[ClusterKey, ClusterDescriptor] = {}
        self._bundles: dict[tuple[str, str], CredentialBundle] = {}
        for descriptor in descriptors or []:
            self.put_descriptor(descriptor)
        for bundle in bundles or []:
            self.put_bundle(bundle)

    @property
    def path(self) -> Path | None:
        return self._path

    def reload(self) -> None:
        """Replace descriptors and bundles with the current file contents.

        Raises ``ClusterSourceError`` and keeps the previous contents if the
        file cannot be read or validated.
        """
        if self._path is None:
            return
        descriptors, bundles = _read_inventory(self._path)
        with self._lock:
            self._descriptors = {d.key: d for d in descriptors}
            self._bundles = {(b.namespace, b.name): b for b in bundles}

    # --- Reads ---

    def get_descriptor(self, key: ClusterKey) -> ClusterDescriptor | None:
        with self._lock:
            descriptor = self._descriptors.get(key)
        return descriptor.model_copy(deep=True) if descriptor is not None else None

    def list_descriptors(self, namespace: str | None = None) -> list[ClusterDescriptor]:
        with self._lock:
            descriptors = list(self._descriptors.values())
        return [
            d.model_copy(deep=True)
            for d in sorted(descriptors, key=lambda d: (d.namespace, d.name))
            if namespace is None or d.namespace == namespace
        ]

    def find_credential_bundles(
        self, namespace: str, cluster_name: str,
    ) -> list[CredentialBundle]:
        with self._lock:
            bundles = list(self._bundles.values())
        return [
            b.model_copy(deep=True)
            for b in sorted(bundles, key=lambda b: b.name)
            if b.namespace == namespace
            and b.labels.get(LABEL_CLUSTER_NAME) == cluster_name
        ]

    # --- Mutations ---

    def put_descriptor(self, descriptor: ClusterDescriptor) -> None:
        with self._lock:
            self._descriptors[descriptor.key] = descriptor

    def remove_descriptor(self, key: ClusterKey) -> None:
        with self._lock:
            self._descriptors.pop(key, None)

    def put_bundle(self, bundle: CredentialBundle) -> None:
        with self._lock:
            self._bundles[(bundle.namespace, bundle.name)] = bundle

    def remove_bundle(self, namespace: str, name: str) -> None:
        with self._lock:
            self._bundles.pop((namespace, name), None)


def load_inventory(path: str | Path) -> InventoryClusterSource:
    """Load cluster descriptors and credential bundles from a YAML file.

    The file has two optional top-level lists, ``clusters`` and
    ``credentials``.  A credential entry may give its kubeconfig as a
    plain string under ``kubeconfig`` instead of a ``data`` mapping.

    Raises:
        ClusterSourceError: If the file cannot be read, parsed, or validated.
    """
    descriptors, bundles = _read_inventory(Path(path))
    return InventoryClusterSource(descriptors, bundles, path=path)


def _read_inventory(path: Path) -> tuple[list[ClusterDescriptor], list[CredentialBundle]]:
    if not path.exists():
        raise ClusterSourceError(f"Inventory file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ClusterSourceError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ClusterSourceError(f"Inventory file must be a YAML mapping: {path}")

    descriptors: list[ClusterDescriptor] = []
    for i, entry in enumerate(_as_list(raw, "clusters", path)):
        try:
            descriptors.append(ClusterDescriptor(**entry))
        except (ValidationError, TypeError) as e:
            raise ClusterSourceError(f"Invalid cluster at index {i} in {path}: {e}") from e

    bundles: list[CredentialBundle] = []
    for i, entry in enumerate(_as_list(raw, "credentials", path)):
        try:
            bundles.append(_bundle_from_entry(entry))
        except (ValidationError, TypeError, AttributeError) as e:
            raise ClusterSourceError(
                f"Invalid credential bundle at index {i} in {path}: {e}"
            ) from e

    return descriptors, bundles


def _as_list(raw: dict[str, Any], key: str, path: Path) -> list[dict[str, Any]]:
    value = raw.get(key) or []
    if not isinstance(value, list):
        raise ClusterSourceError(f"'{key}' must be a list: {path}")
    return value


def _bundle_from_entry(entry: dict[str, Any]) -> CredentialBundle:
    entry = dict(entry)
    kubeconfig = entry.pop("kubeconfig", None)
    data = {k: v.encode("utf-8") if isinstance(v, str) else v
            for k, v in (entry.pop("data", None) or {}).items()}
    if kubeconfig is not None:
        data[CREDENTIAL_KEY] = str(kubeconfig).encode("utf-8")
    return CredentialBundle(data=data, **entry)
