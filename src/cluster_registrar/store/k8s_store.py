"""K8sRecordStore: registration records as Kubernetes custom objects.

Records are ``CompassManagerMapping`` objects in the cluster's namespace,
named after the cluster.  Optimistic concurrency comes from
``metadata.resourceVersion`` (the API server answers 409 on a stale
version), the deletion guard is a regular finalizer, and the
``registered``/``configured``/``state`` fields live in the status
subresource.

Requires: ``pip install cluster-registrar[k8s]``
"""

from __future__ import annotations

import logging
from typing import Any

from cluster_registrar.kube import api_status, build_api_client, check_kubernetes_available
from cluster_registrar.models import (
    ANNOTATION_CONFIGURED_DIGEST,
    DELETION_GUARD,
    LABEL_CLUSTER_NAME,
    LABEL_GLOBAL_ACCOUNT_ID,
    LABEL_MANAGED_BY,
    LABEL_RUNTIME_ID,
    LABEL_SUBACCOUNT_ID,
    ClusterKey,
    RecordStatus,
    RegistrationRecord,
)
from cluster_registrar.store.record_store import (
    DeletionGuardError,
    RecordConflictError,
    RecordExistsError,
    RecordNotFoundError,
    RecordStoreError,
    pick_unique,
)

logger = logging.getLogger(__name__)

GROUP = "operator.kyma-project.io"
VERSION = "v1beta1"
PLURAL = "compassmanagermappings"
KIND = "CompassManagerMapping"


class K8sRecordStore:
    """Record store backed by namespaced custom objects.

    Pass an existing ``CustomObjectsApi`` as ``api`` or let the store
    build one from kubeconfig / in-cluster settings.
    """

    def __init__(
        self,
        api: Any = None,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        if api is None:
            check_kubernetes_available()
            from kubernetes import client

            api = client.CustomObjectsApi(
                build_api_client(kubeconfig, context, in_cluster),
            )
        self._api = api

    # --- Reads ---

    def get(self, key: ClusterKey) -> RegistrationRecord | None:
        try:
            obj = self._api.get_namespaced_custom_object(
                GROUP, VERSION, key.namespace, PLURAL, key.name,
            )
        except Exception as exc:
            if api_status(exc) == 404:
                return None
            raise self._wrap(exc, f"get {key}") from exc
        return record_from_object(obj)

    def list(self, namespace: str | None = None) -> list[RegistrationRecord]:
        return self._list(namespace, LABEL_MANAGED_BY)

    def find_by_cluster(
        self, namespace: str, cluster_name: str,
    ) -> RegistrationRecord | None:
        matches = self._list(namespace, f"{LABEL_CLUSTER_NAME}={cluster_name}")
        return pick_unique(matches, f"cluster {namespace}/{cluster_name}")

    def _list(self, namespace: str | None, selector: str) -> list[RegistrationRecord]:
        try:
            if namespace is None:
                resp = self._api.list_cluster_custom_object(
                    GROUP, VERSION, PLURAL, label_selector=selector,
                )
            else:
                resp = self._api.list_namespaced_custom_object(
                    GROUP, VERSION, namespace, PLURAL, label_selector=selector,
                )
        except Exception as exc:
            raise self._wrap(exc, f"list {PLURAL}") from exc
        records = [record_from_object(obj) for obj in resp.get("items", [])]
        return sorted(records, key=lambda r: (r.namespace, r.name))

    # --- Writes ---

    def create(self, record: RegistrationRecord) -> RegistrationRecord:
        finalizers = list(record.finalizers)
        if DELETION_GUARD not in finalizers:
            finalizers.append(DELETION_GUARD)
        body = object_from_record(record.model_copy(update={
            "finalizers": finalizers, "resource_version": "",
        }))
        try:
            created = self._api.create_namespaced_custom_object(
                GROUP, VERSION, record.namespace, PLURAL, body,
            )
        except Exception as exc:
            if api_status(exc) == 409:
                msg = f"Record already exists: {record.key}"
                raise RecordExistsError(msg) from exc
            raise self._wrap(exc, f"create {record.key}") from exc

        stored = record_from_object(created)
        return self._write_status(stored, record.status)

    def update(self, record: RegistrationRecord) -> RegistrationRecord:
        current = self.get(record.key)
        if current is None:
            msg = f"Record not found: {record.key}"
            raise RecordNotFoundError(msg)
        if current.guarded and not record.guarded:
            msg = f"Record {record.key} is guarded; use clear_guard() to release it"
            raise DeletionGuardError(msg)

        try:
            replaced = self._api.replace_namespaced_custom_object(
                GROUP, VERSION, record.namespace, PLURAL, record.name,
                object_from_record(record),
            )
        except Exception as exc:
            raise self._map_write_error(exc, record.key) from exc

        return self._write_status(record_from_object(replaced), record.status)

    def delete(self, key: ClusterKey) -> bool:
        try:
            self._api.delete_namespaced_custom_object(
                GROUP, VERSION, key.namespace, PLURAL, key.name,
            )
        except Exception as exc:
            if api_status(exc) == 404:
                msg = f"Record not found: {key}"
                raise RecordNotFoundError(msg) from exc
            raise self._wrap(exc, f"delete {key}") from exc
        # A finalizer keeps the object around with a deletion timestamp.
        removed = self.get(key) is None
        if not removed:
            logger.debug("Deletion of record %s deferred by finalizer", key)
        return removed

    def clear_guard(self, key: ClusterKey) -> RegistrationRecord | None:
        current = self.get(key)
        if current is None:
            msg = f"Record not found: {key}"
            raise RecordNotFoundError(msg)

        released = current.model_copy(update={
            "finalizers": [f for f in current.finalizers if f != DELETION_GUARD],
        })
        try:
            replaced = self._api.replace_namespaced_custom_object(
                GROUP, VERSION, key.namespace, PLURAL, key.name,
                object_from_record(released),
            )
        except Exception as exc:
            if api_status(exc) == 404:
                return None
            raise self._map_write_error(exc, key) from exc

        if current.deletion_requested_at is not None:
            return None
        return record_from_object(replaced)

    # --- Private ---

    def _write_status(
        self, stored: RegistrationRecord, status: RecordStatus,
    ) -> RegistrationRecord:
        if status == stored.status:
            return stored
        body = object_from_record(stored.model_copy(update={"status": status}))
        try:
            replaced = self._api.replace_namespaced_custom_object_status(
                GROUP, VERSION, stored.namespace, PLURAL, stored.name, body,
            )
        except Exception as exc:
            raise self._map_write_error(exc, stored.key) from exc
        return record_from_object(replaced)

    def _map_write_error(self, exc: Exception, key: ClusterKey) -> RecordStoreError:
        status = api_status(exc)
        if status == 409:
            return RecordConflictError(f"Record {key} was modified concurrently")
        if status == 404:
            return RecordNotFoundError(f"Record not found: {key}")
        return self._wrap(exc, f"write {key}")

    def _wrap(self, exc: Exception, what: str) -> RecordStoreError:
        status = api_status(exc)
        if status is not None:
            reason = getattr(exc, "reason", "")
            return RecordStoreError(f"K8s API error ({status}) on {what}: {reason}")
        return RecordStoreError(f"K8s record store error on {what}: {exc}")


def object_from_record(record: RegistrationRecord) -> dict[str, Any]:
    """Build a custom object body from a record."""
    metadata: dict[str, Any] = {
        "name": record.name,
        "namespace": record.namespace,
        "labels": {
            LABEL_CLUSTER_NAME: record.cluster_name,
            LABEL_RUNTIME_ID: record.runtime_id,
            LABEL_GLOBAL_ACCOUNT_ID: record.global_account_id,
            LABEL_SUBACCOUNT_ID: record.subaccount_id,
            LABEL_MANAGED_BY: record.managed_by,
        },
        "annotations": {ANNOTATION_CONFIGURED_DIGEST: record.configured_digest},
        "finalizers": list(record.finalizers),
    }
    if record.resource_version:
        metadata["resourceVersion"] = record.resource_version

    return {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": KIND,
        "metadata": metadata,
        "spec": {},
        "status": record.status.model_dump(mode="json"),
    }


def record_from_object(obj: dict[str, Any]) -> RegistrationRecord:
    """Build a record from a custom object returned by the API server."""
    metadata = obj.get("metadata") or {}
    labels = metadata.get("labels") or {}
    annotations = metadata.get("annotations") or {}
    status = obj.get("status") or {}
    return RegistrationRecord(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        runtime_id=labels.get(LABEL_RUNTIME_ID, ""),
        global_account_id=labels.get(LABEL_GLOBAL_ACCOUNT_ID, ""),
        subaccount_id=labels.get(LABEL_SUBACCOUNT_ID, ""),
        cluster_name=labels.get(LABEL_CLUSTER_NAME, ""),
        managed_by=labels.get(LABEL_MANAGED_BY, ""),
        configured_digest=annotations.get(ANNOTATION_CONFIGURED_DIGEST, ""),
        finalizers=list(metadata.get("finalizers") or []),
        deletion_requested_at=metadata.get("deletionTimestamp"),
        status=RecordStatus(
            registered=bool(status.get("registered", False)),
            configured=bool(status.get("configured", False)),
            state=status.get("state", ""),
        ),
        resource_version=str(metadata.get("resourceVersion", "")),
        created_at=metadata.get("creationTimestamp"),
    )
