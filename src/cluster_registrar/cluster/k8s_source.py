"""K8sClusterSource: reads cluster descriptors and credentials from Kubernetes.

Descriptors are ``Kyma`` custom objects (``operator.kyma-project.io/v1beta2``);
credential bundles are ``Secret``s labelled with the cluster name.

Requires: ``pip install cluster-registrar[k8s]``
"""

from __future__ import annotations

import base64
from typing import Any

from cluster_registrar.cluster.source import ClusterSourceError
from cluster_registrar.kube import api_status, build_api_client, check_kubernetes_available
from cluster_registrar.models import (
    LABEL_CLUSTER_NAME,
    ClusterDescriptor,
    ClusterKey,
    CredentialBundle,
)

GROUP = "operator.kyma-project.io"
VERSION = "v1beta2"
PLURAL = "kymas"


class K8sClusterSource:
    """Cluster source backed by the kubernetes Python client.

    ``custom_api`` and ``core_api`` may be injected; otherwise they are
    built from kubeconfig / in-cluster settings.
    """

    def __init__(
        self,
        custom_api: Any = None,
        core_api: Any = None,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        if custom_api is None or core_api is None:
            check_kubernetes_available()
            from kubernetes import client

            api_client = build_api_client(kubeconfig, context, in_cluster)
            custom_api = custom_api or client.CustomObjectsApi(api_client)
            core_api = core_api or client.CoreV1Api(api_client)
        self._custom = custom_api
        self._core = core_api

    def get_descriptor(self, key: ClusterKey) -> ClusterDescriptor | None:
        try:
            obj = self._custom.get_namespaced_custom_object(
                GROUP, VERSION, key.namespace, PLURAL, key.name,
            )
        except Exception as exc:
            if api_status(exc) == 404:
                return None
            raise _wrap(exc, f"get {PLURAL} {key}") from exc
        return descriptor_from_object(obj)

    def list_descriptors(self, namespace: str | None = None) -> list[ClusterDescriptor]:
        try:
            if namespace is None:
                resp = self._custom.list_cluster_custom_object(GROUP, VERSION, PLURAL)
            else:
                resp = self._custom.list_namespaced_custom_object(
                    GROUP, VERSION, namespace, PLURAL,
                )
        except Exception as exc:
            raise _wrap(exc, f"list {PLURAL}") from exc
        return [descriptor_from_object(obj) for obj in resp.get("items", [])]

    def find_credential_bundles(
        self, namespace: str, cluster_name: str,
    ) -> list[CredentialBundle]:
        try:
            secrets = self._core.list_namespaced_secret(
                namespace, label_selector=f"{LABEL_CLUSTER_NAME}={cluster_name}",
            )
        except Exception as exc:
            raise _wrap(exc, f"list secrets for {namespace}/{cluster_name}") from exc
        return [bundle_from_secret(s) for s in secrets.items]

    def reload(self) -> None:
        """No-op: every read goes to the API server."""


def descriptor_from_object(obj: dict[str, Any]) -> ClusterDescriptor:
    """Build a descriptor from a ``Kyma`` custom object."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    modules = [m.get("name", "") for m in spec.get("modules") or [] if isinstance(m, dict)]
    return ClusterDescriptor(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        labels=metadata.get("labels") or {},
        annotations=metadata.get("annotations") or {},
        modules=modules,
        generation=metadata.get("generation") or 1,
        deletion_timestamp=metadata.get("deletionTimestamp"),
    )


def bundle_from_secret(secret: Any) -> CredentialBundle:
    """Build a credential bundle from a ``V1Secret``.

    The client returns secret data base64-encoded.
    """
    data = {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}
    return CredentialBundle(
        namespace=secret.metadata.namespace,
        name=secret.metadata.name,
        labels=secret.metadata.labels or {},
        data=data,
    )


def _wrap(exc: Exception, what: str) -> ClusterSourceError:
    status = api_status(exc)
    if status is not None:
        return ClusterSourceError(
            f"K8s API error ({status}) on {what}: {getattr(exc, 'reason', '')}"
        )
    return ClusterSourceError(f"K8s cluster source error on {what}: {exc}")
