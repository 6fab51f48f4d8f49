"""Shared helpers for the optional ``kubernetes`` client.

Requires: ``pip install cluster-registrar[k8s]``
"""

from __future__ import annotations

from typing import Any


def check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for the Kubernetes backends. "
            "Install it with: pip install cluster-registrar[k8s]"
        ) from None


def build_api_client(
    kubeconfig: str | None = None,
    context: str | None = None,
    in_cluster: bool = False,
) -> Any:
    """Build a kubernetes ApiClient from in-cluster or kubeconfig settings."""
    from kubernetes import client, config

    if in_cluster:
        config.load_incluster_config()
        return client.ApiClient()

    kwargs: dict[str, Any] = {}
    if kubeconfig:
        kwargs["config_file"] = kubeconfig
    if context:
        kwargs["context"] = context
    config.load_kube_config(**kwargs)
    return client.ApiClient()


def api_status(exc: BaseException) -> int | None:
    """HTTP status of a kubernetes ApiException, or None for other errors.

    Detects the exception by class name so callers need not import it.
    """
    if type(exc).__name__ == "ApiException":
        return getattr(exc, "status", None)
    return None
