"""Kubernetes API client bootstrap.

Configuration is loaded in this order:

1. Explicit kubeconfig path (and optional context)
2. In-cluster service account
3. Default kubeconfig (~/.kube/config)
"""

from __future__ import annotations

from typing import Any

import structlog
from kubernetes import client
from kubernetes import config as k8s_config

from keeper_injector.errors import KubernetesAPIError

logger = structlog.get_logger(__name__)

SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"


def load_core_api(kubeconfig: str | None = None, context: str | None = None) -> Any:
    """Return a ``CoreV1Api`` using the first configuration that loads.

    Args:
        kubeconfig: Explicit kubeconfig file.
        context: Kubeconfig context; None uses the current one.

    Raises:
        KubernetesAPIError: If no configuration can be loaded.
    """
    try:
        if kubeconfig:
            k8s_config.load_kube_config(config_file=kubeconfig, context=context)
            logger.info("kube.kubeconfig_loaded", kubeconfig=kubeconfig, context=context)
        else:
            try:
                k8s_config.load_incluster_config()
                logger.info("kube.incluster_loaded")
            except k8s_config.ConfigException:
                k8s_config.load_kube_config(context=context)
                logger.info("kube.default_kubeconfig_loaded", context=context)
    except (k8s_config.ConfigException, OSError) as e:
        raise KubernetesAPIError("kubeconfig", reason=str(e)) from e
    return client.CoreV1Api()


def current_namespace(default: str = "default") -> str:
    """Return the pod's namespace from the service account mount, else ``default``."""
    try:
        with open(SERVICE_ACCOUNT_NAMESPACE_FILE, encoding="utf-8") as handle:
            namespace = handle.read().strip()
    except OSError:
        return default
    return namespace or default


__all__ = ["current_namespace", "load_core_api"]
