from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

ListFunction = Callable[..., Any]


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    networking: NetworkingV1Api
    custom: CustomObjectsApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients for every kind the controller watches."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        networking=client.NetworkingV1Api(),
        custom=client.CustomObjectsApi(),
    )


def list_function(
    clients: KubeClients, group: str, version: str, plural: str
) -> ListFunction | None:
    """Return a cluster-wide list function usable with ``watch.Watch().stream``.

    Built-in kinds map to their typed ``list_*_for_all_namespaces`` call, any
    other group is treated as a custom resource.  Returns ``None`` for a
    built-in kind the controller has no client for.
    """
    typed: dict[tuple[str, str, str], ListFunction] = {
        ("", "v1", "configmaps"): clients.core.list_config_map_for_all_namespaces,
        ("", "v1", "secrets"): clients.core.list_secret_for_all_namespaces,
        ("", "v1", "services"): clients.core.list_service_for_all_namespaces,
        ("apps", "v1", "deployments"): clients.apps.list_deployment_for_all_namespaces,
        ("networking.k8s.io", "v1", "networkpolicies"): (
            clients.networking.list_network_policy_for_all_namespaces
        ),
    }
    key = (group, version, plural)
    if key in typed:
        return typed[key]
    if group in {"", "apps", "networking.k8s.io"}:
        return None

    # A plain closure keeps watch.Watch from deserializing custom objects.
    def list_custom_objects(**kwargs: Any) -> Any:
        return clients.custom.list_cluster_custom_object(group, version, plural, **kwargs)

    return list_custom_objects
