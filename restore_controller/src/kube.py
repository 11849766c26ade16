from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from restore_controller.src.models import GROUP, RESTORE_PLURAL, VERSION, Restore

LOGGER = logging.getLogger(__name__)

_SERIALIZER = ApiClient()


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


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def to_plain_dict(obj: Any) -> dict[str, Any]:
    """Return the JSON wire form of an API object.

    Custom objects already arrive as dicts; typed models such as ``V1Pod``
    are serialised with camelCase keys so every cache holds the same shape.
    """
    if isinstance(obj, dict):
        return obj
    return _SERIALIZER.sanitize_for_serialization(obj)


def custom_object_lister(
    custom_api: CustomObjectsApi, plural: str, namespace: str
) -> Callable[..., Any]:
    """Return a list function for a ``mysql.oracle.com`` kind, usable with ``watch.Watch``."""
    return functools.partial(
        custom_api.list_namespaced_custom_object,
        GROUP,
        VERSION,
        namespace,
        plural,
    )


def pod_lister(core_api: CoreV1Api, namespace: str) -> Callable[..., Any]:
    return functools.partial(core_api.list_namespaced_pod, namespace)


class RestoreClient:
    """Typed write client for ``mysqlrestores``.

    ``update`` replaces the whole object.  The API server compares the
    ``resourceVersion`` we send and answers ``409 Conflict`` when someone
    else wrote first; the resulting :class:`ApiException` is left to the
    caller, which retries.
    """

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def get(self, namespace: str, name: str) -> Restore:
        obj = self.custom_api.get_namespaced_custom_object(
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=RESTORE_PLURAL,
            name=name,
        )
        return Restore.from_dict(obj)

    def update(self, restore: Restore) -> Restore:
        updated = self.custom_api.replace_namespaced_custom_object(
            group=GROUP,
            version=VERSION,
            namespace=restore.namespace,
            plural=RESTORE_PLURAL,
            name=restore.name,
            body=restore.to_dict(),
        )
        LOGGER.debug("Updated Restore %s", restore.key)
        return Restore.from_dict(updated)
