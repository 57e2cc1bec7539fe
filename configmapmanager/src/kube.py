from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1ConfigMap,
    V1Deployment,
    V1ObjectMeta,
)
from kubernetes.config.config_exception import ConfigException

from configmapmanager.src.errors import ConflictError, NotFoundError, StoreError
from configmapmanager.src.models import CRD_GROUP, CRD_KIND, CRD_PLURAL, CRD_VERSION

LOGGER = logging.getLogger(__name__)


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


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients for the active configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def translate_api_exception(
    exc: ApiException, kind: str, namespace: str, name: str | None = None
) -> StoreError:
    """Map an ``ApiException`` onto the store error taxonomy."""
    error_class: type[StoreError] = StoreError
    if exc.status == 404:
        error_class = NotFoundError
    elif exc.status == 409:
        error_class = ConflictError
    return error_class(
        kind=kind,
        namespace=namespace,
        name=name,
        status=exc.status,
        reason=exc.reason,
    )


def _timeout_kwargs(timeout: float | None) -> dict[str, Any]:
    if timeout is None:
        return {}
    return {"_request_timeout": timeout}


class KubeResourceStore:
    """Get/list/create/update primitives over the Kubernetes API.

    Every call is synchronous and takes an optional ``timeout`` supplied by
    the caller, forwarded as the client's ``_request_timeout``.  API failures
    are raised as :class:`StoreError` subclasses carrying the resource
    identity; 404 becomes :class:`NotFoundError` and 409 becomes
    :class:`ConflictError`.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.custom_api = custom_api

    # ConfigMaps

    def get_config_map(
        self, namespace: str, name: str, timeout: float | None = None
    ) -> V1ConfigMap:
        try:
            return self.core_api.read_namespaced_config_map(
                name=name, namespace=namespace, **_timeout_kwargs(timeout)
            )
        except ApiException as exc:
            raise translate_api_exception(exc, "ConfigMap", namespace, name) from exc

    def create_config_map(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        timeout: float | None = None,
    ) -> V1ConfigMap:
        body = V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=V1ObjectMeta(name=name, namespace=namespace),
            data=dict(data),
        )
        try:
            return self.core_api.create_namespaced_config_map(
                namespace=namespace, body=body, **_timeout_kwargs(timeout)
            )
        except ApiException as exc:
            raise translate_api_exception(exc, "ConfigMap", namespace, name) from exc

    def update_config_map(
        self, config_map: V1ConfigMap, timeout: float | None = None
    ) -> V1ConfigMap:
        """Replace a ConfigMap, keeping its ``resourceVersion`` for optimistic concurrency."""
        namespace = config_map.metadata.namespace
        name = config_map.metadata.name
        try:
            return self.core_api.replace_namespaced_config_map(
                name=name, namespace=namespace, body=config_map, **_timeout_kwargs(timeout)
            )
        except ApiException as exc:
            raise translate_api_exception(exc, "ConfigMap", namespace, name) from exc

    # Deployments

    def list_deployments(
        self, namespace: str, timeout: float | None = None
    ) -> list[V1Deployment]:
        try:
            deployments = self.apps_api.list_namespaced_deployment(
                namespace=namespace, **_timeout_kwargs(timeout)
            )
        except ApiException as exc:
            raise translate_api_exception(exc, "Deployment", namespace) from exc
        return list(getattr(deployments, "items", None) or [])

    def update_deployment(
        self, deployment: V1Deployment, timeout: float | None = None
    ) -> V1Deployment:
        namespace = deployment.metadata.namespace
        name = deployment.metadata.name
        try:
            return self.apps_api.replace_namespaced_deployment(
                name=name, namespace=namespace, body=deployment, **_timeout_kwargs(timeout)
            )
        except ApiException as exc:
            raise translate_api_exception(exc, "Deployment", namespace, name) from exc

    # ConfigMapManager custom resources

    def get_desired_state(
        self, namespace: str, name: str, timeout: float | None = None
    ) -> dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
                **_timeout_kwargs(timeout),
            )
        except ApiException as exc:
            raise translate_api_exception(exc, CRD_KIND, namespace, name) from exc

    def desired_state_list_call(
        self, namespace: str | None
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and its arguments for ConfigMapManager objects.

        An empty or ``None`` *namespace* selects the cluster-wide listing.
        The pair is shaped for both a direct call and ``watch.Watch().stream``.
        """
        kwargs: dict[str, Any] = {
            "group": CRD_GROUP,
            "version": CRD_VERSION,
            "plural": CRD_PLURAL,
        }
        if namespace:
            kwargs["namespace"] = namespace
            return self.custom_api.list_namespaced_custom_object, kwargs
        return self.custom_api.list_cluster_custom_object, kwargs

    def list_desired_states(
        self, namespace: str | None, timeout: float | None = None
    ) -> dict[str, Any]:
        list_fn, kwargs = self.desired_state_list_call(namespace)
        try:
            return list_fn(**kwargs, **_timeout_kwargs(timeout))
        except ApiException as exc:
            raise translate_api_exception(exc, CRD_KIND, namespace or "*") from exc
