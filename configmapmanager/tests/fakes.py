from __future__ import annotations

import copy
from types import SimpleNamespace
from typing import Any

from kubernetes.client import (
    ApiException,
    V1ConfigMap,
    V1ConfigMapEnvSource,
    V1ConfigMapVolumeSource,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvFromSource,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Volume,
)

NAMESPACE = "default"


def make_deployment(
    name: str,
    namespace: str = NAMESPACE,
    volume_config_maps: list[str] | None = None,
    env_from_config_maps: list[str] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1Deployment:
    volumes = [
        V1Volume(name=f"cfg-{index}", config_map=V1ConfigMapVolumeSource(name=cm_name))
        for index, cm_name in enumerate(volume_config_maps or [])
    ]
    env_from = [
        V1EnvFromSource(config_map_ref=V1ConfigMapEnvSource(name=cm_name))
        for cm_name in env_from_config_maps or []
    ]
    return V1Deployment(
        metadata=V1ObjectMeta(name=name, namespace=namespace, resource_version="1"),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"app": name}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={"app": name}, annotations=annotations),
                spec=V1PodSpec(
                    containers=[V1Container(name="app", image="nginx", env_from=env_from or None)],
                    volumes=volumes or None,
                ),
            ),
        ),
    )


def make_manager(
    name: str = "test-configmapmanager",
    namespace: str = NAMESPACE,
    config_maps: list[dict[str, Any]] | None = None,
    resource_version: str = "1",
) -> dict[str, Any]:
    return {
        "apiVersion": "blacksyrius.ci.com/v1",
        "kind": "ConfigMapManager",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
        },
        "spec": {"configMaps": config_maps or []},
    }


class FakeCoreApi:
    """In-memory ConfigMap API enforcing ``resourceVersion`` on replace."""

    def __init__(self) -> None:
        self.config_maps: dict[tuple[str, str], V1ConfigMap] = {}
        self.read_errors: dict[str, ApiException] = {}
        self.write_errors: dict[str, ApiException] = {}
        self.creates: list[V1ConfigMap] = []
        self.replaces: list[V1ConfigMap] = []
        self.reads: list[str] = []
        self.request_timeouts: list[Any] = []
        self._version = 100

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(
        self, name: str, data: dict[str, str] | None, namespace: str = NAMESPACE
    ) -> V1ConfigMap:
        config_map = V1ConfigMap(
            metadata=V1ObjectMeta(
                name=name, namespace=namespace, resource_version=self._next_version()
            ),
            data=data,
        )
        self.config_maps[(namespace, name)] = config_map
        return config_map

    def data(self, name: str, namespace: str = NAMESPACE) -> dict[str, str] | None:
        return self.config_maps[(namespace, name)].data

    def bump(self, name: str, namespace: str = NAMESPACE) -> None:
        """Simulate an external writer changing the stored object."""
        self.config_maps[(namespace, name)].metadata.resource_version = self._next_version()

    def read_namespaced_config_map(self, name: str, namespace: str, **kwargs: Any) -> V1ConfigMap:
        self.request_timeouts.append(kwargs.get("_request_timeout"))
        self.reads.append(name)
        if name in self.read_errors:
            raise self.read_errors[name]
        stored = self.config_maps.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(stored)

    def create_namespaced_config_map(
        self, namespace: str, body: V1ConfigMap, **kwargs: Any
    ) -> V1ConfigMap:
        self.request_timeouts.append(kwargs.get("_request_timeout"))
        name = body.metadata.name
        if name in self.write_errors:
            raise self.write_errors[name]
        if (namespace, name) in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = copy.deepcopy(body)
        stored.metadata.resource_version = self._next_version()
        self.config_maps[(namespace, name)] = stored
        self.creates.append(copy.deepcopy(stored))
        return copy.deepcopy(stored)

    def replace_namespaced_config_map(
        self, name: str, namespace: str, body: V1ConfigMap, **kwargs: Any
    ) -> V1ConfigMap:
        self.request_timeouts.append(kwargs.get("_request_timeout"))
        if name in self.write_errors:
            raise self.write_errors[name]
        stored = self.config_maps.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != stored.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        replacement = copy.deepcopy(body)
        replacement.metadata.resource_version = self._next_version()
        self.config_maps[(namespace, name)] = replacement
        self.replaces.append(copy.deepcopy(replacement))
        return copy.deepcopy(replacement)


class FakeAppsApi:
    def __init__(self, deployments: list[V1Deployment] | None = None) -> None:
        self.deployments: dict[str, V1Deployment] = {
            d.metadata.name: d for d in deployments or []
        }
        self.fail_names: dict[str, ApiException] = {}
        self.list_error: ApiException | None = None
        self.updates: list[tuple[str, dict[str, str]]] = []
        self.request_timeouts: list[Any] = []

    def restarted_at(self, name: str, key: str = "configmapmanager/restartedAt") -> str | None:
        annotations = self.deployments[name].spec.template.metadata.annotations or {}
        return annotations.get(key)

    def list_namespaced_deployment(self, namespace: str, **kwargs: Any) -> SimpleNamespace:
        self.request_timeouts.append(kwargs.get("_request_timeout"))
        if self.list_error is not None:
            raise self.list_error
        items = [
            copy.deepcopy(d)
            for d in self.deployments.values()
            if d.metadata.namespace == namespace
        ]
        return SimpleNamespace(items=items)

    def replace_namespaced_deployment(
        self, name: str, namespace: str, body: V1Deployment, **kwargs: Any
    ) -> V1Deployment:
        self.request_timeouts.append(kwargs.get("_request_timeout"))
        if name in self.fail_names:
            raise self.fail_names[name]
        self.deployments[name] = copy.deepcopy(body)
        annotations = dict(body.spec.template.metadata.annotations or {})
        self.updates.append((name, annotations))
        return body


class FakeCustomApi:
    def __init__(self, objects: list[dict[str, Any]] | None = None) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        for obj in objects or []:
            self.put(obj)
        self.get_errors: dict[str, ApiException] = {}
        self.list_error: ApiException | None = None
        self.list_resource_version = "10"
        self.list_calls: list[dict[str, Any]] = []

    def put(self, obj: dict[str, Any]) -> None:
        metadata = obj["metadata"]
        self.objects[(metadata["namespace"], metadata["name"])] = obj

    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str, **kwargs: Any
    ) -> dict[str, Any]:
        if name in self.get_errors:
            raise self.get_errors[name]
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def _listing(self, namespace: str | None) -> dict[str, Any]:
        if self.list_error is not None:
            raise self.list_error
        items = [
            copy.deepcopy(obj)
            for (obj_namespace, _), obj in self.objects.items()
            if namespace is None or obj_namespace == namespace
        ]
        return {"metadata": {"resourceVersion": self.list_resource_version}, "items": items}

    def list_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, **kwargs: Any
    ) -> dict[str, Any]:
        self.list_calls.append({"namespace": namespace, **kwargs})
        return self._listing(namespace)

    def list_cluster_custom_object(
        self, group: str, version: str, plural: str, **kwargs: Any
    ) -> dict[str, Any]:
        self.list_calls.append({"namespace": None, **kwargs})
        return self._listing(None)
