from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import V1ObjectMeta

from configmapmanager.src.kube import KubeResourceStore
from configmapmanager.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_ROLLOUT_ANNOTATION_KEY = "configmapmanager/restartedAt"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Used as the restart annotation value so Kubernetes sees a template change
    and triggers a rolling update.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _pod_spec(deployment: Any) -> Any:
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    return getattr(template, "spec", None)


def mounts_config_map_volume(deployment: Any, config_map_name: str) -> bool:
    """Return True if a pod template volume is backed by *config_map_name*."""
    for volume in getattr(_pod_spec(deployment), "volumes", None) or []:
        source = getattr(volume, "config_map", None)
        if source is not None and getattr(source, "name", None) == config_map_name:
            return True
    return False


def loads_config_map_env(deployment: Any, config_map_name: str) -> bool:
    """Return True if any container loads *config_map_name* through ``envFrom``."""
    for container in getattr(_pod_spec(deployment), "containers", None) or []:
        for env_from in getattr(container, "env_from", None) or []:
            ref = getattr(env_from, "config_map_ref", None)
            if ref is not None and getattr(ref, "name", None) == config_map_name:
                return True
    return False


def uses_config_map(deployment: Any, config_map_name: str) -> bool:
    return mounts_config_map_volume(deployment, config_map_name) or loads_config_map_env(
        deployment, config_map_name
    )


def set_restart_annotation(deployment: Any, annotation_key: str, timestamp: str) -> None:
    """Write *timestamp* under *annotation_key* on the deployment's pod template.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation causes the ReplicaSet controller to roll new pods.
    """
    template = deployment.spec.template
    if template.metadata is None:
        template.metadata = V1ObjectMeta()
    metadata = template.metadata
    if metadata.annotations is None:
        metadata.annotations = {}
    metadata.annotations[annotation_key] = timestamp


class RolloutNotifier:
    """Forces a rolling update of every Deployment that consumes a ConfigMap.

    Discovery lists all Deployments in the namespace and matches in memory,
    which is fine while namespaces hold a handful of workloads.  Deployments
    are updated one at a time in listing order and the first failure is
    raised, leaving later Deployments for the next reconciliation pass.

    The notifier only triggers rollouts; it never waits for them to finish.
    """

    def __init__(
        self,
        store: KubeResourceStore,
        annotation_key: str = DEFAULT_ROLLOUT_ANNOTATION_KEY,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.annotation_key = annotation_key
        self.now_fn = now_fn

    def notify(
        self, namespace: str, config_map_name: str, timeout: float | None = None
    ) -> list[str]:
        """Restart Deployments in *namespace* using *config_map_name*; return their names."""
        deployments = self.store.list_deployments(namespace, timeout=timeout)
        timestamp = self.now_fn()
        restarted: list[str] = []

        for deployment in deployments:
            if not uses_config_map(deployment, config_map_name):
                continue
            deployment_name = deployment.metadata.name
            set_restart_annotation(deployment, self.annotation_key, timestamp)
            self.store.update_deployment(deployment, timeout=timeout)
            restarted.append(deployment_name)
            METRICS.workload_restarts_total.inc()
            LOGGER.info(
                "Triggered rolling restart for deployment %s/%s after ConfigMap %s changed",
                namespace,
                deployment_name,
                config_map_name,
            )

        if not restarted:
            LOGGER.debug(
                "ConfigMap %s/%s changed, but no deployments reference it",
                namespace,
                config_map_name,
            )
        return restarted
