from __future__ import annotations

import logging
from dataclasses import dataclass

from configmapmanager.src.differ import diff_data
from configmapmanager.src.errors import NotFoundError
from configmapmanager.src.kube import KubeResourceStore
from configmapmanager.src.metrics import METRICS
from configmapmanager.src.models import ConfigMapTarget, DesiredState
from configmapmanager.src.rollout import RolloutNotifier

LOGGER = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class TargetResult:
    """What one reconciliation pass did to a single ConfigMap."""

    config_map: str
    action: str
    changed_keys: tuple[str, ...] = ()
    restarted: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return self.action != ACTION_UNCHANGED


@dataclass(frozen=True)
class ReconcileResult:
    namespace: str
    name: str
    targets: tuple[TargetResult, ...]

    @property
    def changed(self) -> bool:
        return any(target.changed for target in self.targets)


class ConfigMapManagerReconciler:
    """Converges the ConfigMaps declared by a ``ConfigMapManager`` object.

    For each target, in declaration order:

    1. Read the ConfigMap from the object's namespace.
    2. If it does not exist, create it with the requested keys and notify
       dependent Deployments.
    3. If it exists, merge the requested keys.  When nothing differs, stop
       there; otherwise replace the ConfigMap and notify dependents.

    Convergence is merge-only: ConfigMaps are never deleted and keys not named
    in the updates are left alone, so a pass can be repeated safely.

    Any :class:`StoreError` other than the not-found lookup aborts the pass
    and propagates to the caller.  Writes already committed stay committed;
    re-running the pass converges the rest.
    """

    def __init__(self, store: KubeResourceStore, notifier: RolloutNotifier) -> None:
        self.store = store
        self.notifier = notifier

    def reconcile(self, desired: DesiredState, timeout: float | None = None) -> ReconcileResult:
        results = [
            self.converge_target(desired.namespace, target, timeout=timeout)
            for target in desired.targets
        ]
        return ReconcileResult(
            namespace=desired.namespace,
            name=desired.name,
            targets=tuple(results),
        )

    def converge_target(
        self, namespace: str, target: ConfigMapTarget, timeout: float | None = None
    ) -> TargetResult:
        try:
            config_map = self.store.get_config_map(namespace, target.name, timeout=timeout)
        except NotFoundError:
            return self._create(namespace, target, timeout=timeout)

        diff = diff_data(config_map.data, target.updates)
        if not diff.changed:
            LOGGER.debug("ConfigMap %s/%s already converged", namespace, target.name)
            return TargetResult(config_map=target.name, action=ACTION_UNCHANGED)

        config_map.data = diff.data
        self.store.update_config_map(config_map, timeout=timeout)
        METRICS.configmap_writes_total.labels(operation=ACTION_UPDATED).inc()
        LOGGER.info(
            "Updated ConfigMap %s/%s (keys: %s)",
            namespace,
            target.name,
            ", ".join(diff.changed_keys),
        )

        restarted = self.notifier.notify(namespace, target.name, timeout=timeout)
        return TargetResult(
            config_map=target.name,
            action=ACTION_UPDATED,
            changed_keys=diff.changed_keys,
            restarted=tuple(restarted),
        )

    def _create(
        self, namespace: str, target: ConfigMapTarget, timeout: float | None = None
    ) -> TargetResult:
        diff = diff_data(None, target.updates)
        self.store.create_config_map(namespace, target.name, diff.data, timeout=timeout)
        METRICS.configmap_writes_total.labels(operation=ACTION_CREATED).inc()
        LOGGER.info("Created ConfigMap %s/%s", namespace, target.name)

        # A new ConfigMap is a change for consumers even with empty data.
        restarted = self.notifier.notify(namespace, target.name, timeout=timeout)
        return TargetResult(
            config_map=target.name,
            action=ACTION_CREATED,
            changed_keys=diff.changed_keys,
            restarted=tuple(restarted),
        )
