from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from configmapmanager.src.config import ControllerSettings
from configmapmanager.src.errors import (
    ConflictError,
    InvalidDesiredStateError,
    NotFoundError,
    StoreError,
)
from configmapmanager.src.kube import KubeResourceStore
from configmapmanager.src.metrics import METRICS
from configmapmanager.src.models import DesiredState
from configmapmanager.src.reconciler import ConfigMapManagerReconciler, ReconcileResult
from configmapmanager.src.rollout import RolloutNotifier

_AUTH_DENIED = {401, 403}
MAX_REQUEUE_DELAY_SECONDS = 30.0


def _object_key(obj: Any) -> tuple[str, str] | None:
    if not isinstance(obj, Mapping):
        return None
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return (namespace, name)


def _resource_version(obj: Any) -> str | None:
    if not isinstance(obj, Mapping):
        return None
    return (obj.get("metadata") or {}).get("resourceVersion")


class ConfigMapManagerController:
    """Watches ConfigMapManager objects and drives reconciliation passes.

    The reconciler itself never retries.  This class is the scheduler that
    re-invokes it: a pass that fails with a :class:`ConflictError` or any
    other error is requeued by ``(namespace, name)`` with bounded exponential
    backoff (1 s doubling to 30 s).  A successful pass, a deletion, or a
    not-found lookup clears the key's retry state.

    Key internal state:
        ``_pending_requeues``
            Maps ``(namespace, name)`` to the ``time.monotonic()`` timestamp
            at which the key should be reconciled again.
        ``_requeue_attempts``
            Consecutive failure count per key, used for the backoff delay.
    """

    def __init__(
        self,
        store: KubeResourceStore,
        reconciler: ConfigMapManagerReconciler,
        namespace: str = "",
        request_timeout_seconds: float | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.namespace = namespace
        self.request_timeout_seconds = request_timeout_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._pending_requeues: dict[tuple[str, str], float] = {}
        self._requeue_attempts: dict[tuple[str, str], int] = {}
        METRICS.pending_requeues.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    # Requeue bookkeeping

    def _schedule_requeue(self, key: tuple[str, str], reason: str) -> float:
        attempt = self._requeue_attempts.get(key, 0) + 1
        self._requeue_attempts[key] = attempt
        delay_seconds = min(MAX_REQUEUE_DELAY_SECONDS, float(2 ** (attempt - 1)))
        self._pending_requeues[key] = time.monotonic() + delay_seconds
        METRICS.pending_requeues.set(len(self._pending_requeues))
        METRICS.requeues_total.labels(reason=reason).inc()
        self.logger.info(
            "Requeued ConfigMapManager %s/%s (attempt %d) in %.1fs",
            key[0],
            key[1],
            attempt,
            delay_seconds,
        )
        return delay_seconds

    def _forget(self, key: tuple[str, str]) -> None:
        self._pending_requeues.pop(key, None)
        self._requeue_attempts.pop(key, None)
        METRICS.pending_requeues.set(len(self._pending_requeues))

    def _drain_pending_requeues(self, now_monotonic: float) -> None:
        due = [key for key, due_at in self._pending_requeues.items() if due_at <= now_monotonic]
        for key in due:
            self._pending_requeues.pop(key, None)
            METRICS.pending_requeues.set(len(self._pending_requeues))
            self.reconcile_key(namespace=key[0], name=key[1])

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, shortened so due requeues are not delayed."""
        if not self._pending_requeues:
            return self.watch_timeout_seconds

        nearest_due = min(self._pending_requeues.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    # Reconciliation entry points

    def reconcile_key(self, namespace: str, name: str) -> ReconcileResult | None:
        """Read a ConfigMapManager by key and reconcile it.

        A missing object means it was deleted after the trigger fired; there
        is nothing left to converge.
        """
        key = (namespace, name)
        try:
            obj = self.store.get_desired_state(
                namespace, name, timeout=self.request_timeout_seconds
            )
        except NotFoundError:
            self.logger.info("ConfigMapManager %s/%s no longer exists", namespace, name)
            self._forget(key)
            return None
        except Exception:
            self.logger.exception("Failed to read ConfigMapManager %s/%s", namespace, name)
            METRICS.reconciles_total.labels(result="error").inc()
            self._schedule_requeue(key, reason="error")
            return None
        return self.reconcile_object(obj)

    def reconcile_object(self, obj: Any) -> ReconcileResult | None:
        """Run one reconciliation pass for an already-fetched ConfigMapManager."""
        key = _object_key(obj)
        try:
            desired = DesiredState.from_resource(obj)
        except InvalidDesiredStateError as exc:
            self.logger.error("Skipping invalid ConfigMapManager: %s", exc)
            METRICS.reconciles_total.labels(result="invalid").inc()
            if key is not None:
                self._forget(key)
            return None

        key = desired.key
        try:
            with METRICS.reconcile_duration_seconds.time():
                result = self.reconciler.reconcile(
                    desired, timeout=self.request_timeout_seconds
                )
        except ConflictError as exc:
            self.logger.warning(
                "Conflict reconciling ConfigMapManager %s/%s: %s", key[0], key[1], exc
            )
            METRICS.reconciles_total.labels(result="conflict").inc()
            self._schedule_requeue(key, reason="conflict")
            return None
        except StoreError as exc:
            self.logger.error(
                "Reconciling ConfigMapManager %s/%s failed: %s", key[0], key[1], exc
            )
            METRICS.reconciles_total.labels(result="error").inc()
            self._schedule_requeue(key, reason="error")
            return None
        except Exception:
            self.logger.exception(
                "Unexpected error reconciling ConfigMapManager %s/%s", key[0], key[1]
            )
            METRICS.reconciles_total.labels(result="error").inc()
            self._schedule_requeue(key, reason="error")
            return None

        self._forget(key)
        METRICS.reconciles_total.labels(
            result="changed" if result.changed else "unchanged"
        ).inc()
        return result

    def handle_event(self, event_type: str, obj: Any) -> ReconcileResult | None:
        """Process a single ConfigMapManager watch event.

        ``ADDED`` and ``MODIFIED`` trigger a pass keyed by the object's
        namespace and name.  ``DELETED`` drops any pending retry; ConfigMaps
        written earlier are left in place.
        """
        key = _object_key(obj)
        if key is None:
            return None

        if event_type == "DELETED":
            self.logger.info("ConfigMapManager %s/%s deleted", key[0], key[1])
            self._forget(key)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        return self.reconcile_key(namespace=key[0], name=key[1])

    def _reconcile_listing(self, listing: Any) -> str | None:
        """Reconcile every object in a list response and return its resourceVersion."""
        items = listing.get("items") if isinstance(listing, Mapping) else None
        for item in items or []:
            self.reconcile_object(item)
        return _resource_version(listing)

    # Control loop

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> Any:
        return self.store.list_desired_states(
            self.namespace or None, timeout=self.request_timeout_seconds
        )

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch ConfigMapManager objects until shutdown.

        1. Lists all objects, retrying with jittered exponential backoff, and
           reconciles each one.  The controller reports ready afterwards.
        2. Watches from the list's ``resourceVersion`` and reconciles on every
           ``ADDED``/``MODIFIED`` event.
        3. On ``410 Gone`` re-lists and reconciles everything again.
        4. On other errors backs off with jitter, capped at 30 s.
        5. Drains due requeues between events, shortening the watch timeout
           while retries are pending.

        ``401``/``403`` responses are treated as RBAC misconfiguration and end
        the loop instead of retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._reconcile_listing(self._list())
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                break
            except StoreError as exc:
                if exc.status in _AUTH_DENIED:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.error("Initial ConfigMapManager list failed: %s", exc)
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ConfigMapManager list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        list_fn, list_kwargs = self.store.desired_state_list_call(self.namespace or None)
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._drain_pending_requeues(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                timeout_seconds = self._next_watch_timeout_seconds(now_monotonic=time.monotonic())
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    **list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    event_resource_version = _resource_version(obj)
                    if event_resource_version:
                        resource_version = event_resource_version

                    self.handle_event(event_type=str(event.get("type", "")), obj=obj)
                    self._drain_pending_requeues(now_monotonic=time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._reconcile_listing(self._list())
                    except StoreError as relist_exc:
                        if relist_exc.status in _AUTH_DENIED:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.error("Failed to re-list after 410: %s", relist_exc)
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    except Exception:
                        self.logger.exception("Unexpected error re-listing after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in _AUTH_DENIED:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


def build_controller(
    settings: ControllerSettings,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
) -> ConfigMapManagerController:
    """Wire the store, notifier, reconciler and controller from *settings*."""
    store = KubeResourceStore(core_api=core_api, apps_api=apps_api, custom_api=custom_api)
    notifier = RolloutNotifier(store=store, annotation_key=settings.rollout_annotation_key)
    reconciler = ConfigMapManagerReconciler(store=store, notifier=notifier)
    return ConfigMapManagerController(
        store=store,
        reconciler=reconciler,
        namespace=settings.watch_namespace,
        request_timeout_seconds=settings.request_timeout_seconds,
        watch_timeout_seconds=settings.watch_timeout_seconds,
    )
