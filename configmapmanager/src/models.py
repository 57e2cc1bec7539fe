from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from configmapmanager.src.errors import InvalidDesiredStateError

CRD_GROUP = "blacksyrius.ci.com"
CRD_VERSION = "v1"
CRD_PLURAL = "configmapmanagers"
CRD_KIND = "ConfigMapManager"


@dataclass(frozen=True)
class KeyUpdate:
    key: str
    value: str


@dataclass(frozen=True)
class ConfigMapTarget:
    """A ConfigMap name and the ordered key updates it should receive."""

    name: str
    updates: tuple[KeyUpdate, ...] = ()


@dataclass(frozen=True)
class DesiredState:
    """Parsed ``ConfigMapManager`` custom resource.

    ``targets`` keeps declaration order; the reconciler walks it sequentially
    so a ConfigMap listed twice receives the later entry's values last.
    """

    namespace: str
    name: str
    targets: tuple[ConfigMapTarget, ...] = field(default_factory=tuple)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @classmethod
    def from_resource(cls, obj: Mapping[str, Any]) -> DesiredState:
        """Build a :class:`DesiredState` from a custom-object dictionary.

        The Kubernetes ``CustomObjectsApi`` returns plain dicts shaped like::

            {"metadata": {"name": ..., "namespace": ...},
             "spec": {"configMaps": [{"name": ..., "updates": [
                 {"key": ..., "newValue": ...}]}]}}

        Raises :class:`InvalidDesiredStateError` when a required field is
        missing, since retrying will not repair a malformed object.
        """
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not isinstance(name, str) or not name:
            raise InvalidDesiredStateError("ConfigMapManager is missing metadata.name")
        if not isinstance(namespace, str) or not namespace:
            raise InvalidDesiredStateError(
                f"ConfigMapManager {name} is missing metadata.namespace"
            )

        spec = obj.get("spec") or {}
        raw_targets = spec.get("configMaps") or []
        if not isinstance(raw_targets, list):
            raise InvalidDesiredStateError(
                f"ConfigMapManager {namespace}/{name}: spec.configMaps must be a list"
            )

        targets = tuple(
            _parse_target(raw, namespace=namespace, owner=name, index=index)
            for index, raw in enumerate(raw_targets)
        )
        return cls(namespace=namespace, name=name, targets=targets)


def _parse_target(raw: Any, namespace: str, owner: str, index: int) -> ConfigMapTarget:
    where = f"ConfigMapManager {namespace}/{owner}: spec.configMaps[{index}]"
    if not isinstance(raw, Mapping):
        raise InvalidDesiredStateError(f"{where} must be an object")

    target_name = raw.get("name")
    if not isinstance(target_name, str) or not target_name:
        raise InvalidDesiredStateError(f"{where}.name must be a non-empty string")

    raw_updates = raw.get("updates") or []
    if not isinstance(raw_updates, list):
        raise InvalidDesiredStateError(f"{where}.updates must be a list")

    updates: list[KeyUpdate] = []
    for update_index, update in enumerate(raw_updates):
        if not isinstance(update, Mapping):
            raise InvalidDesiredStateError(f"{where}.updates[{update_index}] must be an object")
        key = update.get("key")
        if not isinstance(key, str) or not key:
            raise InvalidDesiredStateError(
                f"{where}.updates[{update_index}].key must be a non-empty string"
            )
        value = update.get("newValue")
        updates.append(KeyUpdate(key=key, value="" if value is None else str(value)))

    return ConfigMapTarget(name=target_name, updates=tuple(updates))
