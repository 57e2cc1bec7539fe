from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from configmapmanager.src.models import KeyUpdate


@dataclass(frozen=True)
class DiffResult:
    """Outcome of merging key updates into observed ConfigMap data."""

    data: dict[str, str]
    changed: bool
    changed_keys: tuple[str, ...] = ()


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce ConfigMap ``data`` into a ``dict[str, str]``.

    ``None`` (no data at all) becomes an empty dict and ``None`` values become
    empty strings.
    """
    if not isinstance(raw_data, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def diff_data(observed: Mapping[str, str] | None, updates: Sequence[KeyUpdate]) -> DiffResult:
    """Merge *updates* into *observed* and report whether anything changed.

    Updates are applied in order as assignments into a copy of *observed*;
    any assignment that adds a key or alters its current value marks the
    result changed.  A key repeated in *updates* ends with its last value.
    Keys absent from *updates* are carried over untouched.
    """
    merged = normalize_data(observed)
    changed_keys: list[str] = []
    for update in updates:
        if update.key in merged and merged[update.key] == update.value:
            continue
        merged[update.key] = update.value
        if update.key not in changed_keys:
            changed_keys.append(update.key)

    return DiffResult(data=merged, changed=bool(changed_keys), changed_keys=tuple(changed_keys))
