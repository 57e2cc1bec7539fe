from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from configmapmanager.src.rollout import DEFAULT_ROLLOUT_ANNOTATION_KEY


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace holding ConfigMapManager objects; empty
                         means every namespace.
        rollout_annotation_key: Pod template annotation rewritten to restart
                                dependent deployments.
        request_timeout_seconds: Timeout passed to every Kubernetes API call.
        watch_timeout_seconds: Upper bound for a single watch stream.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        log_level: Root logger level name.
    """

    watch_namespace: str = ""
    rollout_annotation_key: str = DEFAULT_ROLLOUT_ANNOTATION_KEY
    request_timeout_seconds: int = 30
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``          — namespace to watch (all namespaces).
        ``ROLLOUT_ANNOTATION_KEY``   — restart annotation (``configmapmanager/restartedAt``).
        ``REQUEST_TIMEOUT_SECONDS``  — per-call API timeout (``30``).
        ``WATCH_TIMEOUT_SECONDS``    — watch stream timeout (``30``).
        ``HEALTH_PORT``              — health server port (``8080``).
        ``LOG_LEVEL``                — log level (``INFO``).
    """
    values = env if env is not None else os.environ

    rollout_annotation_key = values.get(
        "ROLLOUT_ANNOTATION_KEY", DEFAULT_ROLLOUT_ANNOTATION_KEY
    ).strip()
    if not rollout_annotation_key:
        raise ConfigError("ROLLOUT_ANNOTATION_KEY must be a non-empty string")

    return ControllerSettings(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip(),
        rollout_annotation_key=rollout_annotation_key,
        request_timeout_seconds=env_int(values, "REQUEST_TIMEOUT_SECONDS", 30, minimum=1),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
