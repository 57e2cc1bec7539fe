from __future__ import annotations

import pytest

from configmapmanager.src.config import ConfigError, ControllerSettings, env_int, load_settings


def test_load_settings_defaults() -> None:
    settings = load_settings({})

    assert settings == ControllerSettings()
    assert settings.watch_namespace == ""
    assert settings.rollout_annotation_key == "configmapmanager/restartedAt"
    assert settings.request_timeout_seconds == 30
    assert settings.health_port == 8080


def test_load_settings_custom_values() -> None:
    settings = load_settings(
        {
            "WATCH_NAMESPACE": " team-a ",
            "ROLLOUT_ANNOTATION_KEY": "example.com/restartedAt",
            "REQUEST_TIMEOUT_SECONDS": "5",
            "WATCH_TIMEOUT_SECONDS": "60",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
        }
    )

    assert settings.watch_namespace == "team-a"
    assert settings.rollout_annotation_key == "example.com/restartedAt"
    assert settings.request_timeout_seconds == 5
    assert settings.watch_timeout_seconds == 60
    assert settings.health_port == 9090
    assert settings.log_level == "DEBUG"


def test_load_settings_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCH_NAMESPACE", "from-env")

    assert load_settings().watch_namespace == "from-env"


def test_load_settings_rejects_blank_annotation_key() -> None:
    with pytest.raises(ConfigError, match="ROLLOUT_ANNOTATION_KEY"):
        load_settings({"ROLLOUT_ANNOTATION_KEY": "  "})


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("REQUEST_TIMEOUT_SECONDS", "0"),
        ("WATCH_TIMEOUT_SECONDS", "abc"),
        ("HEALTH_PORT", "70000"),
    ],
)
def test_load_settings_rejects_invalid_integers(name: str, value: str) -> None:
    with pytest.raises(ConfigError, match=name):
        load_settings({name: value})


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int({}, "X", 42) == 42


def test_env_int_raises_on_empty_string() -> None:
    with pytest.raises(ConfigError, match="must be an integer"):
        env_int({"X": ""}, "X", 1)


def test_env_int_parses_negative_without_minimum() -> None:
    assert env_int({"X": "-3"}, "X", 1) == -3


def test_env_int_enforces_bounds() -> None:
    with pytest.raises(ConfigError, match=">= 1"):
        env_int({"X": "0"}, "X", 5, minimum=1)
    with pytest.raises(ConfigError, match="<= 10"):
        env_int({"X": "11"}, "X", 5, maximum=10)
