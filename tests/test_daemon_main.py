"""Tests for inferra-daemon entrypoint configuration parsing."""

from __future__ import annotations

import os

import pytest

import inferra.daemon.main as daemon_main
from inferra.core.config import InferraConfig, ServerDefaults, save_config
from inferra.core.storage import InferraPaths


def _capture_run(monkeypatch) -> dict[str, object]:
    captured: dict[str, object] = {}

    def _fake_run(
        target: str,
        *,
        factory: bool,
        host: str,
        port: int,
        log_level: str,
    ) -> None:
        captured["target"] = target
        captured["factory"] = factory
        captured["host"] = host
        captured["port"] = port
        captured["log_level"] = log_level
        captured["binding"] = os.environ.get("INFERRA_EFFECTIVE_HOST_BINDING")

    monkeypatch.setattr("inferra.daemon.main.uvicorn.run", _fake_run)
    return captured


def test_main_parses_inferra_host_host_port(monkeypatch) -> None:
    captured = _capture_run(monkeypatch)
    monkeypatch.setenv("INFERRA_HOST", "0.0.0.0:11500")

    assert daemon_main.main() == 0
    assert captured == {
        "target": "inferra.daemon.app:create_app",
        "factory": True,
        "host": "0.0.0.0",
        "port": 11500,
        "log_level": "info",
        "binding": "0.0.0.0:11500",
    }
    assert "INFERRA_EFFECTIVE_HOST_BINDING" not in os.environ


def test_main_uses_default_bind_when_host_and_port_unset(monkeypatch) -> None:
    captured = _capture_run(monkeypatch)

    assert daemon_main.main() == 0
    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 11440


def test_main_prefers_inferra_host_over_port(monkeypatch) -> None:
    captured = _capture_run(monkeypatch)
    monkeypatch.setenv("INFERRA_HOST", "0.0.0.0:11500")
    monkeypatch.setenv("INFERRA_PORT", "12500")

    assert daemon_main.main() == 0
    assert captured["host"] == "0.0.0.0"
    assert captured["port"] == 11500


def test_main_uses_inferra_port_and_log_level(monkeypatch) -> None:
    captured = _capture_run(monkeypatch)
    monkeypatch.setenv("INFERRA_PORT", "12500")
    monkeypatch.setenv("INFERRA_LOG_LEVEL", "debug")

    assert daemon_main.main() == 0
    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 12500
    assert captured["log_level"] == "debug"


def test_main_restores_previous_binding(monkeypatch) -> None:
    _capture_run(monkeypatch)
    monkeypatch.setenv("INFERRA_EFFECTIVE_HOST_BINDING", "outer:1")

    daemon_main.main()

    assert os.environ["INFERRA_EFFECTIVE_HOST_BINDING"] == "outer:1"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("INFERRA_HOST", "127.0.0.1"),
        ("INFERRA_HOST", "127.0.0.1:http"),
        ("INFERRA_HOST", ":11440"),
        ("INFERRA_PORT", "0"),
        ("INFERRA_PORT", "70000"),
    ],
)
def test_main_raises_for_invalid_bind(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=f"invalid {name}"):
        daemon_main.main()


def test_main_falls_back_to_configured_bind(monkeypatch) -> None:
    captured = _capture_run(monkeypatch)
    save_config(
        InferraPaths.default(),
        InferraConfig(server=ServerDefaults(host="0.0.0.0", port=12100)),
    )

    assert daemon_main.main() == 0
    assert captured["host"] == "0.0.0.0"
    assert captured["port"] == 12100
    assert captured["binding"] == "0.0.0.0:12100"


def test_inferra_port_overrides_configured_port_but_keeps_host(monkeypatch) -> None:
    captured = _capture_run(monkeypatch)
    save_config(
        InferraPaths.default(),
        InferraConfig(server=ServerDefaults(host="0.0.0.0", port=12100)),
    )
    monkeypatch.setenv("INFERRA_PORT", "12500")

    assert daemon_main.main() == 0
    assert (captured["host"], captured["port"]) == ("0.0.0.0", 12500)


def test_resolve_bind_uses_defaults_when_config_is_invalid(tmp_path) -> None:
    paths = InferraPaths(base_dir=tmp_path / "broken")
    paths.config_path.parent.mkdir(parents=True, exist_ok=True)
    paths.config_path.write_text("{not json", encoding="utf-8")

    assert daemon_main.resolve_bind(paths) == ("127.0.0.1", 11440)
