"""Tests for the model slot and request model resolution."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from inferra.core.registry import ModelRegistry
from inferra.core.settings import ModelSettings
from inferra.core.storage import InferraPaths, KeyValueStore
from inferra.daemon.loaded_models import ModelSlot
from inferra.daemon.resolution import (
    ApiKeyMissingError,
    ModelLoadError,
    ModelNotFoundError,
    ModelNotLoadedError,
    ModelResolver,
    OnDeviceUnavailableError,
    RemoteModelsDisabledError,
)
from inferra.engine import EngineError, TokenCallback
from inferra.engine.mock import MockEngine
from inferra.engine.on_device import OnDeviceProvider
from inferra.engine.remote import RemoteProviders


class _CountingEngine(MockEngine):
    def __init__(self) -> None:
        super().__init__()
        self.loads: list[tuple[str, str | None]] = []

    def load_model(self, path: str, projector_path: str | None = None) -> None:
        self.loads.append((path, projector_path))
        super().load_model(path, projector_path)


class _BrokenEngine(MockEngine):
    def load_model(self, path: str, projector_path: str | None = None) -> None:
        raise EngineError("unsupported architecture")


def _write_model(path: Path, content: bytes = b"GGUF") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def _resolver(
    paths: InferraPaths,
    engine: MockEngine | None = None,
    on_device: OnDeviceProvider | None = None,
) -> tuple[ModelResolver, ModelSlot, RemoteProviders]:
    store = KeyValueStore(paths.state_path)
    slot = ModelSlot(engine or _CountingEngine())
    remote = RemoteProviders(store)
    resolver = ModelResolver(
        ModelRegistry(paths, store),
        slot,
        remote,
        on_device or OnDeviceProvider(),
    )
    return resolver, slot, remote


def test_slot_load_is_idempotent_and_reload_reloads(paths) -> None:
    model = _write_model(paths.model_path("demo.gguf"))
    engine = _CountingEngine()
    slot = ModelSlot(engine)

    first = slot.load("demo.gguf", str(model))
    second = slot.load("demo.gguf", str(model))
    reloaded = slot.reload()

    assert first is second
    assert reloaded.path == str(model)
    assert engine.loads == [(str(model), None), (str(model), None)]


def test_slot_tracks_engine_state(paths) -> None:
    model = _write_model(paths.model_path("demo.gguf"))
    engine = MockEngine()
    slot = ModelSlot(engine)
    assert slot.current() is None

    engine.load_model(str(model))
    adopted = slot.current()
    assert adopted is not None
    assert adopted.name == "demo.gguf"

    engine.unload_model()
    assert slot.current() is None
    assert slot.unload() is None
    with pytest.raises(LookupError):
        slot.reload()


def test_resolve_without_identifier_requires_loaded_model(paths) -> None:
    resolver, _slot, _remote = _resolver(paths)

    with pytest.raises(ModelNotLoadedError) as exc_info:
        resolver.ensure_model_loaded(None)

    assert exc_info.value.status == 503
    assert exc_info.value.code == "model_not_loaded"


def test_resolve_loads_stored_model_and_reuses_slot(paths) -> None:
    model = _write_model(paths.model_path("demo.gguf"))
    engine = _CountingEngine()
    resolver, slot, _remote = _resolver(paths, engine)

    resolved = resolver.ensure_model_loaded("demo.gguf")
    current = resolver.ensure_model_loaded("  ")

    assert resolved.is_local
    assert resolved.path == str(model)
    assert current.name == "demo.gguf"
    assert slot.current() is not None
    assert len(engine.loads) == 1


def test_resolve_attaches_default_projector(paths) -> None:
    _write_model(paths.model_path("SmolVLM-500M-Q8_0.gguf"))
    projector = _write_model(paths.model_path("mmproj-SmolVLM-500M-Q8_0.gguf"))
    engine = _CountingEngine()
    resolver, _slot, _remote = _resolver(paths, engine)

    resolved = resolver.ensure_model_loaded("SmolVLM-500M-Q8_0.gguf")

    assert resolved.projector_path == str(projector)
    assert engine.loads[0][1] == str(projector)


def test_resolve_unknown_model_is_not_found(paths) -> None:
    resolver, _slot, _remote = _resolver(paths)

    with pytest.raises(ModelNotFoundError):
        resolver.ensure_model_loaded("ghost.gguf")


def test_engine_load_failure_maps_to_load_error(paths) -> None:
    _write_model(paths.model_path("demo.gguf"))
    resolver, slot, _remote = _resolver(paths, _BrokenEngine())

    with pytest.raises(ModelLoadError, match="unsupported architecture"):
        resolver.ensure_model_loaded("demo.gguf")

    assert slot.current() is None


def test_remote_tags_require_enablement_and_key(paths, monkeypatch) -> None:
    resolver, _slot, remote = _resolver(paths)

    with pytest.raises(RemoteModelsDisabledError):
        resolver.ensure_model_loaded("gpt-4o")

    remote.set_enabled(True)
    with pytest.raises(ApiKeyMissingError):
        resolver.ensure_model_loaded("gpt-4o")

    monkeypatch.setenv("INFERRA_CHATGPT_API_KEY", "sk-env")
    resolved = resolver.ensure_model_loaded("gpt-4o")
    assert resolved.provider == "chatgpt"
    assert not resolved.is_local


def test_stored_model_wins_over_provider_prefix(paths) -> None:
    model = _write_model(paths.model_path("gpt-local.gguf"))
    resolver, _slot, _remote = _resolver(paths)

    resolved = resolver.ensure_model_loaded("gpt-local.gguf")

    assert resolved.is_local
    assert resolved.path == str(model)


def test_on_device_tag_requires_ready_provider(paths) -> None:
    resolver, _slot, _remote = _resolver(paths)
    with pytest.raises(OnDeviceUnavailableError):
        resolver.ensure_model_loaded("apple-foundation")

    ready = OnDeviceProvider(generator=lambda messages, on_token, settings: "ok")
    resolver, _slot, _remote = _resolver(paths, on_device=ready)
    resolved = resolver.ensure_model_loaded("Apple-Foundation")

    assert resolved.provider == "apple-foundation"
    assert resolver.generate(resolved, [{"role": "user", "content": "x"}]) == "ok"


def test_generate_reloads_model_swapped_out_by_another_request(paths) -> None:
    first = _write_model(paths.model_path("first.gguf"))
    second = _write_model(paths.model_path("second.gguf"))
    engine = _CountingEngine()
    resolver, _slot, _remote = _resolver(paths, engine)

    resolved = resolver.ensure_model_loaded("first.gguf")
    resolver.ensure_model_loaded("second.gguf")
    text = resolver.generate(resolved, [{"role": "user", "content": "hello again"}])

    assert text == "hello again"
    assert [path for path, _projector in engine.loads] == [str(first), str(second), str(first)]


class _GatedEngine(_CountingEngine):
    def __init__(self) -> None:
        super().__init__()
        self.entered: list[str] = []
        self.first_entered = threading.Event()
        self.release_first = threading.Event()

    def generate_response(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        prompt = messages[-1]["content"]
        self.entered.append(prompt)
        if len(self.entered) == 1:
            self.first_entered.set()
            assert self.release_first.wait(timeout=5)
        return super().generate_response(messages, on_token, settings)


def test_concurrent_generations_queue_behind_the_running_one(paths) -> None:
    first = _write_model(paths.model_path("first.gguf"))
    second = _write_model(paths.model_path("second.gguf"))
    engine = _GatedEngine()
    slot = ModelSlot(engine)
    results: dict[str, str] = {}

    def _run(name: str, path: Path, prompt: str) -> None:
        messages = [{"role": "user", "content": prompt}]
        results[prompt] = slot.generate(name, str(path), None, messages)

    request_a = threading.Thread(target=_run, args=("first.gguf", first, "alpha"))
    request_b = threading.Thread(target=_run, args=("second.gguf", second, "beta"))
    request_a.start()
    assert engine.first_entered.wait(timeout=5)
    request_b.start()
    request_b.join(timeout=0.2)

    assert request_b.is_alive()
    assert engine.entered == ["alpha"]
    assert [path for path, _projector in engine.loads] == [str(first)]

    engine.release_first.set()
    request_a.join(timeout=5)
    request_b.join(timeout=5)

    assert engine.entered == ["alpha", "beta"]
    assert results == {"alpha": "alpha", "beta": "beta"}
    assert [path for path, _projector in engine.loads] == [str(first), str(second)]
