"""HTTP API tests for the inferra daemon."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from inferra.core.config import InferraConfig, save_config
from inferra.core.settings import ModelSettings
from inferra.core.storage import InferraPaths
from inferra.daemon.app import create_app
from inferra.engine import EngineError, TokenCallback
from inferra.engine.mock import MockEngine
from inferra.engine.on_device import OnDeviceProvider
from inferra.transfer import OngoingTransfer, TransferBackend, TransferRequest


class _RecordingEngine(MockEngine):
    def __init__(self, *, fail_after: int | None = None) -> None:
        super().__init__()
        self.calls: list[list[dict[str, str]]] = []
        self.settings: list[ModelSettings | None] = []
        self.loads: list[str] = []
        self._fail_after = fail_after

    def load_model(self, path: str, projector_path: str | None = None) -> None:
        self.loads.append(path)
        super().load_model(path, projector_path)

    def generate_response(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        self.calls.append(messages)
        self.settings.append(settings)
        if self._fail_after is None:
            return super().generate_response(messages, on_token, settings)

        for index in range(self._fail_after):
            if on_token is not None:
                on_token(f"t{index}")
        raise EngineError("kv cache\nexhausted")


class _FakeBackend(TransferBackend):
    def __init__(self, *, ongoing: list[OngoingTransfer] | None = None) -> None:
        super().__init__()
        self.calls: list[tuple[str, Any]] = []
        self._ongoing = ongoing or []

    def begin(self, request: TransferRequest) -> None:
        self.calls.append(("begin", request))

    def pause(self, download_id: str) -> None:
        self.calls.append(("pause", download_id))

    def resume(self, request: TransferRequest) -> None:
        self.calls.append(("resume", request))

    def cancel(self, download_id: str) -> None:
        self.calls.append(("cancel", download_id))

    def ongoing(self) -> list[OngoingTransfer]:
        return list(self._ongoing)

    def emit(self, payload: dict[str, Any]) -> None:
        self._emit(payload)


def _install(paths: InferraPaths, name: str = "demo.gguf", content: bytes = b"GGUF-demo") -> Path:
    target = paths.model_path(name)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return target


def _client(
    paths: InferraPaths,
    *,
    engine: MockEngine | None = None,
    backend: _FakeBackend | None = None,
    on_device: OnDeviceProvider | None = None,
) -> TestClient:
    app = create_app(
        paths=paths,
        engine=engine or _RecordingEngine(),
        backend=backend or _FakeBackend(),
        on_device=on_device,
    )
    return TestClient(app)


def _ndjson(text: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _request_lines(caplog) -> list[str]:
    return [item.getMessage() for item in caplog.records if item.name == "inferra.daemon.requests"]


def test_version_and_status_report_server_state(paths) -> None:
    with _client(paths) as client:
        version = client.get("/api/version")
        status = client.get("/api/status")

    assert version.status_code == 200
    assert "version" in version.json()
    body = status.json()
    assert body["server"]["status"] == "running"
    assert body["model"] == {"loaded": False, "path": None}
    assert body["rag"] == {"ready": False}


def test_chat_non_stream_end_to_end(paths, caplog) -> None:
    _install(paths)
    engine = _RecordingEngine()

    with caplog.at_level(logging.INFO, logger="inferra.daemon.requests"):
        with _client(paths, engine=engine) as client:
            response = client.post(
                "/api/chat",
                json={
                    "model": "demo.gguf",
                    "messages": [{"role": "user", "content": "ping"}],
                    "stream": False,
                },
            )

    assert response.status_code == 200
    body = response.json()
    assert body["model"] == "demo.gguf"
    assert body["response"] == "ping"
    assert body["done"] is True
    assert body["created_at"].endswith("Z")
    assert engine.calls == [[{"role": "user", "content": "ping"}]]
    assert _request_lines(caplog) == ["POST /api/chat 200"]


def test_chat_stream_writes_tokens_then_one_terminal_record(paths, caplog) -> None:
    _install(paths)

    with caplog.at_level(logging.INFO, logger="inferra.daemon.requests"):
        with _client(paths) as client:
            response = client.post(
                "/api/chat",
                json={
                    "model": "demo.gguf",
                    "messages": [{"role": "user", "content": "one two three"}],
                    "stream": True,
                },
            )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    records = _ndjson(response.text)
    assert [item["response"] for item in records[:-1]] == ["one", " two", " three"]
    assert all(item["done"] is False for item in records[:-1])
    assert records[-1]["done"] is True
    assert records[-1]["output"] == "one two three"
    assert sum(1 for item in records if item["done"]) == 1
    assert _request_lines(caplog) == ["POST /api/chat 200"]


def test_stream_failure_still_ends_with_done_record(paths, caplog) -> None:
    _install(paths)
    engine = _RecordingEngine(fail_after=2)

    with caplog.at_level(logging.INFO):
        with _client(paths, engine=engine) as client:
            response = client.post(
                "/api/generate",
                json={"model": "demo.gguf", "prompt": "hello", "stream": True},
            )

    records = _ndjson(response.text)
    assert [item["response"] for item in records[:-1]] == ["t0", "t1"]
    assert records[-1] == {
        "model": "demo.gguf",
        "created_at": records[-1]["created_at"],
        "error": "generation_failed",
        "done": True,
    }
    assert _request_lines(caplog) == ["POST /api/generate 500"]
    assert any("kv_cache_exhausted" in item.getMessage() for item in caplog.records)


def test_stream_sse_format_appends_done_marker(paths) -> None:
    _install(paths)

    with _client(paths) as client:
        response = client.post(
            "/api/chat",
            json={
                "model": "demo.gguf",
                "messages": [{"role": "user", "content": "hi"}],
                "stream": True,
                "format": "sse",
            },
        )

    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [block for block in response.text.split("\n\n") if block]
    assert frames[-1] == "data: [DONE]"
    assert json.loads(frames[-2].removeprefix("data: "))["done"] is True


def test_non_stream_generation_failure_maps_to_500(paths) -> None:
    _install(paths)

    with _client(paths, engine=_RecordingEngine(fail_after=0)) as client:
        response = client.post(
            "/api/chat",
            json={"model": "demo.gguf", "messages": [{"role": "user", "content": "x"}]},
        )

    assert response.status_code == 500
    assert response.json() == {"error": "generation_failed"}


def test_chat_options_override_settings_per_request(paths) -> None:
    _install(paths)
    engine = _RecordingEngine()

    with _client(paths, engine=engine) as client:
        client.post(
            "/api/chat",
            json={
                "model": "demo.gguf",
                "messages": [{"role": "user", "content": "a"}],
                "options": {"temperature": 0.2},
            },
        )
        client.post(
            "/api/chat",
            json={"model": "demo.gguf", "messages": [{"role": "user", "content": "b"}]},
        )
        baseline = client.get("/api/settings").json()["settings"]

    assert engine.settings[0].temperature == 0.2
    assert engine.settings[1].temperature == baseline["temperature"] == 0.7


def test_chat_validation_errors(paths) -> None:
    with _client(paths) as client:
        empty = client.post("/api/chat", content=b"")
        malformed = client.post(
            "/api/chat",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        array = client.post("/api/chat", json=[1, 2])
        missing = client.post("/api/chat", json={"model": "demo.gguf"})
        prompt = client.post("/api/generate", json={"model": "demo.gguf"})

    assert (empty.status_code, empty.json()) == (400, {"error": "empty_body"})
    assert (malformed.status_code, malformed.json()) == (400, {"error": "invalid_json"})
    assert (array.status_code, array.json()) == (400, {"error": "invalid_json"})
    assert (missing.status_code, missing.json()) == (400, {"error": "messages_required"})
    assert (prompt.status_code, prompt.json()) == (400, {"error": "prompt_required"})


def test_model_resolution_errors(paths) -> None:
    with _client(paths) as client:
        unknown = client.post(
            "/api/chat",
            json={"model": "ghost.gguf", "messages": [{"role": "user", "content": "x"}]},
        )
        unloaded = client.post("/api/chat", json={"messages": [{"role": "user", "content": "x"}]})
        remote_off = client.post(
            "/api/chat",
            json={"model": "gpt-4o", "messages": [{"role": "user", "content": "x"}]},
        )
        client.app.state.remote.set_enabled(True)
        no_key = client.post(
            "/api/chat",
            json={"model": "claude", "messages": [{"role": "user", "content": "x"}]},
        )
        on_device = client.post(
            "/api/chat",
            json={"model": "apple-foundation", "messages": [{"role": "user", "content": "x"}]},
        )

    assert (unknown.status_code, unknown.json()) == (404, {"error": "model_not_found"})
    assert (unloaded.status_code, unloaded.json()) == (503, {"error": "model_not_loaded"})
    assert (remote_off.status_code, remote_off.json()) == (409, {"error": "remote_models_disabled"})
    assert (no_key.status_code, no_key.json()) == (422, {"error": "api_key_missing"})
    assert on_device.status_code == 503
    assert on_device.json() == {"error": "apple_foundation_not_available"}


def test_chat_without_model_uses_loaded_model(paths) -> None:
    _install(paths)
    engine = _RecordingEngine()

    with _client(paths, engine=engine) as client:
        loaded = client.post("/api/models", json={"action": "load", "model": "demo.gguf"})
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
        ps = client.get("/api/ps").json()

    assert loaded.json()["status"] == "loaded"
    assert response.json()["model"] == "demo.gguf"
    assert len(engine.loads) == 1
    assert ps["models"][0]["name"] == "demo.gguf"


def test_on_device_provider_generates_when_ready(paths) -> None:
    def _generate(messages, on_token, settings) -> str:
        return "on-device reply"

    with _client(paths, on_device=OnDeviceProvider(generator=_generate)) as client:
        response = client.post(
            "/api/chat",
            json={"model": "apple-foundation", "messages": [{"role": "user", "content": "x"}]},
        )
        status = client.post("/api/models/apple-foundation")

    assert response.json()["response"] == "on-device reply"
    assert status.json() == {"status": "ready"}


def test_on_device_readiness_messages(paths) -> None:
    with _client(paths) as client:
        unavailable = client.post("/api/models/apple-foundation")
    assert unavailable.status_code == 501
    assert unavailable.json()["error"] == "apple_foundation_unavailable"

    provider = OnDeviceProvider(generator=lambda *args: "", requirements_met=False)
    with _client(paths, on_device=provider) as client:
        requirements = client.post("/api/models/apple-foundation")
    assert requirements.status_code == 428

    provider = OnDeviceProvider(generator=lambda *args: "", enabled=False)
    with _client(paths, on_device=provider) as client:
        disabled = client.post("/api/models/apple-foundation")
    assert disabled.status_code == 409
    assert disabled.json()["message"]


def test_show_tags_and_ps(paths) -> None:
    _install(paths)

    with _client(paths) as client:
        tags = client.get("/api/tags").json()
        show = client.post("/api/show", json={"name": "demo.gguf"})
        missing_name = client.post("/api/show", json={})
        missing_model = client.post("/api/show", json={"name": "ghost.gguf"})
        ps = client.get("/api/ps").json()

    assert [item["name"] for item in tags["models"]] == ["demo.gguf"]
    assert show.status_code == 200
    assert show.json()["settings"] == {"use_global_settings": True, "custom_settings": None}
    assert show.json()["capabilities"] == ["chat", "completion"]
    assert (missing_name.status_code, missing_name.json()) == (400, {"error": "model_required"})
    assert (missing_model.status_code, missing_model.json()) == (404, {"error": "model_not_found"})
    assert ps == {"models": []}


def test_delete_unloads_active_model(paths) -> None:
    model_file = _install(paths)

    with _client(paths) as client:
        client.post("/api/models", json={"action": "load", "model": "demo.gguf"})
        deleted = client.request("DELETE", "/api/delete", json={"name": "demo.gguf"})
        again = client.request("DELETE", "/api/delete", json={"name": "demo.gguf"})
        missing = client.request("DELETE", "/api/delete", json={})
        ps = client.get("/api/ps").json()

    assert deleted.json() == {"status": "deleted", "name": "demo.gguf"}
    assert not model_file.exists()
    assert (again.status_code, again.json()) == (404, {"error": "model_not_found"})
    assert (missing.status_code, missing.json()) == (400, {"error": "missing_parameters"})
    assert ps == {"models": []}


def test_copy_rejects_path_traversal_without_writing(paths) -> None:
    _install(paths)

    with _client(paths) as client:
        response = client.post("/api/copy", json={"source": "demo.gguf", "destination": "../evil"})

    assert (response.status_code, response.json()) == (400, {"error": "invalid_destination"})
    assert sorted(item.name for item in paths.models_dir.iterdir()) == ["demo.gguf"]
    assert not (paths.base_dir / "evil").exists()


def test_copy_success_and_conflicts(paths) -> None:
    _install(paths)
    _install(paths, "taken.gguf")

    with _client(paths) as client:
        copied = client.post("/api/copy", json={"name": "demo.gguf", "target": "demo-2.gguf"})
        conflict = client.post(
            "/api/copy",
            json={"source": "demo.gguf", "destination": "taken.gguf"},
        )
        missing = client.post("/api/copy", json={"source": "ghost.gguf", "destination": "x.gguf"})
        incomplete = client.post("/api/copy", json={"source": "demo.gguf"})

    assert copied.json() == {
        "status": "copied",
        "source": "demo.gguf",
        "destination": "demo-2.gguf",
    }
    assert (conflict.status_code, conflict.json()) == (409, {"error": "destination_exists"})
    assert (missing.status_code, missing.json()) == (404, {"error": "model_not_found"})
    assert (incomplete.status_code, incomplete.json()) == (400, {"error": "missing_parameters"})


def test_link_external_model_endpoint(paths, tmp_path) -> None:
    external = tmp_path / "elsewhere" / "ext.gguf"
    external.parent.mkdir(parents=True)
    external.write_bytes(b"GGUF")
    _install(paths, "existing.gguf")

    with _client(paths) as client:
        linked = client.post("/api/models/link", json={"path": str(external)})
        clash = client.post(
            "/api/models/link",
            json={"path": str(external), "name": "existing.gguf"},
        )
        missing = client.post("/api/models/link", json={"path": str(tmp_path / "nope.gguf")})

    assert linked.json()["model"]["is_external"] is True
    assert (clash.status_code, clash.json()) == (409, {"error": "model_exists"})
    assert (missing.status_code, missing.json()) == (404, {"error": "file_not_found"})


def test_embeddings_use_loaded_local_model(paths) -> None:
    _install(paths)

    with _client(paths) as client:
        single = client.post("/api/embeddings", json={"model": "demo.gguf", "input": "text"})
        batch = client.post("/api/embeddings", json={"model": "demo.gguf", "input": ["a", "b"]})
        empty = client.post("/api/embeddings", json={"model": "demo.gguf"})

    assert len(single.json()["embedding"]) == 16
    assert len(batch.json()["embeddings"]) == 2
    assert (empty.status_code, empty.json()) == (400, {"error": "input_required"})


def test_models_action_reload_and_invalid(paths) -> None:
    _install(paths)
    engine = _RecordingEngine()

    with _client(paths, engine=engine) as client:
        not_loaded = client.post("/api/models", json={"action": "reload"})
        client.post("/api/models", json={"action": "load", "model": "demo.gguf"})
        reloaded = client.post("/api/models", json={"action": "reload"})
        unloaded = client.post("/api/models", json={"action": "unload"})
        invalid = client.post("/api/models", json={"action": "explode"})

    assert (not_loaded.status_code, not_loaded.json()) == (503, {"error": "model_not_loaded"})
    assert reloaded.json()["status"] == "reloaded"
    assert len(engine.loads) == 2
    assert unloaded.json() == {"status": "unloaded"}
    assert (invalid.status_code, invalid.json()) == (400, {"error": "invalid_action"})


def test_remote_provider_readiness(paths) -> None:
    with _client(paths) as client:
        listing = client.get("/api/models/remote").json()
        disabled = client.post("/api/models/remote", json={"provider": "chatgpt"})
        client.app.state.remote.set_enabled(True)
        missing_provider = client.post("/api/models/remote")
        unknown = client.get("/api/models/remote/nonsense")
        no_key = client.post("/api/models/remote/claude")
        client.app.state.store.set("api_key:claude", "sk-test")
        ready = client.post("/api/models/remote/anthropic")

    assert listing["enabled"] is False
    assert [item["provider"] for item in listing["providers"]] == [
        "gemini",
        "chatgpt",
        "deepseek",
        "claude",
    ]
    assert disabled.status_code == 409
    assert disabled.json()["error"] == "remote_models_disabled"
    assert (missing_provider.status_code, missing_provider.json()) == (
        400,
        {"error": "provider_required"},
    )
    assert (unknown.status_code, unknown.json()) == (404, {"error": "provider_not_found"})
    assert no_key.status_code == 422
    assert "Anthropic Claude" in no_key.json()["message"]
    assert ready.json()["status"] == "ready"
    assert ready.json()["provider"]["configured"] is True


def test_pull_starts_transfer_and_reports_downloads(paths) -> None:
    backend = _FakeBackend()

    with _client(paths, backend=backend) as client:
        started = client.post(
            "/api/pull",
            json={"url": "https://models.example/org/demo.gguf", "model": "org/demo.gguf"},
        )
        downloads = client.get("/api/downloads").json()

    body = started.json()
    assert body["status"] == "downloading"
    assert body["model"] == "org/demo.gguf"
    request = backend.calls[0][1]
    assert request.destination == paths.download_path("demo.gguf")
    assert request.auth_token is None
    assert downloads["downloads"][0]["model"] == "demo.gguf"
    assert downloads["downloads"][0]["download_id"] == body["downloadId"]


def test_pull_validation_errors(paths) -> None:
    with _client(paths) as client:
        missing = client.post("/api/pull", json={"model": "demo.gguf"})
        unsupported = client.post("/api/pull", json={"url": "ftp://x/demo.gguf", "name": "demo"})

    assert (missing.status_code, missing.json()) == (400, {"error": "missing_parameters"})
    assert (unsupported.status_code, unsupported.json()) == (400, {"error": "unsupported_url"})


def test_pull_uses_hf_token_only_for_hugging_face_hosts(paths, monkeypatch) -> None:
    monkeypatch.setenv("INFERRA_HF_TOKEN", "hf-env")
    backend = _FakeBackend()

    with _client(paths, backend=backend) as client:
        client.post("/api/pull", json={"url": "https://huggingface.co/o/r/a.gguf", "model": "a"})
        client.post("/api/pull", json={"url": "https://example.com/b.gguf", "model": "b"})
        client.post(
            "/api/pull",
            json={"url": "https://example.com/c.gguf", "model": "c", "token": "explicit"},
        )

    tokens = [request.auth_token for _name, request in backend.calls]
    assert tokens == ["hf-env", None, "explicit"]


def test_pull_falls_back_to_configured_hf_token(paths) -> None:
    config = InferraConfig()
    config.pull.hf_token = "hf-config"
    save_config(paths, config)
    backend = _FakeBackend()

    with _client(paths, backend=backend) as client:
        client.post("/api/pull", json={"url": "https://hf.co/o/r/a.gguf", "model": "a.gguf"})

    assert backend.calls[0][1].auth_token == "hf-config"


def test_download_completion_adopts_model(paths) -> None:
    backend = _FakeBackend()

    with _client(paths, backend=backend) as client:
        download_id = client.post(
            "/api/pull",
            json={"url": "https://models.example/fresh.gguf", "model": "fresh.gguf"},
        ).json()["downloadId"]
        destination = paths.download_path("fresh.gguf")
        destination.write_bytes(b"GGUF-fresh")
        backend.emit({"kind": "complete", "download_id": download_id})
        tags = client.get("/api/tags").json()
        downloads = client.get("/api/downloads").json()

    assert [item["name"] for item in tags["models"]] == ["fresh.gguf"]
    assert downloads == {"downloads": []}


def test_download_completion_keeps_existing_model_with_same_name(paths) -> None:
    _install(paths, "fresh.gguf", b"GGUF-original")
    backend = _FakeBackend()
    app = create_app(paths=paths, engine=_RecordingEngine(), backend=backend)
    published: list[tuple[str, dict[str, Any]]] = []
    app.state.event_stream.publish = lambda event, data: published.append((event, data))

    with TestClient(app) as client:
        download_id = client.post(
            "/api/pull",
            json={"url": "https://models.example/fresh.gguf", "model": "fresh.gguf"},
        ).json()["downloadId"]
        paths.download_path("fresh.gguf").write_bytes(b"GGUF-fresh")
        backend.emit({"kind": "complete", "download_id": download_id})
        tags = client.get("/api/tags").json()

    assert [item["name"] for item in tags["models"]] == ["fresh.gguf"]
    assert paths.model_path("fresh.gguf").read_bytes() == b"GGUF-original"
    assert ("transfer.failed", {"model": "fresh.gguf", "message": "model_exists"}) in published


def test_download_pause_resume_cancel(paths) -> None:
    backend = _FakeBackend()

    with _client(paths, backend=backend) as client:
        download_id = client.post(
            "/api/pull",
            json={"url": "https://models.example/m.gguf", "model": "m.gguf"},
        ).json()["downloadId"]
        backend.emit({"kind": "begin", "download_id": download_id, "content_length": 100})
        backend.emit({"kind": "progress", "download_id": download_id, "bytes_written": 40})
        paused = client.post("/api/downloads/m.gguf/pause")
        resumed = client.post("/api/downloads/m.gguf/resume")
        cancelled = client.delete("/api/downloads/m.gguf")
        missing = client.post("/api/downloads/m.gguf/pause")

    assert paused.json()["download"]["is_paused"] is True
    assert paused.json()["download"]["progress"]["bytes_downloaded"] == 40
    assert resumed.json()["download"]["is_downloading"] is True
    assert backend.calls[-2][0] == "resume"
    assert backend.calls[-2][1].offset == 40
    assert cancelled.json() == {"status": "cancelled", "model": "m.gguf"}
    assert (missing.status_code, missing.json()) == (404, {"error": "download_not_found"})


def test_startup_adopts_backend_transfers(paths) -> None:
    backend = _FakeBackend(
        ongoing=[
            OngoingTransfer(
                download_id="orphan",
                model="orphan.gguf",
                url="https://models.example/orphan.gguf",
                destination=str(paths.download_path("orphan.gguf")),
                offset=10,
            ),
        ],
    )

    with _client(paths, backend=backend) as client:
        downloads = client.get("/api/downloads").json()

    assert [item["model"] for item in downloads["downloads"]] == ["orphan.gguf"]


def test_rag_toggles(paths) -> None:
    with _client(paths) as client:
        initial = client.get("/api/rag").json()
        enabled = client.post("/api/rag", json={"enabled": True, "storage": "persistent"}).json()
        ready = client.post("/api/rag", json={"initialize": True, "provider": "gpt-4o"}).json()
        provider = client.app.state.rag.provider
        reset = client.post("/api/rag/reset").json()
        after_reset = client.get("/api/rag").json()

    assert initial == {"enabled": False, "storage": "memory", "ready": False}
    assert enabled == {"enabled": True, "storage": "persistent", "ready": False}
    assert ready["ready"] is True
    assert provider == "chatgpt"
    assert reset == {"status": "cleared"}
    assert after_reset == {"enabled": True, "storage": "persistent", "ready": False}


def test_thinking_toggle_updates_baseline(paths) -> None:
    with _client(paths) as client:
        missing = client.post("/api/settings/thinking", json={"enabled": "yes"})
        updated = client.post("/api/settings/thinking", json={"enabled": False})
        settings = client.get("/api/settings").json()["settings"]

    assert (missing.status_code, missing.json()) == (400, {"error": "enabled_required"})
    assert updated.json() == {"status": "updated", "enabled": False}
    assert settings["enable_thinking"] is False


def test_options_preflight_and_unknown_routes(paths, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="inferra.daemon.requests"):
        with _client(paths) as client:
            preflight = client.options("/api/chat")
            unknown = client.get("/api/nope")
            wrong_method = client.get("/api/chat")

    assert preflight.status_code == 204
    assert preflight.headers["access-control-allow-origin"] == "*"
    assert (unknown.status_code, unknown.json()) == (404, {"error": "not_found"})
    assert (wrong_method.status_code, wrong_method.json()) == (
        405,
        {"error": "method_not_allowed"},
    )
    assert unknown.headers["access-control-allow-origin"] == "*"
    assert _request_lines(caplog) == [
        "OPTIONS /api/chat 204",
        "GET /api/nope 404",
        "GET /api/chat 405",
    ]


def test_cors_headers_can_be_disabled(paths) -> None:
    config = InferraConfig()
    config.server.cors = False
    save_config(paths, config)

    with _client(paths) as client:
        response = client.get("/api/version")

    assert "access-control-allow-origin" not in response.headers


@pytest.mark.parametrize(
    ("query", "status"),
    [("heartbeat=0", 400), ("max_events=0", 400)],
)
def test_events_rejects_invalid_parameters(paths, query: str, status: int) -> None:
    with _client(paths) as client:
        response = client.get(f"/api/events?{query}")

    assert response.status_code == status
    assert response.json() == {"error": "invalid_request"}


def test_chat_history_crud(paths) -> None:
    with _client(paths) as client:
        created = client.post(
            "/api/chats",
            json={
                "title": "Llamas",
                "messages": [{"role": "user", "content": "hello"}, {"role": "user"}],
            },
        )
        chat_id = created.json()["chat"]["id"]
        appended = client.post(
            f"/api/chats/{chat_id}/messages",
            json=[{"id": "m2", "role": "assistant", "content": "hi", "thinking": "greet"}],
        )
        single = client.post(f"/api/chats/{chat_id}/messages", json={"content": "more"})
        updated = client.put(
            f"/api/chats/{chat_id}/messages/m2",
            json={"content": "hi there", "thinking": None},
        )
        single_id = single.json()["messages"][0]["id"]
        removed = client.delete(f"/api/chats/{chat_id}/messages/{single_id}")
        messages = client.get(f"/api/chats/{chat_id}/messages").json()["messages"]
        listing = client.get("/api/chats").json()
        model = client.post(f"/api/chats/{chat_id}/model", json={"path": "/models/demo.gguf"})
        fetched = client.get(f"/api/chats/{chat_id}").json()["chat"]
        deleted = client.delete(f"/api/chats/{chat_id}")
        missing = client.get(f"/api/chats/{chat_id}")

    assert created.status_code == 201
    assert created.json()["chat"]["title"] == "Llamas"
    assert created.json()["chat"]["messageCount"] == 1
    assert appended.status_code == 201
    assert appended.json()["messages"][0]["id"] == "m2"
    assert single.json()["messages"][0]["role"] == "user"
    assert updated.json() == {"status": "updated", "chatId": chat_id, "messageId": "m2"}
    assert removed.json()["status"] == "deleted"
    assert [(item["role"], item["content"]) for item in messages] == [
        ("user", "hello"),
        ("assistant", "hi there"),
    ]
    assert "thinking" not in messages[1]
    assert listing["chats"][0]["id"] == chat_id
    assert "messages" not in listing["chats"][0]
    assert model.json() == {
        "status": "updated",
        "chatId": chat_id,
        "modelPath": "/models/demo.gguf",
    }
    assert fetched["modelPath"] == "/models/demo.gguf"
    assert deleted.json() == {"status": "deleted", "chatId": chat_id}
    assert (missing.status_code, missing.json()) == (404, {"error": "chat_not_found"})


def test_chat_history_errors_and_titles(paths) -> None:
    with _client(paths) as client:
        chat_id = client.post("/api/chats", json={}).json()["chat"]["id"]
        empty_body = client.post("/api/chats", content=b"")
        bad_json = client.post(f"/api/chats/{chat_id}/messages", content=b"{nope")
        unknown_chat = client.post("/api/chats/none/messages", json={"content": "x"})
        unknown_message = client.put(f"/api/chats/{chat_id}/messages/none", json={"content": "x"})
        no_title = client.post(f"/api/chats/{chat_id}/title", json={})
        client.post(f"/api/chats/{chat_id}/messages", json={"content": "Why is the sky blue?"})
        generated = client.post(f"/api/chats/{chat_id}/title", json={})
        explicit = client.post(f"/api/chats/{chat_id}/title", json={"title": "Sky"})
        title_missing = client.post("/api/chats/none/title", json={"title": "x"})
        model_missing = client.post("/api/chats/none/model", json={"path": "x"})

    assert (empty_body.status_code, empty_body.json()) == (400, {"error": "empty_body"})
    assert (bad_json.status_code, bad_json.json()) == (400, {"error": "invalid_json"})
    assert (unknown_chat.status_code, unknown_chat.json()) == (404, {"error": "chat_not_found"})
    assert (unknown_message.status_code, unknown_message.json()) == (
        404,
        {"error": "message_not_found"},
    )
    assert (no_title.status_code, no_title.json()) == (422, {"error": "title_generation_failed"})
    assert generated.json() == {"title": "Why is the sky blue?", "generated": True}
    assert explicit.json() == {"title": "Sky", "generated": False}
    assert title_missing.status_code == 404
    assert model_missing.status_code == 404


class _SlowEngine(_RecordingEngine):
    def generate_response(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        time.sleep(0.3)
        return super().generate_response(messages, on_token, settings)


def test_stream_abandoned_before_first_chunk_is_still_logged(paths, caplog) -> None:
    _install(paths)
    app = create_app(paths=paths, engine=_SlowEngine(), backend=_FakeBackend())
    body = json.dumps(
        {"model": "demo.gguf", "messages": [{"role": "user", "content": "hi"}], "stream": True},
    ).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/chat",
        "raw_path": b"/api/chat",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    incoming = [{"type": "http.request", "body": body, "more_body": False}]

    async def receive() -> dict[str, Any]:
        if incoming:
            return incoming.pop(0)
        return {"type": "http.disconnect"}

    async def send(_message: dict[str, Any]) -> None:
        return None

    with caplog.at_level(logging.INFO, logger="inferra.daemon.requests"):
        asyncio.run(app(scope, receive, send))

    assert _request_lines(caplog) == ["POST /api/chat 500"]
