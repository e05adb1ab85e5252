"""Typer-based CLI for serving and querying inferra."""

from __future__ import annotations

import json
import os
import sys
import time
from difflib import get_close_matches
from pathlib import PurePosixPath
from typing import Any, Literal, NoReturn

import typer
from tqdm import tqdm

from inferra.core.config import (
    CONFIG_KEY_DESCRIPTIONS,
    ConfigFileError,
    InferraConfig,
    load_config,
    save_config,
    update_config,
)
from inferra.core.storage import InferraPaths
from inferra.daemon.main import resolve_bind, run_daemon
from inferra.transfer.progress import format_file_size

from .client import (
    DEFAULT_BASE_URL,
    DEFAULT_DAEMON_HOST,
    DEFAULT_DAEMON_PORT,
    DaemonHTTPError,
    InferraClient,
)

app = typer.Typer(help="Command-line interface for the inferra model server.")
downloads_app = typer.Typer(help="Inspect and control in-flight model downloads.")
config_app = typer.Typer(help="Manage local inferra defaults in ~/.inferra/config.json.")
app.add_typer(downloads_app, name="downloads")
app.add_typer(config_app, name="config")

_HF_TOKEN_ENV_KEYS = ("INFERRA_HF_TOKEN", "HF_TOKEN")
_PULL_POLL_SECONDS = 0.5
_CHAT_TIMEOUT_SECONDS = 300.0
_TABLE_MAX_COL_WIDTH = 48
_TABLE_DEFAULT_GAP = 2

_CONFIG_KEY_PATHS: dict[str, tuple[str, str]] = {
    key: (key.split(".", 1)[0], key.split(".", 1)[1]) for key in CONFIG_KEY_DESCRIPTIONS
}
_BOOL_CONFIG_KEYS = {"server.cors"}
_INT_CONFIG_KEYS = {"server.port", "pull.chunk_size"}
_FLOAT_CONFIG_KEYS = {"pull.timeout_seconds", "remote.timeout_seconds"}

ProgressMode = Literal["auto", "on", "off"]

_COLOR_SUCCESS = typer.colors.GREEN
_COLOR_WARNING = typer.colors.YELLOW
_COLOR_ERROR = typer.colors.RED

_BASE_URL_HELP = f"Daemon base URL. Defaults to {DEFAULT_BASE_URL}."


def _style_text(
    text: str,
    *,
    fg: int | None = None,
    bold: bool = False,
    dim: bool = False,
) -> str:
    return typer.style(text, fg=fg, bold=bold, dim=dim)


def _resolve_progress_enabled(mode: ProgressMode) -> bool:
    if mode == "on":
        return True
    if mode == "off":
        return False
    return bool(getattr(sys.stderr, "isatty", lambda: False)())


def _exit_with_runtime_error(exc: RuntimeError, *, code: int = 1) -> NoReturn:
    typer.echo(_style_text(f"Error: {exc}", fg=_COLOR_ERROR), err=True)
    if isinstance(exc, DaemonHTTPError) and exc.status_code == 404:
        hint = "Run `inferra list` to see installed models."
        typer.echo(_style_text(f"Hint: {hint}", fg=_COLOR_WARNING), err=True)
    raise typer.Exit(code=code) from exc


def _exit_with_message(message: str, *, code: int = 1) -> NoReturn:
    typer.echo(_style_text(message, fg=_COLOR_ERROR), err=True)
    raise typer.Exit(code=code)


def _make_client(*, base_url: str, timeout: float) -> InferraClient:
    return InferraClient(base_url=base_url, timeout=timeout)


@app.command("serve")
def serve(
    host: str | None = typer.Option(
        None,
        help=f"Host to bind. Defaults to server.host in config, then {DEFAULT_DAEMON_HOST}.",
    ),
    port: int | None = typer.Option(
        None,
        min=1,
        max=65535,
        help=f"Port to bind. Defaults to server.port in config, then {DEFAULT_DAEMON_PORT}.",
    ),
    log_level: str = typer.Option("info", help="Uvicorn log level."),
) -> None:
    """Run the inferra daemon HTTP server."""
    try:
        resolved_host, resolved_port = resolve_bind()
    except ValueError as exc:
        typer.echo(_style_text(f"Error: {exc}", fg=_COLOR_ERROR), err=True)
        raise typer.Exit(code=2) from exc
    run_daemon(host or resolved_host, port or resolved_port, log_level=log_level)


@app.command("list")
def list_models(
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """List stored models via GET /api/tags."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.list_tags()
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    if json_output:
        typer.echo(json.dumps(response, indent=2, sort_keys=True))
        return

    models = response.get("models")
    if not isinstance(models, list):
        models = []
    typer.echo(_render_model_table(models))


@app.command("ps")
def ps(
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Show the loaded model via GET /api/ps."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.list_running()
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    if json_output:
        typer.echo(json.dumps(response, indent=2, sort_keys=True))
        return

    models = response.get("models")
    if not isinstance(models, list):
        models = []
    typer.echo(_render_running_table(models))


@app.command("show")
def show(
    model: str = typer.Argument(..., help="Model name or path."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Show model metadata and per-model settings."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.show_model(model)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(json.dumps(response, indent=2, sort_keys=True))


@app.command("pull")
def pull(
    url: str = typer.Argument(..., help="HTTP(S) URL of the model file."),
    name: str | None = typer.Option(
        None,
        "--name",
        help="Model name to store under. Defaults to the last URL path segment.",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        help="Bearer token override (prefer INFERRA_HF_TOKEN).",
    ),
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help="Poll the daemon until the download finishes.",
    ),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
    progress: ProgressMode = typer.Option(
        "auto",
        "--progress",
        help="Progress display mode: auto, on, or off.",
    ),
) -> None:
    """Download a model file into local storage."""
    model = name or PurePosixPath(url.split("?", 1)[0]).name
    if not model:
        typer.echo(_style_text("Error: cannot derive a model name from URL", fg=_COLOR_ERROR))
        raise typer.Exit(code=2)

    resolved_token = token
    if resolved_token is None:
        resolved_token = next(
            (os.environ[key] for key in _HF_TOKEN_ENV_KEYS if os.environ.get(key)),
            None,
        )

    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        started = client.pull_model(url, model, token=resolved_token)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)

    download_id = started.get("downloadId")
    if not wait:
        typer.echo(f"downloading {model} ({download_id})")
        return

    try:
        _wait_for_download(client, model, show_progress=_resolve_progress_enabled(progress))
        installed = _installed_names(client.list_tags())
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)

    key = PurePosixPath(model).name
    if key not in installed:
        typer.echo(_style_text(f"Error: download of {model} did not finish", fg=_COLOR_ERROR))
        raise typer.Exit(code=1)
    typer.echo(_style_text(f"pulled {key}", fg=_COLOR_SUCCESS))


@app.command("rm")
def rm(
    models: list[str] = typer.Argument(..., help="One or more model names to delete."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Delete stored models."""
    client = _make_client(base_url=base_url, timeout=timeout)
    for model in models:
        try:
            client.remove_model(model)
        except RuntimeError as exc:
            _exit_with_runtime_error(exc)
        typer.echo(f"deleted {model}")


@app.command("cp")
def cp(
    source: str = typer.Argument(..., help="Stored model to copy."),
    destination: str = typer.Argument(..., help="Name for the copy."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Copy a stored model under a new name."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.copy_model(source, destination)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(f"copied {source} to {response.get('destination', destination)}")


@app.command("link")
def link(
    path: str = typer.Argument(..., help="Model file outside the models directory."),
    name: str | None = typer.Option(None, "--name", help="Name to register the model under."),
    copy: bool = typer.Option(False, "--copy", help="Copy the file instead of referencing it."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Register an external model file."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.link_model(path, name=name, copy=copy)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    linked = response.get("model")
    label = linked.get("name") if isinstance(linked, dict) else None
    typer.echo(f"linked {label or path}")


@app.command("load")
def load(
    model: str = typer.Argument(..., help="Model name or path to load."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(
        _CHAT_TIMEOUT_SECONDS,
        min=0.1,
        help="HTTP timeout in seconds.",
    ),
) -> None:
    """Load a model into the engine slot."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        client.manage_model("load", model)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(f"loaded {model}")


@app.command("unload")
def unload(
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Release the loaded model."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        client.manage_model("unload")
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo("unloaded")


@app.command("chat")
def chat(
    model: str = typer.Argument(..., help="Model name, path, or provider tag."),
    prompt: str = typer.Argument(..., help="User message to send."),
    system: str | None = typer.Option(None, "--system", help="System prompt."),
    temperature: float | None = typer.Option(None, "--temperature", help="Sampling temperature."),
    max_tokens: int | None = typer.Option(None, "--max-tokens", min=1, help="Generation limit."),
    no_stream: bool = typer.Option(False, "--no-stream", help="Request a buffered response."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(
        _CHAT_TIMEOUT_SECONDS,
        min=0.1,
        help="HTTP timeout in seconds.",
    ),
) -> None:
    """Send one chat message and print the reply."""
    payload: dict[str, Any] = {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system is not None:
        payload["system"] = system
    options: dict[str, Any] = {}
    if temperature is not None:
        options["temperature"] = temperature
    if max_tokens is not None:
        options["max_tokens"] = max_tokens
    if options:
        payload["options"] = options

    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        result = client.chat(payload, stream=not no_stream)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)

    if isinstance(result, dict):
        typer.echo(str(result.get("response", "")))
        return

    chunks: list[str] = []
    for record in result:
        error = record.get("error")
        if isinstance(error, str):
            typer.echo(_style_text(f"Error: {error}", fg=_COLOR_ERROR), err=True)
            raise typer.Exit(code=1)
        text = record.get("response")
        if isinstance(text, str):
            chunks.append(text)
    typer.echo("".join(chunks))


@downloads_app.command("list")
def downloads_list(
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """List in-flight downloads."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        response = client.list_downloads()
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    if json_output:
        typer.echo(json.dumps(response, indent=2, sort_keys=True))
        return
    downloads = response.get("downloads")
    if not isinstance(downloads, list):
        downloads = []
    typer.echo(_render_download_table(downloads))


@downloads_app.command("pause")
def downloads_pause(
    model: str = typer.Argument(..., help="Model whose download to pause."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Pause a download, keeping the bytes written so far."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        client.pause_download(model)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(f"paused {model}")


@downloads_app.command("resume")
def downloads_resume(
    model: str = typer.Argument(..., help="Model whose download to resume."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Resume a paused download."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        client.resume_download(model)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(f"resumed {model}")


@downloads_app.command("cancel")
def downloads_cancel(
    model: str = typer.Argument(..., help="Model whose download to cancel."),
    base_url: str = typer.Option(DEFAULT_BASE_URL, help=_BASE_URL_HELP),
    timeout: float = typer.Option(10.0, min=0.1, help="HTTP timeout in seconds."),
) -> None:
    """Cancel a download and discard its partial file."""
    client = _make_client(base_url=base_url, timeout=timeout)
    try:
        client.cancel_download(model)
    except RuntimeError as exc:
        _exit_with_runtime_error(exc)
    typer.echo(f"cancelled {model}")


@config_app.command("list")
def config_list(
    json_output: bool = typer.Option(False, "--json", help="Print compact JSON."),
) -> None:
    """Print current local config values."""
    try:
        config = load_config(InferraPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    payload = config.model_dump(mode="json")
    if json_output:
        typer.echo(json.dumps(payload, separators=(",", ":"), sort_keys=True))
        return
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@config_app.command("get")
def config_get(
    key: str = typer.Argument(..., help="Config key path (example: server.port)."),
) -> None:
    """Get one config value."""
    section, field = _resolve_config_key_path(key)
    try:
        config = load_config(InferraPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    typer.echo(_format_config_scalar(config.model_dump(mode="json")[section][field]))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key path (example: server.port)."),
    value: str = typer.Argument(..., help="New value, or null to clear optional keys."),
) -> None:
    """Set one config value."""
    section, field = _resolve_config_key_path(key)
    parsed_value = _parse_config_value(key, value)
    try:
        update_config(InferraPaths.default(), {section: {field: parsed_value}})
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)


@config_app.command("unset")
def config_unset(
    key: str = typer.Argument(..., help="Config key path (example: server.port)."),
) -> None:
    """Restore one config value to its built-in default."""
    section, field = _resolve_config_key_path(key)
    default = InferraConfig().model_dump(mode="json")[section][field]
    try:
        update_config(InferraPaths.default(), {section: {field: default}})
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)


@config_app.command("keys")
def config_keys(
    json_output: bool = typer.Option(False, "--json", help="Print compact JSON."),
) -> None:
    """List writable config keys with descriptions and current values."""
    try:
        config = load_config(InferraPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    payload = config.model_dump(mode="json")
    entries = [
        {
            "key": key,
            "value": payload[section][field],
            "description": CONFIG_KEY_DESCRIPTIONS[key],
        }
        for key, (section, field) in sorted(_CONFIG_KEY_PATHS.items())
    ]
    if json_output:
        typer.echo(json.dumps(entries, separators=(",", ":"), sort_keys=True))
        return

    rows = [
        (entry["key"], _format_config_scalar(entry["value"]), entry["description"])
        for entry in entries
    ]
    typer.echo(_render_table(("KEY", "VALUE", "DESCRIPTION"), rows))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config.json."),
) -> None:
    """Write a default config.json."""
    paths = InferraPaths.default()
    if paths.config_path.exists() and not force:
        _exit_with_message(f"config already exists at {paths.config_path} (use --force)")
    try:
        save_config(paths, InferraConfig())
    except OSError as exc:
        _exit_with_message(f"unable to write {paths.config_path}: {exc}")
    typer.echo(f"Wrote default config to {paths.config_path}")


def _wait_for_download(client: InferraClient, model: str, *, show_progress: bool) -> None:
    key = PurePosixPath(model).name
    progress_bar: tqdm[Any] | None = None
    try:
        while True:
            entry = _find_download(client.list_downloads(), key)
            if entry is None:
                return
            progress = entry.get("progress")
            if show_progress and isinstance(progress, dict):
                progress_bar = _update_pull_progress_bar(progress_bar, key, progress)
            time.sleep(_PULL_POLL_SECONDS)
    finally:
        if progress_bar is not None:
            progress_bar.close()


def _find_download(response: dict[str, Any], key: str) -> dict[str, Any] | None:
    downloads = response.get("downloads")
    if not isinstance(downloads, list):
        return None
    for item in downloads:
        if isinstance(item, dict) and item.get("model") == key:
            return item
    return None


def _update_pull_progress_bar(
    progress_bar: tqdm[Any] | None,
    model: str,
    progress: dict[str, Any],
) -> tqdm[Any]:
    completed = progress.get("bytes_downloaded")
    total = progress.get("bytes_total")
    if progress_bar is None:
        progress_bar = tqdm(
            total=total if isinstance(total, int) and total > 0 else None,
            unit="B",
            unit_scale=True,
            desc=model,
            file=sys.stderr,
            leave=False,
            dynamic_ncols=True,
        )

    if isinstance(total, int) and total > 0 and progress_bar.total != total:
        progress_bar.total = total

    if isinstance(completed, int):
        if completed >= progress_bar.n:
            progress_bar.update(completed - progress_bar.n)
        else:
            progress_bar.n = completed
            progress_bar.refresh()
    return progress_bar


def _installed_names(response: dict[str, Any]) -> set[str]:
    models = response.get("models")
    if not isinstance(models, list):
        return set()
    return {
        item["name"]
        for item in models
        if isinstance(item, dict) and isinstance(item.get("name"), str)
    }


def _render_model_table(models: list[dict[str, Any]]) -> str:
    rows: list[tuple[str, str, str, str]] = []
    for model in models:
        if not isinstance(model, dict):
            continue
        name = _string_or_dash(model.get("name"))
        model_type = _string_or_dash(model.get("model_type"))
        if model.get("is_external") is True:
            model_type = f"{model_type} (external)"

        size_value = model.get("size")
        if isinstance(size_value, int) and not isinstance(size_value, bool):
            size = format_file_size(size_value)
        else:
            size = "-"

        modified = _string_or_dash(model.get("modified_at"))
        rows.append((name, model_type, size, modified))

    if not rows:
        return "No models installed."
    return _render_table(("NAME", "TYPE", "SIZE", "MODIFIED"), rows, right_align={2})


def _render_running_table(models: list[dict[str, Any]]) -> str:
    rows: list[tuple[str, str, str]] = []
    for model in models:
        if not isinstance(model, dict):
            continue
        name = _string_or_dash(model.get("name"))
        model_type = _string_or_dash(model.get("model_type"))
        loaded_at = _string_or_dash(model.get("loaded_at"))
        rows.append((name, model_type, loaded_at))

    if not rows:
        return "No models loaded."
    return _render_table(("NAME", "TYPE", "LOADED"), rows)


def _render_download_table(downloads: list[dict[str, Any]]) -> str:
    rows: list[tuple[str, str, str, str, str]] = []
    for item in downloads:
        if not isinstance(item, dict):
            continue
        progress = item.get("progress")
        if not isinstance(progress, dict):
            progress = {}
        state = "paused" if item.get("is_paused") is True else "downloading"
        if item.get("is_cancelling") is True:
            state = "cancelling"
        rows.append(
            (
                _string_or_dash(item.get("model")),
                state,
                f"{_string_or_dash(progress.get('progress'))}%",
                _string_or_dash(progress.get("speed")),
                _string_or_dash(progress.get("eta")),
            ),
        )

    if not rows:
        return "No active downloads."
    return _render_table(("MODEL", "STATE", "DONE", "SPEED", "ETA"), rows, right_align={2})


def _render_table(
    headers: tuple[str, ...],
    rows: list[tuple[str, ...]],
    *,
    right_align: set[int] | None = None,
) -> str:
    normalized_rows = [
        tuple(_truncate_cell(str(value), max_width=_TABLE_MAX_COL_WIDTH) for value in row)
        for row in rows
    ]
    widths = [len(_truncate_cell(header, max_width=_TABLE_MAX_COL_WIDTH)) for header in headers]
    for row in normalized_rows:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))

    gap = " " * _TABLE_DEFAULT_GAP
    header_line = gap.join(
        _align_cell(header, widths[idx], idx, right_align) for idx, header in enumerate(headers)
    )
    separator_line = gap.join("-" * width for width in widths)
    row_lines = [
        gap.join(_align_cell(value, widths[idx], idx, right_align) for idx, value in enumerate(row))
        for row in normalized_rows
    ]
    return "\n".join([header_line, separator_line, *row_lines])


def _truncate_cell(value: str, *, max_width: int) -> str:
    if max_width < 4:
        return value[:max_width]
    if len(value) <= max_width:
        return value
    return f"{value[: max_width - 3]}..."


def _align_cell(value: str, width: int, index: int, right_align: set[int] | None) -> str:
    if right_align is not None and index in right_align:
        return value.rjust(width)
    return value.ljust(width)


def _resolve_config_key_path(key: str) -> tuple[str, str]:
    key_path = _CONFIG_KEY_PATHS.get(key)
    if key_path is None:
        suggestion = get_close_matches(key, sorted(_CONFIG_KEY_PATHS), n=1, cutoff=0.6)
        if suggestion:
            _exit_with_message(f"unknown key {key!r}. Did you mean {suggestion[0]!r}?")
        supported = ", ".join(sorted(_CONFIG_KEY_PATHS))
        _exit_with_message(f"unknown key {key!r}. Supported keys: {supported}")
    return key_path


def _parse_config_value(key: str, value: str) -> bool | int | float | str | None:
    lowered = value.strip().lower()
    if lowered == "null":
        return None

    if key in _BOOL_CONFIG_KEYS:
        if lowered in {"true", "1"}:
            return True
        if lowered in {"false", "0"}:
            return False
        raise typer.BadParameter(f"invalid boolean value for {key!r}: {value!r}")

    if key in _INT_CONFIG_KEYS or key in _FLOAT_CONFIG_KEYS:
        kind = int if key in _INT_CONFIG_KEYS else float
        try:
            parsed = kind(value)
        except ValueError as exc:
            message = f"invalid {kind.__name__} value for {key!r}: {value!r}"
            raise typer.BadParameter(message) from exc
        if parsed <= 0:
            raise typer.BadParameter(f"value for {key!r} must be > 0")
        return parsed

    return value


def _format_config_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _string_or_dash(value: Any) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return "-"


if __name__ == "__main__":
    app()
