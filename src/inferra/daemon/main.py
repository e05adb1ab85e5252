"""Entrypoint for running the inferra daemon under uvicorn."""

from __future__ import annotations

import logging
import os

import uvicorn

from inferra.core.config import ConfigFileError, load_config
from inferra.core.storage import InferraPaths

logger = logging.getLogger(__name__)

APP_FACTORY = "inferra.daemon.app:create_app"
BINDING_ENV = "INFERRA_EFFECTIVE_HOST_BINDING"
DEFAULT_DAEMON_HOST = "127.0.0.1"
DEFAULT_DAEMON_PORT = 11440


def resolve_bind(paths: InferraPaths | None = None) -> tuple[str, int]:
    """Pick the daemon bind address.

    ``INFERRA_HOST`` (``host:port``) wins outright. Otherwise the host comes from
    ``server.host`` in the config file and the port from ``INFERRA_PORT``, then
    ``server.port``, with the built-in defaults last.
    """
    host_port = os.environ.get("INFERRA_HOST")
    if host_port is not None:
        return _parse_host_port(host_port)

    host, port = _configured_bind(paths or InferraPaths.default())
    port_value = os.environ.get("INFERRA_PORT")
    if port_value is not None:
        port = _parse_port(port_value, env_name="INFERRA_PORT", raw_value=port_value)
    return host, port


def run_daemon(host: str, port: int, *, log_level: str = "info") -> None:
    """Serve the app factory, exporting the effective binding while it runs."""
    previous_binding = os.environ.get(BINDING_ENV)
    os.environ[BINDING_ENV] = f"{host}:{port}"
    logger.info("starting inferra daemon on %s:%d", host, port)
    try:
        uvicorn.run(APP_FACTORY, factory=True, host=host, port=port, log_level=log_level)
    finally:
        if previous_binding is None:
            os.environ.pop(BINDING_ENV, None)
        else:
            os.environ[BINDING_ENV] = previous_binding


def main() -> int:
    host, port = resolve_bind()
    run_daemon(host, port, log_level=os.environ.get("INFERRA_LOG_LEVEL", "info"))
    return 0


def _configured_bind(paths: InferraPaths) -> tuple[str, int]:
    try:
        server = load_config(paths).server
    except ConfigFileError as exc:
        logger.warning("using default daemon bind: %s", exc)
        return DEFAULT_DAEMON_HOST, DEFAULT_DAEMON_PORT
    return server.host or DEFAULT_DAEMON_HOST, server.port or DEFAULT_DAEMON_PORT


def _parse_host_port(value: str) -> tuple[str, int]:
    host, separator, port_value = value.strip().rpartition(":")
    if not separator or not host.strip() or not port_value.strip():
        raise ValueError(f"invalid INFERRA_HOST: {value!r}")
    return host.strip(), _parse_port(port_value.strip(), env_name="INFERRA_HOST", raw_value=value)


def _parse_port(value: str, *, env_name: str, raw_value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise ValueError(f"invalid {env_name}: {raw_value!r}") from exc
    if not 1 <= port <= 65535:
        raise ValueError(f"invalid {env_name}: {raw_value!r}")
    return port


if __name__ == "__main__":
    raise SystemExit(main())
