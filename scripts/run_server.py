"""Launcher for the pagesnap API using uvicorn."""

from __future__ import annotations

import logging
import os
from typing import Optional

import typer
import uvicorn

app = typer.Typer(help="Run the pagesnap FastAPI app with uvicorn.", add_completion=False)

_LOG_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}


def _env_str(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"{key} must be an integer") from exc


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@app.callback(invoke_without_command=True)
def serve(  # type: ignore[no-untyped-def]
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    app_path: Optional[str] = typer.Option(
        None, "--app", help="ASGI import path (default pagesnap.main:app)."
    ),
    reload: Optional[bool] = typer.Option(None, "--reload/--no-reload", help="Enable auto-reload."),
    workers: Optional[int] = typer.Option(None, "--workers", help="Worker processes."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level."),
) -> None:
    """Launch the FastAPI app under uvicorn."""

    host = host or _env_str("HOST", "127.0.0.1")
    port = port or _env_int("PORT", 8000)
    app_path = app_path or _env_str("APP_MODULE", "pagesnap.main:app")
    if reload is None:
        reload = _env_bool("PAGESNAP_SERVER_RELOAD", False)
    workers = workers or _env_int("PAGESNAP_SERVER_WORKERS", 1)
    log_level = (log_level or _env_str("PAGESNAP_SERVER_LOG_LEVEL", _env_str("LOG_LEVEL", "info"))).lower()
    if log_level not in _LOG_LEVELS:
        raise typer.BadParameter(f"unknown log level {log_level!r}", param_hint="--log-level")

    if workers > 1 and reload:
        raise typer.BadParameter("--reload cannot be combined with multiple workers", param_hint="--workers")

    logging.basicConfig(
        level=logging.DEBUG if log_level == "trace" else log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        app_path,
        host=host,
        port=port,
        reload=reload,
        workers=max(1, workers),
        log_level=log_level,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
