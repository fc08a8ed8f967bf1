"""Application entry point for running with ``python -m renewed``.

This helper reads the standard ``PORT`` environment variable (used by
Render, Railway and other PaaS platforms) and passes it to uvicorn while
binding the server to ``0.0.0.0``.

Set ``UVICORN_RELOAD=1`` locally to enable auto-reload and ``LOG_LEVEL`` to
change the verbosity of the application loggers.
"""
from __future__ import annotations

import logging
import os

import uvicorn


def _strtobool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def main() -> None:
    """Run the FastAPI app under uvicorn with sensible defaults."""

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = _strtobool(os.getenv("UVICORN_RELOAD"))
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "renewed.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
