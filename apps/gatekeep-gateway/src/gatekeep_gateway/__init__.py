"""Gatekeep Gateway: the single trust boundary in front of downstream services.

Composes ``gatekeep-auth`` into a servable FastAPI application. No business
logic lives here, only wiring. Serve with ``uvicorn gatekeep_gateway:app``.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from gatekeep_gateway.factory import create_app

_app: FastAPI | None = None


def get_app() -> FastAPI:
    """Build the gateway from ``GATEKEEP_CONFIG`` once and reuse it.

    Importing the package never reads configuration; the first access to
    ``gatekeep_gateway.app`` does, and a missing or invalid config raises
    :class:`~gatekeep_auth.errors.ConfigError` there.
    """
    global _app  # noqa: PLW0603
    if _app is None:
        _app = create_app()
    return _app


def __getattr__(name: str) -> Any:
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["create_app", "get_app"]
