"""FastAPI integration: caller context, correlation ids and error mapping."""

from __future__ import annotations

from fastapi import FastAPI

from keyguard.api.dependencies import get_caller_context
from keyguard.api.exception_handlers import setup_exception_handlers
from keyguard.api.middleware import request_id_middleware


def install(app: FastAPI) -> FastAPI:
    """Register keyguard middleware and exception handlers on app."""
    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)
    return app


__all__ = [
    "get_caller_context",
    "install",
    "request_id_middleware",
    "setup_exception_handlers",
]
