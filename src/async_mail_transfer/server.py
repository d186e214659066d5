# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads the
configuration (config.ini and ``MTS_*`` variables) and starts and stops the
MailTransferCore with the application lifespan.

Usage:
    uvicorn async_mail_transfer.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MTS_CONFIG: Path to config.ini (default: config.ini)
    MTS_DB_PATH: Path to SQLite database (default: /data/mail_transfer.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_settings
from .core import MailTransferCore


def create_server_app(settings: dict[str, Any] | None = None, core: MailTransferCore | None = None) -> FastAPI:
    """Build the application whose lifespan owns the core service."""
    settings = settings if settings is not None else load_settings()
    core = core or MailTransferCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)


def __getattr__(name: str) -> Any:
    # Built on first access so importing this module has no side effects.
    if name == "app":
        application = create_server_app()
        globals()["app"] = application
        return application
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
