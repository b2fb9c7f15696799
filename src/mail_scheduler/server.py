# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads the
configuration file and environment, and starts the MailScheduler (record
store, restart recovery, queue loop) in the application lifespan.

Usage:
    uvicorn mail_scheduler.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MSCHED_CONFIG: Path to the INI configuration file (default: config.ini)
    MSCHED_DB_PATH: Path to SQLite database (default: /data/mail_scheduler.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import DispatchSettings, load_settings
from .core import MailScheduler


def build_app(settings: DispatchSettings | None = None, scheduler: MailScheduler | None = None) -> FastAPI:
    """Create an application whose lifespan starts and stops the scheduler."""
    settings = settings or load_settings()
    scheduler = scheduler or MailScheduler(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the scheduler."""
        await scheduler.start()
        yield
        await scheduler.stop()

    return create_app(scheduler, api_token=settings.api_token, lifespan=lifespan)


# Create the configured application
app = build_app()
