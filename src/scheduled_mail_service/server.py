# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application built from the
INI configuration and environment, starting and stopping the
EmailScheduler with the application lifespan.

Usage:
    uvicorn scheduled_mail_service.server:app --host 0.0.0.0 --port 8000

Environment variables:
    PMS_CONFIG: Path to the INI configuration file (default: config.ini)
    PMS_DB_PATH: Path to SQLite database (default: /data/scheduler.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import build_scheduler, load_scheduler_config
from .logger import configure_logging

_config = load_scheduler_config()
configure_logging(_config.log_level)

_scheduler, _webhooks = build_scheduler(_config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the scheduler."""
    await _scheduler.start()
    yield
    await _scheduler.shutdown()


app = create_app(
    _scheduler,
    api_token=_config.api_token,
    webhook_processor=_webhooks,
    lifespan=lifespan,
)
