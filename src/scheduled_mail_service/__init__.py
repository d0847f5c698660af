# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scheduled mail service package.

This package provides an asynchronous email scheduling service built on
asyncio. It persists one-off and recurring email jobs in SQLite, drains them
through a per-tenant rate-limited dispatcher and delivers them through a
transactional email provider. Delivery webhooks feed a bounce and complaint
classifier that maintains a per-tenant suppression list.

Main components:
    - EmailScheduler: Orchestrator running the drain and maintenance loops.
    - Persistence: aiosqlite-backed queue, suppression and event store.
    - RateLimitedDispatcher: Token buckets and circuit breakers per resource.
    - EmailTransport: Provider wrapper with its own rate limit and retries.
    - BounceHandler: Bounce/complaint classification and suppression.
    - API: FastAPI application exposing the REST control surface.
"""

__version__ = "0.4.0"
