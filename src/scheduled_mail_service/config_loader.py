# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the scheduled mail service.

Settings come from an INI file whose path is given explicitly, through the
``PMS_CONFIG`` environment variable, or defaults to ``config.ini`` in the
working directory. A missing file is not an error: defaults apply.

Every key can be overridden with an environment variable named
``PMS_<KEY>`` in upper case, e.g. ``PMS_DB_PATH`` or ``PMS_API_KEY``.
Invalid numeric values are logged and replaced by their default.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/scheduler.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [scheduler]
        poll_interval = 30
        maintenance_interval = 300
        batch_size = 20
        timezone = Europe/Rome
        default_from = reports@example.com

        [dispatcher]
        max_requests = 50
        window_seconds = 60

        [transport]
        provider = http
        api_key = re_123

        [webhooks]
        secret = whsec_123

        [logging]
        level = INFO

    Building the service::

        config = load_scheduler_config()
        scheduler, webhooks = build_scheduler(config)
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .bounce import BounceHandler
from .core import EmailScheduler
from .dispatcher import DEFAULT_RULE_NAME, RateLimitedDispatcher, RateLimitRule
from .logger import get_logger
from .persistence import Persistence
from .prometheus import SchedulerMetrics
from .suppression import SuppressionList
from .transport import EmailProvider, EmailTransport, HttpApiProvider, SmtpProvider
from .webhooks import WebhookProcessor

ENV_PREFIX = "PMS_"
CONFIG_ENV_VAR = "PMS_CONFIG"
DEFAULT_CONFIG_PATH = "config.ini"

logger = get_logger("ConfigLoader")


@dataclass
class SchedulerConfig:
    """Resolved service configuration.

    Attributes are grouped by INI section; see :data:`SECTIONS`.
    """

    # [storage]
    db_path: str = "/data/scheduler.db"

    # [server]
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None

    # [scheduler]
    poll_interval: float = 30.0
    maintenance_interval: float = 300.0
    batch_size: int = 20
    dispatch_timeout: float | None = None
    timezone: str = "UTC"
    default_from: str | None = None
    reply_to: str | None = None
    start_active: bool = True
    defer_seconds: int = 60
    stale_processing_seconds: int = 3600

    # [dispatcher]
    max_requests: int = 50
    window_seconds: float = 60.0
    max_backpressure: int = 500
    circuit_breaker_threshold: float = 0.3
    cooldown_seconds: float = 60.0
    adaptive_throttling: bool = True

    # [transport]
    provider: str = "http"
    api_key: str | None = None
    base_url: str = "https://api.resend.com"
    tokens_per_second: float = 10.0
    max_tokens: int = 20
    max_attempts: int = 3
    base_delay: float = 1.0
    request_timeout: float = 30.0
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True

    # [webhooks]
    webhook_secret: str | None = None
    default_tenant_id: str | None = None

    # [suppression]
    soft_bounce_expiry_days: int = 30

    # [logging]
    log_level: str = "INFO"


# INI key -> (section, dataclass field)
SECTIONS: dict[str, tuple[str, str]] = {
    "db_path": ("storage", "db_path"),
    "host": ("server", "host"),
    "port": ("server", "port"),
    "api_token": ("server", "api_token"),
    "poll_interval": ("scheduler", "poll_interval"),
    "maintenance_interval": ("scheduler", "maintenance_interval"),
    "batch_size": ("scheduler", "batch_size"),
    "dispatch_timeout": ("scheduler", "dispatch_timeout"),
    "timezone": ("scheduler", "timezone"),
    "default_from": ("scheduler", "default_from"),
    "reply_to": ("scheduler", "reply_to"),
    "start_active": ("scheduler", "start_active"),
    "defer_seconds": ("scheduler", "defer_seconds"),
    "stale_processing_seconds": ("scheduler", "stale_processing_seconds"),
    "max_requests": ("dispatcher", "max_requests"),
    "window_seconds": ("dispatcher", "window_seconds"),
    "max_backpressure": ("dispatcher", "max_backpressure"),
    "circuit_breaker_threshold": ("dispatcher", "circuit_breaker_threshold"),
    "cooldown_seconds": ("dispatcher", "cooldown_seconds"),
    "adaptive_throttling": ("dispatcher", "adaptive_throttling"),
    "provider": ("transport", "provider"),
    "api_key": ("transport", "api_key"),
    "base_url": ("transport", "base_url"),
    "tokens_per_second": ("transport", "tokens_per_second"),
    "max_tokens": ("transport", "max_tokens"),
    "max_attempts": ("transport", "max_attempts"),
    "base_delay": ("transport", "base_delay"),
    "request_timeout": ("transport", "request_timeout"),
    "smtp_host": ("transport", "smtp_host"),
    "smtp_port": ("transport", "smtp_port"),
    "smtp_user": ("transport", "smtp_user"),
    "smtp_password": ("transport", "smtp_password"),
    "smtp_use_tls": ("transport", "smtp_use_tls"),
    "secret": ("webhooks", "webhook_secret"),
    "default_tenant_id": ("webhooks", "default_tenant_id"),
    "soft_bounce_expiry_days": ("suppression", "soft_bounce_expiry_days"),
    "level": ("logging", "log_level"),
}

# Environment names that differ from the INI key
ENV_ALIASES = {"secret": "WEBHOOK_SECRET", "level": "LOG_LEVEL"}

# Unset or "none" means no limit
OPTIONAL_FLOATS = frozenset({"dispatch_timeout"})

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Convert ``raw`` to the type of ``default``; fall back on bad input."""
    value = raw.strip()
    if isinstance(default, bool):
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        logger.warning(f"Invalid boolean for {name}: {raw!r}, using default {default}")
        return default
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid int for {name}: {raw!r}, using default {default}")
            return default
    if isinstance(default, float):
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid float for {name}: {raw!r}, using default {default}")
            return default
    return value or default


def _optional_float(name: str, raw: str) -> float | None:
    value = raw.strip()
    if not value or value.lower() == "none":
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid float for {name}: {raw!r}, using no limit")
        return None


def load_scheduler_config(
    config_path: str | None = None,
    environ: dict[str, str] | None = None,
) -> SchedulerConfig:
    """Load configuration from the INI file and environment.

    Args:
        config_path: Explicit INI path. Falls back to ``PMS_CONFIG`` and then
            ``config.ini``; a missing default file is silently skipped.
        environ: Environment mapping, ``os.environ`` when omitted.

    Returns:
        SchedulerConfig with file values overridden by ``PMS_*`` variables.

    Raises:
        FileNotFoundError: If an explicitly given config file does not exist.
    """
    env = os.environ if environ is None else environ
    explicit = config_path or env.get(CONFIG_ENV_VAR)
    path = Path(explicit or DEFAULT_CONFIG_PATH)

    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.info(f"Loaded configuration from {path}")
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {path}")

    defaults = {f.name: f.default for f in fields(SchedulerConfig)}
    values: dict[str, Any] = {}
    for key, (section, attr) in SECTIONS.items():
        default = defaults[attr]
        raw = parser.get(section, key, fallback=None)
        env_name = ENV_PREFIX + ENV_ALIASES.get(key, key).upper()
        if env.get(env_name) is not None:
            raw = env[env_name]
        if raw is None:
            continue
        if attr in OPTIONAL_FLOATS:
            values[attr] = _optional_float(key, raw)
        elif default is None:
            values[attr] = raw.strip() or None
        else:
            values[attr] = _coerce(key, raw, default)
    return SchedulerConfig(**values)


def build_provider(config: SchedulerConfig) -> EmailProvider:
    """Create the email provider selected by ``config.provider``."""
    provider = (config.provider or "http").lower()
    if provider == "smtp":
        if not config.smtp_host:
            raise ValueError("smtp_host is required when provider = smtp")
        return SmtpProvider(
            config.smtp_host,
            config.smtp_port,
            user=config.smtp_user,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout=config.request_timeout,
            default_from=config.default_from,
        )
    if provider == "http":
        if not config.api_key:
            logger.warning("No api_key configured for the HTTP provider; sends will fail")
        return HttpApiProvider(
            config.api_key or "",
            base_url=config.base_url,
            timeout=config.request_timeout,
            default_from=config.default_from,
        )
    raise ValueError(f"Unknown transport provider: {config.provider}")


def build_scheduler(
    config: SchedulerConfig,
    *,
    metrics: SchedulerMetrics | None = None,
    test_mode: bool = False,
) -> tuple[EmailScheduler, WebhookProcessor]:
    """Wire the object graph described by ``config``.

    Returns:
        The scheduler and the webhook processor sharing its store.
    """
    metrics = metrics or SchedulerMetrics()
    persistence = Persistence(config.db_path)
    suppression = SuppressionList(
        persistence,
        soft_bounce_expiry_days=config.soft_bounce_expiry_days,
        metrics=metrics,
    )
    dispatcher = RateLimitedDispatcher(
        {DEFAULT_RULE_NAME: RateLimitRule(DEFAULT_RULE_NAME, config.max_requests, config.window_seconds)},
        max_backpressure=config.max_backpressure,
        circuit_breaker_threshold=config.circuit_breaker_threshold,
        breaker_cooldown=config.cooldown_seconds,
        adaptive_throttling=config.adaptive_throttling,
    )
    transport = EmailTransport(
        build_provider(config),
        max_tokens=config.max_tokens,
        tokens_per_second=config.tokens_per_second,
        max_attempts=config.max_attempts,
        base_delay=config.base_delay,
    )
    scheduler = EmailScheduler(
        persistence,
        transport,
        dispatcher,
        suppression=suppression,
        metrics=metrics,
        batch_size=config.batch_size,
        poll_interval=config.poll_interval,
        maintenance_interval=config.maintenance_interval,
        default_from=config.default_from,
        reply_to=config.reply_to,
        dispatch_timeout=config.dispatch_timeout,
        timezone=config.timezone,
        defer_seconds=config.defer_seconds,
        stale_processing_seconds=config.stale_processing_seconds,
        start_active=config.start_active,
        test_mode=test_mode,
    )
    webhooks = WebhookProcessor(
        config.webhook_secret,
        persistence,
        BounceHandler(suppression, persistence, metrics=metrics),
        default_tenant_id=config.default_tenant_id,
        metrics=metrics,
    )
    return scheduler, webhooks
