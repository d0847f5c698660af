# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy shared by the scheduler components.

Tenant-facing operations (schedule, cancel) never raise these; they return
typed result models instead. The exceptions below travel between internal
components and are caught at the orchestrator or API boundary.
"""


class SchedulerError(Exception):
    """Base class for all scheduled mail service errors."""

    code = "scheduler_error"


class CronExpressionError(SchedulerError, ValueError):
    """Raised when a recurrence rule is not a valid cron-subset expression."""

    code = "invalid_cron_expression"


class DispatchError(SchedulerError):
    """Base class for errors raised by the rate-limited dispatcher."""

    code = "dispatch_error"

    def __init__(self, message: str, resource: str | None = None):
        super().__init__(message)
        self.resource = resource


class CircuitOpenError(DispatchError):
    """Raised when a resource's circuit breaker is open and tasks fail fast."""

    code = "circuit_open"


class BackpressureError(DispatchError):
    """Raised when too many tasks are already queued for a resource."""

    code = "backpressure"


class ProviderError(SchedulerError):
    """Error reported by an email provider.

    Attributes:
        status_code: HTTP or SMTP status code when the provider returned one.
        kind: One of ``rate_limit``, ``auth``, ``validation`` or ``transient``.
    """

    code = "provider_error"

    def __init__(self, message: str, status_code: int | None = None, kind: str = "transient"):
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind


class TemplateError(SchedulerError):
    """Base class for template rendering errors."""

    code = "template_error"


class UnsupportedTemplateError(TemplateError):
    """Raised when no handler is registered for a template type."""

    code = "unsupported_template"


class TemplateDataError(TemplateError):
    """Raised when template data lacks a key the handler requires."""

    code = "invalid_template_data"


class WebhookError(SchedulerError):
    """Base class for webhook ingestion errors."""

    code = "webhook_error"


class WebhookSignatureError(WebhookError):
    """Raised when a webhook signature is missing or does not match."""

    code = "invalid_signature"


class WebhookPayloadError(WebhookError):
    """Raised when a verified webhook body cannot be interpreted."""

    code = "invalid_payload"
