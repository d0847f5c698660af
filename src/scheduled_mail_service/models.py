# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the scheduled mail service.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - ScheduleEmailRequest / RecurringEmailRequest: Schedule API payloads
    - ScheduledEmail: A persisted email job
    - ScheduleResult / OperationResult: Typed results of tenant-facing calls
    - SendOptions / SendResult: Transport request and outcome
    - SuppressionEntry: Per-tenant block on a recipient
    - BounceEvent / ComplaintEvent: Normalised provider delivery events
    - BounceAnalysis / ComplaintAnalysis: Classifier decisions
    - DeliverabilityAlert: Threshold breach raised by bounce monitoring

Timestamps are persisted as integer UTC epoch seconds; the helpers
:func:`to_epoch` and :func:`from_epoch` convert at the storage boundary.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_epoch(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(ensure_aware(value).timestamp())


def from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def normalise_email(value: str) -> str:
    return value.strip().lower()


class Priority(str, Enum):
    """Job priority, used as the primary sort key for ready jobs."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {Priority.HIGH: 1, Priority.MEDIUM: 2, Priority.LOW: 3}


class EmailStatus(str, Enum):
    """Lifecycle status of a scheduled email.

    ``failed`` covers both the retryable state (``next_retry_at`` set) and
    the terminal state (``failed_at`` set, ``next_retry_at`` cleared).
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TemplateType(str, Enum):
    """Email templates the scheduler knows how to render."""

    REPORT_DELIVERY = "report_delivery"
    REPORT_READY = "report_ready"
    REPORT_SHARE = "report_share"
    WELCOME = "welcome"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_VERIFICATION = "account_verification"
    ASSESSMENT_REMINDER = "assessment_reminder"
    SYSTEM_NOTIFICATION = "system_notification"


class SuppressionType(str, Enum):
    BOUNCE = "bounce"
    COMPLAINT = "complaint"
    UNSUBSCRIBE = "unsubscribe"
    MANUAL = "manual"


class BounceType(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class ScheduleEmailRequest(BaseModel):
    """Payload accepted by the one-off Schedule API."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: Annotated[
        str,
        Field(min_length=1, max_length=64, description="Owning tenant identifier")
    ]
    template_type: Annotated[
        TemplateType,
        Field(description="Template used to render the email")
    ]
    recipient_email: Annotated[
        str,
        Field(min_length=3, max_length=320, description="Recipient address")
    ]
    subject: Annotated[
        str,
        Field(min_length=1, max_length=998, description="Email subject")
    ]
    template_data: Annotated[
        dict[str, Any],
        Field(default_factory=dict, description="Template variables")
    ]
    scheduled_at: Annotated[
        datetime,
        Field(description="Target dispatch time (naive values are UTC)")
    ]
    priority: Annotated[
        Priority,
        Field(default=Priority.MEDIUM, description="Dispatch priority")
    ]
    max_retries: Annotated[
        int,
        Field(default=3, ge=0, le=10, description="Retry ceiling for transient failures")
    ]
    campaign_id: Annotated[
        str | None,
        Field(default=None, max_length=64, description="Optional campaign identifier")
    ]

    @field_validator("recipient_email")
    @classmethod
    def recipient_must_be_address(cls, v: str) -> str:
        """Reject values that are clearly not email addresses."""
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("recipient_email is not a valid email address")
        return v

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class RecurringEmailRequest(BaseModel):
    """Payload accepted by the Recurring Schedule API.

    ``start_date`` defaults to now; ``end_date`` bounds the recurrence chain.
    """

    model_config = ConfigDict(extra="forbid")

    tenant_id: Annotated[str, Field(min_length=1, max_length=64)]
    template_type: TemplateType
    recipient_email: Annotated[str, Field(min_length=3, max_length=320)]
    subject: Annotated[str, Field(min_length=1, max_length=998)]
    template_data: Annotated[dict[str, Any], Field(default_factory=dict)]
    recurrence_rule: Annotated[
        str,
        Field(min_length=1, max_length=64, description="Cron-subset expression")
    ]
    start_date: datetime | None = None
    end_date: datetime | None = None
    priority: Priority = Priority.MEDIUM
    max_retries: Annotated[int, Field(default=3, ge=0, le=10)]
    campaign_id: Annotated[str | None, Field(default=None, max_length=64)]

    @field_validator("recipient_email")
    @classmethod
    def recipient_must_be_address(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("recipient_email is not a valid email address")
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_aware(cls, v: datetime | None) -> datetime | None:
        return ensure_aware(v) if v is not None else None


class ScheduledEmail(BaseModel):
    """A persisted email job as returned by the Query API."""

    id: str
    tenant_id: str
    template_type: TemplateType
    recipient_email: str
    subject: str
    template_data: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime
    next_retry_at: datetime | None = None
    retry_count: int = 0
    max_retries: int = 3
    processing_attempts: int = 0
    last_attempted_at: datetime | None = None
    status: EmailStatus = EmailStatus.PENDING
    priority: Priority = Priority.MEDIUM
    campaign_id: str | None = None
    is_recurring: bool = False
    recurrence_rule: str | None = None
    recurrence_end_at: datetime | None = None
    parent_scheduled_email_id: str | None = None
    provider_message_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    sent_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        if self.status in (EmailStatus.SENT, EmailStatus.CANCELLED):
            return True
        return self.status == EmailStatus.FAILED and self.failed_at is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ScheduledEmail:
        """Build a model from a ``scheduled_emails`` row dictionary."""
        data = dict(row)
        for key in (
            "scheduled_at", "next_retry_at", "last_attempted_at", "recurrence_end_at",
            "created_at", "updated_at", "sent_at", "failed_at",
        ):
            if key in data:
                data[key] = from_epoch(data[key])
        raw = data.get("template_data")
        if isinstance(raw, str):
            try:
                data["template_data"] = json.loads(raw)
            except json.JSONDecodeError:
                data["template_data"] = {"raw_template_data": raw}
        elif raw is None:
            data["template_data"] = {}
        data["is_recurring"] = bool(data.get("is_recurring"))
        data.pop("priority_rank", None)
        return cls.model_validate(data)


class ScheduleResult(BaseModel):
    """Result of a schedule request."""

    success: bool
    scheduled_email_id: str | None = None
    error: str | None = None


class OperationResult(BaseModel):
    """Result of a tenant-facing mutation such as cancel."""

    success: bool
    error: str | None = None


class SendOptions(BaseModel):
    """A fully rendered email handed to the transport."""

    to: str
    subject: str
    html: str | None = None
    text: str | None = None
    from_address: str | None = None
    reply_to: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class SendResult(BaseModel):
    """Outcome of a transport send.

    ``rate_limited`` marks provider throttling so callers can avoid charging
    it to the retry budget. ``permanent`` marks failures that must not be
    retried (authentication or validation errors).
    """

    success: bool
    message_id: str | None = None
    error: str | None = None
    rate_limited: bool = False
    permanent: bool = False
    error_kind: str | None = None


class SuppressionEntry(BaseModel):
    """A tenant-scoped block on a recipient address."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: Annotated[str, Field(min_length=1, max_length=64)]
    email: Annotated[str, Field(min_length=3, max_length=320)]
    suppression_type: SuppressionType = SuppressionType.MANUAL
    reason: str | None = None
    bounce_type: BounceType | None = None
    can_be_resubscribed: bool = True
    suppressed_at: datetime | None = None
    expires_at: datetime | None = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return normalise_email(v)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_aware(self.expires_at) <= (now or utc_now())

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SuppressionEntry:
        data = dict(row)
        for key in ("suppressed_at", "expires_at"):
            data[key] = from_epoch(data.get(key))
        data["can_be_resubscribed"] = bool(data.get("can_be_resubscribed"))
        return cls.model_validate(data)


class BounceEvent(BaseModel):
    """Normalised bounce notification coming from the provider."""

    tenant_id: str
    email: str
    bounce_type: str | None = None
    reason: str | None = None
    provider_message_id: str | None = None
    occurred_at: datetime = Field(default_factory=utc_now)


class ComplaintEvent(BaseModel):
    """Normalised spam complaint coming from the provider."""

    tenant_id: str
    email: str
    feedback_type: str | None = None
    provider_message_id: str | None = None
    occurred_at: datetime = Field(default_factory=utc_now)


class BounceAnalysis(BaseModel):
    """Classifier decision for a bounce.

    ``action`` is ``suppress``, ``retry`` or ``flag``; ``retry_after`` is the
    suggested delay in seconds and is advisory only.
    """

    bounce_type: str
    action: str
    severity: str
    category: str
    reason: str
    retry_after: int | None = None

    @property
    def should_suppress(self) -> bool:
        return self.action == "suppress"


class ComplaintAnalysis(BaseModel):
    """Classifier decision for a complaint; always suppresses."""

    complaint_type: str
    action: str = "suppress"
    severity: str = "critical"
    reputation_impact: int


class DeliverabilityAlert(BaseModel):
    """Bounce or complaint rate above the configured threshold."""

    tenant_id: str
    alert_type: str
    severity: str
    rate: float
    threshold: float
    message: str


class WebhookResult(BaseModel):
    """Summary of a processed webhook delivery event."""

    event_type: str
    tenant_id: str
    recipient_email: str | None = None
    provider_message_id: str | None = None
    suppressed: bool = False
    action: str | None = None
