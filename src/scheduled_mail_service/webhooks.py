# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider webhook verification and ingestion.

Delivery events (delivered, bounced, complained, opened, clicked) arrive as
JSON bodies signed with HMAC-SHA256 over the raw body using a shared secret.
The signature is checked before the body is even parsed; a rejected request
has no side effects and never reaches the bounce classifier.

The tenant owning an event is taken from the ``tenant_id`` (or legacy
``practice_id``) tag attached when the email was sent. Failing that, it is
resolved through the provider message id stored on the job, and finally
through the configured default tenant.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .bounce import BounceHandler
from .errors import WebhookError, WebhookPayloadError, WebhookSignatureError
from .logger import get_logger
from .models import BounceEvent, ComplaintEvent, WebhookResult, to_epoch, utc_now
from .persistence import Persistence

SIGNATURE_HEADER = "resend-signature"
SIGNATURE_PREFIX = "sha256="

EVENT_TYPES = {
    "email.sent": "accepted",
    "email.delivered": "delivered",
    "email.delivery_delayed": "delivery_delayed",
    "email.bounced": "bounced",
    "email.complained": "complained",
    "email.opened": "opened",
    "email.clicked": "clicked",
}
TENANT_TAGS = ("tenant_id", "practice_id")


def compute_signature(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 digest of ``body``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a webhook signature.

    Accepts an optional ``sha256=`` prefix. Missing or malformed inputs
    return False instead of raising.
    """
    if not signature or not secret or not isinstance(body, (bytes, bytearray)):
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(bytes(body), secret)
    try:
        return hmac.compare_digest(expected, provided.lower())
    except TypeError:
        return False


class _BounceInfo(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: str | None = None
    reason: str | None = None
    message: str | None = None


class _ComplaintInfo(BaseModel):
    model_config = ConfigDict(extra="allow")
    type: str | None = None


class ResendEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    email_id: str | None = None
    to: list[str] = Field(default_factory=list)
    subject: str | None = None
    created_at: datetime | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    bounce: _BounceInfo | None = None
    complaint: _ComplaintInfo | None = None

    @field_validator("to", mode="before")
    @classmethod
    def to_as_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return list(v)

    @field_validator("tags", mode="before")
    @classmethod
    def tags_as_dict(cls, v: Any) -> dict[str, str]:
        """Accept both ``[{"name", "value"}]`` and plain mappings."""
        if not v:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return {str(t["name"]): str(t.get("value", "")) for t in v if isinstance(t, dict) and "name" in t}


class ResendWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    created_at: datetime | None = None
    data: ResendEventData


class WebhookProcessor:
    """Verifies, records and routes provider delivery events."""

    def __init__(
        self,
        secret: str | None,
        persistence: Persistence,
        bounce_handler: BounceHandler,
        *,
        default_tenant_id: str | None = None,
        metrics=None,
        logger=None,
    ):
        self.secret = secret
        self.persistence = persistence
        self.bounce_handler = bounce_handler
        self.default_tenant_id = default_tenant_id
        self.metrics = metrics
        self.logger = logger or get_logger("Webhooks")

    def parse(self, body: bytes) -> ResendWebhookEvent:
        try:
            raw = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise WebhookPayloadError("Invalid JSON body") from exc
        try:
            return ResendWebhookEvent.model_validate(raw)
        except ValidationError as exc:
            raise WebhookPayloadError(f"Invalid webhook payload: {exc.error_count()} errors") from exc

    async def resolve_tenant(self, event: ResendWebhookEvent) -> str | None:
        for tag in TENANT_TAGS:
            if event.data.tags.get(tag):
                return event.data.tags[tag]
        if event.data.email_id:
            job = await self.persistence.find_by_provider_message_id(event.data.email_id)
            if job:
                return job["tenant_id"]
        return self.default_tenant_id

    async def handle(self, body: bytes, signature: str | None) -> WebhookResult:
        """Verify and process one webhook request.

        Raises:
            WebhookError: No secret is configured.
            WebhookSignatureError: Signature missing or invalid.
            WebhookPayloadError: Body is not a usable event.
        """
        if not self.secret:
            raise WebhookError("Webhook secret not configured")
        if not signature:
            self.logger.warning("Rejected webhook without signature")
            raise WebhookSignatureError("Missing signature")
        if not verify_signature(body, signature, self.secret):
            self.logger.warning("Rejected webhook with invalid signature")
            raise WebhookSignatureError("Invalid signature")

        event = self.parse(body)
        tenant_id = await self.resolve_tenant(event)
        if not tenant_id:
            self.logger.warning("Could not determine tenant for webhook event %s", event.data.email_id)
            raise WebhookPayloadError("Tenant not found")

        event_type = EVENT_TYPES.get(event.type)
        recipient = event.data.to[0] if event.data.to else None
        result = WebhookResult(
            event_type=event_type or event.type,
            tenant_id=tenant_id,
            recipient_email=recipient,
            provider_message_id=event.data.email_id,
        )
        if event_type is None:
            self.logger.info("Ignoring unsupported webhook event type %s", event.type)
            result.action = "ignored"
            return result

        bounce = event.data.bounce
        complaint = event.data.complaint
        occurred_at = event.created_at or event.data.created_at or utc_now()
        await self.persistence.insert_event({
            "tenant_id": tenant_id,
            "provider_message_id": event.data.email_id,
            "scheduled_email_id": event.data.tags.get("scheduled_email_id"),
            "event_type": event_type,
            "recipient_email": recipient,
            "bounce_type": bounce.type if bounce else None,
            "bounce_reason": (bounce.reason or bounce.message) if bounce else None,
            "complaint_type": complaint.type if complaint else None,
            "occurred_at": to_epoch(occurred_at),
            "payload": event.model_dump(mode="json"),
        })
        if self.metrics is not None:
            self.metrics.inc_webhook_event(event_type)

        if not recipient or event_type not in ("bounced", "complained"):
            result.action = "recorded"
            return result
        # The event is already recorded; handler errors are reported, not raised.
        try:
            if event_type == "bounced":
                analysis = await self.bounce_handler.process_bounce(BounceEvent(
                    tenant_id=tenant_id,
                    email=recipient,
                    bounce_type=bounce.type if bounce else None,
                    reason=(bounce.reason or bounce.message) if bounce else None,
                    provider_message_id=event.data.email_id,
                    occurred_at=occurred_at,
                ))
                result.suppressed = analysis.should_suppress
            else:
                analysis = await self.bounce_handler.process_complaint(ComplaintEvent(
                    tenant_id=tenant_id,
                    email=recipient,
                    feedback_type=complaint.type if complaint else None,
                    provider_message_id=event.data.email_id,
                    occurred_at=occurred_at,
                ))
                result.suppressed = True
            result.action = analysis.action
        except Exception:
            self.logger.exception("Failed to process %s webhook for %s", event_type, tenant_id)
            if self.metrics is not None:
                self.metrics.inc_webhook_error(event_type)
            result.action = "error"
        return result
