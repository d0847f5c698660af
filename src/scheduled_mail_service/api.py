# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the scheduled mail service.

This module provides the REST API of the scheduler. It includes:

- Pydantic models defining request/response schemas for all endpoints
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- The provider webhook endpoint, authenticated by HMAC signature instead

The API supports operations including:
- Scheduling one-off and recurring emails, cancelling and listing them
- Managing per-tenant suppression lists
- Deliverability reports (bounce and complaint rates)
- Health checks and Prometheus metrics exposure
- Manual control of the scheduler (suspend/activate/run-now)

Example:
    Creating and running the API application::

        from scheduled_mail_service.api import create_app
        from scheduled_mail_service.config_loader import build_scheduler, load_scheduler_config

        scheduler, webhooks = build_scheduler(load_scheduler_config())
        app = create_app(scheduler, api_token="secret-token", webhook_processor=webhooks)

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .bounce import BounceHandler
from .core import EmailScheduler
from .errors import WebhookPayloadError, WebhookSignatureError, WebhookError
from .models import (
    BounceType,
    EmailStatus,
    RecurringEmailRequest,
    ScheduledEmail,
    ScheduleEmailRequest,
    SuppressionEntry,
    SuppressionType,
    WebhookResult,
)
from .webhooks import SIGNATURE_HEADER, WebhookProcessor

logger = logging.getLogger(__name__)

app = FastAPI(title="Scheduled Mail Service")
service: EmailScheduler | None = None
webhooks: WebhookProcessor | None = None
bounce_handler: BounceHandler | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class ScheduleResponse(CommandStatus):
    """Response returned by the schedule endpoints."""
    scheduled_email_id: Optional[str] = None


class CancelPayload(BaseModel):
    tenant_id: str


class ScheduledEmailsResponse(CommandStatus):
    scheduled_emails: List[ScheduledEmail]


class SuppressionPayload(BaseModel):
    """Manual suppression of a recipient for a tenant."""
    tenant_id: str
    email: str
    suppression_type: SuppressionType = SuppressionType.MANUAL
    reason: Optional[str] = None
    bounce_type: Optional[BounceType] = None
    expires_at: Optional[datetime] = None


class SuppressionResponse(CommandStatus):
    entry: SuppressionEntry


class SuppressionsResponse(CommandStatus):
    suppressions: List[SuppressionEntry]


class StatusResponse(CommandStatus):
    """Health surface: queue depth, dispatcher and transport state."""
    active: bool
    running: bool
    draining: bool
    queue_depth: Dict[str, int]
    dispatcher: Dict[str, Any]
    transport: Dict[str, Any]


class DeliverabilityResponse(CommandStatus):
    tenant_id: str
    hours: int
    bounces: Dict[str, Any]
    complaints: Dict[str, Any]
    alerts: List[Dict[str, Any]]


class WebhookResponse(CommandStatus):
    event_type: str
    action: Optional[str] = None
    suppressed: bool = False


def create_app(
    svc: EmailScheduler,
    api_token: str | None = None,
    webhook_processor: WebhookProcessor | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`scheduled_mail_service.core.EmailScheduler` that
        implements the business logic for each endpoint.
    api_token:
        Optional secret used to protect every endpoint except ``/health`` and
        the webhook. When provided, the ``X-API-Token`` header must match.
    webhook_processor:
        Processor for provider delivery events. Without it the webhook
        endpoint answers 500.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service, webhooks, bounce_handler
    service = svc
    webhooks = webhook_processor
    bounce_handler = (
        webhook_processor.bounce_handler
        if webhook_processor is not None
        else BounceHandler(svc.suppression, svc.persistence, metrics=svc.metrics)
    )

    if lifespan is not None:
        api = FastAPI(title="Scheduled Mail Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        body = await request.body()
        logger.error(f"Validation error on {request.method} {request.url.path}")
        logger.error(f"Request body: {body.decode('utf-8', errors='replace')}")
        logger.error(f"Validation errors: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_encoder(exc.errors())}
        )

    def _service() -> EmailScheduler:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_():
        """Return token levels, circuit states and queue depth by status."""
        result = await _service().handle_command("status", {})
        return StatusResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        result = await _service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Suspend the drain loop; scheduling keeps working."""
        result = await _service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        """Resume the drain loop and trigger a cycle."""
        result = await _service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @api.post("/scheduled-emails", response_model=ScheduleResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def schedule_email(payload: ScheduleEmailRequest):
        """Persist a one-off email job."""
        result = await _service().schedule_email(payload)
        if not result.success:
            logger.error(f"schedule-email failed for tenant {payload.tenant_id}: {result.error}")
            raise HTTPException(status_code=400, detail=result.error)
        return ScheduleResponse(ok=True, scheduled_email_id=result.scheduled_email_id)

    @api.post("/scheduled-emails/recurring", response_model=ScheduleResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def schedule_recurring_email(payload: RecurringEmailRequest):
        """Persist the first occurrence of a recurring email job."""
        result = await _service().schedule_recurring_email(payload)
        if not result.success:
            logger.error(f"schedule-recurring failed for tenant {payload.tenant_id}: {result.error}")
            raise HTTPException(status_code=400, detail=result.error)
        return ScheduleResponse(ok=True, scheduled_email_id=result.scheduled_email_id)

    @api.post("/scheduled-emails/{scheduled_email_id}/cancel", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_scheduled_email(scheduled_email_id: str, payload: CancelPayload):
        """Cancel a pending job of the given tenant."""
        result = await _service().cancel_scheduled_email(scheduled_email_id, payload.tenant_id)
        if not result.success:
            raise HTTPException(404, result.error)
        return BasicOkResponse(ok=True)

    @api.get("/tenants/{tenant_id}/scheduled-emails", response_model=ScheduledEmailsResponse, dependencies=[auth_dependency])
    async def list_scheduled_emails(
        tenant_id: str,
        status: Optional[EmailStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ):
        """List a tenant's jobs, earliest scheduled first."""
        jobs = await _service().get_scheduled_emails(tenant_id, status=status, limit=limit, offset=offset)
        return ScheduledEmailsResponse(ok=True, scheduled_emails=jobs)

    @api.post("/suppressions", response_model=SuppressionResponse, dependencies=[auth_dependency])
    async def add_suppression(payload: SuppressionPayload):
        """Add or replace a suppression entry."""
        entry = await _service().suppression.suppress(
            payload.tenant_id,
            payload.email,
            payload.suppression_type,
            payload.reason,
            bounce_type=payload.bounce_type,
            expires_at=payload.expires_at,
        )
        return SuppressionResponse(ok=True, entry=entry)

    @api.get("/tenants/{tenant_id}/suppressions", response_model=SuppressionsResponse, dependencies=[auth_dependency])
    async def list_suppressions(tenant_id: str, suppression_type: Optional[SuppressionType] = None):
        entries = await _service().suppression.list(
            tenant_id, suppression_type.value if suppression_type else None
        )
        return SuppressionsResponse(ok=True, suppressions=entries)

    @api.delete("/tenants/{tenant_id}/suppressions/{email}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_suppression(tenant_id: str, email: str):
        """Remove a suppression entry."""
        if not await _service().suppression.unsuppress(tenant_id, email):
            raise HTTPException(404, f"Suppression for '{email}' not found")
        return BasicOkResponse(ok=True)

    @api.get("/tenants/{tenant_id}/deliverability", response_model=DeliverabilityResponse, dependencies=[auth_dependency])
    async def deliverability(tenant_id: str, hours: int = 24):
        """Bounce and complaint rates with active alerts."""
        if not service or bounce_handler is None:
            raise HTTPException(500, "Service not initialized")
        report = await bounce_handler.deliverability_report(tenant_id, hours)
        return DeliverabilityResponse(ok=True, **report)

    @api.post("/webhooks/resend", response_model=WebhookResponse, response_model_exclude_none=True)
    async def resend_webhook(request: Request):
        """Provider delivery events, authenticated by HMAC signature."""
        if webhooks is None:
            raise HTTPException(500, "Webhook secret not configured")
        body = await request.body()
        try:
            result: WebhookResult = await webhooks.handle(body, request.headers.get(SIGNATURE_HEADER))
        except WebhookSignatureError as exc:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, str(exc))
        except WebhookPayloadError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
        except WebhookError as exc:
            logger.error(f"Webhook rejected: {exc}")
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
        return WebhookResponse(
            ok=True,
            event_type=result.event_type,
            action=result.action,
            suppressed=result.suppressed,
        )

    api.include_router(router)
    return api
