# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the email scheduler.

This module provides the EmailScheduler class, the central coordinator of
the scheduled mail service. It ties together:

- the persistent queue of one-off and recurring email jobs
- the per-tenant rate-limited dispatcher
- the email transport
- the suppression list, consulted before every send
- retry with exponential backoff (2, 4, 8... minutes)
- expansion of recurring jobs into their next occurrence

Two background loops run while the scheduler is started: the drain loop
(every ``poll_interval`` seconds, 30 by default) and the maintenance loop
(every ``maintenance_interval`` seconds, 5 minutes by default). The drain
loop never overlaps itself; every job is claimed with an atomic conditional
update before it is processed, which also protects against a second service
instance.

Job state machine::

    pending --claim--> processing --ok--> sent (+ next occurrence if recurring)
                                  --transient--> failed, next_retry_at set
                                  --exhausted/permanent--> failed, failed_at set
    failed (retry due) --claim--> processing
    pending --cancel--> cancelled

Example:
    Running the scheduler::

        scheduler = EmailScheduler(persistence, transport, dispatcher)
        await scheduler.start()
        result = await scheduler.schedule_email(ScheduleEmailRequest(...))
        ...
        await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import math
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from .cron import next_occurrence, validate_cron_expression
from .dispatcher import DEFAULT_RULE_NAME, RateLimitedDispatcher
from .errors import DispatchError, TemplateError
from .logger import get_logger
from .models import (
    EmailStatus,
    OperationResult,
    RecurringEmailRequest,
    ScheduledEmail,
    ScheduleEmailRequest,
    ScheduleResult,
    SendOptions,
    SendResult,
    to_epoch,
    utc_now,
)
from .persistence import Persistence
from .prometheus import SchedulerMetrics
from .suppression import SuppressionList
from .templates import TemplateRegistry, default_registry
from .transport import EmailTransport

DEFAULT_BATCH_SIZE = 20
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_MAINTENANCE_INTERVAL = 300.0
DEFAULT_DEFER_SECONDS = 60
DEFAULT_STALE_PROCESSING_SECONDS = 3600
MAX_RETRIES_PREFIX = "Max retries exceeded: "
SUPPRESSED_PREFIX = "Recipient suppressed: "


def calculate_retry_delay(retry_count: int) -> int:
    """Backoff in seconds after the ``retry_count``-th failure: 2**n minutes."""
    return (2 ** max(1, int(retry_count))) * 60


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


class EmailScheduler:
    """Central orchestrator for scheduled email delivery.

    Collaborators are injected so that a single instance can be built at
    process startup and shared by the HTTP API, the CLI and tests.

    Attributes:
        persistence: Queue, suppression and event store.
        transport: Email transport used for every send.
        dispatcher: Per-tenant rate limiter and circuit breaker.
        templates: Template registry rendering job payloads.
        suppression: Suppression list consulted before dispatch.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        persistence: Persistence,
        transport: EmailTransport,
        dispatcher: RateLimitedDispatcher | None = None,
        *,
        templates: TemplateRegistry | None = None,
        suppression: SuppressionList | None = None,
        metrics: SchedulerMetrics | None = None,
        logger=None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL,
        default_from: str | None = None,
        reply_to: str | None = None,
        dispatch_timeout: float | None = None,
        rate_limit_rule: str = DEFAULT_RULE_NAME,
        timezone: str = "UTC",
        defer_seconds: int = DEFAULT_DEFER_SECONDS,
        stale_processing_seconds: int | None = DEFAULT_STALE_PROCESSING_SECONDS,
        start_active: bool = True,
        test_mode: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the scheduler.

        Args:
            persistence: Store for jobs, suppressions and events.
            transport: Transport performing the actual send.
            dispatcher: Rate-limited dispatcher; a default one is created
                when omitted.
            templates: Template registry; defaults to the built-in templates.
            suppression: Suppression list; built on ``persistence`` when omitted.
            metrics: Prometheus metrics collector.
            logger: Custom logger instance.
            batch_size: Maximum jobs pulled per drain cycle.
            poll_interval: Seconds between drain cycles.
            maintenance_interval: Seconds between maintenance sweeps.
            default_from: Sender address for every email.
            reply_to: Optional Reply-To address.
            dispatch_timeout: Deadline in seconds for one dispatch, or None.
            rate_limit_rule: Dispatcher rule applied to tenant resources.
            timezone: IANA zone in which recurrence rules are evaluated.
            defer_seconds: Delay applied when dispatch is throttled.
            stale_processing_seconds: Jobs stuck in ``processing`` longer
                than this are released by maintenance; None disables it.
            start_active: Whether the drain loop processes jobs at start.
            test_mode: Disable timed wake-ups; loops only run on ``run now``.
            clock: Returns the current aware datetime.
        """
        self.persistence = persistence
        self.transport = transport
        self.metrics = metrics or SchedulerMetrics()
        self.dispatcher = dispatcher or RateLimitedDispatcher()
        self.templates = templates or default_registry()
        self.suppression = suppression or SuppressionList(persistence, metrics=self.metrics)
        self.logger = logger or get_logger("EmailScheduler")

        self.batch_size = max(1, int(batch_size))
        self.default_from = default_from
        self.reply_to = reply_to
        self.dispatch_timeout = dispatch_timeout
        self.rate_limit_rule = rate_limit_rule
        self.timezone = ZoneInfo(timezone)
        self.defer_seconds = max(1, int(defer_seconds))
        self.stale_processing_seconds = stale_processing_seconds
        self._clock = clock
        self._test_mode = bool(test_mode)
        self._poll_interval = math.inf if self._test_mode else max(0.05, float(poll_interval))
        self._maintenance_interval = (
            math.inf if self._test_mode else max(1.0, float(maintenance_interval))
        )

        self._active = start_active
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._wake_maintenance = asyncio.Event()
        self._draining = False
        self._recurrence_lock = asyncio.Lock()
        self._task_drain: asyncio.Task | None = None
        self._task_maintenance: asyncio.Task | None = None

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        await self.persistence.init_db()

    async def start(self) -> None:
        """Initialize storage and spawn the drain and maintenance loops."""
        await self.init()
        self._stop.clear()
        self._task_drain = asyncio.create_task(self._drain_loop(), name="scheduler-drain-loop")
        self._task_maintenance = asyncio.create_task(
            self._maintenance_loop(), name="scheduler-maintenance-loop"
        )
        self.logger.info(
            "Email scheduler started (batch=%d, poll=%ss)", self.batch_size, self._poll_interval
        )

    async def shutdown(self) -> None:
        """Stop both loops and wait for an in-flight drain cycle to finish."""
        self._stop.set()
        self._wake_event.set()
        self._wake_maintenance.set()
        await asyncio.gather(
            *(task for task in (self._task_drain, self._task_maintenance) if task),
            return_exceptions=True,
        )
        self._task_drain = None
        self._task_maintenance = None
        await self.dispatcher.shutdown(timeout=self.dispatch_timeout)
        self.logger.info("Email scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task_drain is not None and not self._task_drain.done()

    # ---------------------------------------------------------------- public API
    async def schedule_email(self, request: ScheduleEmailRequest | dict[str, Any]) -> ScheduleResult:
        """Persist a one-off email job.

        Validation failures are returned as ``success=False``; nothing is
        enqueued in that case.
        """
        try:
            req = (
                request
                if isinstance(request, ScheduleEmailRequest)
                else ScheduleEmailRequest.model_validate(request)
            )
            self.templates.validate(req.template_type, req.template_data)
        except ValidationError as exc:
            return ScheduleResult(success=False, error=_format_validation_error(exc))
        except TemplateError as exc:
            return ScheduleResult(success=False, error=str(exc))

        try:
            job_id = await self.persistence.insert_scheduled_email({
                "tenant_id": req.tenant_id,
                "template_type": req.template_type.value,
                "recipient_email": req.recipient_email,
                "subject": req.subject,
                "template_data": req.template_data,
                "scheduled_at": to_epoch(req.scheduled_at),
                "priority": req.priority.value,
                "max_retries": req.max_retries,
                "campaign_id": req.campaign_id,
            })
        except Exception as exc:
            self.logger.exception("Failed to schedule email for tenant %s", req.tenant_id)
            return ScheduleResult(success=False, error=f"Failed to schedule email: {exc}")

        self.logger.info(
            "Scheduled %s email %s for tenant %s at %s",
            req.template_type.value, job_id, req.tenant_id, req.scheduled_at.isoformat(),
        )
        if req.scheduled_at <= self._clock():
            self._wake_event.set()
        return ScheduleResult(success=True, scheduled_email_id=job_id)

    async def schedule_recurring_email(
        self, request: RecurringEmailRequest | dict[str, Any]
    ) -> ScheduleResult:
        """Persist the first occurrence of a recurring email job.

        The first occurrence is scheduled at ``start_date`` (now when
        omitted); each successful send then inserts the next one.
        """
        try:
            req = (
                request
                if isinstance(request, RecurringEmailRequest)
                else RecurringEmailRequest.model_validate(request)
            )
            self.templates.validate(req.template_type, req.template_data)
        except ValidationError as exc:
            return ScheduleResult(success=False, error=_format_validation_error(exc))
        except TemplateError as exc:
            return ScheduleResult(success=False, error=str(exc))

        if not validate_cron_expression(req.recurrence_rule):
            return ScheduleResult(success=False, error="Invalid cron expression")
        start = req.start_date or self._clock()
        if req.end_date is not None and req.end_date <= start:
            return ScheduleResult(success=False, error="end_date must be after start_date")

        try:
            job_id = await self.persistence.insert_scheduled_email({
                "tenant_id": req.tenant_id,
                "template_type": req.template_type.value,
                "recipient_email": req.recipient_email,
                "subject": req.subject,
                "template_data": req.template_data,
                "scheduled_at": to_epoch(start),
                "priority": req.priority.value,
                "max_retries": req.max_retries,
                "campaign_id": req.campaign_id,
                "is_recurring": True,
                "recurrence_rule": req.recurrence_rule,
                "recurrence_end_at": to_epoch(req.end_date),
            })
        except Exception as exc:
            self.logger.exception("Failed to schedule recurring email for tenant %s", req.tenant_id)
            return ScheduleResult(success=False, error=f"Failed to schedule recurring email: {exc}")

        self.logger.info(
            "Scheduled recurring %s email %s for tenant %s (%s)",
            req.template_type.value, job_id, req.tenant_id, req.recurrence_rule,
        )
        return ScheduleResult(success=True, scheduled_email_id=job_id)

    async def cancel_scheduled_email(self, scheduled_email_id: str, tenant_id: str) -> OperationResult:
        """Cancel a pending job; any other status is reported as a failure."""
        try:
            cancelled = await self.persistence.cancel_scheduled_email(scheduled_email_id, tenant_id)
        except Exception as exc:
            self.logger.exception("Failed to cancel scheduled email %s", scheduled_email_id)
            return OperationResult(success=False, error=f"Failed to cancel scheduled email: {exc}")
        if not cancelled:
            return OperationResult(success=False, error="Scheduled email not found or not pending")
        self.logger.info("Cancelled scheduled email %s for tenant %s", scheduled_email_id, tenant_id)
        return OperationResult(success=True)

    async def get_scheduled_emails(
        self,
        tenant_id: str,
        *,
        status: EmailStatus | str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ScheduledEmail]:
        status_value = EmailStatus(status).value if status else None
        rows = await self.persistence.list_scheduled_emails(
            tenant_id, status=status_value, limit=limit, offset=offset
        )
        return [ScheduledEmail.from_row(row) for row in rows]

    async def get_scheduled_email(self, scheduled_email_id: str, tenant_id: str) -> ScheduledEmail | None:
        row = await self.persistence.get_scheduled_email(scheduled_email_id, tenant_id)
        return ScheduledEmail.from_row(row) if row else None

    # ---------------------------------------------------------------- drain cycle
    async def process_queue(self) -> int:
        """Run one drain cycle and return the number of jobs handled.

        Skips immediately when a cycle is already running or the scheduler
        is suspended. A store failure while fetching aborts the cycle; a
        failure on one job never affects the others.
        """
        if self._draining:
            self.logger.debug("Drain cycle already in flight, skipping")
            return 0
        if not self._active:
            return 0
        self._draining = True
        try:
            now_ts = to_epoch(self._clock())
            try:
                batch = await self.persistence.fetch_ready(limit=self.batch_size, now_ts=now_ts)
            except Exception:
                self.logger.exception("Queue store unavailable, drain cycle aborted")
                return 0
            if not batch:
                await self._refresh_gauges()
                return 0

            # Tenants dispatch concurrently; within a tenant the priority order is kept.
            by_tenant: dict[str, list[dict[str, Any]]] = defaultdict(list)
            for row in batch:
                by_tenant[row["tenant_id"]].append(row)
            counts = await asyncio.gather(
                *(self._process_tenant_batch(rows) for rows in by_tenant.values())
            )
            await self._refresh_gauges()
            return sum(counts)
        finally:
            self._draining = False

    async def _process_tenant_batch(self, rows: list[dict[str, Any]]) -> int:
        handled = 0
        for row in rows:
            try:
                if await self._process_job(ScheduledEmail.from_row(row)):
                    handled += 1
            except Exception:
                self.logger.exception("Unexpected error processing scheduled email %s", row.get("id"))
        return handled

    async def _process_job(self, job: ScheduledEmail) -> bool:
        """Claim and dispatch one job. Returns False if another worker owns it."""
        if not await self.persistence.claim_scheduled_email(job.id, to_epoch(self._clock())):
            self.logger.debug("Scheduled email %s already claimed, skipping", job.id)
            return False
        job.processing_attempts += 1

        if await self.suppression.is_suppressed(job.tenant_id, job.recipient_email):
            self.metrics.inc_blocked(job.tenant_id)
            await self._fail_permanently(job, f"{SUPPRESSED_PREFIX}{job.recipient_email}")
            return True

        try:
            rendered = self.templates.render(job)
        except TemplateError as exc:
            await self._fail_permanently(job, str(exc))
            return True

        options = SendOptions(
            to=job.recipient_email,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            from_address=self.default_from,
            reply_to=self.reply_to,
            tags={
                "tenant_id": job.tenant_id,
                "scheduled_email_id": job.id,
                "template_type": job.template_type.value,
            },
        )
        try:
            result = await self.dispatcher.schedule(
                lambda: self.transport.send(options),
                priority=job.priority.value,
                resource=f"email_tenant_{job.tenant_id}",
                rate_limit_rule=self.rate_limit_rule,
                timeout=self.dispatch_timeout,
                is_failure=lambda r: not r.success and not r.rate_limited,
            )
        except DispatchError as exc:
            await self._defer(job, f"Dispatch deferred: {exc}")
            return True
        except asyncio.TimeoutError:
            result = SendResult(
                success=False,
                error=f"Dispatch timed out after {self.dispatch_timeout}s",
                error_kind="timeout",
            )
        except Exception as exc:
            result = SendResult(success=False, error=str(exc) or type(exc).__name__, error_kind="transient")

        if result.success:
            await self._mark_sent(job, result)
        elif result.rate_limited:
            await self._defer(job, result.error or "Rate limited")
        elif result.permanent:
            await self._fail_permanently(job, result.error or "Permanent delivery failure")
        else:
            await self._handle_failure(job, result.error or "Unknown delivery failure")
        return True

    async def _mark_sent(self, job: ScheduledEmail, result: SendResult) -> None:
        now = self._clock()
        await self.persistence.update_status(
            job.id,
            EmailStatus.SENT.value,
            {
                "sent_at": to_epoch(now),
                "provider_message_id": result.message_id,
                "next_retry_at": None,
                "error_message": None,
            },
            expected_status=EmailStatus.PROCESSING.value,
        )
        self.metrics.inc_sent(job.tenant_id)
        self.logger.info("Sent scheduled email %s to %s", job.id, job.recipient_email)
        try:
            await self.persistence.insert_event({
                "tenant_id": job.tenant_id,
                "provider_message_id": result.message_id,
                "scheduled_email_id": job.id,
                "event_type": "sent",
                "recipient_email": job.recipient_email,
                "occurred_at": to_epoch(now),
            })
        except Exception:
            self.logger.exception("Failed to record sent event for %s", job.id)

        if job.is_recurring:
            try:
                await self._schedule_next_recurrence(job, now)
            except Exception:
                # The maintenance sweep inserts the missing occurrence later.
                self.logger.exception("Failed to schedule next occurrence of %s", job.id)

    async def _handle_failure(self, job: ScheduledEmail, error: str) -> None:
        """Apply retry/backoff policy after a transient failure."""
        now_ts = to_epoch(self._clock())
        retry_count = job.retry_count + 1
        if retry_count <= job.max_retries:
            delay = calculate_retry_delay(retry_count)
            await self.persistence.update_status(
                job.id,
                EmailStatus.FAILED.value,
                {
                    "retry_count": retry_count,
                    "next_retry_at": now_ts + delay,
                    "error_message": error,
                },
                expected_status=EmailStatus.PROCESSING.value,
            )
            self.metrics.inc_retried(job.tenant_id)
            self.logger.warning(
                "Scheduled email %s failed (attempt %d/%d), retrying in %ds: %s",
                job.id, retry_count, job.max_retries, delay, error,
            )
            return
        await self.persistence.update_status(
            job.id,
            EmailStatus.FAILED.value,
            {
                "retry_count": retry_count,
                "next_retry_at": None,
                "failed_at": now_ts,
                "error_message": f"{MAX_RETRIES_PREFIX}{error}",
            },
            expected_status=EmailStatus.PROCESSING.value,
        )
        self.metrics.inc_failed(job.tenant_id)
        self.logger.error("Scheduled email %s failed permanently after %d attempts: %s", job.id, retry_count, error)

    async def _fail_permanently(self, job: ScheduledEmail, error: str) -> None:
        await self.persistence.update_status(
            job.id,
            EmailStatus.FAILED.value,
            {"next_retry_at": None, "failed_at": to_epoch(self._clock()), "error_message": error},
            expected_status=EmailStatus.PROCESSING.value,
        )
        self.metrics.inc_failed(job.tenant_id)
        self.logger.error("Scheduled email %s will not be retried: %s", job.id, error)

    async def _defer(self, job: ScheduledEmail, reason: str) -> None:
        """Push a throttled job back without charging its retry budget."""
        await self.persistence.update_status(
            job.id,
            EmailStatus.FAILED.value,
            {"next_retry_at": to_epoch(self._clock()) + self.defer_seconds, "error_message": reason},
            expected_status=EmailStatus.PROCESSING.value,
        )
        self.metrics.inc_deferred(job.tenant_id)
        self.logger.info("Scheduled email %s deferred %ds: %s", job.id, self.defer_seconds, reason)

    async def _schedule_next_recurrence(self, job: ScheduledEmail, now: datetime) -> str | None:
        """Insert the single next occurrence of ``job``, linked to it.

        Returns the new job id, or None when the rule is invalid, the chain
        has passed its end date, or a successor already exists.
        """
        async with self._recurrence_lock:
            if await self.persistence.has_successor(job.id):
                return None
            next_at = next_occurrence(job.recurrence_rule or "", now.astimezone(self.timezone))
            if next_at is None:
                self.logger.warning("Recurring email %s has invalid rule %r", job.id, job.recurrence_rule)
                await self.persistence.close_recurrence(job.id)
                return None
            if job.recurrence_end_at is not None and next_at > job.recurrence_end_at:
                self.logger.debug("Recurring email %s reached its end date", job.id)
                await self.persistence.close_recurrence(job.id)
                return None
            new_id = await self.persistence.insert_scheduled_email({
                "tenant_id": job.tenant_id,
                "template_type": job.template_type.value,
                "recipient_email": job.recipient_email,
                "subject": job.subject,
                "template_data": job.template_data,
                "scheduled_at": to_epoch(next_at),
                "priority": job.priority.value,
                "max_retries": job.max_retries,
                "campaign_id": job.campaign_id,
                "is_recurring": True,
                "recurrence_rule": job.recurrence_rule,
                "recurrence_end_at": to_epoch(job.recurrence_end_at),
                "parent_scheduled_email_id": job.id,
            })
        self.logger.info("Next occurrence of %s scheduled as %s at %s", job.id, new_id, next_at.isoformat())
        return new_id

    # --------------------------------------------------------------- maintenance
    async def run_maintenance(self) -> dict[str, int]:
        """Best-effort housekeeping; each step logs its own failure.

        - inserts the missing next occurrence of sent recurring jobs
        - removes expired suppression entries
        - releases jobs stuck in ``processing``
        """
        stats = {"recurrences_repaired": 0, "suppressions_expired": 0, "stale_released": 0}
        try:
            now = self._clock()
            orphans = await self.persistence.list_recurring_without_successor(to_epoch(now))
            for row in orphans:
                if await self._schedule_next_recurrence(ScheduledEmail.from_row(row), now):
                    stats["recurrences_repaired"] += 1
        except Exception:
            self.logger.exception("Recurring email maintenance failed")
        try:
            stats["suppressions_expired"] = await self.suppression.cleanup_expired(self._clock())
        except Exception:
            self.logger.exception("Suppression cleanup failed")
        if self.stale_processing_seconds and not self._draining:
            try:
                threshold = to_epoch(self._clock()) - int(self.stale_processing_seconds)
                stats["stale_released"] = await self.persistence.release_stale_processing(threshold)
            except Exception:
                self.logger.exception("Releasing stale jobs failed")
        if any(stats.values()):
            self.logger.info("Maintenance completed: %s", stats)
        return stats

    # ------------------------------------------------------------------- health
    async def get_health_status(self) -> dict[str, Any]:
        """Dispatcher token levels, circuit states and queue depth by status."""
        try:
            queue_depth = await self.persistence.count_by_status()
        except Exception:
            self.logger.exception("Failed to read queue depth")
            queue_depth = {}
        return {
            "active": self._active,
            "running": self.running,
            "draining": self._draining,
            "queue_depth": queue_depth,
            "dispatcher": self.dispatcher.health_status(),
            "transport": self.transport.rate_limit_status(),
        }

    def get_metrics(self) -> dict[str, Any]:
        return self.dispatcher.get_metrics()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``: Trigger an immediate drain cycle
        - ``suspend`` / ``activate``: Pause or resume the drain loop
        - ``scheduleEmail``, ``scheduleRecurringEmail``, ``cancelScheduledEmail``,
          ``listScheduledEmails``: Job management
        - ``suppress``, ``unsuppress``, ``listSuppressions``: Suppression list
        - ``status``: Health snapshot

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        match cmd:
            case "run now":
                self._wake_event.set()
                return {"ok": True}
            case "suspend":
                self._active = False
                return {"ok": True, "active": False}
            case "activate":
                self._active = True
                self._wake_event.set()
                return {"ok": True, "active": True}
            case "scheduleEmail":
                result = await self.schedule_email(payload)
                return {"ok": result.success, **result.model_dump(exclude_none=True)}
            case "scheduleRecurringEmail":
                result = await self.schedule_recurring_email(payload)
                return {"ok": result.success, **result.model_dump(exclude_none=True)}
            case "cancelScheduledEmail":
                outcome = await self.cancel_scheduled_email(payload.get("id", ""), payload.get("tenant_id", ""))
                return {"ok": outcome.success, **outcome.model_dump(exclude_none=True)}
            case "listScheduledEmails":
                tenant_id = payload.get("tenant_id")
                if not tenant_id:
                    return {"ok": False, "error": "tenant_id required"}
                try:
                    jobs = await self.get_scheduled_emails(
                        tenant_id,
                        status=payload.get("status"),
                        limit=payload.get("limit"),
                        offset=payload.get("offset"),
                    )
                except ValueError as exc:
                    return {"ok": False, "error": str(exc)}
                return {"ok": True, "scheduled_emails": [job.model_dump(mode="json") for job in jobs]}
            case "suppress":
                try:
                    expires_at = payload.get("expires_at")
                    if isinstance(expires_at, str):
                        expires_at = datetime.fromisoformat(expires_at)
                    entry = await self.suppression.suppress(
                        payload["tenant_id"],
                        payload["email"],
                        payload.get("suppression_type", "manual"),
                        payload.get("reason"),
                        bounce_type=payload.get("bounce_type"),
                        expires_at=expires_at,
                    )
                except (KeyError, ValueError) as exc:
                    return {"ok": False, "error": f"invalid suppression: {exc}"}
                return {"ok": True, "entry": entry.model_dump(mode="json")}
            case "unsuppress":
                removed = await self.suppression.unsuppress(payload.get("tenant_id", ""), payload.get("email", ""))
                if removed:
                    return {"ok": True}
                return {"ok": False, "error": "suppression not found"}
            case "listSuppressions":
                entries = await self.suppression.list(payload.get("tenant_id", ""), payload.get("suppression_type"))
                return {"ok": True, "suppressions": [e.model_dump(mode="json") for e in entries]}
            case "status":
                return {"ok": True, **await self.get_health_status()}
            case _:
                return {"ok": False, "error": "unknown command"}

    # -------------------------------------------------------------------- loops
    async def _drain_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.process_queue()
            except Exception as exc:  # pragma: no cover - process_queue guards itself
                self.logger.exception("Unhandled error in drain loop: %s", exc)
            await self._wait_for_wakeup(self._wake_event, self._poll_interval)

    async def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            await self._wait_for_wakeup(self._wake_maintenance, self._maintenance_interval)
            if self._stop.is_set():
                break
            await self.run_maintenance()

    async def _refresh_gauges(self) -> None:
        try:
            self.metrics.set_queue_depth(await self.persistence.count_by_status())
        except Exception:  # pragma: no cover - gauges are best effort
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_circuit_states(self.dispatcher.health_status())

    async def _wait_for_wakeup(self, event: asyncio.Event, timeout: float | None) -> None:
        """Sleep until ``timeout`` elapses or ``event`` is set."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await event.wait()
            event.clear()
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return
        event.clear()
