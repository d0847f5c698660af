import asyncio
import json
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from scheduled_mail_service.bounce import BounceHandler
from scheduled_mail_service.core import (
    MAX_RETRIES_PREFIX,
    SUPPRESSED_PREFIX,
    EmailScheduler,
    calculate_retry_delay,
)
from scheduled_mail_service.dispatcher import RateLimitedDispatcher
from scheduled_mail_service.models import SendResult, to_epoch
from scheduled_mail_service.persistence import Persistence
from scheduled_mail_service.webhooks import WebhookProcessor, compute_signature

# Wednesday
NOW = datetime(2024, 1, 3, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class DummyTransport:
    """Transport replaying queued results; succeeds once the queue is empty."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.sent = []

    async def send(self, options):
        self.sent.append(options)
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")

    def rate_limit_status(self):
        return {"tokens_available": 20.0, "rate_limited": False}


async def make_scheduler(tmp_path, transport=None, **kwargs):
    persistence = Persistence(str(tmp_path / "scheduler.db"))
    clock = kwargs.pop("clock", FrozenClock())
    scheduler = EmailScheduler(
        persistence,
        transport or DummyTransport(),
        default_from="noreply@practice.example",
        test_mode=True,
        clock=clock,
        **kwargs,
    )
    await scheduler.init()
    return scheduler, clock


def _request(**overrides):
    data = {
        "tenant_id": "practice-1",
        "template_type": "welcome",
        "recipient_email": "parent@example.com",
        "subject": "Welcome aboard",
        "template_data": {"name": "Ada"},
        "scheduled_at": NOW - timedelta(minutes=1),
    }
    data.update(overrides)
    return data


async def _job(scheduler, job_id):
    return await scheduler.get_scheduled_email(job_id, "practice-1")


def test_calculate_retry_delay():
    assert [calculate_retry_delay(n) for n in (0, 1, 2, 3, 4)] == [120, 120, 240, 480, 960]


@pytest.mark.asyncio
async def test_due_job_is_sent(tmp_path):
    transport = DummyTransport()
    scheduler, _ = await make_scheduler(tmp_path, transport)
    result = await scheduler.schedule_email(_request())
    assert result.success is True

    assert await scheduler.process_queue() == 1
    job = await _job(scheduler, result.scheduled_email_id)
    assert job.status.value == "sent"
    assert job.provider_message_id == "msg-1"
    assert job.sent_at == NOW
    assert job.processing_attempts == 1

    options = transport.sent[0]
    assert options.to == "parent@example.com"
    assert options.from_address == "noreply@practice.example"
    assert options.tags == {
        "tenant_id": "practice-1",
        "scheduled_email_id": result.scheduled_email_id,
        "template_type": "welcome",
    }
    assert "Ada" in options.text
    assert scheduler.metrics.registry.get_sample_value("pms_sent_total", {"tenant_id": "practice-1"}) == 1.0
    assert await scheduler.persistence.count_events("practice-1", 0) == {"sent": 1}

    # Nothing left to do
    assert await scheduler.process_queue() == 0


@pytest.mark.asyncio
async def test_future_job_waits(tmp_path):
    scheduler, clock = await make_scheduler(tmp_path)
    result = await scheduler.schedule_email(_request(scheduled_at=NOW + timedelta(hours=1)))
    assert await scheduler.process_queue() == 0
    clock.advance(hours=1)
    assert await scheduler.process_queue() == 1
    assert (await _job(scheduler, result.scheduled_email_id)).status.value == "sent"


@pytest.mark.asyncio
async def test_schedule_validation_errors(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    bad_email = await scheduler.schedule_email(_request(recipient_email="not-an-address"))
    assert bad_email.success is False
    assert "recipient_email" in bad_email.error

    unsupported = await scheduler.schedule_email(_request(template_type="password_reset"))
    assert unsupported.success is False
    assert unsupported.error == "Unsupported template type: password_reset"

    missing = await scheduler.schedule_email(_request(template_type="report_delivery", template_data={}))
    assert missing.success is False
    assert "Missing template data" in missing.error

    assert await scheduler.get_scheduled_emails("practice-1") == []


@pytest.mark.asyncio
async def test_transient_failure_retries_with_backoff(tmp_path):
    transport = DummyTransport([
        SendResult(success=False, error="boom"),
        RuntimeError("connection reset"),
    ])
    scheduler, clock = await make_scheduler(tmp_path, transport)
    job_id = (await scheduler.schedule_email(_request())).scheduled_email_id

    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "failed"
    assert job.retry_count == 1
    assert job.next_retry_at == NOW + timedelta(minutes=2)
    assert job.failed_at is None
    assert job.error_message == "boom"

    assert await scheduler.process_queue() == 0
    clock.advance(minutes=2)
    assert await scheduler.process_queue() == 1
    job = await _job(scheduler, job_id)
    assert job.retry_count == 2
    assert job.next_retry_at == clock.now + timedelta(minutes=4)
    assert job.error_message == "connection reset"

    clock.advance(minutes=4)
    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "sent"
    assert job.processing_attempts == 3
    assert scheduler.metrics.registry.get_sample_value("pms_retried_total", {"tenant_id": "practice-1"}) == 2.0


@pytest.mark.asyncio
async def test_exhausted_retries_fail_terminally(tmp_path):
    transport = DummyTransport([SendResult(success=False, error="mailbox unavailable")])
    scheduler, clock = await make_scheduler(tmp_path, transport)
    job_id = (await scheduler.schedule_email(_request(max_retries=0))).scheduled_email_id

    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "failed"
    assert job.failed_at == NOW
    assert job.next_retry_at is None
    assert job.error_message == f"{MAX_RETRIES_PREFIX}mailbox unavailable"
    assert job.is_terminal

    clock.advance(days=1)
    assert await scheduler.process_queue() == 0
    assert scheduler.metrics.registry.get_sample_value("pms_failed_total", {"tenant_id": "practice-1"}) == 1.0


@pytest.mark.asyncio
async def test_rate_limited_send_is_deferred_without_charging_retries(tmp_path):
    transport = DummyTransport([SendResult(success=False, error="slow down", rate_limited=True)])
    scheduler, clock = await make_scheduler(tmp_path, transport, defer_seconds=90)
    job_id = (await scheduler.schedule_email(_request(max_retries=0))).scheduled_email_id

    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "failed"
    assert job.retry_count == 0
    assert job.next_retry_at == NOW + timedelta(seconds=90)
    assert job.failed_at is None
    assert scheduler.metrics.registry.get_sample_value("pms_deferred_total", {"tenant_id": "practice-1"}) == 1.0
    assert scheduler.dispatcher.health_status()["email_tenant_practice-1"]["failed"] == 0

    clock.advance(seconds=90)
    await scheduler.process_queue()
    assert (await _job(scheduler, job_id)).status.value == "sent"


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(tmp_path):
    transport = DummyTransport([SendResult(success=False, error="Invalid API key", permanent=True, error_kind="auth")])
    scheduler, _ = await make_scheduler(tmp_path, transport)
    job_id = (await scheduler.schedule_email(_request())).scheduled_email_id

    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "failed"
    assert job.retry_count == 0
    assert job.failed_at == NOW
    assert job.error_message == "Invalid API key"


@pytest.mark.asyncio
async def test_open_circuit_defers_job(tmp_path):
    dispatcher = RateLimitedDispatcher(
        circuit_breaker_threshold=0.5, breaker_min_samples=1, adaptive_throttling=False
    )
    transport = DummyTransport([SendResult(success=False, error="provider down")])
    scheduler, _ = await make_scheduler(tmp_path, transport, dispatcher=dispatcher)
    first = (await scheduler.schedule_email(_request())).scheduled_email_id
    await scheduler.process_queue()
    assert (await _job(scheduler, first)).retry_count == 1
    assert dispatcher.is_circuit_open("email_tenant_practice-1")

    second = (await scheduler.schedule_email(_request())).scheduled_email_id
    await scheduler.process_queue()
    job = await _job(scheduler, second)
    assert job.status.value == "failed"
    assert job.retry_count == 0
    assert job.error_message.startswith("Dispatch deferred")
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_suppressed_recipient_is_blocked(tmp_path):
    transport = DummyTransport()
    scheduler, _ = await make_scheduler(tmp_path, transport)
    await scheduler.suppression.suppress("practice-1", "Parent@Example.com", "unsubscribe")
    job_id = (await scheduler.schedule_email(_request())).scheduled_email_id

    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "failed"
    assert job.failed_at is not None
    assert job.error_message == f"{SUPPRESSED_PREFIX}parent@example.com"
    assert transport.sent == []
    assert scheduler.metrics.registry.get_sample_value("pms_blocked_total", {"tenant_id": "practice-1"}) == 1.0

    # Other tenants are not affected
    other = (await scheduler.schedule_email(_request(tenant_id="practice-2"))).scheduled_email_id
    await scheduler.process_queue()
    assert (await scheduler.get_scheduled_email(other, "practice-2")).status.value == "sent"


@pytest.mark.asyncio
async def test_recurring_job_schedules_next_occurrence(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    payload = {k: v for k, v in _request().items() if k != "scheduled_at"}
    result = await scheduler.schedule_recurring_email({**payload, "recurrence_rule": "0 9 * * 1"})
    assert result.success is True
    parent = await _job(scheduler, result.scheduled_email_id)
    assert parent.is_recurring is True
    assert parent.scheduled_at == NOW

    await scheduler.process_queue()
    jobs = await scheduler.get_scheduled_emails("practice-1")
    assert len(jobs) == 2
    child = next(j for j in jobs if j.id != parent.id)
    assert child.status.value == "pending"
    assert child.parent_scheduled_email_id == parent.id
    assert child.scheduled_at == datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
    assert child.recurrence_rule == "0 9 * * 1"
    assert child.template_data == {"name": "Ada"}


@pytest.mark.asyncio
async def test_recurrence_stops_at_end_date(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    payload = {k: v for k, v in _request().items() if k != "scheduled_at"}
    payload.update(recurrence_rule="0 9 * * 1", end_date=NOW + timedelta(days=2))
    result = await scheduler.schedule_recurring_email(payload)
    await scheduler.process_queue()
    jobs = await scheduler.get_scheduled_emails("practice-1")
    assert [j.id for j in jobs] == [result.scheduled_email_id]
    assert jobs[0].status.value == "sent"


@pytest.mark.asyncio
async def test_recurring_validation(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    base = {k: v for k, v in _request().items() if k != "scheduled_at"}
    invalid = await scheduler.schedule_recurring_email({**base, "recurrence_rule": "*/5 * * * *"})
    assert invalid.success is False
    assert invalid.error == "Invalid cron expression"

    backwards = await scheduler.schedule_recurring_email({
        **base,
        "recurrence_rule": "0 9 * * 1",
        "start_date": NOW,
        "end_date": NOW - timedelta(days=1),
    })
    assert backwards.success is False
    assert backwards.error == "end_date must be after start_date"


@pytest.mark.asyncio
async def test_cancel(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    job_id = (await scheduler.schedule_email(_request(scheduled_at=NOW + timedelta(days=1)))).scheduled_email_id

    wrong_tenant = await scheduler.cancel_scheduled_email(job_id, "practice-2")
    assert wrong_tenant.success is False
    assert (await scheduler.cancel_scheduled_email(job_id, "practice-1")).success is True
    again = await scheduler.cancel_scheduled_email(job_id, "practice-1")
    assert again.success is False
    assert again.error == "Scheduled email not found or not pending"
    assert (await _job(scheduler, job_id)).status.value == "cancelled"


@pytest.mark.asyncio
async def test_maintenance_repairs_missing_occurrence(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    p = scheduler.persistence
    parent = await p.insert_scheduled_email({
        "tenant_id": "practice-1",
        "template_type": "welcome",
        "recipient_email": "parent@example.com",
        "subject": "Weekly",
        "scheduled_at": to_epoch(NOW - timedelta(hours=1)),
        "is_recurring": True,
        "recurrence_rule": "0 9 * * 1",
    })
    await p.claim_scheduled_email(parent)
    await p.update_status(parent, "sent", {"sent_at": to_epoch(NOW)})

    stats = await scheduler.run_maintenance()
    assert stats["recurrences_repaired"] == 1
    assert await p.has_successor(parent)
    assert (await scheduler.run_maintenance())["recurrences_repaired"] == 0


@pytest.mark.asyncio
async def test_maintenance_releases_stale_processing(tmp_path):
    scheduler, clock = await make_scheduler(tmp_path, stale_processing_seconds=600)
    job_id = (await scheduler.schedule_email(_request())).scheduled_email_id
    await scheduler.persistence.claim_scheduled_email(job_id, to_epoch(NOW))
    clock.advance(minutes=11)
    assert (await scheduler.run_maintenance())["stale_released"] == 1
    assert await scheduler.process_queue() == 1


@pytest.mark.asyncio
async def test_overlapping_drain_cycles_are_skipped(tmp_path):
    release = asyncio.Event()

    class SlowTransport(DummyTransport):
        async def send(self, options):
            await release.wait()
            return await super().send(options)

    transport = SlowTransport()
    scheduler, _ = await make_scheduler(tmp_path, transport)
    await scheduler.schedule_email(_request())

    first = asyncio.create_task(scheduler.process_queue())
    await asyncio.sleep(0.05)
    assert await scheduler.process_queue() == 0
    release.set()
    assert await first == 1
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_suspend_and_activate(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    await scheduler.schedule_email(_request())
    assert await scheduler.handle_command("suspend") == {"ok": True, "active": False}
    assert await scheduler.process_queue() == 0
    assert (await scheduler.handle_command("activate"))["active"] is True
    assert await scheduler.process_queue() == 1


@pytest.mark.asyncio
async def test_handle_command(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    assert await scheduler.handle_command("bogus") == {"ok": False, "error": "unknown command"}

    scheduled = await scheduler.handle_command("scheduleEmail", {
        **_request(), "scheduled_at": (NOW + timedelta(hours=2)).isoformat(),
    })
    assert scheduled["ok"] is True
    job_id = scheduled["scheduled_email_id"]

    listed = await scheduler.handle_command("listScheduledEmails", {"tenant_id": "practice-1"})
    assert [j["id"] for j in listed["scheduled_emails"]] == [job_id]
    assert (await scheduler.handle_command("listScheduledEmails", {}))["ok"] is False

    cancelled = await scheduler.handle_command("cancelScheduledEmail", {"id": job_id, "tenant_id": "practice-1"})
    assert cancelled == {"ok": True, "success": True}

    suppressed = await scheduler.handle_command("suppress", {
        "tenant_id": "practice-1", "email": "x@example.com", "expires_at": "2099-01-01T00:00:00+00:00",
    })
    assert suppressed["ok"] is True
    assert suppressed["entry"]["expires_at"].startswith("2099-01-01")
    assert (await scheduler.handle_command("suppress", {"tenant_id": "practice-1"}))["ok"] is False

    listed = await scheduler.handle_command("listSuppressions", {"tenant_id": "practice-1"})
    assert [e["email"] for e in listed["suppressions"]] == ["x@example.com"]
    assert (await scheduler.handle_command("unsuppress", {"tenant_id": "practice-1", "email": "x@example.com"}))["ok"]
    assert (await scheduler.handle_command("unsuppress", {"tenant_id": "practice-1", "email": "x@example.com"}))["ok"] is False

    status = await scheduler.handle_command("status")
    assert status["ok"] is True
    assert status["queue_depth"]["cancelled"] == 1
    assert status["running"] is False


@pytest.mark.asyncio
async def test_background_loop_processes_due_jobs(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    await scheduler.start()
    try:
        assert scheduler.running
        job_id = (await scheduler.schedule_email(_request())).scheduled_email_id
        for _ in range(100):
            if (await _job(scheduler, job_id)).status.value == "sent":
                break
            await asyncio.sleep(0.02)
        assert (await _job(scheduler, job_id)).status.value == "sent"
    finally:
        await scheduler.shutdown()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_three_retries_back_off_then_fail(tmp_path):
    transport = DummyTransport([SendResult(success=False, error="timeout")] * 4)
    scheduler, clock = await make_scheduler(tmp_path, transport)
    job_id = (await scheduler.schedule_email(_request(max_retries=3))).scheduled_email_id

    trace = []
    for _ in range(4):
        assert await scheduler.process_queue() == 1
        job = await _job(scheduler, job_id)
        wait = job.next_retry_at - clock.now if job.next_retry_at else None
        trace.append((job.retry_count, wait))
        if wait:
            clock.advance(seconds=wait.total_seconds())
    assert trace == [
        (1, timedelta(minutes=2)),
        (2, timedelta(minutes=4)),
        (3, timedelta(minutes=8)),
        (4, None),
    ]
    assert job.status.value == "failed"
    assert job.is_terminal
    assert job.error_message == f"{MAX_RETRIES_PREFIX}timeout"

    clock.advance(days=1)
    ready = await scheduler.persistence.fetch_ready(limit=10, now_ts=to_epoch(clock.now))
    assert job_id not in [row["id"] for row in ready]
    assert await scheduler.process_queue() == 0
    assert len(transport.sent) == 4


@pytest.mark.asyncio
async def test_cancel_processing_job_is_refused(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    job_id = (await scheduler.schedule_email(_request())).scheduled_email_id
    assert await scheduler.persistence.claim_scheduled_email(job_id, to_epoch(NOW))
    before = await scheduler.persistence.get_scheduled_email(job_id)

    outcome = await scheduler.cancel_scheduled_email(job_id, "practice-1")
    assert outcome.success is False
    assert await scheduler.persistence.get_scheduled_email(job_id) == before
    assert before["status"] == "processing"


@pytest.mark.asyncio
async def test_hard_bounce_webhook_blocks_later_sends(tmp_path):
    transport = DummyTransport()
    scheduler, _ = await make_scheduler(tmp_path, transport)
    handler = BounceHandler(scheduler.suppression, scheduler.persistence, metrics=scheduler.metrics)
    processor = WebhookProcessor("whsec", scheduler.persistence, handler, metrics=scheduler.metrics)
    body = json.dumps({
        "type": "email.bounced",
        "data": {
            "email_id": "re_9",
            "to": ["parent@example.com"],
            "tags": [{"name": "tenant_id", "value": "practice-1"}],
            "bounce": {"type": "hard", "reason": "550 5.1.1 user unknown"},
        },
    }).encode()
    assert (await processor.handle(body, compute_signature(body, "whsec"))).suppressed is True

    job_id = (await scheduler.schedule_email(_request())).scheduled_email_id
    await scheduler.process_queue()
    job = await _job(scheduler, job_id)
    assert job.status.value == "failed"
    assert job.error_message == f"{SUPPRESSED_PREFIX}parent@example.com"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_processing_attempts_cover_retries_across_defers(tmp_path):
    transport = DummyTransport([
        SendResult(success=False, error="boom"),
        SendResult(success=False, error="slow down", rate_limited=True),
        SendResult(success=False, error="boom again"),
    ])
    scheduler, clock = await make_scheduler(tmp_path, transport, defer_seconds=60)
    job_id = (await scheduler.schedule_email(_request(max_retries=3))).scheduled_email_id

    for wait in (timedelta(minutes=2), timedelta(seconds=60), timedelta(minutes=4), None):
        await scheduler.process_queue()
        job = await _job(scheduler, job_id)
        assert job.processing_attempts >= job.retry_count
        if wait:
            assert job.next_retry_at == clock.now + wait
            clock.advance(seconds=wait.total_seconds())
    assert job.status.value == "sent"
    assert job.processing_attempts == 4
    assert job.retry_count == 2


@pytest.mark.asyncio
async def test_maintenance_skips_finished_chains(tmp_path):
    scheduler, _ = await make_scheduler(tmp_path)
    p = scheduler.persistence
    weekly = {
        "tenant_id": "practice-1",
        "template_type": "welcome",
        "recipient_email": "parent@example.com",
        "subject": "Weekly",
        "is_recurring": True,
        "recurrence_rule": "0 9 * * 1",
    }
    for _ in range(120):
        await p.insert_scheduled_email({
            **weekly,
            "scheduled_at": to_epoch(NOW - timedelta(days=30)),
            "recurrence_end_at": to_epoch(NOW - timedelta(days=1)),
        })
    # Still open, but the next Monday falls after its end date
    closing = await p.insert_scheduled_email({
        **weekly,
        "scheduled_at": to_epoch(NOW - timedelta(days=20)),
        "recurrence_end_at": to_epoch(NOW + timedelta(days=2)),
    })
    orphan = await p.insert_scheduled_email({**weekly, "scheduled_at": to_epoch(NOW - timedelta(hours=1))})
    async with aiosqlite.connect(p.db_path) as db:
        await db.execute("UPDATE scheduled_emails SET status = 'sent', sent_at = scheduled_at")
        await db.commit()

    stats = await scheduler.run_maintenance()
    assert stats["recurrences_repaired"] == 1
    assert await p.has_successor(orphan)
    assert not await p.has_successor(closing)
    assert await p.list_recurring_without_successor(to_epoch(NOW)) == []
    assert (await scheduler.run_maintenance())["recurrences_repaired"] == 0
