import json
import time

import pytest

from scheduled_mail_service.bounce import BounceHandler
from scheduled_mail_service.errors import WebhookError, WebhookPayloadError, WebhookSignatureError
from scheduled_mail_service.persistence import Persistence
from scheduled_mail_service.prometheus import SchedulerMetrics
from scheduled_mail_service.suppression import SuppressionList
from scheduled_mail_service.webhooks import WebhookProcessor, compute_signature, verify_signature

SECRET = "whsec_test"


async def make_processor(tmp_path, secret=SECRET, default_tenant_id=None):
    persistence = Persistence(str(tmp_path / "scheduler.db"))
    await persistence.init_db()
    metrics = SchedulerMetrics()
    handler = BounceHandler(SuppressionList(persistence, metrics=metrics), persistence, metrics=metrics)
    processor = WebhookProcessor(
        secret, persistence, handler, default_tenant_id=default_tenant_id, metrics=metrics
    )
    return processor, persistence, metrics


def _body(event_type, data):
    return json.dumps({"type": event_type, "created_at": "2024-05-01T10:00:00Z", "data": data}).encode()


def _signed(body, secret=SECRET):
    return "sha256=" + compute_signature(body, secret)


def test_verify_signature():
    body = b'{"type":"email.delivered"}'
    digest = compute_signature(body, SECRET)
    assert verify_signature(body, digest, SECRET)
    assert verify_signature(body, "sha256=" + digest, SECRET)
    assert verify_signature(body, "SHA256=" + digest.upper(), SECRET)
    assert not verify_signature(body, digest, "other-secret")
    assert not verify_signature(body + b" ", digest, SECRET)
    assert not verify_signature(body, None, SECRET)
    assert not verify_signature(body, digest, None)
    assert not verify_signature(body, "sha256=zzé", SECRET)


@pytest.mark.asyncio
async def test_missing_secret_rejects(tmp_path):
    processor, _, _ = await make_processor(tmp_path, secret=None)
    body = _body("email.delivered", {"to": ["a@example.com"]})
    with pytest.raises(WebhookError) as excinfo:
        await processor.handle(body, _signed(body))
    assert type(excinfo.value) is WebhookError


@pytest.mark.asyncio
async def test_bad_signature_has_no_side_effects(tmp_path):
    processor, persistence, _ = await make_processor(tmp_path)
    body = _body("email.bounced", {
        "to": ["a@example.com"],
        "tags": [{"name": "tenant_id", "value": "t"}],
        "bounce": {"type": "hard", "reason": "user unknown"},
    })
    with pytest.raises(WebhookSignatureError):
        await processor.handle(body, None)
    with pytest.raises(WebhookSignatureError):
        await processor.handle(body, _signed(body, "wrong"))
    assert await persistence.count_events("t", 0) == {}
    assert await persistence.get_suppression("t", "a@example.com") is None


@pytest.mark.asyncio
async def test_hard_bounce_is_recorded_and_suppressed(tmp_path):
    processor, persistence, metrics = await make_processor(tmp_path)
    body = _body("email.bounced", {
        "email_id": "re_1",
        "to": ["Bounced@Example.com"],
        "tags": [{"name": "tenant_id", "value": "t"}, {"name": "scheduled_email_id", "value": "job-1"}],
        "bounce": {"type": "hard", "message": "550 5.1.1 mailbox not found"},
    })
    result = await processor.handle(body, _signed(body))
    assert result.event_type == "bounced"
    assert result.tenant_id == "t"
    assert result.action == "suppress"
    assert result.suppressed is True
    assert await processor.bounce_handler.suppression.is_suppressed("t", "bounced@example.com")
    assert await persistence.count_events("t", 0) == {"bounced": 1}
    assert metrics.registry.get_sample_value("pms_webhook_events_total", {"event_type": "bounced"}) == 1.0


@pytest.mark.asyncio
async def test_complaint_is_suppressed(tmp_path):
    processor, _, _ = await make_processor(tmp_path)
    body = _body("email.complained", {
        "to": "angry@example.com",
        "tags": {"practice_id": "legacy-practice"},
        "complaint": {"type": "abuse"},
    })
    result = await processor.handle(body, _signed(body))
    assert result.tenant_id == "legacy-practice"
    assert result.action == "suppress"
    assert result.suppressed is True


@pytest.mark.asyncio
async def test_tenant_resolved_from_provider_message_id(tmp_path):
    processor, persistence, _ = await make_processor(tmp_path)
    job_id = await persistence.insert_scheduled_email({
        "tenant_id": "practice-9",
        "template_type": "welcome",
        "recipient_email": "a@example.com",
        "subject": "Hi",
        "scheduled_at": int(time.time()),
    })
    await persistence.claim_scheduled_email(job_id)
    await persistence.update_status(job_id, "sent", {"provider_message_id": "re_42"})

    body = _body("email.delivered", {"email_id": "re_42", "to": ["a@example.com"]})
    result = await processor.handle(body, _signed(body))
    assert result.tenant_id == "practice-9"
    assert result.action == "recorded"
    assert await persistence.count_events("practice-9", 0) == {"delivered": 1}


@pytest.mark.asyncio
async def test_default_tenant_and_unknown_tenant(tmp_path):
    processor, _, _ = await make_processor(tmp_path)
    body = _body("email.opened", {"email_id": "re_nope", "to": ["a@example.com"]})
    with pytest.raises(WebhookPayloadError):
        await processor.handle(body, _signed(body))

    processor.default_tenant_id = "fallback"
    result = await processor.handle(body, _signed(body))
    assert result.tenant_id == "fallback"
    assert result.event_type == "opened"


@pytest.mark.asyncio
async def test_unsupported_event_type_is_ignored(tmp_path):
    processor, persistence, _ = await make_processor(tmp_path, default_tenant_id="t")
    body = _body("contact.created", {"to": ["a@example.com"]})
    result = await processor.handle(body, _signed(body))
    assert result.action == "ignored"
    assert result.event_type == "contact.created"
    assert await persistence.count_events("t", 0) == {}


@pytest.mark.asyncio
async def test_sent_event_is_stored_as_accepted(tmp_path):
    processor, persistence, _ = await make_processor(tmp_path, default_tenant_id="t")
    body = _body("email.sent", {"to": ["a@example.com"]})
    result = await processor.handle(body, _signed(body))
    assert result.event_type == "accepted"
    assert await persistence.count_events("t", 0) == {"accepted": 1}


@pytest.mark.asyncio
async def test_malformed_body_rejected_after_signature(tmp_path):
    processor, _, _ = await make_processor(tmp_path)
    body = b"not json"
    with pytest.raises(WebhookPayloadError):
        await processor.handle(body, _signed(body))
    body = json.dumps({"data": {}}).encode()
    with pytest.raises(WebhookPayloadError):
        await processor.handle(body, _signed(body))


@pytest.mark.asyncio
async def test_handler_error_is_logged_and_counted(tmp_path, monkeypatch, caplog):
    processor, persistence, metrics = await make_processor(tmp_path)

    async def broken(event):
        raise RuntimeError("suppression store unavailable")

    monkeypatch.setattr(processor.bounce_handler, "process_bounce", broken)
    body = _body("email.bounced", {
        "to": ["a@example.com"],
        "tags": [{"name": "tenant_id", "value": "t"}],
        "bounce": {"type": "hard", "reason": "user unknown"},
    })
    with caplog.at_level("ERROR"):
        result = await processor.handle(body, _signed(body))
    assert result.action == "error"
    assert result.suppressed is False
    assert "Failed to process bounced webhook" in caplog.text
    assert await persistence.count_events("t", 0) == {"bounced": 1}
    assert metrics.registry.get_sample_value("pms_webhook_errors_total", {"event_type": "bounced"}) == 1.0
