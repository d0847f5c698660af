import aiosmtplib
import pytest

from scheduled_mail_service.errors import ProviderError
from scheduled_mail_service.models import SendOptions
from scheduled_mail_service.transport import (
    EmailProvider,
    EmailTransport,
    HttpApiProvider,
    SmtpProvider,
    classify_smtp_error,
    classify_status,
)


class ScriptedProvider(EmailProvider):
    """Provider that replays a list of outcomes: message ids or exceptions."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def send(self, options):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _options(**overrides):
    data = {"to": "parent@example.com", "subject": "Hi", "html": "<p>Hi</p>", "text": "Hi"}
    data.update(overrides)
    return SendOptions(**data)


def make_transport(provider, **kwargs):
    sleep = SleepRecorder()
    return EmailTransport(provider, sleep=sleep, **kwargs), sleep


@pytest.mark.parametrize(
    "status,message,kind",
    [
        (429, "", "rate_limit"),
        (500, "Rate limit reached", "rate_limit"),
        (401, "", "auth"),
        (403, "", "auth"),
        (None, "Invalid API key", "auth"),
        (400, "", "validation"),
        (422, "", "validation"),
        (None, "invalid email address", "validation"),
        (500, "internal error", "transient"),
        (503, "", "transient"),
    ],
)
def test_classify_status(status, message, kind):
    assert classify_status(status, message) == kind


def test_classify_smtp_error():
    assert classify_smtp_error(aiosmtplib.SMTPAuthenticationError(535, "bad credentials")) == "auth"
    assert classify_smtp_error(aiosmtplib.SMTPResponseException(530, "auth required")) == "auth"
    assert classify_smtp_error(aiosmtplib.SMTPResponseException(450, "mailbox busy")) == "transient"
    assert classify_smtp_error(aiosmtplib.SMTPResponseException(421, "closing")) == "transient"
    assert classify_smtp_error(aiosmtplib.SMTPResponseException(550, "no such user")) == "validation"
    assert classify_smtp_error(aiosmtplib.SMTPServerDisconnected("gone")) == "transient"


@pytest.mark.asyncio
async def test_send_success_returns_message_id():
    transport, sleep = make_transport(ScriptedProvider(["msg-1"]))
    result = await transport.send(_options())
    assert result.success is True
    assert result.message_id == "msg-1"
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff():
    provider = ScriptedProvider([
        ProviderError("boom", status_code=500),
        ConnectionError("reset"),
        "msg-2",
    ])
    transport, sleep = make_transport(provider, base_delay=1.0)
    result = await transport.send(_options())
    assert result.success is True
    assert provider.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transient_errors_exhaust_attempts():
    provider = ScriptedProvider([ProviderError("down", status_code=503)] * 3)
    transport, sleep = make_transport(provider, max_attempts=3)
    result = await transport.send(_options())
    assert result.success is False
    assert result.rate_limited is False
    assert result.permanent is False
    assert result.error_kind == "transient"
    assert "Failed after 3 attempts" in result.error
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["auth", "validation"])
async def test_permanent_errors_are_not_retried(kind):
    provider = ScriptedProvider([ProviderError("nope", status_code=401, kind=kind), "never"])
    transport, sleep = make_transport(provider)
    result = await transport.send(_options())
    assert result.success is False
    assert result.permanent is True
    assert result.error_kind == kind
    assert provider.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_provider_rate_limit_surfaces_as_rate_limited():
    provider = ScriptedProvider([ProviderError("slow down", status_code=429, kind="rate_limit")] * 2)
    transport, sleep = make_transport(provider, max_attempts=2, base_delay=1.0)
    result = await transport.send(_options())
    assert result.success is False
    assert result.rate_limited is True
    assert result.error_kind == "rate_limit"
    # Rate-limit backoff starts one step higher than transient backoff
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_local_bucket_exhaustion_reports_rate_limited():
    provider = ScriptedProvider(["msg-1", "msg-2"])
    transport, _ = make_transport(provider, max_tokens=1, tokens_per_second=0.01, max_rate_wait=5)
    assert (await transport.send(_options())).success is True
    result = await transport.send(_options())
    assert result.rate_limited is True
    assert provider.calls == 1
    assert transport.rate_limit_status()["rate_limited"] is True


def test_http_payload_includes_tags_and_default_from():
    provider = HttpApiProvider("key", default_from="noreply@practice.example")
    payload = provider._build_payload(_options(reply_to="office@practice.example", tags={"tenant_id": "t1"}))
    assert payload["from"] == "noreply@practice.example"
    assert payload["to"] == ["parent@example.com"]
    assert payload["reply_to"] == "office@practice.example"
    assert payload["tags"] == [{"name": "tenant_id", "value": "t1"}]


@pytest.mark.asyncio
async def test_http_provider_maps_responses(monkeypatch):
    provider = HttpApiProvider("key")
    responses = [(200, {"id": "re_123"}), (422, {"message": "Invalid `to` field"}), (429, {})]

    async def fake_post(path, payload):
        assert path == "/emails"
        return responses.pop(0)

    monkeypatch.setattr(provider, "_post", fake_post)
    assert await provider.send(_options()) == "re_123"
    with pytest.raises(ProviderError) as excinfo:
        await provider.send(_options())
    assert excinfo.value.kind == "validation"
    assert excinfo.value.status_code == 422
    with pytest.raises(ProviderError) as excinfo:
        await provider.send(_options())
    assert excinfo.value.kind == "rate_limit"


def test_smtp_message_has_both_parts():
    provider = SmtpProvider("smtp.example.com", default_from="noreply@practice.example")
    msg = provider._build_message(_options(tags={"tenant_id": "t1"}))
    assert msg["From"] == "noreply@practice.example"
    assert msg["X-Tag-tenant_id"] == "t1"
    assert msg.is_multipart()
    assert [part.get_content_type() for part in msg.iter_parts()] == ["text/plain", "text/html"]


@pytest.mark.asyncio
async def test_smtp_provider_wraps_errors(monkeypatch):
    provider = SmtpProvider("smtp.example.com")

    async def fake_send(*args, **kwargs):
        raise aiosmtplib.SMTPResponseException(550, "mailbox unavailable")

    monkeypatch.setattr(aiosmtplib, "send", fake_send)
    with pytest.raises(ProviderError) as excinfo:
        await provider.send(_options())
    assert excinfo.value.kind == "validation"
    assert excinfo.value.status_code == 550
