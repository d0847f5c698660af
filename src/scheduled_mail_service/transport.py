# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email transport wrapping a transactional email provider.

The transport guards the provider's own rate limits with a token bucket that
is independent from the dispatcher's per-tenant buckets, and retries
transient failures with exponential backoff. Failures are reported as a
:class:`~scheduled_mail_service.models.SendResult` rather than raised:

- provider throttling (HTTP 429) is retried and, once exhausted, surfaces as
  ``rate_limited=True`` so the caller can avoid charging the retry budget;
- authentication and validation errors (401/403, 400/422, SMTP 530/535 and
  permanent 5xx) are never retried and surface as ``permanent=True``;
- network errors, timeouts and provider 5xx are retried.

Two providers are available: :class:`HttpApiProvider` for a Resend-style
HTTP API (aiohttp) and :class:`SmtpProvider` for plain SMTP (aiosmtplib).

Example:
    Sending through the HTTP API::

        transport = EmailTransport(HttpApiProvider(api_key="re_..."))
        result = await transport.send(SendOptions(
            to="parent@example.com",
            subject="Your report is ready",
            html="<p>Hello</p>",
            from_address="reports@practice.example",
        ))
        if result.rate_limited:
            ...
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from email.message import EmailMessage
from typing import Any

import aiohttp
import aiosmtplib

from .errors import ProviderError
from .logger import get_logger
from .models import SendOptions, SendResult
from .rate_limit import TokenBucket

AUTH_STATUS_CODES = {401, 403}
VALIDATION_STATUS_CODES = {400, 422}
SMTP_AUTH_CODES = {530, 534, 535}

_AUTH_PATTERNS = ("unauthorized", "invalid api key", "api key is invalid", "authentication failed")
_VALIDATION_PATTERNS = ("invalid email", "invalid `to`", "validation_error", "invalid recipient")
_RATE_LIMIT_PATTERNS = ("rate limit", "too many requests")


def classify_status(status_code: int | None, message: str = "") -> str:
    """Map an HTTP status (and error text) to a provider error kind."""
    text = (message or "").lower()
    if status_code == 429 or any(p in text for p in _RATE_LIMIT_PATTERNS):
        return "rate_limit"
    if status_code in AUTH_STATUS_CODES or any(p in text for p in _AUTH_PATTERNS):
        return "auth"
    if status_code in VALIDATION_STATUS_CODES or any(p in text for p in _VALIDATION_PATTERNS):
        return "validation"
    return "transient"


def classify_smtp_error(exc: Exception) -> str:
    """Map an aiosmtplib exception to a provider error kind.

    4xx replies are transient, authentication replies are ``auth``, other
    5xx replies are ``validation``. Connection problems are transient.
    """
    code = getattr(exc, "code", None)
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError) or code in SMTP_AUTH_CODES:
        return "auth"
    if isinstance(code, int):
        if code == 421 or 400 <= code < 500:
            return "transient"
        if 500 <= code < 600:
            return "validation"
    return "transient"


class EmailProvider:
    """Interface for delivery backends used by :class:`EmailTransport`."""

    name = "provider"

    async def send(self, options: SendOptions) -> str | None:
        """Deliver ``options`` and return the provider message id.

        Raises:
            ProviderError: With ``kind`` describing whether to retry.
        """
        raise NotImplementedError


class HttpApiProvider(EmailProvider):
    """Resend-compatible HTTP API provider.

    Attributes:
        base_url: API root, e.g. ``https://api.resend.com``.
        timeout: Total request timeout in seconds.
    """

    name = "http"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.resend.com",
        timeout: float = 30.0,
        default_from: str | None = None,
    ):
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_from = default_from

    def _build_payload(self, options: SendOptions) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from": options.from_address or self.default_from,
            "to": [options.to],
            "subject": options.subject,
        }
        if options.html is not None:
            payload["html"] = options.html
        if options.text is not None:
            payload["text"] = options.text
        if options.reply_to:
            payload["reply_to"] = options.reply_to
        if options.tags:
            payload["tags"] = [{"name": k, "value": str(v)} for k, v in options.tags.items()]
        return payload

    async def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        """POST JSON and return ``(status, body)``; network failures are transient."""
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(f"{self.base_url}{path}", json=payload, headers=headers) as response:
                    try:
                        body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = {"message": await response.text()}
                    if not isinstance(body, dict):
                        body = {"data": body}
                    return response.status, body
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"Request timed out after {self.timeout}s", kind="transient") from exc
        except aiohttp.ClientError as exc:
            raise ProviderError(f"Network error: {exc}", kind="transient") from exc

    async def send(self, options: SendOptions) -> str | None:
        status, body = await self._post("/emails", self._build_payload(options))
        if 200 <= status < 300:
            return body.get("id")
        message = body.get("message") or body.get("error") or f"HTTP {status}"
        raise ProviderError(str(message), status_code=status, kind=classify_status(status, str(message)))


class SmtpProvider(EmailProvider):
    """SMTP provider built on aiosmtplib.

    Port 465 uses implicit TLS; other ports use STARTTLS when ``use_tls``.
    """

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        default_from: str | None = None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.default_from = default_from

    def _build_message(self, options: SendOptions) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = options.from_address or self.default_from or ""
        msg["To"] = options.to
        msg["Subject"] = options.subject
        if options.reply_to:
            msg["Reply-To"] = options.reply_to
        for key, value in options.tags.items():
            msg[f"X-Tag-{key}"] = str(value)
        msg.set_content(options.text or "")
        if options.html is not None:
            msg.add_alternative(options.html, subtype="html")
        return msg

    async def send(self, options: SendOptions) -> str | None:
        msg = self._build_message(options)
        implicit_tls = self.port == 465 and self.use_tls
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.user,
                password=self.password,
                use_tls=implicit_tls,
                start_tls=self.use_tls and not implicit_tls,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as exc:
            raise ProviderError(
                str(exc), status_code=getattr(exc, "code", None), kind=classify_smtp_error(exc)
            ) from exc
        except (asyncio.TimeoutError, OSError) as exc:
            raise ProviderError(f"SMTP connection failed: {exc}", kind="transient") from exc
        return msg.get("Message-ID")


class EmailTransport:
    """Provider wrapper adding a token bucket and retry with backoff.

    Attributes:
        provider: The delivery backend.
        max_attempts: Attempts per :meth:`send` call.
        base_delay: Backoff base in seconds.
        max_rate_wait: Longest wait for a local token before giving up with
            ``rate_limited=True``.
    """

    def __init__(
        self,
        provider: EmailProvider,
        *,
        max_tokens: int = 20,
        tokens_per_second: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_rate_wait: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger=None,
    ):
        self.provider = provider
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_rate_wait = max_rate_wait
        self._bucket = TokenBucket(max_tokens, tokens_per_second)
        self._sleep = sleep
        self.logger = logger or get_logger("EmailTransport")

    async def send(self, options: SendOptions) -> SendResult:
        """Send an email, retrying transient failures.

        Never raises for provider failures; see the module docstring for how
        they are reported.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            wait = self._bucket.time_until_available()
            if wait > self.max_rate_wait:
                self.logger.warning("Transport rate limit reached, next token in %.1fs", wait)
                return SendResult(
                    success=False,
                    error="Rate limit exceeded, please try again later",
                    rate_limited=True,
                    error_kind="rate_limit",
                )
            await self._bucket.acquire()

            try:
                message_id = await self.provider.send(options)
                return SendResult(success=True, message_id=message_id)
            except ProviderError as exc:
                last_error = exc
                if exc.kind in ("auth", "validation"):
                    self.logger.error("Permanent %s error sending to %s: %s", exc.kind, options.to, exc)
                    return SendResult(success=False, error=str(exc), permanent=True, error_kind=exc.kind)
                if exc.kind == "rate_limit":
                    if attempt == self.max_attempts:
                        return SendResult(
                            success=False,
                            error=f"Provider rate limit: {exc}",
                            rate_limited=True,
                            error_kind="rate_limit",
                        )
                    delay = self.base_delay * 2 ** attempt
                else:
                    delay = self.base_delay * 2 ** (attempt - 1)
            except Exception as exc:
                last_error = exc
                delay = self.base_delay * 2 ** (attempt - 1)

            if attempt < self.max_attempts:
                self.logger.warning(
                    "Send attempt %d/%d to %s failed: %s; retrying in %.1fs",
                    attempt, self.max_attempts, options.to, last_error, delay,
                )
                await self._sleep(delay)

        return SendResult(
            success=False,
            error=f"Failed after {self.max_attempts} attempts: {last_error}",
            error_kind="transient",
        )

    def rate_limit_status(self) -> dict[str, Any]:
        tokens = self._bucket.tokens
        return {
            "tokens_available": round(tokens, 3),
            "max_tokens": self._bucket.capacity,
            "refill_rate": self._bucket.refill_rate,
            "next_token_in": self._bucket.time_until_available(),
            "rate_limited": tokens < 1,
        }
