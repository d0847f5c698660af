# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Template registry mapping template types to render handlers.

Each :class:`~scheduled_mail_service.models.TemplateType` that the scheduler
can deliver has a handler registered here. A handler receives the persisted
job and returns a :class:`RenderedEmail`. Adding a template type only needs a
new registration, never a change in the dispatch path.

Handlers declare the template-data keys they require; the schedule APIs call
:meth:`TemplateRegistry.validate` so malformed jobs are rejected before they
are ever enqueued.

Example:
    Registering a custom handler::

        registry = default_registry()

        @registry.register(TemplateType.PASSWORD_RESET, required=("reset_url",))
        def password_reset(job):
            url = job.template_data["reset_url"]
            return RenderedEmail(job.subject, f"<a href='{url}'>Reset</a>", url)
"""

from __future__ import annotations

import html
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .errors import TemplateDataError, UnsupportedTemplateError
from .models import ScheduledEmail, TemplateType


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


TemplateHandler = Callable[[ScheduledEmail], RenderedEmail]


@dataclass(frozen=True)
class _Registration:
    handler: TemplateHandler
    required: tuple[str, ...]


def _coerce_type(template_type: TemplateType | str) -> TemplateType:
    try:
        return TemplateType(template_type)
    except ValueError as exc:
        raise UnsupportedTemplateError(f"Unsupported template type: {template_type}") from exc


class TemplateRegistry:
    """Strategy table from template type to handler."""

    def __init__(self) -> None:
        self._registrations: dict[TemplateType, _Registration] = {}

    def register(
        self,
        template_type: TemplateType | str,
        handler: TemplateHandler | None = None,
        *,
        required: Iterable[str] = (),
    ):
        """Register ``handler`` for ``template_type``.

        Usable directly or as a decorator. Re-registering a type replaces
        the previous handler.
        """
        key = _coerce_type(template_type)
        required_keys = tuple(required)

        def decorator(func: TemplateHandler) -> TemplateHandler:
            self._registrations[key] = _Registration(func, required_keys)
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def is_registered(self, template_type: TemplateType | str) -> bool:
        try:
            return _coerce_type(template_type) in self._registrations
        except UnsupportedTemplateError:
            return False

    def registered_types(self) -> list[str]:
        return sorted(t.value for t in self._registrations)

    def validate(self, template_type: TemplateType | str, template_data: Mapping[str, Any]) -> None:
        """Check that a handler exists and its required keys are present.

        Raises:
            UnsupportedTemplateError: No handler for the type.
            TemplateDataError: A required key is missing or empty.
        """
        key = _coerce_type(template_type)
        registration = self._registrations.get(key)
        if registration is None:
            raise UnsupportedTemplateError(f"Unsupported template type: {key.value}")
        missing = [k for k in registration.required if template_data.get(k) in (None, "")]
        if missing:
            raise TemplateDataError(
                f"Missing template data for {key.value}: {', '.join(missing)}"
            )

    def render(self, job: ScheduledEmail) -> RenderedEmail:
        """Render ``job`` with its registered handler."""
        self.validate(job.template_type, job.template_data)
        return self._registrations[_coerce_type(job.template_type)].handler(job)


# Built-in handlers ---------------------------------------------------------------

def _esc(value: Any) -> str:
    return html.escape(str(value), quote=True)


def _layout(
    title: str,
    paragraphs: list[str],
    *,
    button: tuple[str, str] | None = None,
    practice: Mapping[str, Any] | None = None,
) -> tuple[str, str]:
    """Return ``(html, text)`` for a simple single-column email."""
    body = [f"<h1 style=\"color:#2563eb;\">{_esc(title)}</h1>"]
    body.extend(f"<p>{_esc(p)}</p>" for p in paragraphs)
    text = [title, ""] + paragraphs
    if button:
        label, url = button
        body.append(
            f"<p><a href=\"{_esc(url)}\" style=\"background:#2563eb;color:#fff;"
            f"padding:10px 16px;border-radius:4px;text-decoration:none;\">{_esc(label)}</a></p>"
        )
        text.extend(["", f"{label}: {url}"])
    if practice:
        footer = [str(practice[k]) for k in ("name", "address", "phone", "website") if practice.get(k)]
        if footer:
            body.append(
                "<hr><p style=\"color:#6b7280;font-size:12px;\">"
                + "<br>".join(_esc(line) for line in footer)
                + "</p>"
            )
            text.extend(["", "--"] + footer)
    html_body = (
        "<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px;\">"
        + "".join(body)
        + "</div>"
    )
    return html_body, "\n".join(text)


def _report_delivery(job: ScheduledEmail) -> RenderedEmail:
    data = job.template_data
    paragraphs = [
        f"The health assessment report for {data['child_name']} is ready.",
    ]
    if data.get("assessment_date"):
        paragraphs.append(f"Assessment date: {data['assessment_date']}.")
    html_body, text = _layout(
        "Pediatric Health Assessment Report",
        paragraphs,
        button=("Download report", data["download_url"]),
        practice=data.get("practice_info"),
    )
    return RenderedEmail(job.subject, html_body, text)


def _report_ready(job: ScheduledEmail) -> RenderedEmail:
    data = job.template_data
    greeting = f"Hi {data['first_name']}," if data.get("first_name") else "Hello,"
    paragraphs = [greeting, "Your pediatric health assessment report has been completed."]
    if data.get("report_id"):
        paragraphs.append(f"Report reference: {data['report_id']}.")
    if data.get("expires_at"):
        paragraphs.append(f"This link expires on {data['expires_at']}.")
    html_body, text = _layout(
        "Your Report is Ready",
        paragraphs,
        button=("View report", data["download_url"]),
        practice=data.get("practice_info"),
    )
    return RenderedEmail(job.subject, html_body, text)


def _welcome(job: ScheduledEmail) -> RenderedEmail:
    data = job.template_data
    name = data.get("name") or data.get("first_name")
    paragraphs = [
        f"Welcome, {name}!" if name else "Welcome!",
        "Thank you for joining our pediatric health assessment platform.",
    ]
    button = ("Get started", data["login_url"]) if data.get("login_url") else None
    html_body, text = _layout("Welcome", paragraphs, button=button, practice=data.get("practice_info"))
    return RenderedEmail(job.subject, html_body, text)


def _assessment_reminder(job: ScheduledEmail) -> RenderedEmail:
    data = job.template_data
    paragraphs = ["This is a friendly reminder to complete the health assessment."]
    if data.get("child_name"):
        paragraphs[0] = f"This is a friendly reminder to complete the health assessment for {data['child_name']}."
    if data.get("due_date"):
        paragraphs.append(f"Please complete it by {data['due_date']}.")
    html_body, text = _layout(
        "Assessment Reminder",
        paragraphs,
        button=("Start assessment", data["assessment_url"]),
        practice=data.get("practice_info"),
    )
    return RenderedEmail(job.subject, html_body, text)


def _system_notification(job: ScheduledEmail) -> RenderedEmail:
    data = job.template_data
    html_body, text = _layout(
        data.get("title") or job.subject,
        [str(data["message"])],
        practice=data.get("practice_info"),
    )
    return RenderedEmail(job.subject, html_body, text)


def default_registry() -> TemplateRegistry:
    """Return a new registry with the built-in practice templates.

    ``password_reset`` and ``account_verification`` belong to the auth flow
    and are not registered; scheduling them is rejected.
    """
    registry = TemplateRegistry()
    registry.register(
        TemplateType.REPORT_DELIVERY, _report_delivery, required=("child_name", "download_url")
    )
    registry.register(TemplateType.REPORT_SHARE, _report_ready, required=("download_url",))
    registry.register(TemplateType.REPORT_READY, _report_ready, required=("download_url",))
    registry.register(TemplateType.WELCOME, _welcome)
    registry.register(
        TemplateType.ASSESSMENT_REMINDER, _assessment_reminder, required=("assessment_url",)
    )
    registry.register(TemplateType.SYSTEM_NOTIFICATION, _system_notification, required=("message",))
    return registry
