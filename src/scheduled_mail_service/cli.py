# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the scheduled mail service.

This module provides a CLI for scheduling emails, inspecting the queue and
managing suppression lists directly against the database, without going
through the HTTP API.

Usage:
    mail-scheduler serve --port 8000
    mail-scheduler schedule acme report_ready parent@example.com \\
        --subject "Your report" --data '{"download_url": "https://..."}'
    mail-scheduler schedule-recurring acme welcome user@example.com \\
        --subject "Weekly digest" --rule "0 9 * * 1"
    mail-scheduler list acme --status pending
    mail-scheduler suppress acme user@example.com --reason "asked to stop"
    mail-scheduler next-run "0 9 * * 1"

Every command accepts ``--db`` (or ``PMS_DB_PATH``) to select the database
and ``--config`` (or ``PMS_CONFIG``) to select the INI configuration.
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from scheduled_mail_service import __version__
from scheduled_mail_service.config_loader import SchedulerConfig, build_scheduler, load_scheduler_config
from scheduled_mail_service.cron import CronExpression, next_occurrence
from scheduled_mail_service.errors import CronExpressionError
from scheduled_mail_service.logger import configure_logging
from scheduled_mail_service.models import EmailStatus, Priority, SuppressionType, TemplateType, ensure_aware, utc_now
from scheduled_mail_service.persistence import Persistence
from scheduled_mail_service.suppression import SuppressionList

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _parse_data(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--data")
    return data


def _fmt_ts(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _get_config(ctx: click.Context) -> SchedulerConfig:
    return ctx.obj["config"]


def _get_persistence(ctx: click.Context) -> Persistence:
    return Persistence(_get_config(ctx).db_path)


@click.group()
@click.version_option(__version__)
@click.option("--config", "config_path", envvar="PMS_CONFIG", type=click.Path(dir_okay=False),
              help="INI configuration file.")
@click.option("--db", "db_path", envvar="PMS_DB_PATH", help="SQLite database path.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str], log_level: Optional[str]) -> None:
    """mail-scheduler: scheduled and recurring transactional email."""
    try:
        config = load_scheduler_config(config_path)
    except FileNotFoundError as e:
        print_error(str(e))
        sys.exit(1)
    if db_path:
        config = replace(config, db_path=db_path)
    configure_logging(log_level or config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ============================================================================
# SERVE
# ============================================================================

@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API and the scheduler loops."""
    from contextlib import asynccontextmanager

    import uvicorn

    from scheduled_mail_service.api import create_app

    config = _get_config(ctx)
    scheduler, webhooks = build_scheduler(config)

    @asynccontextmanager
    async def lifespan(app):
        await scheduler.start()
        yield
        await scheduler.shutdown()

    app = create_app(scheduler, api_token=config.api_token, webhook_processor=webhooks, lifespan=lifespan)
    host = host or config.host
    port = port or config.port
    console.print(f"[bold cyan]Serving on http://{host}:{port}[/bold cyan]")
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())


@main.command("run-once")
@click.option("--maintenance", is_flag=True, help="Also run the maintenance sweep.")
@click.pass_context
def run_once(ctx: click.Context, maintenance: bool) -> None:
    """Run a single drain cycle and exit."""
    scheduler, _ = build_scheduler(_get_config(ctx), test_mode=True)

    async def _run():
        await scheduler.init()
        try:
            handled = await scheduler.process_queue()
            stats = await scheduler.run_maintenance() if maintenance else None
        finally:
            await scheduler.dispatcher.shutdown()
        return handled, stats

    handled, stats = run_async(_run())
    print_success(f"Processed {handled} scheduled email(s).")
    if stats:
        for key, value in stats.items():
            console.print(f"  {key.replace('_', ' ').capitalize()}: {value}")


# ============================================================================
# SCHEDULING
# ============================================================================

_template_choice = click.Choice([t.value for t in TemplateType])
_priority_choice = click.Choice([p.value for p in Priority])


@main.command("schedule")
@click.argument("tenant_id")
@click.argument("template_type", type=_template_choice)
@click.argument("recipient")
@click.option("--subject", "-s", required=True, help="Email subject.")
@click.option("--at", "scheduled_at", help="ISO-8601 dispatch time (default: now).")
@click.option("--data", "-d", help="Template data as a JSON object.")
@click.option("--priority", type=_priority_choice, default="medium", show_default=True)
@click.option("--max-retries", type=int, default=3, show_default=True)
@click.option("--campaign", help="Campaign identifier.")
@click.pass_context
def schedule(ctx: click.Context, tenant_id: str, template_type: str, recipient: str, subject: str,
             scheduled_at: Optional[str], data: Optional[str], priority: str,
             max_retries: int, campaign: Optional[str]) -> None:
    """Schedule a one-off email."""
    request = {
        "tenant_id": tenant_id,
        "template_type": template_type,
        "recipient_email": recipient,
        "subject": subject,
        "template_data": _parse_data(data),
        "scheduled_at": scheduled_at or utc_now(),
        "priority": priority,
        "max_retries": max_retries,
        "campaign_id": campaign,
    }
    scheduler, _ = build_scheduler(_get_config(ctx), test_mode=True)

    async def _schedule():
        await scheduler.init()
        return await scheduler.schedule_email(request)

    result = run_async(_schedule())
    if not result.success:
        print_error(result.error or "scheduling failed")
        sys.exit(1)
    print_success(f"Scheduled email {result.scheduled_email_id}")


@main.command("schedule-recurring")
@click.argument("tenant_id")
@click.argument("template_type", type=_template_choice)
@click.argument("recipient")
@click.option("--subject", "-s", required=True, help="Email subject.")
@click.option("--rule", "-r", required=True, help='Cron expression, e.g. "0 9 * * 1".')
@click.option("--start", help="ISO-8601 first occurrence (default: now).")
@click.option("--end", help="ISO-8601 end of the recurrence.")
@click.option("--data", "-d", help="Template data as a JSON object.")
@click.option("--priority", type=_priority_choice, default="medium", show_default=True)
@click.option("--max-retries", type=int, default=3, show_default=True)
@click.pass_context
def schedule_recurring(ctx: click.Context, tenant_id: str, template_type: str, recipient: str,
                       subject: str, rule: str, start: Optional[str], end: Optional[str],
                       data: Optional[str], priority: str, max_retries: int) -> None:
    """Schedule a recurring email."""
    request = {
        "tenant_id": tenant_id,
        "template_type": template_type,
        "recipient_email": recipient,
        "subject": subject,
        "template_data": _parse_data(data),
        "recurrence_rule": rule,
        "start_date": start,
        "end_date": end,
        "priority": priority,
        "max_retries": max_retries,
    }
    scheduler, _ = build_scheduler(_get_config(ctx), test_mode=True)

    async def _schedule():
        await scheduler.init()
        return await scheduler.schedule_recurring_email(request)

    result = run_async(_schedule())
    if not result.success:
        print_error(result.error or "scheduling failed")
        sys.exit(1)
    print_success(f"Scheduled recurring email {result.scheduled_email_id} ({rule})")


@main.command("cancel")
@click.argument("scheduled_email_id")
@click.option("--tenant", "-t", "tenant_id", required=True, help="Owning tenant.")
@click.pass_context
def cancel(ctx: click.Context, scheduled_email_id: str, tenant_id: str) -> None:
    """Cancel a pending scheduled email."""
    persistence = _get_persistence(ctx)

    async def _cancel():
        await persistence.init_db()
        return await persistence.cancel_scheduled_email(scheduled_email_id, tenant_id)

    if not run_async(_cancel()):
        print_error(f"Scheduled email '{scheduled_email_id}' not found or not pending.")
        sys.exit(1)
    print_success(f"Cancelled scheduled email {scheduled_email_id}")


@main.command("list")
@click.argument("tenant_id")
@click.option("--status", type=click.Choice([s.value for s in EmailStatus]), help="Filter by status.")
@click.option("--limit", type=int, default=None, help="Maximum rows.")
@click.option("--offset", type=int, default=None, help="Rows to skip.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_emails(ctx: click.Context, tenant_id: str, status: Optional[str], limit: Optional[int],
                offset: Optional[int], as_json: bool) -> None:
    """List a tenant's scheduled emails."""
    from scheduled_mail_service.models import ScheduledEmail

    persistence = _get_persistence(ctx)

    async def _list():
        await persistence.init_db()
        return await persistence.list_scheduled_emails(tenant_id, status=status, limit=limit, offset=offset)

    jobs = [ScheduledEmail.from_row(row) for row in run_async(_list())]

    if as_json:
        print_json([job.model_dump(mode="json") for job in jobs])
        return

    if not jobs:
        console.print("[dim]No scheduled emails found.[/dim]")
        return

    table = Table(title=f"Scheduled emails for {tenant_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Template")
    table.add_column("Recipient")
    table.add_column("Scheduled")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Recurring", justify="center")

    for job in jobs:
        table.add_row(
            job.id,
            job.template_type.value,
            job.recipient_email,
            _fmt_ts(job.scheduled_at),
            job.status.value,
            f"{job.retry_count}/{job.max_retries}",
            "[green]✓[/green]" if job.is_recurring else "-",
        )

    console.print(table)


@main.command("stats")
@click.option("--tenant", "-t", "tenant_id", default=None, help="Restrict to one tenant.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, tenant_id: Optional[str], as_json: bool) -> None:
    """Show queue depth by status."""
    persistence = _get_persistence(ctx)

    async def _stats():
        await persistence.init_db()
        return await persistence.count_by_status(tenant_id)

    data = run_async(_stats())

    if as_json:
        print_json(data)
        return

    console.print(f"\n[bold]Queue stats{f' for {tenant_id}' if tenant_id else ''}[/bold]\n")
    for status, count in data.items():
        console.print(f"  {status.capitalize():<12}{count}")
    console.print()


# ============================================================================
# SUPPRESSIONS
# ============================================================================

@main.command("suppress")
@click.argument("tenant_id")
@click.argument("email")
@click.option("--type", "suppression_type", type=click.Choice([t.value for t in SuppressionType]),
              default="manual", show_default=True)
@click.option("--reason", help="Why the recipient is suppressed.")
@click.option("--expires", help="ISO-8601 expiry time.")
@click.pass_context
def suppress(ctx: click.Context, tenant_id: str, email: str, suppression_type: str,
             reason: Optional[str], expires: Optional[str]) -> None:
    """Suppress a recipient for a tenant."""
    expires_at = None
    if expires:
        try:
            expires_at = ensure_aware(datetime.fromisoformat(expires))
        except ValueError:
            raise click.BadParameter("not an ISO-8601 datetime", param_hint="--expires")
    suppression = SuppressionList(_get_persistence(ctx))

    async def _suppress():
        await suppression.persistence.init_db()
        return await suppression.suppress(tenant_id, email, suppression_type, reason, expires_at=expires_at)

    entry = run_async(_suppress())
    print_success(f"Suppressed {entry.email} for tenant {tenant_id}")


@main.command("unsuppress")
@click.argument("tenant_id")
@click.argument("email")
@click.pass_context
def unsuppress(ctx: click.Context, tenant_id: str, email: str) -> None:
    """Remove a recipient from a tenant's suppression list."""
    suppression = SuppressionList(_get_persistence(ctx))

    async def _unsuppress():
        await suppression.persistence.init_db()
        return await suppression.unsuppress(tenant_id, email)

    if not run_async(_unsuppress()):
        print_error(f"No suppression for '{email}' at tenant '{tenant_id}'.")
        sys.exit(1)
    print_success(f"Removed suppression for {email}")


@main.command("suppressions")
@click.argument("tenant_id")
@click.option("--type", "suppression_type", type=click.Choice([t.value for t in SuppressionType]),
              help="Filter by suppression type.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def suppressions(ctx: click.Context, tenant_id: str, suppression_type: Optional[str], as_json: bool) -> None:
    """List a tenant's suppression entries."""
    suppression = SuppressionList(_get_persistence(ctx))

    async def _list():
        await suppression.persistence.init_db()
        return await suppression.list(tenant_id, suppression_type)

    entries = run_async(_list())

    if as_json:
        print_json([entry.model_dump(mode="json") for entry in entries])
        return

    if not entries:
        console.print("[dim]No suppressions found.[/dim]")
        return

    table = Table(title=f"Suppressions for {tenant_id}")
    table.add_column("Email", style="cyan")
    table.add_column("Type")
    table.add_column("Reason")
    table.add_column("Since")
    table.add_column("Expires")
    for entry in entries:
        table.add_row(
            entry.email,
            entry.suppression_type.value,
            entry.reason or "-",
            _fmt_ts(entry.suppressed_at),
            _fmt_ts(entry.expires_at),
        )
    console.print(table)


# ============================================================================
# CRON HELPERS
# ============================================================================

@main.command("validate-cron")
@click.argument("expression")
def validate_cron(expression: str) -> None:
    """Check a recurrence rule and describe it."""
    try:
        cron = CronExpression.parse(expression)
    except CronExpressionError as e:
        print_error(f"Invalid cron expression: {e}")
        sys.exit(1)
    print_success(f"{expression!r} is valid: {cron.describe()}")


@main.command("next-run")
@click.argument("expression")
@click.option("--from", "from_", help="ISO-8601 reference time (default: now).")
@click.option("--count", "-n", type=int, default=1, show_default=True, help="Occurrences to show.")
def next_run(expression: str, from_: Optional[str], count: int) -> None:
    """Show the next occurrence(s) of a recurrence rule."""
    try:
        current = ensure_aware(datetime.fromisoformat(from_)) if from_ else utc_now()
    except ValueError:
        raise click.BadParameter("not an ISO-8601 datetime", param_hint="--from")
    for _ in range(max(1, count)):
        current = next_occurrence(expression, current)
        if current is None:
            print_error(f"Invalid cron expression: {expression!r}")
            sys.exit(1)
        console.print(current.isoformat())


if __name__ == "__main__":
    main()
