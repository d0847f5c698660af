# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-tenant suppression list.

A suppression entry blocks every future send from a tenant to a recipient
until it is removed explicitly or expires. Entries are written by the bounce
handler (hard bounces, complaints), by unsubscribe handling and manually by
operators. The scheduler consults :meth:`SuppressionList.is_suppressed`
before every dispatch.

Expired entries are treated as absent: :meth:`is_suppressed` removes them
lazily and :meth:`cleanup_expired` sweeps them in bulk from the maintenance
loop.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from .logger import get_logger
from .models import (
    BounceType,
    SuppressionEntry,
    SuppressionType,
    ensure_aware,
    normalise_email,
    to_epoch,
    utc_now,
)
from .persistence import Persistence

DEFAULT_SOFT_BOUNCE_EXPIRY_DAYS = 30


class SuppressionList:
    """Suppression list service backed by :class:`Persistence`."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        soft_bounce_expiry_days: int = DEFAULT_SOFT_BOUNCE_EXPIRY_DAYS,
        metrics=None,
        logger=None,
    ):
        self.persistence = persistence
        self.soft_bounce_expiry_days = soft_bounce_expiry_days
        self.metrics = metrics
        self.logger = logger or get_logger("SuppressionList")

    async def suppress(
        self,
        tenant_id: str,
        email: str,
        suppression_type: SuppressionType | str = SuppressionType.MANUAL,
        reason: str | None = None,
        *,
        bounce_type: BounceType | str | None = None,
        can_be_resubscribed: bool | None = None,
        expires_at: datetime | None = None,
    ) -> SuppressionEntry:
        """Add or replace the entry for (tenant, email).

        Soft bounces get a default expiry of ``soft_bounce_expiry_days``.
        Complaints and hard bounces can never be resubscribed unless stated.
        """
        stype = SuppressionType(suppression_type)
        btype = BounceType(bounce_type) if bounce_type else None
        now = utc_now()
        if expires_at is None and btype == BounceType.SOFT:
            expires_at = now + timedelta(days=self.soft_bounce_expiry_days)
        if can_be_resubscribed is None:
            can_be_resubscribed = not (
                stype == SuppressionType.COMPLAINT or btype == BounceType.HARD
            )
        entry = SuppressionEntry(
            tenant_id=tenant_id,
            email=email,
            suppression_type=stype,
            reason=reason,
            bounce_type=btype,
            can_be_resubscribed=can_be_resubscribed,
            suppressed_at=now,
            expires_at=ensure_aware(expires_at) if expires_at else None,
        )
        await self.persistence.upsert_suppression({
            "tenant_id": entry.tenant_id,
            "email": entry.email,
            "suppression_type": entry.suppression_type.value,
            "reason": entry.reason,
            "bounce_type": entry.bounce_type.value if entry.bounce_type else None,
            "can_be_resubscribed": entry.can_be_resubscribed,
            "suppressed_at": to_epoch(entry.suppressed_at),
            "expires_at": to_epoch(entry.expires_at),
        })
        if self.metrics is not None:
            self.metrics.inc_suppressed(tenant_id, entry.suppression_type.value)
        self.logger.info(
            "Suppressed %s for tenant %s (%s): %s",
            entry.email, tenant_id, entry.suppression_type.value, reason or "-",
        )
        return entry

    async def get(self, tenant_id: str, email: str) -> SuppressionEntry | None:
        row = await self.persistence.get_suppression(tenant_id, email)
        return SuppressionEntry.from_row(row) if row else None

    async def is_suppressed(self, tenant_id: str, email: str, now: datetime | None = None) -> bool:
        """Return True if a non-expired entry blocks (tenant, email)."""
        entry = await self.get(tenant_id, email)
        if entry is None:
            return False
        if entry.is_expired(now):
            await self.persistence.delete_suppression(tenant_id, email)
            self.logger.info("Suppression for %s at tenant %s expired, removed", entry.email, tenant_id)
            return False
        return True

    async def unsuppress(self, tenant_id: str, email: str) -> bool:
        removed = await self.persistence.delete_suppression(tenant_id, normalise_email(email))
        if removed:
            self.logger.info("Removed suppression for %s at tenant %s", normalise_email(email), tenant_id)
        return removed

    async def list(self, tenant_id: str, suppression_type: str | None = None) -> list[SuppressionEntry]:
        rows = await self.persistence.list_suppressions(tenant_id, suppression_type)
        return [SuppressionEntry.from_row(row) for row in rows]

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        removed = await self.persistence.delete_expired_suppressions(to_epoch(now or utc_now()))
        if removed:
            self.logger.info("Removed %d expired suppression entries", removed)
        return removed
