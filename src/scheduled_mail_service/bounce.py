# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounce and complaint classification with deliverability monitoring.

The :class:`BounceClassifier` is pure: it turns a provider bounce reason or
complaint feedback type into a decision.

- Hard bounces (unknown user, missing mailbox, ``5.x.x`` codes) give
  ``suppress`` / ``high``.
- Soft bounces (full mailbox, quota, greylisting, ``4.x.x`` codes) give
  ``retry`` / ``medium`` with a suggested delay. The delay is advisory and
  nothing is re-enqueued automatically.
- Complaints always give ``suppress`` / ``critical``.
- Bounces matching no pattern and carrying no provider type give ``flag``.

The :class:`BounceHandler` applies those decisions: it writes suppression
entries, counts metrics, and checks per-tenant bounce and complaint rates
against alert thresholds.
"""

from __future__ import annotations

import re
import time

from .logger import get_logger
from .models import (
    BounceAnalysis,
    BounceEvent,
    BounceType,
    ComplaintAnalysis,
    ComplaintEvent,
    DeliverabilityAlert,
    SuppressionType,
)
from .persistence import Persistence
from .suppression import SuppressionList

HARD_BOUNCE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"user unknown",
        r"mailbox not found",
        r"invalid recipient",
        r"no such user",
        r"recipient address rejected",
        r"domain not found",
        r"permanent failure",
        r"\b5\.\d\.\d\b",
    )
)
SOFT_BOUNCE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"mailbox full",
        r"quota exceeded",
        r"temporary failure",
        r"try again later",
        r"server temporarily unavailable",
        r"\b4\.\d\.\d\b",
        r"greylist",
    )
)
SEVERE_COMPLAINT_TYPES = frozenset({"abuse", "fraud", "phishing", "virus"})

BOUNCE_RATE_WARNING = 5.0
BOUNCE_RATE_CRITICAL = 10.0
COMPLAINT_RATE_WARNING = 0.1
COMPLAINT_RATE_CRITICAL = 0.5


def bounce_category(reason: str) -> str:
    if re.search(r"user unknown|mailbox not found|invalid recipient", reason, re.IGNORECASE):
        return "invalid_recipient"
    if re.search(r"quota|full|storage", reason, re.IGNORECASE):
        return "mailbox_full"
    if re.search(r"domain|dns", reason, re.IGNORECASE):
        return "domain_issue"
    if re.search(r"spam|blocked|blacklist", reason, re.IGNORECASE):
        return "reputation_issue"
    return "other"


def soft_bounce_retry_delay(reason: str) -> int:
    """Suggested retry delay in seconds for a soft bounce."""
    if re.search(r"quota|full", reason, re.IGNORECASE):
        return 7200
    if re.search(r"greylist", reason, re.IGNORECASE):
        return 900
    return 3600


class BounceClassifier:
    """Stateless bounce/complaint classifier."""

    def analyze_bounce(self, reason: str | None, bounce_type: str | None = None) -> BounceAnalysis:
        reason = reason or ""
        for pattern in HARD_BOUNCE_PATTERNS:
            if pattern.search(reason):
                return BounceAnalysis(
                    bounce_type="hard",
                    action="suppress",
                    severity="high",
                    category=bounce_category(reason),
                    reason=reason,
                )
        for pattern in SOFT_BOUNCE_PATTERNS:
            if pattern.search(reason):
                return BounceAnalysis(
                    bounce_type="soft",
                    action="retry",
                    severity="medium",
                    category=bounce_category(reason),
                    reason=reason,
                    retry_after=soft_bounce_retry_delay(reason),
                )

        provider_type = (bounce_type or "").lower()
        if provider_type in ("hard", "permanent"):
            return BounceAnalysis(
                bounce_type="hard",
                action="suppress",
                severity="high",
                category="permanent_failure",
                reason=reason or "Hard bounce detected",
            )
        if provider_type in ("soft", "transient", "temporary"):
            return BounceAnalysis(
                bounce_type="soft",
                action="retry",
                severity="medium",
                category="temporary_failure",
                reason=reason or "Soft bounce detected",
                retry_after=3600,
            )
        return BounceAnalysis(
            bounce_type="unknown",
            action="flag",
            severity="medium",
            category="unknown",
            reason=reason or "Unknown bounce type",
        )

    def analyze_complaint(self, feedback_type: str | None) -> ComplaintAnalysis:
        complaint_type = (feedback_type or "abuse").strip().lower() or "abuse"
        return ComplaintAnalysis(
            complaint_type=complaint_type,
            reputation_impact=9 if complaint_type in SEVERE_COMPLAINT_TYPES else 7,
        )


class BounceHandler:
    """Applies classifier decisions and monitors deliverability."""

    def __init__(
        self,
        suppression: SuppressionList,
        persistence: Persistence,
        *,
        classifier: BounceClassifier | None = None,
        metrics=None,
        logger=None,
    ):
        self.suppression = suppression
        self.persistence = persistence
        self.classifier = classifier or BounceClassifier()
        self.metrics = metrics
        self.logger = logger or get_logger("BounceHandler")

    async def process_bounce(self, event: BounceEvent) -> BounceAnalysis:
        """Classify a bounce and suppress the recipient when required."""
        analysis = self.classifier.analyze_bounce(event.reason, event.bounce_type)
        match analysis.action:
            case "suppress":
                await self.suppression.suppress(
                    event.tenant_id,
                    event.email,
                    SuppressionType.BOUNCE,
                    analysis.reason,
                    bounce_type=BounceType.HARD,
                    can_be_resubscribed=False,
                )
            case "retry":
                self.logger.info(
                    "Soft bounce for %s at tenant %s (%s); retry suggested in %ss",
                    event.email, event.tenant_id, analysis.category, analysis.retry_after,
                )
            case _:
                self.logger.warning(
                    "Unclassified bounce for %s at tenant %s flagged for review: %s",
                    event.email, event.tenant_id, analysis.reason,
                )
        if self.metrics is not None:
            self.metrics.inc_bounce(event.tenant_id, analysis.bounce_type)
        await self.check_thresholds(event.tenant_id)
        return analysis

    async def process_complaint(self, event: ComplaintEvent) -> ComplaintAnalysis:
        """Classify a complaint and always suppress the recipient."""
        analysis = self.classifier.analyze_complaint(event.feedback_type)
        await self.suppression.suppress(
            event.tenant_id,
            event.email,
            SuppressionType.COMPLAINT,
            f"Spam complaint: {analysis.complaint_type}",
            can_be_resubscribed=False,
        )
        self.logger.warning(
            "Complaint from %s at tenant %s (%s, impact %d)",
            event.email, event.tenant_id, analysis.complaint_type, analysis.reputation_impact,
        )
        if self.metrics is not None:
            self.metrics.inc_complaint(event.tenant_id)
        await self.check_thresholds(event.tenant_id)
        return analysis

    async def bounce_statistics(self, tenant_id: str, hours: int = 24) -> dict[str, float | int]:
        since = int(time.time()) - hours * 3600
        counts = await self.persistence.count_events(tenant_id, since)
        by_type = await self.persistence.count_events_by(tenant_id, since, "bounced", "bounce_type")
        total_sent = counts.get("sent", 0)
        total_bounced = counts.get("bounced", 0)
        return {
            "total_sent": total_sent,
            "total_bounced": total_bounced,
            "hard_bounces": by_type.get("hard", 0),
            "soft_bounces": by_type.get("soft", 0),
            "bounce_rate": (total_bounced / total_sent * 100) if total_sent else 0.0,
        }

    async def complaint_statistics(self, tenant_id: str, hours: int = 24) -> dict[str, float | int]:
        since = int(time.time()) - hours * 3600
        counts = await self.persistence.count_events(tenant_id, since)
        by_type = await self.persistence.count_events_by(tenant_id, since, "complained", "complaint_type")
        total_sent = counts.get("sent", 0)
        total_complaints = counts.get("complained", 0)
        return {
            "total_sent": total_sent,
            "total_complaints": total_complaints,
            "complaint_types": by_type,
            "complaint_rate": (total_complaints / total_sent * 100) if total_sent else 0.0,
        }

    async def check_thresholds(self, tenant_id: str, hours: int = 24) -> list[DeliverabilityAlert]:
        """Return (and log) alerts for rates above the thresholds."""
        alerts: list[DeliverabilityAlert] = []
        bounces = await self.bounce_statistics(tenant_id, hours)
        rate = float(bounces["bounce_rate"])
        if rate > BOUNCE_RATE_WARNING:
            alerts.append(DeliverabilityAlert(
                tenant_id=tenant_id,
                alert_type="high_bounce_rate",
                severity="critical" if rate > BOUNCE_RATE_CRITICAL else "warning",
                rate=rate,
                threshold=BOUNCE_RATE_WARNING,
                message=f"High bounce rate detected: {rate:.2f}%",
            ))
        complaints = await self.complaint_statistics(tenant_id, hours)
        rate = float(complaints["complaint_rate"])
        if rate > COMPLAINT_RATE_WARNING:
            alerts.append(DeliverabilityAlert(
                tenant_id=tenant_id,
                alert_type="high_complaint_rate",
                severity="critical" if rate > COMPLAINT_RATE_CRITICAL else "warning",
                rate=rate,
                threshold=COMPLAINT_RATE_WARNING,
                message=f"High complaint rate detected: {rate:.3f}%",
            ))
        for alert in alerts:
            self.logger.warning("Deliverability alert for %s: %s (%s)", tenant_id, alert.message, alert.severity)
        return alerts

    async def deliverability_report(self, tenant_id: str, hours: int = 24) -> dict[str, object]:
        return {
            "tenant_id": tenant_id,
            "hours": hours,
            "bounces": await self.bounce_statistics(tenant_id, hours),
            "complaints": await self.complaint_statistics(tenant_id, hours),
            "alerts": [a.model_dump() for a in await self.check_thresholds(tenant_id, hours)],
        }
