from datetime import timedelta

import pytest

from scheduled_mail_service.models import BounceType, SuppressionType, utc_now
from scheduled_mail_service.persistence import Persistence
from scheduled_mail_service.prometheus import SchedulerMetrics
from scheduled_mail_service.suppression import SuppressionList


async def make_suppression(tmp_path, **kwargs):
    persistence = Persistence(str(tmp_path / "scheduler.db"))
    await persistence.init_db()
    return SuppressionList(persistence, **kwargs)


@pytest.mark.asyncio
async def test_manual_suppression_blocks_until_removed(tmp_path):
    suppression = await make_suppression(tmp_path)
    entry = await suppression.suppress("practice-1", "Parent@Example.com", reason="asked by phone")
    assert entry.email == "parent@example.com"
    assert entry.suppression_type == SuppressionType.MANUAL
    assert entry.can_be_resubscribed is True
    assert entry.expires_at is None

    assert await suppression.is_suppressed("practice-1", "parent@example.com")
    assert await suppression.is_suppressed("practice-1", "PARENT@example.com")
    assert not await suppression.is_suppressed("practice-2", "parent@example.com")

    assert await suppression.unsuppress("practice-1", "PARENT@EXAMPLE.COM") is True
    assert not await suppression.is_suppressed("practice-1", "parent@example.com")
    assert await suppression.unsuppress("practice-1", "parent@example.com") is False


@pytest.mark.asyncio
async def test_hard_bounce_and_complaint_cannot_resubscribe(tmp_path):
    suppression = await make_suppression(tmp_path)
    hard = await suppression.suppress("t", "a@example.com", "bounce", bounce_type="hard")
    complaint = await suppression.suppress("t", "b@example.com", SuppressionType.COMPLAINT)
    unsubscribe = await suppression.suppress("t", "c@example.com", SuppressionType.UNSUBSCRIBE)
    assert hard.can_be_resubscribed is False
    assert hard.bounce_type == BounceType.HARD
    assert complaint.can_be_resubscribed is False
    assert unsubscribe.can_be_resubscribed is True


@pytest.mark.asyncio
async def test_soft_bounce_expires_lazily(tmp_path):
    suppression = await make_suppression(tmp_path, soft_bounce_expiry_days=7)
    entry = await suppression.suppress("t", "soft@example.com", SuppressionType.BOUNCE, bounce_type="soft")
    assert entry.expires_at is not None
    assert timedelta(days=6) < entry.expires_at - utc_now() <= timedelta(days=7)

    assert await suppression.is_suppressed("t", "soft@example.com")
    later = utc_now() + timedelta(days=8)
    assert await suppression.is_suppressed("t", "soft@example.com", now=later) is False
    # The expired entry was deleted on read
    assert await suppression.get("t", "soft@example.com") is None


@pytest.mark.asyncio
async def test_cleanup_expired_sweeps_in_bulk(tmp_path):
    suppression = await make_suppression(tmp_path)
    past = utc_now() - timedelta(minutes=5)
    await suppression.suppress("t", "one@example.com", expires_at=past)
    await suppression.suppress("t", "two@example.com", expires_at=past)
    await suppression.suppress("t", "three@example.com")
    assert await suppression.cleanup_expired() == 2
    assert [e.email for e in await suppression.list("t")] == ["three@example.com"]


@pytest.mark.asyncio
async def test_list_filters_by_type_and_counts_metrics(tmp_path):
    metrics = SchedulerMetrics()
    suppression = await make_suppression(tmp_path, metrics=metrics)
    await suppression.suppress("t", "a@example.com", SuppressionType.BOUNCE, bounce_type="hard")
    await suppression.suppress("t", "b@example.com", SuppressionType.MANUAL)
    bounces = await suppression.list("t", "bounce")
    assert [e.email for e in bounces] == ["a@example.com"]
    assert metrics.registry.get_sample_value(
        "pms_suppressed_total", {"tenant_id": "t", "suppression_type": "bounce"}
    ) == 1.0
