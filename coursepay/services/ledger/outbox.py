"""Relay helpers for the payment-success outbox.

`Ledger.finalize_success` inserts an `OutboxEvent` in the same transaction as
the enrollment. The relay claims PENDING rows, ships them to Kafka and then
acknowledges or releases each one. A row left PROCESSING by a relay that died
mid-batch is claimed again once its claim is older than `RECLAIM_AFTER_SECONDS`.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update

from coursepay.common.events import EventEnvelope
from coursepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total
from coursepay.services.ledger.models import OutboxEvent


PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"
UNSENT = (PENDING, PROCESSING)
RECLAIM_AFTER_SECONDS = 30


@dataclass(frozen=True)
class ClaimedEvent:
    id: str
    topic: str
    envelope: EventEnvelope


def claim_pending(db, limit: int = 100, reclaim_after_seconds: int = RECLAIM_AFTER_SECONDS) -> list[ClaimedEvent]:
    """Flip up to `limit` unsent rows to PROCESSING and return them oldest first."""

    now = datetime.now(timezone.utc)
    reclaim_before = now - timedelta(seconds=reclaim_after_seconds)
    candidates = (
        select(OutboxEvent.id)
        .where(
            or_(
                OutboxEvent.status == PENDING,
                and_(OutboxEvent.status == PROCESSING, OutboxEvent.sent_at < reclaim_before),
            )
        )
        .order_by(OutboxEvent.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("outbox_candidates")
    )
    rows = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id.in_(select(candidates.c.id)))
        .values(status=PROCESSING, sent_at=now)
        .returning(OutboxEvent.id, OutboxEvent.topic, OutboxEvent.payload, OutboxEvent.created_at)
        .execution_options(synchronize_session=False)
    ).all()
    rows = sorted(rows, key=lambda row: row.created_at)
    return [ClaimedEvent(id=row.id, topic=row.topic, envelope=EventEnvelope(**row.payload)) for row in rows]


def acknowledge(db, event_id: str) -> None:
    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == PROCESSING)
        .values(status=SENT, sent_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


def release(db, event_id: str) -> None:
    """Put a claimed row back so the next pass retries it."""

    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == PROCESSING)
        .values(status=PENDING, sent_at=None)
        .execution_options(synchronize_session=False)
    )


def refresh_backlog_gauges(db, service_name: str) -> None:
    count, oldest = db.execute(
        select(func.count(OutboxEvent.id), func.min(OutboxEvent.created_at)).where(OutboxEvent.status.in_(UNSENT))
    ).one()
    age_seconds = 0.0
    if oldest is not None:
        if oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
