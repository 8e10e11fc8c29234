"""Durable store for payments and enrollments.

Owns the persistence-level guarantees of the purchase flow:

* payment transitions are validated against the state machine and guarded by
  `(payment_id, status, state_version)` so concurrent writers cannot both win;
* "finalize payment + create enrollment + enqueue success event" commits as
  one unit, after re-checking that the (user, course) pair is still free;
* the unique (user_id, course_id) constraint on enrollments is the final
  arbiter when two attempts race past every check.

Only the orchestrator calls the mutating methods here.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from coursepay.common.config import settings
from coursepay.common.events import PAYMENT_SUCCESS_TOPIC, EventEnvelope, KafkaBus
from coursepay.common.logging import logger
from coursepay.common.metrics import payment_e2e_seconds
from coursepay.common.state_machine import (
    AWAITING_3DS,
    FAILED,
    OPEN_STATES,
    PENDING,
    SUCCESS,
    validate_transition,
)
from coursepay.services.ledger.models import Enrollment, OutboxEvent, Payment, PaymentTimeline
from coursepay.services.ledger.outbox import acknowledge, claim_pending, refresh_backlog_gauges, release


ALREADY_PURCHASED = "ALREADY_PURCHASED"
PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"

DIRECT_FLOW = "DIRECT"
THREEDS_FLOW = "THREEDS"


class AlreadyEnrolledError(Exception):
    """The (user, course) pair already holds an enrollment."""

    def __init__(self, user_id: int, course_id: int, payment_id: str | None = None) -> None:
        super().__init__(f"user {user_id} is already enrolled in course {course_id}")
        self.user_id = user_id
        self.course_id = course_id
        self.payment_id = payment_id


class PaymentNotFoundError(LookupError):
    pass


class ConcurrentUpdateError(RuntimeError):
    """Another writer moved the payment first."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ledger:
    """Payment and enrollment persistence plus the success-event outbox."""

    def __init__(self, session_factory, kafka: KafkaBus | None = None, service_name: str | None = None) -> None:
        self.session_factory = session_factory
        self.kafka = kafka or KafkaBus()
        self.service_name = service_name or settings.service_name

    # -- reads -----------------------------------------------------------

    def has_active_enrollment(self, user_id: int, course_id: int) -> bool:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(Enrollment.enrollment_id).where(
                        Enrollment.user_id == user_id,
                        Enrollment.course_id == course_id,
                        Enrollment.status == "ACTIVE",
                    )
                ).first()
                is not None
            )

    def is_enrolled(self, user_id: int, course_id: int) -> bool:
        """True when any enrollment row holds the (user, course) pair."""

        with self.session_factory() as db:
            return self._enrollment_exists(db, user_id, course_id)

    def active_enrollments(self, user_id: int) -> list[Enrollment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Enrollment)
                    .where(Enrollment.user_id == user_id, Enrollment.status == "ACTIVE")
                    .order_by(Enrollment.enrolled_at)
                ).scalars()
            )

    def get_payment(self, payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def get_payment_by_conversation(self, conversation_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.conversation_id == conversation_id)
            ).scalar_one_or_none()

    def get_enrollment_for_payment(self, payment_id: str) -> Enrollment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Enrollment).where(Enrollment.payment_id == payment_id)
            ).scalar_one_or_none()

    def timeline(self, payment_id: str) -> list[PaymentTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentTimeline)
                    .where(PaymentTimeline.payment_id == payment_id)
                    .order_by(PaymentTimeline.created_at)
                ).scalars()
            )

    # -- writes ----------------------------------------------------------

    def create_pending_payment(
        self,
        user_id: int,
        course_id: int,
        amount: Decimal,
        currency: str,
        provider: str,
        flow: str = DIRECT_FLOW,
    ) -> Payment:
        """Insert a PENDING payment unless the pair is already enrolled."""

        if amount is None or amount <= 0:
            raise ValueError("payment amount must be positive")
        with self.session_factory() as db:
            if self._enrollment_exists(db, user_id, course_id):
                raise AlreadyEnrolledError(user_id, course_id)
            now = _utcnow()
            payment_id = str(uuid4())
            payment = Payment(
                payment_id=payment_id,
                user_id=user_id,
                course_id=course_id,
                amount=amount,
                currency=currency.upper(),
                status=PENDING,
                provider=provider,
                flow=flow,
                conversation_id=f"payment-{payment_id}",
                gateway_payment_id=None,
                transaction_id=None,
                fraud_status=None,
                card_brand=None,
                error_code=None,
                error_message=None,
                state_version=0,
                created_at=now,
                updated_at=now,
            )
            db.add(payment)
            db.flush()
            db.add(
                PaymentTimeline(
                    payment_id=payment_id,
                    from_state=None,
                    to_state=PENDING,
                    reason="payment_created",
                    created_at=now,
                )
            )
            db.commit()
            return payment

    def mark_awaiting_3ds(self, payment_id: str, gateway_payment_id: str | None) -> Payment:
        """Park a payment while the buyer runs the 3DS challenge."""

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            self._transition(
                db,
                payment,
                AWAITING_3DS,
                reason="threeds_challenge_issued",
                gateway_payment_id=gateway_payment_id,
            )
            db.commit()
            return payment

    def finalize_success(
        self,
        payment_id: str,
        transaction_id: str,
        trace_id: str = "",
        fraud_status: str | None = None,
        card_brand: str | None = None,
    ) -> tuple[Payment, Enrollment]:
        """Mark the payment SUCCESS and enroll the buyer in one transaction.

        Raises `AlreadyEnrolledError` when the pair was taken after the payment
        was created; the payment is then FAILED with `ALREADY_PURCHASED` and
        keeps the gateway transaction id so the charge can be refunded.
        """

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            user_id, course_id = payment.user_id, payment.course_id
            card = {"fraud_status": fraud_status, "card_brand": card_brand}
            if self._enrollment_exists(db, user_id, course_id):
                self._transition(
                    db,
                    payment,
                    FAILED,
                    reason="already_purchased",
                    transaction_id=transaction_id,
                    error_code=ALREADY_PURCHASED,
                    error_message="course was purchased by a concurrent attempt",
                    **card,
                )
                db.commit()
                logger.error(
                    "duplicate_purchase_charged payment_id=%s transaction_id=%s user_id=%s course_id=%s",
                    payment.payment_id,
                    transaction_id,
                    payment.user_id,
                    payment.course_id,
                )
                self._observe_terminal_e2e(payment, FAILED)
                raise AlreadyEnrolledError(payment.user_id, payment.course_id, payment.payment_id)

            now = _utcnow()
            self._transition(
                db,
                payment,
                SUCCESS,
                reason="gateway_confirmed",
                transaction_id=transaction_id,
                error_code=None,
                error_message=None,
                **card,
            )
            enrollment = Enrollment(
                enrollment_id=str(uuid4()),
                user_id=payment.user_id,
                course_id=payment.course_id,
                payment_id=payment.payment_id,
                status="ACTIVE",
                progress=0,
                enrolled_at=now,
                completed_at=None,
            )
            db.add(enrollment)
            db.add(self._success_event(payment, enrollment, trace_id, now))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                lost_race = True
            else:
                lost_race = False

        if lost_race:
            logger.warning(
                "enrollment_unique_violation payment_id=%s user_id=%s course_id=%s",
                payment_id,
                user_id,
                course_id,
            )
            self.finalize_failure(
                payment_id,
                ALREADY_PURCHASED,
                "course was purchased by a concurrent attempt",
                reason="already_purchased",
                transaction_id=transaction_id,
                fraud_status=fraud_status,
                card_brand=card_brand,
            )
            raise AlreadyEnrolledError(user_id, course_id, payment_id)

        self._observe_terminal_e2e(payment, SUCCESS)
        return payment, enrollment

    def finalize_failure(
        self,
        payment_id: str,
        error_code: str,
        error_message: str | None,
        reason: str = "gateway_failed",
        transaction_id: str | None = None,
        fraud_status: str | None = None,
        card_brand: str | None = None,
    ) -> Payment:
        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            changes = {"error_code": error_code, "error_message": error_message}
            if transaction_id is not None:
                changes["transaction_id"] = transaction_id
            if fraud_status is not None:
                changes["fraud_status"] = fraud_status
            if card_brand is not None:
                changes["card_brand"] = card_brand
            self._transition(db, payment, FAILED, reason=reason, **changes)
            db.commit()
        self._observe_terminal_e2e(payment, FAILED)
        return payment

    def record_orphan_charge(
        self,
        payment_id: str,
        transaction_id: str,
        fraud_status: str | None = None,
        card_brand: str | None = None,
    ) -> Payment:
        """Attach a gateway charge that arrived after the payment was FAILED.

        The status stays FAILED; the transaction id is kept so the charge can
        be refunded, and the timeline records the late confirmation.
        """

        with self.session_factory() as db:
            payment = self._load(db, payment_id)
            if payment.status != FAILED:
                raise ConcurrentUpdateError(f"payment {payment_id} is {payment.status}, not {FAILED}")
            now = _utcnow()
            result = db.execute(
                update(Payment)
                .where(
                    Payment.payment_id == payment_id,
                    Payment.status == FAILED,
                    Payment.state_version == payment.state_version,
                )
                .values(
                    transaction_id=transaction_id,
                    fraud_status=fraud_status,
                    card_brand=card_brand,
                    state_version=payment.state_version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentUpdateError(f"optimistic concurrency conflict for payment {payment_id}")
            payment.transaction_id = transaction_id
            payment.fraud_status = fraud_status
            payment.card_brand = card_brand
            payment.state_version += 1
            payment.updated_at = now
            db.add(
                PaymentTimeline(
                    payment_id=payment_id,
                    from_state=FAILED,
                    to_state=FAILED,
                    reason="charged_after_terminal",
                    created_at=now,
                )
            )
            db.commit()
        logger.error(
            "charged_after_terminal payment_id=%s transaction_id=%s user_id=%s course_id=%s error_code=%s",
            payment_id,
            transaction_id,
            payment.user_id,
            payment.course_id,
            payment.error_code,
        )
        return payment

    def expire_stale_payments(self, older_than: datetime, limit: int = 500) -> list[str]:
        """Fail PENDING / AWAITING_3DS payments created before `older_than`."""

        with self.session_factory() as db:
            candidates = list(
                db.execute(
                    select(Payment.payment_id)
                    .where(Payment.status.in_(OPEN_STATES), Payment.created_at < older_than)
                    .order_by(Payment.created_at)
                    .limit(limit)
                ).scalars()
            )
        expired: list[str] = []
        for payment_id in candidates:
            try:
                self.finalize_failure(
                    payment_id,
                    PAYMENT_TIMEOUT,
                    "payment was abandoned before the gateway confirmed it",
                    reason="stale_payment_expired",
                )
            except (ConcurrentUpdateError, ValueError) as exc:
                # Finalized by a callback between the scan and the update.
                logger.info("stale_payment_skipped payment_id=%s reason=%s", payment_id, exc)
                continue
            expired.append(payment_id)
        return expired

    # -- internals -------------------------------------------------------

    def _load(self, db, payment_id: str) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"payment {payment_id} not found")
        return payment

    def _enrollment_exists(self, db, user_id: int, course_id: int) -> bool:
        return (
            db.execute(
                select(Enrollment.enrollment_id).where(
                    Enrollment.user_id == user_id,
                    Enrollment.course_id == course_id,
                )
            ).first()
            is not None
        )

    def _transition(self, db, payment: Payment, new_status: str, reason: str, **changes) -> None:
        """Apply one validated transition with optimistic concurrency.

        The write is guarded by `(payment_id, status, state_version)`; a stale
        reader gets `ConcurrentUpdateError` instead of overwriting.
        """

        validate_transition(payment.status, new_status)
        from_status = payment.status
        current_version = payment.state_version
        now = _utcnow()

        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == from_status,
                Payment.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                updated_at=now,
                **changes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"optimistic concurrency conflict for payment {payment.payment_id} "
                f"(expected version {current_version})"
            )

        payment.status = new_status
        payment.state_version = current_version + 1
        payment.updated_at = now
        for field, value in changes.items():
            setattr(payment, field, value)
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                created_at=now,
            )
        )

    def _success_event(self, payment: Payment, enrollment: Enrollment, trace_id: str, now: datetime) -> OutboxEvent:
        event = EventEnvelope(
            event_type=PAYMENT_SUCCESS_TOPIC,
            aggregate_id=payment.payment_id,
            trace_id=trace_id,
            payload={
                "payment_id": payment.payment_id,
                "user_id": payment.user_id,
                "course_id": payment.course_id,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "payment_date": now.isoformat(),
                "enrollment_id": enrollment.enrollment_id,
                "gateway_payment_id": payment.transaction_id,
                "conversation_id": payment.conversation_id,
            },
        )
        return OutboxEvent(
            aggregate_type="payment",
            aggregate_id=payment.payment_id,
            event_type=PAYMENT_SUCCESS_TOPIC,
            topic=PAYMENT_SUCCESS_TOPIC,
            payload=event.model_dump(),
            status="PENDING",
            created_at=now,
            sent_at=None,
        )

    def _observe_terminal_e2e(self, payment: Payment, terminal_state: str) -> None:
        if payment.created_at is None:
            return
        created_at = payment.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (_utcnow() - created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)

    # -- outbox ----------------------------------------------------------

    async def publish_outbox_batch(self, limit: int = 100) -> int:
        """Claim one batch of outbox rows and ship them; returns rows sent."""

        with self.session_factory() as db:
            claimed = claim_pending(db, limit=limit)
            refresh_backlog_gauges(db, self.service_name)
            db.commit()
        sent = 0
        for event in claimed:
            try:
                await self.kafka.publish(event.topic, event.envelope)
            except Exception as exc:
                logger.exception("outbox_publish_failed event_id=%s error=%s", event.id, exc)
                settle = release
            else:
                settle = acknowledge
                sent += 1
            with self.session_factory() as db:
                settle(db, event.id)
                refresh_backlog_gauges(db, self.service_name)
                db.commit()
        return sent

    async def outbox_publisher(self, interval_seconds: float = 0.5) -> None:
        """Continuously publish pending outbox rows."""

        while True:
            try:
                await self.publish_outbox_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_publisher_error error=%s", exc)
            await asyncio.sleep(interval_seconds)
