"""Course purchase orchestration.

One attempt moves VALIDATING -> PENDING_PAYMENT -> (DIRECT_SETTLING |
AWAITING_3DS) -> (SUCCEEDED | FAILED). The 3DS callback is a second entry
point into the same finalization path. Gateway calls happen between two
ledger transactions, never inside one.
"""

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from coursepay.common.config import settings
from coursepay.common.logging import conversation_id_ctx, logger, payment_id_ctx
from coursepay.common.metrics import (
    purchase_latency_seconds,
    purchase_outcomes_total,
    purchase_requests_total,
    stale_payments_expired_total,
)
from coursepay.common.state_machine import (
    AWAITING_3DS,
    FAILED,
    SUCCESS_STATES,
    TERMINAL_STATES,
    InvalidTransitionError,
)
from coursepay.services.catalog.schemas import Course, LookupStatus
from coursepay.services.catalog.service import CatalogLookup
from coursepay.services.gateway.schemas import (
    Address,
    BasketItem,
    Buyer,
    ChargeRequest,
    PaymentCard,
    PaymentOutcome,
    ThreeDSInitializeRequest,
    format_price,
)
from coursepay.services.gateway.service import GatewayClient
from coursepay.services.ledger.models import Payment
from coursepay.services.ledger.service import (
    ALREADY_PURCHASED,
    DIRECT_FLOW,
    THREEDS_FLOW,
    AlreadyEnrolledError,
    ConcurrentUpdateError,
    Ledger,
)
from coursepay.services.orchestrator.schemas import (
    CoursePurchaseRequest,
    CoursePurchaseResponse,
    PurchaseStatus,
    ThreeDSCallback,
)


COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
COURSE_UNPUBLISHED = "COURSE_UNPUBLISHED"
INVALID_PRICE = "INVALID_PRICE"
CATALOG_UNAVAILABLE = "CATALOG_UNAVAILABLE"
THREEDS_AUTH_FAILED = "THREEDS_AUTH_FAILED"
THREEDS_MISSING_PAYMENT_ID = "THREEDS_MISSING_PAYMENT_ID"
PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
INVALID_CALLBACK = "INVALID_CALLBACK"

BASKET_ITEM_NAME = "Online Course"
BASKET_CATEGORY = "Education"
BASKET_SUBCATEGORY = "Online Course"


class PurchaseRejected(Exception):
    """A purchase stopped before any gateway call."""

    def __init__(
        self,
        status: PurchaseStatus,
        message: str,
        error_code: str | None = None,
        course: Course | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.error_code = error_code
        self.course = course

    def to_response(self, course_id: int) -> CoursePurchaseResponse:
        return CoursePurchaseResponse(
            success=False,
            status=self.status,
            message=self.message,
            error_code=self.error_code,
            course_id=course_id,
            course_name=self.course.title if self.course else None,
        )


class PurchaseOrchestrator:
    """Owns creation and every status transition of payments and enrollments."""

    def __init__(
        self,
        ledger: Ledger,
        catalog: CatalogLookup,
        gateway: GatewayClient,
        provider: str | None = None,
        stale_payment_max_age_seconds: int | None = None,
        service_name: str | None = None,
    ) -> None:
        self.ledger = ledger
        self.catalog = catalog
        self.gateway = gateway
        self.provider = provider or settings.payment_provider
        self.stale_payment_max_age_seconds = stale_payment_max_age_seconds or settings.stale_payment_max_age_seconds
        self.service_name = service_name or settings.service_name

    # -- entry points ----------------------------------------------------

    def purchase_direct(self, req: CoursePurchaseRequest, trace_id: str = "") -> CoursePurchaseResponse:
        """Charge the card without 3DS and enroll on confirmed success."""

        flow = "direct"
        purchase_requests_total.labels(service=self.service_name, flow=flow).inc()
        with purchase_latency_seconds.labels(service=self.service_name, flow=flow).time():
            logger.info("purchase_started flow=%s user_id=%s course_id=%s", flow, req.user_id, req.course_id)
            try:
                course = self._validate(req)
                payment = self._open_payment(req, course, DIRECT_FLOW)
            except PurchaseRejected as rejected:
                return self._finish(flow, rejected.to_response(req.course_id))

            outcome = self.gateway.charge_direct(self._charge_request(req, course, payment))
            return self._finish(flow, self._settle(payment, outcome, course, trace_id))

    def purchase_3ds_initiate(self, req: CoursePurchaseRequest, trace_id: str = "") -> CoursePurchaseResponse:
        """Start a 3DS purchase; the payment stays open until the callback."""

        flow = "3ds_initialize"
        purchase_requests_total.labels(service=self.service_name, flow=flow).inc()
        with purchase_latency_seconds.labels(service=self.service_name, flow=flow).time():
            logger.info("purchase_started flow=%s user_id=%s course_id=%s", flow, req.user_id, req.course_id)
            try:
                course = self._validate(req)
                payment = self._open_payment(req, course, THREEDS_FLOW)
            except PurchaseRejected as rejected:
                return self._finish(flow, rejected.to_response(req.course_id))

            callback_url = req.callback_url or self.gateway.config.callback_url
            outcome = self.gateway.initiate_3ds(self._three_ds_request(req, course, payment, callback_url))
            if not outcome.ok:
                failure = PaymentOutcome.failure(outcome.error_code or THREEDS_AUTH_FAILED, outcome.error_message or "")
                return self._finish(flow, self._settle(payment, failure, course, trace_id))

            try:
                payment = self.ledger.mark_awaiting_3ds(payment.payment_id, outcome.payment_id)
            except (ConcurrentUpdateError, InvalidTransitionError) as exc:
                logger.warning("threeds_park_conflict payment_id=%s error=%s", payment.payment_id, exc)
                return self._finish(flow, self._stored_result(payment.payment_id, course))

            return self._finish(
                flow,
                CoursePurchaseResponse(
                    success=True,
                    status=PurchaseStatus.REQUIRES_3DS,
                    message="3DS authentication required",
                    payment_id=payment.payment_id,
                    payment_status=payment.status,
                    amount=payment.amount,
                    currency=payment.currency,
                    course_id=course.id,
                    course_name=course.title,
                    three_ds_html_content=outcome.html_challenge_content,
                    callback_url=callback_url,
                ),
            )

    def purchase_3ds_callback(self, callback: ThreeDSCallback, trace_id: str = "") -> CoursePurchaseResponse:
        """Finish a 3DS purchase from the gateway's callback.

        Replays for an already-finalized conversation are answered from the
        stored payment without calling the gateway again. Payments opened by
        `purchase_direct` never re-enter here.
        """

        flow = "3ds_callback"
        purchase_requests_total.labels(service=self.service_name, flow=flow).inc()
        with purchase_latency_seconds.labels(service=self.service_name, flow=flow).time():
            if not callback.conversation_id:
                return self._finish(flow, self._invalid_callback("callback is missing the conversation id"))
            conversation_id_ctx.set(callback.conversation_id)
            payment = self.ledger.get_payment_by_conversation(callback.conversation_id)
            if payment is None:
                logger.warning("threeds_callback_unknown_conversation conversation_id=%s", callback.conversation_id)
                return self._finish(
                    flow,
                    CoursePurchaseResponse(
                        success=False,
                        status=PurchaseStatus.FAILURE,
                        message="no payment matches this conversation",
                        error_code=PAYMENT_NOT_FOUND,
                    ),
                )
            payment_id_ctx.set(payment.payment_id)

            # Only payments opened by purchase_3ds_initiate re-enter here.
            if payment.flow != THREEDS_FLOW:
                logger.warning(
                    "threeds_callback_for_direct_payment payment_id=%s status=%s callback_status=%s",
                    payment.payment_id,
                    payment.status,
                    callback.status,
                )
                return self._finish(flow, self._invalid_callback("payment was not opened for 3DS"))

            if payment.status in TERMINAL_STATES:
                logger.info(
                    "threeds_callback_replayed payment_id=%s status=%s callback_status=%s",
                    payment.payment_id,
                    payment.status,
                    callback.status,
                )
                return self._finish(flow, self._stored_result(payment.payment_id))

            if payment.status != AWAITING_3DS:
                logger.warning(
                    "threeds_callback_before_challenge payment_id=%s status=%s",
                    payment.payment_id,
                    payment.status,
                )
                return self._finish(flow, self._invalid_callback("payment is not waiting for 3DS authentication"))

            if callback.status != "success":
                logger.info(
                    "threeds_challenge_failed payment_id=%s md_status=%s",
                    payment.payment_id,
                    callback.md_status,
                )
                outcome = PaymentOutcome.failure(
                    THREEDS_AUTH_FAILED,
                    callback.error_message or "3DS authentication failed",
                )
                return self._finish(flow, self._settle(payment, outcome, None, trace_id))

            gateway_payment_id = callback.payment_id or payment.gateway_payment_id
            if callback.payment_id and payment.gateway_payment_id and callback.payment_id != payment.gateway_payment_id:
                logger.warning(
                    "threeds_callback_payment_id_mismatch payment_id=%s stored=%s received=%s",
                    payment.payment_id,
                    payment.gateway_payment_id,
                    callback.payment_id,
                )
            if not gateway_payment_id:
                outcome = PaymentOutcome.failure(THREEDS_MISSING_PAYMENT_ID, "callback carried no gateway payment id")
            else:
                outcome = self.gateway.complete_3ds(payment.conversation_id, gateway_payment_id)
            return self._finish(flow, self._settle(payment, outcome, None, trace_id))

    def is_purchased(self, user_id: int, course_id: int) -> bool:
        return self.ledger.has_active_enrollment(user_id, course_id)

    def purchased_courses(self, user_id: int) -> list[Course]:
        """Catalog entries for the user's ACTIVE enrollments.

        Courses the catalog cannot resolve right now are left out.
        """

        courses = []
        for enrollment in self.ledger.active_enrollments(user_id):
            lookup = self.catalog.get_course(enrollment.course_id)
            if lookup.status != LookupStatus.FOUND:
                logger.warning(
                    "purchased_course_unresolved user_id=%s course_id=%s status=%s",
                    user_id,
                    enrollment.course_id,
                    lookup.status.value,
                )
                continue
            courses.append(lookup.course)
        return courses

    def get_payment(self, payment_id: str) -> Payment | None:
        return self.ledger.get_payment(payment_id)

    @property
    def min_stale_age_seconds(self) -> int:
        return math.ceil(self.gateway.config.timeout_seconds)

    def expire_stale_payments(self, max_age_seconds: int | None = None, now: datetime | None = None) -> list[str]:
        """Reconciliation hook: fail payments left open longer than the bound.

        The bound never drops below the gateway timeout, so a charge still in
        flight is not swept.
        """

        max_age = max_age_seconds if max_age_seconds is not None else self.stale_payment_max_age_seconds
        max_age = max(max_age, self.min_stale_age_seconds)
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=max_age)
        expired = self.ledger.expire_stale_payments(cutoff)
        stale_payments_expired_total.labels(service=self.service_name).inc(len(expired))
        if expired:
            logger.warning("stale_payments_expired count=%s max_age_seconds=%s", len(expired), max_age)
        return expired

    # -- steps -----------------------------------------------------------

    def _validate(self, req: CoursePurchaseRequest) -> Course:
        lookup = self.catalog.get_course(req.course_id)
        if lookup.status == LookupStatus.UNAVAILABLE:
            raise PurchaseRejected(
                PurchaseStatus.COURSE_UNAVAILABLE,
                "course catalog is unavailable, try again later",
                error_code=CATALOG_UNAVAILABLE,
            )
        if lookup.status == LookupStatus.NOT_FOUND or lookup.course is None:
            raise PurchaseRejected(
                PurchaseStatus.FAILURE,
                f"course {req.course_id} not found",
                error_code=COURSE_NOT_FOUND,
            )
        course = lookup.course
        if not course.is_published:
            raise PurchaseRejected(
                PurchaseStatus.FAILURE,
                "course is not published",
                error_code=COURSE_UNPUBLISHED,
                course=course,
            )
        # The gateway sees the price rounded to cents.
        if course.price is None or Decimal(format_price(course.price)) <= 0:
            raise PurchaseRejected(
                PurchaseStatus.FAILURE,
                "course has no valid price",
                error_code=INVALID_PRICE,
                course=course,
            )
        if self.ledger.is_enrolled(req.user_id, course.id):
            raise self._already_purchased(course)
        return course

    def _open_payment(self, req: CoursePurchaseRequest, course: Course, flow: str) -> Payment:
        try:
            payment = self.ledger.create_pending_payment(
                user_id=req.user_id,
                course_id=course.id,
                amount=Decimal(format_price(course.price)),
                currency=self.gateway.config.currency,
                provider=self.provider,
                flow=flow,
            )
        except AlreadyEnrolledError:
            raise self._already_purchased(course)
        payment_id_ctx.set(payment.payment_id)
        conversation_id_ctx.set(payment.conversation_id)
        logger.info("payment_pending payment_id=%s amount=%s", payment.payment_id, payment.amount)
        return payment

    def _settle(
        self,
        payment: Payment,
        outcome: PaymentOutcome,
        course: Course | None,
        trace_id: str,
    ) -> CoursePurchaseResponse:
        """Turn a gateway outcome into the payment's terminal state."""

        if outcome.ok:
            try:
                finalized, enrollment = self.ledger.finalize_success(
                    payment.payment_id,
                    outcome.transaction_id,
                    trace_id=trace_id,
                    fraud_status=outcome.fraud_status,
                    card_brand=outcome.card_brand,
                )
            except AlreadyEnrolledError:
                return CoursePurchaseResponse(
                    success=False,
                    status=PurchaseStatus.ALREADY_PURCHASED,
                    message="course already purchased by user",
                    payment_id=payment.payment_id,
                    payment_status=FAILED,
                    course_id=payment.course_id,
                    course_name=course.title if course else None,
                    error_code=ALREADY_PURCHASED,
                    transaction_id=outcome.transaction_id,
                    fraud_status=outcome.fraud_status,
                    card_brand=outcome.card_brand,
                )
            except (ConcurrentUpdateError, InvalidTransitionError) as exc:
                logger.warning("finalize_lost_race payment_id=%s error=%s", payment.payment_id, exc)
                self._keep_late_charge(payment.payment_id, outcome)
                return self._stored_result(payment.payment_id, course)

            logger.info(
                "purchase_succeeded payment_id=%s transaction_id=%s enrollment_id=%s",
                finalized.payment_id,
                finalized.transaction_id,
                enrollment.enrollment_id,
            )
            return CoursePurchaseResponse(
                success=True,
                status=PurchaseStatus.SUCCESS,
                message="course purchased successfully",
                payment_id=finalized.payment_id,
                payment_status=finalized.status,
                transaction_id=finalized.transaction_id,
                amount=finalized.amount,
                currency=finalized.currency,
                course_id=finalized.course_id,
                course_name=course.title if course else None,
                enrolled=True,
                enrollment_status=enrollment.status,
                fraud_status=outcome.fraud_status,
                card_brand=outcome.card_brand,
            )

        try:
            failed = self.ledger.finalize_failure(
                payment.payment_id,
                outcome.error_code or "PAYMENT_FAILED",
                outcome.error_message,
                fraud_status=outcome.fraud_status,
                card_brand=outcome.card_brand,
            )
        except (ConcurrentUpdateError, InvalidTransitionError) as exc:
            logger.info("finalize_lost_race payment_id=%s error=%s", payment.payment_id, exc)
            return self._stored_result(payment.payment_id, course)

        logger.info("purchase_failed payment_id=%s error_code=%s", failed.payment_id, failed.error_code)
        return CoursePurchaseResponse(
            success=False,
            status=PurchaseStatus.FAILURE,
            message="payment failed",
            payment_id=failed.payment_id,
            payment_status=failed.status,
            amount=failed.amount,
            currency=failed.currency,
            course_id=failed.course_id,
            course_name=course.title if course else None,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
            fraud_status=outcome.fraud_status,
            card_brand=outcome.card_brand,
        )

    def _keep_late_charge(self, payment_id: str, outcome: PaymentOutcome) -> None:
        """A confirmed charge that lost to a FAILED finalization must stay refundable."""

        current = self.ledger.get_payment(payment_id)
        if current is None or current.status != FAILED or current.transaction_id == outcome.transaction_id:
            return
        if current.transaction_id is not None:
            logger.error(
                "charged_after_terminal_unrecorded payment_id=%s stored_transaction_id=%s transaction_id=%s",
                payment_id,
                current.transaction_id,
                outcome.transaction_id,
            )
            return
        try:
            self.ledger.record_orphan_charge(
                payment_id,
                outcome.transaction_id,
                fraud_status=outcome.fraud_status,
                card_brand=outcome.card_brand,
            )
        except ConcurrentUpdateError as exc:
            logger.error(
                "charged_after_terminal_unrecorded payment_id=%s transaction_id=%s error=%s",
                payment_id,
                outcome.transaction_id,
                exc,
            )

    def _stored_result(self, payment_id: str, course: Course | None = None) -> CoursePurchaseResponse:
        """Answer from persisted state, without touching the gateway."""

        payment = self.ledger.get_payment(payment_id)
        enrollment = self.ledger.get_enrollment_for_payment(payment_id)
        common = {
            "payment_id": payment.payment_id,
            "payment_status": payment.status,
            "transaction_id": payment.transaction_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "course_id": payment.course_id,
            "course_name": course.title if course else None,
            "fraud_status": payment.fraud_status,
            "card_brand": payment.card_brand,
        }
        if payment.status in SUCCESS_STATES and enrollment is not None:
            return CoursePurchaseResponse(
                success=True,
                status=PurchaseStatus.SUCCESS,
                message="course purchased successfully",
                enrolled=True,
                enrollment_status=enrollment.status,
                **common,
            )
        if payment.status in TERMINAL_STATES:
            status = (
                PurchaseStatus.ALREADY_PURCHASED if payment.error_code == ALREADY_PURCHASED else PurchaseStatus.FAILURE
            )
            return CoursePurchaseResponse(
                success=False,
                status=status,
                message="payment failed",
                error_code=payment.error_code,
                error_message=payment.error_message,
                **common,
            )
        return CoursePurchaseResponse(
            success=True,
            status=PurchaseStatus.REQUIRES_3DS,
            message="payment is waiting for 3DS authentication",
            **common,
        )

    def _already_purchased(self, course: Course) -> PurchaseRejected:
        return PurchaseRejected(
            PurchaseStatus.ALREADY_PURCHASED,
            "course already purchased by user",
            error_code=ALREADY_PURCHASED,
            course=course,
        )

    def _invalid_callback(self, message: str) -> CoursePurchaseResponse:
        return CoursePurchaseResponse(
            success=False,
            status=PurchaseStatus.FAILURE,
            message=message,
            error_code=INVALID_CALLBACK,
        )

    def _finish(self, flow: str, response: CoursePurchaseResponse) -> CoursePurchaseResponse:
        purchase_outcomes_total.labels(service=self.service_name, flow=flow, status=response.status.value).inc()
        logger.info(
            "purchase_finished flow=%s status=%s payment_id=%s error_code=%s",
            flow,
            response.status.value,
            response.payment_id,
            response.error_code,
        )
        return response

    # -- gateway request building ----------------------------------------

    def _charge_fields(self, req: CoursePurchaseRequest, course: Course, payment: Payment) -> dict:
        price = format_price(payment.amount)
        contact_name = f"{req.buyer_name} {req.buyer_surname}"
        address = Address(
            contact_name=contact_name,
            city=req.buyer_city,
            country=req.buyer_country,
            address=req.buyer_address,
            zip_code=req.buyer_zip_code,
        )
        buyer_fields = {
            "id": f"BY{req.user_id}",
            "name": req.buyer_name,
            "surname": req.buyer_surname,
            "gsm_number": req.buyer_phone,
            "email": req.buyer_email,
            "identity_number": req.buyer_identity_number,
            "registration_address": req.buyer_address,
            "city": req.buyer_city,
            "country": req.buyer_country,
            "zip_code": req.buyer_zip_code,
        }
        if req.buyer_ip:
            buyer_fields["ip"] = req.buyer_ip
        return {
            "locale": self.gateway.config.locale,
            "conversation_id": payment.conversation_id,
            "price": price,
            "paid_price": price,
            "currency": payment.currency,
            "installment": 1,
            "basket_id": f"B{course.id}",
            "payment_card": PaymentCard(
                card_holder_name=req.card_holder_name,
                card_number=req.card_number.get_secret_value(),
                expire_month=req.expire_month,
                expire_year=req.expire_year,
                cvc=req.cvc.get_secret_value(),
                register_card=0,
            ),
            "buyer": Buyer(**buyer_fields),
            "shipping_address": address,
            "billing_address": address,
            "basket_items": [
                BasketItem(
                    id=f"BI{course.id}",
                    name=course.title or BASKET_ITEM_NAME,
                    category1=BASKET_CATEGORY,
                    category2=BASKET_SUBCATEGORY,
                    item_type="VIRTUAL",
                    price=price,
                )
            ],
        }

    def _charge_request(self, req: CoursePurchaseRequest, course: Course, payment: Payment) -> ChargeRequest:
        return ChargeRequest(**self._charge_fields(req, course, payment))

    def _three_ds_request(
        self,
        req: CoursePurchaseRequest,
        course: Course,
        payment: Payment,
        callback_url: str,
    ) -> ThreeDSInitializeRequest:
        return ThreeDSInitializeRequest(
            **self._charge_fields(req, course, payment),
            payment_channel="WEB",
            payment_group="PRODUCT",
            callback_url=callback_url,
        )
