"""End-to-end purchase scenarios against fake catalog and gateway transports."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select

from coursepay.services.ledger.models import Enrollment, Payment
from coursepay.services.orchestrator.schemas import PurchaseStatus, ThreeDSCallback


def _count(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_direct_purchase_success(orchestrator, make_request, fake_gateway, ledger):
    """Happy path: catalog price is charged and the buyer is enrolled."""

    response = orchestrator.purchase_direct(make_request())

    assert response.status == PurchaseStatus.SUCCESS
    assert response.success is True
    assert response.transaction_id == "tx-direct-1"
    assert response.amount == Decimal("99.90")
    assert response.currency == "TRY"
    assert response.enrolled is True
    assert response.course_name == "Python for Data Science"
    assert response.card_brand == "MASTER_CARD"

    body = json.loads(fake_gateway.calls_to("/payment/auth")[0].content)
    assert body["price"] == "99.90"
    assert body["paidPrice"] == "99.90"
    assert body["currency"] == "TRY"
    assert body["conversationId"] == f"payment-{response.payment_id}"
    assert body["basketId"] == "B42"
    assert body["basketItems"][0]["id"] == "BI42"
    assert body["basketItems"][0]["name"] == "Python for Data Science"
    assert body["buyer"]["id"] == "BY1"
    assert body["shippingAddress"]["contactName"] == "John Doe"

    assert ledger.get_payment(response.payment_id).status == "SUCCESS"
    assert orchestrator.is_purchased(1, 42) is True


def test_response_never_contains_card_data(orchestrator, make_request):
    response = orchestrator.purchase_direct(make_request())
    dumped = response.model_dump_json()

    assert "5528790000000008" not in dumped
    assert '"123"' not in dumped


def test_repeat_purchase_is_already_purchased_without_charging(
    orchestrator, make_request, fake_gateway, session_factory
):
    orchestrator.purchase_direct(make_request())
    charges_before = len(fake_gateway.calls_to("/payment/auth"))

    response = orchestrator.purchase_direct(make_request())

    assert response.status == PurchaseStatus.ALREADY_PURCHASED
    assert response.payment_id is None
    assert len(fake_gateway.calls_to("/payment/auth")) == charges_before
    assert _count(session_factory, Payment) == 1


def test_declined_charge_fails_with_gateway_error(orchestrator, make_request, fake_gateway, ledger):
    fake_gateway.charge_status = "failure"

    response = orchestrator.purchase_direct(make_request())

    assert response.status == PurchaseStatus.FAILURE
    assert response.error_code == "10051"
    assert response.error_message == "Kart limiti yetersiz, yetersiz bakiye"
    payment = ledger.get_payment(response.payment_id)
    assert payment.status == "FAILED"
    assert payment.error_code == "10051"
    assert orchestrator.is_purchased(1, 42) is False


def test_failed_attempt_does_not_block_a_new_one(orchestrator, make_request, fake_gateway):
    fake_gateway.charge_status = "failure"
    failed = orchestrator.purchase_direct(make_request())
    fake_gateway.charge_status = "success"

    retried = orchestrator.purchase_direct(make_request())

    assert retried.status == PurchaseStatus.SUCCESS
    assert retried.payment_id != failed.payment_id


def test_catalog_outage_is_course_unavailable_and_creates_nothing(
    orchestrator, make_request, fake_catalog, fake_gateway, session_factory
):
    """The breaker trips and the flow fails closed without a payment row."""

    fake_catalog.fail = True
    orchestrator.purchase_direct(make_request())
    orchestrator.purchase_direct(make_request())
    requests_before = fake_catalog.requests

    response = orchestrator.purchase_direct(make_request())

    assert response.status == PurchaseStatus.COURSE_UNAVAILABLE
    assert response.error_code == "CATALOG_UNAVAILABLE"
    assert fake_catalog.requests == requests_before
    assert fake_gateway.requests == []
    assert _count(session_factory, Payment) == 0


def test_validation_failures(orchestrator, make_request, fake_catalog, fake_gateway, session_factory):
    fake_catalog.add(50, published=False)
    fake_catalog.add(51, price="0")
    fake_catalog.add(52, price=None)
    fake_catalog.add(53, price="0.004")

    not_found = orchestrator.purchase_direct(make_request(course_id=404))
    unpublished = orchestrator.purchase_direct(make_request(course_id=50))
    free = orchestrator.purchase_direct(make_request(course_id=51))
    unpriced = orchestrator.purchase_direct(make_request(course_id=52))
    sub_cent = orchestrator.purchase_direct(make_request(course_id=53))

    assert (not_found.status, not_found.error_code) == (PurchaseStatus.FAILURE, "COURSE_NOT_FOUND")
    assert (unpublished.status, unpublished.error_code) == (PurchaseStatus.FAILURE, "COURSE_UNPUBLISHED")
    assert (free.status, free.error_code) == (PurchaseStatus.FAILURE, "INVALID_PRICE")
    assert (unpriced.status, unpriced.error_code) == (PurchaseStatus.FAILURE, "INVALID_PRICE")
    assert (sub_cent.status, sub_cent.error_code) == (PurchaseStatus.FAILURE, "INVALID_PRICE")
    assert fake_gateway.requests == []
    assert _count(session_factory, Payment) == 0


def test_concurrent_purchase_loses_with_already_purchased(
    orchestrator, make_request, fake_gateway, ledger, session_factory
):
    """A second purchase completes while the first is waiting on the gateway."""

    inner = []
    fake_gateway.before_charge = lambda: inner.append(orchestrator.purchase_direct(make_request()))

    outer = orchestrator.purchase_direct(make_request())

    assert inner[0].status == PurchaseStatus.SUCCESS
    assert outer.status == PurchaseStatus.ALREADY_PURCHASED
    assert _count(session_factory, Enrollment) == 1
    loser = ledger.get_payment(outer.payment_id)
    assert loser.status == "FAILED"
    assert loser.error_code == "ALREADY_PURCHASED"
    assert loser.transaction_id == "tx-direct-1"


def test_3ds_initialize_parks_the_payment(orchestrator, make_request, ledger, fake_gateway):
    response = orchestrator.purchase_3ds_initiate(make_request())

    assert response.status == PurchaseStatus.REQUIRES_3DS
    assert response.three_ds_html_content == "PGh0bWw+PC9odG1sPg=="
    assert response.callback_url == "http://localhost:8083/api/payment/3ds/callback"
    payment = ledger.get_payment(response.payment_id)
    assert payment.status == "AWAITING_3DS"
    assert payment.gateway_payment_id == "gw-3ds-1"
    body = json.loads(fake_gateway.calls_to("/payment/3dsecure/initialize")[0].content)
    assert body["callbackUrl"] == "http://localhost:8083/api/payment/3ds/callback"
    assert orchestrator.is_purchased(1, 42) is False


def test_3ds_initialize_honours_request_callback_url(orchestrator, make_request):
    response = orchestrator.purchase_3ds_initiate(make_request(callback_url="https://shop.test/cb"))

    assert response.callback_url == "https://shop.test/cb"


def test_3ds_initialize_failure_fails_the_payment(orchestrator, make_request, fake_gateway, ledger):
    fake_gateway.threeds_init_status = "failure"

    response = orchestrator.purchase_3ds_initiate(make_request())

    assert response.status == PurchaseStatus.FAILURE
    assert response.error_code == "10051"
    assert ledger.get_payment(response.payment_id).status == "FAILED"


def test_3ds_success_callback_completes_and_enrolls(orchestrator, make_request, fake_gateway, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())
    payment = ledger.get_payment(started.payment_id)

    response = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(status="success", paymentId="gw-3ds-1", conversationId=payment.conversation_id)
    )

    assert response.status == PurchaseStatus.SUCCESS
    assert response.enrolled is True
    assert response.transaction_id == "gw-3ds-1"
    body = json.loads(fake_gateway.calls_to("/payment/3dsecure/auth")[0].content)
    assert body == {"locale": "tr", "conversationId": payment.conversation_id, "paymentId": "gw-3ds-1"}
    assert ledger.get_payment(started.payment_id).status == "SUCCESS"
    assert orchestrator.is_purchased(1, 42) is True


def test_3ds_failed_callback_keeps_gateway_message(orchestrator, make_request, fake_gateway, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())
    payment = ledger.get_payment(started.payment_id)

    response = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(
            status="failure",
            conversationId=payment.conversation_id,
            errorMessage="3D Secure dogrulamasi basarisiz",
        )
    )

    assert response.status == PurchaseStatus.FAILURE
    assert response.error_code == "THREEDS_AUTH_FAILED"
    assert response.error_message == "3D Secure dogrulamasi basarisiz"
    assert fake_gateway.calls_to("/payment/3dsecure/auth") == []
    assert ledger.get_payment(started.payment_id).status == "FAILED"


def test_duplicate_callback_calls_gateway_once(orchestrator, make_request, fake_gateway, ledger):
    """Replayed callbacks are answered from stored state."""

    started = orchestrator.purchase_3ds_initiate(make_request())
    conversation_id = ledger.get_payment(started.payment_id).conversation_id
    callback = ThreeDSCallback(status="success", paymentId="gw-3ds-1", conversationId=conversation_id)

    first = orchestrator.purchase_3ds_callback(callback)
    second = orchestrator.purchase_3ds_callback(callback)

    assert first.status == PurchaseStatus.SUCCESS
    assert second.status == PurchaseStatus.SUCCESS
    assert second.payment_id == first.payment_id
    assert (second.fraud_status, second.card_brand) == (first.fraud_status, first.card_brand) == ("1", "MASTER_CARD")
    assert second.transaction_id == first.transaction_id
    assert len(fake_gateway.calls_to("/payment/3dsecure/auth")) == 1


def test_callback_for_failed_payment_is_not_reopened(orchestrator, make_request, fake_gateway, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())
    conversation_id = ledger.get_payment(started.payment_id).conversation_id
    orchestrator.purchase_3ds_callback(ThreeDSCallback(status="failure", conversationId=conversation_id))

    late = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(status="success", paymentId="gw-3ds-1", conversationId=conversation_id)
    )

    assert late.status == PurchaseStatus.FAILURE
    assert fake_gateway.calls_to("/payment/3dsecure/auth") == []
    assert ledger.get_payment(started.payment_id).status == "FAILED"


def test_callback_for_unknown_conversation(orchestrator, fake_gateway):
    response = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(status="success", paymentId="gw-1", conversationId="payment-unknown")
    )

    assert response.status == PurchaseStatus.FAILURE
    assert response.error_code == "PAYMENT_NOT_FOUND"
    assert fake_gateway.requests == []


def test_callback_without_conversation_id(orchestrator):
    response = orchestrator.purchase_3ds_callback(ThreeDSCallback(status="success"))

    assert response.error_code == "INVALID_CALLBACK"


def test_callback_cannot_fail_a_direct_charge_in_flight(orchestrator, make_request, fake_gateway, ledger):
    """A direct payment never re-enters through the 3DS callback."""

    rejected = []

    def failure_callback():
        conversation_id = json.loads(fake_gateway.calls_to("/payment/auth")[-1].content)["conversationId"]
        rejected.append(
            orchestrator.purchase_3ds_callback(ThreeDSCallback(status="failure", conversationId=conversation_id))
        )

    fake_gateway.before_charge = failure_callback

    response = orchestrator.purchase_direct(make_request())

    assert rejected[0].status == PurchaseStatus.FAILURE
    assert rejected[0].error_code == "INVALID_CALLBACK"
    assert rejected[0].payment_id is None
    assert response.status == PurchaseStatus.SUCCESS
    assert ledger.get_payment(response.payment_id).status == "SUCCESS"
    assert orchestrator.is_purchased(1, 42) is True


def test_callback_for_finished_direct_payment_is_rejected(orchestrator, make_request, ledger):
    purchase = orchestrator.purchase_direct(make_request())
    conversation_id = ledger.get_payment(purchase.payment_id).conversation_id

    response = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(status="success", paymentId="tx-direct-1", conversationId=conversation_id)
    )

    assert response.error_code == "INVALID_CALLBACK"
    assert response.transaction_id is None


def test_callback_before_challenge_is_issued(orchestrator, fake_gateway, ledger):
    payment = ledger.create_pending_payment(1, 42, Decimal("99.90"), "TRY", "IYZICO", flow="THREEDS")

    response = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(status="failure", conversationId=payment.conversation_id)
    )

    assert response.error_code == "INVALID_CALLBACK"
    assert ledger.get_payment(payment.payment_id).status == "PENDING"
    assert fake_gateway.requests == []


def test_3ds_completion_declined(orchestrator, make_request, fake_gateway, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())
    conversation_id = ledger.get_payment(started.payment_id).conversation_id
    fake_gateway.threeds_complete_status = "failure"

    response = orchestrator.purchase_3ds_callback(
        ThreeDSCallback(status="success", paymentId="gw-3ds-1", conversationId=conversation_id)
    )

    assert response.status == PurchaseStatus.FAILURE
    assert ledger.get_payment(started.payment_id).status == "FAILED"
    assert orchestrator.is_purchased(1, 42) is False


def test_purchased_courses_lists_active_enrollments(orchestrator, make_request, fake_catalog):
    fake_catalog.add(43, price="49.00", title="Rust")
    orchestrator.purchase_direct(make_request(course_id=42))
    orchestrator.purchase_direct(make_request(course_id=43))
    orchestrator.purchase_direct(make_request(user_id=2, course_id=42))

    courses = orchestrator.purchased_courses(1)

    assert sorted(course.id for course in courses) == [42, 43]


def test_purchased_courses_skips_unresolvable_courses(orchestrator, make_request, fake_catalog):
    fake_catalog.add(43, price="49.00", title="Rust")
    orchestrator.purchase_direct(make_request(course_id=42))
    orchestrator.purchase_direct(make_request(course_id=43))
    del fake_catalog.courses[43]

    assert [course.id for course in orchestrator.purchased_courses(1)] == [42]


def test_expire_stale_payments_fails_abandoned_3ds(orchestrator, make_request, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())

    expired = orchestrator.expire_stale_payments(
        max_age_seconds=1800,
        now=datetime.now(timezone.utc) + timedelta(hours=1),
    )

    assert expired == [started.payment_id]
    payment = ledger.get_payment(started.payment_id)
    assert payment.status == "FAILED"
    assert payment.error_code == "PAYMENT_TIMEOUT"


def test_expire_stale_payments_keeps_fresh_ones(orchestrator, make_request, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())

    assert orchestrator.expire_stale_payments(max_age_seconds=1800) == []
    assert ledger.get_payment(started.payment_id).status == "AWAITING_3DS"


def test_expire_stale_payments_never_undercuts_gateway_timeout(orchestrator, make_request, ledger):
    started = orchestrator.purchase_3ds_initiate(make_request())

    assert orchestrator.expire_stale_payments(max_age_seconds=0) == []
    assert ledger.get_payment(started.payment_id).status == "AWAITING_3DS"


def test_charge_confirmed_after_sweep_keeps_transaction_id(orchestrator, make_request, fake_gateway, ledger):
    """The sweep fails the payment mid-charge; the late charge stays refundable."""

    swept = []
    fake_gateway.before_charge = lambda: swept.extend(
        orchestrator.expire_stale_payments(
            max_age_seconds=1800,
            now=datetime.now(timezone.utc) + timedelta(hours=1),
        )
    )

    response = orchestrator.purchase_direct(make_request())

    assert swept == [response.payment_id]
    assert response.status == PurchaseStatus.FAILURE
    assert response.transaction_id == "tx-direct-1"
    assert response.error_code == "PAYMENT_TIMEOUT"
    payment = ledger.get_payment(response.payment_id)
    assert payment.status == "FAILED"
    assert payment.transaction_id == "tx-direct-1"
    assert payment.card_brand == "MASTER_CARD"
    assert "charged_after_terminal" in [entry.reason for entry in ledger.timeline(response.payment_id)]
    assert orchestrator.is_purchased(1, 42) is False
