"""Shared fixtures: in-memory database, fake catalog and fake gateway."""

import json
import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("GATEWAY_API_KEY", "sandbox-api-key")
os.environ.setdefault("GATEWAY_SECRET_KEY", "sandbox-secret-key")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coursepay.common.circuit_breaker import CircuitBreaker
from coursepay.common.db import Base
from coursepay.services.catalog.service import CatalogLookup
from coursepay.services.gateway.schemas import GatewayConfig
from coursepay.services.gateway.service import GatewayClient
from coursepay.services.ledger import models  # noqa: F401  registers tables on Base
from coursepay.services.ledger.service import Ledger
from coursepay.services.orchestrator.schemas import CoursePurchaseRequest
from coursepay.services.orchestrator.service import PurchaseOrchestrator


class FakeKafkaBus:
    """Collects published events instead of talking to a broker."""

    def __init__(self) -> None:
        self.published = []

    async def publish(self, topic, event) -> None:
        self.published.append((topic, event))

    async def close(self) -> None:
        pass


class FakeCatalog:
    """Course documents served through an httpx.MockTransport."""

    def __init__(self) -> None:
        self.courses = {}
        self.fail = False
        self.requests = 0

    def add(self, course_id: int, price="99.90", published=True, title="Python for Data Science") -> None:
        self.courses[course_id] = {
            "id": course_id,
            "title": title,
            "price": price,
            "isPublished": published,
            "instructorId": 7,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.fail:
            return httpx.Response(503, json={"error": "down"})
        course_id = int(request.url.path.rsplit("/", 1)[-1])
        if course_id not in self.courses:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=self.courses[course_id])


class FakeGateway:
    """Scripted payment gateway; records every request it receives."""

    def __init__(self) -> None:
        self.requests = []
        self.charge_status = "success"
        self.charge_error = None
        self.threeds_init_status = "success"
        self.threeds_complete_status = "success"
        self.before_charge = None

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [req for req in self.requests if req.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content)
        path = request.url.path
        if path == "/payment/auth":
            if self.before_charge is not None:
                hook, self.before_charge = self.before_charge, None
                hook()
            return self._payment_response(body, self.charge_status, "tx-direct-1")
        if path == "/payment/3dsecure/initialize":
            if self.threeds_init_status != "success":
                return httpx.Response(
                    200,
                    json={"status": "failure", "errorCode": "10051", "errorMessage": "Kart limiti yetersiz"},
                )
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "conversationId": body["conversationId"],
                    "paymentId": "gw-3ds-1",
                    "threeDSHtmlContent": "PGh0bWw+PC9odG1sPg==",
                },
            )
        if path == "/payment/3dsecure/auth":
            return self._payment_response(body, self.threeds_complete_status, body["paymentId"])
        return httpx.Response(404, json={"status": "failure", "errorCode": "NOT_FOUND"})

    def _payment_response(self, body: dict, status: str, payment_id: str) -> httpx.Response:
        if status != "success":
            return httpx.Response(
                200,
                json={
                    "status": "failure",
                    "conversationId": body["conversationId"],
                    "errorCode": self.charge_error or "10051",
                    "errorMessage": "Kart limiti yetersiz, yetersiz bakiye",
                    "errorGroup": "NOT_SUFFICIENT_FUNDS",
                },
            )
        return httpx.Response(
            200,
            json={
                "status": "success",
                "conversationId": body["conversationId"],
                "paymentId": payment_id,
                "paymentStatus": "SUCCESS",
                "fraudStatus": 1,
                "cardAssociation": "MASTER_CARD",
            },
        )


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def kafka():
    return FakeKafkaBus()


@pytest.fixture()
def ledger(session_factory, kafka):
    return Ledger(session_factory, kafka=kafka, service_name="test")


@pytest.fixture()
def gateway_config():
    return GatewayConfig(
        api_key="sandbox-api-key",
        secret_key="sandbox-secret-key",
        base_url="https://gateway.test",
        callback_url="http://localhost:8083/api/payment/3ds/callback",
    )


@pytest.fixture()
def fake_gateway():
    return FakeGateway()


@pytest.fixture()
def fake_catalog():
    catalog = FakeCatalog()
    catalog.add(42)
    return catalog


@pytest.fixture()
def catalog(fake_catalog):
    breaker = CircuitBreaker("course-catalog-test", window_size=4, minimum_calls=2, open_seconds=60.0)
    lookup = CatalogLookup("http://catalog.test", breaker, transport=httpx.MockTransport(fake_catalog.handler))
    yield lookup
    lookup.close()


@pytest.fixture()
def gateway(gateway_config, fake_gateway):
    client = GatewayClient(
        gateway_config,
        transport=httpx.MockTransport(fake_gateway.handler),
        service_name="test",
    )
    yield client
    client.close()


@pytest.fixture()
def make_request():
    return purchase_request


@pytest.fixture()
def orchestrator(ledger, catalog, gateway):
    return PurchaseOrchestrator(ledger, catalog, gateway, provider="IYZICO", service_name="test")


def purchase_request(user_id: int = 1, course_id: int = 42, **overrides) -> CoursePurchaseRequest:
    fields = {
        "user_id": user_id,
        "course_id": course_id,
        "card_holder_name": "John Doe",
        "card_number": "5528790000000008",
        "expire_month": "12",
        "expire_year": "2030",
        "cvc": "123",
        "buyer_name": "John",
        "buyer_surname": "Doe",
        "buyer_email": "john.doe@example.com",
        "buyer_phone": "+905350000000",
        "buyer_identity_number": "74300864791",
        "buyer_address": "Nidakule Goztepe, Merdivenkoy Mah. Bora Sok. No:1",
        "buyer_city": "Istanbul",
        "buyer_country": "Turkey",
        "buyer_zip_code": "34732",
    }
    fields.update(overrides)
    return CoursePurchaseRequest(**fields)
