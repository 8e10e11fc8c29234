"""Typed wire contract with the card-payment gateway.

Request models serialize to the exact camelCase field set the gateway expects
through `encode_body`, which is also the byte sequence fed to the signer.
Response models ignore fields this service does not read.
"""

import json
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coursepay.common.config import CommonSettings


CHARGE_PATH = "/payment/auth"
THREEDS_INITIALIZE_PATH = "/payment/3dsecure/initialize"
THREEDS_COMPLETE_PATH = "/payment/3dsecure/auth"

DEFAULT_BUYER_DATE = "2023-01-01 12:00:00"
DEFAULT_BUYER_IP = "127.0.0.1"


class GatewayConfig(BaseModel):
    """Immutable gateway account configuration injected into signer and client."""

    model_config = ConfigDict(frozen=True)

    api_key: str
    secret_key: str = Field(repr=False)
    base_url: str
    auth_scheme: str = "IYZWSv2"
    nonce_header: str = "x-provider-rnd"
    timeout_seconds: float = 30.0
    locale: str = "tr"
    currency: str = "TRY"
    callback_url: str = ""

    @classmethod
    def from_settings(cls, settings: CommonSettings) -> "GatewayConfig":
        return cls(
            api_key=settings.gateway_api_key,
            secret_key=settings.gateway_secret_key,
            base_url=settings.gateway_base_url.rstrip("/"),
            auth_scheme=settings.gateway_auth_scheme,
            nonce_header=settings.gateway_nonce_header,
            timeout_seconds=settings.gateway_timeout_seconds,
            locale=settings.gateway_locale,
            currency=settings.gateway_currency,
            callback_url=settings.gateway_callback_url,
        )


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentCard(WireModel):
    card_holder_name: str
    card_number: str
    expire_month: str
    expire_year: str
    cvc: str
    register_card: int = 0


class Buyer(WireModel):
    id: str
    name: str
    surname: str
    gsm_number: str
    email: str
    identity_number: str
    last_login_date: str = DEFAULT_BUYER_DATE
    registration_date: str = DEFAULT_BUYER_DATE
    registration_address: str
    ip: str = DEFAULT_BUYER_IP
    city: str
    country: str
    zip_code: str | None = None


class Address(WireModel):
    contact_name: str
    city: str
    country: str
    address: str
    zip_code: str | None = None


class BasketItem(WireModel):
    id: str
    name: str
    category1: str
    category2: str
    item_type: str = "VIRTUAL"
    price: str


class ChargeRequest(WireModel):
    """Body of a direct (non-3DS) charge."""

    locale: str
    conversation_id: str
    price: str
    paid_price: str
    currency: str
    installment: int = 1
    basket_id: str
    payment_card: PaymentCard
    buyer: Buyer
    shipping_address: Address
    billing_address: Address
    basket_items: list[BasketItem]


class ThreeDSInitializeRequest(ChargeRequest):
    """Charge body plus the fields that start a 3DS challenge."""

    payment_channel: str = "WEB"
    payment_group: str = "PRODUCT"
    callback_url: str


class ThreeDSCompleteRequest(WireModel):
    locale: str
    conversation_id: str
    payment_id: str
    payment_transaction_id: str | None = None


class GatewayPaymentResponse(WireModel):
    """Response to a direct charge or a 3DS completion."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    status: str
    payment_id: str | None = None
    conversation_id: str | None = None
    payment_status: str | None = None
    fraud_status: int | str | None = None
    card_association: str | None = None
    card_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_group: str | None = None


class ThreeDSInitializeResponse(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    status: str
    conversation_id: str | None = None
    payment_id: str | None = None
    three_ds_html_content: str | None = Field(default=None, alias="threeDSHtmlContent")
    error_code: str | None = None
    error_message: str | None = None
    error_group: str | None = None


class PaymentOutcome(BaseModel):
    """Normalized result of a charge or 3DS completion."""

    ok: bool
    transaction_id: str | None = None
    fraud_status: str | None = None
    card_brand: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_group: str | None = None

    @classmethod
    def failure(cls, error_code: str, error_message: str) -> "PaymentOutcome":
        return cls(ok=False, error_code=error_code, error_message=error_message)


class ThreeDSOutcome(BaseModel):
    """Normalized result of a 3DS initialization."""

    ok: bool
    html_challenge_content: str | None = None
    payment_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def failure(cls, error_code: str, error_message: str) -> "ThreeDSOutcome":
        return cls(ok=False, error_code=error_code, error_message=error_message)


def encode_body(model: BaseModel) -> str:
    """Canonical JSON encoding shared by signing and sending."""

    return json.dumps(
        model.model_dump(by_alias=True, exclude_none=True),
        ensure_ascii=False,
        separators=(",", ":"),
    )


def format_price(amount: Decimal) -> str:
    """Gateway prices are decimal strings with two fraction digits."""

    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
