"""Request/response schemas for the course purchase endpoints."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class PurchaseStatus(str, Enum):
    """Stable status tag carried by every purchase response."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    REQUIRES_3DS = "REQUIRES_3DS"
    ALREADY_PURCHASED = "ALREADY_PURCHASED"
    COURSE_UNAVAILABLE = "COURSE_UNAVAILABLE"


class CoursePurchaseRequest(BaseModel):
    """Buyer, card and course data for one purchase attempt.

    No amount field: the price always comes from the catalog.
    """

    user_id: int = Field(gt=0)
    course_id: int = Field(gt=0)

    card_holder_name: str = Field(min_length=1)
    card_number: SecretStr
    expire_month: str = Field(min_length=1, max_length=2)
    expire_year: str = Field(min_length=2, max_length=4)
    cvc: SecretStr

    buyer_name: str = Field(min_length=1)
    buyer_surname: str = Field(min_length=1)
    buyer_email: str = Field(min_length=3)
    buyer_phone: str = Field(min_length=1)
    buyer_identity_number: str = Field(min_length=1)
    buyer_address: str = Field(min_length=1)
    buyer_city: str = Field(min_length=1)
    buyer_country: str = Field(min_length=1)
    buyer_zip_code: str | None = None
    buyer_ip: str | None = None

    callback_url: str | None = None


class CoursePurchaseResponse(BaseModel):
    """Outcome of a purchase call. Never contains card data."""

    success: bool
    status: PurchaseStatus
    message: str

    payment_id: str | None = None
    payment_status: str | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None

    course_id: int | None = None
    course_name: str | None = None

    three_ds_html_content: str | None = None
    callback_url: str | None = None

    error_code: str | None = None
    error_message: str | None = None

    enrolled: bool = False
    enrollment_status: str | None = None

    fraud_status: str | None = None
    card_brand: str | None = None


class ThreeDSCallback(BaseModel):
    """Parameters the gateway posts to the callback URL after a 3DS challenge."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str = ""
    payment_id: str | None = Field(default=None, alias="paymentId")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    error_message: str | None = Field(default=None, alias="errorMessage")
    md_status: str | None = Field(default=None, alias="mdStatus")


class PaymentView(BaseModel):
    """Read model for one stored payment."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    user_id: int
    course_id: int
    amount: Decimal
    currency: str
    status: str
    provider: str
    flow: str
    conversation_id: str
    transaction_id: str | None = None
    card_brand: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExpireStaleResponse(BaseModel):
    expired_count: int
    expired_payment_ids: list[str]
