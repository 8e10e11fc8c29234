"""Signed HTTP client for the card-payment gateway.

Every public call returns a typed outcome. Transport errors, non-2xx answers
and malformed bodies become `ok=False` outcomes with a synthetic error code so
the orchestrator always has something to finalize the payment with.
"""

import time

import httpx
from pydantic import BaseModel, ValidationError

from coursepay.common.config import settings
from coursepay.common.logging import logger
from coursepay.common.metrics import gateway_failures_total, gateway_request_duration_seconds
from coursepay.common.tracing import get_tracer
from coursepay.services.gateway.schemas import (
    CHARGE_PATH,
    THREEDS_COMPLETE_PATH,
    THREEDS_INITIALIZE_PATH,
    ChargeRequest,
    GatewayConfig,
    GatewayPaymentResponse,
    PaymentOutcome,
    ThreeDSCompleteRequest,
    ThreeDSInitializeRequest,
    ThreeDSInitializeResponse,
    ThreeDSOutcome,
    encode_body,
)
from coursepay.services.gateway.signer import Signer, generate_nonce


GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
GATEWAY_UNREACHABLE = "GATEWAY_UNREACHABLE"
GATEWAY_MALFORMED_RESPONSE = "GATEWAY_MALFORMED_RESPONSE"
GATEWAY_DECLINED = "GATEWAY_DECLINED"

tracer = get_tracer(__name__)


class GatewayCallError(Exception):
    """Internal signal carrying the synthetic code for a failed exchange."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class GatewayClient:
    """Executes charge, 3DS initialize and 3DS complete against the gateway."""

    def __init__(
        self,
        config: GatewayConfig,
        signer: Signer | None = None,
        transport: httpx.BaseTransport | None = None,
        nonce_factory=generate_nonce,
        service_name: str | None = None,
    ) -> None:
        self.config = config
        self.signer = signer or Signer.from_config(config)
        self.nonce_factory = nonce_factory
        self.service_name = service_name or settings.service_name
        self._http = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def charge_direct(self, request: ChargeRequest) -> PaymentOutcome:
        """Charge a card without a 3DS challenge."""

        with tracer.start_as_current_span("gateway.charge_direct"):
            outcome = self._payment_call("charge_direct", CHARGE_PATH, request)
        logger.info(
            "gateway_charge_result conversation_id=%s ok=%s error_code=%s",
            request.conversation_id,
            outcome.ok,
            outcome.error_code,
        )
        return outcome

    def initiate_3ds(self, request: ThreeDSInitializeRequest) -> ThreeDSOutcome:
        """Start a 3DS challenge; success carries opaque markup for the browser."""

        operation = "initiate_3ds"
        with tracer.start_as_current_span("gateway.initiate_3ds"):
            try:
                data = self._post(operation, THREEDS_INITIALIZE_PATH, request)
                response = ThreeDSInitializeResponse.model_validate(data)
            except GatewayCallError as exc:
                self._count_failure(operation, exc.error_code)
                return ThreeDSOutcome.failure(exc.error_code, exc.message)
            except ValidationError as exc:
                self._count_failure(operation, GATEWAY_MALFORMED_RESPONSE)
                return ThreeDSOutcome.failure(GATEWAY_MALFORMED_RESPONSE, f"unexpected gateway response: {exc}")

        if response.status != "success" or not response.three_ds_html_content:
            error_code = response.error_code or GATEWAY_DECLINED
            self._count_failure(operation, error_code)
            logger.info(
                "gateway_3ds_initialize_rejected conversation_id=%s error_code=%s",
                request.conversation_id,
                error_code,
            )
            return ThreeDSOutcome.failure(error_code, response.error_message or "3DS initialization rejected")
        logger.info(
            "gateway_3ds_initialized conversation_id=%s gateway_payment_id=%s",
            request.conversation_id,
            response.payment_id,
        )
        return ThreeDSOutcome(
            ok=True,
            html_challenge_content=response.three_ds_html_content,
            payment_id=response.payment_id,
        )

    def complete_3ds(self, conversation_id: str, payment_id: str) -> PaymentOutcome:
        """Finish a payment whose 3DS challenge the buyer passed.

        Callers must not invoke this twice for one conversation; the
        orchestrator answers repeated callbacks from stored state instead.
        """

        request = ThreeDSCompleteRequest(
            locale=self.config.locale,
            conversation_id=conversation_id,
            payment_id=payment_id,
        )
        with tracer.start_as_current_span("gateway.complete_3ds"):
            outcome = self._payment_call("complete_3ds", THREEDS_COMPLETE_PATH, request)
        logger.info(
            "gateway_3ds_complete_result conversation_id=%s ok=%s error_code=%s",
            conversation_id,
            outcome.ok,
            outcome.error_code,
        )
        return outcome

    def _payment_call(self, operation: str, path: str, request: BaseModel) -> PaymentOutcome:
        try:
            data = self._post(operation, path, request)
            response = GatewayPaymentResponse.model_validate(data)
        except GatewayCallError as exc:
            self._count_failure(operation, exc.error_code)
            return PaymentOutcome.failure(exc.error_code, exc.message)
        except ValidationError as exc:
            self._count_failure(operation, GATEWAY_MALFORMED_RESPONSE)
            return PaymentOutcome.failure(GATEWAY_MALFORMED_RESPONSE, f"unexpected gateway response: {exc}")
        return self._to_payment_outcome(operation, response)

    def _to_payment_outcome(self, operation: str, response: GatewayPaymentResponse) -> PaymentOutcome:
        # A 2xx with status != success (or a non-SUCCESS paymentStatus) is a decline.
        confirmed = response.status == "success" and response.payment_status in (None, "SUCCESS")
        if confirmed and response.payment_id:
            return PaymentOutcome(
                ok=True,
                transaction_id=response.payment_id,
                fraud_status=None if response.fraud_status is None else str(response.fraud_status),
                card_brand=response.card_association,
            )
        error_code = response.error_code or GATEWAY_DECLINED
        self._count_failure(operation, error_code)
        return PaymentOutcome(
            ok=False,
            fraud_status=None if response.fraud_status is None else str(response.fraud_status),
            card_brand=response.card_association,
            error_code=error_code,
            error_message=response.error_message or "payment was not confirmed by the gateway",
            error_group=response.error_group,
        )

    def _post(self, operation: str, path: str, request: BaseModel) -> dict:
        """Sign and send one request; return the decoded JSON body."""

        body = encode_body(request)
        nonce = self.nonce_factory()
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": self.signer.authorization(body, path, nonce),
            self.config.nonce_header: nonce,
        }
        started = time.perf_counter()
        try:
            resp = self._http.post(path, content=body.encode("utf-8"), headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("gateway_timeout operation=%s path=%s error=%s", operation, path, exc)
            raise GatewayCallError(GATEWAY_TIMEOUT, "payment gateway timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("gateway_unreachable operation=%s path=%s error=%s", operation, path, exc)
            raise GatewayCallError(GATEWAY_UNREACHABLE, "payment gateway is unreachable") from exc
        finally:
            gateway_request_duration_seconds.labels(
                service=self.service_name,
                operation=operation,
            ).observe(max(0.0, time.perf_counter() - started))

        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning(
                "gateway_malformed_response operation=%s status_code=%s",
                operation,
                resp.status_code,
            )
            if resp.is_success:
                raise GatewayCallError(GATEWAY_MALFORMED_RESPONSE, "gateway returned a non-JSON body") from exc
            raise GatewayCallError(
                f"GATEWAY_HTTP_{resp.status_code}", f"gateway answered HTTP {resp.status_code}"
            ) from exc
        if not isinstance(data, dict):
            raise GatewayCallError(GATEWAY_MALFORMED_RESPONSE, "gateway returned a non-object body")
        if not resp.is_success:
            logger.warning("gateway_http_error operation=%s status_code=%s", operation, resp.status_code)
            error_code = data.get("errorCode") or f"GATEWAY_HTTP_{resp.status_code}"
            error_message = data.get("errorMessage") or f"gateway answered HTTP {resp.status_code}"
            raise GatewayCallError(str(error_code), str(error_message))
        return data

    def _count_failure(self, operation: str, error_code: str) -> None:
        gateway_failures_total.labels(
            service=self.service_name,
            operation=operation,
            error_code=error_code,
        ).inc()
