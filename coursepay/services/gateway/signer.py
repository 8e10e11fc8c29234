"""Gateway request signing.

Authorization = "<scheme> " + base64("apiKey:<key>&randomKey:<nonce>&signature:<hex>")
where hex = HMAC-SHA256(secret, nonce + uri_path + body). The same nonce travels
in the companion nonce header; the gateway validates both together.
"""

import base64
import hashlib
import hmac
import secrets
import time

from coursepay.services.gateway.schemas import GatewayConfig


class SigningConfigError(ValueError):
    """Missing or unusable gateway credentials."""


def generate_nonce() -> str:
    """Nanosecond wall clock plus a random suffix, unique within the replay window."""

    return f"{time.time_ns()}{secrets.randbelow(10**9):09d}"


class Signer:
    """Builds authorization headers for one gateway account."""

    def __init__(self, api_key: str, secret_key: str, scheme: str = "IYZWSv2") -> None:
        if not api_key or not api_key.strip():
            raise SigningConfigError("gateway api key is not configured")
        if not secret_key or not secret_key.strip():
            raise SigningConfigError("gateway secret key is not configured")
        if not scheme:
            raise SigningConfigError("gateway auth scheme is not configured")
        self._api_key = api_key
        self._secret = secret_key.encode("utf-8")
        self.scheme = scheme

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "Signer":
        return cls(config.api_key, config.secret_key, config.auth_scheme)

    def signature(self, body: str, path: str, nonce: str) -> str:
        payload = f"{nonce}{path}{body}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def authorization(self, body: str, path: str, nonce: str) -> str:
        credential = f"apiKey:{self._api_key}&randomKey:{nonce}&signature:{self.signature(body, path, nonce)}"
        encoded = base64.b64encode(credential.encode("utf-8")).decode("ascii")
        return f"{self.scheme} {encoded}"
