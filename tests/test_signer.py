"""Gateway request signing."""

import pytest

from coursepay.services.gateway.signer import Signer, SigningConfigError, generate_nonce


def test_authorization_matches_known_vector():
    """Header is scheme + base64 of the key, nonce and hex HMAC over nonce+path+body.

    Expected values were computed with `openssl dgst -sha256 -hmac` and `base64`.
    """

    signer = Signer("api-key", "secret-key")
    body = '{"locale":"tr","conversationId":"payment-1","price":"99.90"}'
    path = "/payment/auth"
    nonce = "1700000000000000000123456789"

    assert signer.signature(body, path, nonce) == "782e6e3cf78c49de0d950ad3a440dc6760a98944c7c85042bebd3fec6f1b9efe"
    assert signer.authorization(body, path, nonce) == (
        "IYZWSv2 "
        "YXBpS2V5OmFwaS1rZXkmcmFuZG9tS2V5OjE3MDAwMDAwMDAwMDAwMDAwMDAxMjM0NTY3ODkmc2lnbmF0dXJlOjc4"
        "MmU2ZTNjZjc4YzQ5ZGUwZDk1MGFkM2E0NDBkYzY3NjBhOTg5NDRjN2M4NTA0MmJlYmQzZmVjNmYxYjllZmU="
    )


def test_signature_is_deterministic_and_input_sensitive():
    signer = Signer("api-key", "secret-key")

    first = signer.signature("{}", "/payment/auth", "n1")
    assert first == signer.signature("{}", "/payment/auth", "n1")
    assert first != signer.signature("{}", "/payment/auth", "n2")
    assert first != signer.signature("{}", "/payment/3dsecure/auth", "n1")
    assert first != signer.signature('{"a":1}', "/payment/auth", "n1")


def test_custom_scheme_is_used_as_header_prefix():
    signer = Signer("api-key", "secret-key", scheme="IYZWS")
    assert signer.authorization("{}", "/payment/auth", "n").startswith("IYZWS ")


@pytest.mark.parametrize(
    "api_key, secret_key",
    [("", "secret"), ("key", ""), ("   ", "secret")],
)
def test_missing_credentials_fail_at_construction(api_key, secret_key):
    """Blank credentials are a configuration error, not a signing-time error."""

    with pytest.raises(SigningConfigError):
        Signer(api_key, secret_key)


def test_nonces_are_unique():
    nonces = {generate_nonce() for _ in range(1000)}
    assert len(nonces) == 1000
