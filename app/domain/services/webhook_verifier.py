"""
Webhook signature verification for Shopify, Square and BTCPay

All signatures are HMAC-SHA256 over the raw request bytes, so callers must
pass the body exactly as received, before any JSON parsing.
"""
import base64
import hashlib
import hmac

from app.core.logging import get_logger
from app.domain.models.transaction import Platform

logger = get_logger(__name__)

SHOPIFY_SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"
SQUARE_SIGNATURE_HEADER = "X-Square-Signature"
SQUARE_HMAC_SHA256_HEADER = "X-Square-HmacSha256-Signature"
BTCPAY_SIGNATURE_HEADER = "BTCPay-Sig"


def _hmac_sha256(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def _constant_time_equals(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def compute_shopify_signature(raw_body: bytes, secret: str) -> str:
    return _hmac_sha256(secret, raw_body).hex()


def compute_square_signature(raw_body: bytes, secret: str, notification_url: str) -> str:
    return base64.b64encode(
        _hmac_sha256(secret, notification_url.encode("utf-8") + raw_body)
    ).decode("ascii")


def compute_btcpay_signature(raw_body: bytes, secret: str) -> str:
    return "sha256=" + _hmac_sha256(secret, raw_body).hex()


def verify_webhook(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    platform: Platform,
    notification_url: str = "",
) -> bool:
    """
    Check an inbound webhook signature.

    Verification is skipped (returns True) when the store has no secret
    configured or the request carries no signature header. Otherwise the
    digest must match, compared in constant time.
    """
    if not secret or not signature_header:
        logger.warning(
            "Webhook signature check skipped",
            extra_data={
                "platform": platform.value,
                "secret_configured": bool(secret),
                "header_present": bool(signature_header),
            },
        )
        return True

    provided = signature_header.strip()

    if platform == Platform.SHOPIFY:
        expected = compute_shopify_signature(raw_body, secret)
        # hex digest, case-insensitive
        valid = _constant_time_equals(expected.lower(), provided.lower())
    elif platform == Platform.SQUARE:
        expected = compute_square_signature(raw_body, secret, notification_url)
        valid = _constant_time_equals(expected, provided)
    elif platform == Platform.BTCPAY:
        expected = compute_btcpay_signature(raw_body, secret)
        valid = _constant_time_equals(expected.lower(), provided.lower())
    else:
        raise ValueError(f"Unsupported platform: {platform}")

    if not valid:
        logger.warning(
            "Webhook signature mismatch",
            extra_data={"platform": platform.value, "body_length": len(raw_body)},
        )
    return valid
