"""
Webhook Security Service - signature validation for payment gateway callbacks
Signatures are always checked against the raw request body, before any JSON parsing
"""

import logging
import hmac
import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)

MAX_WEBHOOK_BODY_BYTES = 1024 * 1024


class WebhookProvider(Enum):
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"


SIGNATURE_HEADERS = {
    WebhookProvider.PAYSTACK: "x-paystack-signature",
    WebhookProvider.FLUTTERWAVE: "verif-hash",
}


@dataclass
class SignatureCheck:
    valid: bool
    error: Optional[str] = None


def compute_paystack_signature(raw_body: bytes, secret_key: str) -> str:
    """Hex HMAC-SHA512 of the raw body keyed by the Paystack secret key"""
    return hmac.new(secret_key.encode(), raw_body, hashlib.sha512).hexdigest()


def validate_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA512 signature"""
    if not signature or not secret:
        return False
    expected = compute_paystack_signature(raw_body, secret)
    return hmac.compare_digest(signature.strip().lower().encode(), expected.encode())


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    def __init__(self, paystack_secret: Optional[str] = None, flutterwave_secret_hash: Optional[str] = None):
        self.paystack_secret = paystack_secret if paystack_secret is not None else Config.PAYSTACK_SECRET_KEY
        self.flutterwave_secret_hash = (
            flutterwave_secret_hash if flutterwave_secret_hash is not None else Config.FLUTTERWAVE_SECRET_HASH
        )

    def verify(self, provider: WebhookProvider, raw_body: bytes, signature: Optional[str]) -> SignatureCheck:
        if len(raw_body) > MAX_WEBHOOK_BODY_BYTES:
            logger.error(f"🚨 WEBHOOK_PAYLOAD_TOO_LARGE: {provider.value} {len(raw_body)} bytes")
            return SignatureCheck(False, "payload too large")
        if not signature:
            logger.warning(f"🚨 WEBHOOK_SIGNATURE_MISSING: {provider.value}")
            return SignatureCheck(False, "missing signature header")

        if provider == WebhookProvider.PAYSTACK:
            if not self.paystack_secret:
                logger.error("❌ WEBHOOK_SECRET_MISSING: PAYSTACK_SECRET_KEY not configured")
                return SignatureCheck(False, "gateway secret not configured")
            valid = validate_webhook_signature(raw_body, signature, self.paystack_secret)
        elif provider == WebhookProvider.FLUTTERWAVE:
            if not self.flutterwave_secret_hash:
                logger.error("❌ WEBHOOK_SECRET_MISSING: FLUTTERWAVE_SECRET_HASH not configured")
                return SignatureCheck(False, "gateway secret not configured")
            # Flutterwave echoes the shared secret hash in verif-hash
            valid = hmac.compare_digest(signature.strip().encode(), self.flutterwave_secret_hash.encode())
        else:
            return SignatureCheck(False, f"unsupported provider {provider}")

        if not valid:
            logger.warning(f"🚨 WEBHOOK_SIGNATURE_INVALID: {provider.value} ({len(raw_body)} bytes)")
            return SignatureCheck(False, "invalid signature")
        return SignatureCheck(True)
