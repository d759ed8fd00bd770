"""Paystack API client for checkout initialization and insurer payouts"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Custom exception for payment gateway API errors"""
    pass


def mask_secret(secret: Optional[str]) -> str:
    if not secret:
        return "<unset>"
    return f"{secret[:7]}...{secret[-4:]}" if len(secret) > 12 else "***"


class PaystackClient:
    """Thin async wrapper over the Paystack REST endpoints this service needs"""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout_seconds: Optional[int] = None):
        self.secret_key = secret_key if secret_key is not None else Config.PAYSTACK_SECRET_KEY
        self.base_url = (base_url or Config.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.GATEWAY_HTTP_TIMEOUT_SECONDS)

        if not self.secret_key:
            logger.warning("Paystack API credentials not configured - gateway calls will fail")
        else:
            logger.info(f"Paystack API initialized with key: {mask_secret(self.secret_key)}")

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "accept": "application/json",
            "content-type": "application/json",
            "Authorization": f"Bearer {self.secret_key}",
        }

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentGatewayError("Paystack secret key not configured")
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=payload, headers=self._get_headers()) as response:
                    if response.status not in (200, 201):
                        error_text = await response.text()
                        logger.error(f"Paystack API error: {method} {path} HTTP {response.status}: {error_text[:300]}")
                        raise PaymentGatewayError(f"Paystack returned HTTP {response.status}")
                    data = await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to Paystack: {e}")
            raise PaymentGatewayError(f"Network error: {e}")

        if not data.get("status"):
            raise PaymentGatewayError(data.get("message") or "Paystack request failed")
        return data.get("data") or {}

    async def initialize_transaction(self, email: str, amount_minor: int, reference: str,
                                     metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Start a hosted checkout. Amounts go to Paystack in kobo."""
        payload = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": Config.CURRENCY,
            "metadata": metadata or {},
        }
        if Config.PAYSTACK_CALLBACK_URL:
            payload["callback_url"] = Config.PAYSTACK_CALLBACK_URL

        data = await self._request("POST", "/transaction/initialize", payload)
        logger.info(f"💳 PAYSTACK_CHECKOUT_INITIALIZED: reference {reference} amount {amount_minor}")
        return {
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "reference": data.get("reference", reference),
        }

    async def initiate_transfer(self, amount_minor: int, recipient_code: str, reference: str,
                                reason: Optional[str] = None) -> Dict[str, Any]:
        """Pay settled funds out to the insurer's transfer recipient"""
        payload = {
            "source": "balance",
            "amount": amount_minor,
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason or "Salvage auction settlement",
        }
        data = await self._request("POST", "/transfer", payload)
        logger.info(f"🏦 PAYSTACK_TRANSFER_INITIATED: reference {reference} amount {amount_minor} "
                    f"status {data.get('status')}")
        return {
            "transfer_code": data.get("transfer_code"),
            "status": data.get("status"),
            "reference": data.get("reference", reference),
        }


paystack_client = PaystackClient()
