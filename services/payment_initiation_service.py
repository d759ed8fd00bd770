"""Starts gateway checkouts for wallet top-ups and auction payments"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from models import Payment, PaymentStatus, Vendor, VendorStatus
from services.payment_gateway_client import PaystackClient, PaymentGatewayError
from utils.money import format_naira

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    success: bool
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    amount_minor: int = 0
    error: Optional[str] = None


def generate_funding_reference(vendor_id: str) -> str:
    return f"WALLET_{vendor_id}_{secrets.token_hex(6).upper()}"


class PaymentInitiationService:
    """Creates hosted checkout sessions; confirmation arrives later by webhook"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, client: Optional[PaystackClient] = None):
        self.session_factory = session_factory or SessionLocal
        self.client = client or PaystackClient()

    def _vendor_refusal(self, vendor_id: str) -> Optional[str]:
        with self.session_factory() as session:
            vendor = session.get(Vendor, vendor_id)
            if vendor is None:
                return "vendor not found"
            if vendor.status != VendorStatus.ACTIVE.value:
                return "vendor account is suspended"
        return None

    async def fund_wallet(self, vendor_id: str, email: str, amount_minor: int) -> CheckoutResult:
        """Pre-fund a vendor's escrow wallet"""
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
            return CheckoutResult(False, error="amount must be an integer of minor units")
        if not Config.WALLET_FUNDING_MIN_MINOR <= amount_minor <= Config.WALLET_FUNDING_MAX_MINOR:
            return CheckoutResult(
                False, amount_minor=amount_minor,
                error=(f"funding amount must be between {format_naira(Config.WALLET_FUNDING_MIN_MINOR)} "
                       f"and {format_naira(Config.WALLET_FUNDING_MAX_MINOR)}"),
            )

        refusal = await asyncio.to_thread(self._vendor_refusal, vendor_id)
        if refusal:
            return CheckoutResult(False, error=refusal)

        reference = generate_funding_reference(vendor_id)
        try:
            checkout = await self.client.initialize_transaction(
                email, amount_minor, reference,
                metadata={"type": "wallet_funding", "vendor_id": vendor_id},
            )
        except PaymentGatewayError as e:
            logger.error(f"❌ WALLET_FUNDING_INIT_FAILED: vendor {vendor_id}: {e}")
            return CheckoutResult(False, reference=reference, amount_minor=amount_minor, error=str(e))

        logger.info(f"💳 WALLET_FUNDING_STARTED: vendor {vendor_id} {format_naira(amount_minor)} ref {reference}")
        return CheckoutResult(True, reference=checkout["reference"], authorization_url=checkout["authorization_url"],
                              amount_minor=amount_minor)

    def _payable(self, payment_id: int, vendor_id: str) -> CheckoutResult:
        with self.session_factory() as session:
            payment = session.get(Payment, payment_id)
            if payment is None or payment.vendor_id != vendor_id:
                return CheckoutResult(False, error="payment not found")
            if payment.forfeited_at is not None:
                return CheckoutResult(False, reference=payment.payment_reference, error="auction win was forfeited")
            if payment.status != PaymentStatus.PENDING.value:
                return CheckoutResult(False, reference=payment.payment_reference,
                                      error=f"payment is {payment.status}")
            return CheckoutResult(True, reference=payment.payment_reference, amount_minor=payment.amount_minor)

    async def start_auction_payment(self, payment_id: int, vendor_id: str, email: str) -> CheckoutResult:
        """Gateway checkout for a pending auction payment, keyed by its payment_reference"""
        payable = await asyncio.to_thread(self._payable, payment_id, vendor_id)
        if not payable.success:
            return payable
        reference = payable.reference
        amount_minor = payable.amount_minor

        try:
            checkout = await self.client.initialize_transaction(
                email, amount_minor, reference,
                metadata={"type": "auction_payment", "payment_id": payment_id, "vendor_id": vendor_id},
            )
        except PaymentGatewayError as e:
            logger.error(f"❌ AUCTION_PAYMENT_INIT_FAILED: payment {payment_id}: {e}")
            return CheckoutResult(False, reference=reference, amount_minor=amount_minor, error=str(e))

        return CheckoutResult(True, reference=checkout["reference"], authorization_url=checkout["authorization_url"],
                              amount_minor=amount_minor)


payment_initiation = PaymentInitiationService()
