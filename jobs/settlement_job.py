"""
Settlement sweep

Settles closed auctions whose payment is verified and funds frozen (escrow
wallet wins, or webhook confirmations whose immediate settle failed), then
pushes released funds to the insurer. Each payout uses the payment's
payout_reference as the gateway idempotency key, so a retried transfer is
never paid twice.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from jobs.sweep_result import SweepResult
from models import Auction, AuctionStatus, Payment, PaymentStatus, EscrowStatus, PayoutStatus
from services.audit_trail_service import audit_trail, SYSTEM_ACTOR
from services.auction_state_machine import AuctionStateMachine
from services.payment_gateway_client import PaystackClient, PaymentGatewayError
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now, get_naive_utc_now

logger = logging.getLogger(__name__)


class SettlementJob:
    """Settles verified wins and initiates insurer payouts"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 auctions: Optional[AuctionStateMachine] = None,
                 gateway: Optional[PaystackClient] = None, batch_size: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.auctions = auctions or AuctionStateMachine(self.session_factory)
        self.gateway = gateway or PaystackClient()
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE

    def settle_verified(self, now: Optional[datetime] = None) -> SweepResult:
        now = resolve_now(now)
        result = SweepResult("settlement")
        with self.session_factory() as session:
            auction_ids = list(session.execute(
                select(Auction.id)
                .join(Payment, Payment.auction_id == Auction.id)
                .where(
                    Auction.status == AuctionStatus.CLOSED.value,
                    Payment.status == PaymentStatus.VERIFIED.value,
                    Payment.escrow_status == EscrowStatus.FROZEN.value,
                )
                .order_by(Auction.closed_at)
                .limit(self.batch_size)
            ).scalars())

        for auction_id in auction_ids:
            try:
                settlement = self.auctions.settle_auction(auction_id, actor=SYSTEM_ACTOR, now=now)
            except Exception as e:
                logger.error(f"❌ SETTLEMENT_ERROR: auction {auction_id}: {e}", exc_info=True)
                result.add_failure(auction_id, str(e))
                continue
            if settlement.success and settlement.already_settled:
                result.add_skip(auction_id, "already settled")
            elif settlement.success:
                result.add_success(auction_id, "settled", {"released_minor": settlement.released_minor})
            else:
                result.add_failure(auction_id, settlement.message or str(settlement.failure))
        return result.finish()

    def _pending_payouts(self) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            rows = session.execute(
                select(Payment)
                .where(
                    Payment.escrow_status == EscrowStatus.RELEASED.value,
                    Payment.payout_status.in_([PayoutStatus.PENDING.value, PayoutStatus.FAILED.value]),
                )
                .order_by(Payment.id)
                .limit(self.batch_size)
            ).scalars()
            return [
                {"payment_id": p.id, "auction_id": p.auction_id, "amount_minor": p.amount_minor,
                 "payout_reference": p.payout_reference, "payout_status": p.payout_status}
                for p in rows
            ]

    async def initiate_payouts(self) -> SweepResult:
        result = SweepResult("insurer_payout")
        recipient = Config.INSURER_TRANSFER_RECIPIENT
        payouts = await asyncio.to_thread(self._pending_payouts)
        if payouts and (not recipient or not self.gateway.is_configured()):
            logger.warning(f"⚠️ PAYOUT_NOT_CONFIGURED: {len(payouts)} payout(s) waiting for gateway configuration")
            for payout in payouts:
                result.add_skip(payout["payment_id"], "gateway not configured")
            return result.finish()

        for payout in payouts:
            payment_id = payout["payment_id"]
            try:
                transfer = await self.gateway.initiate_transfer(
                    payout["amount_minor"], recipient, payout["payout_reference"],
                    reason=f"Salvage auction {payout['auction_id']} settlement",
                )
            except PaymentGatewayError as e:
                await asyncio.to_thread(self._record_payout, payment_id, payout["payout_status"],
                                        PayoutStatus.FAILED, str(e))
                result.add_failure(payment_id, str(e))
                continue

            await asyncio.to_thread(self._record_payout, payment_id, payout["payout_status"],
                                    PayoutStatus.INITIATED, transfer.get("transfer_code"))
            result.add_success(payment_id, "payout_initiated", {"transfer_code": transfer.get("transfer_code")})
        return result.finish()

    def _record_payout(self, payment_id: int, expected: str, status: PayoutStatus, detail: Optional[str]) -> None:
        with atomic_transaction(self.session_factory) as session:
            changed = session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.payout_status == expected)
                .values(payout_status=status.value, updated_at=get_naive_utc_now())
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed:
                audit_trail.record(session, SYSTEM_ACTOR, f"payout.{status.value}", "payment", payment_id,
                                   before={"payout_status": expected}, after={"payout_status": status.value},
                                   description=detail)

    async def run(self, now: Optional[datetime] = None) -> Dict[str, SweepResult]:
        settled = await asyncio.to_thread(self.settle_verified, now)
        payouts = await self.initiate_payouts()
        return {"settlement": settled, "payouts": payouts}


async def run_settlement_sweep() -> Dict[str, Any]:
    """Scheduler entry point"""
    results = await SettlementJob().run()
    return {name: result.get_summary() for name, result in results.items()}
