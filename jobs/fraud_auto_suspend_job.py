"""
Fraud auto-suspend sweep

Vendors with FRAUD_FLAG_THRESHOLD or more confirmed flags are suspended. In
the same transaction their valid bids on active auctions are cancelled and any
closed, unsettled wins are forfeited (escrow unfrozen, case relisted). The
suspension is a conditional update on the active status, so concurrent runs
suspend a vendor exactly once and the loser of the race changes nothing.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import SessionLocal
from jobs.sweep_result import SweepResult
from models import Auction, AuctionStatus, Bid, BidStatus, Payment, PaymentStatus
from services.audit_trail_service import audit_trail, SYSTEM_ACTOR
from services.auction_state_machine import AuctionStateMachine, TransitionResult
from services.fraud_detection_service import FraudDetectionService
from services.notification_dispatcher import notification_dispatcher, NotificationEvent, NotificationDispatcher
from services.vendor_enforcement import suspend_vendor
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now

logger = logging.getLogger(__name__)


class _SuspensionRolledBack(Exception):
    def __init__(self, result: TransitionResult):
        super().__init__(result.message)
        self.result = result


class FraudAutoSuspendJob:
    """Suspends vendors over the confirmed-flag threshold"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 fraud: Optional[FraudDetectionService] = None,
                 auctions: Optional[AuctionStateMachine] = None,
                 notifier: Optional[NotificationDispatcher] = None, threshold: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.notifier = notifier or notification_dispatcher
        self.fraud = fraud or FraudDetectionService(self.session_factory, self.notifier)
        self.auctions = auctions or AuctionStateMachine(self.session_factory, notifier=self.notifier)
        self.threshold = threshold or Config.FRAUD_FLAG_THRESHOLD

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = resolve_now(now)
        result = SweepResult("fraud_auto_suspend")

        with self.session_factory() as session:
            vendor_ids = self.fraud.vendors_over_threshold(session, self.threshold)

        for vendor_id in vendor_ids:
            try:
                outcome = self._suspend_one(vendor_id, now)
            except _SuspensionRolledBack as rolled_back:
                result.add_failure(vendor_id, rolled_back.result.message or str(rolled_back.result.failure))
                continue
            except Exception as e:
                logger.error(f"❌ FRAUD_SUSPEND_ERROR: vendor {vendor_id}: {e}", exc_info=True)
                result.add_failure(vendor_id, str(e))
                continue

            if outcome is None:
                result.add_skip(vendor_id, "already suspended")
                continue

            self.notifier.emit(NotificationEvent.VENDOR_SUSPENDED, vendor_id=vendor_id,
                               reason="fraud threshold reached", days=Config.FRAUD_SUSPENSION_DAYS,
                               confirmed_flags=outcome["confirmed_flags"])
            result.add_success(vendor_id, "suspended", outcome)

        return result.finish()

    def _suspend_one(self, vendor_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        with atomic_transaction(self.session_factory) as session:
            confirmed = self.fraud.count_confirmed_flags(session, vendor_id)
            if confirmed < self.threshold:
                return None

            reason = f"{confirmed} confirmed fraud flags"
            if not suspend_vendor(session, vendor_id, now + timedelta(days=Config.FRAUD_SUSPENSION_DAYS),
                                  reason, SYSTEM_ACTOR, now):
                return None

            cancelled_bids = self._cancel_open_bids(session, vendor_id, now)
            forfeited = self._forfeit_unsettled_wins(session, vendor_id, reason, now)

            outcome = {
                "confirmed_flags": confirmed,
                "cancelled_bids": cancelled_bids,
                "forfeited_auctions": forfeited,
            }
            audit_trail.record(session, SYSTEM_ACTOR, "fraud.auto_suspend", "vendor", vendor_id,
                               after=outcome, description=reason)
        logger.warning(f"🚨 FRAUD_AUTO_SUSPEND: vendor {vendor_id} ({confirmed} flags), "
                       f"cancelled {len(cancelled_bids)} bid(s), forfeited {len(forfeited)} win(s)")
        return outcome

    @staticmethod
    def _cancel_open_bids(session: Session, vendor_id: str, now: datetime) -> List[int]:
        active_auctions = select(Auction.id).where(Auction.status == AuctionStatus.ACTIVE.value)
        bid_ids = list(session.execute(
            select(Bid.id).where(Bid.vendor_id == vendor_id, Bid.status == BidStatus.VALID.value,
                                 Bid.auction_id.in_(active_auctions))
        ).scalars())
        if bid_ids:
            session.execute(
                update(Bid)
                .where(Bid.id.in_(bid_ids), Bid.status == BidStatus.VALID.value)
                .values(status=BidStatus.CANCELLED.value, cancelled_at=now)
                .execution_options(synchronize_session=False)
            )
        return bid_ids

    def _forfeit_unsettled_wins(self, session: Session, vendor_id: str, reason: str, now: datetime) -> List[int]:
        auction_ids = list(session.execute(
            select(Payment.auction_id)
            .join(Auction, Auction.id == Payment.auction_id)
            .where(Payment.vendor_id == vendor_id, Payment.status != PaymentStatus.REJECTED.value,
                   Auction.status == AuctionStatus.CLOSED.value)
        ).scalars())
        for auction_id in auction_ids:
            transition = self.auctions.forfeit_in_session(session, auction_id, SYSTEM_ACTOR,
                                                          f"winner suspended: {reason}", relist=True, now=now)
            if not transition.success:
                raise _SuspensionRolledBack(transition)
        return auction_ids


async def run_fraud_auto_suspend_sweep() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await asyncio.to_thread(FraudAutoSuspendJob().run)
    return result.get_summary()
