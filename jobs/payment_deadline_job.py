"""
Payment deadline sweep

Three passes over winners' payments, each item in its own transaction:

1. reminder once the deadline is within PAYMENT_REMINDER_HOURS
2. pending -> overdue once the deadline has passed
3. overdue for FORFEIT_AFTER_HOURS -> win forfeited, vendor suspended,
   case relisted when RELIST_ON_FORFEIT

Every write is guarded by the status it expects, so an overlapping run finds
nothing left to do and the payment status never regresses.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from jobs.sweep_result import SweepResult
from models import Auction, AuctionStatus, Payment, PaymentStatus
from services.audit_trail_service import audit_trail, SYSTEM_ACTOR
from services.auction_state_machine import AuctionStateMachine, TransitionResult
from services.notification_dispatcher import notification_dispatcher, NotificationEvent, NotificationDispatcher
from services.vendor_enforcement import suspend_vendor
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now

logger = logging.getLogger(__name__)


class _ForfeitRefused(Exception):
    def __init__(self, result: TransitionResult):
        super().__init__(result.message)
        self.result = result


class PaymentDeadlineJob:
    """Reminder, overdue and forfeiture enforcement for auction payments"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 auctions: Optional[AuctionStateMachine] = None,
                 notifier: Optional[NotificationDispatcher] = None, batch_size: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.notifier = notifier or notification_dispatcher
        self.auctions = auctions or AuctionStateMachine(self.session_factory, notifier=self.notifier)
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE

    def run(self, now: Optional[datetime] = None) -> Dict[str, SweepResult]:
        now = resolve_now(now)
        return {
            "reminders": self.send_reminders(now),
            "overdue": self.mark_overdue(now),
            "forfeits": self.forfeit_overdue(now),
        }

    # ------------------------------------------------------------------

    def _select_payment_ids(self, *criteria) -> List[int]:
        with self.session_factory() as session:
            return list(session.execute(
                select(Payment.id).where(*criteria).order_by(Payment.payment_deadline).limit(self.batch_size)
            ).scalars())

    def send_reminders(self, now: datetime) -> SweepResult:
        result = SweepResult("payment_reminder")
        window = timedelta(hours=Config.PAYMENT_REMINDER_HOURS)
        payment_ids = self._select_payment_ids(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.reminder_sent_at.is_(None),
            Payment.forfeited_at.is_(None),
            Payment.payment_deadline > now,
            Payment.payment_deadline <= now + window,
        )
        for payment_id in payment_ids:
            try:
                with atomic_transaction(self.session_factory) as session:
                    claimed = session.execute(
                        update(Payment)
                        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value,
                               Payment.reminder_sent_at.is_(None))
                        .values(reminder_sent_at=now)
                        .execution_options(synchronize_session=False)
                    ).rowcount == 1
                    payment = session.get(Payment, payment_id) if claimed else None
                    payload = self._payload(payment) if payment else None
            except Exception as e:
                logger.error(f"❌ PAYMENT_REMINDER_ERROR: payment {payment_id}: {e}", exc_info=True)
                result.add_failure(payment_id, str(e))
                continue

            if payload is None:
                result.add_skip(payment_id, "already reminded")
                continue
            self.notifier.emit(NotificationEvent.PAYMENT_REMINDER, **payload)
            result.add_success(payment_id, "reminded")
        return result.finish()

    def mark_overdue(self, now: datetime) -> SweepResult:
        result = SweepResult("payment_overdue")
        payment_ids = self._select_payment_ids(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.forfeited_at.is_(None),
            Payment.payment_deadline <= now,
        )
        for payment_id in payment_ids:
            try:
                with atomic_transaction(self.session_factory) as session:
                    marked = session.execute(
                        update(Payment)
                        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value,
                               Payment.forfeited_at.is_(None))
                        .values(status=PaymentStatus.OVERDUE.value, overdue_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    ).rowcount == 1
                    payload = None
                    if marked:
                        payment = session.get(Payment, payment_id)
                        payload = self._payload(payment)
                        audit_trail.record(session, SYSTEM_ACTOR, "payment.overdue", "payment", payment_id,
                                           before={"status": PaymentStatus.PENDING.value},
                                           after={"status": PaymentStatus.OVERDUE.value,
                                                  "overdue_at": now.isoformat()})
            except Exception as e:
                logger.error(f"❌ PAYMENT_OVERDUE_ERROR: payment {payment_id}: {e}", exc_info=True)
                result.add_failure(payment_id, str(e))
                continue

            if payload is None:
                result.add_skip(payment_id, "no longer pending")
                continue
            logger.warning(f"⏰ PAYMENT_OVERDUE: payment {payment_id} auction {payload['auction_id']}")
            self.notifier.emit(NotificationEvent.PAYMENT_OVERDUE, **payload)
            result.add_success(payment_id, "overdue")
        return result.finish()

    def forfeit_overdue(self, now: datetime) -> SweepResult:
        result = SweepResult("payment_forfeit")
        cutoff = now - timedelta(hours=Config.FORFEIT_AFTER_HOURS)
        with self.session_factory() as session:
            payment_ids = list(session.execute(
                select(Payment.id)
                .join(Auction, Auction.id == Payment.auction_id)
                .where(
                    Payment.status == PaymentStatus.OVERDUE.value,
                    Payment.forfeited_at.is_(None),
                    Payment.payment_deadline <= cutoff,
                    Auction.status == AuctionStatus.CLOSED.value,
                )
                .order_by(Payment.payment_deadline)
                .limit(self.batch_size)
            ).scalars())

        for payment_id in payment_ids:
            try:
                outcome = self._forfeit_one(payment_id, now)
            except _ForfeitRefused as refused:
                result.add_failure(payment_id, refused.result.message or str(refused.result.failure))
                continue
            except Exception as e:
                logger.error(f"❌ PAYMENT_FORFEIT_ERROR: payment {payment_id}: {e}", exc_info=True)
                result.add_failure(payment_id, str(e))
                continue

            if outcome is None:
                result.add_skip(payment_id, "already forfeited")
                continue
            payload, transition, suspended = outcome
            self.notifier.emit(NotificationEvent.AUCTION_FORFEITED, relisted_auction_id=transition.relisted_auction_id,
                               **payload)
            if suspended:
                self.notifier.emit(NotificationEvent.VENDOR_SUSPENDED, vendor_id=payload["vendor_id"],
                                   reason="payment deadline missed",
                                   days=Config.FORFEIT_SUSPENSION_DAYS)
            result.add_success(payment_id, "forfeited", {
                "auction_id": payload["auction_id"],
                "relisted_auction_id": transition.relisted_auction_id,
                "vendor_suspended": suspended,
            })
        return result.finish()

    def _forfeit_one(self, payment_id: int, now: datetime):
        with atomic_transaction(self.session_factory) as session:
            payment = session.execute(
                select(Payment).where(Payment.id == payment_id).with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if payment is None or payment.status != PaymentStatus.OVERDUE.value or payment.forfeited_at is not None:
                return None

            payload = self._payload(payment)
            reason = f"payment {payment_id} overdue since {payment.payment_deadline.isoformat()}"
            transition = self.auctions.forfeit_in_session(session, payment.auction_id, SYSTEM_ACTOR, reason,
                                                          relist=Config.RELIST_ON_FORFEIT, now=now)
            if not transition.success:
                raise _ForfeitRefused(transition)

            suspended = suspend_vendor(session, payment.vendor_id,
                                       now + timedelta(days=Config.FORFEIT_SUSPENSION_DAYS),
                                       f"forfeited auction {payment.auction_id}: payment deadline missed",
                                       SYSTEM_ACTOR, now)
        return payload, transition, suspended

    @staticmethod
    def _payload(payment: Payment) -> Dict[str, Any]:
        return {
            "payment_id": payment.id,
            "auction_id": payment.auction_id,
            "vendor_id": payment.vendor_id,
            "amount_minor": payment.amount_minor,
            "payment_deadline": payment.payment_deadline.isoformat(),
        }


async def run_payment_deadline_sweep() -> Dict[str, Any]:
    """Scheduler entry point"""
    results = await asyncio.to_thread(PaymentDeadlineJob().run)
    return {name: result.get_summary() for name, result in results.items()}
