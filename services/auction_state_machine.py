"""
Auction State Machine
=====================

Lifecycle of a salvage auction and the bid acceptance rules.

    active -> closed -> settled
    active -> cancelled            (administrative override)
    closed -> cancelled            (win forfeited: payment overdue or fraud)

Bid placement is a version-guarded read-modify-write of the auction row, so
concurrent bidders can never overwrite each other's accepted bid. Closure,
settlement and forfeiture run their ledger calls in the same transaction as the
auction status change. Notifications go out only after commit.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from caching.simple_cache import auction_cache
from config import Config
from database import SessionLocal
from models import (
    Auction, AuctionStatus, Bid, BidStatus, Payment, PaymentStatus, PaymentMethod,
    EscrowStatus, PayoutStatus, Vendor, VendorStatus,
)
from services.audit_trail_service import audit_trail
from services.escrow_ledger import EscrowLedger, LedgerFailure, LedgerInvariantError
from services.fraud_detection_service import FraudDetectionService
from services.notification_dispatcher import notification_dispatcher, NotificationEvent, NotificationDispatcher
from services.vendor_tier_service import VendorTierService
from utils.atomic_transactions import atomic_transaction, versioned_update
from utils.datetime_helpers import resolve_now
from utils.money import format_naira

logger = logging.getLogger(__name__)


class BidRejection(Enum):
    """Reasons a bid is refused"""
    INVALID_AMOUNT = "invalid_amount"
    AUCTION_NOT_FOUND = "auction_not_found"
    AUCTION_NOT_ACTIVE = "auction_not_active"
    AUCTION_NOT_STARTED = "auction_not_started"
    AUCTION_ENDED = "auction_ended"
    BID_TOO_LOW = "bid_too_low"
    TIER_LIMIT_EXCEEDED = "tier_limit_exceeded"
    VENDOR_NOT_FOUND = "vendor_not_found"
    VENDOR_SUSPENDED = "vendor_suspended"
    VERIFICATION_REQUIRED = "verification_required"
    CONCURRENT_UPDATE = "concurrent_update"
    DATABASE_ERROR = "database_error"


class AuctionActionFailure(Enum):
    """Reasons a closure, settlement or transition is refused"""
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    NOT_ENDED = "not_ended"
    INVALID_INPUT = "invalid_input"
    PAYMENT_NOT_VERIFIED = "payment_not_verified"
    FUNDS_NOT_FROZEN = "funds_not_frozen"
    LEDGER_FAILURE = "ledger_failure"
    CONCURRENT_UPDATE = "concurrent_update"
    DATABASE_ERROR = "database_error"


class AuctionTransitionValidator:
    """Validates auction status transitions"""

    VALID_TRANSITIONS = {
        AuctionStatus.ACTIVE.value: {AuctionStatus.CLOSED.value, AuctionStatus.CANCELLED.value},
        AuctionStatus.CLOSED.value: {AuctionStatus.SETTLED.value, AuctionStatus.CANCELLED.value},
        AuctionStatus.SETTLED.value: set(),
        AuctionStatus.CANCELLED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: str, new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


@dataclass
class BidResult:
    accepted: bool
    auction_id: int
    vendor_id: str
    amount_minor: int
    rejection: Optional[BidRejection] = None
    message: Optional[str] = None
    bid_id: Optional[int] = None
    current_bid_minor: Optional[int] = None
    minimum_next_bid_minor: Optional[int] = None
    end_time: Optional[datetime] = None
    extended: bool = False
    extension_count: int = 0


@dataclass
class ClosureResult:
    success: bool
    auction_id: int
    status: Optional[str] = None
    already_closed: bool = False
    winner_vendor_id: Optional[str] = None
    winning_amount_minor: Optional[int] = None
    payment_id: Optional[int] = None
    payment_deadline: Optional[datetime] = None
    escrow_frozen: bool = False
    failure: Optional[AuctionActionFailure] = None
    message: Optional[str] = None


@dataclass
class SettlementResult:
    success: bool
    auction_id: int
    already_settled: bool = False
    payment_id: Optional[int] = None
    released_minor: int = 0
    failure: Optional[AuctionActionFailure] = None
    message: Optional[str] = None


@dataclass
class TransitionResult:
    success: bool
    auction_id: int
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    relisted_auction_id: Optional[int] = None
    unfrozen_minor: int = 0
    failure: Optional[AuctionActionFailure] = None
    message: Optional[str] = None


class _Retry(Exception):
    pass


class _Refused(Exception):
    """Carries a failure result out of a transaction so it rolls back"""

    def __init__(self, result: Any):
        super().__init__(getattr(result, "message", None))
        self.result = result


def auction_snapshot(auction: Auction) -> Dict[str, Any]:
    return {
        "auction_id": auction.id,
        "case_id": auction.case_id,
        "status": auction.status,
        "start_time": auction.start_time.isoformat(),
        "end_time": auction.end_time.isoformat(),
        "original_end_time": auction.original_end_time.isoformat(),
        "extension_count": auction.extension_count,
        "current_bid_minor": auction.current_bid_minor,
        "current_bidder_id": auction.current_bidder_id,
        "minimum_increment_minor": auction.minimum_increment_minor,
        "version": auction.version,
    }


def get_active_payment(session: Session, auction_id: int) -> Optional[Payment]:
    """The single non-rejected payment for an auction, if any"""
    return session.execute(
        select(Payment)
        .where(Payment.auction_id == auction_id, Payment.status != PaymentStatus.REJECTED.value)
        .order_by(Payment.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def generate_payment_reference(auction_id: int) -> str:
    return f"PAY_{auction_id}_{secrets.token_hex(6).upper()}"


def freeze_reference(auction_id: int) -> str:
    return f"FREEZE_{auction_id}"


def release_reference(auction_id: int) -> str:
    return f"RELEASE_{auction_id}"


def unfreeze_reference(auction_id: int) -> str:
    return f"UNFREEZE_{auction_id}"


class AuctionStateMachine:
    """Auction lifecycle operations"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        ledger: Optional[EscrowLedger] = None,
        tier_service: Optional[VendorTierService] = None,
        fraud_detector: Optional[FraudDetectionService] = None,
        notifier: Optional[NotificationDispatcher] = None,
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.ledger = ledger or EscrowLedger(self.session_factory)
        self.tier_service = tier_service or VendorTierService(self.session_factory)
        self.notifier = notifier or notification_dispatcher
        self.fraud_detector = fraud_detector or FraudDetectionService(self.session_factory, self.notifier)
        self.max_retries = max_retries or Config.BID_MAX_RETRIES

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_auction(self, case_id: str, end_time: datetime, minimum_increment_minor: Optional[int] = None,
                       start_time: Optional[datetime] = None, actor: Optional[str] = None) -> int:
        """Open an auction for an approved salvage case"""
        start_time = resolve_now(start_time)
        end_time = resolve_now(end_time)
        increment = minimum_increment_minor or Config.DEFAULT_MINIMUM_INCREMENT_MINOR
        if end_time <= start_time:
            raise ValueError("end_time must be after start_time")
        if increment <= 0:
            raise ValueError("minimum_increment_minor must be positive")

        with atomic_transaction(self.session_factory) as session:
            auction = self._new_auction(session, case_id, start_time, end_time, increment, actor)
            auction_id = auction.id
        logger.info(f"🔨 AUCTION_CREATED: auction {auction_id} case {case_id} ends {end_time.isoformat()}")
        return auction_id

    def _new_auction(self, session: Session, case_id: str, start_time: datetime, end_time: datetime,
                     increment: int, actor: Optional[str], relisted_from_id: Optional[int] = None) -> Auction:
        auction = Auction(
            case_id=case_id,
            start_time=start_time,
            end_time=end_time,
            original_end_time=end_time,
            extension_count=0,
            minimum_increment_minor=increment,
            status=AuctionStatus.ACTIVE.value,
            version=1,
            relisted_from_id=relisted_from_id,
            created_by=actor,
        )
        session.add(auction)
        session.flush()
        audit_trail.record(session, actor, "auction.created", "auction", auction.id, after=auction_snapshot(auction))
        return auction

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------

    def place_bid(self, auction_id: int, vendor_id: str, amount_minor: int, ip_address: Optional[str] = None,
                  otp_verified: bool = True, now: Optional[datetime] = None) -> BidResult:
        """Validate and record a bid against the current auction row"""
        now = resolve_now(now)
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            return BidResult(False, auction_id, vendor_id, amount_minor, BidRejection.INVALID_AMOUNT,
                             "bid amount must be a positive integer of minor units")
        if Config.REQUIRE_BID_VERIFICATION and not otp_verified:
            return BidResult(False, auction_id, vendor_id, amount_minor, BidRejection.VERIFICATION_REQUIRED,
                             "bid must be confirmed with a one-time code")

        for attempt in range(1, self.max_retries + 1):
            try:
                with atomic_transaction(self.session_factory) as session:
                    result, previous_bidder, previous_bid = self._try_place_bid(
                        session, auction_id, vendor_id, amount_minor, ip_address, otp_verified, now
                    )
            except _Retry:
                logger.info(f"🔁 BID_RETRY: auction {auction_id} vendor {vendor_id} attempt {attempt}/{self.max_retries}")
                continue
            except SQLAlchemyError as e:
                logger.error(f"❌ BID_DATABASE_ERROR: auction {auction_id} vendor {vendor_id}: {e}", exc_info=True)
                return BidResult(False, auction_id, vendor_id, amount_minor, BidRejection.DATABASE_ERROR, str(e))

            if result.accepted:
                auction_cache.delete(f"auction:{auction_id}")
                self._after_bid(result, previous_bidder, previous_bid, now)
            return result

        logger.warning(f"⚠️ BID_CONFLICT_EXHAUSTED: auction {auction_id} vendor {vendor_id}")
        return BidResult(False, auction_id, vendor_id, amount_minor, BidRejection.CONCURRENT_UPDATE,
                         "auction is busy, please retry")

    def _try_place_bid(self, session: Session, auction_id: int, vendor_id: str, amount_minor: int,
                       ip_address: Optional[str], otp_verified: bool, now: datetime):
        def reject(reason: BidRejection, message: str, auction: Optional[Auction] = None):
            result = BidResult(False, auction_id, vendor_id, amount_minor, reason, message)
            if auction is not None:
                result.current_bid_minor = auction.current_bid_minor
                result.minimum_next_bid_minor = self.minimum_next_bid(auction)
                result.end_time = auction.end_time
            logger.info(f"🚫 BID_REJECTED: auction {auction_id} vendor {vendor_id} "
                        f"{format_naira(amount_minor)}: {reason.value}")
            return result, None, None

        auction = session.execute(
            select(Auction).where(Auction.id == auction_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if auction is None:
            return reject(BidRejection.AUCTION_NOT_FOUND, "auction not found")
        if auction.status in (AuctionStatus.CLOSED.value, AuctionStatus.SETTLED.value):
            return reject(BidRejection.AUCTION_ENDED, "auction has ended", auction)
        if auction.status != AuctionStatus.ACTIVE.value:
            return reject(BidRejection.AUCTION_NOT_ACTIVE, f"auction is {auction.status}", auction)
        if now < auction.start_time:
            return reject(BidRejection.AUCTION_NOT_STARTED, "auction has not started", auction)
        if now >= auction.end_time:
            return reject(BidRejection.AUCTION_ENDED, "auction has ended", auction)

        vendor = session.get(Vendor, vendor_id)
        if vendor is None:
            return reject(BidRejection.VENDOR_NOT_FOUND, "vendor not found", auction)
        if vendor.status != VendorStatus.ACTIVE.value:
            return reject(BidRejection.VENDOR_SUSPENDED, "vendor account is suspended", auction)

        minimum = self.minimum_next_bid(auction)
        if amount_minor < minimum:
            return reject(BidRejection.BID_TOO_LOW, f"minimum bid is {format_naira(minimum)}", auction)

        limit = self.tier_service.get_vendor_tier_limit(vendor_id, session=session)
        if limit is not None and amount_minor > limit:
            return reject(BidRejection.TIER_LIMIT_EXCEEDED,
                          f"tier limit is {format_naira(limit)}, upgrade KYC tier to bid higher", auction)

        new_end_time, extended = self.compute_extension(auction, now)
        previous_bidder = auction.current_bidder_id
        previous_bid = auction.current_bid_minor
        before = auction_snapshot(auction)

        values = {
            "current_bid_minor": amount_minor,
            "current_bidder_id": vendor_id,
        }
        if extended:
            values["end_time"] = new_end_time
            values["extension_count"] = auction.extension_count + 1
        if not versioned_update(session, Auction, auction_id, auction.version, values):
            raise _Retry()

        bid = Bid(
            auction_id=auction_id,
            vendor_id=vendor_id,
            amount_minor=amount_minor,
            otp_verified=otp_verified,
            ip_address=ip_address,
            status=BidStatus.VALID.value,
            created_at=now,
        )
        session.add(bid)
        session.flush()

        after = dict(before, current_bid_minor=amount_minor, current_bidder_id=vendor_id,
                     end_time=(new_end_time if extended else auction.end_time).isoformat(),
                     extension_count=auction.extension_count + (1 if extended else 0),
                     version=auction.version + 1)
        audit_trail.record(session, vendor_id, "auction.bid_placed", "auction", auction_id, before=before,
                           after=after, description=f"bid {bid.id} {amount_minor}")

        if extended:
            logger.info(f"⏱️ ANTI_SNIPING_EXTENSION: auction {auction_id} end {auction.end_time.isoformat()} "
                        f"-> {new_end_time.isoformat()} (extension {after['extension_count']})")
        logger.info(f"✅ BID_ACCEPTED: auction {auction_id} vendor {vendor_id} {format_naira(amount_minor)}")

        result = BidResult(
            accepted=True,
            auction_id=auction_id,
            vendor_id=vendor_id,
            amount_minor=amount_minor,
            bid_id=bid.id,
            current_bid_minor=amount_minor,
            minimum_next_bid_minor=amount_minor + auction.minimum_increment_minor,
            end_time=new_end_time if extended else auction.end_time,
            extended=extended,
            extension_count=after["extension_count"],
        )
        return result, previous_bidder, previous_bid

    @staticmethod
    def minimum_next_bid(auction: Auction) -> int:
        return (auction.current_bid_minor or 0) + auction.minimum_increment_minor

    @staticmethod
    def compute_extension(auction: Auction, now: datetime):
        """New end time for a bid at `now`, and whether it moved.

        A bid inside the final window pushes end_time out by a fixed increment,
        bounded by original_end_time + MAX_TOTAL_EXTENSION_MINUTES.
        """
        window = timedelta(minutes=Config.ANTI_SNIPING_WINDOW_MINUTES)
        if auction.end_time - now > window:
            return auction.end_time, False

        proposed = auction.end_time + timedelta(minutes=Config.ANTI_SNIPING_EXTENSION_MINUTES)
        if Config.MAX_TOTAL_EXTENSION_MINUTES > 0:
            cap = auction.original_end_time + timedelta(minutes=Config.MAX_TOTAL_EXTENSION_MINUTES)
            proposed = min(proposed, cap)
        if proposed <= auction.end_time:
            logger.info(f"⏱️ ANTI_SNIPING_CAP_REACHED: auction {auction.id} stays at {auction.end_time.isoformat()}")
            return auction.end_time, False
        return proposed, True

    def _after_bid(self, result: BidResult, previous_bidder: Optional[str], previous_bid: Optional[int],
                   now: datetime) -> None:
        if previous_bidder and previous_bidder != result.vendor_id:
            self.notifier.emit(
                NotificationEvent.OUTBID,
                auction_id=result.auction_id,
                vendor_id=previous_bidder,
                new_bid_minor=result.amount_minor,
            )
        self.fraud_detector.screen_bid(result.bid_id, previous_bid_minor=previous_bid, now=now)

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def close_auction(self, auction_id: int, now: Optional[datetime] = None,
                      actor: Optional[str] = None) -> ClosureResult:
        """Close an ended auction and open the winner's payment. Idempotent."""
        now = resolve_now(now)
        result = self._run_transition(
            lambda session: self._close(session, auction_id, now, actor),
            lambda failure, message: ClosureResult(False, auction_id, failure=failure, message=message),
            f"close auction {auction_id}",
        )
        if result.success and not result.already_closed:
            auction_cache.delete(f"auction:{auction_id}")
            if result.winner_vendor_id:
                self.notifier.emit(
                    NotificationEvent.AUCTION_WON,
                    auction_id=auction_id,
                    vendor_id=result.winner_vendor_id,
                    amount_minor=result.winning_amount_minor,
                    payment_id=result.payment_id,
                    payment_deadline=result.payment_deadline.isoformat() if result.payment_deadline else None,
                    escrow_frozen=result.escrow_frozen,
                )
        return result

    def _close(self, session: Session, auction_id: int, now: datetime, actor: Optional[str]) -> ClosureResult:
        auction = self._lock_auction(session, auction_id)
        if auction is None:
            return ClosureResult(False, auction_id, failure=AuctionActionFailure.NOT_FOUND, message="auction not found")

        if auction.status in (AuctionStatus.CLOSED.value, AuctionStatus.SETTLED.value):
            payment = get_active_payment(session, auction_id)
            return ClosureResult(
                True, auction_id, status=auction.status, already_closed=True,
                winner_vendor_id=payment.vendor_id if payment else None,
                winning_amount_minor=payment.amount_minor if payment else None,
                payment_id=payment.id if payment else None,
                payment_deadline=payment.payment_deadline if payment else None,
                escrow_frozen=bool(payment and payment.escrow_status == EscrowStatus.FROZEN.value),
            )
        if auction.status != AuctionStatus.ACTIVE.value:
            return ClosureResult(False, auction_id, status=auction.status, failure=AuctionActionFailure.INVALID_STATE,
                                 message=f"cannot close a {auction.status} auction")
        if now < auction.end_time:
            return ClosureResult(False, auction_id, status=auction.status, failure=AuctionActionFailure.NOT_ENDED,
                                 message=f"auction ends at {auction.end_time.isoformat()}")

        before = auction_snapshot(auction)
        self._transition(session, auction, AuctionStatus.CLOSED, closed_at=now)

        winner = session.execute(
            select(Bid)
            .where(Bid.auction_id == auction_id, Bid.status == BidStatus.VALID.value)
            .order_by(Bid.amount_minor.desc(), Bid.id.asc())
            .limit(1)
        ).scalar_one_or_none()

        result = ClosureResult(True, auction_id, status=AuctionStatus.CLOSED.value)
        if winner is None:
            audit_trail.record(session, actor, "auction.closed", "auction", auction_id, before=before,
                               after=dict(before, status=AuctionStatus.CLOSED.value),
                               description="closed without a valid bid")
            logger.info(f"🏁 AUCTION_CLOSED: auction {auction_id} had no valid bids")
            return result

        payment = self._open_payment(session, auction_id, winner.vendor_id, winner.amount_minor,
                                     now + timedelta(hours=Config.PAYMENT_DEADLINE_HOURS), now)
        result.winner_vendor_id = winner.vendor_id
        result.winning_amount_minor = winner.amount_minor
        result.payment_id = payment.id
        result.payment_deadline = payment.payment_deadline
        result.escrow_frozen = payment.escrow_status == EscrowStatus.FROZEN.value

        audit_trail.record(
            session, actor, "auction.closed", "auction", auction_id, before=before,
            after=dict(before, status=AuctionStatus.CLOSED.value, winner_vendor_id=winner.vendor_id,
                       winning_amount_minor=winner.amount_minor, payment_id=payment.id,
                       payment_method=payment.payment_method),
        )
        logger.info(
            f"🏁 AUCTION_CLOSED: auction {auction_id} won by {winner.vendor_id} at {format_naira(winner.amount_minor)} "
            f"({payment.payment_method}, deadline {payment.payment_deadline.isoformat()})"
        )
        return result

    def _open_payment(self, session: Session, auction_id: int, vendor_id: str, amount_minor: int,
                      deadline: datetime, now: datetime) -> Payment:
        """Freeze escrow funds when the wallet covers the win, else open a gateway payment"""
        payment = Payment(
            auction_id=auction_id,
            vendor_id=vendor_id,
            amount_minor=amount_minor,
            payment_method=Config.DEFAULT_GATEWAY,
            payment_reference=generate_payment_reference(auction_id),
            escrow_status=EscrowStatus.NONE.value,
            status=PaymentStatus.PENDING.value,
            payment_deadline=deadline,
            payout_status=PayoutStatus.NONE.value,
        )

        wallet_id = self.ledger.get_wallet_id(session, vendor_id)
        if wallet_id is not None:
            freeze = self.ledger.freeze(wallet_id, amount_minor, freeze_reference(auction_id),
                                        description=f"Escrow hold for auction {auction_id}", session=session)
            if freeze.success:
                payment.payment_method = PaymentMethod.ESCROW_WALLET.value
                payment.escrow_status = EscrowStatus.FROZEN.value
                payment.status = PaymentStatus.VERIFIED.value
                payment.auto_verified = True
                payment.verified_by = "escrow_wallet"
                payment.verified_at = now
            elif freeze.failure != LedgerFailure.INSUFFICIENT_FUNDS:
                logger.warning(f"⚠️ ESCROW_FREEZE_FAILED: auction {auction_id} wallet {wallet_id}: "
                               f"{freeze.failure.value if freeze.failure else freeze.message}, using gateway")

        session.add(payment)
        session.flush()
        audit_trail.record(session, None, "payment.created", "payment", payment.id,
                           after={"auction_id": auction_id, "vendor_id": vendor_id, "amount_minor": amount_minor,
                                  "status": payment.status, "payment_method": payment.payment_method,
                                  "payment_deadline": deadline.isoformat()})
        return payment

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle_auction(self, auction_id: int, actor: Optional[str] = None,
                       now: Optional[datetime] = None) -> SettlementResult:
        """closed -> settled once the payment is verified; releases the frozen funds"""
        now = resolve_now(now)
        result = self._run_transition(
            lambda session: self._settle(session, auction_id, actor, now),
            lambda failure, message: SettlementResult(False, auction_id, failure=failure, message=message),
            f"settle auction {auction_id}",
        )
        if result.success and not result.already_settled:
            auction_cache.delete(f"auction:{auction_id}")
        return result

    def settle_auction_in_session(self, session: Session, auction_id: int, actor: Optional[str] = None,
                                  now: Optional[datetime] = None) -> SettlementResult:
        """Settle inside the caller's transaction; a failure result leaves the caller to roll back"""
        try:
            return self._settle(session, auction_id, actor, resolve_now(now))
        except _Retry:
            return SettlementResult(False, auction_id, failure=AuctionActionFailure.CONCURRENT_UPDATE,
                                    message="auction changed concurrently")
        except _Refused as refused:
            return refused.result

    def _settle(self, session: Session, auction_id: int, actor: Optional[str], now: datetime) -> SettlementResult:
        auction = self._lock_auction(session, auction_id)
        if auction is None:
            return SettlementResult(False, auction_id, failure=AuctionActionFailure.NOT_FOUND,
                                    message="auction not found")
        payment = get_active_payment(session, auction_id)
        if auction.status == AuctionStatus.SETTLED.value:
            return SettlementResult(True, auction_id, already_settled=True,
                                    payment_id=payment.id if payment else None)
        if auction.status != AuctionStatus.CLOSED.value:
            return SettlementResult(False, auction_id, failure=AuctionActionFailure.INVALID_STATE,
                                    message=f"cannot settle a {auction.status} auction")
        if payment is None or payment.status != PaymentStatus.VERIFIED.value:
            return SettlementResult(False, auction_id, payment_id=payment.id if payment else None,
                                    failure=AuctionActionFailure.PAYMENT_NOT_VERIFIED,
                                    message="payment has not been verified")
        if payment.escrow_status != EscrowStatus.FROZEN.value:
            return SettlementResult(False, auction_id, payment_id=payment.id,
                                    failure=AuctionActionFailure.FUNDS_NOT_FROZEN,
                                    message=f"escrow status is {payment.escrow_status}")

        wallet_id = self.ledger.get_wallet_id(session, payment.vendor_id)
        if wallet_id is None:
            return SettlementResult(False, auction_id, payment_id=payment.id,
                                    failure=AuctionActionFailure.LEDGER_FAILURE, message="winner has no wallet")

        release = self.ledger.release(wallet_id, payment.amount_minor, release_reference(auction_id),
                                      description=f"Settlement payout for auction {auction_id}",
                                      actor=actor, session=session)
        if not release.success:
            raise _Refused(SettlementResult(
                False, auction_id, payment_id=payment.id, failure=AuctionActionFailure.LEDGER_FAILURE,
                message=f"release failed: {release.failure.value if release.failure else release.message}",
            ))

        before = auction_snapshot(auction)
        self._transition(session, auction, AuctionStatus.SETTLED, settled_at=now)

        payment.escrow_status = EscrowStatus.RELEASED.value
        payment.payout_status = PayoutStatus.PENDING.value
        payment.payout_reference = payment.payout_reference or f"PAYOUT_{auction_id}"
        session.flush()

        audit_trail.record(session, actor, "auction.settled", "auction", auction_id, before=before,
                           after=dict(before, status=AuctionStatus.SETTLED.value, payment_id=payment.id,
                                      released_minor=payment.amount_minor))
        logger.info(f"💰 AUCTION_SETTLED: auction {auction_id} released {format_naira(payment.amount_minor)}")
        return SettlementResult(True, auction_id, payment_id=payment.id, released_minor=payment.amount_minor)

    # ------------------------------------------------------------------
    # Cancellation, forfeiture, relisting
    # ------------------------------------------------------------------

    def cancel_auction(self, auction_id: int, actor: str, reason: str,
                       now: Optional[datetime] = None) -> TransitionResult:
        """Administrative override, only while the auction is active"""
        now = resolve_now(now)
        if not reason or not reason.strip():
            return TransitionResult(False, auction_id, failure=AuctionActionFailure.INVALID_INPUT,
                                    message="a cancellation reason is required")
        result = self._run_transition(
            lambda session: self._cancel(session, auction_id, actor, reason.strip(), now),
            lambda failure, message: TransitionResult(False, auction_id, failure=failure, message=message),
            f"cancel auction {auction_id}",
        )
        if result.success:
            auction_cache.delete(f"auction:{auction_id}")
        return result

    def _cancel(self, session: Session, auction_id: int, actor: str, reason: str, now: datetime) -> TransitionResult:
        auction = self._lock_auction(session, auction_id)
        if auction is None:
            return TransitionResult(False, auction_id, failure=AuctionActionFailure.NOT_FOUND,
                                    message="auction not found")
        if auction.status != AuctionStatus.ACTIVE.value:
            return TransitionResult(False, auction_id, from_status=auction.status,
                                    failure=AuctionActionFailure.INVALID_STATE,
                                    message=f"only active auctions can be cancelled, this one is {auction.status}")

        before = auction_snapshot(auction)
        self._transition(session, auction, AuctionStatus.CANCELLED, cancelled_at=now, cancellation_reason=reason)
        audit_trail.record(session, actor, "auction.cancelled", "auction", auction_id, before=before,
                           after=dict(before, status=AuctionStatus.CANCELLED.value), description=reason)
        logger.info(f"🛑 AUCTION_CANCELLED: auction {auction_id} by {actor}: {reason}")
        return TransitionResult(True, auction_id, from_status=AuctionStatus.ACTIVE.value,
                                to_status=AuctionStatus.CANCELLED.value)

    def forfeit_auction(self, auction_id: int, actor: Optional[str], reason: str, relist: Optional[bool] = None,
                        now: Optional[datetime] = None) -> TransitionResult:
        """Void a closed, unsettled win: closed -> cancelled, unfreeze escrow, optionally relist"""
        now = resolve_now(now)
        relist = Config.RELIST_ON_FORFEIT if relist is None else relist
        result = self._run_transition(
            lambda session: self._forfeit(session, auction_id, actor, reason, relist, now),
            lambda failure, message: TransitionResult(False, auction_id, failure=failure, message=message),
            f"forfeit auction {auction_id}",
        )
        if result.success:
            auction_cache.delete(f"auction:{auction_id}")
        return result

    def forfeit_in_session(self, session: Session, auction_id: int, actor: Optional[str], reason: str,
                           relist: bool, now: Optional[datetime] = None) -> TransitionResult:
        """Forfeit inside the caller's transaction; a failure result leaves the caller to roll back"""
        try:
            result = self._forfeit(session, auction_id, actor, reason, relist, resolve_now(now))
        except _Retry:
            return TransitionResult(False, auction_id, failure=AuctionActionFailure.CONCURRENT_UPDATE,
                                    message="auction changed concurrently")
        except _Refused as refused:
            return refused.result
        if result.success:
            auction_cache.delete(f"auction:{auction_id}")
        return result

    def _forfeit(self, session: Session, auction_id: int, actor: Optional[str], reason: str,
                 relist: bool, now: datetime) -> TransitionResult:
        auction = self._lock_auction(session, auction_id)
        if auction is None:
            return TransitionResult(False, auction_id, failure=AuctionActionFailure.NOT_FOUND,
                                    message="auction not found")
        if auction.status == AuctionStatus.CANCELLED.value:
            return TransitionResult(True, auction_id, from_status=auction.status, to_status=auction.status,
                                    message="already cancelled")
        if auction.status != AuctionStatus.CLOSED.value:
            return TransitionResult(False, auction_id, from_status=auction.status,
                                    failure=AuctionActionFailure.INVALID_STATE,
                                    message=f"only closed auctions can be forfeited, this one is {auction.status}")

        before = auction_snapshot(auction)
        result = TransitionResult(True, auction_id, from_status=AuctionStatus.CLOSED.value,
                                  to_status=AuctionStatus.CANCELLED.value)
        payment = get_active_payment(session, auction_id)
        if payment is not None:
            if payment.escrow_status == EscrowStatus.FROZEN.value:
                wallet_id = self.ledger.get_wallet_id(session, payment.vendor_id)
                unfreeze = self.ledger.unfreeze(
                    wallet_id, payment.amount_minor, unfreeze_reference(auction_id),
                    description=f"Escrow hold returned, auction {auction_id} forfeited", actor=actor, session=session,
                ) if wallet_id is not None else None
                if unfreeze is None or not unfreeze.success:
                    raise _Refused(TransitionResult(
                        False, auction_id, from_status=auction.status, failure=AuctionActionFailure.LEDGER_FAILURE,
                        message="could not unfreeze escrow funds",
                    ))
                payment.escrow_status = EscrowStatus.NONE.value
                result.unfrozen_minor = payment.amount_minor
            if payment.status == PaymentStatus.PENDING.value:
                # Close the payment window so no reminder, checkout or webhook can revive the win
                payment_before = {"status": payment.status, "forfeited_at": None}
                payment.status = PaymentStatus.OVERDUE.value
                payment.overdue_at = payment.overdue_at or now
                payment.updated_at = now
                audit_trail.record(session, actor, "payment.voided", "payment", payment.id,
                                   before=payment_before,
                                   after={"status": payment.status, "forfeited_at": now.isoformat()},
                                   description=reason)
            payment.forfeited_at = now

        self._transition(session, auction, AuctionStatus.CANCELLED, cancelled_at=now, cancellation_reason=reason)

        if relist:
            duration = auction.original_end_time - auction.start_time
            relisted = self._new_auction(session, auction.case_id, now, now + duration,
                                         auction.minimum_increment_minor, actor, relisted_from_id=auction_id)
            result.relisted_auction_id = relisted.id

        audit_trail.record(session, actor, "auction.forfeited", "auction", auction_id, before=before,
                           after=dict(before, status=AuctionStatus.CANCELLED.value,
                                      relisted_auction_id=result.relisted_auction_id,
                                      unfrozen_minor=result.unfrozen_minor),
                           description=reason)
        logger.warning(f"⚠️ AUCTION_FORFEITED: auction {auction_id}: {reason}"
                       + (f", relisted as {result.relisted_auction_id}" if result.relisted_auction_id else ""))
        return result

    def relist_auction(self, auction_id: int, actor: Optional[str] = None, now: Optional[datetime] = None) -> TransitionResult:
        """Open a fresh auction for the case of a cancelled auction"""
        now = resolve_now(now)

        def work(session: Session) -> TransitionResult:
            auction = session.get(Auction, auction_id)
            if auction is None:
                return TransitionResult(False, auction_id, failure=AuctionActionFailure.NOT_FOUND,
                                        message="auction not found")
            if auction.status != AuctionStatus.CANCELLED.value:
                return TransitionResult(False, auction_id, from_status=auction.status,
                                        failure=AuctionActionFailure.INVALID_STATE,
                                        message="only cancelled auctions can be relisted")
            duration = auction.original_end_time - auction.start_time
            relisted = self._new_auction(session, auction.case_id, now, now + duration,
                                         auction.minimum_increment_minor, actor, relisted_from_id=auction_id)
            return TransitionResult(True, auction_id, from_status=auction.status, to_status=auction.status,
                                    relisted_auction_id=relisted.id)

        return self._run_transition(
            work,
            lambda failure, message: TransitionResult(False, auction_id, failure=failure, message=message),
            f"relist auction {auction_id}",
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_auction_snapshot(self, auction_id: int, use_cache: bool = True) -> Optional[Dict[str, Any]]:
        """Auction status for display. Bids always re-read the row."""
        def load():
            with self.session_factory() as session:
                auction = session.get(Auction, auction_id)
                return auction_snapshot(auction) if auction is not None else None

        if not use_cache:
            return load()
        return auction_cache.get_or_load(f"auction:{auction_id}", load)

    def list_bids(self, auction_id: int) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            return [
                {
                    "id": bid.id,
                    "vendor_id": bid.vendor_id,
                    "amount_minor": bid.amount_minor,
                    "status": bid.status,
                    "created_at": bid.created_at.isoformat(),
                }
                for bid in session.execute(
                    select(Bid).where(Bid.auction_id == auction_id).order_by(Bid.id)
                ).scalars()
            ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(session: Session, auction: Auction, new_status: AuctionStatus, **values: Any) -> None:
        if not AuctionTransitionValidator.is_valid_transition(auction.status, new_status.value):
            raise ValueError(f"invalid auction transition {auction.status} -> {new_status.value}")
        if not versioned_update(session, Auction, auction.id, auction.version,
                                dict(values, status=new_status.value)):
            raise _Retry()

    @staticmethod
    def _lock_auction(session: Session, auction_id: int) -> Optional[Auction]:
        return session.execute(
            select(Auction)
            .where(Auction.id == auction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _run_transition(self, work: Callable[[Session], Any],
                        failed: Callable[[AuctionActionFailure, str], Any], label: str) -> Any:
        """Run work in its own transaction; failure results roll back and are returned"""
        for attempt in range(1, self.max_retries + 1):
            try:
                with atomic_transaction(self.session_factory) as session:
                    result = work(session)
                    if not result.success:
                        raise _Refused(result)
                return result
            except _Refused as refused:
                return refused.result
            except _Retry:
                logger.info(f"🔁 AUCTION_RETRY: {label} attempt {attempt}/{self.max_retries}")
                continue
            except LedgerInvariantError as e:
                logger.critical(f"🚨 INVARIANT_VIOLATION: {label} rolled back: {e}")
                return failed(AuctionActionFailure.LEDGER_FAILURE, str(e))
            except SQLAlchemyError as e:
                logger.error(f"❌ AUCTION_DATABASE_ERROR: {label}: {e}", exc_info=True)
                return failed(AuctionActionFailure.DATABASE_ERROR, str(e))
        logger.warning(f"⚠️ AUCTION_CONFLICT_EXHAUSTED: {label}")
        return failed(AuctionActionFailure.CONCURRENT_UPDATE, "auction changed concurrently, retry later")


auction_state_machine = AuctionStateMachine()
