"""
Fraud Detection Service
Flags suspicious bidding patterns and records reviewer decisions on flags
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import SessionLocal
from models import Bid, FraudFlag, FraudFlagReview, FraudReviewDecision, Vendor, VendorStatus
from services.audit_trail_service import audit_trail
from services.notification_dispatcher import notification_dispatcher, NotificationEvent, NotificationDispatcher
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now

logger = logging.getLogger(__name__)


class FraudPattern(Enum):
    SAME_IP_BIDDING = "same_ip_bidding"
    UNUSUAL_BID_PATTERN = "unusual_bid_pattern"
    MANUAL_REPORT = "manual_report"


@dataclass
class FraudReviewResult:
    success: bool
    flag_id: int
    decision: Optional[str] = None
    error: Optional[str] = None


class FraudDetectionService:
    """Analyzes bids and manages the fraud flag lifecycle"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 notifier: Optional[NotificationDispatcher] = None):
        self.session_factory = session_factory or SessionLocal
        self.notifier = notifier or notification_dispatcher

    def screen_bid(self, bid_id: int, previous_bid_minor: Optional[int] = None,
                   now: Optional[datetime] = None) -> List[int]:
        """
        Check an accepted bid against known patterns and flag the vendor.

        Screening runs after the bid committed; a detection error is logged and
        never blocks or reverts the bid.
        """
        now = resolve_now(now)
        try:
            with atomic_transaction(self.session_factory) as session:
                bid = session.get(Bid, bid_id)
                if bid is None:
                    return []

                findings: List[Dict[str, Any]] = []
                same_ip = self._detect_same_ip_bidding(session, bid)
                if same_ip:
                    findings.append(same_ip)
                if previous_bid_minor:
                    jump = self._detect_unusual_bid_jump(session, bid, previous_bid_minor, now)
                    if jump:
                        findings.append(jump)

                flag_ids = [
                    self._add_flag(session, bid.vendor_id, finding["pattern"], finding["evidence"], bid.auction_id)
                    for finding in findings
                ]
        except SQLAlchemyError as e:
            logger.error(f"❌ FRAUD_SCREEN_FAILED: bid {bid_id}: {e}", exc_info=True)
            return []

        for flag_id in flag_ids:
            self.notifier.emit(NotificationEvent.FRAUD_FLAGGED, flag_id=flag_id, bid_id=bid_id)
        return flag_ids

    def _detect_same_ip_bidding(self, session: Session, bid: Bid) -> Optional[Dict[str, Any]]:
        if not bid.ip_address:
            return None
        vendor_ids = set(session.execute(
            select(Bid.vendor_id).where(Bid.auction_id == bid.auction_id, Bid.ip_address == bid.ip_address)
        ).scalars())
        if len(vendor_ids) > 1:
            return {
                "pattern": FraudPattern.SAME_IP_BIDDING,
                "evidence": {
                    "ip_address": bid.ip_address,
                    "vendor_ids": sorted(vendor_ids),
                    "bid_id": bid.id,
                },
            }
        return None

    def _detect_unusual_bid_jump(self, session: Session, bid: Bid, previous_bid_minor: int,
                                 now: datetime) -> Optional[Dict[str, Any]]:
        if bid.amount_minor <= previous_bid_minor * Config.FRAUD_BID_JUMP_MULTIPLIER:
            return None
        vendor = session.get(Vendor, bid.vendor_id)
        if vendor is None:
            return None
        account_age = now - vendor.created_at
        if account_age >= timedelta(days=Config.FRAUD_NEW_ACCOUNT_DAYS):
            return None
        return {
            "pattern": FraudPattern.UNUSUAL_BID_PATTERN,
            "evidence": {
                "bid_id": bid.id,
                "amount_minor": bid.amount_minor,
                "previous_bid_minor": previous_bid_minor,
                "account_age_days": account_age.days,
            },
        }

    def record_flag(self, vendor_id: str, pattern: FraudPattern, evidence: Optional[Dict[str, Any]] = None,
                    auction_id: Optional[int] = None, actor: Optional[str] = None) -> int:
        """Manually raise a flag against a vendor"""
        with atomic_transaction(self.session_factory) as session:
            return self._add_flag(session, vendor_id, pattern, evidence, auction_id, actor)

    def _add_flag(self, session: Session, vendor_id: str, pattern: FraudPattern,
                  evidence: Optional[Dict[str, Any]], auction_id: Optional[int], actor: Optional[str] = None) -> int:
        flag = FraudFlag(vendor_id=vendor_id, auction_id=auction_id, pattern=pattern.value, evidence=evidence)
        session.add(flag)
        session.flush()
        audit_trail.record(session, actor, "fraud.flag_raised", "fraud_flag", flag.id,
                           after={"vendor_id": vendor_id, "pattern": pattern.value, "auction_id": auction_id})
        logger.warning(f"🚩 FRAUD_FLAG: vendor {vendor_id} pattern={pattern.value} auction={auction_id}")
        return flag.id

    def confirm_flag(self, flag_id: int, reviewer_id: str, justification: Optional[str] = None) -> FraudReviewResult:
        return self.review_flag(flag_id, reviewer_id, FraudReviewDecision.CONFIRMED, justification)

    def dismiss_flag(self, flag_id: int, reviewer_id: str, justification: str) -> FraudReviewResult:
        return self.review_flag(flag_id, reviewer_id, FraudReviewDecision.DISMISSED, justification)

    def review_flag(self, flag_id: int, reviewer_id: str, decision: FraudReviewDecision,
                    justification: Optional[str] = None) -> FraudReviewResult:
        """Append a review decision. Dismissals need a written justification."""
        justification = (justification or "").strip()
        if decision == FraudReviewDecision.DISMISSED and len(justification) < Config.MIN_JUSTIFICATION_LENGTH:
            return FraudReviewResult(
                success=False, flag_id=flag_id,
                error=f"justification must be at least {Config.MIN_JUSTIFICATION_LENGTH} characters",
            )
        if not reviewer_id:
            return FraudReviewResult(success=False, flag_id=flag_id, error="reviewer_id is required")

        with atomic_transaction(self.session_factory) as session:
            flag = session.get(FraudFlag, flag_id)
            if flag is None:
                return FraudReviewResult(success=False, flag_id=flag_id, error="flag not found")

            previous = self.latest_decision(session, flag_id)
            session.add(FraudFlagReview(
                flag_id=flag_id,
                decision=decision.value,
                reviewer_id=reviewer_id,
                justification=justification or None,
            ))
            audit_trail.record(session, reviewer_id, f"fraud.flag_{decision.value}", "fraud_flag", flag_id,
                               before={"decision": previous}, after={"decision": decision.value},
                               description=justification or None)

        logger.info(f"🛡️ FRAUD_REVIEW: flag {flag_id} {decision.value} by {reviewer_id}")
        return FraudReviewResult(success=True, flag_id=flag_id, decision=decision.value)

    @staticmethod
    def latest_decision(session: Session, flag_id: int) -> Optional[str]:
        return session.execute(
            select(FraudFlagReview.decision)
            .where(FraudFlagReview.flag_id == flag_id)
            .order_by(FraudFlagReview.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _confirmed_flags_subquery():
        latest = (
            select(FraudFlagReview.flag_id, func.max(FraudFlagReview.id).label("review_id"))
            .group_by(FraudFlagReview.flag_id)
            .subquery()
        )
        return (
            select(FraudFlag.id.label("flag_id"), FraudFlag.vendor_id.label("vendor_id"))
            .join(latest, latest.c.flag_id == FraudFlag.id)
            .join(FraudFlagReview, and_(FraudFlagReview.id == latest.c.review_id,
                                        FraudFlagReview.decision == FraudReviewDecision.CONFIRMED.value))
            .subquery()
        )

    def count_confirmed_flags(self, session: Session, vendor_id: str) -> int:
        confirmed = self._confirmed_flags_subquery()
        return session.execute(
            select(func.count()).select_from(confirmed).where(confirmed.c.vendor_id == vendor_id)
        ).scalar_one()

    def vendors_over_threshold(self, session: Session, threshold: Optional[int] = None) -> List[str]:
        """Active vendors with at least `threshold` confirmed flags"""
        threshold = threshold or Config.FRAUD_FLAG_THRESHOLD
        confirmed = self._confirmed_flags_subquery()
        return list(session.execute(
            select(confirmed.c.vendor_id)
            .join(Vendor, Vendor.id == confirmed.c.vendor_id)
            .where(Vendor.status == VendorStatus.ACTIVE.value)
            .group_by(confirmed.c.vendor_id)
            .having(func.count() >= threshold)
            .order_by(confirmed.c.vendor_id)
        ).scalars())

    def list_flags(self, vendor_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            stmt = select(FraudFlag).order_by(FraudFlag.id.desc()).limit(limit)
            if vendor_id:
                stmt = stmt.where(FraudFlag.vendor_id == vendor_id)
            return [
                {
                    "id": flag.id,
                    "vendor_id": flag.vendor_id,
                    "auction_id": flag.auction_id,
                    "pattern": flag.pattern,
                    "evidence": flag.evidence,
                    "decision": self.latest_decision(session, flag.id),
                    "created_at": flag.created_at.isoformat(),
                }
                for flag in session.execute(stmt).scalars()
            ]
