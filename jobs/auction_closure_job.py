"""Auction closure sweep: close every active auction whose end time has passed"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal
from jobs.sweep_result import SweepResult
from models import Auction, AuctionStatus
from services.audit_trail_service import SYSTEM_ACTOR
from services.auction_state_machine import AuctionStateMachine, AuctionActionFailure
from utils.datetime_helpers import resolve_now

logger = logging.getLogger(__name__)


class AuctionClosureJob:
    """Calls close_auction per expired auction; closure is idempotent so overlapping runs are safe"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 auctions: Optional[AuctionStateMachine] = None, batch_size: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.auctions = auctions or AuctionStateMachine(self.session_factory)
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE

    def find_expired(self, now: datetime) -> list:
        with self.session_factory() as session:
            return list(session.execute(
                select(Auction.id)
                .where(Auction.status == AuctionStatus.ACTIVE.value, Auction.end_time <= now)
                .order_by(Auction.end_time)
                .limit(self.batch_size)
            ).scalars())

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = resolve_now(now)
        result = SweepResult("auction_closure")

        for auction_id in self.find_expired(now):
            try:
                closure = self.auctions.close_auction(auction_id, now=now, actor=SYSTEM_ACTOR)
            except Exception as e:
                logger.error(f"❌ AUCTION_CLOSURE_ERROR: auction {auction_id}: {e}", exc_info=True)
                result.add_failure(auction_id, str(e))
                continue

            if closure.success and closure.already_closed:
                result.add_skip(auction_id, "already closed")
            elif closure.success:
                result.add_success(auction_id, "closed", {
                    "winner_vendor_id": closure.winner_vendor_id,
                    "payment_id": closure.payment_id,
                    "escrow_frozen": closure.escrow_frozen,
                })
            elif closure.failure == AuctionActionFailure.NOT_ENDED:
                # Extended by a late bid after it was selected
                result.add_skip(auction_id, "extended")
            else:
                result.add_failure(auction_id, closure.message or str(closure.failure))

        return result.finish()


async def run_auction_closure_sweep() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await asyncio.to_thread(AuctionClosureJob().run)
    return result.get_summary()
