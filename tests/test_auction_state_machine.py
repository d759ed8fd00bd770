"""
Auction lifecycle tests: bid acceptance rules, anti-sniping extension,
closure idempotency, settlement gating and administrative transitions.
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, func, update

from config import Config
from conftest import naira
from models import (
    Auction, AuctionStatus, Payment, PaymentStatus, PaymentMethod, EscrowStatus, PayoutStatus,
    VendorStatus, VendorTier, Wallet,
)
from services.auction_state_machine import AuctionActionFailure, BidRejection
from services.notification_dispatcher import NotificationEvent
from utils.atomic_transactions import atomic_transaction


@pytest.fixture
def open_auction(auctions, now):
    def factory(ends_in=timedelta(hours=1), increment_minor=naira(10_000), case_id="CASE-100"):
        return auctions.create_auction(case_id, end_time=now + ends_in, minimum_increment_minor=increment_minor,
                                       start_time=now - timedelta(hours=1))
    return factory


def _payments(session_factory, auction_id):
    with session_factory() as session:
        return session.execute(select(Payment).where(Payment.auction_id == auction_id)).scalars().all()


class TestBidAcceptance:

    def test_first_bid_must_cover_the_increment(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        auction_id = open_auction()

        low = auctions.place_bid(auction_id, "V1", naira(9_999), now=now)
        ok = auctions.place_bid(auction_id, "V1", naira(10_000), now=now)

        assert low.rejection == BidRejection.BID_TOO_LOW
        assert low.minimum_next_bid_minor == naira(10_000)
        assert ok.accepted

    def test_bid_equal_to_current_plus_increment_is_accepted(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        make_vendor("V2")
        auction_id = open_auction()
        auctions.place_bid(auction_id, "V1", naira(100_000), now=now)

        too_low = auctions.place_bid(auction_id, "V2", naira(109_999), now=now)
        exact = auctions.place_bid(auction_id, "V2", naira(110_000), now=now)

        assert not too_low.accepted
        assert too_low.rejection == BidRejection.BID_TOO_LOW
        assert too_low.current_bid_minor == naira(100_000)
        assert exact.accepted
        assert exact.minimum_next_bid_minor == naira(120_000)

    def test_outbid_vendor_is_notified(self, auctions, open_auction, make_vendor, sink, now):
        make_vendor("V1")
        make_vendor("V2")
        auction_id = open_auction()
        auctions.place_bid(auction_id, "V1", naira(100_000), now=now)
        auctions.place_bid(auction_id, "V2", naira(110_000), now=now)

        outbid = sink.of(NotificationEvent.OUTBID)
        assert outbid == [{"auction_id": auction_id, "vendor_id": "V1", "new_bid_minor": naira(110_000)}]

    def test_tier_one_vendor_cannot_exceed_limit(self, auctions, open_auction, make_vendor, now):
        make_vendor("T1", tier=VendorTier.TIER1_BVN)
        auction_id = open_auction()

        over = auctions.place_bid(auction_id, "T1", Config.TIER1_BID_LIMIT_MINOR + naira(10_000), now=now)
        at_limit = auctions.place_bid(auction_id, "T1", Config.TIER1_BID_LIMIT_MINOR, now=now)

        assert over.rejection == BidRejection.TIER_LIMIT_EXCEEDED
        assert at_limit.accepted

    def test_tier_two_vendor_has_no_limit(self, auctions, open_auction, make_vendor, now):
        make_vendor("T2", tier=VendorTier.TIER2_FULL)
        auction_id = open_auction()
        assert auctions.place_bid(auction_id, "T2", Config.TIER1_BID_LIMIT_MINOR * 4, now=now).accepted

    def test_bid_at_end_time_is_rejected(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        auction_id = open_auction(ends_in=timedelta(minutes=30))

        result = auctions.place_bid(auction_id, "V1", naira(50_000), now=now + timedelta(minutes=30))
        assert result.rejection == BidRejection.AUCTION_ENDED

    def test_suspended_vendor_cannot_bid(self, auctions, open_auction, make_vendor, now):
        make_vendor("S1", status=VendorStatus.SUSPENDED)
        auction_id = open_auction()
        assert auctions.place_bid(auction_id, "S1", naira(50_000), now=now).rejection == BidRejection.VENDOR_SUSPENDED

    def test_unknown_auction_and_vendor(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        auction_id = open_auction()
        assert auctions.place_bid(404, "V1", naira(50_000), now=now).rejection == BidRejection.AUCTION_NOT_FOUND
        assert auctions.place_bid(auction_id, "NOPE", naira(50_000), now=now).rejection == BidRejection.VENDOR_NOT_FOUND

    def test_unverified_bid_is_refused_when_verification_required(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        auction_id = open_auction()
        with patch.object(Config, "REQUIRE_BID_VERIFICATION", True):
            result = auctions.place_bid(auction_id, "V1", naira(50_000), otp_verified=False, now=now)
        assert result.rejection == BidRejection.VERIFICATION_REQUIRED

    @pytest.mark.parametrize("amount", [0, -5, 1.5])
    def test_invalid_amounts(self, auctions, open_auction, make_vendor, now, amount):
        make_vendor("V1")
        auction_id = open_auction()
        assert auctions.place_bid(auction_id, "V1", amount, now=now).rejection == BidRejection.INVALID_AMOUNT


class TestAntiSniping:

    def test_late_bid_extends_end_time(self, auctions, open_auction, make_vendor, now):
        """Ends in 2 minutes, 5 minute window, 10 minute extension, bid 1 minute before the end"""
        make_vendor("V1")
        auction_id = open_auction(ends_in=timedelta(minutes=2))

        with patch.object(Config, "ANTI_SNIPING_WINDOW_MINUTES", 5), \
                patch.object(Config, "ANTI_SNIPING_EXTENSION_MINUTES", 10):
            result = auctions.place_bid(auction_id, "V1", naira(50_000), now=now + timedelta(minutes=1))

        assert result.accepted
        assert result.extended
        assert result.extension_count == 1
        assert result.end_time == now + timedelta(minutes=12)
        snapshot = auctions.get_auction_snapshot(auction_id, use_cache=False)
        assert snapshot["extension_count"] == 1
        assert snapshot["original_end_time"] == (now + timedelta(minutes=2)).isoformat()

    def test_bid_outside_window_does_not_extend(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        auction_id = open_auction(ends_in=timedelta(minutes=30))
        result = auctions.place_bid(auction_id, "V1", naira(50_000), now=now)
        assert not result.extended
        assert result.end_time == now + timedelta(minutes=30)

    def test_extensions_stop_at_the_cap(self, auctions, open_auction, make_vendor, now):
        make_vendor("V1")
        make_vendor("V2")
        auction_id = open_auction(ends_in=timedelta(minutes=1))

        with patch.object(Config, "ANTI_SNIPING_WINDOW_MINUTES", 5), \
                patch.object(Config, "ANTI_SNIPING_EXTENSION_MINUTES", 2), \
                patch.object(Config, "MAX_TOTAL_EXTENSION_MINUTES", 3):
            first = auctions.place_bid(auction_id, "V1", naira(50_000), now=now)
            second = auctions.place_bid(auction_id, "V2", naira(60_000), now=now + timedelta(seconds=30))
            third = auctions.place_bid(auction_id, "V1", naira(70_000), now=now + timedelta(minutes=1))

        assert first.end_time == now + timedelta(minutes=3)
        assert second.end_time == now + timedelta(minutes=4)
        assert third.accepted and not third.extended
        assert third.end_time == now + timedelta(minutes=4)
        assert third.extension_count == 2


class TestConcurrentBidding:

    def test_concurrent_bids_never_lose_the_highest_bid(self, auctions, open_auction, make_vendor,
                                                       session_factory, now):
        vendors = [make_vendor(f"V{i}") for i in range(8)]
        auction_id = open_auction()
        amounts = {vendor_id: naira(100_000 + i * 10_000) for i, vendor_id in enumerate(vendors)}
        results = []
        barrier = threading.Barrier(len(vendors))

        def bid(vendor_id):
            barrier.wait()
            results.append(auctions.place_bid(auction_id, vendor_id, amounts[vendor_id], now=now))

        threads = [threading.Thread(target=bid, args=(v,)) for v in vendors]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        accepted = [r for r in results if r.accepted]
        rejected = [r for r in results if not r.accepted]
        assert len(accepted) + len(rejected) == len(vendors)
        assert all(r.rejection == BidRejection.BID_TOO_LOW for r in rejected)

        with session_factory() as session:
            auction = session.get(Auction, auction_id)
        assert auction.current_bid_minor == max(r.amount_minor for r in accepted) == naira(170_000)
        assert auction.current_bidder_id == "V7"

        # Accepted bids form a strictly increasing chain in commit order
        recorded = [b["amount_minor"] for b in auctions.list_bids(auction_id)]
        assert len(recorded) == len(accepted)
        assert all(later - earlier >= naira(10_000) for earlier, later in zip(recorded, recorded[1:]))

        closure = auctions.close_auction(auction_id, now=now + timedelta(hours=2))
        assert closure.winner_vendor_id == "V7"
        assert closure.winning_amount_minor == naira(170_000)


class TestClosure:

    def test_close_opens_pending_gateway_payment_and_notifies_winner(self, auctions, closed_auction, make_vendor,
                                                                    session_factory, sink, now):
        make_vendor("V1")
        auction_id, closure = closed_auction("V1", naira(200_000))

        assert closure.winner_vendor_id == "V1"
        assert not closure.escrow_frozen
        payment = _payments(session_factory, auction_id)[0]
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.payment_method == Config.DEFAULT_GATEWAY
        assert payment.amount_minor == naira(200_000)
        assert payment.payment_reference.startswith(f"PAY_{auction_id}_")
        assert payment.payment_deadline == now + timedelta(hours=1, seconds=1) + timedelta(hours=Config.PAYMENT_DEADLINE_HOURS)

        won = sink.of(NotificationEvent.AUCTION_WON)
        assert len(won) == 1
        assert won[0]["payment_id"] == payment.id

    def test_close_is_idempotent(self, auctions, closed_auction, make_vendor, session_factory, sink, now):
        make_vendor("V1")
        auction_id, first = closed_auction("V1", naira(200_000))

        second = auctions.close_auction(auction_id, now=now + timedelta(hours=3))

        assert second.success and second.already_closed
        assert second.payment_id == first.payment_id
        assert len(_payments(session_factory, auction_id)) == 1
        assert len(sink.of(NotificationEvent.AUCTION_WON)) == 1

    def test_close_before_end_is_refused(self, auctions, open_auction, now):
        auction_id = open_auction()
        result = auctions.close_auction(auction_id, now=now)
        assert result.failure == AuctionActionFailure.NOT_ENDED

    def test_close_without_bids_has_no_winner(self, auctions, open_auction, session_factory, sink, now):
        auction_id = open_auction()
        result = auctions.close_auction(auction_id, now=now + timedelta(hours=2))
        assert result.success
        assert result.winner_vendor_id is None
        assert _payments(session_factory, auction_id) == []
        assert sink.of(NotificationEvent.AUCTION_WON) == []

    def test_funded_winner_is_charged_from_escrow_at_close(self, auctions, closed_auction, make_vendor,
                                                            funded_wallet, session_factory):
        make_vendor("V1")
        wallet_id = funded_wallet("V1", naira(500_000))

        auction_id, closure = closed_auction("V1", naira(200_000))

        assert closure.escrow_frozen
        payment = _payments(session_factory, auction_id)[0]
        assert payment.payment_method == PaymentMethod.ESCROW_WALLET.value
        assert payment.status == PaymentStatus.VERIFIED.value
        assert payment.escrow_status == EscrowStatus.FROZEN.value
        with session_factory() as session:
            wallet = session.get(Wallet, wallet_id)
        assert wallet.frozen_minor == naira(200_000)
        assert wallet.available_minor == naira(300_000)


class TestSettlement:

    def test_settle_releases_frozen_funds(self, auctions, closed_auction, make_vendor, funded_wallet, session_factory):
        make_vendor("V1")
        wallet_id = funded_wallet("V1", naira(500_000))
        auction_id, _ = closed_auction("V1", naira(200_000))

        result = auctions.settle_auction(auction_id)

        assert result.success
        assert result.released_minor == naira(200_000)
        with session_factory() as session:
            auction = session.get(Auction, auction_id)
            wallet = session.get(Wallet, wallet_id)
            payment = session.execute(select(Payment).where(Payment.auction_id == auction_id)).scalar_one()
        assert auction.status == AuctionStatus.SETTLED.value
        assert (wallet.balance_minor, wallet.available_minor, wallet.frozen_minor) == (naira(300_000), naira(300_000), 0)
        assert payment.escrow_status == EscrowStatus.RELEASED.value
        assert payment.payout_status == PayoutStatus.PENDING.value
        assert payment.payout_reference == f"PAYOUT_{auction_id}"

        again = auctions.settle_auction(auction_id)
        assert again.success and again.already_settled

    def test_settle_requires_verified_payment(self, auctions, closed_auction, make_vendor):
        make_vendor("V1")
        auction_id, _ = closed_auction("V1", naira(200_000))

        result = auctions.settle_auction(auction_id)

        assert not result.success
        assert result.failure == AuctionActionFailure.PAYMENT_NOT_VERIFIED

    def test_settle_active_auction_is_invalid(self, auctions, open_auction):
        auction_id = open_auction()
        assert auctions.settle_auction(auction_id).failure == AuctionActionFailure.INVALID_STATE

    def test_failed_release_rolls_back_settlement(self, auctions, closed_auction, make_vendor, funded_wallet,
                                                  session_factory):
        make_vendor("V1")
        wallet_id = funded_wallet("V1", naira(500_000))
        auction_id, _ = closed_auction("V1", naira(200_000))
        with atomic_transaction(session_factory) as session:
            # Frozen bucket emptied behind the ledger's back, invariant still holds
            session.execute(update(Wallet).where(Wallet.id == wallet_id).values(
                frozen_minor=0, available_minor=naira(500_000)))

        result = auctions.settle_auction(auction_id)

        assert result.failure == AuctionActionFailure.LEDGER_FAILURE
        with session_factory() as session:
            assert session.get(Auction, auction_id).status == AuctionStatus.CLOSED.value


class TestAdministrativeTransitions:

    def test_cancel_active_auction(self, auctions, open_auction):
        auction_id = open_auction()
        result = auctions.cancel_auction(auction_id, actor="admin-1", reason="case withdrawn by insurer")
        assert result.success
        assert result.to_status == AuctionStatus.CANCELLED.value

    def test_cancel_requires_reason(self, auctions, open_auction):
        auction_id = open_auction()
        assert auctions.cancel_auction(auction_id, actor="admin-1", reason="  ").failure == AuctionActionFailure.INVALID_INPUT

    def test_cancel_closed_auction_is_refused(self, auctions, closed_auction, make_vendor):
        make_vendor("V1")
        auction_id, _ = closed_auction("V1", naira(200_000))
        result = auctions.cancel_auction(auction_id, actor="admin-1", reason="too late")
        assert result.failure == AuctionActionFailure.INVALID_STATE

    def test_forfeit_unfreezes_escrow_and_relists(self, auctions, closed_auction, make_vendor, funded_wallet,
                                                  session_factory):
        make_vendor("V1")
        wallet_id = funded_wallet("V1", naira(500_000))
        auction_id, _ = closed_auction("V1", naira(200_000), case_id="CASE-777")

        result = auctions.forfeit_auction(auction_id, actor="admin-1", reason="winner withdrew", relist=True)

        assert result.success
        assert result.unfrozen_minor == naira(200_000)
        with session_factory() as session:
            wallet = session.get(Wallet, wallet_id)
            original = session.get(Auction, auction_id)
            relisted = session.get(Auction, result.relisted_auction_id)
        assert wallet.frozen_minor == 0
        assert wallet.available_minor == naira(500_000)
        assert original.status == AuctionStatus.CANCELLED.value
        assert relisted.status == AuctionStatus.ACTIVE.value
        assert relisted.case_id == "CASE-777"
        assert relisted.relisted_from_id == auction_id

    def test_forfeit_requires_closed_auction(self, auctions, open_auction):
        auction_id = open_auction()
        result = auctions.forfeit_auction(auction_id, actor="admin-1", reason="n/a", relist=False)
        assert result.failure == AuctionActionFailure.INVALID_STATE

    def test_relist_cancelled_auction(self, auctions, open_auction, session_factory):
        auction_id = open_auction(case_id="CASE-555")
        auctions.cancel_auction(auction_id, actor="admin-1", reason="photos missing")

        result = auctions.relist_auction(auction_id, actor="admin-1")

        assert result.success
        with session_factory() as session:
            count = session.execute(
                select(func.count()).select_from(Auction).where(Auction.case_id == "CASE-555")
            ).scalar_one()
        assert count == 2
