"""
Shared fixtures for the escrow settlement test suite.

Every test gets its own SQLite file database, so services are built with an
injected session factory instead of the process-wide SessionLocal. Thread
tests share the file through the busy timeout configured in build_engine.
"""

import os
import tempfile

# Must be set before config/database are imported by anything below
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'salvage_escrow_test.db')}")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from caching.simple_cache import wallet_cache, auction_cache
from database import build_engine, create_tables, make_session_factory
from models import Vendor, VendorStatus, VendorTier
from services.auction_state_machine import AuctionStateMachine
from services.escrow_ledger import EscrowLedger
from services.notification_dispatcher import NotificationDispatcher, NotificationEvent, Notification
from services.payment_reconciliation import PaymentReconciliationService
from services.webhook_security_service import WebhookSecurityService, compute_paystack_signature
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

PAYSTACK_TEST_SECRET = "sk_test_salvage_escrow_0123456789"
FLUTTERWAVE_TEST_HASH = "flw_test_secret_hash_9876"

NAIRA = 100  # kobo per naira


def naira(amount: int) -> int:
    return amount * NAIRA


def sign_paystack(raw_body: bytes) -> str:
    return compute_paystack_signature(raw_body, PAYSTACK_TEST_SECRET)


class RecordingSink:
    """Notification sink that keeps everything it receives"""

    def __init__(self):
        self.notifications: List[Notification] = []

    def __call__(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of(self, event: NotificationEvent) -> List[Dict[str, Any]]:
        return [n.payload for n in self.notifications if n.event == event]


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    assert create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture(autouse=True)
def clear_read_caches():
    """Wallet and auction ids repeat across per-test databases"""
    wallet_cache.clear()
    auction_cache.clear()
    yield
    wallet_cache.clear()
    auction_cache.clear()


@pytest.fixture
def now() -> datetime:
    return get_naive_utc_now().replace(microsecond=0)


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    dispatcher = NotificationDispatcher()
    dispatcher.register_sink(sink)
    return dispatcher


@pytest.fixture
def ledger(session_factory):
    return EscrowLedger(session_factory)


@pytest.fixture
def auctions(session_factory, ledger, notifier):
    return AuctionStateMachine(session_factory, ledger=ledger, notifier=notifier)


@pytest.fixture
def security():
    return WebhookSecurityService(paystack_secret=PAYSTACK_TEST_SECRET,
                                  flutterwave_secret_hash=FLUTTERWAVE_TEST_HASH)


@pytest.fixture
def reconciliation(session_factory, ledger, auctions, security, notifier):
    return PaymentReconciliationService(session_factory, ledger=ledger, auctions=auctions,
                                        security=security, notifier=notifier)


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_vendor(session_factory):
    def factory(vendor_id: str, tier: VendorTier = VendorTier.TIER2_FULL,
                status: VendorStatus = VendorStatus.ACTIVE, created_at: Optional[datetime] = None) -> str:
        with atomic_transaction(session_factory) as session:
            session.add(Vendor(
                id=vendor_id,
                tier=tier.value,
                status=status.value,
                # Old accounts, so the new-account bid jump rule stays quiet unless a test wants it
                created_at=created_at or get_naive_utc_now() - timedelta(days=365),
            ))
        return vendor_id
    return factory


@pytest.fixture
def funded_wallet(ledger):
    """Create the vendor's wallet and credit it with a seed deposit"""
    def factory(vendor_id: str, amount_minor: int) -> int:
        wallet_id = ledger.get_or_create_wallet(vendor_id)
        assert wallet_id is not None
        result = ledger.credit(wallet_id, amount_minor, f"SEED_{vendor_id}_{amount_minor}")
        assert result.success
        return wallet_id
    return factory


@pytest.fixture
def closed_auction(auctions, now):
    """Auction won by vendor_id at amount_minor, closed a second after it ended"""
    def factory(vendor_id: str, amount_minor: int, case_id: str = "CASE-001",
                increment_minor: int = naira(10_000)):
        auction_id = auctions.create_auction(case_id, end_time=now + timedelta(hours=1),
                                             minimum_increment_minor=increment_minor,
                                             start_time=now - timedelta(hours=1))
        bid = auctions.place_bid(auction_id, vendor_id, amount_minor, now=now)
        assert bid.accepted, bid.message
        closure = auctions.close_auction(auction_id, now=now + timedelta(hours=1, seconds=1))
        assert closure.success, closure.message
        return auction_id, closure
    return factory
