"""
HTTP surface: webhook routes, vendor routes and the token-guarded operator API.
Services are swapped in through FastAPI dependency overrides.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import orjson
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import Config
from conftest import naira, sign_paystack
from handlers import admin_operations, auction_routes, payment_webhooks
from models import VendorStatus
from services.payment_initiation_service import PaymentInitiationService

ADMIN_TOKEN = "admin-token-for-tests"


@pytest.fixture
def initiation(session_factory):
    client = MagicMock()
    client.initialize_transaction = AsyncMock(side_effect=lambda email, amount, reference, metadata=None: {
        "reference": reference,
        "authorization_url": f"https://checkout.paystack.com/{reference.lower()}",
        "access_code": "ac_test",
    })
    return PaymentInitiationService(session_factory, client=client)


@pytest.fixture
def client(reconciliation, auctions, ledger, initiation):
    app = FastAPI()
    app.include_router(payment_webhooks.router)
    app.include_router(auction_routes.router)
    app.include_router(admin_operations.router)

    app.dependency_overrides[payment_webhooks.get_reconciliation_service] = lambda: reconciliation
    app.dependency_overrides[auction_routes.get_reconciliation_service] = lambda: reconciliation
    app.dependency_overrides[auction_routes.get_auctions] = lambda: auctions
    app.dependency_overrides[auction_routes.get_ledger] = lambda: ledger
    app.dependency_overrides[auction_routes.get_payment_initiation] = lambda: initiation
    app.dependency_overrides[admin_operations.get_reconciliation_service] = lambda: reconciliation
    app.dependency_overrides[admin_operations.get_auctions] = lambda: auctions
    app.dependency_overrides[admin_operations.get_ledger] = lambda: ledger
    app.dependency_overrides[admin_operations.get_fraud_service] = lambda: auctions.fraud_detector

    with patch.object(Config, "ADMIN_API_TOKEN", ADMIN_TOKEN):
        yield TestClient(app)


def _funding_body(vendor_id, amount_minor):
    return orjson.dumps({
        "event": "charge.success",
        "data": {"reference": f"WALLET_{vendor_id}_0A1B2C3D4E5F", "amount": amount_minor, "status": "success",
                 "currency": "NGN", "metadata": {"type": "wallet_funding", "vendor_id": vendor_id}},
    })


class TestWebhookRoutes:

    def test_bad_signature_is_401(self, client):
        response = client.post("/webhooks/paystack", content=_funding_body("V1", naira(60_000)),
                               headers={"x-paystack-signature": "deadbeef"})
        assert response.status_code == 401

    def test_signed_funding_then_replay(self, client, make_vendor, ledger):
        make_vendor("V1")
        body = _funding_body("V1", naira(60_000))
        headers = {"x-paystack-signature": sign_paystack(body)}

        first = client.post("/webhooks/paystack", content=body, headers=headers)
        replay = client.post("/webhooks/paystack", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["result"] == "processed"
        assert replay.status_code == 200
        assert replay.json()["result"] == "duplicate"
        wallet = ledger.get_wallet_snapshot(ledger.find_wallet_id("V1"), use_cache=False)
        assert wallet["balance_minor"] == naira(60_000)

    def test_flutterwave_without_hash_is_401(self, client):
        response = client.post("/webhooks/flutterwave", content=b'{"event": "charge.completed", "data": {}}')
        assert response.status_code == 401


class TestVendorRoutes:

    @pytest.fixture
    def running_auction(self, auctions, now):
        return auctions.create_auction("CASE-HTTP", end_time=now + timedelta(hours=2),
                                       start_time=now - timedelta(hours=1))

    def test_verified_bid_is_accepted(self, client, make_vendor, running_auction):
        make_vendor("V1")
        response = client.post(f"/auctions/{running_auction}/bids",
                               json={"amount_minor": naira(50_000), "otp_verified": True},
                               headers={"X-Vendor-Id": "V1"})

        assert response.status_code == 200
        data = response.json()
        assert data["current_bid_minor"] == naira(50_000)
        assert data["minimum_next_bid_minor"] == naira(60_000)

    def test_low_bid_is_rejected_with_reason(self, client, make_vendor, running_auction):
        make_vendor("V1")
        make_vendor("V2")
        client.post(f"/auctions/{running_auction}/bids", json={"amount_minor": naira(50_000), "otp_verified": True},
                    headers={"X-Vendor-Id": "V1"})

        response = client.post(f"/auctions/{running_auction}/bids",
                               json={"amount_minor": naira(55_000), "otp_verified": True},
                               headers={"X-Vendor-Id": "V2"})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["reason"] == "bid_too_low"
        assert detail["minimum_next_bid_minor"] == naira(60_000)

    def test_unverified_bid_is_forbidden(self, client, make_vendor, running_auction):
        make_vendor("V1")
        with patch.object(Config, "REQUIRE_BID_VERIFICATION", True):
            response = client.post(f"/auctions/{running_auction}/bids", json={"amount_minor": naira(50_000)},
                                   headers={"X-Vendor-Id": "V1"})
        assert response.status_code == 403

    def test_bid_requires_vendor_header(self, client, running_auction):
        response = client.post(f"/auctions/{running_auction}/bids", json={"amount_minor": naira(50_000)})
        assert response.status_code == 422

    def test_payment_visible_only_to_winner(self, client, make_vendor, closed_auction):
        make_vendor("V1")
        make_vendor("V2")
        _, closure = closed_auction("V1", naira(200_000))

        own = client.get(f"/payments/{closure.payment_id}", headers={"X-Vendor-Id": "V1"})
        other = client.get(f"/payments/{closure.payment_id}", headers={"X-Vendor-Id": "V2"})

        assert own.status_code == 200
        assert own.json()["amount_minor"] == naira(200_000)
        assert other.status_code == 404

    def test_checkout_uses_payment_reference(self, client, make_vendor, closed_auction, initiation):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        reference = client.get(f"/payments/{closure.payment_id}", headers={"X-Vendor-Id": "V1"}).json()[
            "payment_reference"]

        response = client.post(f"/payments/{closure.payment_id}/checkout", json={"email": "v1@example.com"},
                               headers={"X-Vendor-Id": "V1"})

        assert response.status_code == 200
        assert response.json()["reference"] == reference
        initiation.client.initialize_transaction.assert_awaited_once()

    def test_wallet_funding_checkout(self, client, make_vendor):
        make_vendor("V1")
        response = client.post("/wallet/fund", json={"email": "v1@example.com", "amount_minor": naira(100_000)},
                               headers={"X-Vendor-Id": "V1"})

        assert response.status_code == 200
        assert response.json()["reference"].startswith("WALLET_V1_")

    def test_funding_below_minimum_is_refused(self, client, make_vendor):
        make_vendor("V1")
        response = client.post("/wallet/fund", json={"email": "v1@example.com", "amount_minor": naira(10)},
                               headers={"X-Vendor-Id": "V1"})
        assert response.status_code == 422

    def test_checkout_for_forfeited_win_is_409(self, client, make_vendor, closed_auction, auctions, initiation):
        make_vendor("V1")
        auction_id, closure = closed_auction("V1", naira(200_000))
        assert auctions.forfeit_auction(auction_id, actor="ops-1", reason="winner withdrew", relist=False).success

        response = client.post(f"/payments/{closure.payment_id}/checkout", json={"email": "v1@example.com"},
                               headers={"X-Vendor-Id": "V1"})

        assert response.status_code == 409
        assert response.json()["detail"] == "auction win was forfeited"
        initiation.client.initialize_transaction.assert_not_awaited()

    def test_suspended_vendor_cannot_fund(self, client, make_vendor, initiation):
        make_vendor("V1", status=VendorStatus.SUSPENDED)
        response = client.post("/wallet/fund", json={"email": "v1@example.com", "amount_minor": naira(100_000)},
                               headers={"X-Vendor-Id": "V1"})

        assert response.status_code == 422
        assert response.json()["detail"] == "vendor account is suspended"
        initiation.client.initialize_transaction.assert_not_awaited()


class TestAdminRoutes:

    def test_missing_token_is_401(self, client, closed_auction, make_vendor):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        response = client.post(f"/admin/payments/{closure.payment_id}/force-confirm",
                               json={"operator_id": "ops-1", "justification": "bank statement attached"})
        assert response.status_code == 401

    def test_wrong_token_is_401(self, client):
        response = client.post("/admin/wallets/reconcile", headers={"X-Admin-Token": "guess"})
        assert response.status_code == 401

    def test_unconfigured_token_disables_operator_api(self, client):
        with patch.object(Config, "ADMIN_API_TOKEN", None):
            response = client.post("/admin/wallets/reconcile", headers={"X-Admin-Token": ADMIN_TOKEN})
        assert response.status_code == 503

    def test_force_confirm_settles(self, client, closed_auction, make_vendor):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))

        response = client.post(f"/admin/payments/{closure.payment_id}/force-confirm",
                               json={"operator_id": "ops-1", "justification": "bank statement attached"},
                               headers={"X-Admin-Token": ADMIN_TOKEN})

        assert response.status_code == 200
        assert response.json()["status"] == "verified"
        assert response.json()["settled"] is True

    def test_short_justification_is_422(self, client, closed_auction, make_vendor):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        response = client.post(f"/admin/payments/{closure.payment_id}/force-confirm",
                               json={"operator_id": "ops-1", "justification": "ok"},
                               headers={"X-Admin-Token": ADMIN_TOKEN})
        assert response.status_code == 422

    def test_cancel_closed_auction_is_409(self, client, closed_auction, make_vendor):
        make_vendor("V1")
        auction_id, _ = closed_auction("V1", naira(200_000))
        response = client.post(f"/admin/auctions/{auction_id}/cancel",
                               json={"actor": "ops-1", "reason": "duplicate listing"},
                               headers={"X-Admin-Token": ADMIN_TOKEN})
        assert response.status_code == 409

    def test_wallet_view_includes_ledger_entries(self, client, make_vendor, funded_wallet):
        make_vendor("V1")
        wallet_id = funded_wallet("V1", naira(80_000))

        response = client.get(f"/admin/wallets/{wallet_id}", headers={"X-Admin-Token": ADMIN_TOKEN})

        assert response.status_code == 200
        data = response.json()
        assert data["balance_minor"] == naira(80_000)
        assert len(data["transactions"]) == 1


class TestHealth:

    def test_health_reports_database_and_scheduler(self):
        from webhook_server import app

        response = TestClient(app).get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["scheduler_running"] is False
        assert set(response.json()["caches"]) == {"wallets", "auctions"}
