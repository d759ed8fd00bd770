"""
Gateway webhook reconciliation: signature enforcement over the raw body,
replay idempotency, wallet funding and auction payment confirmation.
"""

from datetime import timedelta

import orjson
from sqlalchemy import select, func

from conftest import naira, sign_paystack, FLUTTERWAVE_TEST_HASH
from models import (
    Auction, AuctionStatus, Payment, PaymentStatus, EscrowStatus, Wallet, WalletTransaction,
    WebhookEvent, WebhookEventStatus,
)
from jobs.fraud_auto_suspend_job import FraudAutoSuspendJob
from services.fraud_detection_service import FraudPattern
from services.notification_dispatcher import NotificationEvent
from services.payment_reconciliation import PaymentActionError, WebhookStatus
from services.webhook_security_service import WebhookProvider
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now


def paystack_body(reference, amount_minor, status="success", metadata=None, event="charge.success") -> bytes:
    return orjson.dumps({
        "event": event,
        "data": {
            "reference": reference,
            "amount": amount_minor,
            "status": status,
            "currency": "NGN",
            "metadata": metadata or {},
        },
    })


def flutterwave_body(tx_ref, amount_naira, status="successful", meta=None) -> bytes:
    return orjson.dumps({
        "event": "charge.completed",
        "data": {"tx_ref": tx_ref, "amount": amount_naira, "currency": "NGN", "status": status, "meta": meta or {}},
    })


def _count(session_factory, model):
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def _payment(session_factory, payment_id):
    with session_factory() as session:
        return session.get(Payment, payment_id)


class TestSignatureEnforcement:

    def test_invalid_signature_creates_no_ledger_entries(self, reconciliation, make_vendor, session_factory):
        make_vendor("V1")
        body = paystack_body("WALLET_V1_ABC", naira(60_000), metadata={"type": "wallet_funding", "vendor_id": "V1"})

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, "0" * 128)

        assert outcome.status == WebhookStatus.REJECTED
        assert outcome.http_status == 401
        assert _count(session_factory, WalletTransaction) == 0
        assert _count(session_factory, WebhookEvent) == 0

    def test_missing_signature_is_rejected(self, reconciliation, session_factory):
        body = paystack_body("REF", naira(1_000))
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, None)
        assert outcome.http_status == 401

    def test_signature_covers_exact_bytes(self, reconciliation, make_vendor, session_factory):
        """Re-serialising the payload changes the bytes and must fail verification"""
        make_vendor("V1")
        body = paystack_body("WALLET_V1_XYZ", naira(60_000), metadata={"type": "wallet_funding", "vendor_id": "V1"})
        signature = sign_paystack(body)
        tampered = body.replace(b'"status":"success"', b'"status": "success"')

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, tampered, signature)

        assert outcome.status == WebhookStatus.REJECTED
        assert _count(session_factory, WalletTransaction) == 0

    def test_flutterwave_wrong_hash_is_rejected(self, reconciliation, session_factory):
        body = flutterwave_body("WALLET_V1_FLW", 60000)
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.FLUTTERWAVE, body, "not-the-hash")
        assert outcome.http_status == 401
        assert _count(session_factory, WalletTransaction) == 0

    def test_signed_but_malformed_body_is_a_bad_request(self, reconciliation):
        body = b"{not json"
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))
        assert outcome.status == WebhookStatus.REJECTED
        assert outcome.http_status == 400

    def test_signed_payload_missing_fields_is_a_bad_request(self, reconciliation):
        body = orjson.dumps({"event": "charge.success", "data": {"amount": 100}})
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))
        assert outcome.http_status == 400


class TestWalletFunding:

    def test_funding_webhook_credits_wallet_once(self, reconciliation, make_vendor, ledger, session_factory):
        make_vendor("V1")
        body = paystack_body("WALLET_V1_0001", naira(75_000), metadata={"type": "wallet_funding", "vendor_id": "V1"})
        signature = sign_paystack(body)

        first = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, signature)
        replay = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, signature)

        assert first.status == WebhookStatus.PROCESSED
        assert replay.status == WebhookStatus.DUPLICATE
        assert replay.acknowledged and replay.http_status == 200
        assert _count(session_factory, WalletTransaction) == 1
        wallet_id = ledger.find_wallet_id("V1")
        assert ledger.get_wallet_snapshot(wallet_id, use_cache=False)["available_minor"] == naira(75_000)

    def test_flutterwave_decimal_amount_is_converted_to_kobo(self, reconciliation, make_vendor, ledger):
        make_vendor("V1")
        body = flutterwave_body("WALLET_V1_FLW1", 60000.55, meta={"type": "wallet_funding", "vendor_id": "V1"})

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.FLUTTERWAVE, body, FLUTTERWAVE_TEST_HASH)

        assert outcome.status == WebhookStatus.PROCESSED
        wallet_id = ledger.find_wallet_id("V1")
        assert ledger.get_wallet_snapshot(wallet_id, use_cache=False)["balance_minor"] == 6_000_055

    def test_unsuccessful_charge_is_ignored(self, reconciliation, make_vendor, session_factory):
        make_vendor("V1")
        body = paystack_body("WALLET_V1_FAIL", naira(75_000), status="failed",
                             metadata={"type": "wallet_funding", "vendor_id": "V1"})

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.IGNORED
        assert _count(session_factory, WalletTransaction) == 0

    def test_unsupported_event_is_acknowledged(self, reconciliation, session_factory):
        body = paystack_body("TRF_1", naira(1_000), event="transfer.success")
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))
        assert outcome.status == WebhookStatus.IGNORED
        assert outcome.acknowledged

    def test_funding_for_unknown_vendor_is_ignored(self, reconciliation, session_factory):
        body = paystack_body("WALLET_GHOST_1", naira(75_000), metadata={"type": "wallet_funding", "vendor_id": "GHOST"})
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))
        assert outcome.status == WebhookStatus.IGNORED
        assert _count(session_factory, WalletTransaction) == 0


class TestDeliveryLedger:

    def test_in_flight_delivery_asks_gateway_to_retry(self, reconciliation, session_factory):
        with atomic_transaction(session_factory) as session:
            session.add(WebhookEvent(provider="paystack", event_reference="REF_BUSY", event_type="charge.success",
                                     status=WebhookEventStatus.PROCESSING.value, payload_sha256="x" * 64,
                                     created_at=get_naive_utc_now()))
        body = paystack_body("REF_BUSY", naira(1_000))

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.http_status == 409
        assert _count(session_factory, WalletTransaction) == 0

    def test_failed_delivery_is_reprocessed(self, reconciliation, make_vendor, session_factory):
        make_vendor("V1")
        with atomic_transaction(session_factory) as session:
            session.add(WebhookEvent(provider="paystack", event_reference="WALLET_V1_RETRY",
                                     event_type="charge.success", status=WebhookEventStatus.FAILED.value,
                                     payload_sha256="x" * 64, created_at=get_naive_utc_now() - timedelta(hours=1)))
        body = paystack_body("WALLET_V1_RETRY", naira(60_000), metadata={"type": "wallet_funding", "vendor_id": "V1"})

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.PROCESSED
        with session_factory() as session:
            event = session.execute(select(WebhookEvent)).scalar_one()
        assert event.status == WebhookEventStatus.COMPLETED.value


class TestAuctionPayment:

    def test_payment_webhook_verifies_and_settles(self, reconciliation, closed_auction, make_vendor,
                                                  session_factory, sink):
        make_vendor("V1")
        auction_id, closure = closed_auction("V1", naira(200_000))
        payment = _payment(session_factory, closure.payment_id)
        body = paystack_body(payment.payment_reference, naira(200_000))

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.PROCESSED
        payment = _payment(session_factory, closure.payment_id)
        assert payment.status == PaymentStatus.VERIFIED.value
        assert payment.auto_verified
        assert payment.verified_by == "gateway:paystack"
        assert payment.escrow_status == EscrowStatus.RELEASED.value
        with session_factory() as session:
            assert session.get(Auction, auction_id).status == AuctionStatus.SETTLED.value
            wallet = session.execute(select(Wallet).where(Wallet.vendor_id == "V1")).scalar_one()
            types = session.execute(select(WalletTransaction.type).order_by(WalletTransaction.id)).scalars().all()
        assert (wallet.balance_minor, wallet.available_minor, wallet.frozen_minor) == (0, 0, 0)
        assert types == ["credit", "freeze", "debit"]
        assert len(sink.of(NotificationEvent.PAYMENT_VERIFIED)) == 1

    def test_payment_found_through_metadata(self, reconciliation, closed_auction, make_vendor, session_factory):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        body = paystack_body("GATEWAY_GENERATED_REF", naira(200_000), metadata={"payment_id": closure.payment_id})

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.PROCESSED
        assert _payment(session_factory, closure.payment_id).status == PaymentStatus.VERIFIED.value

    def test_amount_mismatch_credits_wallet_without_verifying(self, reconciliation, closed_auction, make_vendor,
                                                               ledger, session_factory):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        payment = _payment(session_factory, closure.payment_id)
        body = paystack_body(payment.payment_reference, naira(150_000))

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.reason == "amount_mismatch"
        assert _payment(session_factory, closure.payment_id).status == PaymentStatus.PENDING.value
        wallet_id = ledger.find_wallet_id("V1")
        assert ledger.get_wallet_snapshot(wallet_id, use_cache=False)["available_minor"] == naira(150_000)

    def test_replayed_payment_webhook_does_not_double_credit(self, reconciliation, closed_auction, make_vendor,
                                                             session_factory):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        payment = _payment(session_factory, closure.payment_id)
        body = paystack_body(payment.payment_reference, naira(200_000))
        signature = sign_paystack(body)

        for _ in range(3):
            reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, signature)

        with session_factory() as session:
            credits = session.execute(
                select(func.count()).select_from(WalletTransaction).where(WalletTransaction.type == "credit")
            ).scalar_one()
        assert credits == 1

    def test_webhook_after_force_confirm_is_a_no_op(self, reconciliation, closed_auction, make_vendor,
                                                    session_factory):
        make_vendor("V1")
        _, closure = closed_auction("V1", naira(200_000))
        payment = _payment(session_factory, closure.payment_id)
        assert reconciliation.force_confirm_payment(closure.payment_id, "ops-1",
                                                    "gateway dashboard shows capture").success
        body = paystack_body(payment.payment_reference, naira(200_000))

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.DUPLICATE
        with session_factory() as session:
            credits = session.execute(
                select(func.count()).select_from(WalletTransaction).where(WalletTransaction.type == "credit")
            ).scalar_one()
        assert credits == 1

    def test_unknown_payment_reference_is_acknowledged(self, reconciliation, session_factory):
        body = paystack_body("PAY_999_DEADBEEF0000", naira(200_000))
        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))
        assert outcome.status == WebhookStatus.IGNORED
        assert _count(session_factory, WalletTransaction) == 0

    def test_webhook_after_fraud_forfeit_credits_without_freezing(self, reconciliation, auctions, closed_auction,
                                                                  make_vendor, notifier, session_factory, sink):
        make_vendor("V1")
        auction_id, closure = closed_auction("V1", naira(100_000))
        fraud = auctions.fraud_detector
        for i in range(3):
            fraud.confirm_flag(fraud.record_flag("V1", FraudPattern.MANUAL_REPORT, {"report": i}), "risk-1")
        FraudAutoSuspendJob(session_factory, fraud=fraud, auctions=auctions, notifier=notifier, threshold=3).run()
        payment = _payment(session_factory, closure.payment_id)
        body = paystack_body(payment.payment_reference, naira(100_000))

        outcome = reconciliation.handle_gateway_webhook(WebhookProvider.PAYSTACK, body, sign_paystack(body))

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.reason == "win_forfeited"
        payment = _payment(session_factory, closure.payment_id)
        assert payment.status == PaymentStatus.OVERDUE.value
        assert payment.escrow_status == EscrowStatus.NONE.value
        with session_factory() as session:
            wallet = session.execute(select(Wallet).where(Wallet.vendor_id == "V1")).scalar_one()
            assert session.get(Auction, auction_id).status == AuctionStatus.CANCELLED.value
        assert wallet.frozen_minor == 0
        assert wallet.available_minor == naira(100_000)
        assert sink.of(NotificationEvent.PAYMENT_VERIFIED) == []

    def test_force_confirm_after_forfeit_is_refused(self, reconciliation, auctions, closed_auction, make_vendor,
                                                    session_factory):
        make_vendor("V1")
        auction_id, closure = closed_auction("V1", naira(100_000))
        assert auctions.forfeit_auction(auction_id, actor="ops-1", reason="winner withdrew", relist=False).success

        result = reconciliation.force_confirm_payment(closure.payment_id, "ops-2", "customer says they paid")

        assert result.error == PaymentActionError.INVALID_STATE
        assert _count(session_factory, WalletTransaction) == 0
