"""
Payment Reconciliation Pipeline
===============================

Turns external payment evidence into ledger and auction transitions:

- gateway webhooks (Paystack, Flutterwave): signature checked over the raw
  body, then parsed, deduplicated and applied with the gateway reference as
  the ledger idempotency key
- manual bank-transfer proof, held pending until a finance reviewer decides
- force-confirm for payments stuck pending although the gateway captured the
  funds, followed by a wallet balance recompute

Whichever path confirms a payment first wins; the others become no-ops
because the payment is already verified and the ledger references are taken.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import orjson
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import SessionLocal
from models import (
    Auction, AuctionStatus, Payment, PaymentStatus, PaymentMethod, EscrowStatus, PayoutStatus,
    WebhookEvent, WebhookEventStatus,
)
from services.audit_trail_service import audit_trail
from services.auction_state_machine import (
    AuctionStateMachine, freeze_reference, generate_payment_reference,
)
from services.escrow_ledger import EscrowLedger, LedgerInvariantError
from services.notification_dispatcher import notification_dispatcher, NotificationEvent, NotificationDispatcher
from services.webhook_security_service import WebhookSecurityService, WebhookProvider
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.money import to_minor_units, MoneyConversionError, format_naira

logger = logging.getLogger(__name__)

STALE_PROCESSING_AFTER = timedelta(minutes=5)


class WebhookStatus(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class WebhookOutcome:
    """Result handed back to the HTTP layer. Duplicates are still a success."""
    status: WebhookStatus
    provider: str
    reference: Optional[str] = None
    reason: Optional[str] = None
    http_status: int = 200

    @property
    def acknowledged(self) -> bool:
        return self.status in (WebhookStatus.PROCESSED, WebhookStatus.DUPLICATE, WebhookStatus.IGNORED)


@dataclass
class GatewayEvent:
    """Provider-neutral view of a charge notification"""
    provider: WebhookProvider
    event_type: str
    reference: str
    amount_minor: int
    successful: bool
    kind: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentActionError(Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INVALID_INPUT = "invalid_input"
    JUSTIFICATION_TOO_SHORT = "justification_too_short"
    FORBIDDEN = "forbidden"
    AMOUNT_MISMATCH = "amount_mismatch"
    LEDGER_FAILURE = "ledger_failure"
    DATABASE_ERROR = "database_error"


@dataclass
class PaymentActionResult:
    success: bool
    payment_id: int
    status: Optional[str] = None
    error: Optional[PaymentActionError] = None
    message: Optional[str] = None
    already_verified: bool = False
    credited_minor: int = 0
    replacement_payment_id: Optional[int] = None
    settled: bool = False


class _Abort(Exception):
    def __init__(self, result: PaymentActionResult):
        super().__init__(result.message)
        self.result = result


class PaymentReconciliationService:
    """Webhook, manual-proof and force-confirm paths into the ledger"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        ledger: Optional[EscrowLedger] = None,
        auctions: Optional[AuctionStateMachine] = None,
        security: Optional[WebhookSecurityService] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.ledger = ledger or EscrowLedger(self.session_factory)
        self.notifier = notifier or notification_dispatcher
        self.auctions = auctions or AuctionStateMachine(self.session_factory, ledger=self.ledger,
                                                        notifier=self.notifier)
        self.security = security or WebhookSecurityService()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def handle_gateway_webhook(self, provider: WebhookProvider, raw_body: bytes,
                               signature: Optional[str]) -> WebhookOutcome:
        """Verify, parse, deduplicate and apply one gateway delivery"""
        check = self.security.verify(provider, raw_body, signature)
        if not check.valid:
            return WebhookOutcome(WebhookStatus.REJECTED, provider.value, reason="invalid_signature",
                                  http_status=401)

        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError:
            logger.warning(f"⚠️ WEBHOOK_MALFORMED: {provider.value} body is not JSON")
            return WebhookOutcome(WebhookStatus.REJECTED, provider.value, reason="invalid_payload", http_status=400)

        try:
            event = self.parse_event(provider, payload)
        except (MoneyConversionError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ WEBHOOK_UNPARSEABLE: {provider.value}: {e}")
            return WebhookOutcome(WebhookStatus.REJECTED, provider.value, reason="invalid_payload", http_status=400)
        if event is None:
            return WebhookOutcome(WebhookStatus.IGNORED, provider.value, reason="unsupported_event")

        payload_sha256 = hashlib.sha256(raw_body).hexdigest()
        claim = self._claim_event(event, payload_sha256)
        if claim is not None:
            return claim

        if not event.successful:
            self._finish_event(event, WebhookEventStatus.IGNORED, "charge not successful")
            return WebhookOutcome(WebhookStatus.IGNORED, provider.value, event.reference, "charge_not_successful")

        try:
            if event.kind == "wallet_funding":
                outcome = self._apply_wallet_funding(event)
            else:
                outcome = self._apply_auction_payment(event)
        except SQLAlchemyError as e:
            logger.error(f"❌ WEBHOOK_PROCESSING_FAILED: {provider.value} {event.reference}: {e}", exc_info=True)
            self._finish_event(event, WebhookEventStatus.FAILED, str(e))
            return WebhookOutcome(WebhookStatus.FAILED, provider.value, event.reference, "processing_error",
                                  http_status=500)

        final_status = {
            WebhookStatus.PROCESSED: WebhookEventStatus.COMPLETED,
            WebhookStatus.DUPLICATE: WebhookEventStatus.COMPLETED,
            WebhookStatus.IGNORED: WebhookEventStatus.IGNORED,
        }.get(outcome.status, WebhookEventStatus.FAILED)
        self._finish_event(event, final_status, outcome.reason or outcome.status.value)
        return outcome

    def parse_event(self, provider: WebhookProvider, payload: Dict[str, Any]) -> Optional[GatewayEvent]:
        """Normalize a provider payload; None for event types this service ignores"""
        event_type = payload.get("event", "")
        data = payload.get("data") or {}

        if provider == WebhookProvider.PAYSTACK:
            if event_type != "charge.success":
                return None
            metadata = data.get("metadata") or {}
            if not isinstance(metadata, dict):
                metadata = {}
            # Paystack reports amounts in kobo
            return GatewayEvent(
                provider=provider,
                event_type=event_type,
                reference=str(data["reference"]),
                amount_minor=int(data["amount"]),
                successful=data.get("status") == "success",
                kind="wallet_funding" if metadata.get("type") == "wallet_funding" else "auction_payment",
                metadata=metadata,
            )

        if provider == WebhookProvider.FLUTTERWAVE:
            if event_type != "charge.completed":
                return None
            metadata = data.get("meta") or data.get("meta_data") or {}
            if not isinstance(metadata, dict):
                metadata = {}
            amount = data["amount"]
            if isinstance(amount, float):
                # JSON numbers arrive as floats; the shortest repr is the sent value
                amount = Decimal(repr(amount))
            return GatewayEvent(
                provider=provider,
                event_type=event_type,
                reference=str(data["tx_ref"]),
                amount_minor=to_minor_units(amount),
                successful=data.get("status") == "successful",
                kind="wallet_funding" if metadata.get("type") == "wallet_funding" else "auction_payment",
                metadata=metadata,
            )
        return None

    def _claim_event(self, event: GatewayEvent, payload_sha256: str) -> Optional[WebhookOutcome]:
        """Record the delivery; returns an outcome when it must not be processed again"""
        provider = event.provider.value
        now = get_naive_utc_now()
        try:
            with atomic_transaction(self.session_factory) as session:
                existing = session.execute(
                    select(WebhookEvent)
                    .where(WebhookEvent.provider == provider, WebhookEvent.event_reference == event.reference)
                    .with_for_update()
                ).scalar_one_or_none()

                if existing is None:
                    session.add(WebhookEvent(
                        provider=provider,
                        event_reference=event.reference,
                        event_type=event.event_type,
                        status=WebhookEventStatus.PROCESSING.value,
                        payload_sha256=payload_sha256,
                        created_at=now,
                    ))
                    return None

                if existing.status in (WebhookEventStatus.COMPLETED.value, WebhookEventStatus.IGNORED.value):
                    logger.info(f"♻️ WEBHOOK_DUPLICATE: {provider} {event.reference} already {existing.status}")
                    return WebhookOutcome(WebhookStatus.DUPLICATE, provider, event.reference, "already_processed")

                if existing.status == WebhookEventStatus.PROCESSING.value and now - existing.created_at < STALE_PROCESSING_AFTER:
                    logger.info(f"⏳ WEBHOOK_IN_FLIGHT: {provider} {event.reference}")
                    return WebhookOutcome(WebhookStatus.FAILED, provider, event.reference, "in_flight",
                                          http_status=409)

                # Failed or abandoned earlier attempt: take it over
                existing.status = WebhookEventStatus.PROCESSING.value
                existing.created_at = now
                existing.payload_sha256 = payload_sha256
                return None
        except IntegrityError:
            logger.info(f"⏳ WEBHOOK_CLAIM_RACE: {provider} {event.reference} claimed concurrently")
            return WebhookOutcome(WebhookStatus.FAILED, provider, event.reference, "in_flight", http_status=409)

    def _finish_event(self, event: GatewayEvent, status: WebhookEventStatus, result: str) -> None:
        with atomic_transaction(self.session_factory) as session:
            row = session.execute(
                select(WebhookEvent).where(
                    WebhookEvent.provider == event.provider.value,
                    WebhookEvent.event_reference == event.reference,
                )
            ).scalar_one_or_none()
            if row is not None:
                row.status = status.value
                row.result = result[:500] if result else None
                row.completed_at = get_naive_utc_now()

    def _apply_wallet_funding(self, event: GatewayEvent) -> WebhookOutcome:
        provider = event.provider.value
        vendor_id = event.metadata.get("vendor_id")
        if not vendor_id:
            logger.error(f"❌ WALLET_FUNDING_NO_VENDOR: {provider} {event.reference}")
            return WebhookOutcome(WebhookStatus.IGNORED, provider, event.reference, "missing_vendor_id")

        wallet_id = self.ledger.get_or_create_wallet(str(vendor_id))
        if wallet_id is None:
            return WebhookOutcome(WebhookStatus.IGNORED, provider, event.reference, "unknown_vendor")

        result = self.ledger.credit(wallet_id, event.amount_minor, event.reference,
                                    description=f"Wallet funding via {provider}", actor=f"gateway:{provider}")
        if not result.success:
            return WebhookOutcome(WebhookStatus.FAILED, provider, event.reference,
                                  f"ledger_{result.failure.value}", http_status=500)
        if result.duplicate:
            return WebhookOutcome(WebhookStatus.DUPLICATE, provider, event.reference, "already_credited")
        logger.info(f"✅ WALLET_FUNDED: vendor {vendor_id} {format_naira(event.amount_minor)} via {provider}")
        return WebhookOutcome(WebhookStatus.PROCESSED, provider, event.reference, "wallet_credited")

    def _apply_auction_payment(self, event: GatewayEvent) -> WebhookOutcome:
        provider = event.provider.value
        payment_id = self._find_payment_id(event)
        if payment_id is None:
            logger.error(f"❌ PAYMENT_NOT_FOUND: {provider} reference {event.reference}")
            return WebhookOutcome(WebhookStatus.IGNORED, provider, event.reference, "payment_not_found")

        result = self._confirm_payment(
            payment_id,
            received_minor=event.amount_minor,
            credit_reference=event.reference,
            verifier=f"gateway:{provider}",
            auto_verified=True,
        )
        if not result.success:
            return WebhookOutcome(WebhookStatus.FAILED, provider, event.reference,
                                  result.error.value if result.error else "confirmation_failed", http_status=500)
        if result.already_verified:
            return WebhookOutcome(WebhookStatus.DUPLICATE, provider, event.reference, "payment_already_verified")
        return WebhookOutcome(WebhookStatus.PROCESSED, provider, event.reference, result.message or "payment_verified")

    def _find_payment_id(self, event: GatewayEvent) -> Optional[int]:
        with self.session_factory() as session:
            payment_id = session.execute(
                select(Payment.id).where(Payment.payment_reference == event.reference)
            ).scalar_one_or_none()
            if payment_id is None and event.metadata.get("payment_id"):
                try:
                    payment_id = session.execute(
                        select(Payment.id).where(Payment.id == int(event.metadata["payment_id"]))
                    ).scalar_one_or_none()
                except (TypeError, ValueError):
                    return None
            return payment_id

    # ------------------------------------------------------------------
    # Confirmation core shared by every path
    # ------------------------------------------------------------------

    def _confirm_payment(self, payment_id: int, received_minor: int, credit_reference: str, verifier: str,
                         auto_verified: bool, allowed_methods: Optional[set] = None) -> PaymentActionResult:
        """
        Credit the captured funds, freeze the winning amount and verify the
        payment in one transaction, then settle the auction.

        Funds that cannot verify the payment (wrong amount, payment overdue or
        rejected) are still credited so the vendor's money is accounted for.
        """
        now = get_naive_utc_now()
        try:
            with atomic_transaction(self.session_factory) as session:
                result = self._confirm_in_session(session, payment_id, received_minor, credit_reference,
                                                  verifier, auto_verified, allowed_methods, now)
        except _Abort as abort:
            return abort.result
        except LedgerInvariantError as e:
            logger.critical(f"🚨 INVARIANT_VIOLATION: confirming payment {payment_id} rolled back: {e}")
            return PaymentActionResult(False, payment_id, error=PaymentActionError.LEDGER_FAILURE, message=str(e))
        except SQLAlchemyError as e:
            logger.error(f"❌ PAYMENT_CONFIRM_FAILED: payment {payment_id}: {e}", exc_info=True)
            return PaymentActionResult(False, payment_id, error=PaymentActionError.DATABASE_ERROR, message=str(e))

        if result.success and result.status == PaymentStatus.VERIFIED.value and not result.already_verified:
            payment = self.get_payment(payment_id)
            self.notifier.emit(NotificationEvent.PAYMENT_VERIFIED, payment_id=payment_id,
                               auction_id=payment["auction_id"], vendor_id=payment["vendor_id"],
                               amount_minor=payment["amount_minor"], auto_verified=auto_verified)
            settlement = self.auctions.settle_auction(payment["auction_id"], actor=verifier)
            result.settled = settlement.success
            if not settlement.success:
                logger.warning(f"⚠️ SETTLEMENT_DEFERRED: auction {payment['auction_id']}: {settlement.message}")
        return result

    def _confirm_in_session(self, session: Session, payment_id: int, received_minor: int, credit_reference: str,
                            verifier: str, auto_verified: bool, allowed_methods: Optional[set],
                            now: datetime) -> PaymentActionResult:
        payment = self._lock_payment(session, payment_id)
        if payment is None:
            raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.NOT_FOUND,
                                             message="payment not found"))

        if payment.status == PaymentStatus.VERIFIED.value:
            logger.info(f"♻️ PAYMENT_ALREADY_VERIFIED: payment {payment_id} ({credit_reference})")
            return PaymentActionResult(True, payment_id, status=payment.status, already_verified=True,
                                       message="payment already verified")
        if allowed_methods is not None and payment.payment_method not in allowed_methods:
            raise _Abort(PaymentActionResult(False, payment_id, status=payment.status,
                                             error=PaymentActionError.INVALID_STATE,
                                             message=f"payment method is {payment.payment_method}"))

        wallet_id = self.ledger.get_or_create_wallet(payment.vendor_id, session=session)
        if wallet_id is None:
            raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.LEDGER_FAILURE,
                                             message="vendor has no wallet"))

        credit = self.ledger.credit(wallet_id, received_minor, credit_reference,
                                    description=f"Payment {payment_id} for auction {payment.auction_id}",
                                    actor=verifier, session=session)
        if not credit.success:
            raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.LEDGER_FAILURE,
                                             message=f"credit failed: {credit.failure.value}"))
        credited = 0 if credit.duplicate else received_minor

        before = self._payment_snapshot(payment)
        auction_status = session.execute(
            select(Auction.status).where(Auction.id == payment.auction_id)
        ).scalar_one_or_none()
        if payment.forfeited_at is not None or auction_status != AuctionStatus.CLOSED.value:
            reason = "win_forfeited" if payment.forfeited_at is not None else f"auction_{auction_status}"
        elif payment.status != PaymentStatus.PENDING.value:
            reason = f"payment_{payment.status}"
        elif received_minor != payment.amount_minor:
            reason = "amount_mismatch"
        else:
            reason = None

        if reason is not None:
            audit_trail.record(session, verifier, "payment.funds_credited_unverified", "payment", payment_id,
                               before=before, after=dict(before, credited_minor=credited),
                               description=f"{reason}: received {received_minor}, expected {payment.amount_minor}")
            logger.warning(
                f"⚠️ PAYMENT_NOT_VERIFIED: payment {payment_id} {reason}, received {format_naira(received_minor)} "
                f"expected {format_naira(payment.amount_minor)}; funds credited to wallet {wallet_id}"
            )
            return PaymentActionResult(True, payment_id, status=payment.status, credited_minor=credited,
                                       message=reason)

        freeze = self.ledger.freeze(wallet_id, payment.amount_minor, freeze_reference(payment.auction_id),
                                    description=f"Escrow hold for auction {payment.auction_id}",
                                    actor=verifier, session=session)
        if not freeze.success:
            raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.LEDGER_FAILURE,
                                             message=f"freeze failed: {freeze.failure.value}"))

        payment.status = PaymentStatus.VERIFIED.value
        payment.auto_verified = auto_verified
        payment.verified_by = verifier
        payment.verified_at = now
        payment.escrow_status = EscrowStatus.FROZEN.value
        session.flush()

        audit_trail.record(session, verifier, "payment.verified", "payment", payment_id, before=before,
                           after=self._payment_snapshot(payment), description=f"credit ref {credit_reference}")
        logger.info(f"✅ PAYMENT_VERIFIED: payment {payment_id} auction {payment.auction_id} by {verifier}")
        return PaymentActionResult(True, payment_id, status=payment.status, credited_minor=credited,
                                   message="payment_verified")

    # ------------------------------------------------------------------
    # Manual bank-transfer proof
    # ------------------------------------------------------------------

    def upload_payment_proof(self, payment_id: int, vendor_id: str, proof_url: str) -> PaymentActionResult:
        """Attach bank-transfer proof; the payment stays pending for review"""
        if not proof_url or not proof_url.strip():
            return PaymentActionResult(False, payment_id, error=PaymentActionError.INVALID_INPUT,
                                       message="proof_url is required")

        def work(session: Session) -> PaymentActionResult:
            payment = self._lock_payment(session, payment_id)
            if payment is None:
                raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.NOT_FOUND,
                                                 message="payment not found"))
            if payment.vendor_id != vendor_id:
                raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.FORBIDDEN,
                                                 message="payment belongs to another vendor"))
            if payment.status != PaymentStatus.PENDING.value:
                raise _Abort(PaymentActionResult(False, payment_id, status=payment.status,
                                                 error=PaymentActionError.INVALID_STATE,
                                                 message=f"payment is {payment.status}"))
            before = self._payment_snapshot(payment)
            payment.payment_method = PaymentMethod.BANK_TRANSFER.value
            payment.payment_proof_url = proof_url.strip()
            session.flush()
            audit_trail.record(session, vendor_id, "payment.proof_uploaded", "payment", payment_id,
                               before=before, after=self._payment_snapshot(payment))
            return PaymentActionResult(True, payment_id, status=payment.status, message="awaiting_review")

        result = self._run(payment_id, work)
        if result.success:
            logger.info(f"🧾 PAYMENT_PROOF_UPLOADED: payment {payment_id} by {vendor_id}")
        return result

    def review_manual_payment(self, payment_id: int, reviewer_id: str, approve: bool,
                              comment: Optional[str] = None) -> PaymentActionResult:
        """Finance decision on a bank-transfer payment"""
        if not reviewer_id:
            return PaymentActionResult(False, payment_id, error=PaymentActionError.INVALID_INPUT,
                                       message="reviewer_id is required")
        if approve:
            return self._approve_manual(payment_id, reviewer_id)
        return self._reject_manual(payment_id, reviewer_id, comment)

    def _approve_manual(self, payment_id: int, reviewer_id: str) -> PaymentActionResult:
        payment = self.get_payment(payment_id)
        if payment is None:
            return PaymentActionResult(False, payment_id, error=PaymentActionError.NOT_FOUND,
                                       message="payment not found")
        if payment["status"] == PaymentStatus.REJECTED.value:
            return PaymentActionResult(False, payment_id, status=payment["status"],
                                       error=PaymentActionError.INVALID_STATE, message="payment was rejected")
        if not payment["payment_proof_url"] and payment["status"] == PaymentStatus.PENDING.value:
            return PaymentActionResult(False, payment_id, status=payment["status"],
                                       error=PaymentActionError.INVALID_STATE, message="no proof uploaded")
        return self._confirm_payment(
            payment_id,
            received_minor=payment["amount_minor"],
            credit_reference=f"MANUAL_{payment_id}",
            verifier=reviewer_id,
            auto_verified=False,
            allowed_methods={PaymentMethod.BANK_TRANSFER.value},
        )

    def _reject_manual(self, payment_id: int, reviewer_id: str, comment: Optional[str]) -> PaymentActionResult:
        comment = (comment or "").strip()
        if len(comment) < Config.MIN_JUSTIFICATION_LENGTH:
            return PaymentActionResult(False, payment_id, error=PaymentActionError.JUSTIFICATION_TOO_SHORT,
                                       message=f"comment must be at least {Config.MIN_JUSTIFICATION_LENGTH} characters")

        def work(session: Session) -> PaymentActionResult:
            payment = self._lock_payment(session, payment_id)
            if payment is None:
                raise _Abort(PaymentActionResult(False, payment_id, error=PaymentActionError.NOT_FOUND,
                                                 message="payment not found"))
            if payment.status != PaymentStatus.PENDING.value or payment.payment_method != PaymentMethod.BANK_TRANSFER.value:
                raise _Abort(PaymentActionResult(False, payment_id, status=payment.status,
                                                 error=PaymentActionError.INVALID_STATE,
                                                 message="only pending bank-transfer payments can be rejected"))
            before = self._payment_snapshot(payment)
            payment.status = PaymentStatus.REJECTED.value
            payment.rejection_reason = comment
            session.flush()

            replacement = Payment(
                auction_id=payment.auction_id,
                vendor_id=payment.vendor_id,
                amount_minor=payment.amount_minor,
                payment_method=Config.DEFAULT_GATEWAY,
                payment_reference=generate_payment_reference(payment.auction_id),
                escrow_status=EscrowStatus.NONE.value,
                status=PaymentStatus.PENDING.value,
                payment_deadline=payment.payment_deadline,
                reminder_sent_at=payment.reminder_sent_at,
                payout_status=PayoutStatus.NONE.value,
            )
            session.add(replacement)
            session.flush()

            audit_trail.record(session, reviewer_id, "payment.rejected", "payment", payment_id, before=before,
                               after=self._payment_snapshot(payment), description=comment)
            audit_trail.record(session, reviewer_id, "payment.created", "payment", replacement.id,
                               after=self._payment_snapshot(replacement),
                               description=f"replacement for rejected payment {payment_id}")
            return PaymentActionResult(True, payment_id, status=payment.status,
                                       replacement_payment_id=replacement.id, message="payment_rejected")

        result = self._run(payment_id, work)
        if result.success:
            payment = self.get_payment(payment_id)
            self.notifier.emit(NotificationEvent.PAYMENT_REJECTED, payment_id=payment_id,
                               auction_id=payment["auction_id"], vendor_id=payment["vendor_id"],
                               reason=comment, replacement_payment_id=result.replacement_payment_id)
            logger.info(f"🚫 PAYMENT_REJECTED: payment {payment_id} by {reviewer_id}")
        return result

    # ------------------------------------------------------------------
    # Force confirm
    # ------------------------------------------------------------------

    def force_confirm_payment(self, payment_id: int, operator_id: str, justification: str) -> PaymentActionResult:
        """
        Confirm a payment the gateway captured but whose webhook never
        verified it. Uses a synthetic reference unique to the payment, then
        recomputes the wallet balance.
        """
        justification = (justification or "").strip()
        if not operator_id:
            return PaymentActionResult(False, payment_id, error=PaymentActionError.INVALID_INPUT,
                                       message="operator_id is required")
        if len(justification) < Config.MIN_JUSTIFICATION_LENGTH:
            return PaymentActionResult(False, payment_id, error=PaymentActionError.JUSTIFICATION_TOO_SHORT,
                                       message=f"justification must be at least {Config.MIN_JUSTIFICATION_LENGTH} characters")

        payment = self.get_payment(payment_id)
        if payment is None:
            return PaymentActionResult(False, payment_id, error=PaymentActionError.NOT_FOUND,
                                       message="payment not found")
        if payment["status"] not in (PaymentStatus.PENDING.value, PaymentStatus.VERIFIED.value):
            return PaymentActionResult(False, payment_id, status=payment["status"],
                                       error=PaymentActionError.INVALID_STATE,
                                       message=f"cannot force-confirm a {payment['status']} payment")

        logger.warning(f"🛠️ FORCE_CONFIRM: payment {payment_id} by {operator_id}: {justification}")
        result = self._confirm_payment(
            payment_id,
            received_minor=payment["amount_minor"],
            credit_reference=f"FORCE_CONFIRM_{payment_id}",
            verifier=operator_id,
            auto_verified=False,
        )
        if not result.success:
            return result

        try:
            with atomic_transaction(self.session_factory) as session:
                audit_trail.record(session, operator_id, "payment.force_confirmed", "payment", payment_id,
                                   after={"status": result.status, "already_verified": result.already_verified},
                                   description=justification)
                wallet_id = self.ledger.get_wallet_id(session, payment["vendor_id"])
        except SQLAlchemyError as e:
            # The credit is already committed; report the failed bookkeeping instead of raising
            logger.error(f"❌ FORCE_CONFIRM_AUDIT_FAILED: payment {payment_id}: {e}", exc_info=True)
            return PaymentActionResult(False, payment_id, status=result.status, credited_minor=result.credited_minor,
                                       error=PaymentActionError.DATABASE_ERROR,
                                       message=f"payment confirmed but audit write failed: {e}")

        if wallet_id is not None:
            recompute = self.ledger.recompute_balance(wallet_id, actor=operator_id,
                                                      reason=f"force confirm of payment {payment_id}")
            if not recompute.success:
                logger.error(f"❌ FORCE_CONFIRM_RECOMPUTE_FAILED: wallet {wallet_id}: {recompute.message}")
        return result

    # ------------------------------------------------------------------
    # Reads and helpers
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: int) -> Optional[Dict[str, Any]]:
        with self.session_factory() as session:
            payment = session.get(Payment, payment_id)
            return self._payment_snapshot(payment) if payment is not None else None

    def _run(self, payment_id: int, work) -> PaymentActionResult:
        try:
            with atomic_transaction(self.session_factory) as session:
                return work(session)
        except _Abort as abort:
            return abort.result
        except SQLAlchemyError as e:
            logger.error(f"❌ PAYMENT_ACTION_FAILED: payment {payment_id}: {e}", exc_info=True)
            return PaymentActionResult(False, payment_id, error=PaymentActionError.DATABASE_ERROR, message=str(e))

    @staticmethod
    def _lock_payment(session: Session, payment_id: int) -> Optional[Payment]:
        return session.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _payment_snapshot(payment: Payment) -> Dict[str, Any]:
        return {
            "payment_id": payment.id,
            "auction_id": payment.auction_id,
            "vendor_id": payment.vendor_id,
            "amount_minor": payment.amount_minor,
            "payment_method": payment.payment_method,
            "payment_reference": payment.payment_reference,
            "payment_proof_url": payment.payment_proof_url,
            "status": payment.status,
            "escrow_status": payment.escrow_status,
            "auto_verified": payment.auto_verified,
            "verified_by": payment.verified_by,
            "payment_deadline": payment.payment_deadline.isoformat() if payment.payment_deadline else None,
            "payout_status": payment.payout_status,
        }


payment_reconciliation = PaymentReconciliationService()
