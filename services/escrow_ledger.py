"""
Escrow Wallet Ledger
====================

Owns per-vendor escrow balances and the append-only wallet transaction log.

Every mutation is one atomic unit: lock the wallet row, check
balance == available + frozen, apply the change through a version-guarded
UPDATE, append exactly one WalletTransaction, re-read and check the invariant
again, and write an audit record. The caller's idempotency reference is unique
across the ledger, so a replayed reference returns the original entry.

Operations accept an optional session. Without one they run in their own
transaction and retry version conflicts; with one they join the caller's
transaction (auction closure, settlement, payment confirmation) and the caller
commits.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from caching.simple_cache import wallet_cache
from config import Config
from database import SessionLocal
from models import Wallet, WalletTransaction, WalletTransactionType, Vendor
from services.audit_trail_service import audit_trail, SYSTEM_ACTOR
from utils.atomic_transactions import atomic_transaction, versioned_update
from utils.datetime_helpers import get_naive_utc_now
from utils.money import format_naira

logger = logging.getLogger(__name__)


class LedgerFailure(Enum):
    """Failure kinds returned by ledger operations"""
    INVALID_AMOUNT = "invalid_amount"
    INVALID_REFERENCE = "invalid_reference"
    WALLET_NOT_FOUND = "wallet_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_FROZEN_FUNDS = "insufficient_frozen_funds"
    INVARIANT_VIOLATION = "invariant_violation"
    REFERENCE_CONFLICT = "reference_conflict"
    CONCURRENT_UPDATE = "concurrent_update"
    DATABASE_ERROR = "database_error"


class LedgerInvariantError(Exception):
    """Raised when a wallet breaks balance == available + frozen after a write"""
    pass


class _VersionConflict(Exception):
    """Internal signal to retry a standalone operation"""
    pass


@dataclass
class LedgerResult:
    """Typed outcome of a ledger operation"""
    success: bool
    operation: str
    reference: str
    wallet_id: Optional[int] = None
    failure: Optional[LedgerFailure] = None
    duplicate: bool = False
    transaction_id: Optional[int] = None
    amount_minor: int = 0
    balance_minor: Optional[int] = None
    available_minor: Optional[int] = None
    frozen_minor: Optional[int] = None
    adjustment_minor: int = 0
    message: Optional[str] = None

    @classmethod
    def failed(cls, operation: str, reference: str, wallet_id: Optional[int],
               failure: LedgerFailure, message: str) -> "LedgerResult":
        return cls(success=False, operation=operation, reference=reference,
                   wallet_id=wallet_id, failure=failure, message=message)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failure"] = self.failure.value if self.failure else None
        return data


# (balance, available, frozen) -> new triple, or a failure
_Mutation = Callable[[int, int, int, int], Tuple[Optional[Tuple[int, int, int]], Optional[LedgerFailure]]]


def _credit(balance: int, available: int, frozen: int, amount: int):
    return (balance + amount, available + amount, frozen), None


def _freeze(balance: int, available: int, frozen: int, amount: int):
    if available < amount:
        return None, LedgerFailure.INSUFFICIENT_FUNDS
    return (balance, available - amount, frozen + amount), None


def _unfreeze(balance: int, available: int, frozen: int, amount: int):
    if frozen < amount:
        return None, LedgerFailure.INSUFFICIENT_FROZEN_FUNDS
    return (balance, available + amount, frozen - amount), None


def _release(balance: int, available: int, frozen: int, amount: int):
    if frozen < amount:
        return None, LedgerFailure.INSUFFICIENT_FROZEN_FUNDS
    return (balance - amount, available, frozen - amount), None


_OPERATIONS: Dict[str, Tuple[WalletTransactionType, _Mutation]] = {
    "credit": (WalletTransactionType.CREDIT, _credit),
    "freeze": (WalletTransactionType.FREEZE, _freeze),
    "unfreeze": (WalletTransactionType.UNFREEZE, _unfreeze),
    "release": (WalletTransactionType.DEBIT, _release),
}


def wallet_snapshot(wallet: Wallet) -> Dict[str, Any]:
    return {
        "wallet_id": wallet.id,
        "vendor_id": wallet.vendor_id,
        "balance_minor": wallet.balance_minor,
        "available_minor": wallet.available_minor,
        "frozen_minor": wallet.frozen_minor,
        "version": wallet.version,
    }


class EscrowLedger:
    """Wallet ledger operations"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, max_retries: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.max_retries = max_retries or Config.LEDGER_MAX_RETRIES

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def credit(self, wallet_id: int, amount_minor: int, reference: str, description: Optional[str] = None,
               actor: Optional[str] = None, session: Optional[Session] = None) -> LedgerResult:
        """Increase balance and available funds"""
        return self._execute("credit", wallet_id, amount_minor, reference, description, actor, session)

    def freeze(self, wallet_id: int, amount_minor: int, reference: str, description: Optional[str] = None,
               actor: Optional[str] = None, session: Optional[Session] = None) -> LedgerResult:
        """Move available funds to frozen"""
        return self._execute("freeze", wallet_id, amount_minor, reference, description, actor, session)

    def unfreeze(self, wallet_id: int, amount_minor: int, reference: str, description: Optional[str] = None,
                 actor: Optional[str] = None, session: Optional[Session] = None) -> LedgerResult:
        """Move frozen funds back to available"""
        return self._execute("unfreeze", wallet_id, amount_minor, reference, description, actor, session)

    def release(self, wallet_id: int, amount_minor: int, reference: str, description: Optional[str] = None,
                actor: Optional[str] = None, session: Optional[Session] = None) -> LedgerResult:
        """Debit frozen funds permanently (payout to the insurer)"""
        return self._execute("release", wallet_id, amount_minor, reference, description, actor, session)

    def _execute(self, operation: str, wallet_id: int, amount_minor: int, reference: str,
                 description: Optional[str], actor: Optional[str],
                 session: Optional[Session]) -> LedgerResult:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.INVALID_AMOUNT,
                                       f"amount must be a positive integer of minor units, got {amount_minor!r}")
        if not reference or not isinstance(reference, str) or len(reference) > 128:
            return LedgerResult.failed(operation, str(reference), wallet_id, LedgerFailure.INVALID_REFERENCE,
                                       "reference must be a non-empty string of at most 128 characters")

        if session is not None:
            try:
                result = self._apply(session, operation, wallet_id, amount_minor, reference, description, actor)
                if result.success and not result.duplicate:
                    wallet_cache.delete(f"wallet:{wallet_id}")
                return result
            except _VersionConflict:
                return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.CONCURRENT_UPDATE,
                                           "wallet changed concurrently")

        return self._run_standalone(
            operation, reference, wallet_id,
            lambda s: self._apply(s, operation, wallet_id, amount_minor, reference, description, actor),
        )

    def _run_standalone(self, operation: str, reference: str, wallet_id: int,
                        work: Callable[[Session], LedgerResult]) -> LedgerResult:
        """Run work in its own transaction, retrying optimistic-lock conflicts"""
        for attempt in range(1, self.max_retries + 1):
            try:
                with atomic_transaction(self.session_factory) as session:
                    result = work(session)
                if result.success and not result.duplicate:
                    wallet_cache.delete(f"wallet:{wallet_id}")
                return result
            except _VersionConflict:
                logger.info(f"🔁 LEDGER_RETRY: {operation} {reference} attempt {attempt}/{self.max_retries}")
                continue
            except IntegrityError:
                # A concurrent call with the same reference committed first
                existing = self._find_by_reference_standalone(reference)
                if existing is not None:
                    logger.info(f"♻️ LEDGER_DUPLICATE: {operation} {reference} won by concurrent writer")
                    return self._duplicate_result(operation, existing)
                logger.error(f"❌ LEDGER_INTEGRITY_ERROR: {operation} {reference}", exc_info=True)
                return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.DATABASE_ERROR,
                                           "integrity error")
            except LedgerInvariantError as e:
                logger.critical(f"🚨 INVARIANT_VIOLATION: {operation} {reference} rolled back: {e}")
                return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.INVARIANT_VIOLATION, str(e))
            except SQLAlchemyError as e:
                logger.error(f"❌ LEDGER_DATABASE_ERROR: {operation} {reference}: {e}", exc_info=True)
                return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.DATABASE_ERROR, str(e))

        logger.error(f"❌ LEDGER_CONFLICT_EXHAUSTED: {operation} {reference} after {self.max_retries} attempts")
        return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.CONCURRENT_UPDATE,
                                   f"gave up after {self.max_retries} concurrent updates")

    def _apply(self, session: Session, operation: str, wallet_id: int, amount_minor: int,
               reference: str, description: Optional[str], actor: Optional[str]) -> LedgerResult:
        tx_type, mutate = _OPERATIONS[operation]

        existing = self.find_transaction_by_reference(session, reference)
        if existing is not None:
            if existing.wallet_id != wallet_id or existing.type != tx_type.value:
                logger.error(
                    f"🚨 REFERENCE_CONFLICT: {reference} already used for {existing.type} "
                    f"on wallet {existing.wallet_id}, refused {operation} on wallet {wallet_id}"
                )
                return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.REFERENCE_CONFLICT,
                                           f"reference already used for {existing.type} on wallet {existing.wallet_id}")
            logger.info(f"♻️ LEDGER_DUPLICATE: {operation} {reference} already applied as tx {existing.id}")
            return self._duplicate_result(operation, existing)

        wallet = self._lock_wallet(session, wallet_id)
        if wallet is None:
            return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.WALLET_NOT_FOUND,
                                       f"wallet {wallet_id} not found")

        before = wallet_snapshot(wallet)
        if not wallet.invariant_holds():
            logger.critical(
                f"🚨 INVARIANT_VIOLATION: wallet {wallet_id} balance={wallet.balance_minor} "
                f"available={wallet.available_minor} frozen={wallet.frozen_minor} before {operation} {reference}"
            )
            audit_trail.record(session, actor, "ledger.invariant_violation", "wallet", wallet_id,
                               before=before, description=f"{operation} {reference} refused, reconciliation required")
            return LedgerResult.failed(operation, reference, wallet_id, LedgerFailure.INVARIANT_VIOLATION,
                                       "wallet invariant broken before operation; reconciliation required")

        new_values, failure = mutate(wallet.balance_minor, wallet.available_minor, wallet.frozen_minor, amount_minor)
        if failure is not None:
            logger.info(
                f"🚫 LEDGER_REJECTED: {operation} {format_naira(amount_minor)} on wallet {wallet_id}: {failure.value}"
            )
            result = LedgerResult.failed(operation, reference, wallet_id, failure,
                                         f"{failure.value} for {operation} of {amount_minor}")
            result.balance_minor = wallet.balance_minor
            result.available_minor = wallet.available_minor
            result.frozen_minor = wallet.frozen_minor
            return result

        new_balance, new_available, new_frozen = new_values
        if new_balance != new_available + new_frozen or min(new_values) < 0:
            raise LedgerInvariantError(f"computed state {new_values} for {operation} breaks the wallet invariant")

        if not versioned_update(session, Wallet, wallet_id, wallet.version, {
            "balance_minor": new_balance,
            "available_minor": new_available,
            "frozen_minor": new_frozen,
            "updated_at": get_naive_utc_now(),
        }):
            raise _VersionConflict()

        entry = WalletTransaction(
            wallet_id=wallet_id,
            type=tx_type.value,
            amount_minor=amount_minor,
            balance_after_minor=new_balance,
            reference=reference,
            description=description,
        )
        session.add(entry)
        session.flush()

        wallet = self._reload_wallet(session, wallet_id)
        if not wallet.invariant_holds():
            raise LedgerInvariantError(
                f"wallet {wallet_id} balance={wallet.balance_minor} available={wallet.available_minor} "
                f"frozen={wallet.frozen_minor} after {operation} {reference}"
            )

        after = wallet_snapshot(wallet)
        audit_trail.record(session, actor, f"ledger.{operation}", "wallet", wallet_id, before=before, after=after,
                           description=f"{operation} {amount_minor} ref={reference}")

        logger.info(
            f"✅ LEDGER_{operation.upper()}: wallet {wallet_id} {format_naira(amount_minor)} ref={reference} "
            f"balance={new_balance} available={new_available} frozen={new_frozen}"
        )
        return LedgerResult(
            success=True,
            operation=operation,
            reference=reference,
            wallet_id=wallet_id,
            transaction_id=entry.id,
            amount_minor=amount_minor,
            balance_minor=new_balance,
            available_minor=new_available,
            frozen_minor=new_frozen,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def recompute_balance(self, wallet_id: int, actor: Optional[str] = None, reason: Optional[str] = None,
                          session: Optional[Session] = None) -> LedgerResult:
        """
        Restore balance = available + frozen, recording the correction as an
        adjustment entry plus an audit record. No-op when the wallet is consistent.
        """
        if session is not None:
            try:
                return self._recompute(session, wallet_id, actor, reason)
            except _VersionConflict:
                return LedgerResult.failed("recompute", "", wallet_id, LedgerFailure.CONCURRENT_UPDATE,
                                           "wallet changed concurrently")
        return self._run_standalone("recompute", f"RECONCILE_{wallet_id}", wallet_id,
                                    lambda s: self._recompute(s, wallet_id, actor, reason))

    def _recompute(self, session: Session, wallet_id: int, actor: Optional[str], reason: Optional[str]) -> LedgerResult:
        wallet = self._lock_wallet(session, wallet_id)
        if wallet is None:
            return LedgerResult.failed("recompute", "", wallet_id, LedgerFailure.WALLET_NOT_FOUND,
                                       f"wallet {wallet_id} not found")

        expected = wallet.available_minor + wallet.frozen_minor
        drift = expected - wallet.balance_minor
        if drift == 0:
            return LedgerResult(success=True, operation="recompute", reference="", wallet_id=wallet_id,
                                balance_minor=wallet.balance_minor, available_minor=wallet.available_minor,
                                frozen_minor=wallet.frozen_minor, message="no drift")

        # Unique per wallet version, so two sweeps racing on the same drift write one entry
        reference = f"RECONCILE_{wallet_id}_V{wallet.version}"
        existing = self.find_transaction_by_reference(session, reference)
        if existing is not None:
            return self._duplicate_result("recompute", existing)

        before = wallet_snapshot(wallet)
        if not versioned_update(session, Wallet, wallet_id, wallet.version, {
            "balance_minor": expected,
            "updated_at": get_naive_utc_now(),
        }):
            raise _VersionConflict()

        session.add(WalletTransaction(
            wallet_id=wallet_id,
            type=WalletTransactionType.ADJUSTMENT.value,
            amount_minor=abs(drift),
            balance_after_minor=expected,
            reference=reference,
            description=f"balance drift {drift:+d} corrected: {reason or 'reconciliation'}",
        ))
        session.flush()

        wallet = self._reload_wallet(session, wallet_id)
        after = wallet_snapshot(wallet)
        audit_trail.record(session, actor, "ledger.recompute_balance", "wallet", wallet_id, before=before,
                           after=after, description=f"drift {drift:+d}; {reason or 'reconciliation'}")
        logger.warning(
            f"🔧 BALANCE_DRIFT_CORRECTED: wallet {wallet_id} balance {before['balance_minor']} -> {expected} "
            f"(drift {drift:+d}) by {actor or SYSTEM_ACTOR}"
        )
        return LedgerResult(success=True, operation="recompute", reference=reference, wallet_id=wallet_id,
                            amount_minor=abs(drift), adjustment_minor=drift, balance_minor=expected,
                            available_minor=wallet.available_minor, frozen_minor=wallet.frozen_minor)

    def find_drifted_wallets(self, limit: Optional[int] = None) -> List[int]:
        with self.session_factory() as session:
            stmt = select(Wallet.id).where(
                Wallet.balance_minor != Wallet.available_minor + Wallet.frozen_minor
            ).order_by(Wallet.id)
            if limit:
                stmt = stmt.limit(limit)
            return list(session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Wallet lifecycle and reads
    # ------------------------------------------------------------------

    def get_or_create_wallet(self, vendor_id: str, session: Optional[Session] = None) -> Optional[int]:
        """Wallet id for the vendor, creating an empty wallet on first use"""
        if session is not None:
            return self._get_or_create(session, vendor_id)
        try:
            with atomic_transaction(self.session_factory) as own_session:
                return self._get_or_create(own_session, vendor_id)
        except IntegrityError:
            # Lost the creation race, the other writer's wallet is the one
            with self.session_factory() as own_session:
                return self.get_wallet_id(own_session, vendor_id)

    def _get_or_create(self, session: Session, vendor_id: str) -> Optional[int]:
        wallet_id = self.get_wallet_id(session, vendor_id)
        if wallet_id is not None:
            return wallet_id
        if session.get(Vendor, vendor_id) is None:
            logger.warning(f"⚠️ WALLET_CREATE_REFUSED: unknown vendor {vendor_id}")
            return None
        wallet = Wallet(vendor_id=vendor_id, balance_minor=0, available_minor=0, frozen_minor=0, version=1)
        session.add(wallet)
        session.flush()
        audit_trail.record(session, SYSTEM_ACTOR, "ledger.wallet_created", "wallet", wallet.id,
                           after=wallet_snapshot(wallet))
        logger.info(f"🆕 WALLET_CREATED: wallet {wallet.id} for vendor {vendor_id}")
        return wallet.id

    @staticmethod
    def get_wallet_id(session: Session, vendor_id: str) -> Optional[int]:
        return session.execute(select(Wallet.id).where(Wallet.vendor_id == vendor_id)).scalar_one_or_none()

    def find_wallet_id(self, vendor_id: str) -> Optional[int]:
        with self.session_factory() as session:
            return self.get_wallet_id(session, vendor_id)

    def get_wallet_snapshot(self, wallet_id: int, use_cache: bool = True) -> Optional[Dict[str, Any]]:
        """Balance display read path. Never use the result to decide a mutation."""
        def load():
            with self.session_factory() as session:
                wallet = session.get(Wallet, wallet_id)
                return wallet_snapshot(wallet) if wallet is not None else None

        if not use_cache:
            return load()
        return wallet_cache.get_or_load(f"wallet:{wallet_id}", load)

    def invalidate_cache(self, wallet_id: int) -> None:
        wallet_cache.delete(f"wallet:{wallet_id}")

    def list_transactions(self, wallet_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            rows = session.execute(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet_id)
                .order_by(WalletTransaction.id.desc())
                .limit(limit)
            ).scalars()
            return [
                {
                    "id": tx.id,
                    "type": tx.type,
                    "amount_minor": tx.amount_minor,
                    "balance_after_minor": tx.balance_after_minor,
                    "reference": tx.reference,
                    "description": tx.description,
                    "created_at": tx.created_at.isoformat(),
                }
                for tx in rows
            ]

    @staticmethod
    def find_transaction_by_reference(session: Session, reference: str) -> Optional[WalletTransaction]:
        return session.execute(
            select(WalletTransaction).where(WalletTransaction.reference == reference)
        ).scalar_one_or_none()

    def _find_by_reference_standalone(self, reference: str) -> Optional[WalletTransaction]:
        with self.session_factory() as session:
            return self.find_transaction_by_reference(session, reference)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_wallet(session: Session, wallet_id: int) -> Optional[Wallet]:
        return session.execute(
            select(Wallet)
            .where(Wallet.id == wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _reload_wallet(session: Session, wallet_id: int) -> Wallet:
        return session.execute(
            select(Wallet).where(Wallet.id == wallet_id).execution_options(populate_existing=True)
        ).scalar_one()

    def _duplicate_result(self, operation: str, entry: WalletTransaction) -> LedgerResult:
        return LedgerResult(
            success=True,
            operation=operation,
            reference=entry.reference,
            wallet_id=entry.wallet_id,
            duplicate=True,
            transaction_id=entry.id,
            amount_minor=entry.amount_minor,
            balance_minor=entry.balance_after_minor,
            message="reference already applied",
        )


escrow_ledger = EscrowLedger()
