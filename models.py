"""
Salvage Escrow Settlement - Database Schema
==========================================

Schema for the escrow ledger and auction settlement core:
- Per-vendor escrow wallets with an append-only transaction log
- Salvage auctions, bids and the payment opened for each winner
- Fraud flags with append-only review decisions
- Audit trail and inbound webhook idempotency ledger

All money columns hold integer minor units (kobo). No floating point.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, BigInteger, String, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class VendorStatus(Enum):
    """Vendor account status"""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class VendorTier(Enum):
    """KYC tier, decides the per-bid limit"""
    TIER1_BVN = "tier1_bvn"
    TIER2_FULL = "tier2_full"


class WalletTransactionType(Enum):
    """Ledger entry kinds"""
    CREDIT = "credit"
    DEBIT = "debit"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"
    ADJUSTMENT = "adjustment"  # Drift correction from reconciliation


class AuctionStatus(Enum):
    """Auction lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class BidStatus(Enum):
    VALID = "valid"
    CANCELLED = "cancelled"


class PaymentMethod(Enum):
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"
    BANK_TRANSFER = "bank_transfer"
    ESCROW_WALLET = "escrow_wallet"


class PaymentStatus(Enum):
    """Payment lifecycle: pending -> verified | rejected | overdue"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    OVERDUE = "overdue"


class EscrowStatus(Enum):
    NONE = "none"
    FROZEN = "frozen"
    RELEASED = "released"


class PayoutStatus(Enum):
    NONE = "none"
    PENDING = "pending"
    INITIATED = "initiated"
    FAILED = "failed"


class FraudReviewDecision(Enum):
    CONFIRMED = "confirmed"
    DISMISSED = "dismissed"


class WebhookEventStatus(Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    IGNORED = "ignored"
    FAILED = "failed"


# ============================================================================
# VENDORS
# ============================================================================

class Vendor(Base):
    """Projection of the vendor account needed for bidding and enforcement"""
    __tablename__ = 'vendors'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=VendorStatus.ACTIVE.value, nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(20), default=VendorTier.TIER1_BVN.value, nullable=False)
    suspended_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    suspension_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet", back_populates="vendor", uselist=False)


# ============================================================================
# WALLET LEDGER
# ============================================================================

class Wallet(Base):
    """Escrow wallet, one per vendor. balance == available + frozen."""
    __tablename__ = 'escrow_wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), ForeignKey('vendors.id'), unique=True, nullable=False)

    balance_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    available_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    frozen_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Optimistic lock column, bumped by every ledger mutation
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    vendor: Mapped["Vendor"] = relationship("Vendor", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('available_minor >= 0', name='ck_escrow_wallet_available_positive'),
        CheckConstraint('frozen_minor >= 0', name='ck_escrow_wallet_frozen_positive'),
    )

    def invariant_holds(self) -> bool:
        return self.balance_minor == self.available_minor + self.frozen_minor


class WalletTransaction(Base):
    """Immutable ledger entry. reference is the caller's idempotency key."""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(Integer, ForeignKey('escrow_wallets.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('amount_minor > 0', name='ck_wallet_tx_amount_positive'),
        Index('ix_wallet_tx_wallet_created', 'wallet_id', 'created_at'),
    )


# ============================================================================
# AUCTIONS
# ============================================================================

class Auction(Base):
    """Salvage auction, one per case (plus relists)"""
    __tablename__ = 'auctions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    original_end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    extension_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    current_bid_minor: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    current_bidder_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    minimum_increment_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=AuctionStatus.ACTIVE.value, nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    relisted_from_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('auctions.id'), nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    bids: Mapped[list["Bid"]] = relationship("Bid", back_populates="auction", order_by="Bid.id")

    __table_args__ = (
        CheckConstraint('end_time >= original_end_time', name='ck_auction_end_not_before_original'),
        CheckConstraint('minimum_increment_minor > 0', name='ck_auction_increment_positive'),
        Index('ix_auctions_status_end', 'status', 'end_time'),
    )


class Bid(Base):
    """Bid record. Amounts never change; the fraud sweep may cancel it."""
    __tablename__ = 'bids'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auction_id: Mapped[int] = mapped_column(Integer, ForeignKey('auctions.id'), nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(64), ForeignKey('vendors.id'), nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    otp_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=BidStatus.VALID.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    auction: Mapped["Auction"] = relationship("Auction", back_populates="bids")

    __table_args__ = (
        CheckConstraint('amount_minor > 0', name='ck_bid_amount_positive'),
        Index('ix_bids_auction_amount', 'auction_id', 'amount_minor'),
    )


class Payment(Base):
    """Payment opened for an auction winner. One non-rejected row per auction."""
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auction_id: Mapped[int] = mapped_column(Integer, ForeignKey('auctions.id'), nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(64), ForeignKey('vendors.id'), nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    payment_proof_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    escrow_status: Mapped[str] = mapped_column(String(20), default=EscrowStatus.NONE.value, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    auto_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payment_deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    overdue_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    forfeited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    payout_status: Mapped[str] = mapped_column(String(20), default=PayoutStatus.NONE.value, nullable=False)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('amount_minor > 0', name='ck_payment_amount_positive'),
        Index('ix_payments_status_deadline', 'status', 'payment_deadline'),
    )


# ============================================================================
# FRAUD
# ============================================================================

class FraudFlag(Base):
    """Append-only record of a suspicious bidding pattern"""
    __tablename__ = 'fraud_flags'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vendor_id: Mapped[str] = mapped_column(String(64), ForeignKey('vendors.id'), nullable=False, index=True)
    auction_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('auctions.id'), nullable=True)
    pattern: Mapped[str] = mapped_column(String(50), nullable=False)
    evidence: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    reviews: Mapped[list["FraudFlagReview"]] = relationship(
        "FraudFlagReview", back_populates="flag", order_by="FraudFlagReview.id"
    )


class FraudFlagReview(Base):
    """Reviewer decision on a flag. The latest review is authoritative."""
    __tablename__ = 'fraud_flag_reviews'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    flag_id: Mapped[int] = mapped_column(Integer, ForeignKey('fraud_flags.id'), nullable=False, index=True)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    reviewer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    justification: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    flag: Mapped["FraudFlag"] = relationship("FraudFlag", back_populates="reviews")


# ============================================================================
# AUDIT & WEBHOOKS
# ============================================================================

class AuditLog(Base):
    """System audit trail for compliance and debugging"""
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    before_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    after_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_audit_entity_id', 'entity_type', 'entity_id'),
        Index('ix_audit_created', 'created_at'),
    )


class WebhookEvent(Base):
    """Inbound gateway delivery ledger for webhook idempotency"""
    __tablename__ = 'webhook_events'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    event_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WebhookEventStatus.PROCESSING.value, nullable=False)
    payload_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('provider', 'event_reference', name='uq_webhook_event_provider_reference'),
    )
