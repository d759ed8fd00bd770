"""
Operator routes: manual payment review, force-confirm, balance recompute,
fraud flag review and auction overrides. Authentication is a shared admin
token; operator identity is carried in the request body for the audit trail.
"""

import asyncio
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from config import Config
from jobs.wallet_reconciliation_job import WalletReconciliationJob
from models import FraudReviewDecision
from services.auction_state_machine import AuctionStateMachine, AuctionActionFailure, auction_state_machine
from services.escrow_ledger import EscrowLedger, LedgerFailure, escrow_ledger
from services.fraud_detection_service import FraudDetectionService
from services.payment_reconciliation import (
    PaymentReconciliationService, PaymentActionError, PaymentActionResult, payment_reconciliation,
)

logger = logging.getLogger(__name__)


def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    if not Config.ADMIN_API_TOKEN:
        logger.error("❌ ADMIN_API_TOKEN not configured, operator routes disabled")
        raise HTTPException(status_code=503, detail="Operator API not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), Config.ADMIN_API_TOKEN.encode()):
        logger.warning("🚨 ADMIN_AUTH_FAILED: invalid operator token")
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


def get_reconciliation_service() -> PaymentReconciliationService:
    return payment_reconciliation


def get_ledger() -> EscrowLedger:
    return escrow_ledger


def get_auctions() -> AuctionStateMachine:
    return auction_state_machine


def get_fraud_service() -> FraudDetectionService:
    return auction_state_machine.fraud_detector


class PaymentReviewRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1)
    approve: bool
    comment: Optional[str] = None


class ForceConfirmRequest(BaseModel):
    operator_id: str = Field(..., min_length=1)
    justification: str


class RecomputeRequest(BaseModel):
    operator_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class FraudReviewRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1)
    decision: FraudReviewDecision
    justification: Optional[str] = None


class AuctionOverrideRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    relist: Optional[bool] = None


_PAYMENT_ERROR_STATUS = {
    PaymentActionError.NOT_FOUND: 404,
    PaymentActionError.FORBIDDEN: 403,
    PaymentActionError.INVALID_INPUT: 422,
    PaymentActionError.JUSTIFICATION_TOO_SHORT: 422,
    PaymentActionError.INVALID_STATE: 409,
    PaymentActionError.AMOUNT_MISMATCH: 409,
    PaymentActionError.LEDGER_FAILURE: 409,
    PaymentActionError.DATABASE_ERROR: 500,
}

_AUCTION_FAILURE_STATUS = {
    AuctionActionFailure.NOT_FOUND: 404,
    AuctionActionFailure.INVALID_INPUT: 422,
    AuctionActionFailure.DATABASE_ERROR: 500,
}


def _payment_response(result: PaymentActionResult) -> dict:
    if not result.success:
        raise HTTPException(status_code=_PAYMENT_ERROR_STATUS.get(result.error, 400), detail=result.message)
    return {
        "payment_id": result.payment_id,
        "status": result.status,
        "already_verified": result.already_verified,
        "replacement_payment_id": result.replacement_payment_id,
        "settled": result.settled,
        "message": result.message,
    }


@router.post("/payments/{payment_id}/review")
async def review_payment(payment_id: int, body: PaymentReviewRequest,
                         service: PaymentReconciliationService = Depends(get_reconciliation_service)):
    result = await asyncio.to_thread(service.review_manual_payment, payment_id, body.reviewer_id,
                                     body.approve, body.comment)
    return _payment_response(result)


@router.post("/payments/{payment_id}/force-confirm")
async def force_confirm_payment(payment_id: int, body: ForceConfirmRequest,
                                service: PaymentReconciliationService = Depends(get_reconciliation_service)):
    result = await asyncio.to_thread(service.force_confirm_payment, payment_id, body.operator_id,
                                     body.justification)
    return _payment_response(result)


@router.get("/wallets/{wallet_id}")
async def get_wallet(wallet_id: int, ledger: EscrowLedger = Depends(get_ledger)):
    snapshot = await asyncio.to_thread(ledger.get_wallet_snapshot, wallet_id, False)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Wallet not found")
    snapshot["transactions"] = await asyncio.to_thread(ledger.list_transactions, wallet_id)
    return snapshot


@router.post("/wallets/{wallet_id}/recompute")
async def recompute_wallet(wallet_id: int, body: RecomputeRequest, ledger: EscrowLedger = Depends(get_ledger)):
    result = await asyncio.to_thread(ledger.recompute_balance, wallet_id, body.operator_id, body.reason)
    if not result.success:
        status = 404 if result.failure == LedgerFailure.WALLET_NOT_FOUND else 409
        raise HTTPException(status_code=status, detail=result.message)
    return result.to_dict()


@router.post("/wallets/reconcile")
async def reconcile_wallets(ledger: EscrowLedger = Depends(get_ledger)):
    result = await asyncio.to_thread(WalletReconciliationJob(ledger).run)
    return result.get_summary()


@router.post("/fraud-flags/{flag_id}/review")
async def review_fraud_flag(flag_id: int, body: FraudReviewRequest,
                            fraud: FraudDetectionService = Depends(get_fraud_service)):
    result = await asyncio.to_thread(fraud.review_flag, flag_id, body.reviewer_id, body.decision,
                                     body.justification)
    if not result.success:
        status = 404 if result.error == "flag not found" else 422
        raise HTTPException(status_code=status, detail=result.error)
    return {"flag_id": result.flag_id, "decision": result.decision}


@router.post("/auctions/{auction_id}/cancel")
async def cancel_auction(auction_id: int, body: AuctionOverrideRequest,
                         auctions: AuctionStateMachine = Depends(get_auctions)):
    result = await asyncio.to_thread(auctions.cancel_auction, auction_id, body.actor, body.reason)
    if not result.success:
        raise HTTPException(status_code=_AUCTION_FAILURE_STATUS.get(result.failure, 409), detail=result.message)
    return {"auction_id": auction_id, "status": result.to_status}


@router.post("/auctions/{auction_id}/forfeit")
async def forfeit_auction(auction_id: int, body: AuctionOverrideRequest,
                          auctions: AuctionStateMachine = Depends(get_auctions)):
    result = await asyncio.to_thread(auctions.forfeit_auction, auction_id, body.actor, body.reason, body.relist)
    if not result.success:
        raise HTTPException(status_code=_AUCTION_FAILURE_STATUS.get(result.failure, 409), detail=result.message)
    return {"auction_id": auction_id, "status": result.to_status,
            "relisted_auction_id": result.relisted_auction_id, "unfrozen_minor": result.unfrozen_minor}
