"""
Vendor-facing routes: bidding, payment status and proof upload, wallet top-up.

Vendor identity arrives in X-Vendor-Id from the upstream session layer.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from services.auction_state_machine import AuctionStateMachine, BidRejection, auction_state_machine
from services.escrow_ledger import EscrowLedger, escrow_ledger
from services.payment_initiation_service import PaymentInitiationService, payment_initiation
from services.payment_reconciliation import (
    PaymentReconciliationService, PaymentActionError, payment_reconciliation,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["vendors"])


def get_auctions() -> AuctionStateMachine:
    return auction_state_machine


def get_reconciliation_service() -> PaymentReconciliationService:
    return payment_reconciliation


def get_payment_initiation() -> PaymentInitiationService:
    return payment_initiation


def get_ledger() -> EscrowLedger:
    return escrow_ledger


class BidRequest(BaseModel):
    amount_minor: int = Field(..., gt=0)
    otp_verified: bool = False


class ProofRequest(BaseModel):
    proof_url: str = Field(..., min_length=1)


class CheckoutRequest(BaseModel):
    email: str = Field(..., min_length=3)


class FundingRequest(CheckoutRequest):
    amount_minor: int = Field(..., gt=0)


_BID_REJECTION_STATUS = {
    BidRejection.AUCTION_NOT_FOUND: 404,
    BidRejection.VENDOR_NOT_FOUND: 404,
    BidRejection.VENDOR_SUSPENDED: 403,
    BidRejection.VERIFICATION_REQUIRED: 403,
    BidRejection.CONCURRENT_UPDATE: 409,
    BidRejection.DATABASE_ERROR: 500,
}


@router.get("/auctions/{auction_id}")
async def get_auction(auction_id: int, auctions: AuctionStateMachine = Depends(get_auctions)):
    snapshot = await asyncio.to_thread(auctions.get_auction_snapshot, auction_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Auction not found")
    return snapshot


@router.post("/auctions/{auction_id}/bids")
async def place_bid(auction_id: int, body: BidRequest, request: Request,
                    x_vendor_id: str = Header(..., alias="X-Vendor-Id"),
                    auctions: AuctionStateMachine = Depends(get_auctions)):
    ip_address = request.client.host if request.client else None
    result = await asyncio.to_thread(auctions.place_bid, auction_id, x_vendor_id, body.amount_minor,
                                     ip_address, body.otp_verified)
    if not result.accepted:
        # Business rejections are a normal answer for the bidder, with the reason
        status = _BID_REJECTION_STATUS.get(result.rejection, 422)
        raise HTTPException(status_code=status, detail={
            "reason": result.rejection.value,
            "message": result.message,
            "current_bid_minor": result.current_bid_minor,
            "minimum_next_bid_minor": result.minimum_next_bid_minor,
        })
    return {
        "bid_id": result.bid_id,
        "current_bid_minor": result.current_bid_minor,
        "minimum_next_bid_minor": result.minimum_next_bid_minor,
        "end_time": result.end_time.isoformat() if result.end_time else None,
        "extended": result.extended,
        "extension_count": result.extension_count,
    }


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: int, x_vendor_id: str = Header(..., alias="X-Vendor-Id"),
                      service: PaymentReconciliationService = Depends(get_reconciliation_service)):
    payment = await asyncio.to_thread(service.get_payment, payment_id)
    if payment is None or payment["vendor_id"] != x_vendor_id:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


@router.post("/payments/{payment_id}/proof")
async def upload_proof(payment_id: int, body: ProofRequest, x_vendor_id: str = Header(..., alias="X-Vendor-Id"),
                       service: PaymentReconciliationService = Depends(get_reconciliation_service)):
    result = await asyncio.to_thread(service.upload_payment_proof, payment_id, x_vendor_id, body.proof_url)
    if not result.success:
        status = {PaymentActionError.NOT_FOUND: 404, PaymentActionError.FORBIDDEN: 404}.get(result.error, 409)
        raise HTTPException(status_code=status, detail=result.message)
    return {"payment_id": payment_id, "status": result.status, "message": result.message}


@router.post("/payments/{payment_id}/checkout")
async def start_checkout(payment_id: int, body: CheckoutRequest, x_vendor_id: str = Header(..., alias="X-Vendor-Id"),
                         initiation: PaymentInitiationService = Depends(get_payment_initiation)):
    result = await initiation.start_auction_payment(payment_id, x_vendor_id, body.email)
    if not result.success:
        raise HTTPException(status_code=409, detail=result.error)
    return {"reference": result.reference, "authorization_url": result.authorization_url}


@router.post("/wallet/fund")
async def fund_wallet(body: FundingRequest, x_vendor_id: str = Header(..., alias="X-Vendor-Id"),
                      initiation: PaymentInitiationService = Depends(get_payment_initiation)):
    result = await initiation.fund_wallet(x_vendor_id, body.email, body.amount_minor)
    if not result.success:
        raise HTTPException(status_code=422, detail=result.error)
    return {"reference": result.reference, "authorization_url": result.authorization_url,
            "amount_minor": result.amount_minor}


@router.get("/wallet")
async def get_wallet(x_vendor_id: str = Header(..., alias="X-Vendor-Id"), ledger: EscrowLedger = Depends(get_ledger)):
    wallet_id = await asyncio.to_thread(ledger.find_wallet_id, x_vendor_id)
    if wallet_id is None:
        raise HTTPException(status_code=404, detail="Wallet not found")
    return await asyncio.to_thread(ledger.get_wallet_snapshot, wallet_id)
