"""
Payment gateway webhook routes

The raw body is read once and handed to the reconciliation service untouched,
so the signature is checked over exactly the bytes the gateway signed.
Duplicates are acknowledged with 200 because gateways retry anything else.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from config import Config
from services.payment_reconciliation import PaymentReconciliationService, WebhookOutcome, payment_reconciliation
from services.webhook_security_service import WebhookProvider, MAX_WEBHOOK_BODY_BYTES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_reconciliation_service() -> PaymentReconciliationService:
    return payment_reconciliation


async def _process(service: PaymentReconciliationService, provider: WebhookProvider,
                   request: Request, signature: Optional[str]) -> dict:
    raw_body = await request.body()
    if len(raw_body) > MAX_WEBHOOK_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    try:
        outcome: WebhookOutcome = await asyncio.wait_for(
            asyncio.to_thread(service.handle_gateway_webhook, provider, raw_body, signature),
            timeout=Config.WEBHOOK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        # The worker thread may still commit; a gateway retry then lands as a duplicate
        logger.error(f"⏱️ WEBHOOK_TIMEOUT: {provider.value} exceeded {Config.WEBHOOK_TIMEOUT_SECONDS}s")
        raise HTTPException(status_code=504, detail="Processing timed out, retry later")

    logger.info(f"📥 WEBHOOK_{provider.value.upper()}: {outcome.status.value} "
                f"ref={outcome.reference} reason={outcome.reason}")
    if outcome.http_status >= 400:
        raise HTTPException(status_code=outcome.http_status, detail=outcome.reason or outcome.status.value)
    return {"status": "success", "result": outcome.status.value, "reference": outcome.reference}


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None, alias="x-paystack-signature"),
    service: PaymentReconciliationService = Depends(get_reconciliation_service),
):
    return await _process(service, WebhookProvider.PAYSTACK, request, x_paystack_signature)


@router.post("/flutterwave")
async def flutterwave_webhook(
    request: Request,
    verif_hash: Optional[str] = Header(None, alias="verif-hash"),
    service: PaymentReconciliationService = Depends(get_reconciliation_service),
):
    return await _process(service, WebhookProvider.FLUTTERWAVE, request, verif_hash)
