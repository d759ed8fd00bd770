"""Nightly wallet reconciliation: restore balance == available + frozen where it drifted"""

import asyncio
import logging
from typing import Any, Dict, Optional

from jobs.sweep_result import SweepResult
from services.audit_trail_service import SYSTEM_ACTOR
from services.escrow_ledger import EscrowLedger

logger = logging.getLogger(__name__)


class WalletReconciliationJob:

    def __init__(self, ledger: Optional[EscrowLedger] = None):
        self.ledger = ledger or EscrowLedger()

    def run(self) -> SweepResult:
        result = SweepResult("wallet_reconciliation")
        for wallet_id in self.ledger.find_drifted_wallets():
            try:
                correction = self.ledger.recompute_balance(wallet_id, actor=SYSTEM_ACTOR,
                                                           reason="scheduled reconciliation")
            except Exception as e:
                logger.error(f"❌ WALLET_RECONCILIATION_ERROR: wallet {wallet_id}: {e}", exc_info=True)
                result.add_failure(wallet_id, str(e))
                continue
            if not correction.success:
                result.add_failure(wallet_id, correction.message or str(correction.failure))
            elif correction.adjustment_minor:
                result.add_success(wallet_id, "corrected", {"drift_minor": correction.adjustment_minor})
            else:
                result.add_skip(wallet_id, "no drift")

        if result.succeeded:
            logger.critical(f"🚨 WALLET_DRIFT_CORRECTED: {result.succeeded} wallet(s) needed a balance correction")
        return result.finish()


async def run_wallet_reconciliation() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await asyncio.to_thread(WalletReconciliationJob().run)
    return result.get_summary()
