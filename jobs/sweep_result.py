"""Result object shared by the enforcement sweeps"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class SweepResult:
    """Per-item outcome counts for one sweep run"""

    def __init__(self, name: str):
        self.name = name
        self.started_at: datetime = get_naive_utc_now()
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.execution_time_ms = 0
        self.details: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []

    def add_success(self, item_id: Any, action: str, details: Optional[Dict[str, Any]] = None):
        self.processed += 1
        self.succeeded += 1
        self.details.append({"item_id": item_id, "action": action, **(details or {})})

    def add_skip(self, item_id: Any, reason: str):
        self.processed += 1
        self.skipped += 1
        self.details.append({"item_id": item_id, "action": "skipped", "reason": reason})

    def add_failure(self, item_id: Any, error: str):
        self.processed += 1
        self.failed += 1
        self.errors.append({"item_id": item_id, "error": error})
        logger.error(f"❌ {self.name.upper()}_ITEM_FAILED: {item_id}: {error}")

    def finish(self) -> "SweepResult":
        self.execution_time_ms = int((get_naive_utc_now() - self.started_at).total_seconds() * 1000)
        if self.processed:
            logger.info(
                f"🧹 {self.name.upper()}_COMPLETE: processed {self.processed}, succeeded {self.succeeded}, "
                f"failed {self.failed}, skipped {self.skipped} in {self.execution_time_ms}ms"
            )
        return self

    def get_summary(self) -> Dict[str, Any]:
        return {
            "sweep": self.name,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
            "errors": self.errors[:20],
        }
