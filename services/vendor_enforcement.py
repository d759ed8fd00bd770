"""Vendor suspension used by the enforcement sweeps"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Vendor, VendorStatus
from services.audit_trail_service import audit_trail

logger = logging.getLogger(__name__)


def suspend_vendor(session: Session, vendor_id: str, until: Optional[datetime], reason: str,
                   actor: Optional[str], now: datetime) -> bool:
    """
    Conditionally suspend an active vendor inside the caller's transaction.

    Returns False when the vendor was already suspended (or unknown), so two
    sweeps racing on the same vendor produce exactly one suspension.
    """
    outcome = session.execute(
        update(Vendor)
        .where(Vendor.id == vendor_id, Vendor.status == VendorStatus.ACTIVE.value)
        .values(status=VendorStatus.SUSPENDED.value, suspended_until=until,
                suspension_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        return False

    audit_trail.record(
        session, actor, "vendor.suspended", "vendor", vendor_id,
        before={"status": VendorStatus.ACTIVE.value},
        after={"status": VendorStatus.SUSPENDED.value,
               "suspended_until": until.isoformat() if until else None},
        description=reason,
    )
    logger.warning(f"⛔ VENDOR_SUSPENDED: {vendor_id} until {until.isoformat() if until else 'further notice'}: {reason}")
    return True
