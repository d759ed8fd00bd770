"""Vendor tier lookups used by bid validation (KYC itself lives elsewhere)"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import SessionLocal
from models import Vendor, VendorTier

logger = logging.getLogger(__name__)

TIER_LIMITS_MINOR = {
    VendorTier.TIER1_BVN.value: Config.TIER1_BID_LIMIT_MINOR,
    VendorTier.TIER2_FULL.value: None,  # unlimited
}


class VendorTierService:
    """Answers how much a vendor may bid"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    def get_vendor_tier_limit(self, vendor_id: str, session: Optional[Session] = None) -> Optional[int]:
        """Maximum bid in kobo for the vendor's tier. None means no limit, 0 means cannot bid."""
        if session is not None:
            return self._lookup(session, vendor_id)
        with self.session_factory() as own_session:
            return self._lookup(own_session, vendor_id)

    def _lookup(self, session: Session, vendor_id: str) -> Optional[int]:
        tier = session.execute(select(Vendor.tier).where(Vendor.id == vendor_id)).scalar_one_or_none()
        if tier is None:
            logger.warning(f"⚠️ TIER_LOOKUP: unknown vendor {vendor_id}")
            return 0
        if tier not in TIER_LIMITS_MINOR:
            logger.warning(f"⚠️ TIER_LOOKUP: vendor {vendor_id} has unrecognised tier {tier}")
            return 0
        return TIER_LIMITS_MINOR[tier]
