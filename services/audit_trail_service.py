"""
Audit Trail Service
One audit record per state-changing operation, written in the caller's transaction
"""

import logging
from typing import Dict, Any, Optional

import orjson
from sqlalchemy.orm import Session

from config import Config
from models import AuditLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditTrailService:
    """Service for the append-only audit trail"""

    def __init__(self, log_file: Optional[str] = None):
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)

        log_file = log_file or Config.AUDIT_LOG_FILE
        if log_file and not any(
            isinstance(h, logging.FileHandler) and h.baseFilename.endswith(log_file)
            for h in self.audit_logger.handlers
        ):
            audit_handler = logging.FileHandler(log_file)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
            self.audit_logger.addHandler(audit_handler)

    def record(
        self,
        session: Session,
        actor: Optional[str],
        action: str,
        entity_type: str,
        entity_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLog:
        """Add an audit row to the session. Commits with the caller's transaction."""
        entry = AuditLog(
            actor=actor or SYSTEM_ACTOR,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            before_state=before,
            after_state=after,
            description=description,
        )
        session.add(entry)

        self.audit_logger.info(
            orjson.dumps(
                {
                    "actor": entry.actor,
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": entry.entity_id,
                    "before": before,
                    "after": after,
                    "description": description,
                },
                default=str,
            ).decode()
        )
        return entry


audit_trail = AuditTrailService()
