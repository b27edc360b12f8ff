"""
audit_service.py — Audit trail of stamping events.

Events written to the audit_log table:
    stamp.succeeded     stamp.failed     stamp.cancelled
    record.created      record.resubmitted
"""

import logging
from typing import Any, Optional

logger = logging.getLogger("audit_service")

STAMP_SUCCEEDED = "stamp.succeeded"
STAMP_FAILED = "stamp.failed"
STAMP_CANCELLED = "stamp.cancelled"
RECORD_CREATED = "record.created"
RECORD_RESUBMITTED = "record.resubmitted"

ENTITY_CFDI = "mx_cfdi_record"


async def log_action(
    supabase: Any,
    company_id: str,
    action: str,
    entity_id: Optional[str] = None,
    entity_type: str = ENTITY_CFDI,
    details: Optional[dict] = None,
    user_id: Optional[str] = None,
) -> None:
    """Log an action to the audit trail. Non-blocking — never raises."""
    try:
        supabase.table("audit_log").insert({
            "company_id": company_id,
            "user_id": user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details or {},
        }).execute()
    except Exception as e:
        logger.error(f"Audit log error ({action}, {entity_id}): {e}")
