import logging
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi.encoders import jsonable_encoder

from poscore.models.audit import AuditLog

log = logging.getLogger(__name__)


async def record_audit(
    user_id: Optional[str],
    restaurant_id: Optional[UUID],
    entity_type: str,
    entity_id: Optional[UUID],
    action: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Fire-and-forget append to the audit trail. A failure here is logged and
    never propagates into the operation being audited.
    """
    try:
        await AuditLog.create(
            user_id=user_id,
            restaurant_id=restaurant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            # Decimals and UUIDs are not JSON-native
            details=jsonable_encoder(details) if details is not None else None,
        )
    except Exception:
        log.exception(f"Audit write failed: {action} on {entity_type} {entity_id}")
