from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from almoxarifado.models import AuditLog, User

LOGGER = logging.getLogger(__name__)


def log_event(
    db: Session,
    user: Optional[User],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
) -> None:
    """Record an audit row after the business transaction has committed.

    A failure here is logged and rolled back; it never undoes the change
    being audited.
    """
    row = AuditLog(
        user_id=user.id if user is not None else None,
        username=user.username if user is not None else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        detail=json.dumps(detail or {}, ensure_ascii=False) if detail is not None else None,
    )
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.warning("Could not write audit event %s for %s %s", action, entity_type, entity_id, exc_info=True)
