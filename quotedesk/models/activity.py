"""
Staff audit trail helpers.
Rows are staged on the caller's session and commit with the caller's work.
"""

import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.models.tables import QuoteActivityLog, StaffActivityLog


def log_staff_activity(
    session: AsyncSession,
    staff_id: Optional[uuid.UUID],
    action_type: str,
    entity_type: str,
    entity_id: uuid.UUID,
    details: Optional[dict[str, Any]] = None,
) -> None:
    session.add(StaffActivityLog(
        staff_id=staff_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
    ))


def log_quote_activity(
    session: AsyncSession,
    quote_id: uuid.UUID,
    action_type: str,
    staff_id: Optional[uuid.UUID] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Quote history entry that does not change status."""
    session.add(QuoteActivityLog(
        quote_id=quote_id,
        staff_id=staff_id,
        action_type=action_type,
        details=details or {},
    ))
