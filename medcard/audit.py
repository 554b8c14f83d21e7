"""Audit log subscriber — persists every SystemEvent to the audit_log table.

Registered as a global subscriber (receives ALL events). Never raises:
failures are logged but never propagate to the event system.
"""

from __future__ import annotations

import logging

from medcard.db.engine import async_session_factory
from medcard.models.audit import AuditLog
from medcard.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


async def audit_on_event(event: SystemEvent) -> None:
    """Write a SystemEvent to the audit_log table."""
    try:
        async with async_session_factory() as db:
            db.add(AuditLog(
                event_type=event.event_type.value,
                document_id=event.document_id,
                conversation_key=event.conversation_key,
                data={**event.data, "source": event.source_module} if event.source_module else event.data,
            ))
            await db.commit()
    except Exception:
        logger.exception(
            "Failed to persist audit event: %s (conversation=%s)",
            event.event_type.value,
            event.conversation_key,
        )
