"""
Append-only audit trail of call transitions and external actions.
"""

import json
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import UUID, uuid4

from calldesk.calls.models import CallLog, CallStatus
from calldesk.calls.repository import CallLogStoreProtocol
from calldesk.shared.logging import get_logger

logger = get_logger(__name__)

CALL_INITIATED = "CALL_INITIATED"
CALL_PLACED = "CALL_PLACED"
CALL_PLACEMENT_SKIPPED = "CALL_PLACEMENT_SKIPPED"
TRANSITION_REJECTED = "TRANSITION_REJECTED"
RECORDING_ATTACHED = "RECORDING_ATTACHED"
PROVIDER_ID_CONFLICT = "PROVIDER_ID_CONFLICT"
SMS_SENT = "SMS_SENT"


def status_action(status: CallStatus) -> str:
    """Action tag for an applied status event, e.g. STATUS_COMPLETED."""
    return f"STATUS_{CallStatus(status).value}"


class CallActionLog:
    """Writes immutable CallLog entries through a log store."""

    def __init__(self, store: CallLogStoreProtocol) -> None:
        self._store = store

    async def record(
        self,
        call_id: UUID,
        action: str,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> CallLog:
        entry = CallLog(
            id=uuid4(),
            call_id=call_id,
            user_id=user_id,
            action=action,
            details_json=json.dumps(details or {}, default=str, sort_keys=True),
            created_at=datetime.now(timezone.utc),
        )
        await self._store.append(entry)
        logger.debug(
            "Call action recorded",
            extra={"call_id": str(call_id), "action": action},
        )
        return entry

    async def entries(self, call_id: UUID) -> Sequence[CallLog]:
        return await self._store.list_for_call(call_id)
