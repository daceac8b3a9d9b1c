"""
Call lifecycle service.

Owns every mutation of a Call: creation, status transitions driven by
webhooks or manual overrides, recording attachment and provider id binding.
Each mutation runs under the per-call lock and writes one audit entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID, uuid4

from calldesk.calls import action_log as actions
from calldesk.calls.action_log import CallActionLog, status_action
from calldesk.calls.lifecycle import (
    TransitionOutcome,
    ensure_utc,
    plan_transition,
    utcnow,
)
from calldesk.calls.models import (
    SYSTEM_USER_ID,
    Call,
    CallDirection,
    CallLog,
    CallStatus,
)
from calldesk.calls.repository import CallLogStoreProtocol, CallStoreProtocol
from calldesk.shared.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from calldesk.shared.locks import KeyedLock, call_locks
from calldesk.shared.logging import get_logger
from calldesk.telephony.config import (
    RECORDING_CALLBACK_PATH,
    STATUS_CALLBACK_PATH,
    VOICE_PATH,
    TelephonyConfig,
)
from calldesk.telephony.interface import (
    CallPlacementRequest,
    SmsResponse,
    TelephonyProvider,
    TelephonyProviderError,
)

logger = get_logger(__name__)

# Extra-field names (snake, camel and provider spelling) that land on columns.
_COLUMN_ALIASES: dict[str, str] = {
    "recording_url": "recording_url",
    "recordingUrl": "recording_url",
    "RecordingUrl": "recording_url",
    "recording_duration": "recording_duration",
    "recordingDuration": "recording_duration",
    "RecordingDuration": "recording_duration",
    "error_code": "error_code",
    "errorCode": "error_code",
    "ErrorCode": "error_code",
    "error_message": "error_message",
    "errorMessage": "error_message",
    "ErrorMessage": "error_message",
}

# Fields owned by the state machine or immutable after creation.
_PROTECTED_FIELDS = frozenset(
    {
        "id",
        "callId",
        "status",
        "user_id",
        "userId",
        "provider_call_id",
        "providerCallId",
        "from_number",
        "fromNumber",
        "to_number",
        "toNumber",
        "direction",
        "start_time",
        "startTime",
        "end_time",
        "endTime",
        "duration",
        "created_at",
        "createdAt",
        "updated_at",
        "updatedAt",
    }
)


@dataclass(frozen=True)
class CallPage:
    """One page of a user's call history."""

    items: Sequence[Call]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


def _coerce_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CallLifecycleService:
    """Creates calls and reconciles their state against provider events."""

    def __init__(
        self,
        store: CallStoreProtocol,
        log_store: CallLogStoreProtocol,
        gateway: TelephonyProvider | None = None,
        telephony_config: TelephonyConfig | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Call record persistence.
            log_store: Append-only action log persistence.
            gateway: Telephony provider used to place calls and send SMS.
            telephony_config: Callback URLs, default caller id and recording flag.
            locks: Per-call lock registry. Defaults to the process-wide one.
        """
        self._store = store
        self._log = CallActionLog(log_store)
        self._gateway = gateway
        self._config = telephony_config or TelephonyConfig()
        self._locks = locks if locks is not None else call_locks

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_call(
        self,
        user_id: str,
        from_number: str,
        to_number: str,
        initial_status: CallStatus | None = None,
        provider_call_id: str | None = None,
        direction: CallDirection = CallDirection.OUTBOUND,
    ) -> Call:
        """Create a call record and write its CALL_INITIATED entry.

        Raises:
            ValidationError: A number is missing or the initial status is terminal.
        """
        from_number = (from_number or "").strip()
        to_number = (to_number or "").strip()
        missing = [
            name
            for name, value in (("fromNumber", from_number), ("toNumber", to_number))
            if not value
        ]
        if missing:
            raise ValidationError(
                message="fromNumber and toNumber are required",
                details={"missing": missing},
            )

        status = CallStatus(initial_status) if initial_status else CallStatus.INITIATED
        if status.is_terminal:
            raise ValidationError(
                message=f"Initial status cannot be terminal: {status.value}",
                details={"initialStatus": status.value},
            )

        now = utcnow()
        call = Call(
            id=uuid4(),
            provider_call_id=provider_call_id or None,
            user_id=user_id,
            direction=CallDirection(direction),
            from_number=from_number,
            to_number=to_number,
            status=status,
            start_time=now,
            extra_metadata={},
            created_at=now,
            updated_at=now,
        )
        call = await self._store.add(call)

        await self._log.record(
            call.id,
            actions.CALL_INITIATED,
            {
                "status": status.value,
                "fromNumber": from_number,
                "toNumber": to_number,
                "direction": call.direction.value,
                "providerCallId": call.provider_call_id,
            },
            user_id=user_id,
        )
        await self._store.commit()

        logger.info(
            "Call created",
            extra={
                "call_id": str(call.id),
                "user_id": user_id,
                "direction": call.direction.value,
            },
        )
        return call

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _find(self, call_ref: UUID | str) -> Call | None:
        """Resolve an internal id first, then a provider id."""
        if isinstance(call_ref, UUID):
            return await self._store.get(call_ref)

        ref = str(call_ref).strip()
        try:
            call = await self._store.get(UUID(ref))
        except ValueError:
            call = None
        if call is None and ref:
            call = await self._store.get_by_provider_call_id(ref)
        return call

    async def _resolve(self, call_ref: UUID | str) -> Call:
        call = await self._find(call_ref)
        if call is None:
            raise NotFoundError(
                message="Call not found",
                details={"callRef": str(call_ref)},
            )
        return call

    async def _reload_locked(self, call_id: UUID) -> Call:
        call = await self._store.get(call_id, for_update=True)
        if call is None:
            raise NotFoundError(message="Call not found", details={"callRef": str(call_id)})
        return call

    async def get_call_for_user(
        self,
        call_id: UUID | str,
        user_id: str,
        is_admin: bool = False,
    ) -> Call:
        """Return a call its owner (or an admin) may see.

        Raises:
            NotFoundError: Unknown id.
            ForbiddenError: The call belongs to another user and the caller is not admin.
        """
        try:
            key = call_id if isinstance(call_id, UUID) else UUID(str(call_id))
        except ValueError:
            raise NotFoundError(message="Call not found", details={"callId": str(call_id)})

        call = await self._store.get(key)
        if call is None:
            raise NotFoundError(message="Call not found", details={"callId": str(call_id)})

        if not is_admin and call.user_id != user_id:
            logger.warning(
                "Call access denied",
                extra={"call_id": str(call.id), "user_id": user_id},
            )
            raise ForbiddenError(
                message="Access to this call is not allowed",
                details={"callId": str(call.id)},
            )
        return call

    async def list_calls_for_user(
        self,
        user_id: str,
        *,
        status: CallStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 10,
        is_admin: bool = False,
    ) -> CallPage:
        """Newest-first page of calls; admins see every user's calls."""
        if page < 1 or limit < 1:
            raise ValidationError(
                message="page and limit must be positive",
                details={"page": page, "limit": limit},
            )
        if start_date and end_date and ensure_utc(start_date) > ensure_utc(end_date):
            raise ValidationError(message="startDate must not be after endDate")

        items, total = await self._store.list_for_user(
            None if is_admin else user_id,
            status=status,
            start_date=ensure_utc(start_date) if start_date else None,
            end_date=ensure_utc(end_date) if end_date else None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return CallPage(items=items, total=total, page=page, limit=limit)

    async def get_call_logs(
        self,
        call_id: UUID | str,
        user_id: str,
        is_admin: bool = False,
    ) -> Sequence[CallLog]:
        call = await self.get_call_for_user(call_id, user_id, is_admin=is_admin)
        return await self._log.entries(call.id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _merge_extra_fields(self, call: Call, extra_fields: dict[str, Any]) -> dict[str, Any]:
        """Copy event extras onto the call; returns what was applied."""
        applied: dict[str, Any] = {}
        metadata = dict(call.extra_metadata or {})

        for key, value in extra_fields.items():
            if key in _PROTECTED_FIELDS:
                logger.debug(
                    "Ignoring protected extra field",
                    extra={"call_id": str(call.id), "field": key},
                )
                continue

            column = _COLUMN_ALIASES.get(key)
            if column is None:
                if metadata.get(key) != value:
                    metadata[key] = value
                    applied[key] = value
                continue

            if value in (None, ""):
                continue
            if column == "recording_duration":
                value = _coerce_int(value)
                if value is None:
                    continue
            else:
                value = str(value)
            if getattr(call, column) != value:
                setattr(call, column, value)
                applied[column] = value

        if metadata != (call.extra_metadata or {}):
            # Reassign so the JSON column is flagged dirty.
            call.extra_metadata = metadata
        return applied

    async def apply_status_event(
        self,
        call_ref: UUID | str,
        new_status: CallStatus | str,
        event_time: datetime | None = None,
        extra_fields: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> Call:
        """Apply one status event to a call.

        Args:
            call_ref: Internal call id or provider call id.
            new_status: Requested status.
            event_time: Provider event time; processing time when absent.
            extra_fields: Recording reference, error detail or any other
                fields to merge onto the call, whatever the transition outcome.
            actor_id: User behind a manual override; None for provider events.

        Returns:
            The call as stored after the event.

        Raises:
            NotFoundError: No call matches `call_ref`.
            ValidationError: `new_status` is not a known status.
        """
        try:
            requested = CallStatus(new_status)
        except ValueError:
            raise ValidationError(
                message=f"Unknown call status: {new_status}",
                details={"status": str(new_status)},
            )
        extras = dict(extra_fields or {})

        found = await self._resolve(call_ref)
        async with self._locks.hold(str(found.id)):
            call = await self._reload_locked(found.id)
            event_at = ensure_utc(event_time).isoformat() if event_time else None

            try:
                decision = plan_transition(
                    call.status,
                    requested,
                    call.start_time,
                    event_time,
                )
            except InvalidTransitionError as e:
                applied = self._merge_extra_fields(call, extras)
                if applied:
                    call.updated_at = utcnow()
                    await self._store.save(call)
                await self._log.record(
                    call.id,
                    actions.TRANSITION_REJECTED,
                    {**(e.details or {}), "extraFields": extras, "eventTime": event_at},
                    user_id=actor_id,
                )
                await self._store.commit()
                logger.warning(
                    "Status transition rejected",
                    extra={
                        "call_id": str(call.id),
                        "previous_status": CallStatus(call.status).value,
                        "requested_status": requested.value,
                    },
                )
                return call

            call.status = decision.status
            if decision.sets_timing:
                call.end_time = decision.end_time
                call.duration = decision.duration
            self._merge_extra_fields(call, extras)
            call.updated_at = utcnow()
            await self._store.save(call)

            if decision.outcome == TransitionOutcome.RECORDING_ONLY:
                action = actions.RECORDING_ATTACHED
            else:
                action = status_action(requested)
            await self._log.record(
                call.id,
                action,
                {
                    "previousStatus": decision.previous_status.value,
                    "newStatus": decision.status.value,
                    "duplicate": decision.outcome == TransitionOutcome.DUPLICATE,
                    "extraFields": extras,
                    "eventTime": event_at,
                    "duration": call.duration,
                },
                user_id=actor_id,
            )
            await self._store.commit()

        logger.info(
            "Call status event applied",
            extra={
                "call_id": str(call.id),
                "previous_status": decision.previous_status.value,
                "new_status": decision.status.value,
                "outcome": decision.outcome.value,
            },
        )
        return call

    async def attach_recording(
        self,
        call_ref: UUID | str,
        recording_url: str,
        duration: int | None = None,
    ) -> Call:
        """Set the recording reference without touching status or timing."""
        recording_url = (recording_url or "").strip()
        if not recording_url:
            raise ValidationError(message="recordingUrl is required")

        found = await self._resolve(call_ref)
        async with self._locks.hold(str(found.id)):
            call = await self._reload_locked(found.id)
            previous_url = call.recording_url
            call.recording_url = recording_url
            if duration is not None:
                call.recording_duration = _coerce_int(duration)
            call.updated_at = utcnow()
            await self._store.save(call)

            await self._log.record(
                call.id,
                actions.RECORDING_ATTACHED,
                {
                    "recordingUrl": recording_url,
                    "recordingDuration": call.recording_duration,
                    "replaced": previous_url is not None and previous_url != recording_url,
                    "status": CallStatus(call.status).value,
                },
            )
            await self._store.commit()

        logger.info("Recording attached", extra={"call_id": str(call.id)})
        return call

    async def link_provider_call(
        self,
        call_ref: UUID | str,
        provider_call_id: str,
        actor_id: str | None = None,
    ) -> Call:
        """Bind the provider call id to a call.

        The id is write-once: the same value again is a no-op and a different
        value is ignored and logged as PROVIDER_ID_CONFLICT.
        """
        found = await self._resolve(call_ref)
        async with self._locks.hold(str(found.id)):
            call = await self._reload_locked(found.id)

            if call.provider_call_id == provider_call_id:
                return call

            if call.provider_call_id:
                await self._log.record(
                    call.id,
                    actions.PROVIDER_ID_CONFLICT,
                    {
                        "providerCallId": call.provider_call_id,
                        "ignoredProviderCallId": provider_call_id,
                    },
                    user_id=actor_id,
                )
                await self._store.commit()
                logger.warning(
                    "Conflicting provider call id ignored",
                    extra={
                        "call_id": str(call.id),
                        "provider_call_id": call.provider_call_id,
                        "ignored_provider_call_id": provider_call_id,
                    },
                )
                return call

            call.provider_call_id = provider_call_id
            call.updated_at = utcnow()
            await self._store.save(call)
            await self._log.record(
                call.id,
                actions.CALL_PLACED,
                {"providerCallId": provider_call_id},
                user_id=actor_id,
            )
            await self._store.commit()

        logger.info(
            "Provider call id bound",
            extra={"call_id": str(call.id), "provider_call_id": provider_call_id},
        )
        return call

    # ------------------------------------------------------------------
    # Provider-facing flows
    # ------------------------------------------------------------------

    def _require_gateway(self) -> TelephonyProvider:
        if self._gateway is None:
            raise RuntimeError("CallLifecycleService was built without a telephony gateway")
        return self._gateway

    async def initiate_call(
        self,
        user_id: str,
        to_number: str,
        from_number: str | None = None,
    ) -> Call:
        """Create a call and place it through the provider.

        Provider failures never propagate: the call moves to FAILED with the
        error recorded on it. In disabled mode the record is created and the
        placement is skipped.

        Raises:
            ValidationError: A number is missing after the default caller id
                fallback.
        """
        gateway = self._require_gateway()
        sender = (from_number or "").strip() or self._config.twilio_from_number
        call = await self.create_call(user_id, sender, to_number)

        if not gateway.enabled:
            await self._log.record(
                call.id,
                actions.CALL_PLACEMENT_SKIPPED,
                {"reason": "provider_disabled"},
                user_id=user_id,
            )
            await self._store.commit()
            logger.warning(
                "Telephony provider disabled; call not placed",
                extra={"call_id": str(call.id)},
            )
            return call

        request = CallPlacementRequest(
            to=call.to_number,
            from_number=call.from_number,
            call_id=str(call.id),
            status_callback_url=self._config.get_webhook_url(STATUS_CALLBACK_PATH),
            voice_url=self._config.get_webhook_url(VOICE_PATH),
            record=self._config.record_calls,
            recording_callback_url=self._config.get_webhook_url(RECORDING_CALLBACK_PATH),
        )

        try:
            response = await gateway.place_call(request)
        except TelephonyProviderError as e:
            logger.error(
                "Call placement failed",
                extra={"call_id": str(call.id), "error_code": e.error_code, "error": str(e)},
            )
            return await self.apply_status_event(
                call.id,
                CallStatus.FAILED,
                extra_fields={
                    "error": str(e),
                    "error_code": e.error_code,
                    "error_message": str(e),
                },
                actor_id=user_id,
            )

        call = await self.link_provider_call(call.id, response.provider_call_id, actor_id=user_id)
        # Webhooks may already have moved the call on; only the first report counts.
        if call.status == CallStatus.INITIATED and response.status != CallStatus.INITIATED:
            call = await self.apply_status_event(
                call.id,
                response.status,
                event_time=response.created_at,
                actor_id=user_id,
            )
        return call

    async def register_inbound_call(
        self,
        provider_call_id: str,
        from_number: str,
        to_number: str,
        status: CallStatus | None = None,
    ) -> Call:
        """Create the record for a provider-originated call, once per provider id."""
        async with self._locks.hold(f"provider:{provider_call_id}"):
            existing = await self._store.get_by_provider_call_id(provider_call_id)
            if existing is not None:
                return existing

            call = await self.create_call(
                SYSTEM_USER_ID,
                from_number,
                to_number,
                provider_call_id=provider_call_id,
                direction=CallDirection.INBOUND,
            )

        if status is not None and status != CallStatus.INITIATED:
            call = await self.apply_status_event(call.id, status)
        return call

    async def send_sms(
        self,
        call_id: UUID | str,
        user_id: str,
        body: str,
        is_admin: bool = False,
    ) -> SmsResponse:
        """Text the other party of a call.

        Raises:
            ValidationError: Empty body.
            SmsSendError: The provider rejected the message.
        """
        body = (body or "").strip()
        if not body:
            raise ValidationError(message="SMS body is required")

        call = await self.get_call_for_user(call_id, user_id, is_admin=is_admin)
        gateway = self._require_gateway()
        recipient = call.from_number if call.direction == CallDirection.INBOUND else call.to_number

        response = await gateway.send_sms(recipient, body)

        await self._log.record(
            call.id,
            actions.SMS_SENT,
            {
                "to": recipient,
                "providerMessageId": response.provider_message_id,
                "status": response.status,
            },
            user_id=user_id,
        )
        await self._store.commit()
        logger.info(
            "SMS sent for call",
            extra={"call_id": str(call.id), "message_id": response.provider_message_id},
        )
        return response
