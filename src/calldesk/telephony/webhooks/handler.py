"""
Webhook event handler for processing telephony events.

Turns normalized provider events into lifecycle service calls.
"""

from calldesk.calls.models import Call, CallStatus
from calldesk.calls.service import CallLifecycleService
from calldesk.shared.exceptions import NotFoundError
from calldesk.shared.logging import get_logger
from calldesk.telephony.interface import (
    PROVIDER_STATUS_MAP,
    InboundCall,
    RecordingEvent,
    StatusEvent,
)

logger = get_logger(__name__)


class WebhookHandler:
    """Handler for processing telephony webhook events.

    Out-of-order and repeated deliveries are absorbed by the lifecycle
    rules, so every event is forwarded without local deduplication.
    """

    def __init__(self, service: CallLifecycleService) -> None:
        """Initialize webhook handler.

        Args:
            service: Lifecycle service bound to the request's session.
        """
        self._service = service

    async def handle_status_event(self, event: StatusEvent) -> Call:
        """Apply a call status callback.

        When the callback carries our own call id (set on the status callback
        URL at placement), the provider id is bound first so events that
        overtake the placement response still find their call.

        Raises:
            NotFoundError: Neither identifier matches a call.
        """
        call_ref = event.provider_call_id
        if event.call_id:
            try:
                await self._service.link_provider_call(event.call_id, event.provider_call_id)
                call_ref = event.call_id
            except NotFoundError:
                logger.warning(
                    "Status callback references unknown call_id",
                    extra={
                        "call_id": event.call_id,
                        "provider_call_id": event.provider_call_id,
                    },
                )

        extra_fields = dict(event.extra_fields)
        if event.raw_status and event.raw_status.replace("_", "-") not in PROVIDER_STATUS_MAP:
            extra_fields["provider_status"] = event.raw_status

        logger.info(
            "Processing status callback",
            extra={
                "provider_call_id": event.provider_call_id,
                "status": event.status.value,
            },
        )
        return await self._service.apply_status_event(
            call_ref,
            event.status,
            event_time=event.event_time,
            extra_fields=extra_fields,
        )

    async def handle_recording_event(self, event: RecordingEvent) -> Call | None:
        """Attach a finished recording; other recording statuses are ignored.

        On a call that already ended this only sets the recording fields.
        """
        if not event.is_completed:
            logger.info(
                "Recording callback ignored",
                extra={
                    "provider_call_id": event.provider_call_id,
                    "recording_status": event.recording_status,
                },
            )
            return None

        extra_fields: dict[str, object] = {"recording_url": event.recording_url}
        if event.duration_seconds is not None:
            extra_fields["recording_duration"] = event.duration_seconds
        if event.recording_sid:
            extra_fields["recording_sid"] = event.recording_sid

        return await self._service.apply_status_event(
            event.provider_call_id,
            CallStatus.RECORDING_AVAILABLE,
            event_time=event.event_time,
            extra_fields=extra_fields,
        )

    async def handle_inbound_call(self, event: InboundCall) -> Call:
        logger.info(
            "Inbound call received",
            extra={"provider_call_id": event.provider_call_id},
        )
        return await self._service.register_inbound_call(
            event.provider_call_id,
            event.from_number,
            event.to_number,
            status=event.status,
        )
