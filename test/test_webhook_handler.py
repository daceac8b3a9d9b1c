"""Tests for webhook event handler."""

from datetime import datetime, timedelta, timezone

import pytest

from calldesk.calls.models import CallDirection, CallStatus, SYSTEM_USER_ID
from calldesk.calls.service import CallLifecycleService
from calldesk.shared.exceptions import NotFoundError
from calldesk.telephony.interface import InboundCall, RecordingEvent, StatusEvent
from calldesk.telephony.webhooks.handler import WebhookHandler


@pytest.fixture
def handler(service: CallLifecycleService) -> WebhookHandler:
    return WebhookHandler(service)


class TestHandleStatusEvent:
    @pytest.mark.asyncio
    async def test_binds_provider_id_from_call_id(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
        log_store,
    ) -> None:
        call = await service.create_call("agent-1", "+15550000001", "+15550000002")

        result = await handler.handle_status_event(
            StatusEvent(
                provider_call_id="CA100",
                status=CallStatus.RINGING,
                call_id=str(call.id),
                raw_status="ringing",
            )
        )

        assert result.provider_call_id == "CA100"
        assert result.status == CallStatus.RINGING
        assert log_store.actions(call.id) == ["CALL_INITIATED", "CALL_PLACED", "STATUS_RINGING"]

    @pytest.mark.asyncio
    async def test_resolves_by_provider_id(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
    ) -> None:
        call = await service.create_call("agent-1", "+15550000001", "+15550000002", provider_call_id="CA200")
        start = call.start_time

        result = await handler.handle_status_event(
            StatusEvent(
                provider_call_id="CA200",
                status=CallStatus.COMPLETED,
                event_time=start + timedelta(seconds=30),
                extra_fields={"provider_duration": 28},
                raw_status="completed",
            )
        )

        assert result.status == CallStatus.COMPLETED
        assert result.duration == 30
        assert result.extra_metadata["provider_duration"] == 28

    @pytest.mark.asyncio
    async def test_unknown_call_id_falls_back_to_provider_id(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
    ) -> None:
        await service.create_call("agent-1", "+15550000001", "+15550000002", provider_call_id="CA300")

        result = await handler.handle_status_event(
            StatusEvent(
                provider_call_id="CA300",
                status=CallStatus.IN_PROGRESS,
                call_id="00000000-0000-0000-0000-000000000000",
                raw_status="in-progress",
            )
        )

        assert result.status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_unknown_call_raises_not_found(self, handler: WebhookHandler) -> None:
        with pytest.raises(NotFoundError):
            await handler.handle_status_event(
                StatusEvent(provider_call_id="CA_NOPE", status=CallStatus.COMPLETED, raw_status="completed")
            )

    @pytest.mark.asyncio
    async def test_unmapped_status_is_kept(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
    ) -> None:
        await service.create_call("agent-1", "+15550000001", "+15550000002", provider_call_id="CA400")

        result = await handler.handle_status_event(
            StatusEvent(provider_call_id="CA400", status=CallStatus.FAILED, raw_status="exploded")
        )

        assert result.status == CallStatus.FAILED
        assert result.extra_metadata["provider_status"] == "exploded"

    @pytest.mark.asyncio
    async def test_late_ringing_after_completed_is_ignored(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
        log_store,
    ) -> None:
        call = await service.create_call("agent-1", "+15550000001", "+15550000002", provider_call_id="CA500")
        await handler.handle_status_event(
            StatusEvent(provider_call_id="CA500", status=CallStatus.COMPLETED, raw_status="completed")
        )

        result = await handler.handle_status_event(
            StatusEvent(provider_call_id="CA500", status=CallStatus.RINGING, raw_status="ringing")
        )

        assert result.status == CallStatus.COMPLETED
        assert log_store.actions(call.id)[-1] == "TRANSITION_REJECTED"


class TestHandleRecordingEvent:
    @pytest.mark.asyncio
    async def test_completed_recording_on_ended_call(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
        log_store,
    ) -> None:
        call = await service.create_call("agent-1", "+15550000001", "+15550000002", provider_call_id="CA600")
        await service.apply_status_event(
            "CA600",
            CallStatus.COMPLETED,
            event_time=datetime.now(timezone.utc),
        )
        ended_at = call.end_time

        result = await handler.handle_recording_event(
            RecordingEvent(
                provider_call_id="CA600",
                recording_status="completed",
                recording_url="https://api.twilio.com/rec/RE1",
                recording_sid="RE1",
                duration_seconds=12,
            )
        )

        assert result is not None
        assert result.status == CallStatus.COMPLETED
        assert result.end_time == ended_at
        assert result.recording_url == "https://api.twilio.com/rec/RE1"
        assert result.recording_duration == 12
        assert result.extra_metadata["recording_sid"] == "RE1"
        assert log_store.actions(call.id)[-1] == "RECORDING_ATTACHED"

    @pytest.mark.asyncio
    async def test_incomplete_recording_is_ignored(
        self,
        handler: WebhookHandler,
        service: CallLifecycleService,
        call_store,
    ) -> None:
        call = await service.create_call("agent-1", "+15550000001", "+15550000002", provider_call_id="CA700")

        result = await handler.handle_recording_event(
            RecordingEvent(provider_call_id="CA700", recording_status="in-progress")
        )

        assert result is None
        assert call_store.calls[call.id].recording_url is None


class TestHandleInboundCall:
    @pytest.mark.asyncio
    async def test_registers_inbound_call_once(
        self,
        handler: WebhookHandler,
        call_store,
    ) -> None:
        event = InboundCall(
            provider_call_id="CA800",
            from_number="+15551112222",
            to_number="+15550000001",
            status=CallStatus.RINGING,
        )

        first = await handler.handle_inbound_call(event)
        second = await handler.handle_inbound_call(event)

        assert first.id == second.id
        assert first.direction == CallDirection.INBOUND
        assert first.user_id == SYSTEM_USER_ID
        assert first.status == CallStatus.RINGING
        assert len(call_store.calls) == 1
