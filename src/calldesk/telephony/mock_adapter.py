"""
Mock telephony provider adapter for testing and local development.

Accepts the same Twilio-shaped webhook payloads as the real adapter and
records every outbound request instead of calling out.
"""

from datetime import datetime, timezone
from typing import Any

from calldesk.calls.models import CallStatus
from calldesk.shared.logging import get_logger
from calldesk.telephony.interface import (
    CallInitiationError,
    CallPlacementRequest,
    CallPlacementResponse,
    InboundCall,
    RecordingEvent,
    SmsResponse,
    SmsSendError,
    StatusEvent,
    TelephonyProvider,
)
from calldesk.telephony.twilio_adapter import (
    parse_inbound_payload,
    parse_recording_payload,
    parse_status_payload,
)

logger = get_logger(__name__)


class MockTelephonyAdapter(TelephonyProvider):
    """Mock telephony provider for testing."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._calls: list[CallPlacementRequest] = []
        self._messages: list[dict[str, Any]] = []
        self._webhooks: list[dict[str, Any]] = []
        self._next_call_id: int = 1
        self._next_message_id: int = 1
        self._should_fail: bool = False
        self._fail_error: str = "Mock failure"
        self._fail_code: str = "MOCK_ERROR"
        self._default_status: CallStatus = CallStatus.QUEUED
        self._signature_valid: bool = True

    def reset(self) -> None:
        self._calls.clear()
        self._messages.clear()
        self._webhooks.clear()
        self._next_call_id = 1
        self._next_message_id = 1
        self._should_fail = False
        self._fail_error = "Mock failure"
        self._fail_code = "MOCK_ERROR"
        self._default_status = CallStatus.QUEUED
        self._signature_valid = True

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def configure_failure(
        self,
        should_fail: bool = True,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
    ) -> None:
        self._should_fail = should_fail
        self._fail_error = error_message
        self._fail_code = error_code

    def configure_status(self, status: CallStatus) -> None:
        self._default_status = status

    def configure_signature(self, valid: bool) -> None:
        self._signature_valid = valid

    @property
    def calls(self) -> list[CallPlacementRequest]:
        return self._calls.copy()

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self._messages.copy()

    @property
    def webhooks(self) -> list[dict[str, Any]]:
        return self._webhooks.copy()

    def get_last_call(self) -> CallPlacementRequest | None:
        return self._calls[-1] if self._calls else None

    def place_call_sync(self, request: CallPlacementRequest) -> CallPlacementResponse:
        logger.info(
            "Mock: Placing call",
            extra={"to": request.to, "call_id": request.call_id},
        )

        if self._should_fail:
            raise CallInitiationError(
                message=self._fail_error,
                error_code=self._fail_code,
            )

        self._calls.append(request)

        provider_call_id = f"MOCK_CALL_{self._next_call_id:06d}"
        self._next_call_id += 1

        return CallPlacementResponse(
            provider_call_id=provider_call_id,
            status=self._default_status,
            created_at=datetime.now(timezone.utc),
            raw_response={
                "mock": True,
                "call_id": request.call_id,
                "provider_call_id": provider_call_id,
            },
        )

    def send_sms_sync(self, to: str, body: str, from_number: str | None = None) -> SmsResponse:
        logger.info("Mock: Sending SMS", extra={"to": to})

        if self._should_fail:
            raise SmsSendError(message=self._fail_error, error_code=self._fail_code)

        message_id = f"MOCK_SMS_{self._next_message_id:06d}"
        self._next_message_id += 1
        sender = from_number or "+15550000000"
        self._messages.append({"to": to, "from": sender, "body": body, "sid": message_id})

        return SmsResponse(
            provider_message_id=message_id,
            status="queued",
            to=to,
            from_number=sender,
            raw_response={"mock": True, "sid": message_id},
        )

    def parse_status_event(self, payload: dict[str, Any]) -> StatusEvent:
        self._webhooks.append(payload)
        return parse_status_payload(payload)

    def parse_recording_event(self, payload: dict[str, Any]) -> RecordingEvent:
        self._webhooks.append(payload)
        return parse_recording_payload(payload)

    def parse_inbound_call(self, payload: dict[str, Any]) -> InboundCall:
        self._webhooks.append(payload)
        return parse_inbound_payload(payload)

    def validate_webhook_signature(self, payload: bytes, signature: str, url: str) -> bool:
        return self._signature_valid

    def generate_status_payload(
        self,
        provider_call_id: str,
        status: str = "completed",
        call_id: str | None = None,
        duration_seconds: int | None = None,
        timestamp: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> dict[str, Any]:
        """Build a Twilio-shaped status callback body."""
        payload: dict[str, Any] = {
            "CallSid": provider_call_id,
            "CallStatus": status,
        }

        if call_id:
            payload["call_id"] = call_id
        if duration_seconds is not None:
            payload["CallDuration"] = str(duration_seconds)
        if timestamp:
            payload["Timestamp"] = timestamp
        if error_code:
            payload["ErrorCode"] = error_code
        if error_message:
            payload["ErrorMessage"] = error_message

        return payload
