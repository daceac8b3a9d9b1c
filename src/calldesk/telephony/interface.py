"""
Telephony provider interface definition.

Outbound: place_call, send_sms.
Inbound: provider webhook bodies are parsed into normalized events
(StatusEvent, RecordingEvent, InboundCall) consumed by the call lifecycle.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import anyio

from calldesk.calls.models import CallStatus
from calldesk.shared.logging import get_logger

logger = get_logger(__name__)

# Provider (Twilio-compatible) call status vocabulary.
PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "initiated": CallStatus.INITIATED,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "failed": CallStatus.FAILED,
    "no-answer": CallStatus.NO_ANSWER,
    "canceled": CallStatus.CANCELED,
}


def normalize_provider_status(provider_status: str | None) -> CallStatus:
    """Map a provider status string onto CallStatus.

    Unknown or empty values map to FAILED so that unexpected webhook content
    lands the call in an investigable terminal state instead of raising.
    """
    key = (provider_status or "").strip().lower().replace("_", "-")
    status = PROVIDER_STATUS_MAP.get(key)
    if status is None:
        logger.warning(
            "Unknown provider call status, mapping to FAILED",
            extra={"provider_status": provider_status},
        )
        return CallStatus.FAILED
    return status


@dataclass(frozen=True)
class CallPlacementRequest:
    """Request to place an outbound call."""

    to: str
    from_number: str
    call_id: str
    status_callback_url: str
    voice_url: str
    record: bool = False
    recording_callback_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallPlacementResponse:
    """Response from call placement."""

    provider_call_id: str
    status: CallStatus
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SmsResponse:
    """Response from sending an SMS."""

    provider_message_id: str
    status: str
    to: str
    from_number: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusEvent:
    """Normalized call status webhook."""

    provider_call_id: str
    status: CallStatus
    event_time: datetime | None = None
    extra_fields: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None
    raw_status: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordingEvent:
    """Normalized recording status webhook."""

    provider_call_id: str
    recording_status: str
    recording_url: str | None = None
    recording_sid: str | None = None
    duration_seconds: int | None = None
    event_time: datetime | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.recording_status == "completed" and bool(self.recording_url)


@dataclass(frozen=True)
class InboundCall:
    """Provider-originated call announced by the inbound voice webhook."""

    provider_call_id: str
    from_number: str
    to_number: str
    status: CallStatus
    raw_payload: dict[str, Any] = field(default_factory=dict)


class TelephonyProviderError(Exception):
    """Base exception for telephony provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}


class CallInitiationError(TelephonyProviderError):
    """Error during call placement."""


class SmsSendError(TelephonyProviderError):
    """Error sending an SMS."""


class WebhookParseError(TelephonyProviderError):
    """Error parsing webhook payload."""


class TelephonyProvider(ABC):
    """Abstract interface for telephony providers.

    The async entrypoints delegate to the sync implementations in a worker
    thread; the sync methods are the source of truth and what unit tests call.
    """

    @property
    def enabled(self) -> bool:
        """False when the provider runs without live credentials."""
        return True

    async def place_call(self, request: CallPlacementRequest) -> CallPlacementResponse:
        return await anyio.to_thread.run_sync(self.place_call_sync, request)

    @abstractmethod
    def place_call_sync(self, request: CallPlacementRequest) -> CallPlacementResponse:
        """Place an outbound call."""
        ...

    async def send_sms(self, to: str, body: str, from_number: str | None = None) -> SmsResponse:
        return await anyio.to_thread.run_sync(self.send_sms_sync, to, body, from_number)

    @abstractmethod
    def send_sms_sync(self, to: str, body: str, from_number: str | None = None) -> SmsResponse:
        """Send an SMS message."""
        ...

    def normalize_status(self, provider_status: str | None) -> CallStatus:
        return normalize_provider_status(provider_status)

    @abstractmethod
    def parse_status_event(self, payload: dict[str, Any]) -> StatusEvent:
        """Parse a call status webhook."""
        ...

    @abstractmethod
    def parse_recording_event(self, payload: dict[str, Any]) -> RecordingEvent:
        """Parse a recording status webhook."""
        ...

    @abstractmethod
    def parse_inbound_call(self, payload: dict[str, Any]) -> InboundCall:
        """Parse the inbound call (voice) webhook."""
        ...

    @abstractmethod
    def validate_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        url: str,
    ) -> bool:
        """Validate webhook signature for authenticity."""
        ...

    def close(self) -> None:
        """Release provider resources."""
