"""
Twilio telephony provider adapter.

Talks to the Twilio REST API with httpx and parses Twilio's form-encoded
webhooks. The parsing helpers are module-level so the mock provider accepts
the same payloads.
"""

from __future__ import annotations

import hashlib
import hmac
from base64 import b64encode
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import parse_qs, urlencode
from uuid import uuid4

import httpx

from calldesk.shared.logging import get_logger
from calldesk.telephony.config import TelephonyConfig, get_telephony_config
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
    WebhookParseError,
    normalize_provider_status,
)

logger = get_logger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


def parse_provider_timestamp(value: Any) -> datetime | None:
    """Parse Twilio's RFC 2822 `Timestamp` (or an ISO-8601 string)."""
    if not value:
        return None
    text = str(value).strip()
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable provider timestamp", extra={"timestamp": text})
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_status_payload(payload: dict[str, Any]) -> StatusEvent:
    """Parse a Twilio call status callback into a StatusEvent."""
    call_sid = payload.get("CallSid")
    if not call_sid:
        raise WebhookParseError(
            message="Missing CallSid in webhook payload",
            error_code="MISSING_CALL_SID",
            provider_response=payload,
        )

    raw_status = payload.get("CallStatus")
    if not raw_status:
        raise WebhookParseError(
            message="Missing CallStatus in webhook payload",
            error_code="MISSING_CALL_STATUS",
            provider_response=payload,
        )

    extra_fields: dict[str, Any] = {}
    provider_duration = _optional_int(payload.get("CallDuration"))
    if provider_duration is not None:
        extra_fields["provider_duration"] = provider_duration
    if payload.get("RecordingUrl"):
        extra_fields["recording_url"] = payload["RecordingUrl"]
        recording_duration = _optional_int(payload.get("RecordingDuration"))
        if recording_duration is not None:
            extra_fields["recording_duration"] = recording_duration
    if payload.get("ErrorCode"):
        extra_fields["error_code"] = str(payload["ErrorCode"])
    if payload.get("ErrorMessage"):
        extra_fields["error_message"] = payload["ErrorMessage"]
    if payload.get("AnsweredBy"):
        extra_fields["answered_by"] = payload["AnsweredBy"]
    if payload.get("SipResponseCode"):
        extra_fields["sip_response_code"] = payload["SipResponseCode"]

    return StatusEvent(
        provider_call_id=call_sid,
        status=normalize_provider_status(raw_status),
        event_time=parse_provider_timestamp(payload.get("Timestamp")),
        extra_fields=extra_fields,
        call_id=payload.get("call_id") or None,
        raw_status=str(raw_status).lower(),
        raw_payload=payload,
    )


def parse_recording_payload(payload: dict[str, Any]) -> RecordingEvent:
    """Parse a Twilio recording status callback into a RecordingEvent."""
    call_sid = payload.get("CallSid")
    recording_status = payload.get("RecordingStatus")
    if not call_sid or not recording_status:
        raise WebhookParseError(
            message="Missing CallSid or RecordingStatus in recording payload",
            error_code="MISSING_RECORDING_FIELDS",
            provider_response=payload,
        )

    return RecordingEvent(
        provider_call_id=call_sid,
        recording_status=str(recording_status).lower(),
        recording_url=payload.get("RecordingUrl") or None,
        recording_sid=payload.get("RecordingSid") or None,
        duration_seconds=_optional_int(payload.get("RecordingDuration")),
        event_time=parse_provider_timestamp(payload.get("Timestamp")),
        raw_payload=payload,
    )


def parse_inbound_payload(payload: dict[str, Any]) -> InboundCall:
    """Parse the voice webhook Twilio sends when a call reaches our number."""
    call_sid = payload.get("CallSid")
    from_number = payload.get("From")
    to_number = payload.get("To")
    if not call_sid or not from_number or not to_number:
        raise WebhookParseError(
            message="Missing CallSid, From or To in inbound call payload",
            error_code="MISSING_INBOUND_FIELDS",
            provider_response=payload,
        )

    return InboundCall(
        provider_call_id=call_sid,
        from_number=from_number,
        to_number=to_number,
        status=normalize_provider_status(payload.get("CallStatus") or "ringing"),
        raw_payload=payload,
    )


def compute_signature(auth_token: str, url: str, payload: bytes) -> str:
    """Twilio request signature: HMAC-SHA1 over URL + sorted form params."""
    params = parse_qs(payload.decode("utf-8"), keep_blank_values=True)

    data_str = url
    for key in sorted(params.keys()):
        for value in sorted(params[key]):
            data_str += key + value

    digest = hmac.new(
        auth_token.encode("utf-8"),
        data_str.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return b64encode(digest).decode("utf-8")


class TwilioAdapter(TelephonyProvider):
    """Twilio telephony provider adapter.

    Uses httpx for HTTP requests. The async entrypoints remain available
    and delegate to the sync implementation.
    """

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def enabled(self) -> bool:
        return self._config.is_enabled

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                timeout=httpx.Timeout(self._config.request_timeout_seconds)
            )
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.twilio_account_sid, self._config.twilio_auth_token)

    def _get_api_url(self, endpoint: str) -> str:
        base = self._config.twilio_api_base_url.rstrip("/")
        account_sid = self._config.twilio_account_sid
        return f"{base}/2010-04-01/Accounts/{account_sid}{endpoint}"

    def _post(self, endpoint: str, data: dict[str, Any]) -> httpx.Response:
        return self._get_client().post(
            self._get_api_url(endpoint),
            data=data,
            auth=self._get_auth(),
        )

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            return response.json() if response.content else {}
        except ValueError:
            return {"message": response.text}

    def place_call_sync(self, request: CallPlacementRequest) -> CallPlacementResponse:
        """Place an outbound call via Twilio (sync)."""
        if not self.enabled:
            raise CallInitiationError(
                message="Telephony provider is disabled",
                error_code="PROVIDER_DISABLED",
            )

        # call_id rides on the status callback so webhooks can be correlated
        # before the CallSid is stored.
        callback_query = urlencode({"call_id": request.call_id, **request.metadata})
        separator = "&" if "?" in request.status_callback_url else "?"
        payload: dict[str, Any] = {
            "To": request.to,
            "From": request.from_number,
            "Url": request.voice_url,
            "Method": "POST",
            "StatusCallback": f"{request.status_callback_url}{separator}{callback_query}",
            "StatusCallbackEvent": STATUS_CALLBACK_EVENTS,
            "StatusCallbackMethod": "POST",
        }
        if request.record:
            payload["Record"] = "true"
            if request.recording_callback_url:
                payload["RecordingStatusCallback"] = request.recording_callback_url
                payload["RecordingStatusCallbackMethod"] = "POST"

        logger.info(
            "Placing Twilio call",
            extra={"to": request.to, "call_id": request.call_id},
        )

        try:
            response = self._post("/Calls.json", payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.exception(
                "HTTP error during Twilio call placement",
                extra={"call_id": request.call_id},
            )
            raise CallInitiationError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data = self._error_body(response)
            logger.error(
                "Twilio call placement failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "call_id": request.call_id,
                },
            )
            raise CallInitiationError(
                message=error_data.get("message", "Call placement failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

        try:
            data = response.json()
            provider_call_id = data["sid"]
        except (ValueError, KeyError, TypeError) as e:
            logger.error(
                "Twilio accepted the call without a usable CallSid",
                extra={"status_code": response.status_code, "call_id": request.call_id},
            )
            raise CallInitiationError(
                message="Provider response has no call SID",
                error_code="INVALID_PROVIDER_RESPONSE",
                provider_response={"body": response.text},
            ) from e

        created_at = parse_provider_timestamp(data.get("date_created")) or datetime.now(timezone.utc)

        return CallPlacementResponse(
            provider_call_id=provider_call_id,
            status=normalize_provider_status(data.get("status") or "queued"),
            created_at=created_at,
            raw_response=data,
        )

    def send_sms_sync(self, to: str, body: str, from_number: str | None = None) -> SmsResponse:
        """Send an SMS via Twilio (sync)."""
        sender = from_number or self._config.twilio_from_number

        if not self.enabled:
            logger.warning("Telephony provider disabled; SMS not sent", extra={"to": to})
            return SmsResponse(
                provider_message_id=f"mock_sms_{uuid4().hex[:12]}",
                status="sent",
                to=to,
                from_number=sender or "mock_number",
                raw_response={"mock": True, "body": body},
            )

        try:
            response = self._post("/Messages.json", {"To": to, "From": sender, "Body": body})
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.exception("HTTP error sending Twilio SMS", extra={"to": to})
            raise SmsSendError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        if response.status_code >= 400:
            error_data = self._error_body(response)
            logger.error(
                "Twilio SMS send failed",
                extra={"status_code": response.status_code, "error": error_data, "to": to},
            )
            raise SmsSendError(
                message=error_data.get("message", "SMS send failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

        data = response.json()
        return SmsResponse(
            provider_message_id=data["sid"],
            status=data.get("status", "queued"),
            to=to,
            from_number=sender,
            raw_response=data,
        )

    def parse_status_event(self, payload: dict[str, Any]) -> StatusEvent:
        return parse_status_payload(payload)

    def parse_recording_event(self, payload: dict[str, Any]) -> RecordingEvent:
        return parse_recording_payload(payload)

    def parse_inbound_call(self, payload: dict[str, Any]) -> InboundCall:
        return parse_inbound_payload(payload)

    def validate_webhook_signature(self, payload: bytes, signature: str, url: str) -> bool:
        if not signature:
            return False
        if not self._config.twilio_auth_token:
            logger.error("No auth token configured; cannot validate webhook signature")
            return False

        try:
            expected = compute_signature(self._config.twilio_auth_token, url, payload)
        except UnicodeDecodeError:
            logger.warning("Webhook body is not valid UTF-8", extra={"url": url})
            return False
        return hmac.compare_digest(expected, signature)
