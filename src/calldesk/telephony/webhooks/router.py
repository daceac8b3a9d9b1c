"""
FastAPI router for telephony webhook endpoints.

Key constraints:
- every provider request must carry a valid signature (unless disabled)
- status and recording callbacks are always acknowledged with 200, even when
  processing fails, so the provider does not retry-storm
- voice webhooks always answer with TwiML
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from calldesk.calls.router import get_call_service
from calldesk.calls.service import CallLifecycleService
from calldesk.shared.database import get_db_session
from calldesk.shared.exceptions import AppError
from calldesk.shared.logging import get_logger
from calldesk.telephony.config import RECORDING_CALLBACK_PATH, TelephonyConfig
from calldesk.telephony.factory import get_telephony_config, get_telephony_provider
from calldesk.telephony.interface import TelephonyProvider, TelephonyProviderError
from calldesk.telephony.twiml import build_connect_to_agent, build_hangup, twiml_response
from calldesk.telephony.webhooks.handler import WebhookHandler

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"


def _abs_base(request: Request, config: TelephonyConfig) -> str:
    """
    Public base URL the provider used to reach us.

    Priority:
      1) TELEPHONY_WEBHOOK_BASE_URL
      2) X-Forwarded-Proto / X-Forwarded-Host (when behind tunnel/proxy)
      3) request.base_url (last resort)
    """
    configured = (config.webhook_base_url or "").strip()
    if configured:
        return configured.rstrip("/")

    xf_proto = (request.headers.get("x-forwarded-proto") or "").strip()
    xf_host = (request.headers.get("x-forwarded-host") or "").strip()
    if xf_host:
        proto = xf_proto or "https"
        return f"{proto}://{xf_host}"

    return str(request.base_url).rstrip("/")


def signed_url(request: Request, config: TelephonyConfig) -> str:
    """Full URL (path and query string) as signed by the provider."""
    url = f"{_abs_base(request, config)}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def verify_webhook_signature(
    request: Request,
    provider: Annotated[TelephonyProvider, Depends(get_telephony_provider)],
    config: Annotated[TelephonyConfig, Depends(get_telephony_config)],
) -> None:
    """Reject requests that were not signed by the provider."""
    if not config.validate_signatures:
        return

    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        logger.warning(
            "Webhook without signature rejected",
            extra={"endpoint": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "MISSING_SIGNATURE", "message": "Missing webhook signature"},
        )

    body = await request.body()
    url = signed_url(request, config)
    if not provider.validate_webhook_signature(body, signature, url):
        logger.warning(
            "Webhook with invalid signature rejected",
            extra={"endpoint": request.url.path, "url": url},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_SIGNATURE", "message": "Invalid webhook signature"},
        )


async def _payload(request: Request) -> dict[str, Any]:
    # Twilio posts form fields; our own call_id rides on the query string.
    form = await request.form()
    payload: dict[str, Any] = {k: v for k, v in form.items() if isinstance(v, str)}
    payload.update(dict(request.query_params))
    return payload


def get_webhook_handler(
    service: Annotated[CallLifecycleService, Depends(get_call_service)],
) -> WebhookHandler:
    return WebhookHandler(service)


router = APIRouter(
    prefix="/webhooks/telephony",
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_signature)],
)

calls_webhook_router = APIRouter(
    prefix="/calls",
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_signature)],
)


async def _ignored(session: AsyncSession, reason: str) -> dict[str, Any]:
    await session.rollback()
    return {"status": "ignored", "reason": reason}


@router.post("/status", status_code=status.HTTP_200_OK)
@calls_webhook_router.post("/webhook", status_code=status.HTTP_200_OK)
async def receive_status_callback(
    request: Request,
    provider: Annotated[TelephonyProvider, Depends(get_telephony_provider)],
    handler: Annotated[WebhookHandler, Depends(get_webhook_handler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> dict[str, Any]:
    """Call status callback. Always acknowledged."""
    payload = await _payload(request)
    try:
        event = provider.parse_status_event(payload)
        call = await handler.handle_status_event(event)
    except (AppError, TelephonyProviderError) as e:
        logger.warning(
            "Status callback not applied (ACKing 200)",
            extra={"error": str(e), "call_sid": payload.get("CallSid")},
        )
        return await _ignored(session, str(e))
    except Exception:
        logger.exception(
            "Failed to process status callback (ACKing 200)",
            extra={"call_sid": payload.get("CallSid")},
        )
        return await _ignored(session, "internal_error")

    return {"status": "ok", "callId": str(call.id), "callStatus": call.status.value}


@router.post("/recording", status_code=status.HTTP_200_OK)
async def receive_recording_callback(
    request: Request,
    provider: Annotated[TelephonyProvider, Depends(get_telephony_provider)],
    handler: Annotated[WebhookHandler, Depends(get_webhook_handler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> dict[str, Any]:
    """Recording status callback. Always acknowledged."""
    payload = await _payload(request)
    try:
        event = provider.parse_recording_event(payload)
        call = await handler.handle_recording_event(event)
    except (AppError, TelephonyProviderError) as e:
        logger.warning(
            "Recording callback not applied (ACKing 200)",
            extra={"error": str(e), "call_sid": payload.get("CallSid")},
        )
        return await _ignored(session, str(e))
    except Exception:
        logger.exception(
            "Failed to process recording callback (ACKing 200)",
            extra={"call_sid": payload.get("CallSid")},
        )
        return await _ignored(session, "internal_error")

    if call is None:
        return {"status": "ignored", "reason": "recording_not_completed"}
    return {"status": "ok", "callId": str(call.id), "recordingUrl": call.recording_url}


@router.post("/incoming")
async def receive_incoming_call(
    request: Request,
    provider: Annotated[TelephonyProvider, Depends(get_telephony_provider)],
    config: Annotated[TelephonyConfig, Depends(get_telephony_config)],
    handler: Annotated[WebhookHandler, Depends(get_webhook_handler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> Response:
    """Inbound call: record it and answer with the voice menu."""
    payload = await _payload(request)
    try:
        event = provider.parse_inbound_call(payload)
        await handler.handle_inbound_call(event)
    except Exception:
        logger.exception(
            "Inbound call webhook failed (returning safe TwiML)",
            extra={"call_sid": payload.get("CallSid")},
        )
        await session.rollback()
        return twiml_response(build_hangup(config.unavailable_message))

    return twiml_response(
        build_connect_to_agent(
            greeting=config.inbound_greeting,
            agent_number=config.agent_phone_number,
            unavailable_message=config.unavailable_message,
            record=config.record_calls,
            recording_callback_url=config.get_webhook_url(RECORDING_CALLBACK_PATH),
        )
    )


@router.post("/voice")
async def outbound_voice(
    config: Annotated[TelephonyConfig, Depends(get_telephony_config)],
) -> Response:
    """Answer URL of outbound calls: greet the callee and bridge the agent."""
    # Recording of outbound calls is requested at placement time.
    return twiml_response(
        build_connect_to_agent(
            greeting=config.outbound_greeting,
            agent_number=config.agent_phone_number,
            unavailable_message=config.unavailable_message,
        )
    )
