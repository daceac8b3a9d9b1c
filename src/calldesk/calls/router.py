"""
Calls API router.

Domain errors raised by the service (ValidationError, NotFoundError,
ForbiddenError, provider errors) are mapped to HTTP responses in
calldesk.main.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from calldesk.auth.middleware import CurrentUserDep
from calldesk.auth.rbac import is_admin
from calldesk.calls.models import CallStatus
from calldesk.calls.repository import CallLogRepository, CallRepository
from calldesk.calls.schemas import (
    CallListResponse,
    CallLogResponse,
    CallResponse,
    CallStatusUpdateRequest,
    InitiateCallRequest,
    InitiateCallResponse,
    PaginationMeta,
    SendSmsRequest,
    SendSmsResponse,
)
from calldesk.calls.service import CallLifecycleService
from calldesk.config import Settings, get_settings
from calldesk.shared.database import get_db_session
from calldesk.shared.logging import get_logger
from calldesk.telephony.config import TelephonyConfig
from calldesk.telephony.factory import get_telephony_config, get_telephony_provider
from calldesk.telephony.interface import TelephonyProvider

logger = get_logger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])


def get_call_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    provider: Annotated[TelephonyProvider, Depends(get_telephony_provider)],
    config: Annotated[TelephonyConfig, Depends(get_telephony_config)],
) -> CallLifecycleService:
    return CallLifecycleService(
        store=CallRepository(session),
        log_store=CallLogRepository(session),
        gateway=provider,
        telephony_config=config,
    )


CallServiceDep = Annotated[CallLifecycleService, Depends(get_call_service)]


@router.post(
    "/initiate",
    response_model=InitiateCallResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Missing phone number"},
        401: {"description": "Not authenticated"},
    },
)
async def initiate_call(
    body: InitiateCallRequest,
    current_user: CurrentUserDep,
    service: CallServiceDep,
) -> InitiateCallResponse:
    """Create a call and place it through the telephony provider.

    Provider failures do not fail the request: the returned call is FAILED
    and carries the provider error.
    """
    call = await service.initiate_call(
        user_id=current_user.id,
        to_number=body.to_number,
        from_number=body.from_number,
    )
    return InitiateCallResponse(
        call_id=call.id,
        provider_call_id=call.provider_call_id,
        status=call.status,
    )


@router.get("", response_model=CallListResponse)
async def list_calls(
    current_user: CurrentUserDep,
    service: CallServiceDep,
    settings: Annotated[Settings, Depends(get_settings)],
    status_filter: Annotated[
        CallStatus | None,
        Query(alias="status", description="Filter by call status"),
    ] = None,
    start_date: Annotated[
        datetime | None,
        Query(alias="startDate", description="Calls started at or after this time"),
    ] = None,
    end_date: Annotated[
        datetime | None,
        Query(alias="endDate", description="Calls started at or before this time"),
    ] = None,
    page: Annotated[int, Query(ge=1, description="Page number (1-indexed)")] = 1,
    limit: Annotated[int | None, Query(ge=1, description="Items per page")] = None,
) -> CallListResponse:
    """Paginated call history of the current user (all calls for admins).

    Page size defaults to `default_page_size` and is capped at `max_page_size`.
    """
    if limit is None:
        limit = settings.default_page_size
    elif limit > settings.max_page_size:
        raise RequestValidationError(
            [
                {
                    "loc": ("query", "limit"),
                    "msg": f"Input should be less than or equal to {settings.max_page_size}",
                    "type": "less_than_equal",
                    "input": limit,
                }
            ]
        )
    result = await service.list_calls_for_user(
        current_user.id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
        is_admin=is_admin(current_user),
    )
    return CallListResponse(
        items=[CallResponse.model_validate(c) for c in result.items],
        meta=PaginationMeta(
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.pages,
        ),
    )


@router.get(
    "/{call_id}",
    response_model=CallResponse,
    responses={
        403: {"description": "Call belongs to another user"},
        404: {"description": "Call not found"},
    },
)
async def get_call(
    call_id: str,
    current_user: CurrentUserDep,
    service: CallServiceDep,
) -> CallResponse:
    call = await service.get_call_for_user(call_id, current_user.id, is_admin=is_admin(current_user))
    return CallResponse.model_validate(call)


@router.put(
    "/{call_id}/status",
    response_model=CallResponse,
    responses={
        403: {"description": "Call belongs to another user"},
        404: {"description": "Call not found"},
    },
)
async def update_call_status(
    call_id: str,
    body: CallStatusUpdateRequest,
    current_user: CurrentUserDep,
    service: CallServiceDep,
) -> CallResponse:
    """Manual status override; follows the same rules as provider webhooks."""
    call = await service.get_call_for_user(call_id, current_user.id, is_admin=is_admin(current_user))
    logger.info(
        "Manual status update",
        extra={
            "call_id": str(call.id),
            "user_id": current_user.id,
            "status": body.status.value,
        },
    )
    call = await service.apply_status_event(
        call.id,
        body.status,
        event_time=body.event_time,
        extra_fields=body.extra_fields,
        actor_id=current_user.id,
    )
    return CallResponse.model_validate(call)


@router.get("/{call_id}/logs", response_model=list[CallLogResponse])
async def get_call_logs(
    call_id: str,
    current_user: CurrentUserDep,
    service: CallServiceDep,
) -> list[CallLogResponse]:
    entries = await service.get_call_logs(call_id, current_user.id, is_admin=is_admin(current_user))
    return [CallLogResponse.model_validate(e) for e in entries]


@router.post("/{call_id}/sms", response_model=SendSmsResponse)
async def send_sms(
    call_id: str,
    body: SendSmsRequest,
    current_user: CurrentUserDep,
    service: CallServiceDep,
) -> SendSmsResponse:
    result = await service.send_sms(
        call_id,
        current_user.id,
        body.body,
        is_admin=is_admin(current_user),
    )
    return SendSmsResponse(
        message_id=result.provider_message_id,
        status=result.status,
        to=result.to,
    )
