"""
Pydantic schemas for the calls API.

Wire format is camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from calldesk.calls.models import CallDirection, CallStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class InitiateCallRequest(CamelModel):
    """Body of POST /calls/initiate."""

    to_number: str = Field(..., min_length=1, max_length=64, description="Number to dial")
    from_number: str | None = Field(
        None,
        max_length=64,
        description="Caller id; defaults to the configured provider number",
    )

    @field_validator("to_number")
    @classmethod
    def _strip_to_number(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("toNumber must not be blank")
        return v


class InitiateCallResponse(CamelModel):
    call_id: UUID
    provider_call_id: str | None
    status: CallStatus


class CallResponse(CamelModel):
    """Full call record."""

    id: UUID
    provider_call_id: str | None = None
    user_id: str
    direction: CallDirection
    from_number: str
    to_number: str
    status: CallStatus
    start_time: datetime
    end_time: datetime | None = None
    duration: int | None = None
    recording_url: str | None = None
    recording_duration: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    extra_metadata: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CallStatusUpdateRequest(CamelModel):
    """Body of PUT /calls/{call_id}/status.

    Any field besides `status` and `eventTime` is treated as an extra field
    and merged onto the call.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    status: CallStatus
    event_time: datetime | None = None

    @property
    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class CallLogResponse(CamelModel):
    id: UUID
    call_id: UUID
    user_id: str | None = None
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class PaginationMeta(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class CallListResponse(CamelModel):
    items: list[CallResponse]
    meta: PaginationMeta


class SendSmsRequest(CamelModel):
    body: str = Field(..., min_length=1, max_length=1600)


class SendSmsResponse(CamelModel):
    message_id: str
    status: str
    to: str
