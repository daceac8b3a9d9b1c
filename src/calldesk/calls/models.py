"""
SQLAlchemy models for calls and their action log.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from calldesk.shared.database import Base

# Owner of provider-originated (inbound) calls.
SYSTEM_USER_ID = "system"


class CallStatus(str, Enum):
    """Call lifecycle status."""

    INITIATED = "INITIATED"
    QUEUED = "QUEUED"
    RINGING = "RINGING"
    IN_PROGRESS = "IN_PROGRESS"
    RECORDING_AVAILABLE = "RECORDING_AVAILABLE"
    COMPLETED = "COMPLETED"
    BUSY = "BUSY"
    FAILED = "FAILED"
    NO_ANSWER = "NO_ANSWER"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[CallStatus] = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.BUSY,
        CallStatus.FAILED,
        CallStatus.NO_ANSWER,
        CallStatus.CANCELED,
    }
)


class CallDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class Call(Base):
    """One attempted or completed telephone call."""

    __tablename__ = "calls"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    provider_call_id: Mapped[str | None] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    direction: Mapped[CallDirection] = mapped_column(
        SQLEnum(CallDirection, name="call_direction", native_enum=False, length=16),
        nullable=False,
        default=CallDirection.OUTBOUND,
    )
    from_number: Mapped[str] = mapped_column(String(64), nullable=False)
    to_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[CallStatus] = mapped_column(
        SQLEnum(CallStatus, name="call_status", native_enum=False, length=32),
        nullable=False,
        default=CallStatus.INITIATED,
        index=True,
    )
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    recording_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    @property
    def is_terminal(self) -> bool:
        return CallStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return f"<Call(id={self.id}, status={self.status}, provider_call_id={self.provider_call_id})>"


class CallLog(Base):
    """Immutable audit entry tied to one call."""

    __tablename__ = "call_logs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    call_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("calls.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    @property
    def details(self) -> dict[str, Any]:
        return json.loads(self.details_json or "{}")

    def __repr__(self) -> str:
        return f"<CallLog(call_id={self.call_id}, action={self.action})>"
