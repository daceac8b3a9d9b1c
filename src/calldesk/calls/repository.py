"""
Repositories for call records and call action log entries.
"""

from datetime import datetime
from typing import Protocol, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from calldesk.calls.models import Call, CallLog, CallStatus


class CallStoreProtocol(Protocol):
    """Protocol for call record persistence."""

    async def add(self, call: Call) -> Call:
        """Persist a new call record."""
        ...

    async def get(self, call_id: UUID, *, for_update: bool = False) -> Call | None:
        """Get call by internal id."""
        ...

    async def get_by_provider_call_id(
        self,
        provider_call_id: str,
        *,
        for_update: bool = False,
    ) -> Call | None:
        """Get call by provider call identifier."""
        ...

    async def save(self, call: Call) -> Call:
        """Flush pending changes of a call record."""
        ...

    async def list_for_user(
        self,
        user_id: str | None,
        *,
        status: CallStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[Sequence[Call], int]:
        """Page through calls, newest first. `user_id=None` lists every call."""
        ...

    async def commit(self) -> None:
        """Make all pending changes durable."""
        ...


class CallLogStoreProtocol(Protocol):
    """Protocol for the append-only call action log."""

    async def append(self, entry: CallLog) -> CallLog:
        """Persist a log entry."""
        ...

    async def list_for_call(self, call_id: UUID) -> Sequence[CallLog]:
        """Entries of one call, oldest first."""
        ...


class CallRepository:
    """SQLAlchemy-backed call store."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def add(self, call: Call) -> Call:
        self._session.add(call)
        await self._session.flush()
        await self._session.refresh(call)
        return call

    async def get(self, call_id: UUID, *, for_update: bool = False) -> Call | None:
        stmt = select(Call).where(Call.id == call_id)
        if for_update:
            # Re-read under a row lock; populate_existing refreshes the
            # identity-map copy with what another writer committed.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_call_id(
        self,
        provider_call_id: str,
        *,
        for_update: bool = False,
    ) -> Call | None:
        stmt = select(Call).where(Call.provider_call_id == provider_call_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def save(self, call: Call) -> Call:
        await self._session.flush()
        return call

    async def list_for_user(
        self,
        user_id: str | None,
        *,
        status: CallStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[Sequence[Call], int]:
        filters = []
        if user_id is not None:
            filters.append(Call.user_id == user_id)
        if status is not None:
            filters.append(Call.status == status)
        if start_date is not None:
            filters.append(Call.start_time >= start_date)
        if end_date is not None:
            filters.append(Call.start_time <= end_date)

        count_stmt = select(func.count()).select_from(Call).where(*filters)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Call)
            .where(*filters)
            .order_by(Call.start_time.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), int(total)

    async def commit(self) -> None:
        await self._session.commit()


class CallLogRepository:
    """SQLAlchemy-backed call action log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, entry: CallLog) -> CallLog:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_for_call(self, call_id: UUID) -> Sequence[CallLog]:
        stmt = (
            select(CallLog)
            .where(CallLog.call_id == call_id)
            .order_by(CallLog.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
