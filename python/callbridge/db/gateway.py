"""
Persistence Gateway.

Typed async queries against the CRM store (SQLAlchemy asyncio; asyncpg in
production). Every SQLAlchemy failure surfaces as PersistenceError so callers
can decide whether it is fatal to the operation at hand.

Phone numbers are matched by exact string equality. No normalization of
spacing, country code or formatting is applied.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.outcome import LIVE_STATUSES, CallStatus, parse_status
from ..errors import PersistenceError
from .models import Base, Call, Company, PhoneNumberCompany, User, UserPhone

logger = logging.getLogger("callbridge.db")


@dataclass(frozen=True)
class UserRef:
    id: int
    first_name: Optional[str]
    last_name: Optional[str]

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class CompanyRef:
    id: int
    name: str


@dataclass(frozen=True)
class CallStatusRow:
    status: str
    answered_at: Optional[datetime]


def call_to_dict(call: Call) -> Dict[str, Any]:
    """Serialize a Call row for CRM subscribers."""
    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "call_id": call.id,
        "caller_number": call.caller_number,
        "receiver_number": call.receiver_number,
        "status": call.status,
        "assigned_user_id": call.assigned_user_id,
        "answered_by_user_id": call.answered_by_user_id,
        "caller_company_id": call.caller_company_id,
        "channel_id": call.channel_id,
        "accepted_at": iso(call.accepted_at),
        "answered_at": iso(call.answered_at),
        "ended_at": iso(call.ended_at),
        "duration": call.duration,
        "recording_url": call.recording_url,
        "recording_status": call.recording_status,
        "notes": call.notes,
    }


class PersistenceGateway:
    """Async query surface used by the correlation engine and the hub."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        pool_size: int = 5,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
    ):
        """
        Initialize the gateway.

        Args:
            database_url: SQLAlchemy async URL (ignored when ``engine`` is given)
            pool_size: Base pool size for server databases
            echo: Log SQL statements
            engine: Pre-built AsyncEngine (tests)
        """
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
            if not database_url.startswith("sqlite"):
                kwargs.update(pool_size=pool_size, max_overflow=pool_size * 2, pool_recycle=1800)
            engine = create_async_engine(database_url, **kwargs)

        self.engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {e}")
            raise PersistenceError(f"{operation} failed: {e}", {"operation": operation}) from e

    async def create_schema(self) -> None:
        """Create missing tables (development and tests; production uses migrations)."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise PersistenceError(f"create schema failed: {e}") from e

    async def ping(self) -> bool:
        try:
            async with self._session("ping") as session:
                await session.execute(text("SELECT 1"))
            return True
        except PersistenceError:
            return False

    async def close(self) -> None:
        await self.engine.dispose()

    # Reference data ---------------------------------------------------

    async def find_user_by_phone(self, phone_number: Optional[str]) -> Optional[UserRef]:
        """User owning ``phone_number``; the primary-flagged phone wins ties."""
        if not phone_number:
            logger.warning("User lookup without phone number")
            return None

        stmt = (
            select(User.id, User.first_name, User.last_name)
            .join(UserPhone, UserPhone.user_id == User.id)
            .where(UserPhone.phone_number == phone_number)
            .order_by(UserPhone.is_primary.desc(), UserPhone.id)
            .limit(1)
        )
        async with self._session(f"user lookup for {phone_number}") as session:
            row = (await session.execute(stmt)).first()

        if row is None:
            logger.info(f"No user found for number {phone_number}")
            return None
        user = UserRef(id=row.id, first_name=row.first_name, last_name=row.last_name)
        logger.debug(f"User {user.id} ({user.full_name}) owns number {phone_number}")
        return user

    async def find_company_by_phone(self, phone_number: Optional[str]) -> Optional[CompanyRef]:
        if not phone_number:
            return None

        stmt = (
            select(Company.id, Company.name.label("name"))
            .join(PhoneNumberCompany, PhoneNumberCompany.company_id == Company.id)
            .where(PhoneNumberCompany.phone_number == phone_number)
            .order_by(PhoneNumberCompany.id)
            .limit(1)
        )
        async with self._session(f"company lookup for {phone_number}") as session:
            row = (await session.execute(stmt)).first()

        if row is None:
            return None
        return CompanyRef(id=row.id, name=row.name)

    async def find_user(self, user_id: int) -> Optional[UserRef]:
        async with self._session(f"user lookup {user_id}") as session:
            user = await session.get(User, user_id)
        if user is None:
            return None
        return UserRef(id=user.id, first_name=user.first_name, last_name=user.last_name)

    # Calls ------------------------------------------------------------

    async def insert_call(self, **fields: Any) -> int:
        """Insert a call row and return its id."""
        if "status" in fields and isinstance(fields["status"], CallStatus):
            fields["status"] = fields["status"].value

        async with self._session("insert call") as session:
            call = Call(**fields)
            session.add(call)
            await session.commit()
            call_id = call.id

        logger.debug(f"Call {call_id} inserted ({fields.get('status')})")
        return call_id

    async def update_call(self, call_id: int, **fields: Any) -> bool:
        """Update a call row. Returns False when no row matched."""
        if "status" in fields and isinstance(fields["status"], CallStatus):
            fields["status"] = fields["status"].value

        stmt = update(Call).where(Call.id == call_id).values(**fields)
        async with self._session(f"update call {call_id}") as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            logger.warning(f"Update matched no call with id {call_id}")
            return False
        return True

    async def record_pbx_answer(self, call_id: int, answered_at: datetime) -> bool:
        """
        Mark a call answered by the PBX.

        ``answered_at`` is written only while still empty, so a timestamp
        stamped earlier by a CRM accept is kept.
        """
        mark_answered = (
            update(Call)
            .where(Call.id == call_id)
            .values(status=CallStatus.ANSWERED.value)
        )
        stamp = (
            update(Call)
            .where(Call.id == call_id)
            .where(Call.answered_at.is_(None))
            .values(answered_at=answered_at)
        )
        async with self._session(f"answer call {call_id}") as session:
            result = await session.execute(mark_answered)
            await session.execute(stamp)
            await session.commit()

        if result.rowcount == 0:
            logger.warning(f"Answer matched no call with id {call_id}")
            return False
        return True

    async def find_call_status(self, call_id: int) -> Optional[CallStatusRow]:
        stmt = select(Call.status, Call.answered_at).where(Call.id == call_id)
        async with self._session(f"status of call {call_id}") as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return CallStatusRow(status=row.status, answered_at=row.answered_at)

    async def get_call(self, call_id: int) -> Optional[Dict[str, Any]]:
        async with self._session(f"fetch call {call_id}") as session:
            call = await session.get(Call, call_id)
        return call_to_dict(call) if call else None

    async def list_active_calls(self, user_id: int) -> List[Dict[str, Any]]:
        """Live calls assigned to or answered by ``user_id``, newest first."""
        stmt = (
            select(Call)
            .where(or_(Call.assigned_user_id == user_id, Call.answered_by_user_id == user_id))
            .where(Call.status.in_([status.value for status in LIVE_STATUSES]))
            .order_by(Call.id.desc())
        )
        async with self._session(f"active calls for user {user_id}") as session:
            calls = (await session.execute(stmt)).scalars().all()
        return [call_to_dict(call) for call in calls]

    async def record_crm_answer(
        self,
        call_id: int,
        accepted: bool,
        user_id: int,
        answered_at: datetime,
        notes: Optional[str] = None,
    ) -> bool:
        """
        Apply a CRM user's accept/reject decision.

        Accepting stamps ``answered_at`` only if the PBX has not already done
        so. Terminal rows are left untouched.
        """
        async with self._session(f"crm answer for call {call_id}") as session:
            call = await session.get(Call, call_id)
            if call is None:
                return False
            current = parse_status(call.status)
            if current is not None and current.is_terminal:
                logger.warning(f"Call {call_id} already {call.status}, CRM answer ignored")
                return False

            call.status = (CallStatus.ACCEPTED if accepted else CallStatus.REJECTED).value
            call.answered_by_user_id = user_id
            if notes is not None:
                call.notes = notes
            if accepted and call.answered_at is None:
                call.answered_at = answered_at
            await session.commit()
        return True
