"""
Session Manager

Creates, validates and retires per-table sessions. The session id is the
only credential a diner holds; every cart and order call receives it
explicitly.
"""

import logging
import re
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import get_settings
from tableside.core.exceptions import (
    ExpiredSessionError,
    InvalidTableNumber,
    SessionNotFound,
)
from tableside.models import SessionStatus, TableSession, as_utc, utcnow

logger = logging.getLogger(__name__)

TABLE_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_TABLE_NUMBER_LENGTH = 50


def check_table_number(table_number: str) -> str:
    if (
        not table_number
        or len(table_number) > MAX_TABLE_NUMBER_LENGTH
        or not TABLE_NUMBER_PATTERN.match(table_number)
    ):
        raise InvalidTableNumber(
            f"Invalid table number '{table_number}': use letters, digits, '-' or '_'",
            detail={"table_number": table_number},
        )
    return table_number


def generate_session_id(table_number: str) -> str:
    """session-{table}-{epoch millis}-{random}; readable in logs, never parsed."""
    millis = int(time.time() * 1000)
    return f"session-{table_number}-{millis}-{uuid.uuid4().hex[:12]}"


class SessionManager:
    """
    Table session lifecycle.

    Writes commit immediately. validate() never writes, so a rejected
    session has no side effects on the caller's transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()

    async def create(
        self,
        table_number: str,
        shop_id: Optional[int] = None,
        ttl_hours: Optional[int] = None,
    ) -> TableSession:
        check_table_number(table_number)
        now = utcnow()
        ttl = ttl_hours or self.settings.session_ttl_hours

        session = TableSession(
            id=generate_session_id(table_number),
            table_number=table_number,
            shop_id=shop_id or self.settings.default_shop_id,
            status=SessionStatus.ACTIVE,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(hours=ttl),
        )
        self.db.add(session)
        await self.db.commit()

        logger.info(f"Session created: {session.id} for table {table_number} (ttl {ttl}h)")
        return session

    async def get(self, session_id: str, for_update: bool = False) -> TableSession:
        """Fetch a session regardless of its status."""
        query = select(TableSession).where(TableSession.id == session_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        session = result.scalar_one_or_none()
        if session is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        return session

    async def validate(self, session_id: str, for_update: bool = False) -> TableSession:
        """
        Return the session if it is active and unexpired.

        Args:
            session_id: Caller-supplied session token
            for_update: Lock the session row until the caller's transaction ends

        Raises:
            SessionNotFound: Unknown id
            ExpiredSessionError: Past expires_at, or expired/completed
        """
        session = await self.get(session_id, for_update=for_update)

        if session.status != SessionStatus.ACTIVE:
            raise ExpiredSessionError(
                f"Session '{session_id}' is {session.status.value}",
                detail={"status": session.status.value},
            )
        if utcnow() > as_utc(session.expires_at):
            raise ExpiredSessionError(
                f"Session '{session_id}' expired at {as_utc(session.expires_at).isoformat()}",
                detail={"status": "expired"},
            )
        return session

    async def touch(self, session_id: str) -> TableSession:
        """Record activity. Does not extend expires_at."""
        session = await self.validate(session_id, for_update=True)
        session.last_activity_at = utcnow()
        await self.db.commit()
        return session

    async def complete(self, session_id: str) -> TableSession:
        """Mark the session completed; repeated calls are no-ops."""
        session = await self.get(session_id, for_update=True)
        if session.status == SessionStatus.COMPLETED:
            await self.db.commit()
            return session

        session.status = SessionStatus.COMPLETED
        session.last_activity_at = utcnow()
        await self.db.commit()

        logger.info(f"Session completed: {session_id}")
        return session

    async def table_sessions(self, table_number: str, shop_id: int) -> list[TableSession]:
        """Active, unexpired sessions for a table, most recently active first."""
        result = await self.db.execute(
            select(TableSession)
            .where(
                TableSession.table_number == table_number,
                TableSession.shop_id == shop_id,
                TableSession.status == SessionStatus.ACTIVE,
                TableSession.expires_at > utcnow(),
            )
            .order_by(TableSession.last_activity_at.desc())
        )
        return list(result.scalars().all())

    async def reset_table(self, table_number: str, shop_id: int) -> int:
        """Expire every active session of a table. Returns the count."""
        check_table_number(table_number)
        result = await self.db.execute(
            update(TableSession)
            .where(
                TableSession.table_number == table_number,
                TableSession.shop_id == shop_id,
                TableSession.status == SessionStatus.ACTIVE,
            )
            .values(status=SessionStatus.EXPIRED, last_activity_at=utcnow())
        )
        await self.db.commit()

        logger.info(f"Reset {result.rowcount} sessions for table {table_number} (shop {shop_id})")
        return result.rowcount

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark active sessions past expires_at as expired. Housekeeping only."""
        now = now or utcnow()
        result = await self.db.execute(
            update(TableSession)
            .where(
                TableSession.status == SessionStatus.ACTIVE,
                TableSession.expires_at < now,
            )
            .values(status=SessionStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount:
            logger.info(f"Expired {result.rowcount} stale sessions")
        return result.rowcount
