"""
Desk State Machine

Tracks table occupancy:

    available ──(order created)──────────────────────────► occupied
    occupied  ──(no active unpaid orders left / release)──► available

A desk is occupied iff it has at least one order that is pending,
preparing or ready and not yet paid. Transitions other than release()
join the caller's transaction; the caller commits.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    OccupancyInvariantViolation,
)
from tableside.database import is_lock_conflict
from tableside.models import (
    ACTIVE_ORDER_STATUSES,
    Desk,
    DeskState,
    Order,
    OrderStatus,
    TableSession,
)
from tableside.services.cart import CartStore
from tableside.services.sessions import check_table_number

logger = logging.getLogger(__name__)


def _keeps_desk_occupied():
    return and_(Order.status.in_(ACTIVE_ORDER_STATUSES), Order.paid.is_(False))


@dataclass
class DeskStatus:
    """A desk with the orders that explain its occupancy."""
    desk: Desk
    active_order_count: int = 0
    current_order_id: Optional[int] = None

    @property
    def is_occupied(self) -> bool:
        return self.desk.occupancy == DeskState.OCCUPIED


@dataclass
class ReleaseResult:
    desk: Desk
    cancelled_order_ids: list[int] = field(default_factory=list)
    cleared_cart_lines: int = 0


class DeskStateMachine:
    """Occupancy transitions for desks."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # LOOKUP / REGISTRATION
    # =========================================================================

    async def get(self, desk_id: int, shop_id: Optional[int] = None, for_update: bool = False) -> Desk:
        query = select(Desk).where(Desk.id == desk_id)
        if shop_id is not None:
            query = query.where(Desk.shop_id == shop_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        desk = result.scalar_one_or_none()
        if desk is None:
            raise NotFoundError(f"Desk #{desk_id} not found", detail={"desk_id": desk_id})
        return desk

    async def find(self, shop_id: int, number: str, for_update: bool = False) -> Optional[Desk]:
        query = select(Desk).where(Desk.shop_id == shop_id, Desk.number == number)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def ensure_desk(self, shop_id: int, number: str) -> Desk:
        """Locked desk for a table number, created on first use (no commit)."""
        desk = await self.find(shop_id, number, for_update=True)
        if desk is None:
            desk = Desk(shop_id=shop_id, number=number, occupancy=DeskState.AVAILABLE)
            self.db.add(desk)
            await self.db.flush()
            logger.info(f"Desk #{desk.id} registered for table {number} (shop {shop_id})")
        return desk

    async def register(self, shop_id: int, number: str, capacity: int = 4) -> Desk:
        """Create a desk; returns the existing one if the number is taken."""
        check_table_number(number)
        desk = await self.find(shop_id, number)
        if desk is not None:
            return desk

        desk = Desk(shop_id=shop_id, number=number, capacity=capacity, occupancy=DeskState.AVAILABLE)
        self.db.add(desk)
        try:
            await self.db.commit()
        except IntegrityError:
            # Registered concurrently by another request
            await self.db.rollback()
            desk = await self.find(shop_id, number)
            if desk is None:
                raise
            return desk

        logger.info(f"Desk #{desk.id} registered for table {number} (shop {shop_id})")
        return desk

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def occupy(self, desk: Desk) -> Desk:
        """available → occupied. Only order creation calls this."""
        if desk.occupancy != DeskState.OCCUPIED:
            desk.occupancy = DeskState.OCCUPIED
            await self.db.flush()
            logger.info(f"Desk #{desk.id} (table {desk.number}): available → occupied")
        return desk

    async def reevaluate(self, desk_id: Optional[int]) -> Optional[Desk]:
        """
        Re-derive occupancy after an order status or paid change.

        Releases the desk once no active unpaid order remains. An available
        desk that still has such orders is a broken invariant: it is logged
        as an error and put back to occupied.
        """
        if desk_id is None:
            return None

        desk = await self.get(desk_id, for_update=True)
        active = await self.active_order_count(desk_id)

        if active == 0 and desk.occupancy == DeskState.OCCUPIED:
            desk.occupancy = DeskState.AVAILABLE
            await self.db.flush()
            logger.info(f"Desk #{desk.id} (table {desk.number}): occupied → available")
        elif active > 0 and desk.occupancy == DeskState.AVAILABLE:
            logger.error(
                f"Occupancy invariant broken: desk #{desk.id} is available "
                f"with {active} active unpaid order(s); marking occupied"
            )
            desk.occupancy = DeskState.OCCUPIED
            await self.db.flush()
        return desk

    async def release(self, desk_id: int, shop_id: Optional[int] = None) -> ReleaseResult:
        """
        Administrative reset of a desk.

        Cancels every non-terminal order, clears the carts of sessions bound
        to the desk and forces the desk available, in one transaction.
        """
        try:
            desk = await self.get(desk_id, shop_id=shop_id, for_update=True)

            result = await self.db.execute(
                select(Order)
                .where(
                    Order.desk_id == desk_id,
                    Order.status.in_(ACTIVE_ORDER_STATUSES),
                )
                .with_for_update()
            )
            cancelled = []
            for order in result.scalars().all():
                order.status = OrderStatus.CANCELLED
                cancelled.append(order.id)

            session_ids = (
                await self.db.execute(
                    select(TableSession.id).where(
                        TableSession.shop_id == desk.shop_id,
                        TableSession.table_number == desk.number,
                    )
                )
            ).scalars().all()
            cleared = await CartStore(self.db).delete_lines(*session_ids)

            previous = desk.occupancy
            desk.occupancy = DeskState.AVAILABLE
            await self.db.flush()

            await self.verify(desk_id)
            await self.db.commit()
        except OperationalError as exc:
            await self.db.rollback()
            if is_lock_conflict(exc):
                raise ConcurrencyConflict(f"Desk #{desk_id} is locked by another request") from exc
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Desk #{desk.id} (table {desk.number}) released: {previous.value} → available, "
            f"cancelled orders {cancelled}, cleared {cleared} cart line(s)"
        )
        return ReleaseResult(desk=desk, cancelled_order_ids=cancelled, cleared_cart_lines=cleared)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def active_order_count(self, desk_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Order.id)).where(Order.desk_id == desk_id, _keeps_desk_occupied())
        )
        return result.scalar() or 0

    async def verify(self, desk_id: int) -> Desk:
        """Raise OccupancyInvariantViolation if stored state and orders disagree."""
        desk = await self.get(desk_id)
        active = await self.active_order_count(desk_id)
        expected = DeskState.OCCUPIED if active > 0 else DeskState.AVAILABLE
        if desk.occupancy != expected:
            raise OccupancyInvariantViolation(
                f"Desk #{desk_id} is {desk.occupancy.value} but has {active} active unpaid order(s)",
                detail={"desk_id": desk_id, "active_orders": active},
            )
        return desk

    async def status(self, desk: Desk) -> DeskStatus:
        order_ids = (
            await self.db.execute(
                select(Order.id)
                .where(Order.desk_id == desk.id, _keeps_desk_occupied())
                .order_by(Order.created_at.desc(), Order.id.desc())
            )
        ).scalars().all()
        return DeskStatus(
            desk=desk,
            active_order_count=len(order_ids),
            current_order_id=order_ids[0] if order_ids else None,
        )

    async def list_desks(self, shop_id: int) -> list[DeskStatus]:
        """Desks of a shop with their active order count and latest active order."""
        desks = (
            await self.db.execute(
                select(Desk).where(Desk.shop_id == shop_id).order_by(Desk.number)
            )
        ).scalars().all()

        rows = (
            await self.db.execute(
                select(Order.desk_id, Order.id)
                .where(Order.shop_id == shop_id, Order.desk_id.is_not(None), _keeps_desk_occupied())
                .order_by(Order.created_at.desc(), Order.id.desc())
            )
        ).all()

        statuses = {desk.id: DeskStatus(desk=desk) for desk in desks}
        for desk_id, order_id in rows:
            status = statuses.get(desk_id)
            if status is None:
                continue
            status.active_order_count += 1
            if status.current_order_id is None:
                status.current_order_id = order_id

        for status in statuses.values():
            expected = status.active_order_count > 0
            if status.is_occupied != expected:
                logger.error(
                    f"Occupancy invariant broken: desk #{status.desk.id} is "
                    f"{status.desk.occupancy.value} with {status.active_order_count} active order(s)"
                )
        return list(statuses.values())

    async def audit(self, shop_id: int) -> list[int]:
        """Ids of desks whose stored occupancy disagrees with their orders."""
        return [
            status.desk.id
            for status in await self.list_desks(shop_id)
            if status.is_occupied != (status.active_order_count > 0)
        ]
