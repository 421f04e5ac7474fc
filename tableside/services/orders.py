"""
Order Service

Turns a session's cart into an immutable order and drives the order
status workflow:

    pending → preparing → ready → completed
    (any non-terminal state) → cancelled

Order creation is one transaction: order row, order items, cart delete
and desk occupancy commit together or not at all.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tableside.core.config import get_settings
from tableside.core.exceptions import (
    ConcurrencyConflict,
    EmptyCartError,
    InvalidStateTransition,
    NotFoundError,
    OrderCreationFailed,
    TablesideError,
    ValidationError,
)
from tableside.database import is_lock_conflict
from tableside.models import Order, OrderItem, OrderStatus
from tableside.schemas import parse_customization_options
from tableside.services import pricing
from tableside.services.cart import CartStore, unit_price_cents
from tableside.services.desks import DeskStateMachine
from tableside.services.sessions import SessionManager, check_table_number

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Attempts for the create_order critical section: the first try plus one retry
CREATE_ORDER_ATTEMPTS = 2


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS[current]


def order_totals(items: Iterable[OrderItem]) -> pricing.Totals:
    """Totals computed from frozen order items."""
    return pricing.cart_totals(
        ((item.quantity, item.price_cents) for item in items),
        fee_percent=get_settings().service_fee_percent,
    )


class OrderService:
    """Order creation, status workflow and payment flag."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()
        self.sessions = SessionManager(db)
        self.cart = CartStore(db, sessions=self.sessions)
        self.desks = DeskStateMachine(db)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_order(
        self,
        session_id: str,
        table_number: str,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """
        Place the session's cart as an order.

        A ConcurrencyConflict is retried once, then surfaced. Without an
        idempotency key the call is not safe to retry from the client.

        Raises:
            SessionNotFound / ExpiredSessionError: Session not usable
            ValidationError: Table number malformed or not the session's table
            EmptyCartError: Nothing to order
            ConcurrencyConflict: Still conflicting after the retry
            OrderCreationFailed: Any other storage failure (rolled back)
        """
        attempt = 1
        while True:
            try:
                return await self._create_order_once(session_id, table_number, idempotency_key)
            except ConcurrencyConflict as exc:
                if attempt >= CREATE_ORDER_ATTEMPTS:
                    logger.error(f"Order for {session_id} still conflicting after retry: {exc.message}")
                    raise
                logger.warning(f"Order for {session_id} hit a conflict, retrying: {exc.message}")
                attempt += 1

    async def _create_order_once(
        self,
        session_id: str,
        table_number: str,
        idempotency_key: Optional[str],
    ) -> Order:
        try:
            session = await self.sessions.validate(session_id, for_update=True)
            check_table_number(table_number)
            if session.table_number != table_number:
                raise ValidationError(
                    f"Session '{session_id}' belongs to table {session.table_number}, not {table_number}",
                    detail={"table_number": table_number},
                )

            if idempotency_key:
                existing = await self._find_by_idempotency_key(session_id, idempotency_key)
                if existing is not None:
                    await self.db.commit()
                    logger.info(f"Order #{existing.id} replayed for idempotency key {idempotency_key}")
                    return existing

            lines = await self.cart.get_items(session_id)
            if not lines:
                raise EmptyCartError(f"Cart for session '{session_id}' is empty")

            items = []
            for line in lines:
                menu_item = line.menu_item
                options = parse_customization_options(menu_item.customization_options)
                items.append(
                    OrderItem(
                        menu_item_id=line.menu_item_id,
                        quantity=line.quantity,
                        price_cents=unit_price_cents(line),
                        customization_cost_cents=line.customization_cost_cents,
                        item_name=menu_item.name,
                        customizations=dict(line.customizations or {}),
                        customization_labels=pricing.describe_customizations(
                            options, line.customizations or {}
                        ),
                        special_instructions=line.special_instructions,
                    )
                )

            totals = order_totals(items)

            desk = await self.desks.ensure_desk(session.shop_id, table_number)

            order = Order(
                session_id=session_id,
                shop_id=session.shop_id,
                desk_id=desk.id,
                table_number=table_number,
                idempotency_key=idempotency_key,
                status=OrderStatus.PENDING,
                paid=False,
                subtotal_cents=totals.subtotal,
                service_fee_cents=totals.service_fee,
                total_cents=totals.total,
                items=items,
            )
            self.db.add(order)
            await self.db.flush()

            await self.cart.delete_lines(session_id)
            await self.desks.occupy(desk)

            await self.db.commit()

        except TablesideError:
            await self.db.rollback()
            raise
        except (StaleDataError, IntegrityError) as exc:
            await self.db.rollback()
            raise ConcurrencyConflict(
                f"Competing write while creating order for session '{session_id}'"
            ) from exc
        except OperationalError as exc:
            await self.db.rollback()
            if is_lock_conflict(exc):
                raise ConcurrencyConflict(
                    f"Rows for session '{session_id}' are locked by another request"
                ) from exc
            logger.exception(f"Order creation failed for session {session_id}")
            raise OrderCreationFailed("Failed to create order") from exc
        except Exception as exc:
            await self.db.rollback()
            logger.exception(f"Order creation failed for session {session_id}")
            raise OrderCreationFailed("Failed to create order") from exc

        logger.info(
            f"Order #{order.id} created for table {table_number} "
            f"({len(items)} line(s), total {pricing.from_cents(order.total_cents)})"
        )
        return order

    # =========================================================================
    # TRANSITIONS
    # =========================================================================
    #
    # Lock order: desk row first, then order rows (as in release and settle_desk).

    async def update_status(self, order_id: int, shop_id: int, new_status: OrderStatus) -> Order:
        """
        Move an order along the workflow and re-evaluate its desk.

        Raises:
            NotFoundError: Unknown order or different shop
            InvalidStateTransition: Edge not in ORDER_TRANSITIONS
            ConcurrencyConflict: Order changed or locked by another request
        """
        new_status = OrderStatus(new_status)
        try:
            order = await self._lock_desk_then_order(order_id, shop_id)
            previous = order.status
            if not can_transition(previous, new_status):
                raise InvalidStateTransition(
                    f"Order #{order_id} cannot move from {previous.value} to {new_status.value}",
                    detail={"from": previous.value, "to": new_status.value},
                )

            order.status = new_status
            await self.db.flush()
            await self.desks.reevaluate(order.desk_id)
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrencyConflict(f"Order #{order_id} was changed concurrently") from exc
        except OperationalError as exc:
            await self.db.rollback()
            if is_lock_conflict(exc):
                raise ConcurrencyConflict(f"Order #{order_id} is locked by another request") from exc
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order #{order_id}: {previous.value} → {new_status.value}")
        return order

    async def mark_paid(self, order_id: int, shop_id: Optional[int] = None) -> Order:
        """Set paid=true; repeated calls are no-ops. Re-evaluates the desk."""
        try:
            order = await self._lock_desk_then_order(order_id, shop_id)
            if order.paid:
                await self.db.commit()
                return order

            order.paid = True
            await self.db.flush()
            await self.desks.reevaluate(order.desk_id)
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrencyConflict(f"Order #{order_id} was changed concurrently") from exc
        except OperationalError as exc:
            await self.db.rollback()
            if is_lock_conflict(exc):
                raise ConcurrencyConflict(f"Order #{order_id} is locked by another request") from exc
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order #{order_id} marked paid")
        return order

    async def settle_desk(self, desk_id: int, shop_id: int) -> list[Order]:
        """Checkout: mark every unpaid, non-cancelled order of the desk paid."""
        try:
            await self.desks.get(desk_id, shop_id=shop_id, for_update=True)
            result = await self.db.execute(
                select(Order)
                .where(
                    Order.desk_id == desk_id,
                    Order.status != OrderStatus.CANCELLED,
                    Order.paid.is_(False),
                )
                .order_by(Order.id)
                .with_for_update()
            )
            orders = list(result.scalars().all())
            for order in orders:
                order.paid = True
            await self.db.flush()

            await self.desks.reevaluate(desk_id)
            await self.desks.verify(desk_id)
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrencyConflict(f"Orders of desk #{desk_id} were changed concurrently") from exc
        except OperationalError as exc:
            await self.db.rollback()
            if is_lock_conflict(exc):
                raise ConcurrencyConflict(f"Desk #{desk_id} is locked by another request") from exc
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Desk #{desk_id} settled: {[o.id for o in orders]} marked paid")
        return orders

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, order_id: int, shop_id: Optional[int] = None) -> Order:
        query = select(Order).where(Order.id == order_id)
        if shop_id is not None:
            query = query.where(Order.shop_id == shop_id)
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found", detail={"order_id": order_id})
        return order

    async def list_orders(
        self,
        shop_id: int,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Order]:
        query = select(Order).where(Order.shop_id == shop_id)
        if status is not None:
            query = query.where(Order.status == status)
        query = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def orders_for_session(self, session_id: str, include_paid: bool = False) -> list[Order]:
        """Orders visible to the diner holding this session. The session must be active."""
        await self.sessions.validate(session_id)
        query = select(Order).where(Order.session_id == session_id)
        if not include_paid:
            query = query.where(Order.paid.is_(False))
        result = await self.db.execute(query.order_by(Order.created_at.desc(), Order.id.desc()))
        return list(result.scalars().all())

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _lock_desk_then_order(self, order_id: int, shop_id: Optional[int]) -> Order:
        query = select(Order.desk_id).where(Order.id == order_id)
        if shop_id is not None:
            query = query.where(Order.shop_id == shop_id)
        row = (await self.db.execute(query)).one_or_none()
        if row is None:
            raise NotFoundError(f"Order #{order_id} not found", detail={"order_id": order_id})

        if row.desk_id is not None:
            await self.desks.get(row.desk_id, for_update=True)
        return await self._get_for_update(order_id, shop_id)

    async def _get_for_update(self, order_id: int, shop_id: Optional[int]) -> Order:
        query = select(Order).where(Order.id == order_id).with_for_update()
        if shop_id is not None:
            query = query.where(Order.shop_id == shop_id)
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found", detail={"order_id": order_id})
        return order

    async def _find_by_idempotency_key(self, session_id: str, key: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(Order.session_id == session_id, Order.idempotency_key == key)
        )
        return result.scalar_one_or_none()
