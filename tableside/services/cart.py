"""
Cart Store

Per-session cart lines. Every query is filtered by session id; a line is
never reachable through another session. Mutations lock the session row,
so concurrent requests for the same session are serialized by the
database rather than by this process.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import get_settings
from tableside.core.exceptions import NotFoundError, ValidationError
from tableside.models import CartItem, MenuItem, TableSession, utcnow
from tableside.schemas import parse_customization_options
from tableside.services import pricing
from tableside.services.sessions import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class CartSummary:
    session_id: str
    items: list[CartItem]
    totals: pricing.Totals

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


def unit_price_cents(item: CartItem) -> int:
    """Current base price plus the customization cost cached on the line."""
    return item.menu_item.price_cents + item.customization_cost_cents


class CartStore:
    """Session-scoped cart operations."""

    def __init__(self, db: AsyncSession, sessions: Optional[SessionManager] = None):
        self.db = db
        self.sessions = sessions or SessionManager(db)
        self.settings = get_settings()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_items(self, session_id: str) -> list[CartItem]:
        """Lines of one session, in the order they were added."""
        result = await self.db.execute(
            select(CartItem)
            .where(CartItem.session_id == session_id)
            .order_by(CartItem.id)
        )
        return list(result.scalars().unique().all())

    async def summary(self, session_id: str) -> CartSummary:
        await self.sessions.validate(session_id)
        items = await self.get_items(session_id)
        totals = pricing.cart_totals(
            ((item.quantity, unit_price_cents(item)) for item in items),
            fee_percent=self.settings.service_fee_percent,
        )
        return CartSummary(session_id=session_id, items=items, totals=totals)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add_item(
        self,
        session_id: str,
        menu_item_id: int,
        quantity: int = 1,
        customizations: Optional[Mapping[str, Any]] = None,
        instructions: Optional[str] = None,
    ) -> CartItem:
        """
        Add a menu item to the session's cart.

        Identical (menu item, customization signature) pairs merge into one
        line by incrementing its quantity.

        Raises:
            SessionNotFound / ExpiredSessionError: From session validation
            ValidationError: Quantity below 1 or item unavailable
            NotFoundError: Menu item not in the session's shop
            UnknownCustomization: Selections don't match the item's options
        """
        customizations = dict(customizations or {})
        try:
            session = await self.sessions.validate(session_id, for_update=True)

            if quantity < 1:
                raise ValidationError("Quantity must be at least 1", detail={"quantity": quantity})

            menu_item = await self._get_menu_item(menu_item_id, session.shop_id)
            if not menu_item.is_available:
                raise ValidationError(
                    f"'{menu_item.name}' is currently unavailable",
                    detail={"menu_item_id": menu_item_id},
                )

            options = parse_customization_options(menu_item.customization_options)
            pricing.validate_customizations(options, customizations)
            signature = pricing.customization_signature(customizations)

            existing = await self.db.execute(
                select(CartItem).where(
                    CartItem.session_id == session_id,
                    CartItem.menu_item_id == menu_item_id,
                    CartItem.signature == signature,
                )
            )
            line = existing.scalars().first()

            if line is not None:
                line.quantity += quantity
                if instructions:
                    line.special_instructions = instructions
                logger.debug(f"Cart {session_id}: merged item {menu_item_id} into line #{line.id}")
            else:
                line = CartItem(
                    session_id=session_id,
                    menu_item_id=menu_item_id,
                    quantity=quantity,
                    customizations=pricing.normalize_customizations(customizations),
                    signature=signature,
                    special_instructions=instructions or None,
                    customization_cost_cents=pricing.customization_cost(options, customizations),
                )
                line.menu_item = menu_item
                self.db.add(line)

            self._touch(session)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Cart {session_id}: added {quantity} x item {menu_item_id}")
        return line

    async def update_quantity(
        self,
        session_id: str,
        menu_item_id: int,
        quantity: int,
        cart_item_id: Optional[int] = None,
    ) -> Optional[CartItem]:
        """
        Set a line's quantity. Zero or less removes the line and returns None.

        Raises:
            NotFoundError: No matching line in this session
            ValidationError: Several lines for the item and no cart_item_id
        """
        try:
            session = await self.sessions.validate(session_id, for_update=True)
            lines = await self._matching_lines(session_id, menu_item_id, cart_item_id)
            if not lines:
                raise NotFoundError(
                    f"Menu item {menu_item_id} is not in the cart",
                    detail={"menu_item_id": menu_item_id, "cart_item_id": cart_item_id},
                )
            if len(lines) > 1:
                raise ValidationError(
                    f"Menu item {menu_item_id} has {len(lines)} cart lines; pass cart_item_id",
                    detail={"cart_item_ids": [line.id for line in lines]},
                )

            line = lines[0]
            if quantity <= 0:
                await self.db.delete(line)
                line = None
            else:
                line.quantity = quantity

            self._touch(session)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return line

    async def remove_item(
        self,
        session_id: str,
        menu_item_id: int,
        cart_item_id: Optional[int] = None,
    ) -> int:
        """Remove the item's line(s). Returns the number of lines removed."""
        try:
            session = await self.sessions.validate(session_id, for_update=True)
            lines = await self._matching_lines(session_id, menu_item_id, cart_item_id)
            if not lines:
                raise NotFoundError(
                    f"Menu item {menu_item_id} is not in the cart",
                    detail={"menu_item_id": menu_item_id, "cart_item_id": cart_item_id},
                )
            for line in lines:
                await self.db.delete(line)

            self._touch(session)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Cart {session_id}: removed {len(lines)} line(s) of item {menu_item_id}")
        return len(lines)

    async def clear(self, session_id: str) -> int:
        """Empty the cart. Returns the number of lines removed."""
        try:
            session = await self.sessions.validate(session_id, for_update=True)
            removed = await self.delete_lines(session_id)
            self._touch(session)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Cart {session_id}: cleared {removed} line(s)")
        return removed

    async def delete_lines(self, *session_ids: str) -> int:
        """Delete lines inside the caller's transaction (no commit)."""
        if not session_ids:
            return 0
        result = await self.db.execute(
            delete(CartItem).where(CartItem.session_id.in_(session_ids))
        )
        return result.rowcount

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _get_menu_item(self, menu_item_id: int, shop_id: int) -> MenuItem:
        result = await self.db.execute(
            select(MenuItem).where(MenuItem.id == menu_item_id, MenuItem.shop_id == shop_id)
        )
        menu_item = result.scalar_one_or_none()
        if menu_item is None:
            raise NotFoundError(
                f"Menu item {menu_item_id} not found",
                detail={"menu_item_id": menu_item_id},
            )
        return menu_item

    async def _matching_lines(
        self,
        session_id: str,
        menu_item_id: int,
        cart_item_id: Optional[int],
    ) -> list[CartItem]:
        query = select(CartItem).where(
            CartItem.session_id == session_id,
            CartItem.menu_item_id == menu_item_id,
        )
        if cart_item_id is not None:
            query = query.where(CartItem.id == cart_item_id)
        result = await self.db.execute(query.order_by(CartItem.id))
        return list(result.scalars().unique().all())

    @staticmethod
    def _touch(session: TableSession) -> None:
        session.last_activity_at = utcnow()
