"""
SQLAlchemy Database Models

Covers the table-ordering lifecycle:
- Table sessions created by scanning a desk's code
- Cart lines owned by a single session
- Orders with frozen order-item snapshots
- Desks with their occupancy state

Money columns are integer cents.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from tableside.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; they are always stored in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStatus(str, enum.Enum):
    """Table session lifecycle."""
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"


class DeskState(str, enum.Enum):
    """Desk occupancy."""
    AVAILABLE = "available"
    OCCUPIED = "occupied"


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Orders in these states keep their desk occupied until paid
ACTIVE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY)


class TableSession(Base):
    """
    A diner's session at one table.

    Scopes cart and order visibility. Several sessions may be open for the
    same table at once (e.g. two phones, or a page reload).
    """
    __tablename__ = "sessions"

    id = Column(String(100), primary_key=True)
    table_number = Column(String(50), nullable=False, index=True)
    shop_id = Column(Integer, nullable=False, index=True)
    status = Column(
        Enum(SessionStatus),
        default=SessionStatus.ACTIVE,
        nullable=False,
        index=True
    )

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_activity_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<TableSession {self.id} - table {self.table_number} - {self.status.value}>"


class Desk(Base):
    """A physical table. Occupancy is only changed by the desk state machine."""
    __tablename__ = "desks"
    __table_args__ = (
        UniqueConstraint("shop_id", "number", name="uq_desks_shop_number"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    shop_id = Column(Integer, nullable=False, index=True)
    number = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False, default=4)
    occupancy = Column(
        Enum(DeskState),
        default=DeskState.AVAILABLE,
        nullable=False
    )
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Desk #{self.id} - table {self.number} - {self.occupancy.value}>"


class MenuItem(Base):
    """
    Menu reference data.

    customization_options holds the ordered option list, e.g.
    [{"type": "radio", "id": "size", "name": "Size",
      "options": [{"id": "large", "name": "Large", "price": 1.5}]},
     {"type": "checkbox", "id": "extra", "name": "Extra cheese", "price": 1}]
    """
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    shop_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True, index=True)
    price_cents = Column(Integer, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    customization_options = Column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name}>"


class CartItem(Base):
    """One cart line: a menu item with a distinct customization signature."""
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("session_id", "menu_item_id", "signature", name="uq_cart_line"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(100), ForeignKey("sessions.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    customizations = Column(JSON, nullable=False, default=dict)
    signature = Column(String(1000), nullable=False, default="{}")
    special_instructions = Column(Text, nullable=True)
    # Computed once when the line is created; never re-derived from the menu
    customization_cost_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    menu_item = relationship("MenuItem", lazy="joined")

    def __repr__(self):
        return f"<CartItem #{self.id} - {self.session_id} - item {self.menu_item_id} x{self.quantity}>"


class Order(Base):
    """
    A placed order.

    Immutable apart from status and paid; version guards those updates.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("session_id", "idempotency_key", name="uq_orders_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String(100), ForeignKey("sessions.id"), nullable=False, index=True)
    shop_id = Column(Integer, nullable=False, index=True)
    desk_id = Column(Integer, ForeignKey("desks.id"), nullable=True, index=True)
    table_number = Column(String(50), nullable=False)
    idempotency_key = Column(String(100), nullable=True)

    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    paid = Column(Boolean, default=False, nullable=False)

    subtotal_cents = Column(Integer, nullable=False)
    service_fee_cents = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Order #{self.id} - table {self.table_number} - {self.status.value}>"


class OrderItem(Base):
    """Receipt line. Price and names are frozen at order time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    customization_cost_cents = Column(Integer, nullable=False, default=0)
    item_name = Column(String(100), nullable=False)
    customizations = Column(JSON, nullable=False, default=dict)
    customization_labels = Column(JSON, nullable=False, default=list)
    special_instructions = Column(Text, nullable=True)

    @property
    def line_total_cents(self) -> int:
        return self.price_cents * self.quantity

    def __repr__(self):
        return f"<OrderItem #{self.id} - {self.item_name} x{self.quantity}>"
