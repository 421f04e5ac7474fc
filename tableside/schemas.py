"""
Pydantic Schemas for Request/Response Validation

Includes the customization option union used by the pricing engine:
an option is either a Radio (one choice among several) or a Checkbox
(a boolean toggle), told apart by its "type" tag.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from tableside.models import DeskState, OrderStatus, SessionStatus


# =============================================================================
# CUSTOMIZATION OPTIONS
# =============================================================================

class RadioChoice(BaseModel):
    """One alternative of a radio option."""
    id: str
    name: str
    price: Decimal = Field(Decimal("0"), ge=0)


class RadioOption(BaseModel):
    type: Literal["radio"] = "radio"
    id: str
    name: str
    choices: List[RadioChoice] = Field(default_factory=list, alias="options")

    model_config = ConfigDict(populate_by_name=True)


class CheckboxOption(BaseModel):
    type: Literal["checkbox"] = "checkbox"
    id: str
    name: str
    price: Decimal = Field(Decimal("0"), ge=0)


CustomizationOption = Annotated[
    Union[RadioOption, CheckboxOption],
    Field(discriminator="type"),
]

# Selected value per option id: a choice id for radios, a bool for checkboxes
Selections = Dict[str, Union[bool, str, None]]

_options_adapter = TypeAdapter(List[CustomizationOption])


def parse_customization_options(raw: Optional[list]) -> List[Union[RadioOption, CheckboxOption]]:
    """Parse a menu item's stored option list into typed options."""
    return _options_adapter.validate_python(raw or [])


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class SessionCreate(BaseModel):
    """Request schema for opening a table session."""
    table_number: str = Field(..., min_length=1, max_length=50, examples=["T12"])
    shop_id: Optional[int] = Field(None, ge=1, examples=[1])
    ttl_hours: Optional[int] = Field(None, ge=1, le=24, examples=[4])


class CartItemCreate(BaseModel):
    """Single item added to a cart."""
    menu_item_id: int = Field(..., ge=1, examples=[3])
    quantity: int = Field(default=1, ge=1, le=99, examples=[2])
    customizations: Selections = Field(default_factory=dict, examples=[{"size": "large", "extra": True}])
    special_instructions: Optional[str] = Field(None, max_length=500)


class CartItemUpdate(BaseModel):
    """Change the quantity of a cart line; zero or less removes it."""
    quantity: int = Field(..., le=99, examples=[3])
    cart_item_id: Optional[int] = Field(None, ge=1)


class OrderCreate(BaseModel):
    """Request schema for placing the session's cart as an order."""
    table_number: str = Field(..., min_length=1, max_length=50, examples=["T12"])


class OrderStatusUpdate(BaseModel):
    shop_id: int = Field(..., ge=1)
    status: OrderStatus


class DeskCreate(BaseModel):
    shop_id: int = Field(..., ge=1)
    number: str = Field(..., min_length=1, max_length=50)
    capacity: int = Field(default=4, ge=1, le=50)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class SessionResponse(BaseModel):
    id: str
    table_number: str
    shop_id: int
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CartLineResponse(BaseModel):
    id: int
    menu_item_id: int
    item_name: str
    quantity: int
    customizations: Selections
    customization_labels: List[str]
    special_instructions: Optional[str]
    unit_price: Decimal
    customization_cost: Decimal
    line_total: Decimal


class CartResponse(BaseModel):
    session_id: str
    items: List[CartLineResponse]
    item_count: int
    subtotal: Decimal
    service_fee: Decimal
    total: Decimal


class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: int
    item_name: str
    quantity: int
    price: Decimal
    customization_cost: Decimal
    line_total: Decimal
    customizations: Selections
    customization_labels: List[str]
    special_instructions: Optional[str]


class OrderResponse(BaseModel):
    """Order with its frozen items (OrderWithItems)."""
    id: int
    session_id: str
    shop_id: int
    desk_id: Optional[int]
    table_number: str
    status: OrderStatus
    paid: bool
    subtotal: Decimal
    service_fee: Decimal
    total: Decimal
    created_at: datetime
    updated_at: Optional[datetime]
    items: List[OrderItemResponse]


class OrderListResponse(BaseModel):
    total: int
    orders: List[OrderResponse]


class DeskResponse(BaseModel):
    id: int
    shop_id: int
    number: str
    capacity: int
    occupancy: DeskState
    is_occupied: bool
    active_order_count: int
    current_order_id: Optional[int] = None


class ReleaseResponse(BaseModel):
    success: bool
    desk: DeskResponse
    cancelled_order_ids: List[int]
    cleared_cart_lines: int


class SettleResponse(BaseModel):
    success: bool
    desk: DeskResponse
    paid_order_ids: List[int]


class TableResetResponse(BaseModel):
    success: bool
    message: str
    expired_sessions: int


class DeskAuditResponse(BaseModel):
    shop_id: int
    inconsistent_desk_ids: List[int]


class MenuItemResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    category: Optional[str]
    price: Decimal
    is_available: bool
    customization_options: List[CustomizationOption]
    default_customizations: Selections


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    timestamp: datetime
