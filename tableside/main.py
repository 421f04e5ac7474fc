"""
FastAPI Application Entry Point

Tableside Ordering - QR table ordering core.
Diners scan a desk code, get a table session, fill a cart and place
orders; staff move orders through the kitchen workflow and settle desks.

Endpoints:
    - /api/sessions: Session lifecycle
    - /api/sessions/{id}/cart: Session cart
    - /api/sessions/{id}/orders: Place and list orders
    - /api/admin/*: Order workflow, payment, desks, table reset
    - GET /api/menu: Menu with customization options
    - GET /health: System health check
"""

import asyncio
import sys
import logging
from datetime import datetime
from typing import Any, List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException, Query, Request, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from tableside.core.config import get_settings, setup_logging
from tableside.core.exceptions import TablesideError
from tableside.database import async_session_maker, get_db, init_db, engine
from tableside.models import CartItem, MenuItem, Order, OrderStatus
from tableside.schemas import (
    CartItemCreate,
    CartItemUpdate,
    CartLineResponse,
    CartResponse,
    DeskAuditResponse,
    DeskCreate,
    DeskResponse,
    ErrorResponse,
    HealthResponse,
    MenuItemResponse,
    OrderCreate,
    OrderItemResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    ReleaseResponse,
    SessionCreate,
    SessionResponse,
    SettleResponse,
    TableResetResponse,
    parse_customization_options,
)
from tableside.seed import seed_demo_data
from tableside.services import pricing
from tableside.services.cart import CartStore, CartSummary, unit_price_cents
from tableside.services.desks import DeskStateMachine, DeskStatus
from tableside.services.orders import OrderService
from tableside.services.sessions import SessionManager
from tableside.tasks import export_order_to_ledger

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    410: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    if settings.is_development and settings.seed_demo_data:
        async with async_session_maker() as db:
            await seed_demo_data(db, settings.default_shop_id)

    missing = settings.validate_production_config()
    if missing:
        logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "QR table ordering: per-table sessions, session-scoped carts, "
        "atomic order placement and desk occupancy tracking."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    """Admin routes are open unless ADMIN_API_KEY is configured."""
    if settings.admin_api_key and x_admin_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing X-Admin-Key")


def cart_line_response(item: CartItem) -> CartLineResponse:
    options = parse_customization_options(item.menu_item.customization_options)
    unit_price = unit_price_cents(item)
    return CartLineResponse(
        id=item.id,
        menu_item_id=item.menu_item_id,
        item_name=item.menu_item.name,
        quantity=item.quantity,
        customizations=item.customizations or {},
        customization_labels=pricing.describe_customizations(options, item.customizations or {}),
        special_instructions=item.special_instructions,
        unit_price=pricing.from_cents(unit_price),
        customization_cost=pricing.from_cents(item.customization_cost_cents),
        line_total=pricing.from_cents(unit_price * item.quantity),
    )


def cart_response(summary: CartSummary) -> CartResponse:
    return CartResponse(
        session_id=summary.session_id,
        items=[cart_line_response(item) for item in summary.items],
        item_count=summary.item_count,
        **summary.totals.as_amounts(),
    )


def order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        session_id=order.session_id,
        shop_id=order.shop_id,
        desk_id=order.desk_id,
        table_number=order.table_number,
        status=order.status,
        paid=order.paid,
        subtotal=pricing.from_cents(order.subtotal_cents),
        service_fee=pricing.from_cents(order.service_fee_cents),
        total=pricing.from_cents(order.total_cents),
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemResponse(
                id=item.id,
                menu_item_id=item.menu_item_id,
                item_name=item.item_name,
                quantity=item.quantity,
                price=pricing.from_cents(item.price_cents),
                customization_cost=pricing.from_cents(item.customization_cost_cents),
                line_total=pricing.from_cents(item.line_total_cents),
                customizations=item.customizations or {},
                customization_labels=item.customization_labels or [],
                special_instructions=item.special_instructions,
            )
            for item in order.items
        ],
    )


def desk_response(status: DeskStatus) -> DeskResponse:
    desk = status.desk
    return DeskResponse(
        id=desk.id,
        shop_id=desk.shop_id,
        number=desk.number,
        capacity=desk.capacity,
        occupancy=desk.occupancy,
        is_occupied=status.is_occupied,
        active_order_count=status.active_order_count,
        current_order_id=status.current_order_id,
    )


def menu_item_response(item: MenuItem) -> MenuItemResponse:
    options = parse_customization_options(item.customization_options)
    return MenuItemResponse(
        id=item.id,
        name=item.name,
        description=item.description,
        category=item.category,
        price=pricing.from_cents(item.price_cents),
        is_available=item.is_available,
        customization_options=options,
        default_customizations=pricing.default_customizations(options),
    )


def order_ledger_payload(order: Order) -> dict[str, Any]:
    """JSON-safe order snapshot for the ledger export task."""
    return {
        "order_id": order.id,
        "shop_id": order.shop_id,
        "table_number": order.table_number,
        "session_id": order.session_id,
        "status": order.status.value,
        "paid": order.paid,
        "items": [
            {
                "name": item.item_name,
                "quantity": item.quantity,
                "unit_price": float(pricing.from_cents(item.price_cents)),
                "options": item.customization_labels or [],
            }
            for item in order.items
        ],
        "subtotal": float(pricing.from_cents(order.subtotal_cents)),
        "service_fee": float(pricing.from_cents(order.service_fee_cents)),
        "total": float(pricing.from_cents(order.total_cents)),
        "created_at": order.created_at.isoformat(),
    }


def queue_ledger_export(order: Order) -> None:
    """Queue the ledger export; the order change is already committed either way."""
    try:
        export_order_to_ledger.delay(order_ledger_payload(order))
    except Exception:
        logger.exception(f"Could not queue ledger export for Order #{order.id}")


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "menu": "/api/menu",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify database and Redis are reachable."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# MENU
# =============================================================================

@app.get(
    "/api/menu",
    response_model=List[MenuItemResponse],
    tags=["Menu"],
)
async def list_menu(
    shop_id: Optional[int] = Query(None, ge=1),
    category: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[MenuItemResponse]:
    """Menu items with their customization options and default selections."""
    query = select(MenuItem).where(MenuItem.shop_id == (shop_id or settings.default_shop_id))
    if category:
        query = query.where(MenuItem.category == category)

    result = await db.execute(query.order_by(MenuItem.category, MenuItem.id))
    return [menu_item_response(item) for item in result.scalars().all()]


# =============================================================================
# SESSION ENDPOINTS
# =============================================================================

@app.post(
    "/api/sessions",
    response_model=SessionResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Sessions"],
    summary="Open Table Session",
)
async def create_session(
    data: SessionCreate,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    """Called when a diner scans a desk's QR code."""
    session = await SessionManager(db).create(data.table_number, data.shop_id, data.ttl_hours)
    return SessionResponse.model_validate(session)


@app.get(
    "/api/sessions/{session_id}",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Sessions"],
)
async def get_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    """Session with its current status, whether active or not."""
    session = await SessionManager(db).get(session_id)
    return SessionResponse.model_validate(session)


@app.post(
    "/api/sessions/{session_id}/touch",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Sessions"],
)
async def touch_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    session = await SessionManager(db).touch(session_id)
    return SessionResponse.model_validate(session)


@app.post(
    "/api/sessions/{session_id}/complete",
    response_model=SessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Sessions"],
)
async def complete_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    session = await SessionManager(db).complete(session_id)
    return SessionResponse.model_validate(session)


# =============================================================================
# CART ENDPOINTS
# =============================================================================

@app.get(
    "/api/sessions/{session_id}/cart",
    response_model=CartResponse,
    responses=ERROR_RESPONSES,
    tags=["Cart"],
)
async def get_cart(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    summary = await CartStore(db).summary(session_id)
    return cart_response(summary)


@app.post(
    "/api/sessions/{session_id}/cart/items",
    response_model=CartResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Cart"],
    summary="Add Item to Cart",
)
async def add_cart_item(
    session_id: str,
    data: CartItemCreate,
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    """
    Add a menu item with its customizations.

    Adding the same item with the same selections again increases the
    quantity of the existing line.
    """
    cart = CartStore(db)
    await cart.add_item(
        session_id,
        data.menu_item_id,
        quantity=data.quantity,
        customizations=data.customizations,
        instructions=data.special_instructions,
    )
    return cart_response(await cart.summary(session_id))


@app.patch(
    "/api/sessions/{session_id}/cart/items/{menu_item_id}",
    response_model=CartResponse,
    responses=ERROR_RESPONSES,
    tags=["Cart"],
)
async def update_cart_item(
    session_id: str,
    menu_item_id: int,
    data: CartItemUpdate,
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    """Set a line's quantity; zero removes it."""
    cart = CartStore(db)
    await cart.update_quantity(session_id, menu_item_id, data.quantity, data.cart_item_id)
    return cart_response(await cart.summary(session_id))


@app.delete(
    "/api/sessions/{session_id}/cart/items/{menu_item_id}",
    response_model=CartResponse,
    responses=ERROR_RESPONSES,
    tags=["Cart"],
)
async def remove_cart_item(
    session_id: str,
    menu_item_id: int,
    cart_item_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    cart = CartStore(db)
    await cart.remove_item(session_id, menu_item_id, cart_item_id)
    return cart_response(await cart.summary(session_id))


@app.delete(
    "/api/sessions/{session_id}/cart",
    response_model=CartResponse,
    responses=ERROR_RESPONSES,
    tags=["Cart"],
)
async def clear_cart(
    session_id: str,
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    cart = CartStore(db)
    await cart.clear(session_id)
    return cart_response(await cart.summary(session_id))


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/sessions/{session_id}/orders",
    response_model=OrderResponse,
    status_code=201,
    responses={**ERROR_RESPONSES, 500: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    session_id: str,
    data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=100),
) -> OrderResponse:
    """
    Place the session's cart as an order.

    The cart is emptied and the desk marked occupied in the same
    transaction. Send an Idempotency-Key to make retries safe.
    """
    order = await OrderService(db).create_order(session_id, data.table_number, idempotency_key)
    return order_response(order)


@app.get(
    "/api/sessions/{session_id}/orders",
    response_model=List[OrderResponse],
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def list_session_orders(
    session_id: str,
    include_paid: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> List[OrderResponse]:
    orders = await OrderService(db).orders_for_session(session_id, include_paid=include_paid)
    return [order_response(order) for order in orders]


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@app.get(
    "/api/admin/orders",
    response_model=OrderListResponse,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
    summary="List Orders",
)
async def admin_list_orders(
    shop_id: Optional[int] = Query(None, ge=1),
    status: Optional[OrderStatus] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    """Retrieve paginated list of a shop's orders, newest first."""
    shop_id = shop_id or settings.default_shop_id

    count_query = select(func.count(Order.id)).where(Order.shop_id == shop_id)
    if status is not None:
        count_query = count_query.where(Order.status == status)
    total = (await db.execute(count_query)).scalar() or 0

    orders = await OrderService(db).list_orders(shop_id, status=status, skip=skip, limit=limit)
    return OrderListResponse(
        total=total,
        orders=[order_response(order) for order in orders],
    )


@app.get(
    "/api/admin/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def admin_get_order(
    order_id: int,
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    return order_response(await OrderService(db).get_order(order_id, shop_id))


@app.patch(
    "/api/admin/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
    summary="Update Order Status",
)
async def admin_update_order(
    order_id: int,
    data: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """pending → preparing → ready → completed; any open order → cancelled."""
    order = await OrderService(db).update_status(order_id, data.shop_id, data.status)
    if order.status == OrderStatus.COMPLETED:
        queue_ledger_export(order)
    return order_response(order)


@app.post(
    "/api/admin/orders/{order_id}/paid",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def admin_mark_paid(
    order_id: int,
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await OrderService(db).mark_paid(order_id, shop_id)
    queue_ledger_export(order)
    return order_response(order)


@app.get(
    "/api/admin/desks",
    response_model=List[DeskResponse],
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def admin_list_desks(
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> List[DeskResponse]:
    """Desks with occupancy, open order count and the latest open order."""
    statuses = await DeskStateMachine(db).list_desks(shop_id or settings.default_shop_id)
    return [desk_response(status) for status in statuses]


@app.get(
    "/api/admin/desks/audit",
    response_model=DeskAuditResponse,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
    summary="Audit Desk Occupancy",
)
async def admin_audit_desks(
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> DeskAuditResponse:
    """Desks whose stored occupancy disagrees with their open orders."""
    shop_id = shop_id or settings.default_shop_id
    return DeskAuditResponse(
        shop_id=shop_id,
        inconsistent_desk_ids=await DeskStateMachine(db).audit(shop_id),
    )


@app.post(
    "/api/admin/desks",
    response_model=DeskResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def admin_register_desk(
    data: DeskCreate,
    db: AsyncSession = Depends(get_db),
) -> DeskResponse:
    desks = DeskStateMachine(db)
    desk = await desks.register(data.shop_id, data.number, data.capacity)
    return desk_response(await desks.status(desk))


@app.post(
    "/api/admin/desks/{desk_id}/release",
    response_model=ReleaseResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
    summary="Release Desk",
)
async def admin_release_desk(
    desk_id: int,
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> ReleaseResponse:
    """Cancel the desk's open orders, clear its carts and mark it available."""
    result = await DeskStateMachine(db).release(desk_id, shop_id)
    return ReleaseResponse(
        success=True,
        desk=desk_response(DeskStatus(desk=result.desk)),
        cancelled_order_ids=result.cancelled_order_ids,
        cleared_cart_lines=result.cleared_cart_lines,
    )


@app.post(
    "/api/admin/desks/{desk_id}/settle",
    response_model=SettleResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
    summary="Settle Desk",
)
async def admin_settle_desk(
    desk_id: int,
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> SettleResponse:
    """Checkout: mark every unpaid order of the desk paid."""
    shop_id = shop_id or settings.default_shop_id
    orders = await OrderService(db).settle_desk(desk_id, shop_id)
    for order in orders:
        queue_ledger_export(order)

    desks = DeskStateMachine(db)
    desk = await desks.get(desk_id, shop_id=shop_id)
    return SettleResponse(
        success=True,
        desk=desk_response(await desks.status(desk)),
        paid_order_ids=[order.id for order in orders],
    )


@app.get(
    "/api/admin/tables/{table_number}/sessions",
    response_model=List[SessionResponse],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def admin_table_sessions(
    table_number: str,
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> List[SessionResponse]:
    """Active sessions of a table, most recently active first."""
    sessions = await SessionManager(db).table_sessions(table_number, shop_id or settings.default_shop_id)
    return [SessionResponse.model_validate(session) for session in sessions]


@app.post(
    "/api/admin/tables/{table_number}/sessions/reset",
    response_model=TableResetResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def admin_reset_table(
    table_number: str,
    shop_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> TableResetResponse:
    """Expire every active session of a table."""
    expired = await SessionManager(db).reset_table(table_number, shop_id or settings.default_shop_id)
    return TableResetResponse(
        success=True,
        message=f"Expired {expired} session(s) for table {table_number}",
        expired_sessions=expired,
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(TablesideError)
async def tableside_exception_handler(request: Request, exc: TablesideError) -> JSONResponse:
    """Render domain errors with their status and code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )

