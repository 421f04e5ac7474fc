"""
                        Services Module

Business logic for table ordering. Each service takes an AsyncSession
and owns its transaction boundaries.

Services:
    - pricing: Customization pricing and cart totals (pure functions)
    - sessions: Table session lifecycle
    - cart: Session-scoped cart lines
    - desks: Desk occupancy state machine
    - orders: Order creation and status workflow
    - excel_manager: File-locked Excel ledger of settled orders
"""

from tableside.services.cart import CartStore
from tableside.services.desks import DeskStateMachine
from tableside.services.excel_manager import LedgerManager
from tableside.services.orders import OrderService
from tableside.services.sessions import SessionManager

__all__ = [
    "CartStore",
    "DeskStateMachine",
    "LedgerManager",
    "OrderService",
    "SessionManager",
]
