"""
Demo Data

Seeds a small menu and a few desks for local development. Safe to run
repeatedly: a shop that already has menu items is left alone.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.models import Desk, DeskState, MenuItem

logger = logging.getLogger(__name__)

DEMO_MENU = [
    {
        "name": "Margherita Pizza",
        "description": "Tomato, mozzarella, basil",
        "category": "pizza",
        "price_cents": 1200,
        "customization_options": [
            {
                "type": "radio",
                "id": "size",
                "name": "Size",
                "options": [
                    {"id": "medium", "name": "Medium", "price": "0"},
                    {"id": "large", "name": "Large", "price": "3.50"},
                ],
            },
            {"type": "checkbox", "id": "extra_cheese", "name": "Extra cheese", "price": "1.50"},
        ],
    },
    {
        "name": "Pepperoni Pizza",
        "description": "Tomato, mozzarella, pepperoni",
        "category": "pizza",
        "price_cents": 1450,
        "customization_options": [
            {
                "type": "radio",
                "id": "size",
                "name": "Size",
                "options": [
                    {"id": "medium", "name": "Medium", "price": "0"},
                    {"id": "large", "name": "Large", "price": "3.50"},
                ],
            },
            {"type": "checkbox", "id": "chili_oil", "name": "Chili oil", "price": "0.50"},
        ],
    },
    {
        "name": "Caesar Salad",
        "description": "Romaine, parmesan, croutons",
        "category": "salads",
        "price_cents": 900,
        "customization_options": [
            {"type": "checkbox", "id": "chicken", "name": "Add chicken", "price": "3.00"},
        ],
    },
    {
        "name": "Espresso",
        "description": None,
        "category": "drinks",
        "price_cents": 300,
        "customization_options": [
            {
                "type": "radio",
                "id": "shots",
                "name": "Shots",
                "options": [
                    {"id": "single", "name": "Single", "price": "0"},
                    {"id": "double", "name": "Double", "price": "1.00"},
                ],
            },
        ],
    },
    {
        "name": "Sparkling Water",
        "description": "500 ml",
        "category": "drinks",
        "price_cents": 250,
        "customization_options": [],
    },
]

DEMO_DESKS = [f"T{n}" for n in range(1, 9)]


async def seed_demo_data(db: AsyncSession, shop_id: int) -> bool:
    """Insert the demo menu and desks. Returns False when the shop already has a menu."""
    existing = (
        await db.execute(select(func.count(MenuItem.id)).where(MenuItem.shop_id == shop_id))
    ).scalar() or 0
    if existing:
        logger.info(f"Shop {shop_id} already has {existing} menu item(s), skipping demo data")
        return False

    for item in DEMO_MENU:
        db.add(MenuItem(shop_id=shop_id, is_available=True, **item))
    for number in DEMO_DESKS:
        db.add(Desk(shop_id=shop_id, number=number, capacity=4, occupancy=DeskState.AVAILABLE))
    await db.commit()

    logger.info(f"Seeded {len(DEMO_MENU)} menu items and {len(DEMO_DESKS)} desks for shop {shop_id}")
    return True
