import os
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

os.environ.update(
    {
        "ENV_MODE": "development",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "CELERY_ALWAYS_EAGER": "true",
        "SEED_DEMO_DATA": "false",
    }
)
os.environ.pop("ADMIN_API_KEY", None)

from tableside.core.config import get_settings  # noqa: E402
from tableside.database import build_engine, build_session_maker, get_db, init_db  # noqa: E402
from tableside.models import MenuItem, TableSession, utcnow  # noqa: E402

SHOP_ID = 1
OTHER_SHOP_ID = 2

PIZZA_OPTIONS = [
    {
        "type": "radio",
        "id": "size",
        "name": "Size",
        "options": [
            {"id": "medium", "name": "Medium", "price": "0"},
            {"id": "large", "name": "Large", "price": "15"},
        ],
    },
    {"type": "checkbox", "id": "extra", "name": "Extra cheese", "price": "10"},
]


@pytest.fixture(autouse=True)
def ledger_dir(tmp_path, monkeypatch):
    """Keep ledger exports of every test inside its tmp dir."""
    data_dir = tmp_path / "data"
    monkeypatch.setattr(get_settings(), "data_directory", str(data_dir))
    return data_dir


@pytest.fixture()
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture()
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture()
async def menu(session_maker) -> dict[str, int]:
    """
    Menu item ids by short name.

    pizza: 100.00 with size (large +15.00) and extra cheese (+10.00)
    water: 2.50, no options
    sold_out: unavailable
    foreign: belongs to another shop
    """
    items = {
        "pizza": MenuItem(
            shop_id=SHOP_ID,
            name="Pizza",
            category="pizza",
            price_cents=10000,
            customization_options=PIZZA_OPTIONS,
        ),
        "water": MenuItem(shop_id=SHOP_ID, name="Water", category="drinks", price_cents=250),
        "sold_out": MenuItem(
            shop_id=SHOP_ID, name="Soup", category="soups", price_cents=700, is_available=False
        ),
        "foreign": MenuItem(shop_id=OTHER_SHOP_ID, name="Burger", price_cents=1100),
    }
    async with session_maker() as session:
        session.add_all(items.values())
        await session.commit()
        return {name: item.id for name, item in items.items()}


@pytest.fixture()
def expire_session(session_maker):
    """Push a session's expires_at into the past."""

    async def _expire(session_id: str) -> None:
        async with session_maker() as session:
            await session.execute(
                update(TableSession)
                .where(TableSession.id == session_id)
                .values(expires_at=utcnow() - timedelta(minutes=1))
            )
            await session.commit()

    return _expire


@pytest.fixture()
def app(session_maker):
    from tableside.main import app as tableside_app

    async def override_get_db():
        async with session_maker() as session:
            yield session

    tableside_app.dependency_overrides[get_db] = override_get_db
    yield tableside_app
    tableside_app.dependency_overrides.clear()


@pytest.fixture()
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
