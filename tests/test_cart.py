import pytest

from tableside.core.exceptions import (
    ExpiredSessionError,
    NotFoundError,
    UnknownCustomization,
    ValidationError,
)
from tableside.services.cart import CartStore
from tableside.services.sessions import SessionManager

from .conftest import SHOP_ID


@pytest.fixture()
async def session_id(db):
    return (await SessionManager(db).create("T1", SHOP_ID)).id


async def test_add_item_caches_customization_cost(db, menu, session_id):
    cart = CartStore(db)
    line = await cart.add_item(
        session_id, menu["pizza"], quantity=2, customizations={"size": "large", "extra": True}
    )
    assert line.customization_cost_cents == 2500
    assert line.customizations == {"size": "large", "extra": True}

    summary = await cart.summary(session_id)
    assert summary.item_count == 2
    assert summary.totals.subtotal == 25000
    assert summary.totals.service_fee == 2500
    assert summary.totals.total == 27500


async def test_same_selection_merges(db, menu, session_id):
    cart = CartStore(db)
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "large", "extra": True})
    await cart.add_item(session_id, menu["pizza"], 2, {"extra": True, "size": "large"}, "Well done")

    items = await cart.get_items(session_id)
    assert len(items) == 1
    assert items[0].quantity == 3
    assert items[0].special_instructions == "Well done"


async def test_unchecked_checkbox_merges_with_missing_key(db, menu, session_id):
    cart = CartStore(db)
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "medium", "extra": False})
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "medium"})

    items = await cart.get_items(session_id)
    assert [i.quantity for i in items] == [2]


async def test_different_selection_is_a_new_line(db, menu, session_id):
    cart = CartStore(db)
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "large"})
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "medium"})
    await cart.add_item(session_id, menu["water"], 3)

    items = await cart.get_items(session_id)
    assert [(i.menu_item_id, i.quantity) for i in items] == [
        (menu["pizza"], 1),
        (menu["pizza"], 1),
        (menu["water"], 3),
    ]


async def test_sessions_are_isolated(db, menu):
    sessions = SessionManager(db)
    a = (await sessions.create("T1", SHOP_ID)).id
    b = (await sessions.create("T1", SHOP_ID)).id
    cart = CartStore(db)

    await cart.add_item(a, menu["water"], 2)
    await cart.add_item(b, menu["pizza"], 1)

    assert [i.menu_item_id for i in await cart.get_items(a)] == [menu["water"]]
    assert [i.menu_item_id for i in await cart.get_items(b)] == [menu["pizza"]]

    with pytest.raises(NotFoundError):
        await cart.remove_item(a, menu["pizza"])
    assert len(await cart.get_items(b)) == 1


async def test_add_item_rejections(db, menu, session_id):
    cart = CartStore(db)

    with pytest.raises(ValidationError):
        await cart.add_item(session_id, menu["water"], quantity=0)
    with pytest.raises(ValidationError):
        await cart.add_item(session_id, menu["sold_out"])
    with pytest.raises(NotFoundError):
        await cart.add_item(session_id, menu["foreign"])
    with pytest.raises(NotFoundError):
        await cart.add_item(session_id, 9999)
    with pytest.raises(UnknownCustomization):
        await cart.add_item(session_id, menu["pizza"], customizations={"crust": "thin"})
    with pytest.raises(UnknownCustomization):
        await cart.add_item(session_id, menu["pizza"], customizations={"size": "huge"})

    assert await cart.get_items(session_id) == []


async def test_expired_session_has_no_side_effects(db, menu, session_id, expire_session):
    cart = CartStore(db)
    await cart.add_item(session_id, menu["water"], 1)
    await expire_session(session_id)
    db.expire_all()

    with pytest.raises(ExpiredSessionError):
        await cart.add_item(session_id, menu["water"], 5)
    with pytest.raises(ExpiredSessionError):
        await cart.summary(session_id)

    items = await cart.get_items(session_id)
    assert [i.quantity for i in items] == [1]


async def test_update_quantity(db, menu, session_id):
    cart = CartStore(db)
    await cart.add_item(session_id, menu["water"], 1)

    line = await cart.update_quantity(session_id, menu["water"], 4)
    assert line.quantity == 4

    assert await cart.update_quantity(session_id, menu["water"], 0) is None
    assert await cart.get_items(session_id) == []

    with pytest.raises(NotFoundError):
        await cart.update_quantity(session_id, menu["water"], 2)


async def test_update_quantity_ambiguous_without_line_id(db, menu, session_id):
    cart = CartStore(db)
    large = await cart.add_item(session_id, menu["pizza"], 1, {"size": "large"})
    large_id = large.id
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "medium"})

    with pytest.raises(ValidationError):
        await cart.update_quantity(session_id, menu["pizza"], 5)

    line = await cart.update_quantity(session_id, menu["pizza"], 5, cart_item_id=large_id)
    assert line.id == large_id
    assert line.quantity == 5

    quantities = sorted(i.quantity for i in await cart.get_items(session_id))
    assert quantities == [1, 5]


async def test_remove_item_and_clear(db, menu, session_id):
    cart = CartStore(db)
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "large"})
    await cart.add_item(session_id, menu["pizza"], 1, {"size": "medium"})
    await cart.add_item(session_id, menu["water"], 1)

    assert await cart.remove_item(session_id, menu["pizza"]) == 2
    assert [i.menu_item_id for i in await cart.get_items(session_id)] == [menu["water"]]

    assert await cart.clear(session_id) == 1
    assert await cart.get_items(session_id) == []
    assert await cart.clear(session_id) == 0
