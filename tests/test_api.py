from decimal import Decimal

import pytest

from tableside.core.config import get_settings
from tableside.services.excel_manager import LedgerManager


async def open_session(client, table: str = "T1") -> str:
    response = await client.post("/api/sessions", json={"table_number": table})
    assert response.status_code == 201
    return response.json()["id"]


async def add_pizza(client, session_id: str, menu, quantity: int = 2) -> dict:
    response = await client.post(
        f"/api/sessions/{session_id}/cart/items",
        json={
            "menu_item_id": menu["pizza"],
            "quantity": quantity,
            "customizations": {"size": "large", "extra": True},
        },
    )
    assert response.status_code == 201
    return response.json()


async def test_root_and_health(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/health"

    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "healthy"


async def test_menu_lists_options_and_defaults(client, menu):
    response = await client.get("/api/menu")
    assert response.status_code == 200
    items = {item["name"]: item for item in response.json()}

    assert set(items) == {"Pizza", "Water", "Soup"}
    pizza = items["Pizza"]
    assert Decimal(pizza["price"]) == Decimal("100.00")
    assert [o["type"] for o in pizza["customization_options"]] == ["radio", "checkbox"]
    assert [c["id"] for c in pizza["customization_options"][0]["options"]] == ["medium", "large"]
    assert pizza["default_customizations"] == {"size": "medium", "extra": False}
    assert items["Soup"]["is_available"] is False


async def test_diner_flow(client, menu):
    session_id = await open_session(client)

    cart = await add_pizza(client, session_id, menu)
    assert cart["item_count"] == 2
    line = cart["items"][0]
    assert Decimal(line["unit_price"]) == Decimal("125.00")
    assert line["customization_labels"] == ["Size: Large", "Extra cheese"]
    assert Decimal(cart["subtotal"]) == Decimal("250.00")
    assert Decimal(cart["service_fee"]) == Decimal("25.00")
    assert Decimal(cart["total"]) == Decimal("275.00")

    response = await client.post(f"/api/sessions/{session_id}/orders", json={"table_number": "T1"})
    assert response.status_code == 201
    order = response.json()
    assert order["status"] == "pending"
    assert Decimal(order["total"]) == Decimal("275.00")
    assert order["items"][0]["item_name"] == "Pizza"
    assert Decimal(order["items"][0]["line_total"]) == Decimal("250.00")

    response = await client.get(f"/api/sessions/{session_id}/cart")
    assert response.json()["items"] == []

    response = await client.get(f"/api/sessions/{session_id}/orders")
    assert [o["id"] for o in response.json()] == [order["id"]]


async def test_cart_update_and_remove(client, menu):
    session_id = await open_session(client)
    await add_pizza(client, session_id, menu, quantity=1)

    response = await client.patch(
        f"/api/sessions/{session_id}/cart/items/{menu['pizza']}", json={"quantity": 3}
    )
    assert response.status_code == 200
    assert response.json()["item_count"] == 3

    response = await client.delete(f"/api/sessions/{session_id}/cart/items/{menu['pizza']}")
    assert response.status_code == 200
    assert response.json()["items"] == []

    response = await client.delete(f"/api/sessions/{session_id}/cart/items/{menu['pizza']}")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"

    await add_pizza(client, session_id, menu)
    response = await client.delete(f"/api/sessions/{session_id}/cart")
    assert response.status_code == 200
    assert response.json()["item_count"] == 0


async def test_session_lifecycle(client):
    session_id = await open_session(client)

    response = await client.post(f"/api/sessions/{session_id}/touch")
    assert response.status_code == 200

    response = await client.post(f"/api/sessions/{session_id}/complete")
    assert response.json()["status"] == "completed"

    response = await client.get(f"/api/sessions/{session_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.get(f"/api/sessions/{session_id}/cart")
    assert response.status_code == 410
    assert response.json()["error"] == "session_expired"

    response = await client.get(f"/api/sessions/{session_id}/orders")
    assert response.status_code == 410


@pytest.mark.parametrize(
    "method,path,status,error",
    [
        ("get", "/api/sessions/session-T1-0-missing", 404, "session_not_found"),
        ("get", "/api/sessions/session-T1-0-missing/cart", 404, "session_not_found"),
        ("post", "/api/sessions/session-T1-0-missing/touch", 404, "session_not_found"),
    ],
)
async def test_unknown_session(client, method, path, status, error):
    response = await getattr(client, method)(path)
    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"] == error


async def test_expired_session(client, menu, expire_session):
    session_id = await open_session(client)
    await expire_session(session_id)

    response = await client.post(
        f"/api/sessions/{session_id}/cart/items", json={"menu_item_id": menu["water"]}
    )
    assert response.status_code == 410


async def test_validation_errors(client, menu):
    response = await client.post("/api/sessions", json={"table_number": "T 1"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_table_number"

    session_id = await open_session(client)
    response = await client.post(
        f"/api/sessions/{session_id}/cart/items",
        json={"menu_item_id": menu["pizza"], "customizations": {"crust": "thin"}},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "unknown_customization"

    response = await client.post(f"/api/sessions/{session_id}/orders", json={"table_number": "T1"})
    assert response.status_code == 409
    assert response.json()["error"] == "empty_cart"


async def test_idempotency_header(client, menu):
    session_id = await open_session(client)
    await add_pizza(client, session_id, menu)
    headers = {"Idempotency-Key": "retry-123"}

    first = await client.post(
        f"/api/sessions/{session_id}/orders", json={"table_number": "T1"}, headers=headers
    )
    second = await client.post(
        f"/api/sessions/{session_id}/orders", json={"table_number": "T1"}, headers=headers
    )
    assert first.status_code == second.status_code == 201
    assert first.json()["id"] == second.json()["id"]


async def test_admin_workflow_and_ledger(client, menu):
    session_id = await open_session(client)
    await add_pizza(client, session_id, menu)
    order = (
        await client.post(f"/api/sessions/{session_id}/orders", json={"table_number": "T1"})
    ).json()

    response = await client.get("/api/admin/orders", params={"status": "pending"})
    assert response.json()["total"] == 1

    for status in ("preparing", "ready", "completed"):
        response = await client.patch(
            f"/api/admin/orders/{order['id']}", json={"shop_id": 1, "status": status}
        )
        assert response.status_code == 200
        assert response.json()["status"] == status

    response = await client.patch(
        f"/api/admin/orders/{order['id']}", json={"shop_id": 1, "status": "cancelled"}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_state_transition"

    response = await client.post(f"/api/admin/orders/{order['id']}/paid")
    assert response.status_code == 200
    assert response.json()["paid"] is True

    rows = LedgerManager.get_all_orders()
    assert [row["order_id"] for row in rows] == [order["id"]]
    assert rows[0]["total"] == pytest.approx(275.0)
    assert bool(rows[0]["paid"]) is True

    response = await client.get("/api/admin/desks")
    desk = response.json()[0]
    assert desk["number"] == "T1"
    assert desk["is_occupied"] is False


async def test_admin_desks(client, menu):
    response = await client.post("/api/admin/desks", json={"shop_id": 1, "number": "T7", "capacity": 2})
    assert response.status_code == 201
    assert response.json()["occupancy"] == "available"

    session_id = await open_session(client, "T7")
    await add_pizza(client, session_id, menu)
    order = (
        await client.post(f"/api/sessions/{session_id}/orders", json={"table_number": "T7"})
    ).json()
    desk_id = order["desk_id"]

    response = await client.get("/api/admin/desks")
    desks = {d["number"]: d for d in response.json()}
    assert desks["T7"]["is_occupied"] is True
    assert desks["T7"]["current_order_id"] == order["id"]

    response = await client.post(f"/api/admin/desks/{desk_id}/settle")
    assert response.status_code == 200
    assert response.json()["paid_order_ids"] == [order["id"]]
    assert response.json()["desk"]["is_occupied"] is False

    await add_pizza(client, session_id, menu)
    await client.post(f"/api/sessions/{session_id}/orders", json={"table_number": "T7"})
    response = await client.post(f"/api/admin/desks/{desk_id}/release")
    assert response.status_code == 200
    assert len(response.json()["cancelled_order_ids"]) == 1
    assert response.json()["desk"]["occupancy"] == "available"

    response = await client.post("/api/admin/tables/T7/sessions/reset")
    assert response.json()["expired_sessions"] == 1
    response = await client.get(f"/api/sessions/{session_id}/cart")
    assert response.status_code == 410


async def test_admin_order_detail_audit_and_table_sessions(client, menu):
    first = await open_session(client, "T4")
    second = await open_session(client, "T4")
    await open_session(client, "T5")

    response = await client.get("/api/admin/tables/T4/sessions")
    assert response.status_code == 200
    assert {s["id"] for s in response.json()} == {first, second}

    await add_pizza(client, first, menu)
    order = (
        await client.post(f"/api/sessions/{first}/orders", json={"table_number": "T4"})
    ).json()

    response = await client.get(f"/api/admin/orders/{order['id']}")
    assert response.status_code == 200
    assert Decimal(response.json()["total"]) == Decimal("275.00")
    assert len(response.json()["items"]) == 1

    response = await client.get("/api/admin/orders/9999")
    assert response.status_code == 404

    response = await client.get("/api/admin/desks/audit")
    assert response.status_code == 200
    assert response.json() == {
        "shop_id": get_settings().default_shop_id,
        "inconsistent_desk_ids": [],
    }


async def test_admin_key_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "admin_api_key", "secret")

    response = await client.get("/api/admin/desks")
    assert response.status_code == 401

    response = await client.get("/api/admin/desks", headers={"X-Admin-Key": "secret"})
    assert response.status_code == 200

    # Diner routes stay open
    response = await client.post("/api/sessions", json={"table_number": "T1"})
    assert response.status_code == 201
