import json

from filelock import FileLock

from tableside.core.config import get_settings
from tableside.services.excel_manager import LedgerManager
from tableside.tasks import export_order_to_ledger, health_check


def order_data(order_id: int = 1, **overrides) -> dict:
    data = {
        "order_id": order_id,
        "shop_id": 1,
        "table_number": "T1",
        "session_id": "session-T1-1700000000000-abcdef123456",
        "status": "completed",
        "paid": False,
        "items": [
            {"name": "Pizza", "quantity": 2, "unit_price": 125.0, "options": ["Size: Large"]},
            {"name": "Water", "quantity": 1, "unit_price": 2.5, "options": []},
        ],
        "subtotal": 252.5,
        "service_fee": 25.25,
        "total": 277.75,
        "created_at": "2026-01-01T12:00:00+00:00",
    }
    data.update(overrides)
    return data


def test_export_creates_ledger(ledger_dir):
    result = LedgerManager.export_order(order_data())

    assert result["success"] is True
    assert LedgerManager.ledger_path() == ledger_dir / get_settings().ledger_filename
    assert LedgerManager.ledger_path().exists()

    rows = LedgerManager.get_all_orders()
    assert len(rows) == 1
    assert rows[0]["item_count"] == 3
    assert rows[0]["total"] == 277.75
    assert json.loads(rows[0]["items"])[0]["name"] == "Pizza"


def test_reexport_replaces_row():
    LedgerManager.export_order(order_data(1))
    LedgerManager.export_order(order_data(2))
    LedgerManager.export_order(order_data(1, paid=True))

    rows = {row["order_id"]: row for row in LedgerManager.get_all_orders()}
    assert set(rows) == {1, 2}
    assert bool(rows[1]["paid"]) is True
    assert bool(rows[2]["paid"]) is False


def test_lock_timeout_reports_failure(monkeypatch):
    monkeypatch.setattr(get_settings(), "ledger_lock_timeout", 0.1)
    LedgerManager.ledger_path().parent.mkdir(parents=True, exist_ok=True)

    with FileLock(str(LedgerManager.lock_path())):
        # Another FileLock instance on the same path must wait
        result = LedgerManager.export_order(order_data())

    assert result["success"] is False
    assert "timeout" in result["message"].lower()


def test_clear_and_empty_ledger():
    assert LedgerManager.get_all_orders() == []
    LedgerManager.export_order(order_data())
    assert LedgerManager.clear() is True
    assert LedgerManager.get_all_orders() == []


def test_export_task_runs_eagerly():
    result = export_order_to_ledger.delay(order_data(7)).get()
    assert result["success"] is True
    assert "processing_time_seconds" in result
    assert [row["order_id"] for row in LedgerManager.get_all_orders()] == [7]


def test_health_task():
    assert health_check.delay().get()["status"] == "healthy"
