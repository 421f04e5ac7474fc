"""
Excel Ledger Manager with Concurrency Control

Appends settled orders (completed or paid) to an Excel workbook.
Several Celery workers may export at once, so every write holds a
file lock around the read-modify-write cycle.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from filelock import FileLock, Timeout

from tableside.core.config import get_settings

logger = logging.getLogger(__name__)


class LedgerManager:
    """Process- and thread-safe Excel ledger of settled orders."""

    COLUMNS = [
        "order_id",
        "shop_id",
        "table_number",
        "session_id",
        "date_time",
        "status",
        "paid",
        "items",
        "item_count",
        "subtotal",
        "service_fee",
        "total",
        "exported_at",
    ]

    @classmethod
    def ledger_path(cls) -> Path:
        settings = get_settings()
        return Path(settings.data_directory) / settings.ledger_filename

    @classmethod
    def lock_path(cls) -> Path:
        path = cls.ledger_path()
        return path.with_name(path.name + ".lock")

    @classmethod
    def _ensure_data_dir(cls) -> None:
        """Create data directory if needed."""
        data_dir = cls.ledger_path().parent
        if not data_dir.exists():
            data_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {data_dir}")

    @classmethod
    def _load_or_create_df(cls, file_path: Path) -> pd.DataFrame:
        """Load existing file or create new DataFrame."""
        if file_path.exists():
            return pd.read_excel(file_path, engine="openpyxl")
        return pd.DataFrame(columns=cls.COLUMNS)

    @classmethod
    def export_order(cls, order_data: dict[str, Any]) -> dict[str, Any]:
        """
        Write one settled order to the ledger.

        Re-exporting an order replaces its previous row, so an order that is
        first paid and later completed appears once with its final state.
        """
        cls._ensure_data_dir()

        order_id = order_data.get("order_id", 0)
        result = {
            "success": False,
            "message": "",
            "order_id": order_id,
            "exported_at": None,
        }
        timeout = get_settings().ledger_lock_timeout

        try:
            with FileLock(str(cls.lock_path()), timeout=timeout):
                logger.debug(f"Lock acquired for Order #{order_id}")

                ledger = cls.ledger_path()
                df = cls._load_or_create_df(ledger)

                export_time = datetime.now().isoformat()
                items = order_data.get("items") or []
                new_row = {
                    "order_id": order_id,
                    "shop_id": order_data.get("shop_id"),
                    "table_number": order_data.get("table_number"),
                    "session_id": order_data.get("session_id"),
                    "date_time": order_data.get("created_at", export_time),
                    "status": order_data.get("status"),
                    "paid": bool(order_data.get("paid", False)),
                    "items": json.dumps(items),
                    "item_count": sum(int(item.get("quantity", 0)) for item in items),
                    "subtotal": order_data.get("subtotal"),
                    "service_fee": order_data.get("service_fee"),
                    "total": order_data.get("total"),
                    "exported_at": export_time,
                }

                if not df.empty:
                    df = df[df["order_id"] != order_id]
                df = pd.concat([df, pd.DataFrame([new_row])], ignore_index=True)
                df.to_excel(str(ledger), index=False, engine="openpyxl")

                logger.info(f"Order #{order_id} written to ledger")

                result["success"] = True
                result["message"] = f"Order #{order_id} exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for Order #{order_id}")

        except Timeout:
            result["message"] = f"Lock timeout ({timeout}s)"
            logger.error(f"Ledger lock timeout for Order #{order_id}")

        return result

    @classmethod
    def get_all_orders(cls) -> list[dict[str, Any]]:
        """Get all ledger rows."""
        ledger = cls.ledger_path()
        if not ledger.exists():
            return []

        df = pd.read_excel(ledger, engine="openpyxl")
        return df.to_dict("records")

    @classmethod
    def clear(cls) -> bool:
        """Delete the ledger and its lock file."""
        for f in (cls.ledger_path(), cls.lock_path()):
            if f.exists():
                f.unlink()
        logger.info("Ledger cleared")
        return True
