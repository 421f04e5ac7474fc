"""
Ledger Verification Script

Verifies data integrity of the settled-order ledger.
Run from project root: python scripts/verify.py
"""

import json
import os
import sys
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from tableside.core.config import get_settings

settings = get_settings()
LEDGER_FILE = os.path.join(settings.data_directory, settings.ledger_filename)


def expected_total(subtotal: float) -> float:
    fee = (Decimal(str(subtotal)) * settings.service_fee_percent / 100).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    return float(Decimal(str(subtotal)) + fee)


def verify_ledger() -> bool:
    """Verify the ledger after a simulation."""

    print("=" * 60)
    print("🔍 LEDGER VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {LEDGER_FILE}")
    print("=" * 60)

    if not os.path.exists(LEDGER_FILE):
        print("\n❌ Ledger file not found!")
        print("   Run the simulation first: python scripts/simulate.py")
        return False

    try:
        df = pd.read_excel(LEDGER_FILE, engine='openpyxl')
        print(f"\n✅ File loaded successfully!")
    except Exception as e:
        print(f"\n❌ Could not read ledger file: {e}")
        return False

    ok = True

    print(f"\n📊 STATISTICS:")
    print(f"   Settled Orders: {len(df)}")
    print(f"   Columns: {len(df.columns)}")

    required = ['order_id', 'table_number', 'status', 'paid', 'items', 'subtotal', 'service_fee', 'total']
    missing = [col for col in required if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
        return False
    print(f"\n✅ All required columns present")

    duplicates = df['order_id'].duplicated().sum()
    if duplicates > 0:
        print(f"\n⚠️ {duplicates} duplicate order IDs found!")
        ok = False
    else:
        print(f"✅ No duplicate order IDs")

    wrong_totals = df[
        df.apply(lambda row: abs(row['total'] - expected_total(row['subtotal'])) > 0.001, axis=1)
    ]
    if len(wrong_totals):
        print(f"\n⚠️ {len(wrong_totals)} order(s) with total != subtotal + service fee:")
        print(wrong_totals[['order_id', 'subtotal', 'service_fee', 'total']].to_string(index=False))
        ok = False
    else:
        print(f"✅ Totals match subtotal + {settings.service_fee_percent}% service fee")

    def items_subtotal(raw: str) -> float:
        items = json.loads(raw) if isinstance(raw, str) else []
        return round(sum(i['quantity'] * i['unit_price'] for i in items), 2)

    wrong_subtotals = df[
        df.apply(lambda row: abs(items_subtotal(row['items']) - row['subtotal']) > 0.001, axis=1)
    ]
    if len(wrong_subtotals):
        print(f"\n⚠️ {len(wrong_subtotals)} order(s) whose items do not add up to the subtotal")
        ok = False
    else:
        print(f"✅ Item lines add up to every subtotal")

    print(f"\n💰 REVENUE:")
    print(f"   Total: ${df['total'].sum():.2f}")
    if len(df):
        print(f"   Average: ${df['total'].mean():.2f}")

    print(f"\n📋 RECENT ORDERS:")
    print("-" * 60)
    if len(df) > 0:
        cols = ['order_id', 'table_number', 'status', 'paid', 'total']
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "❌ VERIFICATION FOUND PROBLEMS")
    print("=" * 60)

    return ok


if __name__ == "__main__":
    sys.exit(0 if verify_ledger() else 1)
