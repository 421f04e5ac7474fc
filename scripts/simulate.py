"""
Chaos Simulation Script

Simulates many diners ordering at once: each opens a table session,
fills a cart from the live menu and places an order. A staff pass then
walks orders through the kitchen workflow and settles the desks.
Run from project root: python scripts/simulate.py
"""

import asyncio
import sys
import os
import random
import time
import uuid
import argparse
from datetime import datetime
from typing import Any, Optional

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_DINERS = 40
TABLES = [f"T{n}" for n in range(1, 9)]
INSTRUCTIONS = [None, None, "No onions", "Extra napkins", "Well done", "Sauce on the side"]


def random_selections(item: dict) -> dict[str, Any]:
    """Random but valid customizations for a menu item."""
    selections = dict(item.get("default_customizations") or {})
    for option in item.get("customization_options", []):
        if option["type"] == "radio" and option.get("options"):
            selections[option["id"]] = random.choice(option["options"])["id"]
        elif option["type"] == "checkbox":
            selections[option["id"]] = random.random() < 0.3
    return selections


def admin_headers() -> dict[str, str]:
    key = os.getenv("ADMIN_API_KEY")
    return {"X-Admin-Key": key} if key else {}


# =============================================================================
# DINER FLOW
# =============================================================================

async def run_diner(
    client: httpx.AsyncClient,
    diner_num: int,
    menu: list[dict],
) -> dict[str, Any]:
    """Open a session, add 1-4 items and place one order."""
    table = random.choice(TABLES)
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/sessions",
            json={"table_number": table},
            timeout=30.0
        )
        response.raise_for_status()
        session_id = response.json()["id"]

        for _ in range(random.randint(1, 4)):
            item = random.choice(menu)
            response = await client.post(
                f"{API_BASE_URL}/api/sessions/{session_id}/cart/items",
                json={
                    "menu_item_id": item["id"],
                    "quantity": random.randint(1, 3),
                    "customizations": random_selections(item),
                    "special_instructions": random.choice(INSTRUCTIONS),
                },
                timeout=30.0
            )
            response.raise_for_status()
        cart = response.json()

        response = await client.post(
            f"{API_BASE_URL}/api/sessions/{session_id}/orders",
            json={"table_number": table},
            headers={"Idempotency-Key": uuid.uuid4().hex},
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            data = response.json()
            return {
                "diner_num": diner_num,
                "success": True,
                "order_id": data["id"],
                "table": table,
                "total": float(data["total"]),
                "cart_total": float(cart["total"]),
                "time": elapsed,
            }
        return {
            "diner_num": diner_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "diner_num": diner_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


# =============================================================================
# STAFF FLOW
# =============================================================================

async def advance_order(client: httpx.AsyncClient, order: dict) -> Optional[str]:
    """Walk one order to completed (or cancel it) and mark it paid."""
    if random.random() < 0.1:
        steps = ["cancelled"]
    else:
        steps = ["preparing", "ready", "completed"]

    for status in steps:
        response = await client.patch(
            f"{API_BASE_URL}/api/admin/orders/{order['id']}",
            json={"shop_id": order["shop_id"], "status": status},
            headers=admin_headers(),
            timeout=30.0
        )
        if response.status_code != 200:
            return f"Order #{order['id']} → {status}: {response.text[:80]}"

    if steps[-1] == "completed":
        response = await client.post(
            f"{API_BASE_URL}/api/admin/orders/{order['id']}/paid",
            headers=admin_headers(),
            timeout=30.0
        )
        if response.status_code != 200:
            return f"Order #{order['id']} paid: {response.text[:80]}"
    return None


async def run_staff_pass(client: httpx.AsyncClient) -> list[str]:
    response = await client.get(
        f"{API_BASE_URL}/api/admin/orders",
        params={"status": "pending", "limit": 200},
        headers=admin_headers(),
    )
    response.raise_for_status()
    orders = response.json()["orders"]

    errors = await asyncio.gather(*[advance_order(client, order) for order in orders])
    return [e for e in errors if e]


async def check_desks(client: httpx.AsyncClient) -> list[str]:
    """Every desk must be occupied iff it still has open unpaid orders."""
    response = await client.get(f"{API_BASE_URL}/api/admin/desks", headers=admin_headers())
    response.raise_for_status()

    problems = []
    for desk in response.json():
        if desk["is_occupied"] != (desk["active_order_count"] > 0):
            problems.append(
                f"Desk {desk['number']}: {desk['occupancy']} with "
                f"{desk['active_order_count']} open order(s)"
            )
    return problems


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_diners: int = TOTAL_DINERS, staff: bool = True) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_diners: Number of concurrent diners
        staff: Also progress, pay and check the resulting orders
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONCURRENT DINERS")
    print("=" * 70)
    print(f"📋 Diners: {num_diners} across {len(TABLES)} tables")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        response = await client.get(f"{API_BASE_URL}/api/menu")
        response.raise_for_status()
        menu = [item for item in response.json() if item["is_available"]]
        if not menu:
            print("\n❌ Menu is empty. Start the API in development mode to seed demo data.")
            return {"total": num_diners, "successful": 0, "failed": num_diners}

        print("\n🚀 Seating diners...\n")
        results = await asyncio.gather(*[run_diner(client, i + 1, menu) for i in range(num_diners)])

        staff_errors: list[str] = []
        desk_problems: list[str] = []
        if staff:
            print("👨‍🍳 Running staff pass...\n")
            staff_errors = await run_staff_pass(client)
            desk_problems = await check_desks(client)

    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    mismatched = [r for r in successful if abs(r["total"] - r["cart_total"]) > 0.001]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)

    print(f"\n✅ Successful Orders: {len(successful)}/{num_diners}")
    print(f"❌ Failed Orders: {len(failed)}/{num_diners}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        total_revenue = sum(r["total"] for r in successful)
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Diner Flow: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")
        print(f"   💰 Total Revenue: ${total_revenue:.2f}")

    if mismatched:
        print(f"\n⚠️  {len(mismatched)} order total(s) differ from their cart total")

    if failed:
        print(f"\n⚠️  Failed Diner Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Diner #{f['diner_num']}: {f.get('error', 'Unknown error')}")

    if staff:
        print(f"\n👨‍🍳 Staff errors: {len(staff_errors)}")
        for e in staff_errors[:5]:
            print(f"   {e}")
        if desk_problems:
            print(f"\n❌ Desk occupancy problems:")
            for p in desk_problems:
                print(f"   {p}")
        else:
            print("✅ Desk occupancy consistent")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Check Celery terminal - ledger exports should complete")
    print("2. Run: python scripts/verify.py")
    print("=" * 70)

    return {
        "total": num_diners,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results
    }


async def preflight() -> bool:
    """Check the API is up before firing traffic."""
    async with httpx.AsyncClient() as client:
        print("\n1️⃣ Health Check...")
        response = await client.get(f"{API_BASE_URL}/health")
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Database: {data.get('database')}")
        print(f"   Redis: {data.get('redis')}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--diners", type=int, default=TOTAL_DINERS, help="Number of diners")
    parser.add_argument("--no-staff", action="store_true", help="Only place orders")
    parser.add_argument("--skip-tests", action="store_true", help="Skip the health check")
    args = parser.parse_args()

    if not args.skip_tests and not asyncio.run(preflight()):
        print("\n❌ Pre-flight check failed. Is the API running?")
        sys.exit(1)

    summary = asyncio.run(run_simulation(args.diners, staff=not args.no_staff))
    sys.exit(0 if summary["failed"] == 0 else 1)
