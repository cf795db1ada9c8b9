"""
Interactive failover demo for the number rental service.

Walks through normal rentals, a provider outage with automatic failover,
and recovery, pausing between steps so you can watch /health.

Usage:
    1. Start the server:  python3 -m uvicorn app.main:app --reload
    2. Run this script:    python3 demo.py
"""

import httpx

BASE = "http://localhost:8000"
USER = "demo-user"

# ── Helpers ──────────────────────────────────────────────────────────

def wait(prompt: str = "Press Enter to continue..."):
    print(f"\n  \033[90m{prompt}\033[0m", end="")
    input()

def section(title: str):
    width = 62
    print(f"\n\033[1m{'━' * width}\033[0m")
    print(f"\033[1m  {title}\033[0m")
    print(f"\033[1m{'━' * width}\033[0m")

def step(msg: str):
    print(f"\n  \033[96m▸\033[0m {msg}")

def rent_many(client: httpx.Client, count: int, **extra) -> dict[str, dict]:
    """Create ``count`` rentals and cancel each one right away to free the balance."""
    stats: dict[str, dict] = {}
    for i in range(count):
        resp = client.post(
            f"{BASE}/rentals",
            json={"user_id": USER, "country_code": "vn", "service_code": "telegram", **extra},
        )
        data = resp.json()
        acquisition = data.get("acquisition") or {}
        pid = acquisition.get("provider") or "none"
        row = stats.setdefault(pid, {"ok": 0, "failed": 0, "retries": 0})
        if data["success"]:
            row["ok"] += 1
            client.post(f"{BASE}/rentals/{data['order']['id']}/cancel", json={"user_id": USER})
        else:
            row["failed"] += 1
        row["retries"] += acquisition.get("retried_count", 0)

        done = i + 1
        bar_len = 30
        filled = int(bar_len * done / count)
        bar = "█" * filled + "░" * (bar_len - filled)
        print(f"\r  Renting: {bar} {done}/{count}", end="", flush=True)

    print()
    return stats


def print_rental_table(stats: dict[str, dict]):
    print()
    print(f"  {'Provider':<16s} {'OK':>5s} {'Failed':>7s} {'Retries':>8s}")
    print(f"  {'─' * 16} {'─' * 5} {'─' * 7} {'─' * 8}")
    for pid in sorted(stats):
        s = stats[pid]
        print(f"  {pid:<16s} {s['ok']:>5d} {s['failed']:>7d} {s['retries']:>8d}")


def print_health(client: httpx.Client):
    health = client.get(f"{BASE}/health").json()
    print()
    print(f"  {'Provider':<16s} {'Status':<12s} {'Success':>8s} {'Avg ms':>7s} {'Routing':>8s}")
    print(f"  {'─' * 16} {'─' * 12} {'─' * 8} {'─' * 7} {'─' * 8}")
    for p in health["providers"]:
        rate = "—" if p["success_rate"] is None else f"{p['success_rate']:.0f}%"
        avg = "—" if p["avg_response_time_ms"] is None else str(p["avg_response_time_ms"])
        routing = "\033[92myes\033[0m" if p["is_routing_enabled"] else "\033[91mno\033[0m"
        print(f"  {p['provider']:<16s} {p['status']:<12s} {rate:>8s} {avg:>7s} {routing:>8s}")


def main():
    with httpx.Client(timeout=30.0) as client:
        client.post(f"{BASE}/simulate/reset")
        client.put(f"{BASE}/preferences", json={"retry_delay_ms": 50})
        client.post(f"{BASE}/balance/{USER}/deposit", json={"amount": 1_000_000})

        section("Phase 1 — Normal operation")
        step("Renting 20 numbers with every provider healthy")
        print_rental_table(rent_many(client, 20))
        print_health(client)
        wait()

        section("Phase 2 — SMS-Activate outage")
        client.post(f"{BASE}/simulate/outage/sms-activate")
        step("SMS-Activate now fails 90% of purchases; retries and failover kick in")
        print_rental_table(rent_many(client, 30))
        print_health(client)
        wait()

        section("Phase 3 — Market prices")
        client.post(f"{BASE}/simulate/recover/sms-activate")
        step("Provider recovered; renting with dynamic pricing enabled")
        print_rental_table(rent_many(client, 10, use_dynamic_price=True))
        print_health(client)

        section("Done")
        balance = client.get(f"{BASE}/balance/{USER}").json()["balance"]
        print(f"\n  Final balance for {USER}: {balance:,.0f}\n")


if __name__ == "__main__":
    main()
