"""
main.py
CLI entry point for the campus parking pricing engine.

Usage:
  python main.py demo
  python main.py sweep
  python main.py resolve RES-20250302-ABCDEF12
  python main.py metrics --port 9090
"""
import argparse
import asyncio
import sys
import tempfile
import uuid
from datetime import datetime
from pathlib import Path

# Ensure project root is on sys.path when running directly
sys.path.insert(0, str(Path(__file__).parent))

# ── Sample metered lot from the campus lot table ─────────────────────────────
SAMPLE_LOT = {
    "id": "lot-metered-1",
    "name": "Administration Metered",
    "rate_model": "Hourly",
    "hourly_rate": 2.50,
    "semester_rate": 0.0,
    "is_metered": True,
    "is_ev": False,
}

SAMPLE_INTERVALS = [
    ("Tue 05:00–09:00", datetime(2025, 3, 4, 5),  datetime(2025, 3, 4, 9)),
    ("Tue 09:00–12:30", datetime(2025, 3, 4, 9),  datetime(2025, 3, 4, 12, 30)),
    ("Tue 17:00–21:00", datetime(2025, 3, 4, 17), datetime(2025, 3, 4, 21)),
    ("Tue 20:00–22:00", datetime(2025, 3, 4, 20), datetime(2025, 3, 4, 22)),
    ("Sat 10:00–14:00", datetime(2025, 3, 8, 10), datetime(2025, 3, 8, 14)),
]


class DemoGateway:
    """Accepts every charge and refund."""

    async def charge(self, amount, payment_method):
        from lifecycle.collaborators import ChargeResult
        return ChargeResult(succeeded=True, reference=f"pi_{uuid.uuid4().hex[:10]}")

    async def refund(self, charge_reference, amount):
        from lifecycle.collaborators import RefundResult
        return RefundResult(succeeded=True, reference=f"re_{uuid.uuid4().hex[:10]}")


class OfflineGateway:
    """Declines everything; used by maintenance commands that never move money."""

    async def charge(self, amount, payment_method):
        from lifecycle.collaborators import ChargeResult
        return ChargeResult(succeeded=False, message="gateway offline")

    async def refund(self, charge_reference, amount):
        from lifecycle.collaborators import RefundResult
        return RefundResult(succeeded=False, message="gateway offline")


# Demo mode

def run_demo() -> None:
    from rich import box
    from rich.console import Console
    from rich.table import Table

    from calculation_engine.calculators import PriceCalculator
    from domain.clock import FixedClock
    from domain.models import Interval, RateProfile
    from lifecycle.service import ReservationService
    from storage.sqlite_store import SQLiteStore

    console = Console()
    console.print("\n[bold blue]═══ CAMPUS PARKING PRICING ENGINE — DEMO ═══[/bold blue]\n")

    profile = RateProfile.from_lot(SAMPLE_LOT)
    pricer  = PriceCalculator()

    table = Table(title=f"Quotes — {SAMPLE_LOT['name']} @ ${profile.hourly_rate:.2f}/h", box=box.ROUNDED)
    table.add_column("Interval", style="cyan", width=18)
    table.add_column("Billable h", justify="right", width=10)
    table.add_column("Amount", justify="right", style="green", width=10)
    table.add_column("Free reason", style="yellow", width=24)
    for label, start, end in SAMPLE_INTERVALS:
        q = pricer.compute_billable_amount(Interval(start, end), profile)
        table.add_row(label, f"{q.billable_hours:.2f}", f"${q.amount:,.2f}", q.free_reason or "—")
    console.print(table)

    # Walk one reservation through book → confirm → extend → cancel
    with tempfile.TemporaryDirectory() as tmp:
        store = SQLiteStore(Path(tmp) / "demo.db")
        store.upsert_lot(SAMPLE_LOT)
        clock = FixedClock(datetime(2025, 3, 2, 9))
        service = ReservationService(store, DemoGateway(), clock=clock)

        res = service.book("demo-user", SAMPLE_LOT["id"], datetime(2025, 3, 4, 9), datetime(2025, 3, 4, 12))
        asyncio.run(service.confirm_payment(res.id, "pm_card_visa"))
        asyncio.run(service.extend(res.id, 1, "pm_card_visa"))
        result = asyncio.run(service.cancel(res.id, "Plans changed"))
        console.print(
            f"\n  [bold]Reservation:[/bold] {res.id}  status={result.reservation.status.value}"
            f"  refund=${result.entry.stored_amount:,.2f}"
        )

        history = Table(title="Billing history (reconciled)", box=box.ROUNDED, show_lines=True)
        history.add_column("Kind", style="cyan")
        history.add_column("Stored", justify="right")
        history.add_column("Display", justify="right", style="green")
        history.add_column("Drift", justify="center")
        for line in service.billing_history(user_id="demo-user"):
            history.add_row(
                line.kind,
                f"${line.stored_amount:,.2f}",
                f"${line.display_amount:,.2f}",
                "[red]yes[/red]" if line.drifted else "no",
            )
        console.print(history)
    console.print()


# Sweep mode

def run_sweep() -> None:
    from lifecycle.service import ReservationService
    from storage.sqlite_store import SQLiteStore

    store = SQLiteStore()
    service = ReservationService(store, OfflineGateway())
    completed = service.complete_expired()
    print(f"Completed {completed} expired reservation(s)")
    for table, count in store.stats().items():
        print(f"  {table:<18} {count:>6}")


def run_resolve(reservation_id: str) -> None:
    from lifecycle.service import ReservationService
    from storage.sqlite_store import SQLiteStore

    service = ReservationService(SQLiteStore(), OfflineGateway())
    reference = service.resolve_ledger_pending(reservation_id)
    if reference is None:
        print(f"{reservation_id}: nothing pending")
    else:
        print(f"{reservation_id}: cleared pending payment {reference}")


# ── Metrics mode ──────────────────────────────────────────────────────────────

def run_metrics(port: int) -> None:
    import time

    from monitoring import start_metrics_server
    start_metrics_server(port)
    while True:
        time.sleep(60)


if __name__ == "__main__":
    from config.settings import settings

    parser = argparse.ArgumentParser(description="Campus parking pricing engine")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("demo", help="Print sample quotes and a reconciled billing history")
    sub.add_parser("sweep", help="Complete expired reservations and expire lapsed permits")
    resolve_p = sub.add_parser("resolve", help="Unlock a reservation whose ledger write failed after payment")
    resolve_p.add_argument("reservation_id")
    metrics_p = sub.add_parser("metrics", help="Serve Prometheus metrics")
    metrics_p.add_argument("--port", type=int, default=settings.metrics_port)
    args = parser.parse_args()

    if args.command == "demo":
        run_demo()
    elif args.command == "sweep":
        run_sweep()
    elif args.command == "resolve":
        run_resolve(args.reservation_id)
    else:
        run_metrics(args.port)
