#!/usr/bin/env python3
# main.py - Entry point for the order sync demo session
"""
Runs a scripted delivery session against the in-memory backend:

1. A restaurant manager client and two partner clients start and sync
2. Both partners race for the same order; exactly one assignment wins
3. The winner moves the order PICKED -> ON_ROUTE -> DELIVERED
4. The manager cancels another order
5. The manager's dashboard is rendered

Usage:
    python main.py                 # run the demo, print the final dashboard
    python main.py --live          # live dashboard while the demo runs
    python main.py --no-persist    # do not write the snapshot cache
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

import config  # noqa: E402
from core.exceptions import InvalidTransition, OrderSyncError  # noqa: E402
from core.logger_factory import install_global_excepthook, setup_logging  # noqa: E402
from core.models import OrderStatus, PartnerAvailability  # noqa: E402
from persistence.snapshot_store import SnapshotStore  # noqa: E402
from services.backend import InMemoryBackend  # noqa: E402
from services.sync_client import OrderSyncClient  # noqa: E402
from ui.dashboard import DashboardEventLog, render_once, run_dashboard  # noqa: E402

logger = logging.getLogger("main")

DEMO_CREDENTIALS = os.getenv("ORDER_SYNC_DEMO_CREDENTIALS", "demo-secret")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delivery order sync engine demo")
    parser.add_argument("--live", action="store_true", help="show the live dashboard while the demo runs")
    parser.add_argument("--no-persist", action="store_true", help="disable the snapshot cache")
    parser.add_argument("--state-dir", default=None, help="directory for the snapshot cache")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="console log level")
    parser.add_argument("--step-delay", type=float, default=0.3, help="pause between demo steps (s)")
    return parser.parse_args(argv)


def seed_backend(backend: InMemoryBackend) -> None:
    backend.register_partner("partner_1", name="Asha", contact="+1-555-0101")
    backend.register_partner("partner_2", name="Marco", contact="+1-555-0102")
    backend.register_partner("partner_3", name="Lin", contact="+1-555-0103")

    backend.create_order("ord_1", "Dana Ruiz", customer_address="12 Elm St",
                         items=[{"name": "Margherita", "quantity": 2, "unit_price": 11.5}], prep_time_min=15)
    backend.create_order("ord_2", "Sam Patel", customer_address="4 Oak Ave",
                         items=[{"name": "Pad Thai", "quantity": 1, "unit_price": 13.0}], prep_time_min=20)
    backend.create_order("ord_3", "Kim Lee", customer_address="88 Pine Rd",
                         items=[{"name": "Burrito", "quantity": 3, "unit_price": 9.25}],
                         special_instructions="No onions")


def _snapshot_store(args: argparse.Namespace, name: str):
    if args.no_persist:
        return None
    state_dir = args.state_dir or config.get_config("STATE_DIR")
    return SnapshotStore(os.path.join(state_dir, f"{name}_snapshot.json"))


async def run_demo(args: argparse.Namespace) -> int:
    backend = InMemoryBackend(credentials={DEMO_CREDENTIALS})
    seed_backend(backend)

    manager = OrderSyncClient(backend, DEMO_CREDENTIALS, client_id="manager",
                              snapshot_store=_snapshot_store(args, "manager"), persist=not args.no_persist)
    partners = {
        pid: OrderSyncClient(backend, DEMO_CREDENTIALS, client_id=pid, persist=False)
        for pid in ("partner_1", "partner_2")
    }

    events = DashboardEventLog()
    manager.overlays.subscribe(events.on_overlay)
    stop = asyncio.Event()
    dashboard_task = None

    await manager.start()
    for client in partners.values():
        await client.start()

    if args.live:
        dashboard_task = asyncio.create_task(run_dashboard(manager, events, stop))

    try:
        # Both partners race for the same order
        results = await asyncio.gather(
            partners["partner_1"].request_assignment("ord_1", "partner_1"),
            partners["partner_2"].request_assignment("ord_1", "partner_2"),
        )
        for result in results:
            events.emit(f"assign ord_1 -> {result.partner_id}: {result.reason}")
        winner = next(r.partner_id for r in results if r.accepted)
        winner_client = partners[winner]
        await winner_client.drain()
        await asyncio.sleep(args.step_delay)

        # Skipping steps is rejected locally and never forwarded
        try:
            await winner_client.request_transition("ord_1", OrderStatus.DELIVERED, partner_id=winner)
        except InvalidTransition as e:
            events.emit(f"rejected: {e}")

        for target in (OrderStatus.PICKED, OrderStatus.ON_ROUTE, OrderStatus.DELIVERED):
            await winner_client.request_transition("ord_1", target, partner_id=winner)
            await winner_client.drain()
            events.emit(f"ord_1 -> {target.value}")
            await asyncio.sleep(args.step_delay)

        await manager.cancel_order("ord_3", reason="customer request")
        events.emit("ord_3 cancelled")

        # An offline partner cannot be assigned
        loser = "partner_2" if winner == "partner_1" else "partner_1"
        await partners[loser].set_availability(loser, PartnerAvailability.OFFLINE)
        result = await partners[loser].request_assignment("ord_2", loser)
        events.emit(f"assign ord_2 -> {loser} while offline: {result.reason}")

        await manager.drain()
        await manager.refresh()
    except OrderSyncError as e:
        logger.error(f"Demo step failed: {e}")
        return 1
    finally:
        stop.set()
        if dashboard_task is not None:
            await dashboard_task
        for client in partners.values():
            await client.close()
        if not args.live:
            render_once(manager, events)
        await manager.close()

    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.state_dir:
        config.set_config_override("STATE_DIR", args.state_dir)

    setup_logging(args.log_level)
    install_global_excepthook()
    logger.info(f"Order sync demo starting (client {config.CLIENT_ID})")

    try:
        return asyncio.run(run_demo(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
