#!/usr/bin/env python3
"""
Order Dashboard - Rich Terminal UI

Renders one client's effective view:
- Header with client id, confirmation state and dashboard metrics
- Available pool (PREP, no partner) and active deliveries
- Partners with availability and current order
- Recent sync events (assignments, status changes, overlay expiry)

Pure rendering: every panel is built from an EffectiveView, nothing here
writes to the store.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional, Tuple

from rich import box
from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from core.models import Order, OrderStatus, PartnerAvailability
from services.metrics import DashboardMetrics
from services.overlays import OverlayEvent
from services.sync_client import EffectiveView, OrderSyncClient

logger = logging.getLogger(__name__)

_STATUS_STYLE = {
    OrderStatus.PREP: "yellow",
    OrderStatus.PICKED: "cyan",
    OrderStatus.ON_ROUTE: "blue",
    OrderStatus.DELIVERED: "green",
    OrderStatus.CANCELLED: "red",
}

_AVAILABILITY_STYLE = {
    PartnerAvailability.AVAILABLE: "green",
    PartnerAvailability.BUSY: "yellow",
    PartnerAvailability.OFFLINE: "dim",
}


class DashboardEventLog:
    """Recent events shown in the "Events" panel."""

    def __init__(self, max_events: int = 50):
        self.events: Deque[Tuple[float, str]] = deque(maxlen=max_events)

    def emit(self, message: str) -> None:
        self.events.append((time.time(), message))

    def recent(self, n: int = 6) -> List[Tuple[float, str]]:
        return list(self.events)[-n:]

    def on_overlay(self, event: OverlayEvent) -> None:
        overlay = event.overlay
        self.emit(f"{overlay.kind} {event.outcome}: {overlay.order_id}")


def _ts(epoch: Optional[float]) -> str:
    if epoch is None:
        return "-"
    return datetime.fromtimestamp(epoch).strftime("%H:%M:%S")


def make_header_panel(client_id: str, metrics: DashboardMetrics, confirmed: bool) -> Panel:
    state = Text("confirmed", style="green") if confirmed else Text("unconfirmed (cache)", style="yellow")

    table = Table.grid(padding=(0, 3))
    for _ in range(4):
        table.add_column(justify="left")
    table.add_row(
        f"Orders: [bold]{metrics.total_orders}[/]",
        f"Active: [bold]{metrics.active_orders}[/]",
        f"Delivered: [bold]{metrics.delivered_orders}[/]",
        f"Available: [bold]{metrics.available_orders}[/]",
    )
    table.add_row(
        f"Revenue: [bold]${metrics.total_revenue:.2f}[/]",
        f"Avg order: ${metrics.average_order_value:.2f}",
        f"Success: {metrics.success_rate:.1f}%",
        f"Avg delivery: {metrics.average_delivery_time:.1f} min",
    )
    table.add_row(
        f"Partners: {metrics.busy_partners}/{metrics.total_partners} busy",
        f"Utilization: {metrics.partner_utilization:.1f}%",
        f"Cancelled: {metrics.cancelled_orders}",
        "",
    )
    return Panel(Group(Text.assemble("Client ", (client_id, "bold cyan"), " | ", state), table),
                 title="ORDER SYNC", border_style="cyan")


def make_orders_panel(orders: List[Order], title: str, view: EffectiveView, border_style: str = "yellow") -> Panel:
    table = Table(show_header=True, box=box.SIMPLE, padding=(0, 1), collapse_padding=True)
    table.add_column("Code", style="cyan", no_wrap=True)
    table.add_column("Customer", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Partner", no_wrap=True)
    table.add_column("Total", justify="right")
    table.add_column("Created", justify="right")

    for order in orders:
        status = Text(order.status.value, style=_STATUS_STYLE[order.status])
        if view.is_pending(order.id):
            status.append(" *", style="bold magenta")
        table.add_row(
            order.order_code,
            order.customer_name or "-",
            status,
            order.assigned_partner or "-",
            f"${order.total_amount:.2f}",
            _ts(order.created_at),
        )
    return Panel(table, title=f"{title} ({len(orders)})", border_style=border_style)


def make_partners_panel(view: EffectiveView, partner_ids: List[str]) -> Panel:
    table = Table(show_header=True, box=box.SIMPLE, padding=(0, 1), collapse_padding=True)
    table.add_column("Partner", style="cyan", no_wrap=True)
    table.add_column("State", no_wrap=True)
    table.add_column("Order", no_wrap=True)
    table.add_column("Deliveries", justify="right")
    table.add_column("Earnings", justify="right")

    for partner_id in partner_ids:
        partner = view.get_partner(partner_id)
        if partner is None:
            continue
        current = view.get(partner.current_order) if partner.current_order else None
        table.add_row(
            partner.name or partner.id,
            Text(partner.availability.value, style=_AVAILABILITY_STYLE[partner.availability]),
            current.order_code if current else "-",
            str(partner.total_deliveries),
            f"${partner.total_earnings:.2f}",
        )
    return Panel(table, title="PARTNERS", border_style="magenta")


def make_events_panel(events: DashboardEventLog) -> Panel:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Event")
    for ts, message in events.recent():
        table.add_row(_ts(ts), message)
    return Panel(table, title="EVENTS", border_style="yellow")


def build_layout(client: OrderSyncClient, events: DashboardEventLog) -> Layout:
    view = client.effective_view()
    partner_ids = [p.id for p in client.store.partners()]

    layout = Layout(name="root")
    layout.split(
        Layout(name="header", size=7),
        Layout(name="main", ratio=2),
        Layout(name="bottom", ratio=1),
    )
    layout["main"].split_row(Layout(name="available"), Layout(name="active"))
    layout["bottom"].split_row(Layout(name="partners"), Layout(name="events"))

    layout["header"].update(make_header_panel(client.client_id, view.metrics, view.confirmed))
    layout["available"].update(make_orders_panel(view.get_available(), "AVAILABLE", view))
    layout["active"].update(make_orders_panel(view.get_active(), "ACTIVE", view, border_style="blue"))
    layout["partners"].update(make_partners_panel(view, partner_ids))
    layout["events"].update(make_events_panel(events))
    return layout


def render_once(client: OrderSyncClient, events: Optional[DashboardEventLog] = None,
                console: Optional[Console] = None) -> None:
    """Print the dashboard once (non-interactive output)."""
    console = console or Console()
    view = client.effective_view()
    console.print(make_header_panel(client.client_id, view.metrics, view.confirmed))
    console.print(make_orders_panel(view.get_available(), "AVAILABLE", view))
    console.print(make_orders_panel(view.get_active(), "ACTIVE", view, border_style="blue"))
    console.print(make_orders_panel(view.get_history(), "HISTORY", view, border_style="green"))
    console.print(make_partners_panel(view, [p.id for p in client.store.partners()]))
    if events is not None:
        console.print(make_events_panel(events))


async def run_dashboard(client: OrderSyncClient, events: DashboardEventLog,
                        stop: asyncio.Event, refresh_s: float = 1.0) -> None:
    """
    Live dashboard until `stop` is set. Runs on the client's event loop.
    """
    logger.info("Starting live dashboard...")
    with Live(build_layout(client, events), screen=False, refresh_per_second=4) as live:
        while not stop.is_set():
            live.update(build_layout(client, events))
            try:
                await asyncio.wait_for(stop.wait(), timeout=refresh_s)
            except asyncio.TimeoutError:
                pass
        live.update(build_layout(client, events))
