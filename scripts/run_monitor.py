#!/usr/bin/env python3
"""
Standalone monitor loop (no HTTP API)

Runs the monitor cycle driver on its own timer, or a single cycle with
--once for an external scheduler such as cron.

Usage:
    python scripts/run_monitor.py --once
    python scripts/run_monitor.py --interval 15
"""

import asyncio
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from rich.console import Console
from rich.table import Table

from lifecycle_engine.config import settings
from lifecycle_engine.database.database import close_db, init_db, init_engine
from lifecycle_engine.logging_config import setup_logging
from lifecycle_engine.services.event_emitter import EventEmitter
from lifecycle_engine.services.monitor_cycle import CycleSummary, MonitorConfig, MonitorCycleDriver
from lifecycle_engine.services.price_oracle import CcxtPriceOracle
from lifecycle_engine.services.risk_ledger import RiskPolicy
import logging

logger = logging.getLogger(__name__)
console = Console()


def render_summary(summary: CycleSummary):
    table = Table(title=f"Monitor cycle {summary.started_at:%Y-%m-%d %H:%M:%S} UTC")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Positions checked", str(summary.positions_checked))
    table.add_row("Transitions applied", str(summary.transitions_applied))
    table.add_row("Events written", str(summary.events_written))
    table.add_row("Final closes", str(summary.final_closes))
    table.add_row("Errors", f"[red]{summary.errors}[/red]" if summary.errors else "0")
    table.add_row("Skipped symbols", ", ".join(summary.skipped_symbols) or "-")
    table.add_row("Pause triggered", "[red]YES[/red]" if summary.pause_triggered else "no")
    table.add_row("Duration", f"{summary.duration_sec:.2f}s")
    console.print(table)


async def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description='Trade lifecycle monitor')
    parser.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    parser.add_argument(
        '--interval',
        type=float,
        default=settings.MONITOR_INTERVAL_SEC,
        help='Seconds between cycles'
    )
    parser.add_argument('--exchange', default=settings.PRICE_EXCHANGE_ID, help='CCXT exchange id for prices')

    args = parser.parse_args()

    setup_logging()
    session_factory = init_engine()
    oracle = CcxtPriceOracle(args.exchange, settings.PRICE_FETCH_TIMEOUT_SEC)
    emitter = EventEmitter(session_factory, RiskPolicy.from_settings(settings))
    driver = MonitorCycleDriver(session_factory, oracle, emitter, MonitorConfig.from_settings(settings))

    try:
        await init_db()
        if args.once:
            render_summary(await driver.run_cycle())
        else:
            console.print(f"[green]Monitor running every {args.interval}s (Ctrl+C to stop)[/green]")
            await driver.run_forever(args.interval)
    finally:
        await driver.stop()
        await oracle.close()
        await close_db()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Monitor stopped by user[/yellow]")
