#!/usr/bin/env python3
"""
Operator tool: inspect and clear the circuit breaker pause

The engine never clears a pause on its own. Run this (or POST
/api/risk/pause/clear) after reviewing the losing streak.

Usage:
    python scripts/clear_pause.py --status
    python scripts/clear_pause.py --operator alice --note "reviewed EURUSD streak"
"""

import asyncio
import sys
import os
from datetime import date

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from rich.console import Console
from rich.table import Table

from lifecycle_engine.config import settings
from lifecycle_engine.database.database import close_db, init_db, init_engine
from lifecycle_engine.logging_config import setup_logging
from lifecycle_engine.services.risk_ledger import RiskPolicy, clear_pause, get_ledger, get_pause_status
import logging

logger = logging.getLogger(__name__)
console = Console()


def render_status(status: dict):
    table = Table(title="Circuit Breaker")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("bot_paused", "[red]YES[/red]" if status["bot_paused"] else "[green]no[/green]")
    table.add_row("pause_reason", status["pause_reason"] or "-")
    table.add_row("paused_at", str(status["paused_at"] or "-"))
    table.add_row("ledger_date", str(status["ledger_date"] or "-"))
    console.print(table)


async def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description='Inspect or clear the trading pause')
    parser.add_argument('--status', action='store_true', help='Only show the current pause status')
    parser.add_argument('--operator', help='Who is clearing the pause (recorded on the ledger)')
    parser.add_argument('--note', default=None, help='Free-text reason for the audit log')
    parser.add_argument('--day', type=date.fromisoformat, default=None, help='Clear one day only (YYYY-MM-DD)')
    parser.add_argument('--database-url', default=None, help='Override DATABASE_URL')

    args = parser.parse_args()
    if not args.status and not args.operator:
        parser.error("--operator is required to clear the pause")

    setup_logging()
    session_factory = init_engine(args.database_url)
    policy = RiskPolicy.from_settings(settings)

    try:
        await init_db()
        async with session_factory() as db:
            status = await get_pause_status(db, policy)
            render_status(status)
            if args.status:
                return

            if not status["bot_paused"] and args.day is None:
                console.print("[green]Nothing to clear.[/green]")
                return

            cleared = await clear_pause(db, args.operator, note=args.note, day=args.day)
            for day in cleared:
                ledger = await get_ledger(db, day)
                console.print(
                    f"[green]Cleared {day}[/green] (consecutive_losses reset, "
                    f"day R={ledger.total_r_multiple:+.2f})"
                )
            render_status(await get_pause_status(db, policy))
    finally:
        await close_db()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
