from __future__ import annotations

import argparse

from rich.table import Table

from docbatch.cli.context import CLIContext
from docbatch.cli.service_options import open_batch_service


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("notifications", help="List batch completion notifications")
    parser.add_argument("--pending", action="store_true", help="Only notifications not yet delivered")
    parser.add_argument("--limit", type=int, default=50)
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    with open_batch_service(ctx, run_workers=False) as service:
        rows = service.list_notifications(pending_only=args.pending, limit=args.limit)

    table = Table(title="Notifications")
    table.add_column("Time")
    table.add_column("Batch ID")
    table.add_column("Kind")
    table.add_column("Delivered")
    table.add_column("Message", overflow="fold")
    for row in rows:
        style = "yellow" if row["level"] == "warning" else "green"
        table.add_row(
            row["timestamp"],
            row["batch_id"],
            f"[{style}]{row['kind']}[/{style}]",
            "yes" if row["delivered"] else "pending",
            row["message"],
        )
    ctx.console.print(table)
    return 0
