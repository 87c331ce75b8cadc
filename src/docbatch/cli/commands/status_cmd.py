from __future__ import annotations

import argparse

from rich.panel import Panel
from rich.table import Table

from docbatch.cli.context import CLIContext
from docbatch.cli.service_options import open_batch_service
from docbatch.core.errors import BatchNotFoundError


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    status = subparsers.add_parser("status", help="Show resident batches, or one batch in detail")
    status.add_argument("batch_id", nargs="?")
    status.set_defaults(handler=run_status)

    stats = subparsers.add_parser("stats", help="Show aggregate processing statistics")
    stats.set_defaults(handler=run_stats)


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    with open_batch_service(ctx, run_workers=False) as service:
        if args.batch_id:
            return _print_batch(ctx, service.get_batch_status(args.batch_id), args.batch_id)

        batches = service.get_active_batches()
        table = Table(title="Batches")
        table.add_column("Batch ID")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Method")
        table.add_column("Progress", justify="right")
        table.add_column("OK/Failed/Total", justify="right")
        table.add_column("Created")
        for batch in batches:
            table.add_row(
                batch["id"],
                batch["document_type"],
                batch["status"],
                batch["processing_method"] or "-",
                f"{batch['progress']}%",
                f"{batch['successful_files']}/{batch['failed_files']}/{batch['total_files']}",
                batch["created_at"],
            )
        ctx.console.print(table)
    return 0


def _print_batch(ctx: CLIContext, batch: dict | None, batch_id: str) -> int:
    if batch is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id}")
    ctx.console.print(
        Panel.fit(
            f"Status: {batch['status']}\n"
            f"Document type: {batch['document_type']}\n"
            f"Method: {batch['processing_method'] or '-'}\n"
            f"Progress: {batch['progress']}% ({batch['processed_files']}/{batch['total_files']})\n"
            f"Successful: {batch['successful_files']}  Failed: {batch['failed_files']}  "
            f"Skipped: {batch['skipped_files']}\n"
            f"Estimated time remaining: {batch['estimated_time_remaining']}s",
            title=f"Batch {batch['id']}",
        )
    )
    table = Table(title="Files")
    table.add_column("#", justify="right")
    table.add_column("File", overflow="fold")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Saved")
    table.add_column("Error", overflow="fold")
    for item in batch["files"]:
        table.add_row(
            str(item["index"]),
            item["name"],
            item["status"],
            f"{item['progress']}%",
            str(item["attempts"]),
            "yes" if item["saved"] else "no",
            item["error"] or "",
        )
    ctx.console.print(table)
    return 0


def run_stats(args: argparse.Namespace, ctx: CLIContext) -> int:
    with open_batch_service(ctx, run_workers=False) as service:
        stats = service.get_statistics()
    table = Table(title="Statistics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    ctx.console.print(table)
    return 0
