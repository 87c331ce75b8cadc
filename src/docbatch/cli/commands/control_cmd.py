from __future__ import annotations

import argparse

from docbatch.cli.context import CLIContext
from docbatch.cli.service_options import open_batch_service


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    retry = subparsers.add_parser("retry", help="Re-queue the failed files of a batch and process them")
    retry.add_argument("batch_id")
    retry.add_argument("--no-wait", action="store_true")
    retry.set_defaults(handler=run_retry)

    cancel = subparsers.add_parser("cancel", help="Cancel the unfinished files of a batch")
    cancel.add_argument("batch_id")
    cancel.set_defaults(handler=run_cancel)


def run_retry(args: argparse.Namespace, ctx: CLIContext) -> int:
    with open_batch_service(ctx, run_workers=not args.no_wait) as service:
        count = service.retry_failed_files(args.batch_id)
        if count == 0:
            ctx.console.print(f"[yellow]No failed files in {args.batch_id}[/yellow]")
            return 0
        ctx.console.print(f"[green]Re-queued[/green] {count} file(s) in {args.batch_id}")
        if args.no_wait:
            return 0
        status = service.wait_for_batch(args.batch_id)
    ctx.console.print(
        f"{status['status']}: {status['successful_files']}/{status['total_files']} successful, "
        f"{status['failed_files']} failed"
    )
    return 0 if status["failed_files"] == 0 else 1


def run_cancel(args: argparse.Namespace, ctx: CLIContext) -> int:
    with open_batch_service(ctx, run_workers=False) as service:
        batch = service.cancel_batch(args.batch_id)
    ctx.console.print(
        f"[yellow]{batch['id']}[/yellow] {batch['status']}: "
        f"{batch['successful_files']} completed, {batch['failed_files']} failed"
    )
    return 0
