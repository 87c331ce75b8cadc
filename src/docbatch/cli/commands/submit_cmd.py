from __future__ import annotations

import argparse
import mimetypes
import time
from pathlib import Path

from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from docbatch.cli.context import CLIContext
from docbatch.cli.service_options import open_batch_service
from docbatch.core.errors import ValidationError
from docbatch.domain.models.batch import PRIORITIES, BatchOptions, SubmittedFile


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("submit", help="Submit files as one processing batch")
    parser.add_argument("files", nargs="+", help="Files to process")
    parser.add_argument("--type", dest="document_type", default="document", help="Document type label")
    parser.add_argument("--priority", choices=PRIORITIES, default="normal")
    parser.add_argument("--no-auto-save", action="store_true", help="Do not save successful results")
    parser.add_argument(
        "--same-thread",
        action="store_true",
        help="Process files in this process instead of a background worker",
    )
    parser.add_argument(
        "--skip-processed",
        action="store_true",
        help="Skip files (same name and size) that an earlier batch already processed",
    )
    parser.add_argument("--no-wait", action="store_true", help="Return right after queuing the batch")
    parser.set_defaults(handler=run)


def _read_submitted(paths: list[Path]) -> list[SubmittedFile]:
    submitted: list[SubmittedFile] = []
    for path in paths:
        if not path.is_file():
            raise ValidationError(f"Not a file: {path}")
        mime_type, _ = mimetypes.guess_type(path.name)
        submitted.append(
            SubmittedFile(
                name=path.name,
                content=path.read_bytes(),
                mime_type=mime_type or "application/octet-stream",
            )
        )
    return submitted


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    files = _read_submitted([Path(p) for p in args.files])
    options = BatchOptions(
        priority=args.priority,
        auto_save=not args.no_auto_save,
        prefer_background_worker=not args.same_thread,
        skip_processed_files=args.skip_processed,
    )

    with open_batch_service(ctx, run_workers=not args.no_wait) as service:
        result = service.add_batch(files, args.document_type, options)
        batch_id = result["batch_id"]
        if batch_id is None:
            ctx.console.print(
                f"[yellow]All {result['skipped_files']} file(s) were already processed; nothing queued[/yellow]"
            )
            return 0

        ctx.console.print(
            f"[green]Queued[/green] {batch_id}: {result['total_files']} file(s) via "
            f"{result['processing_method']} (estimated {result['estimated_seconds']}s)"
        )
        if result["skipped_files"]:
            ctx.console.print(f"[yellow]Skipped[/yellow] {result['skipped_files']} already processed file(s)")
        if args.no_wait:
            return 0

        progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=ctx.console,
        )
        with progress:
            task = progress.add_task("Processing", total=result["total_files"])
            while True:
                status = service.wait_for_batch(batch_id, timeout=0.5)
                progress.update(task, completed=status["processed_files"])
                if status["status"] in {"completed", "cancelled"}:
                    break
                time.sleep(0.1)

        table = Table(title=f"Batch {batch_id}")
        table.add_column("#", justify="right")
        table.add_column("File", overflow="fold")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Error", overflow="fold")
        for item in status["files"]:
            table.add_row(
                str(item["index"]),
                item["name"],
                item["status"],
                str(item["attempts"]),
                item["error"] or "",
            )
        ctx.console.print(table)
        ctx.console.print(
            f"{status['successful_files']}/{status['total_files']} successful, {status['failed_files']} failed"
        )
        return 0 if status["failed_files"] == 0 else 1
