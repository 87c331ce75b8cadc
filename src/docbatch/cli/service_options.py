from __future__ import annotations

from dataclasses import replace

from docbatch.application.services.batch_upload_service import BatchUploadService
from docbatch.application.services.project_service import ProjectService
from docbatch.cli.context import CLIContext
from docbatch.core.config import ProcessingSettings
from docbatch.core.errors import ConfigurationError


def require_initialized_project(ctx: CLIContext) -> None:
    if not ProjectService(ctx.paths).is_initialized():
        raise ConfigurationError(
            f"Project is not initialized. Run 'docbatch init' first in {ctx.paths.project_root}"
        )


def open_batch_service(ctx: CLIContext, *, run_workers: bool) -> BatchUploadService:
    """Open the batch service for one CLI command.

    Read-only commands pass ``run_workers=False`` so that restoring persisted
    batches does not start processing them.
    """
    require_initialized_project(ctx)
    settings = ProcessingSettings.from_env()
    if not run_workers:
        settings = replace(settings, resume_on_startup=False)
    return BatchUploadService(paths=ctx.paths, settings=settings, start_threads=run_workers)
