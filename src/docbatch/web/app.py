from __future__ import annotations

from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from docbatch import __version__
from docbatch.application.services.batch_upload_service import BatchUploadService
from docbatch.application.services.project_service import ProjectService
from docbatch.core.config import AppPaths, ProcessingSettings
from docbatch.core.errors import BatchNotFoundError, ValidationError
from docbatch.domain.models.batch import BatchOptions, SubmittedFile


class PresenceRequest(BaseModel):
    foreground: bool


def create_app(
    paths: AppPaths,
    settings: ProcessingSettings | None = None,
    service: BatchUploadService | None = None,
) -> FastAPI:
    app = FastAPI(title="docbatch", version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    project_service = ProjectService(paths)
    project_service.init_project()
    batch_service = service or BatchUploadService(paths=paths, settings=settings)

    @app.on_event("shutdown")
    def _shutdown_batch_service() -> None:
        batch_service.shutdown()

    def _not_found(batch_id: str) -> HTTPException:
        return HTTPException(status_code=404, detail=f"Batch not found: {batch_id}")

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True, "version": __version__}

    @app.post("/api/batches")
    async def api_submit_batch(
        files: list[UploadFile] = File(...),
        document_type: str = Form(...),
        priority: str = Form(default="normal"),
        auto_save: bool = Form(default=True),
        notify_when_complete: bool = Form(default=True),
        prefer_background_worker: bool = Form(default=True),
        skip_processed_files: bool = Form(default=False),
    ) -> dict[str, Any]:
        submitted: list[SubmittedFile] = []
        for upload in files:
            content = await upload.read()
            submitted.append(
                SubmittedFile(
                    name=upload.filename or "upload.bin",
                    content=content,
                    mime_type=upload.content_type or "application/octet-stream",
                )
            )
        options = BatchOptions(
            priority=priority,
            auto_save=auto_save,
            notify_when_complete=notify_when_complete,
            prefer_background_worker=prefer_background_worker,
            skip_processed_files=skip_processed_files,
        )
        try:
            result = batch_service.add_batch(submitted, document_type, options)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, **result}

    @app.get("/api/batches")
    def api_list_batches() -> dict[str, Any]:
        return {"ok": True, "batches": batch_service.get_active_batches()}

    @app.get("/api/batches/{batch_id}")
    def api_get_batch(batch_id: str) -> dict[str, Any]:
        status = batch_service.get_batch_status(batch_id)
        if status is None:
            raise _not_found(batch_id)
        return {"ok": True, "batch": status}

    @app.post("/api/batches/{batch_id}/cancel")
    def api_cancel_batch(batch_id: str) -> dict[str, Any]:
        try:
            batch = batch_service.cancel_batch(batch_id)
        except BatchNotFoundError as exc:
            raise _not_found(batch_id) from exc
        return {"ok": True, "batch": batch}

    @app.post("/api/batches/{batch_id}/retry")
    def api_retry_batch(batch_id: str) -> dict[str, Any]:
        try:
            count = batch_service.retry_failed_files(batch_id)
        except BatchNotFoundError as exc:
            raise _not_found(batch_id) from exc
        return {"ok": True, "retried_files": count}

    @app.get("/api/statistics")
    def api_statistics() -> dict[str, Any]:
        return {"ok": True, "statistics": batch_service.get_statistics()}

    @app.get("/api/notifications")
    def api_notifications(
        pending: bool = False,
        limit: int = Query(default=200, ge=1, le=5000),
    ) -> dict[str, Any]:
        return {
            "ok": True,
            "notifications": batch_service.list_notifications(pending_only=pending, limit=limit),
        }

    @app.post("/api/presence")
    def api_presence(req: PresenceRequest) -> dict[str, Any]:
        delivered = batch_service.set_foreground(req.foreground)
        return {"ok": True, "foreground": req.foreground, "delivered": delivered}

    return app
