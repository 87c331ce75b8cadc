from __future__ import annotations

import logging
import multiprocessing as mp
import queue
from typing import Any

from docbatch.core.errors import WorkerError
from docbatch.infrastructure.workers.extraction_worker import worker_main

logger = logging.getLogger(__name__)


class WorkerHandle:
    """One background worker process plus its command and event queues."""

    _JOIN_TIMEOUT_SECONDS = 5.0

    def __init__(self, *, extractor_ref: str, start_method: str = "spawn", name: str = "docbatch-worker") -> None:
        try:
            ctx = mp.get_context(start_method)
        except ValueError as exc:
            raise WorkerError(f"Unsupported worker start method: {start_method}") from exc
        self.name = name
        self._inbound = ctx.Queue()
        self._outbound = ctx.Queue()
        self._process = ctx.Process(
            target=worker_main,
            kwargs={
                "inbound": self._inbound,
                "outbound": self._outbound,
                "extractor_ref": extractor_ref,
            },
            daemon=True,
            name=name,
        )
        self._terminated = False

    def start(self) -> None:
        try:
            self._process.start()
        except (OSError, RuntimeError) as exc:
            raise WorkerError(f"Failed to start worker process: {exc}") from exc

    def send(self, message: Any) -> None:
        if self._terminated:
            raise WorkerError("Worker handle already terminated")
        self._inbound.put(message)

    def receive(self, timeout: float) -> Any | None:
        try:
            return self._outbound.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None
        except (EOFError, OSError) as exc:
            raise WorkerError(f"Worker channel closed: {exc}") from exc

    def is_alive(self) -> bool:
        return self._process.is_alive()

    @property
    def exitcode(self) -> int | None:
        return self._process.exitcode

    def terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        if self._process.is_alive():
            self._process.terminate()
            self._process.join(timeout=self._JOIN_TIMEOUT_SECONDS)
        for channel in (self._inbound, self._outbound):
            try:
                channel.cancel_join_thread()
            except Exception:
                pass
            try:
                channel.close()
            except Exception:
                pass
        logger.debug("Worker %s terminated (exit code %s)", self.name, self._process.exitcode)
