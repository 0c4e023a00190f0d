"""Serialized submission of ledger-mutating calls.

The ledger requires strictly increasing per-sender nonces, so grant and revoke
transactions are executed one at a time in the order they were queued. A
failed task never blocks later ones; its result is handed to the task's
callback so the caller can roll back. Nothing is retried here.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .market import MarketError

logger = logging.getLogger(__name__)

VALIDATION = "validation"
TRANSPORT = "transport"


@dataclass(frozen=True)
class SubmissionResult:
    label: str
    tx_hash: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def category(self) -> Optional[str]:
        if self.error is None:
            return None
        return VALIDATION if isinstance(self.error, MarketError) else TRANSPORT

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        message = str(self.error) or type(self.error).__name__
        return f"{type(self.error).__name__}: {message}"


SubmissionTask = Callable[[], Awaitable[Optional[str]]]
ResultCallback = Callable[[SubmissionResult], None]


@dataclass
class _QueuedTask:
    label: str
    task: SubmissionTask
    callback: Optional[ResultCallback]
    future: "asyncio.Future[SubmissionResult]"


class SubmissionQueue:
    def __init__(self) -> None:
        self._queue: Optional[asyncio.Queue[_QueuedTask]] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.completed = 0
        self.failed = 0

    def _ensure_worker(self) -> asyncio.Queue[_QueuedTask]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain(), name="submission-queue")
        return self._queue

    def submit(
        self,
        label: str,
        task: SubmissionTask,
        callback: Optional[ResultCallback] = None,
    ) -> "asyncio.Future[SubmissionResult]":
        """Queue a submission; the returned future resolves with its result."""
        queue = self._ensure_worker()
        future: asyncio.Future[SubmissionResult] = asyncio.get_running_loop().create_future()
        queue.put_nowait(_QueuedTask(label=label, task=task, callback=callback, future=future))
        logger.debug("Queued %s (pending=%s)", label, queue.qsize())
        return future

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def _execute(self, item: _QueuedTask) -> SubmissionResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            tx_hash = await item.task()
            return SubmissionResult(label=item.label, tx_hash=tx_hash)
        except Exception as exc:
            return SubmissionResult(label=item.label, error=exc)
        finally:
            self.in_flight -= 1

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            try:
                result = await self._execute(item)
                if result.ok:
                    self.completed += 1
                else:
                    self.failed += 1
                    logger.debug("%s failed (%s) %s", item.label, result.category, result.reason)
                if item.callback is not None:
                    try:
                        item.callback(result)
                    except Exception:  # pragma: no cover - callback bugs must not stop the queue
                        logger.exception("Result callback for %s raised", item.label)
                if not item.future.done():
                    item.future.set_result(result)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued submission has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
