"""
Buffered placement submission with bounded concurrency.

Marks go into an intake queue. A collector groups them into batches, closing
a batch when it reaches ``batch_size`` or when no new mark arrives for
``debounce_seconds``. Batches wait in a second queue drained by
``max_in_flight`` workers. Transient failures are retried with the same
idempotency keys and exponential backoff; once retries are exhausted the
batch's provisional marks are rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from canvas_client.api import (
    CanvasApiClient,
    CanvasClientError,
    NotFoundError,
    PlacementResult,
    TransientError,
    ValidationError,
)
from canvas_client.state import CanvasState, LedgerSnapshot, Mark


logger = logging.getLogger(__name__)

FailureCallback = Callable[[List[Mark], str], None]
SnapshotCallback = Callable[[LedgerSnapshot], Awaitable[None]]

FAILURE_NETWORK = "network"
FAILURE_VALIDATION = "validation"
FAILURE_NOT_FOUND = "not_found"
FAILURE_ERROR = "error"
FAILURE_STOPPED = "stopped"


class PlacementSubmitter:
    def __init__(
        self,
        api: CanvasApiClient,
        state: CanvasState,
        *,
        batch_size: int = 5,
        debounce_seconds: float = 0.15,
        max_in_flight: int = 2,
        max_retries: int = 3,
        backoff_base: float = 0.25,
        backoff_max: float = 4.0,
        on_failure: Optional[FailureCallback] = None,
        on_snapshot: Optional[SnapshotCallback] = None,
    ):
        self.api = api
        self.state = state
        self.batch_size = max(int(batch_size), 1)
        self.debounce_seconds = debounce_seconds
        self.max_in_flight = max(int(max_in_flight), 1)
        self.max_retries = max(int(max_retries), 0)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.on_failure = on_failure
        self.on_snapshot = on_snapshot

        self._intake: "asyncio.Queue[Mark]" = asyncio.Queue()
        self._batches: "asyncio.Queue[List[Mark]]" = asyncio.Queue()
        self._collector: Optional[asyncio.Task] = None
        self._workers: List[asyncio.Task] = []
        self._busy: Set[int] = set()
        self._open_batch: List[Mark] = []
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._collector is not None

    def start(self) -> None:
        if self._collector is not None:
            return
        self._stopping = False
        self._collector = asyncio.create_task(self._collect(), name="canvas-collector")
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"canvas-worker-{index}")
            for index in range(self.max_in_flight)
        ]

    async def stop(self) -> None:
        """
        Stop taking new batches.

        A worker holding a batch finishes it: a request already sent is never
        cancelled, it resolves and is reconciled, but failed sends are no longer
        retried. Marks that were buffered but never sent are rolled back with
        ``FAILURE_STOPPED``. Call ``drain`` first to submit everything.
        """
        if self._collector is None:
            return
        collector, self._collector = self._collector, None
        workers, self._workers = self._workers, []
        self._stopping = True

        collector.cancel()
        await asyncio.gather(collector, return_exceptions=True)
        for index, worker in enumerate(workers):
            if index not in self._busy:
                worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._discard_unsent()

    def _discard_unsent(self) -> None:
        unsent, self._open_batch = self._open_batch, []
        for mark in unsent:
            self._intake.task_done()
        while not self._batches.empty():
            batch = self._batches.get_nowait()
            self._batches.task_done()
            unsent.extend(batch)
            for _ in batch:
                self._intake.task_done()
        while not self._intake.empty():
            unsent.append(self._intake.get_nowait())
            self._intake.task_done()
        if unsent:
            logger.info("Discarding %s unsent marks on stop", len(unsent))
            self._fail(unsent, FAILURE_STOPPED)

    def submit(self, mark: Mark) -> None:
        if self._collector is None:
            raise RuntimeError("PlacementSubmitter is not running")
        self._intake.put_nowait(mark)

    async def drain(self) -> None:
        """Wait until every submitted mark has been confirmed or rolled back."""
        await self._intake.join()

    async def _collect(self) -> None:
        while True:
            self._open_batch = [await self._intake.get()]
            while len(self._open_batch) < self.batch_size:
                try:
                    mark = await asyncio.wait_for(self._intake.get(), timeout=self.debounce_seconds)
                except asyncio.TimeoutError:
                    break
                self._open_batch.append(mark)
            batch, self._open_batch = self._open_batch, []
            self._batches.put_nowait(batch)

    async def _worker(self, index: int) -> None:
        while not self._stopping:
            batch = await self._batches.get()
            self._busy.add(index)
            try:
                await self._send_with_retry(batch)
            except Exception:
                logger.exception("Placement worker %s failed on a batch of %s", index, len(batch))
                self._fail(batch, FAILURE_ERROR)
            finally:
                self._busy.discard(index)
                self._batches.task_done()
                for _ in batch:
                    self._intake.task_done()

    def _backoff(self, attempt: int, error: TransientError) -> float:
        delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        if error.retry_after:
            delay = max(delay, min(error.retry_after, self.backoff_max))
        return delay

    async def _send(self, batch: List[Mark]) -> PlacementResult:
        if len(batch) == 1:
            return await self.api.place_one(batch[0])
        return await self.api.place_batch(batch)

    async def _send_with_retry(self, batch: List[Mark]) -> None:
        attempt = 0
        while True:
            try:
                result = await self._send(batch)
            except TransientError as exc:
                attempt += 1
                if attempt > self.max_retries or self._stopping:
                    logger.warning("Giving up on %s marks after %s attempts: %s", len(batch), attempt, exc)
                    self._fail(batch, FAILURE_NETWORK)
                    return
                delay = self._backoff(attempt, exc)
                logger.info("Retrying %s marks in %.2fs (attempt %s): %s", len(batch), delay, attempt, exc)
                await asyncio.sleep(delay)
                if self._stopping:
                    logger.warning("Submitter stopped; dropping %s marks awaiting retry", len(batch))
                    self._fail(batch, FAILURE_NETWORK)
                    return
                continue
            except NotFoundError:
                self._fail(batch, FAILURE_NOT_FOUND)
                self.api.token = None
                self.state.drop_identity()
                return
            except ValidationError as exc:
                logger.warning("Placement rejected as invalid: %s", exc.detail)
                self._fail(batch, FAILURE_VALIDATION)
                return
            except CanvasClientError as exc:
                logger.error("Unexpected placement response: %s", exc)
                self._fail(batch, FAILURE_ERROR)
                return

            await self._reconcile(batch, result)
            return

    async def _reconcile(self, batch: List[Mark], result: PlacementResult) -> None:
        accepted = {item.get("idempotency_key"): item for item in result.accepted}
        rejected: List[Mark] = []
        for mark in batch:
            record = accepted.get(mark.idempotency_key)
            if record is not None:
                self.state.confirm(mark.idempotency_key, record)
            elif self.state.rollback(mark.idempotency_key) is not None:
                rejected.append(mark)
        if rejected:
            logger.info("Rolled back %s marks: %s", len(rejected), result.status)
            self._notify(rejected, result.status)
        adopted = self.state.adopt(result.snapshot)
        if adopted and self.on_snapshot is not None:
            await self.on_snapshot(result.snapshot)

    def _fail(self, batch: List[Mark], reason: str) -> None:
        rolled_back = [mark for mark in batch if self.state.rollback(mark.idempotency_key) is not None]
        if rolled_back:
            self._notify(rolled_back, reason)

    def _notify(self, marks: List[Mark], reason: str) -> None:
        if self.on_failure is not None:
            self.on_failure(marks, reason)
