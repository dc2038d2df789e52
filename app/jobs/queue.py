"""
In-process job dispatcher.

Delivery is at-least-once: a failed job is re-enqueued after the next
backoff delay until ``max_tries`` is reached, then reported as an incident.
Stage jobs tolerate duplicates through their precondition check.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from app.jobs.base import PipelineContext, StageResult
from app.jobs.extract_metadata import ExtractMetadataStage
from app.jobs.generate_embedding import GenerateEmbeddingStage
from app.jobs.process_asset import ProcessAssetStage
from app.jobs.scoring_gate import ScoringGateStage
from app.services.incidents import IncidentService

logger = logging.getLogger(__name__)

STAGES = {
    "process_asset": ProcessAssetStage,
    "extract_metadata": ExtractMetadataStage,
    "generate_embedding": GenerateEmbeddingStage,
    "scoring_gate": ScoringGateStage,
}

# Status an asset sits in while the named job is the one that moves it on
JOB_FOR_STATUS = {
    "uploading": "process_asset",
    "extracting_metadata": "extract_metadata",
    "generating_embedding": "generate_embedding",
    "scoring": "scoring_gate",
}


@dataclass
class Job:
    name: str
    asset_id: str
    attempt: int = 1


class JobDispatcher:
    def __init__(
        self,
        ctx: PipelineContext,
        workers: int = 2,
        max_tries: int = 3,
        backoff: Sequence[float] = (60, 300, 900),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ctx = ctx
        self.ctx.dispatcher = self
        self.workers = max(1, workers)
        self.max_tries = max(1, max_tries)
        self.backoff = list(backoff) or [0.0]
        self._sleep = sleep
        self.queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self.handlers: Dict[str, Callable[[PipelineContext], object]] = dict(STAGES)

    def register(self, name: str, factory: Callable[[PipelineContext], object]) -> None:
        self.handlers[name] = factory

    async def enqueue(self, name: str, asset_id: str) -> None:
        if name not in self.handlers:
            raise KeyError(f"Unknown job {name}")
        await self.queue.put(Job(name, asset_id))

    def delay_for(self, attempt: int) -> float:
        return float(self.backoff[min(attempt - 1, len(self.backoff) - 1)])

    async def run_job(self, job: Job) -> Optional[StageResult]:
        handler = self.handlers[job.name](self.ctx)
        try:
            return await handler.handle(job.asset_id)
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            if retryable and job.attempt < self.max_tries:
                delay = self.delay_for(job.attempt)
                logger.warning(
                    "[JobDispatcher] %s for %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    job.name, job.asset_id, job.attempt, self.max_tries, delay, e,
                )
                self._schedule(Job(job.name, job.asset_id, job.attempt + 1), delay)
                return None
            logger.error("[JobDispatcher] %s for %s gave up after %d attempts", job.name, job.asset_id, job.attempt, exc_info=True)
            await self.report_failure(job, e, retryable)
            return None

    def _schedule(self, job: Job, delay: float) -> None:
        async def later():
            await self._sleep(delay)
            await self.queue.put(job)

        task = asyncio.create_task(later())
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def report_failure(self, job: Job, exc: Exception, retryable: bool) -> None:
        async with self.ctx.session_factory() as session:
            async with session.begin():
                await IncidentService(session).report(
                    source_type="job",
                    source_id=job.asset_id,
                    title=f"Job {job.name} failed",
                    message=str(exc),
                    severity="error",
                    retryable=retryable,
                    metadata={"job": job.name, "asset_id": job.asset_id, "attempts": job.attempt, "error": repr(exc)},
                )

    async def _worker(self, n: int) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self.run_job(job)
            except Exception:
                logger.exception("[JobDispatcher] worker %d: unhandled error in %s", n, job.name)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info("[JobDispatcher] started %d workers", self.workers)

    async def stop(self) -> None:
        for t in list(self._tasks) + list(self._delayed):
            t.cancel()
        await asyncio.gather(*self._tasks, *self._delayed, return_exceptions=True)
        self._tasks = []
        self._delayed.clear()

    async def drain(self) -> List[StageResult]:
        """Run queued jobs inline until nothing is queued or waiting to retry.

        Only for use without started workers.
        """
        results = []
        while True:
            while not self.queue.empty():
                job = self.queue.get_nowait()
                try:
                    res = await self.run_job(job)
                finally:
                    self.queue.task_done()
                if res is not None:
                    results.append(res)
            if not self._delayed:
                return results
            await asyncio.gather(*list(self._delayed))
