"""
Analysis worker — claims jobs from the shared store and runs their stages.

Run one process per host (or several); each process runs MAX_CONCURRENT_JOBS
claim loops. Every loop has its own worker id so ownership checks on the job
row are per loop, not per process.
"""

import asyncio
import logging
import os
import signal
import socket

from rich.console import Console

from mediaqueue.config import settings
from mediaqueue.models.job import ProcessingJob
from mediaqueue.services.job_service import JobService
from mediaqueue.services.stage_runner import StageOutcome
from mediaqueue.workers.executors import ExecutorRegistry, load_registry, registry as default_registry

console = Console()
logger = logging.getLogger(__name__)

_OUTCOME_STYLE = {
    StageOutcome.COMPLETED: "[bold green]✓ completed[/]",
    StageOutcome.RETRYING: "[yellow]⚠ retry scheduled[/]",
    StageOutcome.FAILED: "[bold red]✗ failed[/]",
    StageOutcome.CANCELLED: "[magenta]■ cancelled[/]",
    StageOutcome.ALREADY_COMPLETED: "[dim]already completed[/]",
    StageOutcome.NOT_OWNED: "[dim]claim lost[/]",
}


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class AnalysisWorker:
    def __init__(
        self,
        service: JobService,
        registry: ExecutorRegistry | None = None,
        worker_id: str | None = None,
        concurrency: int = settings.MAX_CONCURRENT_JOBS,
    ):
        self._service = service
        self._registry = registry or default_registry
        self.worker_id = worker_id or default_worker_id()
        self._concurrency = max(1, concurrency)
        self._stop = asyncio.Event()

    def slot_id(self, slot: int) -> str:
        return f"{self.worker_id}/{slot}"

    def stop(self) -> None:
        self._stop.set()

    async def process(self, job: ProcessingJob) -> StageOutcome:
        outcome = await self._service.run_claimed(job, self._registry.executors_for(job))
        console.print(f"  {_OUTCOME_STYLE[outcome]} job {job.id} ({job.job_type}) on {job.worker_id}")
        return outcome

    async def run_once(self, slot: int = 0) -> StageOutcome | None:
        """Claim and run a single job; None when nothing was eligible."""
        job = await self._service.claim_next(self.slot_id(slot))
        if job is None:
            return None
        return await self.process(job)

    async def _loop(self, slot: int) -> None:
        worker_id = self.slot_id(slot)
        while not self._stop.is_set():
            try:
                job = await self._service.claims.wait_for_job(worker_id, self._stop)
                if job is None:
                    break
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # The job row keeps whatever state was last committed; the reaper picks up stalls.
                logger.exception("Worker slot %s hit an unexpected error", worker_id)
                await asyncio.sleep(settings.WORKER_POLL_INTERVAL_SECONDS)

    async def run(self) -> None:
        console.print(
            f"[bold blue]🎬 Worker {self.worker_id}[/] starting {self._concurrency} slot(s); "
            f"stages registered: {', '.join(self._registry.stages) or 'none'}"
        )
        await asyncio.gather(*(self._loop(slot) for slot in range(self._concurrency)))
        console.print(f"[bold]Worker {self.worker_id} stopped[/]")


async def _main() -> None:
    from mediaqueue.db.session import create_tables

    await create_tables()
    stage_registry = load_registry(settings.STAGE_REGISTRY) if settings.STAGE_REGISTRY else default_registry
    if not stage_registry.stages:
        logger.warning("No stage executors registered; claimed jobs will fail with missing executors")

    worker = AnalysisWorker(JobService(), stage_registry)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            pass
    await worker.run()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_main())


if __name__ == "__main__":
    main()
