"""Claiming: priority preference, FIFO tie-break, backoff gating and exclusivity."""

import asyncio

from mediaqueue.models.job import JobStatus
from mediaqueue.services.errors import StageExecutionError


async def test_no_eligible_job_returns_none(service):
    assert await service.claim_next("worker-a") is None


async def test_highest_priority_is_claimed_first(service, submit):
    low = await submit(config={"priority": 1})
    high = await submit(config={"priority": 10})
    mid = await submit(config={"priority": 5})

    first = await service.claim_next("worker-a")
    assert first.id == high.id

    second = await service.claim_next("worker-a")
    third = await service.claim_next("worker-a")
    assert [second.id, third.id] == [mid.id, low.id]


async def test_equal_priority_is_served_oldest_first(service, submit, clock):
    older = await submit()
    clock.advance(1)
    newer = await submit()

    assert (await service.claim_next("worker-a")).id == older.id
    assert (await service.claim_next("worker-a")).id == newer.id


async def test_claim_moves_job_to_processing(service, submit, clock):
    job = await submit()

    claimed = await service.claim_next("worker-a")

    assert claimed.id == job.id
    assert claimed.status == JobStatus.PROCESSING.value
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at == clock()


async def test_processing_job_is_not_claimed_again(service, submit):
    await submit()

    assert await service.claim_next("worker-a") is not None
    assert await service.claim_next("worker-b") is None


async def test_retrying_job_waits_for_backoff_deadline(service, submit, clock):
    job = await submit()
    await service.claim_next("worker-a")
    await service.report_stage_failure(job.id, "worker-a", StageExecutionError("upstream hiccup"))

    retrying = await service.get_job(job.id)
    assert retrying.status == JobStatus.RETRYING.value
    assert (retrying.next_attempt_at - clock()).total_seconds() == 5

    clock.advance(4)
    assert await service.claim_next("worker-b") is None

    clock.advance(1)
    reclaimed = await service.claim_next("worker-b")
    assert reclaimed.id == job.id
    assert reclaimed.worker_id == "worker-b"
    assert reclaimed.retry_count == 1
    assert reclaimed.next_attempt_at is None


async def test_retrying_job_competes_at_its_own_priority(service, submit, clock):
    retried = await submit(config={"priority": 9})
    await service.claim_next("worker-a")
    await service.report_stage_failure(retried.id, "worker-a", StageExecutionError("upstream hiccup"))
    fresh = await submit(config={"priority": 4})

    clock.advance(60)

    assert (await service.claim_next("worker-b")).id == retried.id
    assert (await service.claim_next("worker-b")).id == fresh.id


async def test_parallel_claimers_never_share_a_job(service, submit):
    job = await submit()

    results = await asyncio.gather(*(service.claim_next(f"worker-{n}") for n in range(10)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == job.id

    stored = await service.get_job(job.id)
    assert stored.status == JobStatus.PROCESSING.value
    assert stored.worker_id == winners[0].worker_id


async def test_parallel_claimers_spread_over_available_jobs(service, submit):
    jobs = [await submit() for _ in range(4)]

    results = await asyncio.gather(*(service.claim_next(f"worker-{n}") for n in range(8)))

    winners = [r for r in results if r is not None]
    assert sorted(str(w.id) for w in winners) == sorted(str(j.id) for j in jobs)
    assert len({w.worker_id for w in winners}) == 4


async def test_wait_for_job_returns_none_once_stopped(service):
    stop = asyncio.Event()
    stop.set()

    assert await service.claims.wait_for_job("worker-a", stop) is None


async def test_wait_for_job_returns_claimed_job(service, submit):
    job = await submit()

    claimed = await service.claims.wait_for_job("worker-a", asyncio.Event())

    assert claimed.id == job.id
