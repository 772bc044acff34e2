import asyncio

import pytest

from roundcrank.adapters.storage.async_job_repository import AsyncJobRepository
from roundcrank.domain.records import JobAction, JobStatus


@pytest.fixture
async def jobs(db_path, clock):
    return AsyncJobRepository(db_path, clock=clock)


@pytest.mark.asyncio
async def test_record_and_lookup(jobs):
    assert await jobs.is_scheduled(42, JobAction.CLOSE_WINDOW) is False

    job = await jobs.record_scheduled("job-1", 42, JobAction.CLOSE_WINDOW, scheduled_at=100.0)

    assert job.job_id == "job-1"
    assert job.status == JobStatus.PENDING
    assert job.attempt == 1
    assert await jobs.is_scheduled(42, JobAction.CLOSE_WINDOW) is True
    assert await jobs.is_scheduled(42, JobAction.POLL_RANDOMNESS) is False
    assert await jobs.is_scheduled(43, JobAction.CLOSE_WINDOW) is False


@pytest.mark.asyncio
async def test_duplicate_record_returns_existing_ref(jobs):
    first = await jobs.record_scheduled("job-1", 42, JobAction.CLOSE_WINDOW, scheduled_at=100.0)
    second = await jobs.record_scheduled("job-2", 42, JobAction.CLOSE_WINDOW, scheduled_at=200.0)

    assert second.job_id == first.job_id == "job-1"
    assert len(await jobs.list_for_round(42)) == 1


@pytest.mark.asyncio
async def test_concurrent_records_leave_one_pending(jobs):
    results = await asyncio.gather(
        *(jobs.record_scheduled(f"job-{i}", 42, JobAction.POLL_RANDOMNESS, scheduled_at=100.0) for i in range(12))
    )

    rows = await jobs.list_for_round(42)
    pending = [r for r in rows if r.status == JobStatus.PENDING]
    assert len(pending) == 1
    assert {r.job_id for r in results} == {pending[0].job_id}


@pytest.mark.asyncio
async def test_concurrent_records_across_repository_instances(db_path, clock):
    # Separate instances share nothing but the database file.
    repos = [AsyncJobRepository(db_path, clock=clock) for _ in range(4)]
    await repos[0].list_for_round(0)

    results = await asyncio.gather(
        *(repo.record_scheduled(f"job-{i}", 42, JobAction.CLOSE_WINDOW, 100.0) for i, repo in enumerate(repos))
    )

    pending = [r for r in await repos[0].list_for_round(42) if r.status == JobStatus.PENDING]
    assert len(pending) == 1
    assert all(r is not None and r.job_id == pending[0].job_id for r in results)


@pytest.mark.asyncio
async def test_settle_is_noop_without_pending_entry(jobs):
    assert await jobs.mark_completed(42, JobAction.CLOSE_WINDOW) is False
    assert await jobs.mark_failed(42, JobAction.CLOSE_WINDOW, "nothing there") is False

    await jobs.record_scheduled("job-1", 42, JobAction.CLOSE_WINDOW, scheduled_at=100.0)
    assert await jobs.mark_completed(42, JobAction.CLOSE_WINDOW) is True
    # A second completion, or a late failure, changes nothing.
    assert await jobs.mark_completed(42, JobAction.CLOSE_WINDOW) is False
    assert await jobs.mark_failed(42, JobAction.CLOSE_WINDOW, "late") is False

    rows = await jobs.list_for_round(42)
    assert [r.status for r in rows] == [JobStatus.COMPLETED]
    assert rows[0].error is None


@pytest.mark.asyncio
async def test_failed_entry_allows_rescheduling(jobs):
    await jobs.record_scheduled("job-1", 42, JobAction.POLL_RANDOMNESS, scheduled_at=100.0)
    await jobs.mark_failed(42, JobAction.POLL_RANDOMNESS, "exhausted")
    assert await jobs.is_scheduled(42, JobAction.POLL_RANDOMNESS) is False

    again = await jobs.record_scheduled("job-2", 42, JobAction.POLL_RANDOMNESS, scheduled_at=200.0)
    assert again.job_id == "job-2"
    statuses = [r.status for r in await jobs.list_for_round(42)]
    assert statuses == [JobStatus.FAILED, JobStatus.PENDING]


@pytest.mark.asyncio
async def test_update_attempt_keeps_single_entry(jobs):
    await jobs.record_scheduled("job-1", 42, JobAction.POLL_RANDOMNESS, scheduled_at=100.0)

    updated = await jobs.update_attempt(42, JobAction.POLL_RANDOMNESS, job_id="job-2", attempt=2, scheduled_at=102.0)

    assert updated.attempt == 2
    assert updated.job_id == "job-2"
    assert len(await jobs.list_for_round(42)) == 1
    assert await jobs.update_attempt(43, JobAction.POLL_RANDOMNESS, job_id="x", attempt=2, scheduled_at=1.0) is None


@pytest.mark.asyncio
async def test_purge_keeps_pending_rows(jobs, clock):
    await jobs.record_scheduled("old-done", 1, JobAction.CLOSE_WINDOW, scheduled_at=0.0)
    await jobs.mark_completed(1, JobAction.CLOSE_WINDOW)
    await jobs.record_scheduled("old-pending", 1, JobAction.POLL_RANDOMNESS, scheduled_at=0.0)
    clock.advance(8 * 24 * 3600)
    await jobs.record_scheduled("fresh-done", 2, JobAction.CLOSE_WINDOW, scheduled_at=0.0)
    await jobs.mark_completed(2, JobAction.CLOSE_WINDOW)

    deleted = await jobs.purge_settled_before(clock() - 7 * 24 * 3600)

    assert deleted == 1
    assert [r.job_id for r in await jobs.list_for_round(1)] == ["old-pending"]
    assert len(await jobs.list_for_round(2)) == 1
