import asyncio
from datetime import UTC, datetime, timedelta

from pipeline.v1.infra.jobs.models import JobItemStatus, JobScope, JobStatus
from pipeline.v1.infra.jobs.schemas import JobCreate, JobItemCreate
from pipeline.v1.infra.jobs.store import (
    CANCELED_ITEM_MESSAGE,
    ERROR_MESSAGE_LIMIT,
    HEARTBEAT_LOST,
)


async def test_enqueue_defaults(store):
    """Enqueued jobs start queued with zero attempts and no claim."""
    job = await store.enqueue(JobCreate(tenant_id="t1", project_id=3, type="noop"))

    assert job.id is not None
    assert job.status == JobStatus.QUEUED.value
    assert job.attempts == 0
    assert job.claimed_by is None
    assert job.priority == 0
    assert job.scope == JobScope.PROJECT.value


async def test_enqueue_without_project_is_global(store):
    job = await store.enqueue(JobCreate(tenant_id="t1", type="noop"))
    assert job.scope == JobScope.GLOBAL.value


async def test_claim_order_priority_then_age(store, enqueue):
    """Higher priority first; equal priority oldest first."""
    low = await enqueue(priority=10)
    high_old = await enqueue(priority=90)
    high_new = await enqueue(priority=90)

    claimed = [await store.claim_next("w1") for _ in range(3)]

    assert [job.id for job in claimed] == [high_old.id, high_new.id, low.id]
    assert await store.claim_next("w1") is None


async def test_claim_sets_running_state(store, enqueue):
    await enqueue()

    job = await store.claim_next("worker-a")

    assert job.status == JobStatus.RUNNING.value
    assert job.claimed_by == "worker-a"
    assert job.heartbeat_at is not None
    assert job.started_at is not None


async def test_claim_respects_priority_band(store, enqueue):
    normal = await enqueue(priority=10)

    assert await store.claim_next("w1", min_priority=90) is None

    job = await store.claim_next("w1", max_priority=89)
    assert job.id == normal.id


async def test_claim_filters_tenant(store, enqueue):
    await enqueue(tenant_id="a")
    other = await enqueue(tenant_id="b")

    job = await store.claim_next("w1", tenant_id="b")
    assert job.id == other.id


async def test_concurrent_claims_never_share_a_job(store, enqueue):
    for _ in range(5):
        await enqueue()

    async def drain(worker_id: str) -> list[int]:
        ids = []
        while (job := await store.claim_next(worker_id)) is not None:
            ids.append(job.id)
        return ids

    results = await asyncio.gather(*(drain(f"w{i}") for i in range(3)))
    claimed = [job_id for ids in results for job_id in ids]

    assert len(claimed) == 5
    assert len(set(claimed)) == 5


async def test_heartbeat_only_for_owner(store, enqueue):
    await enqueue()
    job = await store.claim_next("owner")

    assert await store.heartbeat(job.id, "owner") is True
    assert await store.heartbeat(job.id, "intruder") is False

    await store.complete(job.id)
    assert await store.heartbeat(job.id, "owner") is False


async def test_progress_never_decreases(store, enqueue):
    job = await enqueue()

    await store.update_progress(job.id, done=5, total=10)
    updated = await store.update_progress(job.id, done=3)

    assert updated.progress_done == 5
    assert updated.progress_total == 10


async def test_complete_requires_running(store, enqueue):
    job = await enqueue()

    still_queued = await store.complete(job.id)
    assert still_queued.status == JobStatus.QUEUED.value

    await store.claim_next("w1")
    done = await store.complete(job.id)
    assert done.status == JobStatus.COMPLETED.value
    assert done.claimed_by is None
    assert done.finished_at is not None


async def test_complete_keeps_concurrent_cancel(store, enqueue):
    job = await enqueue()
    await store.claim_next("w1")
    await store.cancel(job.id)

    after = await store.complete(job.id)

    assert after.status == JobStatus.CANCELED.value


async def test_fail_records_truncated_error(store, enqueue):
    job = await enqueue()
    await store.claim_next("w1")

    failed = await store.fail(job.id, "x" * (ERROR_MESSAGE_LIMIT + 500))

    assert failed.status == JobStatus.FAILED.value
    assert len(failed.error_message) == ERROR_MESSAGE_LIMIT
    assert failed.last_error_at is not None


async def test_requeue_keeps_attempts(store, enqueue):
    job = await enqueue()
    await store.claim_next("w1")
    await store.increment_attempts(job.id)

    requeued = await store.requeue(job.id)

    assert requeued.status == JobStatus.QUEUED.value
    assert requeued.attempts == 1
    assert requeued.claimed_by is None


async def test_set_default_max_attempts_keeps_explicit_value(store, enqueue):
    explicit = await enqueue(max_attempts=7)
    implicit = await enqueue()

    await store.set_default_max_attempts(explicit.id, 3)
    await store.set_default_max_attempts(implicit.id, 3)

    assert (await store.get_by_id(explicit.id)).max_attempts == 7
    assert (await store.get_by_id(implicit.id)).max_attempts == 3


async def test_stale_running_jobs_are_requeued(store, enqueue, set_job_fields):
    stale = await enqueue()
    fresh = await enqueue()
    await store.claim_next("dead-worker")
    await store.claim_next("live-worker")
    await set_job_fields(
        stale.id, heartbeat_at=datetime.now(UTC) - timedelta(seconds=120)
    )

    recovery = await store.requeue_stale_running(stale_seconds=60)

    assert recovery.requeued == [stale.id]
    assert recovery.failed == []

    recovered = await store.get_by_id(stale.id)
    assert recovered.status == JobStatus.QUEUED.value
    assert recovered.claimed_by is None
    assert recovered.heartbeat_at is None
    assert recovered.attempts == 1

    untouched = await store.get_by_id(fresh.id)
    assert untouched.status == JobStatus.RUNNING.value
    assert untouched.claimed_by == "live-worker"


async def test_stale_job_at_attempt_limit_fails(store, enqueue, set_job_fields):
    job = await enqueue(max_attempts=2)
    await store.claim_next("dead-worker")
    await set_job_fields(
        job.id,
        attempts=1,
        heartbeat_at=datetime.now(UTC) - timedelta(seconds=120),
    )

    recovery = await store.requeue_stale_running(stale_seconds=60)

    assert recovery.failed == [job.id]
    failed = await store.get_by_id(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == HEARTBEAT_LOST
    assert failed.attempts == 2


async def test_running_job_without_heartbeat_is_stale(store, enqueue, set_job_fields):
    job = await enqueue()
    await store.claim_next("w1")
    await set_job_fields(job.id, heartbeat_at=None)

    recovery = await store.requeue_stale_running(stale_seconds=60)

    assert recovery.requeued == [job.id]


async def test_cancel_by_project(store, enqueue):
    finished = await enqueue(project_id=1)
    running = await enqueue(project_id=1)
    other_project = await enqueue(project_id=2)
    waiting = await enqueue(project_id=1, priority=-1)

    await store.claim_next("w1")  # finished (created first)
    await store.claim_next("w1")  # running
    await store.complete(finished.id)

    canceled = await store.cancel_by_project(1)

    assert set(canceled) == {running.id, waiting.id}
    assert (await store.get_by_id(running.id)).claimed_by is None
    assert (await store.get_by_id(finished.id)).status == JobStatus.COMPLETED.value
    assert (await store.get_by_id(other_project.id)).status == JobStatus.QUEUED.value


async def test_cancel_by_project_skips_unfinished_items(store):
    job = await store.enqueue_with_items(
        JobCreate(tenant_id="t1", project_id=7, type="noop"), ["a.jpg", "b.jpg", "c.jpg"]
    )
    items = await store.list_items(job.id)
    await store.update_item_status(items[0].id, JobItemStatus.DONE, "thumbnail")

    assert await store.cancel_by_project(7) == [job.id]

    assert await store.items_summary(job.id) == {"done": 1, "skipped": 2}
    statuses = {
        item.filename: (item.status, item.message)
        for item in await store.list_items(job.id)
    }
    assert statuses["a.jpg"] == ("done", "thumbnail")
    assert statuses["b.jpg"] == ("skipped", CANCELED_ITEM_MESSAGE)


async def test_cancel_skips_unfinished_items(store):
    job = await store.enqueue_with_items(
        JobCreate(tenant_id="t1", type="noop"), ["a.jpg", "b.jpg"]
    )

    canceled = await store.cancel(job.id)

    assert canceled.status == JobStatus.CANCELED.value
    assert await store.items_summary(job.id) == {"skipped": 2}


async def test_writes_with_lost_claim_are_refused(store, enqueue, set_job_fields):
    """A worker whose job was recovered and reclaimed cannot touch it any more."""
    job = await enqueue()
    await store.claim_next("worker-a")
    await set_job_fields(job.id, heartbeat_at=datetime.now(UTC) - timedelta(seconds=30))
    await store.requeue_stale_running(stale_seconds=5)
    await store.claim_next("worker-b")

    assert await store.complete(job.id, "worker-a") is None
    assert await store.fail(job.id, "boom", "worker-a") is None
    assert await store.increment_attempts(job.id, "worker-a") is False
    assert await store.requeue(job.id, "worker-a") is None

    current = await store.get_by_id(job.id)
    assert (current.status, current.claimed_by) == (JobStatus.RUNNING.value, "worker-b")
    assert current.attempts == 1

    done = await store.complete(job.id, "worker-b")
    assert done.status == JobStatus.COMPLETED.value


async def test_retry_failed(store, enqueue):
    job = await enqueue()
    await store.claim_next("w1")
    await store.increment_attempts(job.id)
    await store.fail(job.id, "boom")

    assert await store.retry_failed(job.id) is True

    retried = await store.get_by_id(job.id)
    assert retried.status == JobStatus.QUEUED.value
    assert retried.attempts == 0
    assert retried.error_message is None

    # Only failed jobs can be retried
    assert await store.retry_failed(job.id) is False


async def test_enqueue_with_items(store):
    job = await store.enqueue_with_items(
        JobCreate(tenant_id="t1", project_id=4, type="generate_derivatives"),
        ["a.jpg", {"filename": "b.jpg"}, JobItemCreate(photo_id=42)],
    )

    items = await store.list_items(job.id)
    assert job.progress_total == 3
    assert [item.filename for item in items] == ["a.jpg", "b.jpg", None]
    assert items[2].photo_id == 42
    assert all(item.status == JobItemStatus.PENDING.value for item in items)
    assert all(item.tenant_id == "t1" for item in items)


async def test_create_items_is_idempotent(store, enqueue):
    job = await enqueue()

    first = await store.create_items(job.id, ["a.jpg", "b.jpg"])
    second = await store.create_items(job.id, ["c.jpg"])

    assert [item.id for item in second] == [item.id for item in first]
    assert (await store.get_by_id(job.id)).progress_total == 2


async def test_item_status_and_summary(store, enqueue):
    job = await enqueue()
    items = await store.create_items(job.id, ["a.jpg", "b.jpg", "c.jpg"])

    await store.update_item_status(items[0].id, JobItemStatus.DONE)
    await store.update_item_status(items[1].id, JobItemStatus.SKIPPED, "missing")

    summary = await store.items_summary(job.id)
    assert summary == {"done": 1, "skipped": 1, "pending": 1}

    pending = await store.next_pending_item(job.id)
    assert pending.id == items[2].id


async def test_skip_unfinished_items(store, enqueue):
    job = await enqueue()
    items = await store.create_items(job.id, ["a.jpg", "b.jpg", "c.jpg"])
    await store.update_item_status(items[0].id, JobItemStatus.DONE)
    await store.update_item_status(items[1].id, JobItemStatus.RUNNING)

    skipped = await store.skip_unfinished_items(job.id, "canceled")

    assert skipped == 2
    statuses = {
        item.filename: (item.status, item.message)
        for item in await store.list_items(job.id)
    }
    assert statuses["a.jpg"] == ("done", None)
    assert statuses["b.jpg"] == ("skipped", "canceled")
    assert statuses["c.jpg"] == ("skipped", "canceled")


async def test_reconcile_terminal_items(store, enqueue):
    ended = await enqueue()
    active = await enqueue()
    await store.create_items(ended.id, ["a.jpg"])
    await store.create_items(active.id, ["b.jpg"])
    await store.fail(ended.id, "source folder removed")

    assert await store.count_orphaned_items() == 1
    assert await store.reconcile_terminal_items() == 1
    assert await store.count_orphaned_items() == 0

    active_items = await store.list_items(active.id)
    assert active_items[0].status == JobItemStatus.PENDING.value


async def test_cleanup_old_jobs(store, enqueue, set_job_fields):
    old = await enqueue()
    recent = await enqueue()
    still_queued = await enqueue()
    await store.create_items(old.id, ["a.jpg"])
    for job in (old, recent):
        await store.cancel(job.id)
    long_ago = datetime.now(UTC) - timedelta(days=45)
    await set_job_fields(old.id, updated_at=long_ago)
    await set_job_fields(still_queued.id, updated_at=long_ago)

    assert await store.count_old_jobs(30) == 1
    assert await store.cleanup_old_jobs(30) == 1

    assert await store.get_by_id(old.id) is None
    assert await store.list_items(old.id) == []
    assert await store.get_by_id(recent.id) is not None
    assert await store.get_by_id(still_queued.id) is not None


async def test_list_jobs_filters(store, enqueue):
    await enqueue(type="a", project_id=1)
    await enqueue(type="b", project_id=1)
    await enqueue(type="a", project_id=2)

    project_jobs = await store.list_by_project(1)
    assert {job.type for job in project_jobs} == {"a", "b"}

    typed = await store.list_jobs(type="a")
    assert len(typed) == 2

    running = await store.list_jobs(status=JobStatus.RUNNING.value)
    assert running == []


async def test_get_stats(store, enqueue):
    await enqueue(type="a")
    failing = await enqueue(type="b")
    await store.fail(failing.id, "nope")

    stats = await store.get_stats()

    assert stats.total_jobs == 2
    assert stats.by_status == {"queued": 1, "failed": 1}
    assert stats.by_type == {"a": 1, "b": 1}
    assert stats.queue_depth == 1
    assert stats.failed_last_hour == 1
