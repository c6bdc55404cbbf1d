import json

from pipeline.v1.infra.jobs.events import (
    JOBS_CHANNEL,
    Event,
    EventBus,
    format_sse,
)
from pipeline.v1.infra.jobs.models import Job, JobStatus
from pipeline.v1.infra.jobs.schemas import JobEvent


def make_job(status: str = JobStatus.RUNNING.value) -> Job:
    return Job(
        id=12,
        tenant_id="t1",
        project_id=4,
        type="generate_derivatives",
        status=status,
        progress_done=3,
        progress_total=10,
        payload={"task_id": "abc", "task_type": "generate_derivatives", "source": "user"},
    )


async def test_publish_reaches_matching_subscribers():
    bus = EventBus()
    jobs = bus.subscribe([JOBS_CHANNEL])
    everything = bus.subscribe()
    other = bus.subscribe(["uploads"])

    delivered = bus.publish(JOBS_CHANNEL, "job_update", {"id": 1})

    assert delivered == 2
    assert (await jobs.get()).data == {"id": 1}
    assert (await everything.get()).type == "job_update"
    assert other.queue.empty()


async def test_publish_job_event_shape():
    bus = EventBus()
    subscription = bus.subscribe()

    bus.publish_job(make_job(JobStatus.COMPLETED.value))

    event = await subscription.get()
    assert event.type == "job_completed"
    assert event.data == {
        "id": 12,
        "status": "completed",
        "progress_done": 3,
        "progress_total": 10,
        "task_id": "abc",
        "task_type": "generate_derivatives",
        "source": "user",
    }


async def test_publish_job_event_types():
    bus = EventBus()
    subscription = bus.subscribe()

    bus.publish_job(make_job(JobStatus.RUNNING.value))
    bus.publish_job(make_job(JobStatus.FAILED.value))
    bus.publish_job(make_job(JobStatus.QUEUED.value))
    bus.publish_job(make_job(JobStatus.RUNNING.value), event_type="job_update")
    bus.publish_job(JobEvent(id=1, status="canceled"))

    types = [(await subscription.get()).type for _ in range(5)]
    assert types == ["job_started", "job_failed", "job_update", "job_update", "job_update"]


async def test_publish_item_event_shape():
    bus = EventBus()
    subscription = bus.subscribe()

    bus.publish_item(make_job(), "skipped", filename="a.jpg", message="no supported source")

    event = await subscription.get()
    assert event.type == "item"
    assert event.data["type"] == "item"
    assert event.data["job_id"] == 12
    assert event.data["project_id"] == 4
    assert event.data["filename"] == "a.jpg"
    assert event.data["status"] == "skipped"
    assert event.data["message"] == "no supported source"
    assert event.data["updated_at"]


async def test_full_queue_drops_events():
    bus = EventBus(queue_size=2)
    slow = bus.subscribe()

    results = [bus.publish(JOBS_CHANNEL, "job_update", {"n": n}) for n in range(4)]

    assert results == [1, 1, 0, 0]
    assert slow.dropped == 2
    assert slow.queue.qsize() == 2


async def test_unsubscribe_stops_delivery():
    bus = EventBus()
    subscription = bus.subscribe()
    assert bus.subscriber_count == 1

    bus.unsubscribe(subscription)
    bus.unsubscribe(subscription)

    assert bus.subscriber_count == 0
    assert bus.publish(JOBS_CHANNEL, "job_update", {}) == 0


def test_format_sse():
    frame = format_sse(Event(channel=JOBS_CHANNEL, type="job_update", data={"id": 7}))

    assert frame.startswith("event: job_update\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1]) == {"id": 7}
