"""
In-process publish/subscribe channel for job lifecycle and progress events.

The bus is an owned object handed to the worker loop, handlers and the SSE
route; subscribers each get a bounded queue and explicitly unsubscribe.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pipeline.config.logging import get_logger
from pipeline.v1.infra.jobs.models import Job, JobStatus
from pipeline.v1.infra.jobs.schemas import ItemEvent, JobEvent

logger = get_logger(__name__)

JOBS_CHANNEL = "jobs"
ALL_CHANNELS = "all"

_EVENT_TYPES = {
    JobStatus.RUNNING.value: "job_started",
    JobStatus.COMPLETED.value: "job_completed",
    JobStatus.FAILED.value: "job_failed",
}


@dataclass(frozen=True)
class Event:
    channel: str
    type: str
    data: dict[str, Any]


@dataclass(eq=False)
class Subscription:
    """A subscriber's view of the bus."""

    channels: frozenset[str]
    queue: asyncio.Queue[Event]
    dropped: int = field(default=0)

    def wants(self, channel: str) -> bool:
        return channel in self.channels or ALL_CHANNELS in self.channels

    async def get(self) -> Event:
        return await self.queue.get()


class EventBus:
    """Broadcast events to every subscription listening on a channel."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscriptions: set[Subscription] = set()

    def subscribe(self, channels: list[str] | None = None) -> Subscription:
        subscription = Subscription(
            channels=frozenset(channels or [ALL_CHANNELS]),
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._subscriptions.add(subscription)
        logger.info(
            "sse_subscription_added",
            channels=sorted(subscription.channels),
            total=len(self._subscriptions),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        logger.info("sse_subscription_removed", total=len(self._subscriptions))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, channel: str, event_type: str, data: dict[str, Any]) -> int:
        """Deliver an event without blocking; returns the number of receivers."""
        event = Event(channel=channel, type=event_type, data=data)
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.wants(channel):
                continue
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "sse_event_dropped",
                    channel=channel,
                    event_type=event_type,
                    dropped=subscription.dropped,
                )
        return delivered

    def publish_job(
        self,
        job: Job | JobEvent,
        status: str | None = None,
        event_type: str | None = None,
    ) -> int:
        """Publish a job-level lifecycle/progress event."""
        if isinstance(job, Job):
            payload = job.payload or {}
            event = JobEvent(
                id=job.id,
                status=status or job.status,
                progress_done=job.progress_done,
                progress_total=job.progress_total,
                task_id=payload.get("task_id"),
                task_type=payload.get("task_type"),
                source=payload.get("source"),
            )
        else:
            event = job
        event_type = event_type or _EVENT_TYPES.get(event.status, "job_update")
        return self.publish(JOBS_CHANNEL, event_type, event.model_dump(mode="json"))

    def publish_item(
        self,
        job: Job,
        status: str,
        filename: str | None = None,
        photo_id: int | None = None,
        message: str | None = None,
    ) -> int:
        """Publish an item-level resolution event."""
        event = ItemEvent(
            job_id=job.id,
            project_id=job.project_id,
            filename=filename,
            photo_id=photo_id,
            status=status,
            message=message,
            updated_at=datetime.now(UTC),
        )
        return self.publish(JOBS_CHANNEL, "item", event.model_dump(mode="json"))


def format_sse(event: Event) -> str:
    """Render an event as a Server-Sent Events frame."""
    return f"event: {event.type}\ndata: {json.dumps(event.data)}\n\n"
