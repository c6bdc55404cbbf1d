"""
Named multi-step tasks built on top of the job queue.

A task is a chain of job steps. Starting a task enqueues its first step with
a payload carrying ``task_id``/``task_type``/``source``; each completed step
enqueues the next one.
"""

import logging
import uuid
from typing import Any

from pipeline.v1.core.exceptions import ValidationError
from pipeline.v1.infra.jobs.models import Job, JobScope
from pipeline.v1.infra.jobs.schemas import (
    JobCreate,
    JobItemCreate,
    TaskStartResponse,
)
from pipeline.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)

SYSTEM_TENANT = "system"

TASK_DEFINITIONS: dict[str, dict[str, Any]] = {
    "generate_derivatives": {
        "label": "Generate thumbnails and previews",
        "user_relevant": True,
        "scope": JobScope.PROJECT.value,
        "steps": [{"type": "generate_derivatives", "priority": 90}],
    },
    "upload_postprocess": {
        "label": "Process uploaded photos",
        "user_relevant": True,
        "scope": JobScope.PHOTO_SET.value,
        "steps": [{"type": "upload_postprocess", "priority": 90}],
    },
    "maintenance_global": {
        "label": "Maintenance",
        "user_relevant": False,
        "scope": JobScope.GLOBAL.value,
        "steps": [
            {
                "type": "maintenance",
                "priority": 10,
                "payload": {"tasks": ["reconcile_items"]},
            },
        ],
    },
    "job_retention": {
        "label": "Job history retention",
        "user_relevant": False,
        "scope": JobScope.GLOBAL.value,
        "steps": [
            {
                "type": "maintenance",
                "priority": 5,
                "payload": {"tasks": ["cleanup_jobs"]},
            },
        ],
    },
}


class TaskOrchestrator:
    """Start tasks and advance them as their steps complete."""

    def __init__(
        self,
        store: JobStore,
        definitions: dict[str, dict[str, Any]] | None = None,
    ):
        self.store = store
        self.definitions = definitions if definitions is not None else TASK_DEFINITIONS

    async def start_task(
        self,
        type: str,
        project_id: int | None = None,
        source: str = "user",
        items: list[JobItemCreate | dict[str, Any] | str] | None = None,
        tenant_id: str = SYSTEM_TENANT,
        scope: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> TaskStartResponse:
        definition = self.definitions.get(type)
        if definition is None:
            raise ValidationError(f"Unknown task type: {type}")

        effective_scope = scope or definition.get("scope")
        if not effective_scope:
            raise ValidationError(f"Task type '{type}' missing scope in definition")

        task_id = str(uuid.uuid4())
        steps = definition.get("steps") or []
        if not steps:
            return TaskStartResponse(task_id=task_id, type=type)

        first = steps[0]
        job_payload = {
            **(first.get("payload") or {}),
            **(payload or {}),
            "task_id": task_id,
            "task_type": type,
            "source": source,
        }
        spec = JobCreate(
            tenant_id=tenant_id,
            project_id=project_id,
            type=first["type"],
            priority=first.get("priority", 0),
            scope=effective_scope,
            payload=job_payload,
        )

        if items:
            job = await self.store.enqueue_with_items(spec, items)
        else:
            job = await self.store.enqueue(spec)

        logger.info(
            "Task started",
            extra={
                "task_id": task_id,
                "task_type": type,
                "first_job_id": job.id,
                "source": source,
            },
        )
        return TaskStartResponse(task_id=task_id, type=type, first_job_id=job.id)

    async def on_job_completed(self, job: Job) -> Job | None:
        """Enqueue the step after ``job`` in its task, if any."""
        payload = job.payload or {}
        task_type = payload.get("task_type")
        if not payload.get("task_id") or not task_type:
            return None

        definition = self.definitions.get(task_type)
        if not definition:
            return None
        steps = definition.get("steps") or []
        index = next(
            (i for i, step in enumerate(steps) if step["type"] == job.type), None
        )
        if index is None or index + 1 >= len(steps):
            return None

        next_step = steps[index + 1]
        # Upstream steps may flag the derivative step as unnecessary
        if (
            next_step["type"] == "generate_derivatives"
            and payload.get("need_generate_derivatives") is False
        ):
            if index + 2 >= len(steps):
                return None
            next_step = steps[index + 2]

        next_payload = {
            **(next_step.get("payload") or {}),
            "task_id": payload["task_id"],
            "task_type": task_type,
            "source": payload.get("source"),
        }
        next_job = await self.store.enqueue(
            JobCreate(
                tenant_id=job.tenant_id,
                project_id=job.project_id,
                type=next_step["type"],
                priority=next_step.get("priority", 0),
                scope=job.scope,
                payload=next_payload,
            )
        )
        logger.info(
            "Task advanced",
            extra={
                "task_id": payload["task_id"],
                "completed_job_id": job.id,
                "next_job_id": next_job.id,
                "next_type": next_job.type,
            },
        )
        return next_job
