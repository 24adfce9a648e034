"""
Per-connection polling of a pending research job.

The pipeline and the poller only share the job store: the pipeline writes the
terminal state, the poller reads it every ``interval_seconds`` and pushes the
outcome to the user's room.  Polling stops on the first terminal state, when
the connection is gone, or after ``max_attempts`` reads.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from vitachat.log import get_logger
from vitachat.realtime.connection import Connection
from vitachat.realtime.protocol import ai_typing, bot_message, research_update
from vitachat.realtime.registry import ConnectionRegistry
from vitachat.research.job_store import JobStatus, ResearchJob, ResearchJobStore
from vitachat.utils.ids import new_message_id
from vitachat.utils.task_runner import BackgroundTasks, background_tasks

logger = get_logger(__name__)

RESEARCH_FAILED_REPLY = "Additional research could not be completed."


class ResearchPoller:

    def __init__(
        self,
        registry: ConnectionRegistry,
        job_store: ResearchJobStore,
        interval_seconds: float = 2.0,
        max_attempts: int = 300,
        tasks: Optional[BackgroundTasks] = None,
    ):
        self.registry = registry
        self.job_store = job_store
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.tasks = tasks or background_tasks

    @classmethod
    def from_settings(cls, registry: ConnectionRegistry, job_store: ResearchJobStore) -> "ResearchPoller":
        from config.settings import settings
        return cls(
            registry,
            job_store,
            interval_seconds=settings.realtime.poll_interval_seconds,
            max_attempts=settings.realtime.poll_max_attempts,
        )

    def start(self, conn: Connection, job_id: str) -> asyncio.Task:
        return self.tasks.spawn(self.poll(conn, job_id), name=f"poll-{job_id}")

    async def poll(self, conn: Connection, job_id: str) -> Optional[JobStatus]:
        for attempt in range(1, self.max_attempts + 1):
            await asyncio.sleep(self.interval_seconds)
            if not conn.is_open:
                logger.debug("[poll] connection %s closed, stop polling %s", conn.id, job_id)
                return None
            job = self.job_store.get(job_id)
            if job is None or job.is_pending:
                continue
            if job.status == JobStatus.COMPLETED:
                self._publish_completed(conn, job)
            else:
                self._publish_failed(conn, job)
            logger.info("[poll] job %s %s after %d poll(s)", job_id, job.status.value, attempt)
            return job.status

        logger.warning("[poll] research polling timed out for %s after %d attempt(s)", job_id, self.max_attempts)
        return None

    def _publish_completed(self, conn: Connection, job: ResearchJob) -> None:
        user_id = conn.user_id
        text = job.research_results or ""
        self.registry.send_to_room(user_id, research_update(job.id, research_pending=False))
        self.registry.send_to_room(user_id, ai_typing())
        self.registry.send_to_room(user_id, bot_message(
            text,
            message_id=new_message_id(),
            citations=job.citations,
            key_developments=job.key_developments,
        ))
        if conn.history:
            conn.history[-1]["content"] = text

    def _publish_failed(self, conn: Connection, job: ResearchJob) -> None:
        self.registry.send_to_room(conn.user_id, bot_message(
            RESEARCH_FAILED_REPLY,
            message_id=new_message_id(),
            error=job.error,
        ))
