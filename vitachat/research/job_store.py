"""
深度检索结果的内存存储（进程内单例，不持久化）。

- 每个任务以触发它的对话轮次 message_id 为键
- 状态只允许一次性地从 pending 转为 completed / failed，之后的写入被忽略并记日志
- 周期性清理：timestamp 超过保留窗口（默认 30 分钟）的任务无论状态一律删除
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from vitachat.log import get_logger

logger = get_logger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class ResearchJob:
    id: str
    status: JobStatus
    timestamp: float
    research_results: Optional[str] = None
    key_developments: List[Dict[str, Any]] = field(default_factory=list)
    citations: List[Dict[str, Any]] = field(default_factory=list)
    citation_validation: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == JobStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "timestamp": _iso(self.timestamp),
        }
        if self.status == JobStatus.COMPLETED:
            out.update({
                "research_results": self.research_results,
                "key_developments": self.key_developments,
                "citations": self.citations,
                "citation_validation": self.citation_validation,
            })
        elif self.status == JobStatus.FAILED:
            out["error"] = self.error
        return out


class ResearchJobStore:

    def __init__(
        self,
        retention_seconds: float = 30 * 60,
        sweep_interval_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = retention_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._jobs: Dict[str, ResearchJob] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls) -> "ResearchJobStore":
        from config.settings import settings
        return cls(
            retention_seconds=settings.research.retention_seconds,
            sweep_interval_seconds=settings.research.sweep_interval_seconds,
        )

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def create_pending(self, job_id: str) -> ResearchJob:
        with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None:
                logger.warning("[research-store] job %s already exists (%s)", job_id, existing.status.value)
                return existing
            job = ResearchJob(id=job_id, status=JobStatus.PENDING, timestamp=self._clock())
            self._jobs[job_id] = job
        return job

    def get(self, job_id: str) -> Optional[ResearchJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def _finish(self, job_id: str, status: JobStatus, **fields: Any) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and not job.is_pending:
                logger.warning(
                    "[research-store] job %s already %s, ignoring transition to %s",
                    job_id, job.status.value, status.value,
                )
                return False
            if job is None:
                # swept while still running; keep the outcome so a late poll can see it
                job = ResearchJob(id=job_id, status=JobStatus.PENDING, timestamp=self._clock())
                self._jobs[job_id] = job
            for k, v in fields.items():
                setattr(job, k, v)
            job.status = status
            job.timestamp = self._clock()
        return True

    def mark_completed(
        self,
        job_id: str,
        research_results: str,
        key_developments: List[Dict[str, Any]],
        citations: List[Dict[str, Any]],
        citation_validation: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        return self._finish(
            job_id,
            JobStatus.COMPLETED,
            research_results=research_results,
            key_developments=key_developments,
            citations=citations,
            citation_validation=citation_validation or [],
        )

    def mark_failed(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, error=error or "Unknown error")

    def attach_validation(self, job_id: str, results: List[Dict[str, Any]]) -> bool:
        """更新已完成任务的 citation_validation（重新校验时使用）"""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.COMPLETED:
                return False
            job.citation_validation = results
        return True

    def acknowledge(self, job_id: str) -> bool:
        """消费方确认后删除"""
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def sweep_expired(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            expired = [jid for jid, job in self._jobs.items() if job.timestamp < cutoff]
            for jid in expired:
                del self._jobs[jid]
        if expired:
            logger.info("[research-store] swept %d expired job(s)", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.warning("[research-store] sweep failed: %s", e)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
