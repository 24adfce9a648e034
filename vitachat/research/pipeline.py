"""
深度检索流水线：一次对话轮次对应一个任务（job_id = 触发轮次的 message_id）。

流程：
  1. 取最近 N 轮对话，拼接 research prompt（可选地区提示）
  2. 调用带 web search 的 LLM，得到 ResearchResponse；无解析结果视为失败
  3. 清洗引用标记 -> [n]（同一任务内编号共享）
  4. 并发校验引用 URL
  5. 未通过校验的引用去掉 url 并在标题上标注
  6. 拼接最终文本
  7. 写入 bot 消息（尽力而为），任务置为 completed
任何异常都会把任务置为 failed，任务不会停留在 pending。
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from vitachat.llm.capability import ResearchCapability, render_conversation
from vitachat.log import get_logger
from vitachat.observability.metrics import metrics
from vitachat.research.citations import (
    CitationMarkerTransform,
    TextAnnotationTransform,
    clean_research_response,
    downgrade_citations,
    render_research_text,
)
from vitachat.research.errors import ResearchError
from vitachat.research.job_store import JobStatus, ResearchJobStore
from vitachat.research.schemas import Citation
from vitachat.research.validator import CitationValidator
from vitachat.stores.message_store import MessageSink, persist_best_effort
from vitachat.utils.ids import new_message_id
from vitachat.utils.prompt_manager import PromptManager

logger = get_logger(__name__)

RESEARCH_PROMPT = "research.txt"
LOCATION_HINT_PROMPT = "location_hint.txt"


class ResearchPipeline:

    def __init__(
        self,
        llm: ResearchCapability,
        job_store: ResearchJobStore,
        messages: Optional[MessageSink] = None,
        validator: Optional[CitationValidator] = None,
        marker_transform_factory: Callable[[], TextAnnotationTransform] = CitationMarkerTransform,
        window_size: int = 5,
    ):
        self.llm = llm
        self.job_store = job_store
        self.messages = messages
        self.validator = validator or CitationValidator.from_settings()
        self.marker_transform_factory = marker_transform_factory
        self.window_size = window_size
        self._prompts = PromptManager()

    def build_prompt(self, user_location: Optional[str] = None) -> str:
        prompt = self._prompts.render(RESEARCH_PROMPT)
        if user_location and user_location.strip():
            prompt += self._prompts.render(LOCATION_HINT_PROMPT, location=user_location.strip()).rstrip()
        return prompt

    def conversation_window(self, conversation: Sequence[Dict[str, Any]]) -> str:
        return render_conversation(list(conversation)[-self.window_size:])

    async def run(
        self,
        job_id: str,
        conversation: Sequence[Dict[str, Any]],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        user_location: Optional[str] = None,
    ) -> JobStatus:
        """执行一次检索任务并把结果写入 job_store；返回任务的最终状态"""
        started = time.perf_counter()
        try:
            await self._run(job_id, conversation, user_id, session_id, user_location)
        except asyncio.CancelledError:
            self.job_store.mark_failed(job_id, "Research cancelled")
            metrics.research_jobs_total.labels(status="failed").inc()
            raise
        except Exception as e:
            logger.error("[research] job %s failed: %s", job_id, e)
            self.job_store.mark_failed(job_id, str(e) or e.__class__.__name__)
            metrics.research_jobs_total.labels(status="failed").inc()
            return JobStatus.FAILED
        finally:
            metrics.research_duration_seconds.observe(time.perf_counter() - started)

        metrics.research_jobs_total.labels(status="completed").inc()
        return JobStatus.COMPLETED

    async def _run(
        self,
        job_id: str,
        conversation: Sequence[Dict[str, Any]],
        user_id: Optional[str],
        session_id: Optional[str],
        user_location: Optional[str],
    ) -> None:
        if job_id not in self.job_store:
            self.job_store.create_pending(job_id)
        prompt = self.build_prompt(user_location)
        logger.info("[research] job %s started (window=%d)", job_id, min(len(conversation), self.window_size))

        raw = await self.llm.research(prompt, self.conversation_window(conversation))
        if raw is None:
            raise ResearchError("No research response received from the LLM provider")

        cleaned = clean_research_response(raw, self.marker_transform_factory())
        citations, validation = await self._vet_citations(cleaned.citations)
        text = render_research_text(cleaned.research_results, cleaned.key_developments)

        developments = [d.model_dump() for d in cleaned.key_developments]
        citation_dicts = [c.model_dump() for c in citations]

        if self.messages is not None:
            await persist_best_effort(
                "record research result",
                self.messages.record_bot_turn,
                new_message_id(),
                text,
                metadata={
                    "research_results": cleaned.research_results,
                    "key_developments": developments,
                    "citations": citation_dicts,
                    "reply_to": job_id,
                },
                session_id=session_id,
                user_id=user_id,
            )

        self.job_store.mark_completed(
            job_id,
            research_results=cleaned.research_results,
            key_developments=developments,
            citations=citation_dicts,
            citation_validation=validation,
        )
        logger.info(
            "[research] job %s completed: %d development(s), %d/%d citation(s) verified",
            job_id, len(developments), sum(1 for c in citations if c.url), len(citations),
        )

    async def _vet_citations(self, citations: List[Citation]):
        results = await self.validator.validate_citation_urls(citations)
        verified = {r.url for r in results if r.passed}
        kept = downgrade_citations(citations, verified)
        for c in kept:
            metrics.citation_checks_total.labels(outcome="kept" if c.url else "dropped").inc()
        return kept, [r.to_dict() for r in results]

    async def validate_existing_citations(self, job_id: str) -> Optional[List[Dict[str, Any]]]:
        """重新校验已完成任务的引用；任务不存在或未完成时返回 None"""
        job = self.job_store.get(job_id)
        if job is None or job.status != JobStatus.COMPLETED:
            return None
        citations = [Citation.model_validate(c) for c in job.citations]
        results = [r.to_dict() for r in await self.validator.validate_citation_urls(citations)]
        self.job_store.attach_validation(job_id, results)
        return results
