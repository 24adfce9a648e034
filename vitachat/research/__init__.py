"""
深度检索：结构化模型、引用清洗与校验、内存任务存储。

``ResearchPipeline`` 依赖 LLM 层，需从 ``vitachat.research.pipeline`` 显式导入。
"""

from vitachat.research.errors import ResearchError
from vitachat.research.job_store import JobStatus, ResearchJob, ResearchJobStore
from vitachat.research.schemas import Citation, KeyDevelopment, ResearchResponse, ScopeDecision

__all__ = [
    "Citation",
    "JobStatus",
    "KeyDevelopment",
    "ResearchError",
    "ResearchJob",
    "ResearchJobStore",
    "ResearchResponse",
    "ScopeDecision",
]
