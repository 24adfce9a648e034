"""
深度检索结构化输出模型（Pydantic），同时作为 LLM 的 JSON schema。
"""

from typing import List, Union

from pydantic import BaseModel, Field


class Citation(BaseModel):
    id: int
    title: str = ""
    url: str = ""
    relevance_score: Union[int, float] = Field(default=0, ge=0, le=10)


class KeyDevelopment(BaseModel):
    number: int
    title: str = ""
    description: str = ""
    citations: List[int] = Field(default_factory=list)


class ResearchResponse(BaseModel):
    """executive summary + 关键进展 + 引用列表"""
    research_results: str
    key_developments: List[KeyDevelopment] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)


class ScopeDecision(BaseModel):
    """是否需要深度检索（仅作参考，解析失败按 False 处理）"""
    research: bool = False
