"""
引用 URL 校验（aiohttp 并发抓取）。

每条引用独立给出结果，任何异常（超时、URL 非法、网络错误）都只记录在该条结果里，
不会中断整批校验：
- is_valid: URL 语法合法（http/https + host）
- is_accessible: GET（跟随重定向）返回 2xx
- has_content: 文本类型需去标签、压缩空白后超过 min_content_chars；非文本类型可达即视为有内容
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from bs4 import BeautifulSoup

from vitachat.log import get_logger
from vitachat.research.schemas import Citation

logger = get_logger(__name__)

TEXTUAL_CONTENT_TYPES = ("text/html", "text/plain", "application/xml")
_WS_RE = re.compile(r"\s+")

FetchResult = Tuple[int, str, Optional[str], Optional[int]]  # status, content_type, body, content_length


@dataclass
class CitationValidationResult:
    citation_id: int
    url: str
    is_valid: bool = False
    is_accessible: bool = False
    has_content: bool = False
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.is_valid and self.is_accessible and self.has_content

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def meaningful_text(body: str, content_type: str) -> str:
    """去掉标记与多余空白后的正文"""
    if content_type.startswith("text/plain"):
        text = body
    else:
        text = BeautifulSoup(body, "html.parser").get_text(" ")
    return _WS_RE.sub(" ", text).strip()


class CitationValidator:

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        min_content_chars: int = 4000,
        user_agent: str = "Mozilla/5.0 (compatible; ResearchBot/1.0)",
    ):
        self.timeout_seconds = timeout_seconds
        self.min_content_chars = min_content_chars
        self.user_agent = user_agent

    @classmethod
    def from_settings(cls) -> "CitationValidator":
        from config.settings import settings
        rs = settings.research
        return cls(
            timeout_seconds=rs.validation_timeout_seconds,
            min_content_chars=rs.min_content_chars,
            user_agent=rs.user_agent,
        )

    async def validate_citation_urls(self, citations: Iterable[Citation]) -> List[CitationValidationResult]:
        """并发校验全部引用；返回顺序与输入一致，永不抛出"""
        items = list(citations)
        if not items:
            return []
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(headers=headers, timeout=timeout) as session:
            results = await asyncio.gather(*(self.validate_single(session, c) for c in items))
        ok = sum(1 for r in results if r.passed)
        logger.info("[citations] %d/%d citation url(s) passed validation", ok, len(results))
        return list(results)

    async def validate_single(self, session: aiohttp.ClientSession, citation: Citation) -> CitationValidationResult:
        result = CitationValidationResult(citation_id=citation.id, url=citation.url)
        if not is_valid_url(citation.url):
            result.error = "Invalid URL format"
            return result
        result.is_valid = True

        try:
            status, content_type, body, content_length = await asyncio.wait_for(
                self._fetch(session, citation.url), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            result.error = "Request timeout"
            return result
        except aiohttp.ClientError as e:
            result.error = str(e) or e.__class__.__name__
            return result
        except Exception as e:
            logger.warning("[citations] unexpected error fetching %s: %s", citation.url, e)
            result.error = str(e) or e.__class__.__name__
            return result

        result.status_code = status
        result.content_type = content_type or None
        result.is_accessible = 200 <= status < 300
        if not result.is_accessible:
            result.error = f"HTTP {status}"
            return result

        if content_type.startswith(TEXTUAL_CONTENT_TYPES):
            text = meaningful_text(body or "", content_type)
            result.content_length = len(text)
            result.has_content = len(text) > self.min_content_chars
            if not result.has_content:
                result.error = f"Insufficient content ({len(text)} characters)"
        else:
            result.content_length = content_length
            result.has_content = True
        return result

    async def _fetch(self, session: aiohttp.ClientSession, url: str) -> FetchResult:
        async with session.get(url, allow_redirects=True) as resp:
            content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower()
            body = None
            if 200 <= resp.status < 300 and content_type.startswith(TEXTUAL_CONTENT_TYPES):
                body = await resp.text(errors="replace")
            length = resp.headers.get("Content-Length")
            return resp.status, content_type, body, int(length) if length and length.isdigit() else None
