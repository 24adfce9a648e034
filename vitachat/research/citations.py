"""
Citation post-processing for research results.

- ``CitationMarkerTransform`` rewrites provider-specific inline markers into
  ``[n]``.  One instance numbers one job: the same marker text always maps to
  the same number, in first-seen order, across the summary and every key
  development.  Output never contains a marker, so a second pass is a no-op.
- ``downgrade_citations`` strips the url of every citation that failed
  validation and annotates its title.
- ``render_research_text`` builds the final bot message text.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Protocol, Set

from vitachat.research.schemas import Citation, KeyDevelopment, ResearchResponse

# OpenAI web_search inline markers: U+E200 "cite" <ref ids> U+E201
DEFAULT_MARKER_PATTERN = "\ue200cite.*?\ue201"
UNVERIFIED_SUFFIX = " (URL was invalid or inaccessible)"


class TextAnnotationTransform(Protocol):
    def apply(self, text: str) -> str: ...


class CitationMarkerTransform:
    """Replace marker substrings matched by *pattern* with bracketed ordinals."""

    def __init__(self, pattern: str = DEFAULT_MARKER_PATTERN):
        self._regex = re.compile(pattern)
        self._numbers: Dict[str, int] = {}

    @property
    def markers(self) -> Dict[str, int]:
        return dict(self._numbers)

    def _number_for(self, match: re.Match) -> str:
        marker = match.group(0)
        if marker not in self._numbers:
            self._numbers[marker] = len(self._numbers) + 1
        return f"[{self._numbers[marker]}]"

    def apply(self, text: str) -> str:
        if not text:
            return text
        return self._regex.sub(self._number_for, text)


def clean_research_response(
    response: ResearchResponse,
    transform: Optional[TextAnnotationTransform] = None,
) -> ResearchResponse:
    """Copy of *response* with markers replaced in the summary and key development texts."""
    transform = transform or CitationMarkerTransform()
    summary = transform.apply(response.research_results)
    developments = [
        dev.model_copy(update={
            "title": transform.apply(dev.title),
            "description": transform.apply(dev.description),
        })
        for dev in response.key_developments
    ]
    return response.model_copy(update={
        "research_results": summary,
        "key_developments": developments,
    })


def downgrade_citations(citations: Iterable[Citation], verified_urls: Set[str]) -> List[Citation]:
    out = []
    for c in citations:
        if c.url and c.url in verified_urls:
            out.append(c)
        else:
            out.append(c.model_copy(update={"url": "", "title": c.title + UNVERIFIED_SUFFIX}))
    return out


def render_research_text(summary: str, key_developments: Iterable[KeyDevelopment]) -> str:
    text = summary
    developments = list(key_developments)
    if developments:
        text += "\n\n"
        for dev in developments:
            refs = f" [{', '.join(str(c) for c in dev.citations)}]" if dev.citations else ""
            text += f"{dev.number}. {dev.title}{refs}\n{dev.description}\n\n"
    return text
