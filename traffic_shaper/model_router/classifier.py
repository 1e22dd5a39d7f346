"""Lightweight task classification for quality boosts.

The router asks a TaskClassifier which task categories a prompt looks
like, and boosts models whose capabilities match. The default classifier
is a keyword heuristic: cheap, deterministic, and only an approximation.
Anything implementing ``classify(prompt) -> frozenset[str]`` can replace it.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

import structlog

log = structlog.get_logger(__name__)

CODE = "code"
ANALYSIS = "analysis"
CREATIVE = "creative"


@runtime_checkable
class TaskClassifier(Protocol):
    """Maps a prompt to the task categories it appears to belong to."""

    def classify(self, prompt: str) -> frozenset[str]: ...


DEFAULT_CATEGORY_KEYWORDS: dict[str, frozenset[str]] = {
    CODE: frozenset(
        {
            "code",
            "function",
            "bug",
            "debug",
            "compile",
            "refactor",
            "stack trace",
            "exception",
            "python",
            "javascript",
            "typescript",
            "sql",
            "regex",
            "api",
        }
    ),
    ANALYSIS: frozenset(
        {
            "analyze",
            "analyse",
            "analiz",
            "explain",
            "compare",
            "evaluate",
            "assess",
            "summarize",
            "why",
        }
    ),
    CREATIVE: frozenset({"story", "poem", "creative", "slogan", "lyrics"}),
}

# Category -> (capabilities that qualify a model, quality boost)
DEFAULT_CATEGORY_BOOSTS: dict[str, tuple[frozenset[str], float]] = {
    CODE: (frozenset({"code"}), 0.10),
    ANALYSIS: (frozenset({"analysis", "reasoning"}), 0.05),
    CREATIVE: (frozenset({"creative"}), 0.05),
}

# Only the head of very long prompts is scanned; the category is usually
# stated up front and this keeps classification O(1) in prompt length.
MAX_SCAN_CHARS = 4000


class KeywordTaskClassifier:
    """Classifies prompts by keyword presence.

    Keywords match at the start of a word: "api" does not match "capital",
    and stems such as "analiz" catch "analizar" and "analiza".
    """

    def __init__(
        self,
        category_keywords: Mapping[str, frozenset[str]] = DEFAULT_CATEGORY_KEYWORDS,
    ) -> None:
        self._patterns: dict[str, re.Pattern[str]] = {}
        for category, keywords in category_keywords.items():
            alternatives = "|".join(
                re.escape(keyword) for keyword in sorted(keywords, key=len, reverse=True)
            )
            self._patterns[category] = re.compile(rf"\b(?:{alternatives})", re.IGNORECASE)

    def classify(self, prompt: str) -> frozenset[str]:
        if not prompt:
            return frozenset()
        head = prompt[:MAX_SCAN_CHARS]
        categories = frozenset(
            category for category, pattern in self._patterns.items() if pattern.search(head)
        )
        if categories:
            log.debug("task_classifier.categories", categories=sorted(categories))
        return categories
