"""
Lightweight query analysis reported alongside search responses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from ..models import QueryType, SearchStrategy


QueryIntent = Literal["question", "search", "filter", "command"]

_OPERATOR_RE = re.compile(r'["+\-*]')
_QUESTION_RE = re.compile(r"^(what|how|why|when|where|who|which)\b")
_SEARCH_RE = re.compile(r"^(find|search|show|list|get)\b")


def analyze_query_complexity(query: str) -> float:
    """Score query complexity on a 0-1 scale."""
    words = query.split()
    if not words:
        return 0.0
    complexity = min(len(words) / 10, 0.4)
    if "?" in query:
        complexity += 0.2
    if _OPERATOR_RE.search(query):
        complexity += 0.3
    complexity += sum(1 for word in words if len(word) > 6) / len(words) * 0.1
    return min(complexity, 1.0)


def detect_query_intent(query: str) -> QueryIntent:
    lowered = query.strip().lower()
    if "?" in lowered or _QUESTION_RE.match(lowered):
        return "question"
    if _SEARCH_RE.match(lowered):
        return "search"
    if _OPERATOR_RE.search(query) or "filter" in lowered:
        return "filter"
    return "command"


@dataclass(frozen=True)
class QueryAnalysis:
    type: QueryType
    complexity: float
    intent: QueryIntent
    word_count: int
    suggested_strategy: SearchStrategy


def analyze_query(query: str) -> QueryAnalysis:
    """Classify a query as semantic, keyword-like or mixed.

    Questions read as natural language; short queries and operator-laden
    queries read as keyword lookups. The suggestion is informational only.
    """
    intent = detect_query_intent(query)
    word_count = len(query.split())
    query_type: QueryType
    if intent == "question":
        query_type = "semantic"
    elif intent == "filter" or word_count <= 2:
        query_type = "keyword"
    else:
        query_type = "mixed"
    suggestion: dict[QueryType, SearchStrategy] = {
        "semantic": "vector",
        "keyword": "keyword",
        "mixed": "hybrid",
    }
    return QueryAnalysis(
        type=query_type,
        complexity=analyze_query_complexity(query),
        intent=intent,
        word_count=word_count,
        suggested_strategy=suggestion[query_type],
    )
