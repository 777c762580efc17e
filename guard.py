#!/usr/bin/env python3
"""
False-positive guard for relevance verdicts.

Small models happily answer "yes" for posts about charts, SwiftUI layout or
App Store news. A positive verdict is only kept when the explanation the model
gave (or, failing that, the post itself) mentions AI/ML vocabulary.
"""

import re
from typing import Iterable, List, Optional

from models import AnalysisResult, FeedItem

TOPIC_MARKERS = (
    "ai",
    "llm",
    "llms",
    "machine learning",
    "core ml",
    "coreml",
    "create ml",
    "foundation models",
    "neural",
    "gpt",
    "openai",
    "chatgpt",
    "claude",
    "gemini",
    "copilot",
    "agent",
    "agents",
    "agentic",
    "prompt",
    "prompts",
    "embedding",
    "embeddings",
    "rag",
    "transformer",
    "transformers",
    "diffusion",
    "vision framework",
    "natural language",
    "on-device model",
    "on-device models",
    "generative",
    "inference",
    "ollama",
    "mlx",
    "apple intelligence",
    "cursor",
    "language model",
    "language models",
    "deep learning",
    "artificial intelligence",
)

# Longest first so multi-word markers win over their single-word prefixes
_MARKER_RE = re.compile(
    r"(?<!\w)(" + "|".join(re.escape(m) for m in sorted(TOPIC_MARKERS, key=len, reverse=True)) + r")(?!\w)",
    re.IGNORECASE,
)


def _scan(texts: Iterable[Optional[str]]) -> List[str]:
    found: List[str] = []
    for text in texts:
        if not text:
            continue
        for match in _MARKER_RE.finditer(text):
            marker = match.group(1).lower()
            if marker not in found:
                found.append(marker)
    return found


def find_topic_signals(
    analysis: AnalysisResult,
    item: Optional[FeedItem] = None,
    *,
    include_item_text: bool = False,
) -> List[str]:
    """Return the topic markers supporting a verdict, in order of discovery."""
    texts: List[Optional[str]] = [analysis.reason]
    texts.extend(analysis.tags or [])
    has_explanation = bool((analysis.reason or "").strip() or analysis.tags)
    if item is not None and (include_item_text or not has_explanation):
        texts.extend([item.title, item.description])
    return _scan(texts)


def passes_relevance_guard(
    analysis: AnalysisResult,
    item: Optional[FeedItem] = None,
    *,
    include_item_text: bool = False,
) -> bool:
    """Decide whether a verdict survives the guard.

    Non-relevant verdicts always pass since there is nothing to veto.
    """
    if not analysis.relevant:
        return True
    return bool(find_topic_signals(analysis, item, include_item_text=include_item_text))


__all__ = ["TOPIC_MARKERS", "find_topic_signals", "passes_relevance_guard"]
