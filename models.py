#!/usr/bin/env python3
"""
Data model for the feed analysis pipeline.

Plain dataclasses passed between the fetcher, the classification client, the
orchestrator and the report layer. Nothing here is persisted.
"""

from dataclasses import dataclass, field
from typing import List, Optional

STATUS_FULFILLED = "fulfilled"
STATUS_REJECTED = "rejected"


@dataclass
class FeedItem:
    """One post from a feed. Items without title or link never get this far."""
    title: str
    link: str
    description: Optional[str] = None
    published_at: Optional[str] = None


@dataclass
class ParsedFeed:
    title: Optional[str] = None
    description: Optional[str] = None
    items: List[FeedItem] = field(default_factory=list)


@dataclass
class AnalysisResult:
    """Relevance verdict for a single post."""
    relevant: bool
    raw_response: str = ""
    confidence: Optional[float] = None
    reason: Optional[str] = None
    tags: Optional[List[str]] = None


@dataclass
class RelevantPost:
    title: str
    link: str
    analysis: AnalysisResult
    published_at: Optional[str] = None


@dataclass
class FeedAnalysisResult:
    """Outcome for one input URL.

    A rejected result carries ``error`` and no ``feed``/``relevant_posts``;
    a fulfilled result always carries ``feed``.
    """
    feed_url: str
    status: str = STATUS_FULFILLED
    feed: Optional[ParsedFeed] = None
    error: Optional[BaseException] = None
    duration_ms: Optional[float] = None
    analyzed_items: Optional[int] = None
    relevant_posts: Optional[List[RelevantPost]] = None

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_FULFILLED


@dataclass
class ProgressUpdate:
    feed_url: str
    completed: int
    total: int
    status: str
    feed: Optional[ParsedFeed] = None
    error: Optional[BaseException] = None
    duration_ms: Optional[float] = None

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_FULFILLED


@dataclass
class HttpResponse:
    """Minimal view of an HTTP response shared by the feed fetcher and the directory download."""
    status: int
    body: bytes = b""
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")


@dataclass
class VerboseMessage:
    feed_url: str
    message: str
    feed_title: Optional[str] = None


__all__ = [
    "STATUS_FULFILLED",
    "STATUS_REJECTED",
    "FeedItem",
    "ParsedFeed",
    "AnalysisResult",
    "RelevantPost",
    "FeedAnalysisResult",
    "ProgressUpdate",
    "HttpResponse",
    "VerboseMessage",
]
