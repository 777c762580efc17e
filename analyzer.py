#!/usr/bin/env python3
"""
Feed analysis orchestrator.

Drives the bounded worker pool over a list of feed URLs. Each unit of work
fetches a feed (once per distinct URL, shared through an in-flight cache),
keeps the posts inside the recency window, asks the classification client
about every eligible post and filters positive verdicts through the
false-positive guard. Progress and verbose events are reported through
synchronous callbacks while results come back in input order.
"""

from asyncio import CancelledError, Task, ensure_future, shield
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
import math
import time

from dateutil import parser as dateparser

from config import config, get_logger
from errors import ClassifierConfigurationError
from fetcher import fetch_feed as default_fetch_feed
from guard import passes_relevance_guard
from models import (
    STATUS_REJECTED,
    AnalysisResult,
    FeedAnalysisResult,
    FeedItem,
    ParsedFeed,
    ProgressUpdate,
    RelevantPost,
    VerboseMessage,
)
from telemetry import trace_span
from utils import CancellationToken, async_pool, subtract_months

logger = get_logger("analyzer")

DEFAULT_PARALLEL = config.DEFAULT_PARALLEL
DEFAULT_MONTH_WINDOW = config.DEFAULT_MONTH_WINDOW

FetchFeed = Callable[..., Awaitable[ParsedFeed]]
ProgressCallback = Callable[[ProgressUpdate], None]
VerboseCallback = Callable[[VerboseMessage], None]
Clock = Callable[[], float]


class AnalysisClient(Protocol):
    async def analyze(
        self,
        text: str,
        graceful_degradation: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> AnalysisResult: ...


class MissingAnalysisClient:
    """Placeholder used when no classifier is supplied; every call fails."""

    async def analyze(self, text: str, graceful_degradation: bool = False, token=None, **kwargs) -> AnalysisResult:
        raise ClassifierConfigurationError("analysis_client dependency is required")


def wall_clock_ms() -> float:
    return time.time() * 1000.0


def compute_cutoff(reference_ms: float, months: int) -> Optional[datetime]:
    """Return the UTC cutoff `months` calendar months before `reference_ms`.

    Returns None when the reference time is not a finite number.
    """
    if isinstance(reference_ms, bool) or not isinstance(reference_ms, (int, float)) or not math.isfinite(reference_ms):
        return None
    try:
        reference = datetime.fromtimestamp(reference_ms / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return subtract_months(reference, months)


def parse_published_at(value: Optional[str]) -> Optional[datetime]:
    """Parse a publication timestamp; naive values are taken as UTC.

    ISO-8601 is tried first, then dateutil's free-form parser so RFC 2822
    dates ("Sat, 01 Nov 2025 10:00:00 GMT") from other fetchers still count.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    try:
        parsed = dateparser.isoparse(text)
    except (ValueError, OverflowError):
        try:
            parsed = dateparser.parse(text)
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_recent(item: FeedItem, cutoff: Optional[datetime]) -> bool:
    if cutoff is None:
        return False
    published = parse_published_at(item.published_at)
    return published is not None and published >= cutoff


def _has_description(item: FeedItem) -> bool:
    return bool(item.description and item.description.strip())


def _validate_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return value


def _elapsed_ms(started: float, finished: float) -> Optional[float]:
    try:
        if not (math.isfinite(started) and math.isfinite(finished)):
            return None
    except TypeError:
        return None
    return max(0.0, finished - started)


class FeedAnalyzer:
    """Analyze a batch of feeds with a bounded number of concurrent units.

    One instance corresponds to one configuration; `analyze` may be called
    repeatedly and each call gets its own fetch cache and progress counter.
    """

    def __init__(
        self,
        *,
        concurrency: int = DEFAULT_PARALLEL,
        months: int = DEFAULT_MONTH_WINDOW,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_verbose: Optional[VerboseCallback] = None,
        clock: Optional[Clock] = None,
        fetch_feed: Optional[FetchFeed] = None,
        analysis_client: Optional[AnalysisClient] = None,
        fetch_options: Any = None,
    ) -> None:
        self.concurrency = _validate_positive_int("concurrency", concurrency)
        self.months = _validate_positive_int("months", months)
        self.token = token
        self.on_progress = on_progress
        self.on_verbose = on_verbose
        self.clock = clock or wall_clock_ms
        self.fetch_feed = fetch_feed or default_fetch_feed
        self.analysis_client = analysis_client or MissingAnalysisClient()
        self.fetch_options = fetch_options

    async def analyze(self, feed_urls: Sequence[str]) -> List[FeedAnalysisResult]:
        if not isinstance(feed_urls, (list, tuple)):
            raise TypeError("feed_urls must be a list of URLs")
        if self.token is not None:
            self.token.raise_if_cancelled()

        run = _AnalysisRun(self, list(feed_urls))
        try:
            return await async_pool(run.feed_urls, run.process_feed, self.concurrency, self.token)
        finally:
            run.release_fetches()


class _AnalysisRun:
    """State owned by a single `FeedAnalyzer.analyze` call."""

    def __init__(self, analyzer: FeedAnalyzer, feed_urls: List[str]) -> None:
        self.analyzer = analyzer
        self.feed_urls = feed_urls
        self.total = len(feed_urls)
        self.completed = 0
        self.fetches: Dict[str, Task] = {}

    def _verbose(self, feed_url: str, message: str, feed: Optional[ParsedFeed] = None) -> None:
        logger.debug("%s: %s", feed_url, message)
        if self.analyzer.on_verbose is not None:
            self.analyzer.on_verbose(VerboseMessage(
                feed_url=feed_url,
                message=message,
                feed_title=feed.title if feed is not None else None,
            ))

    async def _fetch_once(self, feed_url: str, token: Optional[CancellationToken]) -> ParsedFeed:
        # Installed before the first await so concurrent duplicates find it
        task = self.fetches.get(feed_url)
        if task is None:
            task = ensure_future(self.analyzer.fetch_feed(feed_url, self.analyzer.fetch_options, token=token))
            self.fetches[feed_url] = task
        else:
            logger.debug("Reusing in-flight fetch for %s", feed_url)
        return await shield(task)

    def release_fetches(self) -> None:
        """Cancel fetches nobody is waiting for and retrieve finished exceptions."""
        for task in self.fetches.values():
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                task.exception()

    async def _classify_items(
        self,
        feed_url: str,
        feed: ParsedFeed,
        token: Optional[CancellationToken],
    ) -> Tuple[int, List[RelevantPost]]:
        cutoff = compute_cutoff(self.analyzer.clock(), self.analyzer.months)
        recent = [item for item in feed.items if is_recent(item, cutoff)]
        cutoff_label = cutoff.date().isoformat() if cutoff is not None else "unknown"
        self._verbose(
            feed_url,
            f"{len(recent)} of {len(feed.items)} posts published on or after {cutoff_label}",
            feed,
        )

        analyzed = 0
        relevant_posts: List[RelevantPost] = []
        for item in recent:
            if not _has_description(item):
                continue
            self._verbose(feed_url, f"Analyzing post: {item.title}", feed)
            analyzed += 1
            verdict = await self.analyzer.analysis_client.analyze(
                item.description,
                graceful_degradation=True,
                token=token,
            )
            if not verdict.relevant:
                continue
            if not passes_relevance_guard(verdict, item):
                self._verbose(feed_url, f"Discarded relevant verdict without AI signals: {item.title}", feed)
                continue
            relevant_posts.append(RelevantPost(
                title=item.title,
                link=item.link,
                published_at=item.published_at,
                analysis=verdict,
            ))
        return analyzed, relevant_posts

    @trace_span(
        "analyze_feed",
        tracer_name="analyzer",
        attr_from_args=lambda self, feed_url, index, token=None: {"feed.url": feed_url, "feed.index": index},
        attr_from_result=lambda result: {
            "feed.status": result.status,
            "feed.relevant_posts": len(result.relevant_posts or []),
        },
    )
    async def process_feed(
        self,
        feed_url: str,
        index: int,
        token: Optional[CancellationToken] = None,
    ) -> FeedAnalysisResult:
        clock = self.analyzer.clock
        result = FeedAnalysisResult(feed_url=feed_url)
        started = clock()

        try:
            feed = await self._fetch_once(feed_url, token)
            result.feed = feed
            analyzed, relevant_posts = await self._classify_items(feed_url, feed, token)
            result.analyzed_items = analyzed
            result.relevant_posts = relevant_posts
        except CancelledError:
            raise
        except Exception as e:
            if token is not None and token.cancelled:
                raise
            logger.info("Feed %s failed: %s", feed_url, e)
            result.status = STATUS_REJECTED
            result.error = e
            result.feed = None
            result.relevant_posts = None
        finally:
            result.duration_ms = _elapsed_ms(started, clock())

        self.completed += 1
        if self.analyzer.on_progress is not None:
            self.analyzer.on_progress(ProgressUpdate(
                feed_url=feed_url,
                completed=self.completed,
                total=self.total,
                status=result.status,
                feed=result.feed,
                error=result.error,
                duration_ms=result.duration_ms,
            ))
        return result


async def analyze_feeds(
    feed_urls: Sequence[str],
    *,
    concurrency: int = DEFAULT_PARALLEL,
    months: int = DEFAULT_MONTH_WINDOW,
    token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    on_verbose: Optional[VerboseCallback] = None,
    clock: Optional[Clock] = None,
    fetch_feed: Optional[FetchFeed] = None,
    analysis_client: Optional[AnalysisClient] = None,
    fetch_options: Any = None,
) -> List[FeedAnalysisResult]:
    """Fetch, filter and classify every feed, returning one result per input URL.

    Per-feed failures are recorded on the result (status ``rejected``) and
    never abort the run; invalid options and cancellation do.

    Raises:
        TypeError: if ``feed_urls`` is not a list or tuple.
        ValueError: if ``concurrency`` or ``months`` is not a positive integer.
        The token's reason: if cancellation is requested.
    """
    if not isinstance(feed_urls, (list, tuple)):
        raise TypeError("feed_urls must be a list of URLs")
    analyzer = FeedAnalyzer(
        concurrency=concurrency,
        months=months,
        token=token,
        on_progress=on_progress,
        on_verbose=on_verbose,
        clock=clock,
        fetch_feed=fetch_feed,
        analysis_client=analysis_client,
        fetch_options=fetch_options,
    )
    return await analyzer.analyze(feed_urls)


__all__ = [
    "DEFAULT_PARALLEL",
    "DEFAULT_MONTH_WINDOW",
    "FeedAnalyzer",
    "MissingAnalysisClient",
    "analyze_feeds",
    "compute_cutoff",
    "is_recent",
    "parse_published_at",
    "wall_clock_ms",
]
