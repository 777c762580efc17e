#!/usr/bin/env python3
"""
Report building and rendering.

Turns the analyzer's per-feed results into the documents the CLI emits:
JSON / CSV / Markdown reports of relevant posts, the failed-feed log that can
be fed back in with ``--retry-file``, and the per-feed performance log.
"""

import csv
import io
import json
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from config import FilterConfig, get_logger
from errors import CliError
from models import FeedAnalysisResult

logger = get_logger("reports")

OUTPUT_FORMATS = ("json", "csv", "md")
CSV_HEADER = ["feed_title", "feed_url", "post_title", "post_link", "published_at", "confidence", "tags", "reason"]
MARKDOWN_TITLE = "# iOS Blogs AI List"


@dataclass
class RunSummary:
    succeeded: List[FeedAnalysisResult] = field(default_factory=list)
    failed: List[FeedAnalysisResult] = field(default_factory=list)
    average_duration_ms: Optional[float] = None


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def error_message(error: Optional[BaseException]) -> str:
    if error is None:
        return "Unknown error"
    return str(error) or error.__class__.__name__


def summarize(results: Sequence[FeedAnalysisResult]) -> RunSummary:
    """Split results by status and average the durations of successful feeds."""
    summary = RunSummary()
    durations: List[float] = []
    for result in results:
        if result.is_success:
            summary.succeeded.append(result)
            if _is_finite_number(result.duration_ms):
                durations.append(result.duration_ms)
        else:
            summary.failed.append(result)
    if durations:
        summary.average_duration_ms = sum(durations) / len(durations)
    return summary


def build_feed_reports(results: Sequence[FeedAnalysisResult]) -> List[Dict[str, Any]]:
    """Report entries for feeds with at least one relevant post, in input order."""
    reports: List[Dict[str, Any]] = []
    for result in results:
        if not result.relevant_posts:
            continue
        posts = []
        for post in result.relevant_posts:
            posts.append({
                "title": post.title,
                "link": post.link,
                "publishedAt": post.published_at,
                "confidence": post.analysis.confidence,
                "reason": post.analysis.reason,
                "tags": post.analysis.tags,
            })
        reports.append({
            "feedUrl": result.feed_url,
            "feedTitle": result.feed.title if result.feed is not None else None,
            "relevantPosts": posts,
        })
    return reports


def build_failed_feed_entries(failed: Sequence[FeedAnalysisResult]) -> List[Dict[str, str]]:
    return [{"feedUrl": item.feed_url, "error": error_message(item.error)} for item in failed]


def _drop_none(value: Any) -> Any:
    """Recursively drop None values so optional fields are omitted from JSON."""
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value]
    return value


def render_json(reports: List[Dict[str, Any]], failed_entries: List[Dict[str, str]]) -> str:
    return json.dumps(_drop_none({"feeds": reports, "failedFeeds": failed_entries}), indent=2, ensure_ascii=False)


def _format_number(value: Any) -> str:
    if not _is_finite_number(value):
        return ""
    return str(value)


def render_csv(reports: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for report in reports:
        for post in report["relevantPosts"]:
            writer.writerow([
                report.get("feedTitle") or report["feedUrl"],
                report["feedUrl"],
                post["title"],
                post["link"],
                post.get("publishedAt") or "",
                _format_number(post.get("confidence")),
                ";".join(post.get("tags") or []),
                (post.get("reason") or "").replace("\r\n", "\n"),
            ])
    return buffer.getvalue().rstrip("\n")


def _escape_markdown_link_text(text: str) -> str:
    return text.replace("[", "\\[").replace("]", "\\]")


def render_markdown(reports: List[Dict[str, Any]]) -> str:
    """Checklist of relevant posts grouped by feed."""
    lines = [MARKDOWN_TITLE, ""]
    if not reports:
        lines.append("_No relevant posts detected._")
    for report in reports:
        lines.append(f"## {report.get('feedTitle') or report['feedUrl']}")
        lines.append("")
        for post in report["relevantPosts"]:
            lines.append(f"- [ ] [{_escape_markdown_link_text(post['title'])}]({post['link']})")
        lines.append("")
    return "\n".join(lines).rstrip("\n")


def render_report(output_format: str, reports: List[Dict[str, Any]], failed_entries: List[Dict[str, str]]) -> str:
    if output_format == "csv":
        return render_csv(reports)
    if output_format == "md":
        return render_markdown(reports)
    return render_json(reports, failed_entries)


def write_report(text: str, destination: str) -> None:
    """Write `text` plus a trailing newline, creating parent directories as needed."""
    directory = os.path.dirname(os.path.abspath(destination))
    os.makedirs(directory, exist_ok=True)
    with open(destination, "w", encoding="utf-8") as f:
        f.write(f"{text}\n")
    logger.debug(f"Wrote {len(text)} characters to {destination}")


def render_failed_log(failed_entries: List[Dict[str, str]]) -> str:
    return json.dumps({"failedFeeds": failed_entries}, indent=2, ensure_ascii=False)


def _iso_timestamp(epoch_ms: float) -> str:
    if not _is_finite_number(epoch_ms):
        epoch_ms = datetime.now(timezone.utc).timestamp() * 1000.0
    dt = datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_performance_log(
    results: Sequence[FeedAnalysisResult],
    *,
    generated_at_ms: float,
    elapsed_ms: float,
    parallel: int,
    months: int,
    source: str,
    feed_count: int,
    max_blogs: Optional[int] = None,
    retry_file: Optional[str] = None,
    filter_config: Optional[FilterConfig] = None,
    summary: Optional[RunSummary] = None,
) -> Dict[str, Any]:
    """Per-feed timings plus run parameters, shaped for JSON output."""
    summary = summary or summarize(results)
    feeds = []
    for result in results:
        feeds.append({
            "feedUrl": result.feed_url,
            "feedTitle": result.feed.title if result.feed is not None else None,
            "status": result.status,
            "durationMs": result.duration_ms,
            "analyzedItems": result.analyzed_items,
            "relevantPostCount": len(result.relevant_posts or []),
            "error": error_message(result.error) if not result.is_success else None,
        })

    filters = None
    if filter_config is not None:
        filters = {
            "languages": filter_config.allowed_languages,
            "categories": filter_config.allowed_categories,
        }

    return _drop_none({
        "generatedAt": _iso_timestamp(generated_at_ms),
        "parameters": {
            "parallel": parallel,
            "months": months,
            "maxBlogs": max_blogs,
            "source": source,
            "retryFile": retry_file,
            "feedCount": feed_count,
            "filters": filters,
        },
        "summary": {
            "totalFeeds": len(results),
            "succeeded": len(summary.succeeded),
            "failed": len(summary.failed),
            "elapsedMs": elapsed_ms,
            "averageDurationMs": summary.average_duration_ms,
        },
        "feeds": feeds,
    })


def _feed_url_candidate(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("feedUrl")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_retry_feed_urls(payload: Any) -> List[str]:
    """Collect feed URLs from a failed-log document, de-duplicated in order."""
    candidates: List[Any] = []
    if isinstance(payload, list):
        candidates.extend(payload)
    elif isinstance(payload, dict):
        for key in ("failedFeeds", "feeds"):
            if isinstance(payload.get(key), list):
                candidates.extend(payload[key])

    urls: List[str] = []
    for candidate in candidates:
        url = _feed_url_candidate(candidate)
        if url and url not in urls:
            urls.append(url)
    return urls


def load_retry_feeds(file_path: str) -> List[str]:
    """Read feed URLs from a failed-feed log written by a previous run.

    Raises:
        CliError: if the file is unreadable, not JSON, or lists no feeds.
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise CliError(f"Unable to read retry file at {file_path}: {e}") from e
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise CliError(f"Retry file {file_path} is not valid JSON: {e}") from e

    feeds = extract_retry_feed_urls(payload)
    if not feeds:
        raise CliError(f"Retry file {file_path} did not contain any feed URLs")
    return feeds


def format_clock_duration(milliseconds: float) -> str:
    """MM:SS, minutes growing past 59 for long runs."""
    if not _is_finite_number(milliseconds):
        return "--:--"
    total_seconds = max(0, int(round(milliseconds / 1000.0)))
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"


def format_short_duration(milliseconds: Optional[float]) -> str:
    if not _is_finite_number(milliseconds):
        return "--"
    if milliseconds < 1000:
        return f"{round(milliseconds)}ms"
    if milliseconds < 60_000:
        seconds = milliseconds / 1000.0
        return f"{seconds:.0f}s" if seconds >= 10 else f"{seconds:.1f}s"
    minutes = int(milliseconds // 60_000)
    seconds = int(round((milliseconds % 60_000) / 1000.0))
    if seconds == 60:
        minutes, seconds = minutes + 1, 0
    return f"{minutes}m {seconds:02d}s"


def estimate_remaining_ms(completed: int, total: int, elapsed_ms: float) -> Optional[float]:
    """Linear ETA from the average pace so far; None until there is a pace."""
    if completed <= 0 or not _is_finite_number(elapsed_ms) or elapsed_ms <= 0:
        return None
    remaining = total - completed
    if remaining <= 0:
        return 0
    return round(remaining * elapsed_ms / completed)


__all__ = [
    "CSV_HEADER",
    "OUTPUT_FORMATS",
    "RunSummary",
    "build_failed_feed_entries",
    "build_feed_reports",
    "build_performance_log",
    "error_message",
    "estimate_remaining_ms",
    "extract_retry_feed_urls",
    "format_clock_duration",
    "format_short_duration",
    "load_retry_feeds",
    "render_csv",
    "render_failed_log",
    "render_json",
    "render_markdown",
    "render_report",
    "summarize",
    "write_report",
]
