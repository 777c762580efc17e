import json
import math

import pytest

from config import FilterConfig
from errors import CliError, FeedFetchError
from models import AnalysisResult, FeedAnalysisResult, ParsedFeed, ProgressUpdate, RelevantPost, STATUS_FULFILLED, STATUS_REJECTED
from reports import (
    build_failed_feed_entries,
    build_feed_reports,
    build_performance_log,
    estimate_remaining_ms,
    extract_retry_feed_urls,
    format_clock_duration,
    format_short_duration,
    load_retry_feeds,
    render_csv,
    render_failed_log,
    render_json,
    render_markdown,
    summarize,
    write_report,
)


def relevant_post(title="Core ML tips", link="https://one.dev/coreml", reason="Uses Core ML", tags=None):
    return RelevantPost(
        title=title,
        link=link,
        published_at="2025-11-20T00:00:00.000Z",
        analysis=AnalysisResult(relevant=True, confidence=0.9, reason=reason, tags=tags or ["core ml"]),
    )


def sample_results():
    return [
        FeedAnalysisResult(
            feed_url="https://one.dev/feed",
            feed=ParsedFeed(title="One"),
            duration_ms=100.0,
            analyzed_items=2,
            relevant_posts=[relevant_post()],
        ),
        FeedAnalysisResult(
            feed_url="https://quiet.dev/feed",
            feed=ParsedFeed(title="Quiet"),
            duration_ms=300.0,
            analyzed_items=1,
            relevant_posts=[],
        ),
        FeedAnalysisResult(
            feed_url="https://broken.dev/feed",
            status=STATUS_REJECTED,
            error=FeedFetchError("HTTP 500 Internal Server Error", "http-error", status=500),
            duration_ms=50.0,
        ),
    ]


def test_summarize_splits_and_averages_successful_durations():
    summary = summarize(sample_results())
    assert [r.feed_url for r in summary.succeeded] == ["https://one.dev/feed", "https://quiet.dev/feed"]
    assert [r.feed_url for r in summary.failed] == ["https://broken.dev/feed"]
    assert summary.average_duration_ms == 200.0


def test_success_flag_follows_status():
    fulfilled, quiet, rejected = sample_results()
    assert fulfilled.is_success and quiet.is_success
    assert not rejected.is_success
    assert ProgressUpdate(feed_url="a", completed=1, total=2, status=STATUS_FULFILLED).is_success
    assert not ProgressUpdate(feed_url="b", completed=2, total=2, status=STATUS_REJECTED).is_success


def test_summarize_ignores_non_finite_durations():
    results = [FeedAnalysisResult(feed_url="a", feed=ParsedFeed(), duration_ms=math.nan, relevant_posts=[])]
    assert summarize(results).average_duration_ms is None


def test_feed_reports_only_include_feeds_with_relevant_posts():
    reports = build_feed_reports(summarize(sample_results()).succeeded)

    assert reports == [{
        "feedUrl": "https://one.dev/feed",
        "feedTitle": "One",
        "relevantPosts": [{
            "title": "Core ML tips",
            "link": "https://one.dev/coreml",
            "publishedAt": "2025-11-20T00:00:00.000Z",
            "confidence": 0.9,
            "reason": "Uses Core ML",
            "tags": ["core ml"],
        }],
    }]


def test_render_json_drops_missing_fields_and_lists_failures():
    results = sample_results()
    summary = summarize(results)
    reports = build_feed_reports(summary.succeeded)
    reports[0]["relevantPosts"][0]["reason"] = None

    payload = json.loads(render_json(reports, build_failed_feed_entries(summary.failed)))

    assert "reason" not in payload["feeds"][0]["relevantPosts"][0]
    assert payload["failedFeeds"] == [
        {"feedUrl": "https://broken.dev/feed", "error": "HTTP 500 Internal Server Error"},
    ]


def test_render_csv_quotes_fields():
    reports = build_feed_reports([
        FeedAnalysisResult(
            feed_url="https://one.dev/feed",
            feed=ParsedFeed(title="One, Two"),
            relevant_posts=[relevant_post(tags=["llm", "agents"], reason='Says "agents"')],
        ),
    ])

    lines = render_csv(reports).split("\n")

    assert lines[0] == "feed_title,feed_url,post_title,post_link,published_at,confidence,tags,reason"
    assert lines[1] == (
        '"One, Two",https://one.dev/feed,Core ML tips,https://one.dev/coreml,'
        '2025-11-20T00:00:00.000Z,0.9,llm;agents,"Says ""agents"""'
    )
    assert len(lines) == 2


def test_render_markdown_checklist():
    reports = build_feed_reports(summarize(sample_results()).succeeded)
    assert render_markdown(reports) == (
        "# iOS Blogs AI List\n"
        "\n"
        "## One\n"
        "\n"
        "- [ ] [Core ML tips](https://one.dev/coreml)"
    )


def test_render_markdown_without_findings():
    assert render_markdown([]).endswith("_No relevant posts detected._")


def test_write_report_creates_directories(tmp_path):
    destination = tmp_path / "out" / "nested" / "report.md"
    write_report("# Title", str(destination))
    assert destination.read_text(encoding="utf-8") == "# Title\n"


def test_performance_log_shape():
    results = sample_results()
    payload = build_performance_log(
        results,
        generated_at_ms=1764892800000.0,
        elapsed_ms=450.0,
        parallel=2,
        months=3,
        source="directory",
        feed_count=3,
        filter_config=FilterConfig(allowed_languages=["en"], allowed_categories=None),
    )

    assert payload["generatedAt"] == "2025-12-05T00:00:00.000Z"
    assert payload["parameters"] == {
        "parallel": 2,
        "months": 3,
        "source": "directory",
        "feedCount": 3,
        "filters": {"languages": ["en"]},
    }
    assert payload["summary"] == {
        "totalFeeds": 3,
        "succeeded": 2,
        "failed": 1,
        "elapsedMs": 450.0,
        "averageDurationMs": 200.0,
    }
    assert payload["feeds"][0]["relevantPostCount"] == 1
    assert payload["feeds"][2] == {
        "feedUrl": "https://broken.dev/feed",
        "status": "rejected",
        "durationMs": 50.0,
        "relevantPostCount": 0,
        "error": "HTTP 500 Internal Server Error",
    }


def test_failed_log_round_trips_through_retry_loader(tmp_path):
    entries = build_failed_feed_entries(summarize(sample_results()).failed)
    path = tmp_path / "failed.json"
    write_report(render_failed_log(entries), str(path))

    assert load_retry_feeds(str(path)) == ["https://broken.dev/feed"]


def test_extract_retry_feed_urls_accepts_several_shapes():
    payload = {
        "failedFeeds": [{"feedUrl": " https://a.dev/feed "}, "https://b.dev/feed", {"error": "no url"}],
        "feeds": [{"feedUrl": "https://a.dev/feed"}, {"feedUrl": "https://c.dev/feed"}],
    }
    assert extract_retry_feed_urls(payload) == ["https://a.dev/feed", "https://b.dev/feed", "https://c.dev/feed"]
    assert extract_retry_feed_urls(["https://x.dev/feed", 3]) == ["https://x.dev/feed"]
    assert extract_retry_feed_urls("nope") == []


@pytest.mark.parametrize(
    "contents, message",
    [
        ("{oops", "not valid JSON"),
        ('{"failedFeeds": []}', "did not contain any feed URLs"),
    ],
)
def test_load_retry_feeds_errors(tmp_path, contents, message):
    path = tmp_path / "failed.json"
    path.write_text(contents, encoding="utf-8")
    with pytest.raises(CliError, match=message):
        load_retry_feeds(str(path))


def test_load_retry_feeds_missing_file(tmp_path):
    with pytest.raises(CliError, match="Unable to read retry file"):
        load_retry_feeds(str(tmp_path / "missing.json"))


@pytest.mark.parametrize(
    "ms, expected",
    [(0, "00:00"), (1499, "00:01"), (61_000, "01:01"), (3_600_000, "60:00"), (math.nan, "--:--")],
)
def test_format_clock_duration(ms, expected):
    assert format_clock_duration(ms) == expected


@pytest.mark.parametrize(
    "ms, expected",
    [(250, "250ms"), (1500, "1.5s"), (12_300, "12s"), (125_000, "2m 05s"), (None, "--")],
)
def test_format_short_duration(ms, expected):
    assert format_short_duration(ms) == expected


def test_estimate_remaining_ms():
    assert estimate_remaining_ms(0, 10, 1000) is None
    assert estimate_remaining_ms(2, 10, 0) is None
    assert estimate_remaining_ms(2, 10, 1000) == 4000
    assert estimate_remaining_ms(10, 10, 1000) == 0
