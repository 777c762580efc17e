import csv
import io
import json
from datetime import datetime, timezone

import pytest

import main
from config import config
from errors import ClassifierUnavailableError, FeedFetchError
from main import OutputTarget, parse_output_option, run
from models import AnalysisResult, FeedItem, ParsedFeed
from utils import CancellationToken

NOW_MS = datetime(2025, 12, 5, tzinfo=timezone.utc).timestamp() * 1000.0

DIRECTORY = [
    {
        "language": "en",
        "title": "English",
        "categories": [
            {
                "title": "Indie",
                "slug": "indie",
                "sites": [
                    {"title": "One", "author": "A", "site_url": "https://one.dev", "feed_url": "https://one.dev/feed"},
                    {"title": "Two", "author": "B", "site_url": "https://two.dev", "feed_url": "https://two.dev/feed"},
                ],
            },
        ],
    },
    {
        "language": "de",
        "title": "Deutsch",
        "categories": [
            {
                "title": "Indie",
                "slug": "indie",
                "sites": [
                    {"title": "Drei", "author": "C", "site_url": "https://drei.de", "feed_url": "https://drei.de/feed"},
                ],
            },
        ],
    },
]

FEEDS = {
    "https://one.dev/feed": ParsedFeed(
        title="Feed One",
        items=[
            FeedItem(
                title="Core ML tips",
                link="https://one.dev/coreml",
                description="Running Core ML models on device",
                published_at="2025-11-20T00:00:00.000Z",
            ),
            FeedItem(
                title="Old news",
                link="https://one.dev/old",
                description="Running Core ML models in 2019",
                published_at="2019-06-01T00:00:00.000Z",
            ),
        ],
    ),
}


class FakeClient:
    def __init__(self, connection_error=None):
        self.connection_error = connection_error
        self.analyzed = []
        self.closed = False

    async def check_connection(self, token=None):
        if self.connection_error is not None:
            raise self.connection_error
        return True

    async def analyze(self, text, graceful_degradation=False, token=None):
        self.analyzed.append(text)
        return AnalysisResult(relevant=True, confidence=0.8, reason="Covers Core ML", tags=["core ml"])

    async def close(self):
        self.closed = True


async def fake_fetch(url, options=None, token=None):
    if url in FEEDS:
        return FEEDS[url]
    raise FeedFetchError("HTTP 500 Internal Server Error", "http-error", status=500)


@pytest.fixture
def blogs_path(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "FILTER_CONFIG_PATH", str(tmp_path / "missing-filter-config.yaml"))
    path = tmp_path / "blogs.json"
    path.write_text(json.dumps(DIRECTORY), encoding="utf-8")
    return str(path)


async def invoke(argv, client=None, token=None):
    stdout, stderr = io.StringIO(), io.StringIO()
    client = client or FakeClient()
    code = await run(
        argv,
        stdout=stdout,
        stderr=stderr,
        now=lambda: NOW_MS,
        client_factory=lambda model: client,
        fetch_feed=fake_fetch,
        token=token,
    )
    return code, stdout.getvalue(), stderr.getvalue(), client


@pytest.mark.asyncio
async def test_full_run_writes_json_report_and_reports_failures(blogs_path, tmp_path):
    report = tmp_path / "out" / "report.json"

    code, out, err, client = await invoke(["--blogs", blogs_path, "--parallel", "1", "--output", f"json:{report}"])

    assert code == 1
    assert "Loaded 2 feed URLs (languages: en; categories: all categories)." in out
    assert "Processing with up to 1 concurrent requests..." in out
    assert "[1/2] OK https://one.dev/feed (eta --)" in out
    assert "[2/2] ERROR https://two.dev/feed (eta --) - HTTP 500 Internal Server Error" in out
    assert "Finished 2 feeds: 1 succeeded, 1 failed in 00:00 avg 0ms." in out
    assert f"Results written to {report}" in out
    assert "Failed feeds:\n  - https://two.dev/feed: HTTP 500 Internal Server Error" in err
    assert client.analyzed == ["Running Core ML models on device"]
    assert client.closed

    payload = json.loads(report.read_text(encoding="utf-8"))
    assert payload["feeds"][0]["feedTitle"] == "Feed One"
    assert [p["link"] for p in payload["feeds"][0]["relevantPosts"]] == ["https://one.dev/coreml"]
    assert payload["failedFeeds"] == [
        {"feedUrl": "https://two.dev/feed", "error": "HTTP 500 Internal Server Error"},
    ]


@pytest.mark.asyncio
async def test_markdown_report_on_stdout_with_verbose_findings(blogs_path):
    code, out, _, _ = await invoke(["--blogs", blogs_path, "--max-blogs", "1", "--output", "md", "-v"])

    assert code == 0
    assert "[VERBOSE] Feed One - 1 of 2 posts published on or after 2025-09-05" in out
    assert "[VERBOSE] Feed One - Analyzing post: Core ML tips" in out
    assert "Relevant posts:\n- Feed One\n    - Core ML tips (https://one.dev/coreml) - Covers Core ML" in out
    assert out.rstrip("\n").endswith("# iOS Blogs AI List\n\n## Feed One\n\n- [ ] [Core ML tips](https://one.dev/coreml)")


@pytest.mark.asyncio
async def test_failed_and_perf_logs_feed_a_retry_run(blogs_path, tmp_path):
    failed_log = tmp_path / "failed.json"
    perf_log = tmp_path / "perf.json"

    code, out, _, _ = await invoke([
        "--blogs", blogs_path,
        "--failed-log", str(failed_log),
        "--perf-log", str(perf_log),
    ])

    assert code == 1
    assert f"Failed feeds saved to {failed_log}" in out
    assert f"Performance log saved to {perf_log}" in out
    assert json.loads(failed_log.read_text(encoding="utf-8"))["failedFeeds"][0]["feedUrl"] == "https://two.dev/feed"
    perf = json.loads(perf_log.read_text(encoding="utf-8"))
    assert perf["parameters"]["source"] == "directory"
    assert perf["summary"]["failed"] == 1

    csv_path = tmp_path / "retry.csv"
    code, out, _, _ = await invoke(["--retry-file", str(failed_log), "--output", f"csv:{csv_path}"])

    assert code == 1
    assert f"Loaded 1 feed URLs from retry file {failed_log}." in out
    assert "[1/1] ERROR https://two.dev/feed" in out
    rows = list(csv.reader(csv_path.read_text(encoding="utf-8").splitlines()))
    assert rows == [["feed_title", "feed_url", "post_title", "post_link", "published_at", "confidence", "tags", "reason"]]


@pytest.mark.asyncio
async def test_no_feeds_to_process(blogs_path):
    code, out, _, _ = await invoke(["--blogs", blogs_path, "--max-blogs", "0"])
    assert code == 0
    assert "No feeds to process." in out


@pytest.mark.asyncio
async def test_filter_config_selects_languages(blogs_path, tmp_path, monkeypatch):
    filter_path = tmp_path / "filter-config.yaml"
    filter_path.write_text("allowed_languages: [de]\nallowed_categories: [indie]\n", encoding="utf-8")
    monkeypatch.setattr(config, "FILTER_CONFIG_PATH", str(filter_path))

    code, out, _, _ = await invoke(["--blogs", blogs_path])

    assert code == 1
    assert "Loaded 1 feed URLs (languages: de; categories: 1 categories)." in out
    assert "[1/1] ERROR https://drei.de/feed" in out


@pytest.mark.asyncio
async def test_connection_failure_is_reported(blogs_path):
    client = FakeClient(connection_error=ClassifierUnavailableError("connection refused"))

    code, out, err, _ = await invoke(["--blogs", blogs_path], client=client)

    assert code == 1
    assert "Error: Unable to connect to Ollama: connection refused" in err
    assert "Processing" not in out
    assert client.closed


@pytest.mark.asyncio
async def test_missing_blogs_file_is_reported(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "FILTER_CONFIG_PATH", str(tmp_path / "none.yaml"))
    code, _, err, _ = await invoke(["--blogs", str(tmp_path / "missing.json")])
    assert code == 1
    assert "Error: Unable to read blogs file at" in err


@pytest.mark.asyncio
async def test_cancelled_run_exits_with_interrupt_code(blogs_path):
    token = CancellationToken()
    token.cancel("Interrupted by user")

    code, _, err, client = await invoke(["--blogs", blogs_path], token=token)

    assert code == 130
    assert "Cancelled: Interrupted by user" in err
    assert client.analyzed == []


@pytest.mark.asyncio
async def test_help_is_printed_without_contacting_ollama():
    def factory(model):
        raise AssertionError("client should not be created for --help")

    stdout = io.StringIO()
    code = await run(["--help"], stdout=stdout, stderr=io.StringIO(), client_factory=factory)

    assert code == 0
    assert stdout.getvalue().startswith("usage: blog-analyzer")
    assert "--retry-file" in stdout.getvalue()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "argv, message",
    [
        (["--parallel", "0"], "--parallel"),
        (["--months", "soon"], "--months"),
        (["--output", "xml:report.xml"], "--output"),
        (["--bogus"], "unrecognized arguments"),
    ],
)
async def test_invalid_arguments_exit_with_usage_code(argv, message):
    stderr = io.StringIO()
    code = await run(argv, stdout=io.StringIO(), stderr=stderr, client_factory=lambda model: FakeClient())
    assert code == 2
    assert stderr.getvalue().startswith("Error: ")
    assert message in stderr.getvalue()


@pytest.mark.parametrize(
    "value, expected",
    [
        ("csv", OutputTarget(format="csv")),
        ("MD", OutputTarget(format="md")),
        ("csv:out/report.csv", OutputTarget(format="csv", destination="out/report.csv")),
        ("json:", OutputTarget(format="json")),
        ("report.md", OutputTarget(format="md", destination="report.md")),
        ("results.txt", OutputTarget(format="json", destination="results.txt")),
        ("C:\\reports\\ai.csv", OutputTarget(format="csv", destination="C:\\reports\\ai.csv")),
    ],
)
def test_parse_output_option(value, expected):
    assert parse_output_option(value) == expected


def test_exit_codes():
    assert (main.EXIT_OK, main.EXIT_FAILURE, main.EXIT_USAGE, main.EXIT_INTERRUPTED) == (0, 1, 2, 130)
