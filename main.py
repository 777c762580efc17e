#!/usr/bin/env python3
"""
Blog Relevance Analyzer command line.

Runs the whole analysis in one go:
1. Check that the Ollama server answers (and pick the installed model tag)
2. Load feed URLs from the blog directory (filtered by filter-config.yaml) or
   from a failed-feed log of a previous run
3. Fetch and classify every feed with bounded concurrency, printing a live
   progress line per feed
4. Emit the report (JSON, CSV or Markdown) plus the optional failed-feed and
   performance logs

`run()` takes its streams, clock and collaborators as arguments so the whole
flow can be exercised without a network; `main()` is the console entry point.
"""

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TextIO, Tuple

from analyzer import DEFAULT_MONTH_WINDOW, DEFAULT_PARALLEL, analyze_feeds, wall_clock_ms
from blogs import download_blogs, extract_feed_urls, load_blogs
from config import FilterConfig, config, get_logger, load_filter_config
from errors import AnalyzerError, BlogDataError, ClassifierError, CliError, OperationCancelledError
from fetcher import FeedFetcher
from llm_client import OllamaClient
from models import ProgressUpdate, VerboseMessage
from reports import (
    OUTPUT_FORMATS,
    build_failed_feed_entries,
    build_feed_reports,
    build_performance_log,
    error_message,
    estimate_remaining_ms,
    format_clock_duration,
    format_short_duration,
    load_retry_feeds,
    render_failed_log,
    render_report,
    summarize,
    write_report,
)
from telemetry import init_telemetry, trace_span
from utils import CancellationToken

logger = get_logger("cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

ClientFactory = Callable[[Optional[str]], Any]

FORMAT_BY_EXTENSION = {".csv": "csv", ".md": "md", ".markdown": "md", ".json": "json"}


@dataclass
class OutputTarget:
    format: str = "json"
    destination: Optional[str] = None


def parse_output_option(value: str) -> OutputTarget:
    """Interpret ``--output``: a bare format, ``format:target`` or a plain path."""
    trimmed = (value or "").strip()
    if not trimmed:
        raise argparse.ArgumentTypeError("--output must be a non-empty string")

    lowered = trimmed.lower()
    if lowered in OUTPUT_FORMATS:
        return OutputTarget(format=lowered)

    prefix, sep, remainder = trimmed.partition(":")
    if sep:
        prefix = prefix.lower()
        remainder = remainder.strip()
        if prefix in OUTPUT_FORMATS:
            return OutputTarget(format=prefix, destination=remainder or None)
        # Single letters are Windows drive letters, slashes mean a URL-ish path
        if len(prefix) >= 2 and prefix.isalpha() and not remainder.startswith(("/", "\\")):
            raise argparse.ArgumentTypeError(f"--output format must be one of: {', '.join(OUTPUT_FORMATS)}")

    for extension, output_format in FORMAT_BY_EXTENSION.items():
        if lowered.endswith(extension):
            return OutputTarget(format=output_format, destination=trimmed)
    return OutputTarget(format="json", destination=trimmed)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}")
    return number


def _non_empty(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        raise argparse.ArgumentTypeError("must be a non-empty string")
    return trimmed


class CliArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting so `run()` controls the exit code."""

    def error(self, message):
        raise CliError(message, exit_code=EXIT_USAGE)


def build_parser() -> CliArgumentParser:
    parser = CliArgumentParser(
        prog="blog-analyzer",
        description="Find recent developer-focused AI posts across iOS blogs using a local Ollama model",
        add_help=False,
    )
    parser.add_argument('-h', '--help', action='store_true',
                        help='Show this help message')
    parser.add_argument('--max-blogs', type=_non_negative_int, metavar='N',
                        help='Limit the number of feeds processed')
    parser.add_argument('--parallel', type=_positive_int, default=DEFAULT_PARALLEL, metavar='N',
                        help=f'Maximum concurrent feeds (default: {DEFAULT_PARALLEL})')
    parser.add_argument('--months', type=_positive_int, default=DEFAULT_MONTH_WINDOW, metavar='N',
                        help=f'Analyze posts published within the last N months (default: {DEFAULT_MONTH_WINDOW})')
    parser.add_argument('--model', type=_non_empty,
                        help=f'Ollama model to use (default: {config.OLLAMA_MODEL})')
    parser.add_argument('--output', type=parse_output_option, metavar='[FORMAT:]TARGET',
                        help='Report format (json|csv|md) and optional file, e.g. csv:report.csv')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Print per-post progress and a summary of relevant posts')
    parser.add_argument('--failed-log', type=_non_empty, metavar='FILE',
                        help='Write failed feed URLs to a JSON file')
    parser.add_argument('--perf-log', type=_non_empty, metavar='FILE',
                        help='Write per-feed performance metrics to a JSON file')
    parser.add_argument('--retry-file', type=_non_empty, metavar='FILE',
                        help='Re-run using feed URLs from a failed-log JSON file')
    parser.add_argument('--blogs', type=_non_empty, metavar='FILE',
                        help=f'Blog directory JSON (default: {config.BLOGS_PATH})')
    parser.add_argument('--download', action='store_true',
                        help='Refresh the blog directory from the iOS Dev Directory before running')
    return parser


def _write(stream: TextIO, message: str) -> None:
    stream.write(f"{message}\n")
    flush = getattr(stream, "flush", None)
    if callable(flush):
        flush()


def _default_client_factory(model: Optional[str]) -> OllamaClient:
    return OllamaClient(model=model)


class _ProgressPrinter:
    """Formats progress and verbose callbacks as live output lines."""

    def __init__(self, stdout: TextIO, now: Callable[[], float], started: float, verbose: bool) -> None:
        self.stdout = stdout
        self.now = now
        self.started = started
        self.verbose = verbose

    def on_progress(self, update: ProgressUpdate) -> None:
        eta = estimate_remaining_ms(update.completed, update.total, self.now() - self.started)
        eta_text = "--" if eta is None else format_clock_duration(eta)
        label = "OK" if update.is_success else "ERROR"
        line = f"[{update.completed}/{update.total}] {label} {update.feed_url} (eta {eta_text})"
        if not update.is_success and update.error is not None:
            line += f" - {error_message(update.error)}"
        _write(self.stdout, line)

    def on_verbose(self, entry: VerboseMessage) -> None:
        _write(self.stdout, f"[VERBOSE] {entry.feed_title or entry.feed_url} - {entry.message}")


def _print_findings(reports: List[dict], stdout: TextIO) -> None:
    if not reports:
        _write(stdout, "No relevant posts detected.")
        return
    _write(stdout, "Relevant posts:")
    for report in reports:
        _write(stdout, f"- {report.get('feedTitle') or report['feedUrl']}")
        for post in report["relevantPosts"]:
            reason = f" - {post['reason']}" if post.get("reason") else ""
            _write(stdout, f"    - {post['title']} ({post['link']}){reason}")


def _load_feeds(args: argparse.Namespace, stdout: TextIO) -> Tuple[List[str], Optional[FilterConfig]]:
    if args.retry_file:
        feeds = load_retry_feeds(args.retry_file)
        if args.max_blogs is not None:
            feeds = feeds[:args.max_blogs]
        _write(stdout, f"Loaded {len(feeds)} feed URLs from retry file {args.retry_file}.")
        return feeds, None

    try:
        blogs = load_blogs(args.blogs)
    except BlogDataError as e:
        raise CliError(str(e)) from e
    try:
        filter_config = load_filter_config()
    except ValueError as e:
        raise CliError(str(e)) from e

    feeds = extract_feed_urls(
        blogs,
        max_blogs=args.max_blogs,
        languages=filter_config.allowed_languages,
        categories=filter_config.allowed_categories,
    )
    languages = ", ".join(filter_config.allowed_languages) or "all"
    categories = (
        f"{len(filter_config.allowed_categories)} categories"
        if filter_config.allowed_categories
        else "all categories"
    )
    _write(stdout, f"Loaded {len(feeds)} feed URLs (languages: {languages}; categories: {categories}).")
    return feeds, filter_config


def _emit(text: str, destination: Optional[str], stdout: TextIO, saved_message: str) -> None:
    if destination:
        write_report(text, destination)
        _write(stdout, f"{saved_message} {destination}")
    else:
        _write(stdout, text)


@trace_span("cli.run", tracer_name="cli")
async def run(
    argv: Optional[List[str]] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    now: Optional[Callable[[], float]] = None,
    client_factory: Optional[ClientFactory] = None,
    fetch_feed: Optional[Callable[..., Any]] = None,
    token: Optional[CancellationToken] = None,
) -> int:
    """Run the analyzer and return the process exit code.

    Args:
        argv: Command-line arguments without the program name
        stdout, stderr: Streams for progress/report and error output
        now: Millisecond clock used for progress, ETA and durations
        client_factory: Builds the classification client from the ``--model`` value
        fetch_feed: Feed fetch function; defaults to a shared `FeedFetcher`
        token: Cancellation token; cancelling it stops the run
    """
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    now = now or wall_clock_ms
    client_factory = client_factory or _default_client_factory
    token = token or CancellationToken()

    parser = build_parser()
    try:
        args = parser.parse_args(argv if argv is not None else sys.argv[1:])
    except CliError as e:
        _write(stderr, f"Error: {e}")
        return e.exit_code

    if args.help:
        stdout.write(parser.format_help())
        return EXIT_OK

    client = None
    try:
        client = client_factory(args.model)
        return await _run_analysis(args, client, stdout, stderr, now, fetch_feed, token)
    except OperationCancelledError as e:
        _write(stderr, f"Cancelled: {e}")
        return EXIT_INTERRUPTED
    except (CliError, ClassifierError, BlogDataError) as e:
        _write(stderr, f"Error: {e}")
        return getattr(e, "exit_code", EXIT_FAILURE)
    finally:
        close = getattr(client, "close", None)
        if close is not None:
            await close()


async def _run_analysis(
    args: argparse.Namespace,
    client: Any,
    stdout: TextIO,
    stderr: TextIO,
    now: Callable[[], float],
    fetch_feed: Optional[Callable[..., Any]],
    token: CancellationToken,
) -> int:
    if args.download:
        destination = args.blogs or config.BLOGS_PATH
        if await download_blogs(destination):
            _write(stdout, f"Blog directory refreshed at {destination}")
        else:
            _write(stderr, f"Warning: could not refresh the blog directory; using existing {destination}")

    try:
        await client.check_connection(token=token)
    except ClassifierError as e:
        raise CliError(f"Unable to connect to Ollama: {e}") from e

    feeds, filter_config = _load_feeds(args, stdout)
    if not feeds:
        _write(stdout, "No feeds to process.")
        return EXIT_OK

    exit_code = EXIT_OK
    total = len(feeds)
    started = now()
    _write(stdout, f"Processing with up to {args.parallel} concurrent requests...")
    printer = _ProgressPrinter(stdout, now, started, args.verbose)

    fetcher = None
    if fetch_feed is None:
        fetcher = FeedFetcher()
        fetch_feed = fetcher.fetch_feed
    try:
        results = await analyze_feeds(
            feeds,
            concurrency=args.parallel,
            months=args.months,
            token=token,
            on_progress=printer.on_progress,
            on_verbose=printer.on_verbose if args.verbose else None,
            clock=now,
            fetch_feed=fetch_feed,
            analysis_client=client,
        )
    finally:
        if fetcher is not None:
            await fetcher.close()

    finished = now()
    elapsed = finished - started
    summary = summarize(results)
    average = (
        f" avg {format_short_duration(summary.average_duration_ms)}"
        if summary.average_duration_ms is not None
        else ""
    )
    _write(
        stdout,
        f"Finished {total} feeds: {len(summary.succeeded)} succeeded, "
        f"{len(summary.failed)} failed in {format_clock_duration(elapsed)}{average}.",
    )

    if summary.failed:
        _write(stderr, "Failed feeds:")
        for item in summary.failed:
            _write(stderr, f"  - {item.feed_url}: {error_message(item.error)}")
        exit_code = EXIT_FAILURE

    reports = build_feed_reports(summary.succeeded)
    failed_entries = build_failed_feed_entries(summary.failed)
    if args.verbose:
        _print_findings(reports, stdout)

    target = args.output or OutputTarget()
    try:
        _emit(render_report(target.format, reports, failed_entries), target.destination, stdout, "Results written to")
    except OSError as e:
        _write(stderr, f"Error: Unable to write results: {e}")
        exit_code = EXIT_FAILURE

    if args.failed_log:
        try:
            _emit(render_failed_log(failed_entries), args.failed_log, stdout, "Failed feeds saved to")
        except OSError as e:
            _write(stderr, f"Error: Unable to write failed feed log: {e}")
            exit_code = EXIT_FAILURE

    if args.perf_log:
        payload = build_performance_log(
            results,
            generated_at_ms=finished,
            elapsed_ms=elapsed,
            parallel=args.parallel,
            months=args.months,
            source="retry-file" if args.retry_file else "directory",
            feed_count=total,
            max_blogs=args.max_blogs,
            retry_file=args.retry_file,
            filter_config=filter_config,
            summary=summary,
        )
        try:
            _emit(json.dumps(payload, indent=2), args.perf_log, stdout, "Performance log saved to")
        except OSError as e:
            _write(stderr, f"Error: Unable to write performance log: {e}")
            exit_code = EXIT_FAILURE

    return exit_code


def main():
    """Main entry point."""
    init_telemetry("blog-relevance-analyzer")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    token = CancellationToken()

    async def _main() -> int:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, token.cancel, "Interrupted by user")
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops
            pass
        return await run(sys.argv[1:], token=token)

    try:
        exit_code = asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = EXIT_INTERRUPTED
    except AnalyzerError as e:
        logger.error(f"Unexpected error: {e}")
        exit_code = EXIT_FAILURE
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
