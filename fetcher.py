#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

Downloads a feed with aiohttp, parses it with feedparser and normalizes the
entries into `FeedItem`s the orchestrator can filter and classify. Failures are
reported as `FeedFetchError` with a kind distinguishing invalid URLs,
timeouts, HTTP errors, transport errors and unparseable documents.
"""

from asyncio import TimeoutError, get_running_loop, wait_for
from calendar import timegm
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse
import re

import feedparser
from aiohttp import ClientError, ClientSession
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import FeedFetchError
from models import FeedItem, HttpResponse, ParsedFeed
from telemetry import trace_span
from utils import CancellationToken, RetryHelper

logger = get_logger("fetcher")

Transport = Callable[[str, Dict[str, str]], Awaitable[HttpResponse]]

# Date fields probed in priority order (feedparser exposes *_parsed struct_time variants)
DATE_FIELDS = (
    'published',
    'updated',
    'created',
    'modified',
    'date',
    'pubDate',
    'pubdate',
    'issued',
)

CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d",
)

WHITESPACE_PATTERN = re.compile(r'\s+')


@dataclass
class FetchFeedOptions:
    """Per-call overrides for `FeedFetcher.fetch_feed`."""
    timeout: Optional[float] = None
    user_agent: Optional[str] = None


def format_iso8601(dt: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with millisecond precision and a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def html_to_text(html_content: Optional[str]) -> Optional[str]:
    """Reduce an HTML fragment to a single line of plain text for classification."""
    if not html_content:
        return None
    text = BeautifulSoup(html_content, 'html.parser').get_text(" ", strip=True)
    text = WHITESPACE_PATTERN.sub(" ", text).strip()
    return text or None


class FeedFetcher:
    """Fetch and normalize feeds over a shared aiohttp session.

    A custom ``transport`` (an async callable returning `HttpResponse`) can be
    supplied instead of the aiohttp session, which is how the tests drive it.
    """

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        transport: Optional[Transport] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self._session = session
        self._owns_session = False
        self._transport = transport or self._aiohttp_get
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = timeout if timeout is not None else config.FEED_HTTP_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else config.FEED_MAX_RETRIES
        self.retry_helper = RetryHelper(
            max_retries=self.max_retries,
            base_delay=retry_delay if retry_delay is not None else config.FEED_RETRY_DELAY_BASE,
        )

    async def __aenter__(self) -> "FeedFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the aiohttp session if this fetcher created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def _aiohttp_get(self, url: str, headers: Dict[str, str]) -> HttpResponse:
        session = await self._get_session()
        async with session.get(url, headers=headers) as response:
            body = await response.read()
            return HttpResponse(status=response.status, body=body, reason=response.reason or "")

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, options=None, token=None: {"feed.url": url},
        attr_from_result=lambda feed: {"feed.items": len(feed.items)},
    )
    async def fetch_feed(
        self,
        url: str,
        options: Optional[FetchFeedOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> ParsedFeed:
        """Fetch and parse a single feed.

        Raises:
            FeedFetchError: with kind invalid-url, timeout, http-error, fetch-error or parse-error.
        """
        self._validate_url(url)
        options = options or FetchFeedOptions()
        timeout = options.timeout if options.timeout is not None else self.timeout
        headers = {
            "User-Agent": options.user_agent or self.user_agent,
            "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5",
        }

        response = await self._download(url, headers, timeout, token)
        if not response.ok:
            logger.info(f"Feed {url} responded with HTTP {response.status}")
            raise FeedFetchError(
                f"Feed responded with HTTP {response.status} for {url}",
                "http-error",
                status=response.status,
            )

        loop = get_running_loop()
        parsed = await loop.run_in_executor(
            None,
            partial(feedparser.parse, response.body, sanitize_html=True, resolve_relative_uris=True),
        )
        return self._build_feed(url, parsed)

    def _validate_url(self, url: str) -> None:
        if not isinstance(url, str) or not url.strip():
            raise FeedFetchError(f"Invalid feed URL: {url!r}", "invalid-url")
        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https"):
            if not parsed.scheme:
                raise FeedFetchError(f"Invalid feed URL: {url}", "invalid-url")
            raise FeedFetchError(f"Unsupported protocol for feed URL: {url}", "invalid-url")
        if not parsed.netloc:
            raise FeedFetchError(f"Invalid feed URL: {url}", "invalid-url")

    async def _download(
        self,
        url: str,
        headers: Dict[str, str],
        timeout: float,
        token: Optional[CancellationToken],
    ) -> HttpResponse:
        """Run the transport with a timeout, retrying transport failures with backoff."""
        last_error: Optional[FeedFetchError] = None
        last_cause: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            if token is not None:
                token.raise_if_cancelled()
            request = wait_for(self._transport(url, headers), timeout=timeout)
            try:
                if token is not None:
                    return await token.wrap(request)
                return await request
            except TimeoutError as e:
                if token is not None and token.cancelled:
                    raise
                last_cause = e
                last_error = FeedFetchError(f"Fetching feed timed out after {timeout}s: {url}", "timeout")
            except (ClientError, OSError) as e:
                if token is not None and token.cancelled:
                    raise
                last_cause = e
                last_error = FeedFetchError(
                    f"Failed to fetch feed: {url} ({self._format_client_error(e)})",
                    "fetch-error",
                )

            if attempt < self.max_retries:
                logger.warning(
                    "Retry %d/%d for %s due to error: %s",
                    attempt + 1,
                    self.max_retries,
                    url,
                    last_error,
                )
                await self.retry_helper.sleep_for_attempt(attempt, token)

        raise last_error from last_cause

    def _format_client_error(self, error: BaseException) -> str:
        """Describe aiohttp/OS errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        errno = getattr(error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    def _build_feed(self, url: str, parsed: Any) -> ParsedFeed:
        """Turn a feedparser result into a `ParsedFeed`, or raise a parse-error."""
        entries = parsed.get('entries') or []
        if not entries and (parsed.get('bozo') or not parsed.get('version')):
            cause = parsed.get('bozo_exception')
            detail = f" ({cause})" if cause else ""
            raise FeedFetchError(f"Failed to parse feed contents from {url}{detail}", "parse-error")

        if parsed.get('bozo'):
            logger.debug(f"Feed parsing warning for {url}: {parsed.get('bozo_exception')}")

        feed_meta = parsed.get('feed') or {}
        items: List[FeedItem] = []
        for entry in entries:
            item = self._map_entry(entry)
            if item is not None:
                items.append(item)

        logger.debug(f"Parsed {len(items)} usable items out of {len(entries)} entries from {url}")
        return ParsedFeed(
            title=self._first_string(feed_meta.get('title')),
            description=self._first_string(feed_meta.get('subtitle'), feed_meta.get('description')),
            items=items,
        )

    def _map_entry(self, entry: Any) -> Optional[FeedItem]:
        title = self._first_string(self._get_entry_value(entry, 'title'))
        link = self._first_string(self._get_entry_value(entry, 'link'))
        if not title or not link:
            return None

        published = self.parse_published(entry)
        return FeedItem(
            title=title,
            link=link,
            description=self.extract_description(entry),
            published_at=format_iso8601(published) if published else None,
        )

    def extract_description(self, entry: Any) -> Optional[str]:
        """Pick the first non-empty of content, summary and description as plain text."""
        candidates: List[Optional[str]] = []
        content = self._get_entry_value(entry, 'content')
        if isinstance(content, list):
            for content_item in content:
                value = content_item.get('value') if hasattr(content_item, 'get') else None
                if isinstance(value, str):
                    candidates.append(value)
        candidates.append(self._get_entry_value(entry, 'summary'))
        candidates.append(self._get_entry_value(entry, 'description'))

        for candidate in candidates:
            if isinstance(candidate, str):
                text = html_to_text(candidate)
                if text:
                    return text
        return None

    def parse_published(self, entry: Any) -> Optional[datetime]:
        """Return the entry's publication date in UTC, or None if nothing parses.

        Undated posts are never stamped with the current time, so they stay
        outside the recency window.
        """
        for field_name in DATE_FIELDS:
            for candidate in (f"{field_name}_parsed", field_name):
                dt = self._date_value_to_datetime(self._get_entry_value(entry, candidate))
                if dt is not None:
                    return dt
        return None

    def _get_entry_value(self, entry: Any, field_name: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field_name or entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            value = getter(field_name)
            if value is not None:
                return value
        try:
            return getattr(entry, field_name)
        except AttributeError:
            return None

    def _date_value_to_datetime(self, value: Any) -> Optional[datetime]:
        """Convert assorted date representations into an aware UTC datetime."""
        if value in (None, ''):
            return None

        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

        if isinstance(value, (list, tuple)):
            # feedparser struct_time values are already UTC
            try:
                return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value.strip())

        return None

    def _parse_date_string(self, date_str: str) -> Optional[datetime]:
        if not date_str:
            return None
        for parser in (self._parse_with_feedparser, self._parse_with_email_utils, self._parse_with_custom_formats):
            dt = parser(date_str)
            if dt is not None:
                return dt
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[datetime]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
        except (ValueError, TypeError, AttributeError, OverflowError, OSError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[datetime]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError, OverflowError):
            return None
        if dt is None:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    def _parse_with_custom_formats(self, date_str: str) -> Optional[datetime]:
        for fmt in CUSTOM_DATE_FORMATS:
            try:
                dt = datetime.strptime(date_str, fmt)
            except (ValueError, TypeError):
                continue
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        return None

    def _first_string(self, *values: Any) -> Optional[str]:
        for value in values:
            if isinstance(value, str):
                trimmed = value.strip()
                if trimmed:
                    return trimmed
        return None


async def fetch_feed(
    url: str,
    options: Optional[FetchFeedOptions] = None,
    token: Optional[CancellationToken] = None,
    *,
    transport: Optional[Transport] = None,
) -> ParsedFeed:
    """Fetch one feed with a short-lived fetcher (and session)."""
    options = options or FetchFeedOptions()
    async with FeedFetcher(transport=transport, user_agent=options.user_agent, timeout=options.timeout) as fetcher:
        return await fetcher.fetch_feed(url, token=token)


__all__ = ["FeedFetcher", "FetchFeedOptions", "fetch_feed", "format_iso8601", "html_to_text"]
