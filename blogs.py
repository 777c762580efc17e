#!/usr/bin/env python3
"""
Blog directory loading.

The directory is the community-maintained iOS Dev Directory `blogs.json`: a
list of language groups, each holding categories of sites with their feed
URLs. It is validated with pydantic and flattened into the list of feed URLs
handed to the analyzer.
"""

import json
import os
import tempfile
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, TypeAdapter, ValidationError, field_validator

from config import config, get_logger
from errors import BlogDataError
from models import HttpResponse

logger = get_logger("blogs")

Transport = Callable[[str, Dict[str, str]], Awaitable[HttpResponse]]


def _normalize_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if value and "://" not in value:
        value = f"https://{value.lstrip('/')}"
    return value


class BlogSite(BaseModel):
    title: str
    author: str
    site_url: str
    feed_url: str
    bluesky_url: Optional[str] = None
    github_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    mastodon_url: Optional[str] = None
    microblog_url: Optional[str] = None
    threads_url: Optional[str] = None
    twitter_url: Optional[str] = None
    weibo_url: Optional[str] = None

    @field_validator(
        "site_url", "feed_url", "bluesky_url", "github_url", "linkedin_url",
        "mastodon_url", "microblog_url", "threads_url", "twitter_url", "weibo_url",
    )
    @classmethod
    def add_missing_scheme(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_url(value)


class BlogCategory(BaseModel):
    title: str
    slug: str
    description: str = ""
    sites: List[BlogSite]


class BlogLanguageGroup(BaseModel):
    language: str
    title: str
    categories: List[BlogCategory]


BlogsDirectory = List[BlogLanguageGroup]

_directory_adapter = TypeAdapter(BlogsDirectory)


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for detail in error.errors()[:5]:
        location = "/" + "/".join(str(p) for p in detail.get("loc", ()))
        parts.append(f"{location} {detail.get('msg', 'is invalid')}")
    if error.error_count() > 5:
        parts.append(f"and {error.error_count() - 5} more")
    return "; ".join(parts) or "Blogs file failed validation"


def parse_blogs(raw: str, source: str = "<memory>") -> BlogsDirectory:
    """Parse and validate a blog directory document."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise BlogDataError(f"Unable to parse blogs file at {source}: {e}", "parse-error") from e
    try:
        return _directory_adapter.validate_python(data)
    except ValidationError as e:
        raise BlogDataError(_format_validation_error(e), "validation-error") from e


def load_blogs(file_path: Optional[str] = None) -> BlogsDirectory:
    """Read the blog directory from disk.

    Raises:
        BlogDataError: kind ``read-error``, ``parse-error`` or ``validation-error``.
    """
    file_path = file_path or config.BLOGS_PATH
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise BlogDataError(f"Unable to read blogs file at {file_path}", "read-error") from e
    blogs = parse_blogs(raw, file_path)
    logger.debug(f"Loaded {len(blogs)} language groups from {file_path}")
    return blogs


def _normalized_filter(values: Optional[Iterable[str]]) -> Optional[set]:
    if values is None:
        return None
    normalized = {v.strip().lower() for v in values if isinstance(v, str) and v.strip()}
    return normalized or None


def extract_feed_urls(
    blogs: BlogsDirectory,
    max_blogs: Optional[int] = None,
    languages: Optional[Iterable[str]] = None,
    categories: Optional[Iterable[str]] = None,
) -> List[str]:
    """Flatten the directory into feed URLs, in directory order.

    Languages are matched on the group's language code and categories on
    their slug, both case-insensitively. ``None`` means no filtering.
    """
    if max_blogs is not None:
        if isinstance(max_blogs, bool) or not isinstance(max_blogs, int) or max_blogs < 0:
            raise ValueError("max_blogs must be a non-negative integer when provided")
        if max_blogs == 0:
            return []

    allowed_languages = _normalized_filter(languages)
    allowed_categories = _normalized_filter(categories)

    feeds: List[str] = []
    for group in blogs:
        if allowed_languages is not None and group.language.strip().lower() not in allowed_languages:
            continue
        for category in group.categories:
            if allowed_categories is not None and category.slug.strip().lower() not in allowed_categories:
                continue
            for site in category.sites:
                feeds.append(site.feed_url)
                if max_blogs is not None and len(feeds) >= max_blogs:
                    return feeds
    return feeds


async def _aiohttp_get(url: str, headers: Dict[str, str]) -> HttpResponse:
    timeout = ClientTimeout(total=config.FEED_HTTP_TIMEOUT * 3)
    async with ClientSession(timeout=timeout) as session:
        async with session.get(url, headers=headers) as response:
            body = await response.read()
            return HttpResponse(status=response.status, body=body, reason=response.reason or "")


def _write_atomic(destination: str, contents: str) -> None:
    directory = os.path.dirname(os.path.abspath(destination))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".blogs-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(contents)
        os.replace(tmp_path, destination)
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


async def download_blogs(
    destination: Optional[str] = None,
    url: Optional[str] = None,
    transport: Optional[Transport] = None,
) -> bool:
    """Refresh the local directory from `url`.

    The download is validated before it replaces anything. On failure an
    existing file is kept and False is returned; without a file to fall back
    on the failure is raised as `BlogDataError`.
    """
    destination = destination or config.BLOGS_PATH
    url = url or config.BLOGS_URL
    transport = transport or _aiohttp_get
    headers = {"User-Agent": config.USER_AGENT, "Accept": "application/json"}

    try:
        try:
            response = await transport(url, headers)
        except (ClientError, OSError) as e:
            raise BlogDataError(f"Unable to download blogs from {url}: {e}", "read-error") from e
        if not response.ok:
            raise BlogDataError(
                f"Unable to download blogs from {url}: HTTP {response.status} {response.reason}".rstrip(),
                "read-error",
            )
        contents = response.text()
        blogs = parse_blogs(contents, url)
    except BlogDataError as e:
        if os.path.exists(destination):
            logger.warning(f"{e}; keeping existing {destination}")
            return False
        raise

    try:
        _write_atomic(destination, contents)
    except OSError as e:
        raise BlogDataError(f"Unable to write blogs file at {destination}: {e}", "read-error") from e
    logger.info(f"Downloaded {len(blogs)} language groups from {url} to {destination}")
    return True


__all__ = [
    "BlogSite",
    "BlogCategory",
    "BlogLanguageGroup",
    "BlogsDirectory",
    "download_blogs",
    "extract_feed_urls",
    "load_blogs",
    "parse_blogs",
]
