import json

import pytest

from blogs import download_blogs, extract_feed_urls, load_blogs, parse_blogs
from errors import BlogDataError
from models import HttpResponse

DIRECTORY = [
    {
        "language": "en",
        "title": "English",
        "categories": [
            {
                "title": "Indie",
                "slug": "indie",
                "description": "Independent developers",
                "sites": [
                    {"title": "One", "author": "A", "site_url": "https://one.dev", "feed_url": "https://one.dev/feed"},
                    {"title": "Two", "author": "B", "site_url": "two.dev", "feed_url": "two.dev/rss.xml",
                     "mastodon_url": "https://mastodon.social/@two"},
                ],
            },
            {
                "title": "Companies",
                "slug": "companies",
                "description": "Company blogs",
                "sites": [
                    {"title": "Three", "author": "C", "site_url": "https://three.com", "feed_url": "https://three.com/atom"},
                ],
            },
        ],
    },
    {
        "language": "es",
        "title": "Español",
        "categories": [
            {
                "title": "Indie",
                "slug": "indie",
                "description": "",
                "sites": [
                    {"title": "Cuatro", "author": "D", "site_url": "https://cuatro.es", "feed_url": "https://cuatro.es/feed"},
                ],
            },
        ],
    },
]


@pytest.fixture
def blogs_file(tmp_path):
    path = tmp_path / "blogs.json"
    path.write_text(json.dumps(DIRECTORY), encoding="utf-8")
    return path


def test_load_blogs_validates_and_normalizes_urls(blogs_file):
    blogs = load_blogs(str(blogs_file))

    assert [g.language for g in blogs] == ["en", "es"]
    two = blogs[0].categories[0].sites[1]
    assert two.site_url == "https://two.dev"
    assert two.feed_url == "https://two.dev/rss.xml"
    assert two.mastodon_url == "https://mastodon.social/@two"


def test_load_blogs_missing_file_is_read_error(tmp_path):
    with pytest.raises(BlogDataError) as excinfo:
        load_blogs(str(tmp_path / "missing.json"))
    assert excinfo.value.kind == "read-error"


def test_load_blogs_bad_json_is_parse_error(tmp_path):
    path = tmp_path / "blogs.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(BlogDataError) as excinfo:
        load_blogs(str(path))
    assert excinfo.value.kind == "parse-error"


def test_parse_blogs_schema_mismatch_is_validation_error():
    with pytest.raises(BlogDataError) as excinfo:
        parse_blogs(json.dumps([{"language": "en", "title": "English", "categories": [{"slug": "x"}]}]))
    assert excinfo.value.kind == "validation-error"
    assert "categories" in str(excinfo.value)


def test_extract_feed_urls_in_directory_order(blogs_file):
    blogs = load_blogs(str(blogs_file))

    assert extract_feed_urls(blogs) == [
        "https://one.dev/feed",
        "https://two.dev/rss.xml",
        "https://three.com/atom",
        "https://cuatro.es/feed",
    ]


def test_extract_feed_urls_filters_language_and_category(blogs_file):
    blogs = load_blogs(str(blogs_file))

    assert extract_feed_urls(blogs, languages=["EN"]) == [
        "https://one.dev/feed",
        "https://two.dev/rss.xml",
        "https://three.com/atom",
    ]
    assert extract_feed_urls(blogs, languages=["en", "es"], categories=["Indie"]) == [
        "https://one.dev/feed",
        "https://two.dev/rss.xml",
        "https://cuatro.es/feed",
    ]


def test_extract_feed_urls_max_blogs(blogs_file):
    blogs = load_blogs(str(blogs_file))

    assert extract_feed_urls(blogs, max_blogs=2) == ["https://one.dev/feed", "https://two.dev/rss.xml"]
    assert extract_feed_urls(blogs, max_blogs=0) == []
    with pytest.raises(ValueError):
        extract_feed_urls(blogs, max_blogs=-1)


@pytest.mark.asyncio
async def test_download_blogs_writes_validated_directory(tmp_path):
    destination = tmp_path / "data" / "blogs.json"
    body = json.dumps(DIRECTORY).encode("utf-8")

    async def transport(url, headers):
        assert url == "https://example.com/blogs.json"
        return HttpResponse(status=200, body=body)

    assert await download_blogs(str(destination), "https://example.com/blogs.json", transport=transport) is True
    assert len(load_blogs(str(destination))) == 2


@pytest.mark.asyncio
async def test_download_failure_keeps_existing_file(blogs_file):
    original = blogs_file.read_text(encoding="utf-8")

    async def transport(url, headers):
        return HttpResponse(status=503, reason="Service Unavailable")

    assert await download_blogs(str(blogs_file), "https://example.com/blogs.json", transport=transport) is False
    assert blogs_file.read_text(encoding="utf-8") == original


@pytest.mark.asyncio
async def test_download_invalid_payload_without_existing_file_raises(tmp_path):
    async def transport(url, headers):
        return HttpResponse(status=200, body=b"[{\"language\": 1}]")

    with pytest.raises(BlogDataError) as excinfo:
        await download_blogs(str(tmp_path / "blogs.json"), "https://example.com/blogs.json", transport=transport)
    assert excinfo.value.kind == "validation-error"
    assert not (tmp_path / "blogs.json").exists()
