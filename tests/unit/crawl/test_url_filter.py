"""Tests for URL normalization and customer-facing filtering."""

from __future__ import annotations

import pytest

from harvester.crawl.url_filter import (
    MAX_PATH_DEPTH,
    MAX_URL_LENGTH,
    check_customer_facing,
    extract_domain,
    filter_urls,
    normalize_url,
    validate_crawl_url,
)
from harvester.errors import ValidationFailure


@pytest.mark.parametrize("raw,expected", [
    ("example.com", "https://example.com/"),
    ("HTTPS://Example.COM/Docs/", "https://example.com/Docs"),
    ("https://example.com/a?utm_source=x&page=2#top", "https://example.com/a?page=2"),
    ("https://example.com/a?fbclid=1", "https://example.com/a"),
    ("http://example.com/", "http://example.com/"),
])
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


def test_extract_domain_strips_www():
    assert extract_domain("https://www.Example.com/path") == "example.com"
    assert extract_domain("docs.example.com") == "docs.example.com"


def test_validate_crawl_url_accepts_bare_host():
    assert validate_crawl_url("  example.com ") == "https://example.com/"


@pytest.mark.parametrize("url", ["", "   ", "ftp://example.com", "file:///etc/passwd", "https://nodot"])
def test_validate_crawl_url_rejects(url):
    with pytest.raises(ValidationFailure):
        validate_crawl_url(url)


@pytest.mark.parametrize("path", [
    "/admin/users",
    "/wp-admin",
    "/login",
    "/api/v1/items",
    "/wp-content/uploads/x",
    "/assets/app.js",
    "/images/logo.png",
    "/files/report.pdf",
    "/sitemap.xml",
    "/search?q=x",
    "/staging/home",
])
def test_default_excludes(path):
    reason = check_customer_facing(f"https://example.com{path}", "example.com")
    assert reason is not None
    assert reason[0] == "default"


@pytest.mark.parametrize("path", ["/", "/docs/getting-started", "/blog/2024/hello", "/pricing"])
def test_customer_facing_pages_pass(path):
    assert check_customer_facing(f"https://example.com{path}", "example.com") is None


def test_www_host_counts_as_same_domain():
    assert check_customer_facing("https://www.example.com/about", "example.com") is None


def test_structure_checks():
    deep = "https://example.com/" + "/".join(["a"] * (MAX_PATH_DEPTH + 1))
    long = "https://example.com/" + "x" * MAX_URL_LENGTH
    assert check_customer_facing(deep, "example.com") == ("structure", "Path too deep")
    assert check_customer_facing(long, "example.com") == ("structure", "URL too long")
    reason = check_customer_facing("https://example.com/blog?preview=1", "example.com")
    assert reason == ("structure", "Contains suspicious parameter: preview")


def test_filter_urls_dedupes_and_counts():
    result = filter_urls(
        [
            "https://example.com/docs",
            "https://example.com/docs/",
            "https://example.com/docs?utm_campaign=x",
            "https://other.com/docs",
            "https://example.com/login",
            "https://example.com/about",
        ],
        "example.com",
    )
    assert result.urls == ["https://example.com/docs", "https://example.com/about"]
    assert result.stats["total"] == 4
    assert result.stats["valid"] == 2
    assert result.stats["domain"] == 1
    assert result.stats["default"] == 1
    assert ("https://other.com/docs", "Different domain") in result.rejected


def test_filter_urls_include_and_exclude_globs():
    result = filter_urls(
        [
            "https://example.com/docs/a",
            "https://example.com/docs/internal/b",
            "https://example.com/blog/c",
        ],
        "example.com",
        include_patterns=["*/docs/*"],
        exclude_patterns=["*/internal/*"],
    )
    assert result.urls == ["https://example.com/docs/a"]
    assert result.stats["include"] == 1
    assert result.stats["exclude"] == 1
