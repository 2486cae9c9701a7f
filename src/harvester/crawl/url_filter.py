"""URL normalization and customer-facing page filtering.

Discovery produces every link it can find; this module narrows that down to
pages worth indexing: same site, not an admin/auth/API/asset path, not
absurdly long or deep, and not carrying debug/preview style query params.
"""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass, field

from harvester.errors import ValidationFailure

MAX_URL_LENGTH = 500
MAX_PATH_DEPTH = 10

_ALLOWED_SCHEMES = {"http", "https"}

TRACKING_PARAMS: frozenset[str] = frozenset(
    [
        "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
        "fbclid", "gclid", "mc_cid", "mc_eid", "_ga", "_gl",
        "ref", "source", "campaign",
    ]
)

SUSPICIOUS_PARAMS: tuple[str, ...] = ("debug", "test", "dev", "admin", "edit", "preview")


def _segment(name: str) -> str:
    # Path segment followed by '/', end of path, or a query string.
    return rf"/{name}(?:/|$|\?)"


DEFAULT_EXCLUDE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in [
        # Admin areas
        *(_segment(s) for s in ("admin", "wp-admin", "administrator", "backend", "panel")),
        # Authentication
        *(_segment(s) for s in ("login", "signin", "signup", "register", "logout", "auth")),
        # User areas
        *(_segment(s) for s in ("dashboard", "profile", "account", "user", "member", "settings", "preferences")),
        # API endpoints
        *(_segment(s) for s in ("api", "rest", "graphql", "webhook", "callback")),
        # WordPress internals
        r"/wp-content/",
        r"/wp-includes/",
        _segment("wp-json"),
        r"/xmlrpc\.php",
        r"/wp-login\.php",
        # System files
        r"/robots\.txt$",
        r"/sitemap\.xml$",
        r"/favicon\.ico$",
        r"/\.well-known/",
        # Assets, documents, data and media
        r"\.(?:js|css|scss|sass|less|map|woff|woff2|ttf|eot|otf)$",
        r"\.(?:jpg|jpeg|png|gif|svg|webp|ico|bmp|tiff|avif)$",
        r"\.(?:pdf|doc|docx|xls|xlsx|ppt|pptx|zip|rar|tar|gz)$",
        r"\.(?:json|xml|csv|txt|log)$",
        r"\.(?:mp4|mp3|wav|avi|mov|webm|flv|mkv|wmv)$",
        # CMS editing
        *(_segment(s) for s in ("editor", "preview", "draft", "revision")),
        # Development / staging
        *(_segment(s) for s in ("dev", "test", "staging", "debug")),
        # Search and filter listings
        r"/search\?",
        r"/filter\?",
        r"\?.*search=",
        r"\?.*filter=",
    ]
)

# Rejection reasons, also the keys of FilterResult.stats.
REASON_DOMAIN = "domain"
REASON_DEFAULT = "default"
REASON_INCLUDE = "include"
REASON_EXCLUDE = "exclude"
REASON_STRUCTURE = "structure"


@dataclass
class FilterResult:
    """Outcome of ``filter_urls``.

    Attributes:
        urls: Accepted, normalized, de-duplicated URLs in input order.
        rejected: (url, human-readable reason) for every rejected URL.
        stats: Rejection counts per reason key plus ``total`` and ``valid``.
    """

    urls: list[str] = field(default_factory=list)
    rejected: list[tuple[str, str]] = field(default_factory=list)
    stats: dict[str, int] = field(
        default_factory=lambda: {
            "total": 0,
            "valid": 0,
            REASON_DOMAIN: 0,
            REASON_DEFAULT: 0,
            REASON_INCLUDE: 0,
            REASON_EXCLUDE: 0,
            REASON_STRUCTURE: 0,
        }
    )


def normalize_url(url: str) -> str:
    """Canonical form used for de-duplication and storage.

    Adds ``https://`` when the scheme is missing, lowercases the host, drops
    tracking parameters and the fragment, and trims a trailing slash from
    non-root paths.
    """
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = "https://" + url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.urlencode(
        [
            (k, v)
            for k, v in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
            if k not in TRACKING_PARAMS
        ]
    )
    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return urllib.parse.urlunsplit(
        (parsed.scheme.lower(), parsed.netloc.lower(), path, query, "")
    )


def extract_domain(url: str) -> str:
    """Hostname of *url* without a leading ``www.`` (empty string if none)."""
    host = urllib.parse.urlsplit(normalize_url(url)).hostname or ""
    return host.lower().removeprefix("www.")


def validate_crawl_url(url: str) -> str:
    """Return the normalized start URL for a crawl or raise ValidationFailure."""
    if not url or not url.strip():
        raise ValidationFailure("URL is required")
    if "://" in url and urllib.parse.urlsplit(url.strip()).scheme.lower() not in _ALLOWED_SCHEMES:
        raise ValidationFailure(
            f"Unsupported URL scheme in '{url}'. Only https:// and http:// are allowed."
        )
    normalized = normalize_url(url)
    parsed = urllib.parse.urlsplit(normalized)
    if not parsed.hostname or ("." not in parsed.hostname and parsed.hostname != "localhost"):
        raise ValidationFailure(f"URL has no valid hostname: '{url}'")
    return normalized


def matches_default_excludes(url: str) -> bool:
    parsed = urllib.parse.urlsplit(url)
    full_path = parsed.path + (f"?{parsed.query}" if parsed.query else "")
    return any(p.search(full_path) for p in DEFAULT_EXCLUDE_PATTERNS)


def check_customer_facing(url: str, base_domain: str) -> tuple[str, str] | None:
    """Return (reason_key, message) if *url* should be skipped, else None."""
    try:
        parsed = urllib.parse.urlsplit(url)
        host = (parsed.hostname or "").lower().removeprefix("www.")
    except ValueError as exc:
        return REASON_STRUCTURE, f"Invalid URL: {exc}"

    if parsed.scheme not in _ALLOWED_SCHEMES:
        return REASON_STRUCTURE, f"Unsupported scheme: {parsed.scheme}"
    if host != base_domain:
        return REASON_DOMAIN, "Different domain"
    if matches_default_excludes(url):
        return REASON_DEFAULT, "Matches default exclude patterns"
    if len(url) > MAX_URL_LENGTH:
        return REASON_STRUCTURE, "URL too long"
    if len([s for s in parsed.path.split("/") if s]) > MAX_PATH_DEPTH:
        return REASON_STRUCTURE, "Path too deep"
    params = {k for k, _ in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)}
    for param in SUSPICIOUS_PARAMS:
        if param in params:
            return REASON_STRUCTURE, f"Contains suspicious parameter: {param}"
    return None


def is_customer_facing_url(url: str, base_domain: str) -> bool:
    return check_customer_facing(url, base_domain) is None


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    return re.compile(re.escape(pattern).replace(r"\*", ".*"), re.IGNORECASE)


def filter_urls(
    urls: list[str],
    base_domain: str,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
) -> FilterResult:
    """Normalize, de-duplicate and filter discovered URLs.

    Args:
        urls: Raw discovered URLs.
        base_domain: Domain of the crawl root (see ``extract_domain``).
        include_patterns: ``*`` globs; when given, a URL must match one.
        exclude_patterns: ``*`` globs; a matching URL is dropped.

    Returns:
        FilterResult with accepted URLs, rejections and per-reason counts.
    """
    includes = [_glob_to_regex(p) for p in include_patterns or []]
    excludes = [_glob_to_regex(p) for p in exclude_patterns or []]

    result = FilterResult()
    seen: set[str] = set()
    for raw in urls:
        try:
            url = normalize_url(raw)
        except ValueError:
            result.stats["total"] += 1
            result.stats[REASON_STRUCTURE] += 1
            result.rejected.append((raw, "Invalid URL"))
            continue
        if url in seen:
            continue
        seen.add(url)
        result.stats["total"] += 1

        rejection = check_customer_facing(url, base_domain)
        if rejection is None and includes and not any(p.search(url) for p in includes):
            rejection = (REASON_INCLUDE, "Does not match include patterns")
        if rejection is None and any(p.search(url) for p in excludes):
            rejection = (REASON_EXCLUDE, "Matches exclude patterns")

        if rejection is not None:
            key, message = rejection
            result.stats[key] += 1
            result.rejected.append((url, message))
            continue

        result.urls.append(url)
        result.stats["valid"] += 1
    return result
