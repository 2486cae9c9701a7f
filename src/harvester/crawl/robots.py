"""robots.txt compliance with a per-origin cache.

Rules are fetched once per origin and cached for ``ttl`` seconds. Any failure
to fetch or parse robots.txt fails open (everything allowed), which keeps a
broken robots.txt from stalling a crawl.
"""

from __future__ import annotations

import logging
import threading
import time
import urllib.parse
from dataclasses import dataclass
from typing import Callable
from urllib import robotparser

from harvester.config import CrawlCfg
from harvester.crawl.fetcher import PageFetcher
from harvester.errors import ProviderFailure, RobotsDisallowed, SsrfError, ValidationFailure

logger = logging.getLogger("Harvester.Robots")

DEFAULT_TTL = 24 * 60 * 60
DEFAULT_CRAWL_DELAY = 1.0
_MAX_ROBOTS_BYTES = 512 * 1024
ROBOTS_CONTENT_TYPES = frozenset({"text/plain"})


@dataclass
class _CacheEntry:
    parser: robotparser.RobotFileParser | None  # None = fail open
    fetched_at: float


def origin_of(url: str) -> str:
    parsed = urllib.parse.urlsplit(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


class RobotsChecker:
    """Answer allow/deny, crawl-delay and sitemap questions for URLs.

    Args:
        user_agent: Agent name matched against robots.txt groups.
        ttl: Cache lifetime in seconds.
        default_crawl_delay: Returned when robots.txt sets no Crawl-delay.
        fetcher: PageFetcher used for the network call, so robots.txt goes
            through the same scheme and SSRF guards as pages.
        fetch: Optional ``fetch(url) -> str | None`` replacing the network
            call (None means robots.txt is unavailable).
        clock: Monotonic clock used for cache expiry.
    """

    def __init__(
        self,
        user_agent: str = "Harvester-Bot",
        *,
        ttl: float = DEFAULT_TTL,
        default_crawl_delay: float = DEFAULT_CRAWL_DELAY,
        fetcher: PageFetcher | None = None,
        fetch: Callable[[str], str | None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_agent = user_agent
        self.ttl = ttl
        self.default_crawl_delay = default_crawl_delay
        self._fetcher = fetcher or PageFetcher(user_agent, max_bytes=_MAX_ROBOTS_BYTES)
        self._fetch = fetch or self._fetch_robots
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, _CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_config(cls, cfg: CrawlCfg) -> RobotsChecker:
        return cls(
            cfg.user_agent,
            ttl=cfg.robots_cache_ttl,
            default_crawl_delay=cfg.default_crawl_delay,
            fetcher=PageFetcher(
                cfg.user_agent, timeout=cfg.request_timeout, max_bytes=_MAX_ROBOTS_BYTES
            ),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_allowed(self, url: str) -> bool:
        parser = self._parser_for(url)
        if parser is None:
            return True
        try:
            return parser.can_fetch(self.user_agent, url)
        except Exception:
            logger.warning("robots.txt evaluation failed for %s; allowing", url, exc_info=True)
            return True

    def check(self, url: str) -> None:
        """Raise RobotsDisallowed if *url* may not be fetched."""
        if not self.is_allowed(url):
            raise RobotsDisallowed(url)

    def crawl_delay(self, url: str) -> float:
        """Seconds to wait between requests to *url*'s origin."""
        parser = self._parser_for(url)
        if parser is not None:
            delay = parser.crawl_delay(self.user_agent)
            if delay is not None:
                return float(delay)
        return self.default_crawl_delay

    def sitemaps(self, url: str) -> list[str]:
        """Sitemap URLs advertised by the origin's robots.txt."""
        parser = self._parser_for(url)
        if parser is None:
            return []
        return list(parser.site_maps() or [])

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "origins": len(self._cache),
                "hits": self._hits,
                "misses": self._misses,
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parser_for(self, url: str) -> robotparser.RobotFileParser | None:
        origin = origin_of(url)
        now = self._clock()
        with self._lock:
            entry = self._cache.get(origin)
            if entry is not None and now - entry.fetched_at < self.ttl:
                self._hits += 1
                return entry.parser
            self._misses += 1

        # Fetched outside the lock; a concurrent miss on the same origin just
        # fetches twice and the last writer wins.
        robots_url = f"{origin}/robots.txt"
        parser: robotparser.RobotFileParser | None = None
        try:
            body = self._fetch(robots_url)
        except Exception:
            logger.warning("Could not fetch %s; allowing all", robots_url, exc_info=True)
            body = None
        if body is not None:
            parser = robotparser.RobotFileParser(robots_url)
            parser.parse(body.splitlines())
        with self._lock:
            self._cache[origin] = _CacheEntry(parser=parser, fetched_at=now)
        return parser

    def _fetch_robots(self, robots_url: str) -> str | None:
        try:
            body, _ = self._fetcher.fetch_raw(robots_url, ROBOTS_CONTENT_TYPES)
        except SsrfError as exc:
            logger.warning("Refusing to fetch %s: %s", robots_url, exc)
            return None
        except (ProviderFailure, ValidationFailure) as exc:
            logger.info("No usable robots.txt at %s: %s", robots_url, exc)
            return None
        return body
