"""URL discovery for a crawl root: sitemaps first, then on-page links."""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass, field

from bs4 import BeautifulSoup

from harvester.crawl.fetcher import SITEMAP_CONTENT_TYPES, PageFetcher
from harvester.crawl.robots import RobotsChecker, origin_of
from harvester.errors import HarvesterError

logger = logging.getLogger("Harvester.Discovery")

# Child sitemaps followed from a sitemap index.
MAX_CHILD_SITEMAPS = 10
# Raw candidates kept before filtering; the page cap is applied after filtering.
MAX_CANDIDATES = 5000


@dataclass
class DiscoveryResult:
    """Raw candidate URLs (root first) and how they were found."""

    urls: list[str] = field(default_factory=list)
    method: str = "root_only"  # sitemap | links | root_only


def parse_sitemap(xml: str) -> tuple[list[str], list[str]]:
    """Split a sitemap document into (page_urls, child_sitemap_urls)."""
    soup = BeautifulSoup(xml, "html.parser")
    children = [
        loc.get_text(strip=True)
        for sm in soup.find_all("sitemap")
        for loc in sm.find_all("loc")
    ]
    pages = [
        loc.get_text(strip=True)
        for entry in soup.find_all("url")
        for loc in entry.find_all("loc")
    ]
    return [p for p in pages if p], [c for c in children if c]


class UrlDiscovery:
    """Collect candidate page URLs for a site.

    Args:
        fetcher: Used for sitemap and root-page requests.
        robots: Optional checker supplying ``Sitemap:`` entries.
        use_sitemap: Try sitemaps before falling back to link extraction.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        robots: RobotsChecker | None = None,
        *,
        use_sitemap: bool = True,
    ) -> None:
        self._fetcher = fetcher
        self._robots = robots
        self._use_sitemap = use_sitemap

    def discover(self, root_url: str) -> DiscoveryResult:
        """Return candidate URLs for *root_url*. The root is always the first entry."""
        if self._use_sitemap:
            urls = self._from_sitemaps(root_url)
            if urls:
                logger.info("Discovered %d URL(s) via sitemap for %s", len(urls), root_url)
                return DiscoveryResult(urls=_with_root(root_url, urls), method="sitemap")

        try:
            page = self._fetcher.fetch_page(root_url)
        except HarvesterError as exc:
            logger.warning("Link discovery failed for %s: %s", root_url, exc)
            return DiscoveryResult(urls=[root_url], method="root_only")

        logger.info("Discovered %d link(s) on %s", len(page.links), root_url)
        return DiscoveryResult(urls=_with_root(root_url, page.links), method="links")

    def _sitemap_candidates(self, root_url: str) -> list[str]:
        candidates: list[str] = []
        if self._robots is not None:
            candidates.extend(self._robots.sitemaps(root_url))
        default = urllib.parse.urljoin(origin_of(root_url) + "/", "sitemap.xml")
        if default not in candidates:
            candidates.append(default)
        return candidates

    def _from_sitemaps(self, root_url: str) -> list[str]:
        urls: list[str] = []
        for sitemap_url in self._sitemap_candidates(root_url):
            pages, children = self._read_sitemap(sitemap_url)
            urls.extend(pages)
            for child in children[:MAX_CHILD_SITEMAPS]:
                child_pages, _ = self._read_sitemap(child)
                urls.extend(child_pages)
            if urls:
                break
        return urls[:MAX_CANDIDATES]

    def _read_sitemap(self, url: str) -> tuple[list[str], list[str]]:
        try:
            body, _ = self._fetcher.fetch_raw(url, SITEMAP_CONTENT_TYPES)
        except HarvesterError as exc:
            logger.debug("Sitemap %s unavailable: %s", url, exc)
            return [], []
        return parse_sitemap(body)


def _with_root(root_url: str, urls: list[str]) -> list[str]:
    return [root_url, *(u for u in urls if u != root_url)][:MAX_CANDIDATES]
