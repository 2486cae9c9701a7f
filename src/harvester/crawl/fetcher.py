"""Page fetcher: URL retrieval with SSRF protection and HTML-to-text conversion.

Security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist per call (HTML/plain text for pages, XML for sitemaps).
- Max response body: 5 MB.
- Timeout: 30 seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import ipaddress
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from http.client import HTTPResponse

import html2text
from bs4 import BeautifulSoup

from harvester.config import CrawlCfg
from harvester.errors import ProviderFailure, SsrfError, ValidationFailure

DEFAULT_USER_AGENT = "Harvester-Bot/0.1"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
PAGE_CONTENT_TYPES = frozenset({"text/html", "text/plain", "application/xhtml+xml"})
SITEMAP_CONTENT_TYPES = frozenset({"application/xml", "text/xml", "text/plain", "text/html"})

# html2text converter
_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


@dataclass
class FetchedPage:
    """A fetched document.

    Attributes:
        url: URL that was requested.
        content_type: Media type without parameters.
        body: Decoded response body.
        text: Readable text (markdown-ish for HTML, verbatim for plain text).
        links: Absolute http(s) links found in HTML bodies.
    """

    url: str
    content_type: str
    body: str
    text: str = ""
    links: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.body.encode("utf-8"))


class PageFetcher:
    """Fetch URLs for discovery and crawling.

    SSRF protection is applied *before* any connection is made: the hostname
    is resolved and all resulting IP addresses are checked against
    private/loopback/link-local/reserved ranges via the stdlib ``ipaddress``
    module.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        *,
        timeout: int = _TIMEOUT,
        max_bytes: int = _MAX_BYTES,
        allow_private: bool = False,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.allow_private = allow_private

    @classmethod
    def from_config(cls, cfg: CrawlCfg) -> PageFetcher:
        return cls(cfg.user_agent, timeout=cfg.request_timeout)

    def fetch_page(self, url: str) -> FetchedPage:
        """Fetch *url* and convert it to text, collecting outbound links.

        Raises:
            ValidationFailure: Bad scheme, disallowed content type, or oversize body.
            SsrfError: URL resolves to a private address.
            ProviderFailure: Network or HTTP error.
        """
        body, content_type = self.fetch_raw(url, PAGE_CONTENT_TYPES)
        if content_type == "text/plain":
            return FetchedPage(url=url, content_type=content_type, body=body, text=body)
        return FetchedPage(
            url=url,
            content_type=content_type,
            body=body,
            text=html_to_text(body),
            links=extract_links(body, url),
        )

    def fetch_raw(self, url: str, allowed_types: frozenset[str] = PAGE_CONTENT_TYPES) -> tuple[str, str]:
        """Validate and fetch *url*. Returns (decoded_body, content_type)."""
        self._validate_scheme(url)
        if not self.allow_private:
            self._check_ssrf(url)
        raw, content_type = self._fetch(url)
        if content_type not in allowed_types:
            raise ValidationFailure(
                f"Unsupported Content-Type '{content_type}' for URL '{url}'. "
                f"Accepted: {', '.join(sorted(allowed_types))}"
            )
        return raw.decode("utf-8", errors="replace"), content_type

    # ------------------------------------------------------------------
    # Fetch pipeline
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_scheme(url: str) -> None:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in _ALLOWED_SCHEMES:
            raise ValidationFailure(
                f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
            )

    @staticmethod
    def _check_ssrf(url: str) -> None:
        """Resolve the hostname and block private/reserved IP ranges.

        Raises SsrfError if any resolved address is private, loopback,
        link-local, or otherwise reserved.
        """
        parsed = urllib.parse.urlparse(url)
        hostname = parsed.hostname
        if not hostname:
            raise ValidationFailure(f"URL has no hostname: {url}")

        try:
            addrinfos = socket.getaddrinfo(hostname, None)
        except socket.gaierror as exc:
            raise ProviderFailure(f"DNS resolution failed for '{hostname}': {exc}") from exc

        for addrinfo in addrinfos:
            addr_str = addrinfo[4][0]
            try:
                ip = ipaddress.ip_address(addr_str)
            except ValueError:
                continue
            if (
                ip.is_private
                or ip.is_loopback
                or ip.is_link_local
                or ip.is_reserved
                or ip.is_multicast
                or ip.is_unspecified
            ):
                raise SsrfError(
                    f"URL resolves to private address ({ip}). "
                    "Access to internal network addresses is not allowed."
                )

    def _fetch(self, url: str) -> tuple[bytes, str]:
        """Fetch *url* with timeout, redirect limit and size cap.

        Returns (body_bytes, content_type_without_params).
        """
        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})

        # Custom opener with redirect limit
        opener = urllib.request.build_opener(
            _LimitedRedirectHandler(_MAX_REDIRECTS)
        )

        try:
            response: HTTPResponse = opener.open(request, timeout=self.timeout)
        except urllib.error.URLError as exc:
            raise ProviderFailure(f"Failed to fetch URL '{url}': {exc}") from exc
        except (TimeoutError, OSError) as exc:
            raise ProviderFailure(f"Failed to fetch URL '{url}': {exc}") from exc

        with response:
            raw_ct = response.headers.get("Content-Type", "text/html")
            ct = raw_ct.split(";")[0].strip().lower()

            # Read with size cap
            body = response.read(self.max_bytes + 1)
        if len(body) > self.max_bytes:
            raise ValidationFailure(
                f"Response body exceeds {self.max_bytes // (1024 * 1024)} MB limit for URL '{url}'."
            )

        return body, ct


def html_to_text(html: str) -> str:
    """Strip non-content tags, then convert the remaining HTML with html2text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "nav", "footer", "head", "noscript"]):
        tag.decompose()
    return _h2t.handle(str(soup)).strip()


def extract_links(html: str, base_url: str) -> list[str]:
    """Return absolute http(s) links from ``<a href>`` tags, fragments removed, in page order."""
    soup = BeautifulSoup(html, "html.parser")
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        absolute, _ = urllib.parse.urldefrag(urllib.parse.urljoin(base_url, href))
        if urllib.parse.urlsplit(absolute).scheme not in _ALLOWED_SCHEMES:
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise ProviderFailure(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        return super().redirect_request(req, fp, code, msg, headers, newurl)
