"""Harvester exception taxonomy.

Transient failures (claim races, single-item provider errors, timeouts) are
handled inside the component that owns them and only show up as counters or
log lines. Structural failures (unknown source, malformed URL, bad payload)
are raised to the immediate caller.
"""

from __future__ import annotations


class HarvesterError(RuntimeError):
    """Base class for all pipeline errors."""


class ClaimConflict(HarvesterError):
    """Another worker won the race for a job."""


class JobTimeout(HarvesterError):
    """A job or page stayed in progress past its processing window."""


class RobotsDisallowed(HarvesterError):
    """robots.txt excludes the URL for our user agent."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Disallowed by robots.txt: {url}")
        self.url = url


class ProviderFailure(HarvesterError):
    """A network fetch or embedding provider call failed."""


class ValidationFailure(HarvesterError, ValueError):
    """Input was rejected before any job was created."""


class SourceNotFound(ValidationFailure):
    """The referenced source does not exist (or was soft-deleted)."""

    def __init__(self, source_id: str) -> None:
        super().__init__(f"Source not found: {source_id}")
        self.source_id = source_id


class SsrfError(ValidationFailure):
    """Raised when a URL resolves to a private or reserved address."""


class StorageFailure(HarvesterError):
    """The persistence layer is unavailable (locked, I/O error, ...)."""


class CompressionError(HarvesterError):
    """Compressed content could not be produced or reversed."""
