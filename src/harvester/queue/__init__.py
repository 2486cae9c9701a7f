"""Durable job queue: storage and atomic multi-worker claiming."""

from harvester.queue.claiming import ClaimingStats, JobClaimer
from harvester.queue.store import JobStore

__all__ = ["ClaimingStats", "JobClaimer", "JobStore"]
