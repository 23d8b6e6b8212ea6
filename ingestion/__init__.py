"""
Sync engine components for listing ingestion and media rehosting.

This package contains every long-running part of the engine:

Modules:
    client: Rate-limited upstream catalog client (OData paging, retries)
    rate_limiter: Minimum-interval plus rolling-window limiter
    events: Rate-limit audit trail writer
    progress: Periodic progress snapshots and retention purge
    scheduler: APScheduler integration owning every loop

Subpackages:
    sync: One incremental loop per upstream resource
    loaders: Idempotent upserts into the canonical store
    media: Download pipeline, object storage, tracker and delay setting

Architecture:
    Each resource loop follows the same cycle:

    1. Read the high-water mark
    2. Fetch pages modified after the mark, oldest first
    3. Upsert each page in its own transaction
    4. Advance the mark only after the whole cycle succeeded

    The media pipeline runs independently and only consumes what the
    Property loop has written.

Usage:
    from ingestion.scheduler import SyncScheduler

    scheduler = SyncScheduler()
    scheduler.start()
    ...
    await scheduler.stop()

Error Handling:
    All components use custom exceptions from core.exceptions for
    structured error handling. Throttling is never fatal; it is recorded
    in the rate_limit_events table and turned into a wait.
"""

__all__ = [
    "CatalogClient",
    "RateLimiter",
    "SyncScheduler",
    "ProgressRecorder",
]
