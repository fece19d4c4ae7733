"""
Historical Bar Synchronization

Keeps the local bar store current with the upstream provider.

Key Components:
- MarketCalendar: Session open/close rules
- StalenessDetector: Decides whether and what to sync
- ChunkedFetcher: Bounded cursor pagination within one chunk
- DedupWriter: Idempotent, batched bar writes
- JobTracker: Durable, pollable download jobs
- SyncOrchestrator: Incremental sync and chunked bulk downloads
"""

from .market_calendar import MarketCalendar

from .staleness import (
    StalenessDetector,
    MissingRange,
    NotOnboardedError,
    RangeEmpty
)

from .chunked_fetcher import ChunkedFetcher

from .dedup_writer import DedupWriter

from .job_tracker import (
    JobTracker,
    JobProgress,
    JobNotFoundError,
    estimate_expected_records,
    TRADING_DAYS_PER_YEAR
)

from .partitioning import (
    DownloadPeriod,
    DateChunk,
    plan_chunks
)

from .orchestrator import (
    SyncOrchestrator,
    SyncConfig,
    SyncResult,
    create_sync_orchestrator
)

__all__ = [
    # Calendar and staleness
    "MarketCalendar",
    "StalenessDetector",
    "MissingRange",
    "NotOnboardedError",
    "RangeEmpty",

    # Fetch and write
    "ChunkedFetcher",
    "DedupWriter",

    # Jobs
    "JobTracker",
    "JobProgress",
    "JobNotFoundError",
    "estimate_expected_records",
    "TRADING_DAYS_PER_YEAR",

    # Planning
    "DownloadPeriod",
    "DateChunk",
    "plan_chunks",

    # Orchestration
    "SyncOrchestrator",
    "SyncConfig",
    "SyncResult",
    "create_sync_orchestrator"
]
