"""
Sync Orchestrator

Composes the calendar, staleness detector, chunked fetcher, dedup writer and
job tracker into the two caller-facing paths:

- incremental: bring a series up to the most recent session close in one pass
- bulk download: walk a multi-year range chunk by chunk as a tracked,
  cancellable background job

A chunk whose fetch keeps failing is logged and skipped; the job still ends
completed, with fewer records than expected.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.database.bar_store import BarStore
from core.database.database_manager import DatabaseManager, create_database_manager
from core.database.models import Timeframe
from data.bars import Bar
from data.fetchers.base_fetcher import BaseFetcher, ProviderUnavailable, RateLimitConfig
from .chunked_fetcher import ChunkedFetcher
from .dedup_writer import DedupWriter
from .job_tracker import CANCELLED_MESSAGE, JobNotFoundError, JobProgress, JobTracker
from .market_calendar import MarketCalendar
from .partitioning import DateChunk, DownloadPeriod, plan_chunks
from .staleness import Clock, RangeEmpty, StalenessDetector, utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, Optional[str]], Any]


@dataclass
class SyncConfig:
    """Configuration for sync operations."""
    # Provider pagination
    request_delay: float = 0.1
    max_requests_per_chunk: int = 50

    # Bulk download pacing
    chunk_delay: float = 0.2
    monthly_threshold_days: int = 90
    max_chunk_retries: int = 1
    chunk_retry_delay: float = 1.0
    history_start: date = date(2010, 1, 1)

    # Store writes
    write_batch_size: int = 1000

    @classmethod
    def from_settings(cls, settings) -> "SyncConfig":
        return cls(
            request_delay=settings.request_delay_seconds,
            max_requests_per_chunk=settings.max_requests_per_chunk,
            chunk_delay=settings.chunk_delay_seconds,
            monthly_threshold_days=settings.monthly_partition_threshold_days,
            max_chunk_retries=settings.max_chunk_retries,
            chunk_retry_delay=settings.chunk_retry_delay_seconds,
            history_start=settings.history_start,
            write_batch_size=settings.write_batch_size,
        )


@dataclass
class SyncResult:
    """Outcome of one incremental sync."""
    symbol: str
    timeframe: Timeframe
    synced: bool
    bars_written: int = 0
    bars_fetched: int = 0
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe.value,
            'synced': self.synced,
            'bars_written': self.bars_written,
            'bars_fetched': self.bars_fetched,
            'start': self.start.isoformat() if self.start else None,
            'end': self.end.isoformat() if self.end else None,
            'reason': self.reason,
        }


class SyncOrchestrator:
    """
    Drives incremental syncs and bulk downloads for one provider and one store.

    Bulk downloads run as asyncio tasks keyed by job id. Chunks within a job
    are processed sequentially because the provider rate limit is shared.
    """

    def __init__(self,
                 provider: BaseFetcher,
                 bar_store: BarStore,
                 job_tracker: JobTracker,
                 calendar: Optional[MarketCalendar] = None,
                 config: Optional[SyncConfig] = None,
                 clock: Optional[Clock] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        Initialize orchestrator.

        Args:
            provider: Upstream bar provider (anything with fetch_page)
            bar_store: Store the bars are written to
            job_tracker: Persistence for bulk download jobs
            calendar: Exchange session rules (defaults to US equities)
            config: Pacing and batching knobs
            clock: Returns the current aware UTC time
            sleep: Awaitable delay, replaceable in tests
        """
        self.provider = provider
        self.bar_store = bar_store
        self.job_tracker = job_tracker
        self.calendar = calendar or MarketCalendar()
        self.config = config or SyncConfig()
        self.clock = clock or utc_now
        self._sleep = sleep

        self.fetcher = ChunkedFetcher(
            provider,
            max_requests=self.config.max_requests_per_chunk,
            request_delay=self.config.request_delay,
            sleep=sleep,
        )
        self.writer = DedupWriter(bar_store, batch_size=self.config.write_batch_size)
        self.staleness = StalenessDetector(bar_store, self.calendar, clock=self.clock)

        self._tasks: Dict[str, asyncio.Task] = {}
        # (symbol, timeframe, period) -> job id of the download running in this process
        self._running_keys: Dict[Tuple[str, str, str], str] = {}

        logger.info(f"SyncOrchestrator initialized with provider {provider.__class__.__name__}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Incremental path

    async def sync_if_stale(self, symbol: str, timeframe: Timeframe = Timeframe.ONE_MINUTE) -> SyncResult:
        """
        Fetch and store whatever the series is missing up to the last session close.

        Raises:
            NotOnboardedError: The series has never been downloaded
            ProviderUnavailable: The provider failed; retry at the next scheduled sync
        """
        symbol = symbol.upper()
        timeframe = Timeframe.parse(timeframe)

        if not self.staleness.needs_sync(symbol, timeframe):
            logger.debug(f"{symbol} {timeframe.value} is current, nothing to sync")
            return SyncResult(symbol=symbol, timeframe=timeframe, synced=False, reason="up_to_date")

        try:
            missing = self.staleness.missing_range(symbol, timeframe)
        except RangeEmpty:
            return SyncResult(symbol=symbol, timeframe=timeframe, synced=False, reason="range_empty")

        logger.info(f"Syncing {symbol} {timeframe.value} from {missing.start:%Y-%m-%d} to {missing.end:%Y-%m-%d}")
        bars = await self.fetcher.fetch(symbol, timeframe, missing.start, missing.end)
        written = self.writer.write_new(symbol, timeframe, bars)

        if written:
            logger.info(f"Synced {written} new bars for {symbol} {timeframe.value}")
        else:
            logger.info(f"No new data available for {symbol} {timeframe.value}")

        return SyncResult(
            symbol=symbol,
            timeframe=timeframe,
            synced=True,
            bars_written=written,
            bars_fetched=len(bars),
            start=missing.start,
            end=missing.end,
            reason="synced",
        )

    # Bulk download path

    def bulk_range(self, period: DownloadPeriod) -> Tuple[datetime, datetime]:
        """
        Absolute range for a bulk download. While the session is open the range
        stops at the previous close so a half-built day is not downloaded.
        """
        now = self.clock()
        end = self.calendar.most_recent_session_close(now) if self.calendar.is_session_open(now) else now
        return DownloadPeriod.parse(period).start_for(end, self.config.history_start), end

    async def start_bulk_download(self,
                                  symbol: str,
                                  timeframe: Timeframe,
                                  period: Any,
                                  progress_callback: Optional[ProgressCallback] = None) -> str:
        """
        Start a tracked download in the background, or attach to the running one.

        Returns:
            Job id; identical concurrent requests get the same id
        """
        symbol = symbol.upper()
        timeframe = Timeframe.parse(timeframe)
        period = DownloadPeriod.parse(period)

        key = (symbol, timeframe.value, period.value)

        # A running task owns its key until it finishes, whatever its job row says
        running_id = self._running_keys.get(key)
        running_task = self._tasks.get(running_id) if running_id else None
        if running_task is not None and not running_task.done():
            logger.info(f"Attaching to running download {running_id} for {symbol} {timeframe.value} {period.value}")
            return running_id

        start, end = self.bulk_range(period)
        job_id, is_existing = self.job_tracker.create_or_attach(symbol, timeframe, period.value, start, end)

        if is_existing:
            if job_id not in self._tasks:
                logger.warning(f"Job {job_id} is in progress but not running in this process")
            return job_id

        task = asyncio.create_task(self.run_bulk_download(job_id, progress_callback),
                                   name=f"bulk-download-{job_id}")
        self._tasks[job_id] = task
        self._running_keys[key] = job_id
        task.add_done_callback(lambda t, jid=job_id, k=key: self._on_task_done(jid, k, t))
        return job_id

    def _on_task_done(self, job_id: str, key: Tuple[str, str, str], task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if self._running_keys.get(key) == job_id:
            del self._running_keys[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Download task for job {job_id} ended with an error: {task.exception()}")

    async def run_bulk_download(self,
                                job_id: str,
                                progress_callback: Optional[ProgressCallback] = None) -> JobProgress:
        """
        Run the chunk loop for an existing job and finalize it.

        Fetch failures skip their chunk. Any other error fails the job and
        cancellation fails it with message 'cancelled'; written bars are kept.
        """
        job = self.job_tracker.get_job(job_id)
        if job.is_terminal:
            logger.info(f"Job {job_id} is already {job.status.value}")
            return job

        chunks = plan_chunks(job.timeframe, job.start_date, job.end_date, self.config.monthly_threshold_days)
        logger.info(f"Starting job {job_id}: {job.symbol} {job.timeframe.value} {job.period} "
                    f"in {len(chunks)} chunks")

        skipped: List[str] = []
        try:
            for index, chunk in enumerate(chunks, start=1):
                bars = await self._fetch_chunk(job, chunk)
                if bars is None:
                    skipped.append(chunk.label)
                else:
                    written = self.writer.write_new(job.symbol, job.timeframe, bars)
                    logger.info(f"Job {job_id} chunk {chunk.label}: {written} new of {len(bars)} fetched bars")

                self.job_tracker.report_progress(job_id, label=chunk.label, finalize=False)
                await self._notify_progress(progress_callback, index / len(chunks) * 100.0, chunk.label)

                if index < len(chunks) and self.config.chunk_delay > 0:
                    await self._sleep(self.config.chunk_delay)

        except asyncio.CancelledError:
            logger.warning(f"Job {job_id} cancelled")
            self.job_tracker.fail(job_id, CANCELLED_MESSAGE)
            raise

        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}")
            return self.job_tracker.fail(job_id, str(e))

        if skipped:
            logger.warning(f"Job {job_id} skipped {len(skipped)} chunk(s): {', '.join(skipped)}")

        result = self.job_tracker.complete(job_id)
        await self._notify_progress(progress_callback, 100.0, None)
        return result

    async def _fetch_chunk(self, job: JobProgress, chunk: DateChunk) -> Optional[List[Bar]]:
        """Fetch one chunk with bounded retries; None when the chunk is given up on"""
        attempts = self.config.max_chunk_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.fetcher.fetch(job.symbol, job.timeframe, chunk.start, chunk.end)
            except ProviderUnavailable as e:
                if attempt < attempts:
                    logger.warning(f"Fetch of {job.symbol} {chunk.label} failed (attempt {attempt}/{attempts}), "
                                   f"retrying in {self.config.chunk_retry_delay}s: {e}")
                    await self._sleep(self.config.chunk_retry_delay)
                    continue
                logger.error(f"Failed to download {chunk.label} data for {job.symbol}, skipping: {e}")
        return None

    async def _notify_progress(self, callback: Optional[ProgressCallback],
                               percent: float, label: Optional[str]) -> None:
        if callback is None:
            return
        try:
            result = callback(percent, label)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in progress callback: {e}")

    async def bulk_download(self,
                            symbol: str,
                            timeframe: Timeframe,
                            period: Any,
                            progress_callback: Optional[ProgressCallback] = None) -> JobProgress:
        """Start (or attach to) a download and wait for it to finish"""
        job_id = await self.start_bulk_download(symbol, timeframe, period, progress_callback)
        return await self.wait_for_job(job_id)

    def get_job_progress(self, job_id: str) -> Dict[str, Any]:
        """
        Polling view of a job.

        Raises:
            JobNotFoundError: Unknown job id
        """
        return self.job_tracker.get_progress(job_id)

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> JobProgress:
        """Wait for the job's task in this process (if any) and return its snapshot"""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait([task], timeout=timeout)
        return self.job_tracker.get_job(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        """
        Stop a running download. Bars already written stay stored.

        Returns:
            True if the job was cancelled, False if unknown or already finished
        """
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
            # A task cancelled before its first step never ran its own cleanup
            if not self.job_tracker.get_job(job_id).is_terminal:
                self.job_tracker.fail(job_id, CANCELLED_MESSAGE)
            logger.info(f"Cancelled download job {job_id}")
            return True

        try:
            job = self.job_tracker.get_job(job_id)
        except JobNotFoundError:
            logger.debug(f"Cannot cancel unknown job {job_id}")
            return False

        if job.is_terminal:
            return False

        # In progress on record but not running here, e.g. left over from a previous process
        self.job_tracker.fail(job_id, CANCELLED_MESSAGE)
        logger.info(f"Marked orphaned job {job_id} as cancelled")
        return True

    def ticker_status(self, symbol: str, timeframe: Timeframe = Timeframe.ONE_MINUTE) -> Dict[str, Any]:
        """Freshness summary for a series"""
        symbol = symbol.upper()
        timeframe = Timeframe.parse(timeframe)
        now = self.clock()
        latest = self.staleness.latest_timestamp(symbol, timeframe)
        return {
            'symbol': symbol,
            'timeframe': timeframe.value,
            'has_data': latest is not None,
            'latest_timestamp': latest,
            'needs_sync': self.staleness.needs_sync(symbol, timeframe),
            'is_market_open': self.calendar.is_session_open(now),
            'most_recent_close': self.calendar.most_recent_session_close(now),
        }

    @property
    def running_jobs(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def close(self) -> None:
        """Cancel outstanding downloads and release the provider session"""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
            logger.info(f"Cancelled {len(tasks)} running download(s)")

        stop = getattr(self.provider, "stop", None)
        if stop is not None:
            await stop()


def create_sync_orchestrator(settings=None,
                             database_manager: Optional[DatabaseManager] = None,
                             provider: Optional[BaseFetcher] = None) -> SyncOrchestrator:
    """
    Create a SyncOrchestrator wired from application settings.

    Args:
        settings: Settings instance (defaults to config.settings.settings)
        database_manager: Existing database manager (built from settings.database_url otherwise)
        provider: Bar provider (a PolygonFetcher using settings.polygon_api_key otherwise)

    Returns:
        Configured SyncOrchestrator
    """
    if settings is None:
        from config.settings import settings as default_settings
        settings = default_settings

    if database_manager is None:
        database_manager = create_database_manager(settings.database_url, echo=settings.debug)

    if provider is None:
        from data.fetchers.polygon_io import PolygonFetcher
        provider = PolygonFetcher(
            api_key=settings.polygon_api_key,
            base_url=settings.polygon_base_url,
            page_limit=settings.page_limit,
            rate_limit_config=RateLimitConfig(requests_per_second=settings.requests_per_second),
        )

    bar_store = BarStore(database_manager)
    return SyncOrchestrator(
        provider=provider,
        bar_store=bar_store,
        job_tracker=JobTracker(database_manager, bar_store),
        calendar=MarketCalendar.from_settings(settings),
        config=SyncConfig.from_settings(settings),
    )
