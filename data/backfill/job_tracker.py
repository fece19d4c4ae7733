"""
Download Job Tracking

Durable progress records for bulk downloads. A job moves from in_progress to
completed or failed exactly once; a second request for the same
(symbol, timeframe, period) while one is in progress attaches to it.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select

from core.database.bar_store import BarStore
from core.database.database_manager import DatabaseManager
from core.database.models import JobStatus, SyncJob, Timeframe
from data.bars import ensure_utc, to_naive_utc

logger = logging.getLogger(__name__)

# Approximate US equity trading days per calendar year
TRADING_DAYS_PER_YEAR = 252

CANCELLED_MESSAGE = "cancelled"


class JobNotFoundError(Exception):
    """No job with the given id exists."""

    def __init__(self, job_id: str):
        super().__init__(f"Download job not found: {job_id}")
        self.job_id = job_id


def estimate_expected_records(timeframe: Timeframe, start: datetime, end: datetime) -> int:
    """
    Rough bar count for a range: trading days per year scaled by bars per
    session, scaled again by the span in days over 365. Never below 1.
    """
    timeframe = Timeframe.parse(timeframe)
    span_days = max((end - start).total_seconds() / 86400.0, 0.0)
    return max(1, int(TRADING_DAYS_PER_YEAR * timeframe.bars_per_session * span_days / 365))


@dataclass
class JobProgress:
    """Snapshot of a download job."""
    job_id: str
    symbol: str
    timeframe: Timeframe
    period: str
    status: JobStatus
    start_date: datetime
    end_date: datetime
    expected_records: int
    current_records: int
    percentage: float
    label: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_partial(self) -> bool:
        """Completed, but with fewer bars than estimated"""
        return self.status is JobStatus.COMPLETED and self.current_records < self.expected_records

    @classmethod
    def from_model(cls, job: SyncJob) -> "JobProgress":
        return cls(
            job_id=job.id,
            symbol=job.symbol,
            timeframe=Timeframe.parse(job.timeframe),
            period=job.period,
            status=JobStatus(job.status),
            start_date=ensure_utc(job.start_date),
            end_date=ensure_utc(job.end_date),
            expected_records=job.expected_records,
            current_records=job.current_records,
            percentage=float(job.progress_percentage or 0.0),
            label=job.current_label,
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'symbol': self.symbol,
            'timeframe': self.timeframe.value,
            'period': self.period,
            'status': self.status.value,
            'percentage': round(self.percentage, 2),
            'label': self.label,
            'current_records': self.current_records,
            'expected_records': self.expected_records,
            'error_message': self.error_message,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
        }


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobTracker:
    """
    Persists SyncJob rows and derives their progress from the bar store.

    Percentages only move forward and stay within [0, 100]; terminal jobs
    never change status again. Every database round trip goes through
    DatabaseManager.run_with_retry, so a briefly locked store is retried.
    """

    def __init__(self, database_manager: DatabaseManager, bar_store: BarStore):
        self.db = database_manager
        self.bar_store = bar_store
        # Serializes the find-or-create check within this process
        self._create_lock = threading.Lock()

    @staticmethod
    def _load(session, job_id: str) -> SyncJob:
        job = session.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def find_active(self, symbol: str, timeframe: Timeframe, period: str) -> Optional[str]:
        """Id of the in-progress job for the exact key, if any"""
        query = select(SyncJob.id).where(
            SyncJob.symbol == symbol.upper(),
            SyncJob.timeframe == Timeframe.parse(timeframe).value,
            SyncJob.period == period,
            SyncJob.status == JobStatus.IN_PROGRESS.value,
        ).order_by(SyncJob.created_at.desc()).limit(1)
        return self.db.run_with_retry(lambda session: session.execute(query).scalar())

    def create_or_attach(self,
                         symbol: str,
                         timeframe: Timeframe,
                         period: str,
                         start: datetime,
                         end: datetime) -> Tuple[str, bool]:
        """
        Create a job for the key, or return the one already in progress.

        Returns:
            (job_id, is_existing)
        """
        symbol = symbol.upper()
        timeframe = Timeframe.parse(timeframe)
        expected = estimate_expected_records(timeframe, start, end)

        def _insert(session) -> str:
            job = SyncJob(
                symbol=symbol,
                timeframe=timeframe.value,
                period=period,
                status=JobStatus.IN_PROGRESS.value,
                start_date=to_naive_utc(start),
                end_date=to_naive_utc(end),
                expected_records=expected,
                current_records=0,
                progress_percentage=0.0,
            )
            session.add(job)
            session.flush()
            return job.id

        with self._create_lock:
            existing_id = self.find_active(symbol, timeframe, period)
            if existing_id:
                logger.info(f"Attaching to running job {existing_id} for {symbol} {timeframe.value} {period}")
                return existing_id, True
            job_id = self.db.run_with_retry(_insert)

        logger.info(f"Created job {job_id} for {symbol} {timeframe.value} {period} "
                    f"({start:%Y-%m-%d} -> {end:%Y-%m-%d}, ~{expected} bars expected)")
        return job_id, False

    def _count_for(self, job_id: str) -> int:
        # Counted outside the job session so a single-connection pool is never held twice
        job = self.get_job(job_id)
        return self.bar_store.count(job.symbol, job.timeframe, job.start_date, job.end_date)

    def report_progress(self, job_id: str, label: Optional[str] = None, finalize: bool = True) -> JobProgress:
        """
        Recount stored bars for the job's range and update its percentage.

        With finalize, reaching the expected count completes the job. A caller
        that still has chunks to fetch passes finalize=False and calls
        complete() once it is done, so the job stays in progress until then.
        """
        current = self._count_for(job_id)

        def _update(session) -> JobProgress:
            job = self._load(session, job_id)
            expected = max(job.expected_records, 1)

            job.current_records = current
            job.progress_percentage = max(job.progress_percentage or 0.0,
                                          min(100.0, current / expected * 100.0))

            if job.status == JobStatus.IN_PROGRESS.value:
                if label:
                    job.current_label = label
                if finalize and (current >= expected or job.progress_percentage >= 100.0):
                    job.status = JobStatus.COMPLETED.value
                    job.completed_at = _utcnow_naive()
                    logger.info(f"Job {job_id} reached its expected record count ({current}/{expected})")

            job.updated_at = _utcnow_naive()
            logger.debug(f"Job {job_id}: {current}/{expected} bars ({job.progress_percentage:.1f}%)")
            return JobProgress.from_model(job)

        return self.db.run_with_retry(_update)

    def complete(self, job_id: str) -> JobProgress:
        """Mark an in-progress job completed at 100%, whatever the observed count."""
        current = self._count_for(job_id)

        def _update(session) -> JobProgress:
            job = self._load(session, job_id)
            if job.status != JobStatus.IN_PROGRESS.value:
                logger.debug(f"Job {job_id} already {job.status}, not completing")
                return JobProgress.from_model(job)

            job.current_records = current
            job.progress_percentage = 100.0
            job.status = JobStatus.COMPLETED.value
            job.completed_at = _utcnow_naive()
            job.updated_at = job.completed_at

            if job.current_records < job.expected_records:
                logger.info(f"Job {job_id} completed with {job.current_records}/{job.expected_records} "
                            f"expected bars")
            else:
                logger.info(f"Job {job_id} completed ({job.current_records} bars)")
            return JobProgress.from_model(job)

        return self.db.run_with_retry(_update)

    def fail(self, job_id: str, message: str) -> JobProgress:
        """Mark an in-progress job failed. Bars already written are kept."""
        current = self._count_for(job_id)

        def _update(session) -> JobProgress:
            job = self._load(session, job_id)
            if job.status != JobStatus.IN_PROGRESS.value:
                logger.warning(f"Job {job_id} already {job.status}, ignoring failure: {message}")
                return JobProgress.from_model(job)

            job.current_records = current
            job.status = JobStatus.FAILED.value
            job.error_message = message
            job.completed_at = _utcnow_naive()
            job.updated_at = job.completed_at

            logger.error(f"Job {job_id} failed: {message}")
            return JobProgress.from_model(job)

        return self.db.run_with_retry(_update)

    def get_job(self, job_id: str) -> JobProgress:
        return self.db.run_with_retry(lambda session: JobProgress.from_model(self._load(session, job_id)))

    def get_progress(self, job_id: str) -> Dict[str, Any]:
        """Polling view: percentage, status and label plus record counts"""
        return self.get_job(job_id).to_dict()
