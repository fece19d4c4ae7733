"""
Base Fetcher and Rate Limiting Infrastructure

Foundation for upstream bar providers: HTTP session lifecycle, token bucket
rate limiting, and the page/status types every provider returns.

Key Components:
- RateLimiter: Token bucket shared by all requests of one provider instance
- ProviderStatus / ProviderPage: normalized result of one upstream request
- BaseFetcher: Abstract base class for paginated bar providers
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from core.database.models import Timeframe
from data.bars import Bar

logger = logging.getLogger(__name__)


class ProviderStatus(Enum):
    """Upstream response status, closed at the fetch boundary."""
    OK = "ok"
    DELAYED = "delayed"    # Usable data, flagged stale by the provider
    ERROR = "error"


class ProviderUnavailable(Exception):
    """Network/HTTP failure or an explicit error status from the upstream provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ProviderPage:
    """One page of bars plus the continuation cursor, if any."""
    status: ProviderStatus
    bars: List[Bar] = field(default_factory=list)
    next_cursor: Optional[str] = None
    message: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return bool(self.next_cursor)


@dataclass
class RateLimitConfig:
    """Sustained request rate and how many requests may go out back to back."""
    requests_per_second: float = 5.0
    burst_size: int = 5


@dataclass
class RequestStats:
    """Counters for one provider instance."""
    requests: int = 0
    errors: int = 0

    @property
    def error_rate(self) -> float:
        return self.errors / self.requests if self.requests else 0.0


class RateLimiter:
    """
    Token bucket with burst capacity.

    The bucket refills continuously at requests_per_second up to burst_size.
    Waiters sleep for exactly the time the missing tokens take to refill.
    """

    def __init__(self, config: RateLimitConfig):
        if config.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.config = config
        self.tokens = float(config.burst_size)
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        earned = (now - self.last_refill) * self.config.requests_per_second
        self.tokens = min(float(self.config.burst_size), self.tokens + earned)
        self.last_refill = now

    async def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens if the bucket holds enough; never waits."""
        async with self._lock:
            self._refill()
            if self.tokens < tokens:
                return False
            self.tokens -= tokens
            return True

    async def acquire(self, tokens: float = 1.0, timeout: float = 300.0) -> None:
        """
        Wait until tokens are available, then take them.

        Raises:
            asyncio.TimeoutError: The bucket cannot refill within timeout
        """
        deadline = time.monotonic() + timeout
        while not await self.try_acquire(tokens):
            wait = (tokens - self.tokens) / self.config.requests_per_second
            if time.monotonic() + wait > deadline:
                raise asyncio.TimeoutError(f"Rate limiter could not grant {tokens} token(s) within {timeout}s")
            logger.debug(f"Rate limited, waiting {wait:.3f}s")
            await asyncio.sleep(wait)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'tokens': self.tokens,
            'requests_per_second': self.config.requests_per_second,
            'burst_size': self.config.burst_size,
        }


class BaseFetcher(ABC):
    """
    Abstract base class for paginated bar providers.

    Credentials are injected at construction; nothing here reads global state.
    """

    USER_AGENT = "BarSync/1.0"

    def __init__(self,
                 api_key: Optional[str] = None,
                 rate_limit_config: Optional[RateLimitConfig] = None,
                 timeout: float = 30.0):
        self.api_key = api_key
        self.timeout = timeout
        self.rate_limiter = RateLimiter(rate_limit_config or RateLimitConfig())
        self.stats = RequestStats()
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self):
        """Open the HTTP session if it is not open yet."""
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={'User-Agent': self.USER_AGENT},
        )
        logger.debug(f"{self.__class__.__name__} opened HTTP session")

    async def stop(self):
        """Close the HTTP session."""
        session, self.session = self.session, None
        if session is not None:
            await session.close()
            logger.debug(f"{self.__class__.__name__} closed HTTP session")

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Rate-limited GET returning the decoded JSON body.

        Raises:
            ProviderUnavailable: On transport errors, timeouts or non-200 responses
        """
        await self.start()
        await self.rate_limiter.acquire()
        self.stats.requests += 1

        try:
            async with self.session.get(url, params=params) as response:
                if response.status == 200:
                    return await response.json()
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats.errors += 1
            logger.error(f"{self.__class__.__name__} request failed: {e}")
            raise ProviderUnavailable(f"Request failed: {e}") from e

        self.stats.errors += 1
        logger.error(f"{self.__class__.__name__} got HTTP {response.status}")
        raise ProviderUnavailable(f"HTTP {response.status}: {body[:200]}", status_code=response.status)

    @abstractmethod
    async def fetch_page(self,
                         symbol: str,
                         timeframe: Timeframe,
                         start: datetime,
                         end: datetime,
                         cursor: Optional[str] = None) -> ProviderPage:
        """
        Fetch one page of bars for [start, end].

        Args:
            symbol: Trading symbol
            timeframe: Bar granularity
            start: Range start
            end: Range end
            cursor: Continuation token from the previous page, if any

        Returns:
            ProviderPage with the decoded bars and the next cursor
        """

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'provider': self.__class__.__name__,
            'requests': self.stats.requests,
            'errors': self.stats.errors,
            'error_rate': self.stats.error_rate,
            'rate_limiter': self.rate_limiter.get_stats(),
        }
