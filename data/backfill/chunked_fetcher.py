"""
Chunked Fetcher

Provider-level pagination inside one chunk of a download. Follows the
provider's continuation cursor until it runs out or the per-chunk request cap
is reached, pausing between requests to stay under upstream rate limits.
Macro partitioning of long ranges (years, months) happens in the caller.
"""

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, List

from core.database.models import Timeframe
from data.bars import Bar
from data.fetchers.base_fetcher import BaseFetcher, ProviderPage, ProviderStatus, ProviderUnavailable

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 50
DEFAULT_REQUEST_DELAY = 0.1


class ChunkedFetcher:
    """Bounded cursor-following fetch over a single provider"""

    def __init__(self,
                 provider: BaseFetcher,
                 max_requests: int = DEFAULT_MAX_REQUESTS,
                 request_delay: float = DEFAULT_REQUEST_DELAY,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.provider = provider
        self.max_requests = max_requests
        self.request_delay = request_delay
        self._sleep = sleep

    async def iter_pages(self,
                         symbol: str,
                         timeframe: Timeframe,
                         start: datetime,
                         end: datetime) -> AsyncIterator[ProviderPage]:
        """
        Yield provider pages for [start, end], at most max_requests of them.

        Raises:
            ProviderUnavailable: A page came back with an error status (or the
                provider raised it); no further pages are requested
        """
        timeframe = Timeframe.parse(timeframe)
        cursor = None

        for request_number in range(1, self.max_requests + 1):
            if request_number > 1 and self.request_delay > 0:
                await self._sleep(self.request_delay)

            page = await self.provider.fetch_page(symbol, timeframe, start, end, cursor=cursor)

            if page.status is ProviderStatus.ERROR:
                raise ProviderUnavailable(
                    f"Provider error for {symbol} {timeframe.value} "
                    f"{start:%Y-%m-%d}..{end:%Y-%m-%d}: {page.message or 'unknown error'}"
                )
            if page.status is ProviderStatus.DELAYED:
                logger.warning(f"Provider returned delayed data for {symbol} {timeframe.value}, using it")

            logger.debug(f"Page {request_number} for {symbol} {timeframe.value}: {len(page.bars)} bars")
            yield page

            cursor = page.next_cursor
            if not cursor:
                return

        logger.warning(
            f"Stopped paginating {symbol} {timeframe.value} after {self.max_requests} requests; "
            f"remaining pages for this chunk were not fetched"
        )

    async def fetch(self,
                    symbol: str,
                    timeframe: Timeframe,
                    start: datetime,
                    end: datetime) -> List[Bar]:
        """Collect every bar the bounded pagination yields for the range"""
        timeframe = Timeframe.parse(timeframe)
        bars: List[Bar] = []
        async for page in self.iter_pages(symbol.upper(), timeframe, start, end):
            bars.extend(page.bars)
        return bars
