"""
Polygon.io Aggregates Fetcher

REST client for the v2 aggregates endpoint. Each call returns a single page;
pagination across pages is driven by the caller through the next_url cursor.

Rate limits vary by plan. The default bucket allows 5 requests per second;
pass a slower RateLimitConfig on the free tier.
"""

import logging
from datetime import datetime
from decimal import InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from core.database.models import Timeframe
from data.bars import Bar, bar_from_candle, ensure_utc
from .base_fetcher import (
    BaseFetcher, ProviderPage, ProviderStatus, ProviderUnavailable, RateLimitConfig
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "OK": ProviderStatus.OK,
    "DELAYED": ProviderStatus.DELAYED,
}


def parse_status(raw: Optional[str]) -> ProviderStatus:
    """Map the upstream status string onto ProviderStatus; anything unknown is an error."""
    return _STATUS_MAP.get(str(raw or "").upper(), ProviderStatus.ERROR)


class PolygonFetcher(BaseFetcher):
    """
    Polygon.io historical aggregates provider.

    Features:
    - Minute, hour and day aggregates for US equities
    - Cursor pagination via next_url
    - Token bucket rate limiting shared by all requests of this instance
    """

    BASE_URL = "https://api.polygon.io"

    def __init__(self,
                 api_key: str,
                 base_url: Optional[str] = None,
                 page_limit: int = 5000,
                 rate_limit_config: Optional[RateLimitConfig] = None,
                 timeout: float = 30.0):
        """
        Initialize Polygon.io fetcher.

        Args:
            api_key: Polygon.io API key
            base_url: Override for the REST host
            page_limit: Maximum bars per page requested from the API
            rate_limit_config: Rate limiting configuration
            timeout: Request timeout
        """
        if not api_key:
            raise ValueError("Polygon API key is required")

        super().__init__(
            api_key=api_key,
            rate_limit_config=rate_limit_config or RateLimitConfig(requests_per_second=5.0, burst_size=5),
            timeout=timeout
        )
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.page_limit = page_limit

        logger.info(f"PolygonFetcher initialized with API key ending in ...{api_key[-4:]}")

    def _aggregates_url(self, symbol: str, timeframe: Timeframe,
                        start: datetime, end: datetime) -> str:
        multiplier, timespan = Timeframe.parse(timeframe).polygon_params
        start_str = ensure_utc(start).strftime("%Y-%m-%d")
        end_str = ensure_utc(end).strftime("%Y-%m-%d")
        return (f"{self.base_url}/v2/aggs/ticker/{symbol.upper()}/range/"
                f"{multiplier}/{timespan}/{start_str}/{end_str}")

    def _with_api_key(self, url: str) -> str:
        """next_url comes back without credentials; add them to the query string."""
        parts = urlsplit(url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k.lower() != "apikey"]
        query.append(("apiKey", self.api_key))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    async def fetch_page(self,
                         symbol: str,
                         timeframe: Timeframe,
                         start: datetime,
                         end: datetime,
                         cursor: Optional[str] = None) -> ProviderPage:
        """
        Fetch one page of aggregates.

        Args:
            symbol: Trading symbol
            timeframe: Bar granularity
            start: Range start (date part is sent)
            end: Range end (date part is sent)
            cursor: next_url from the previous page

        Returns:
            ProviderPage; status ERROR pages are returned, not raised
        """
        timeframe = Timeframe.parse(timeframe)

        if cursor:
            data = await self._get_json(self._with_api_key(cursor))
        else:
            params = {
                "adjusted": "true",
                "sort": "asc",
                "limit": self.page_limit,
                "apiKey": self.api_key,
            }
            data = await self._get_json(self._aggregates_url(symbol, timeframe, start, end), params=params)

        return self._parse_aggregates_response(data, symbol, timeframe)

    def _parse_aggregates_response(self, data: Dict[str, Any],
                                   symbol: str, timeframe: Timeframe) -> ProviderPage:
        """Parse aggregates API response."""
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"Unexpected aggregates payload: {type(data).__name__}")

        status = parse_status(data.get("status"))
        message = data.get("error") or data.get("message")

        if status is ProviderStatus.ERROR:
            return ProviderPage(status=status, message=message or f"status={data.get('status')}")

        bars: List[Bar] = []
        for candle in data.get("results") or []:
            try:
                bars.append(bar_from_candle(symbol, timeframe, candle))
            except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                logger.warning(f"Skipping malformed candle for {symbol}: {candle} ({e})")

        return ProviderPage(
            status=status,
            bars=bars,
            next_cursor=data.get("next_url") or None,
            message=message,
        )
