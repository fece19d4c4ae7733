"""
BarSync Data Package

Market data acquisition for the historical bar store:

- fetchers/: upstream provider implementations
- backfill/: staleness detection, chunked download and job tracking
"""

__version__ = "1.0.0"

from .bars import Bar

__all__ = [
    "Bar"
]
