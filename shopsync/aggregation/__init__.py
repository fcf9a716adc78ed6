"""
Daily Aggregation Module

Local calendar day windows. The engine is imported from
``shopsync.aggregation.engine``.
"""
from .timezone import local_date_of, local_day_window, local_range_window, yesterday

__all__ = [
    "local_date_of",
    "local_day_window",
    "local_range_window",
    "yesterday",
]
