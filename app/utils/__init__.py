"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import day_bounds, parse_datetime, utc_now, yesterday

__all__ = ["day_bounds", "parse_datetime", "utc_now", "yesterday"]
