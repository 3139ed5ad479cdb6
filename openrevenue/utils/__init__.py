"""
Utilities Module
================

Helper functions and utility classes.
"""

from openrevenue.utils.helpers import ensure_utc, format_datetime, to_millis, utc_now

__all__ = ["ensure_utc", "format_datetime", "to_millis", "utc_now"]
