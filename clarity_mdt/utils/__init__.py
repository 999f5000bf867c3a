"""Utility modules."""

from clarity_mdt.utils.datetime_utils import as_utc, utcnow

__all__ = [
    "as_utc",
    "utcnow",
]
