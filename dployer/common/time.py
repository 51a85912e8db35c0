"""Common time utilities."""

from __future__ import annotations

import datetime as dt


def utcnow() -> dt.datetime:
    """Return an aware UTC timestamp suitable for DB defaults."""
    return dt.datetime.now(dt.UTC)


def backup_suffix(moment: dt.datetime) -> str:
    """Return the ``_backup_YYYYMMDD_HHMMSS`` suffix for a moved working copy."""
    return moment.strftime("_backup_%Y%m%d_%H%M%S")
