"""Shared utility functions for the billing service."""

import logging
from datetime import datetime, UTC

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def from_unix(timestamp: int | None) -> datetime | None:
    """
    Convert a Unix timestamp in seconds to a timezone-aware UTC datetime.

    Args:
        timestamp: Seconds since the epoch, as Stripe sends them.

    Returns:
        Datetime in UTC, or None if no timestamp was given.
    """
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
