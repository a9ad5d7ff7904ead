"""Shared utility functions."""

import logging
from datetime import datetime, UTC

from kentra.constants import DATE_LOCALE_MONTHS

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_timestamp(value: int | None) -> datetime | None:
    """Convert a Stripe epoch-seconds field to an aware datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def format_date_es(value: datetime) -> str:
    """Format a date the way notifications show it, e.g. '3 de marzo de 2026'."""
    return f"{value.day} de {DATE_LOCALE_MONTHS[value.month - 1]} de {value.year}"


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
