"""Timestamp normalization between source offsets and the target time zone.

Source timestamps carry their own UTC offset. Every endpoint is converted
from its own absolute instant into the target zone, so an event that starts
in summer time and ends in winter time keeps its correct local end time.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo

from processor.errors import MalformedOccurrence
from processor.models import LocalStamp

logger = logging.getLogger(__name__)

INSTANT_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'
DATE_FORMAT = '%Y-%m-%d'
TIME_FORMAT = '%H:%M:%S'


def get_zone(name: str) -> ZoneInfo:
    """
    Resolve an IANA zone name.

    Args:
        name: Zone name, e.g. "Europe/Zurich"

    Returns:
        ZoneInfo instance
    """
    return ZoneInfo(name)


def parse_source_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp with offset as sent by the source calendar.

    Args:
        value: Timestamp such as "2025-10-25T20:00:00+02:00" or "...Z"

    Returns:
        Timezone-aware datetime keeping the original offset

    Raises:
        MalformedOccurrence: If the value is empty, unparseable or naive
    """
    if not value:
        raise MalformedOccurrence("Missing timestamp")

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MalformedOccurrence(f"Invalid timestamp '{value}': {e}") from e

    if parsed.tzinfo is None:
        raise MalformedOccurrence(f"Timestamp '{value}' has no UTC offset")

    return parsed


def normalize(
    source_start: datetime,
    source_end: datetime,
    target_zone: ZoneInfo
) -> Tuple[datetime, datetime]:
    """
    Convert a source interval into the target zone's local representation.

    Each endpoint is converted independently from its absolute instant.

    Args:
        source_start: Aware start instant
        source_end: Aware end instant
        target_zone: Zone of the target event store

    Returns:
        Tuple of (local_start, local_end), aware in target_zone
    """
    if source_start.tzinfo is None or source_end.tzinfo is None:
        raise MalformedOccurrence("Cannot normalize naive timestamps")

    local_start = source_start.astimezone(target_zone)
    local_end = source_end.astimezone(target_zone)
    return local_start, local_end


def to_local_stamp(local: datetime) -> LocalStamp:
    """
    Serialize a local datetime to date and time strings.

    The fold is kept so the ambiguous hour at the end of daylight saving
    time maps back to the right instant.
    """
    return LocalStamp(
        date=local.strftime(DATE_FORMAT),
        time=local.strftime(TIME_FORMAT),
        fold=local.fold
    )


def from_local_stamp(stamp: LocalStamp, zone: ZoneInfo) -> datetime:
    """
    Re-attach a stored local date and time to its zone.

    Args:
        stamp: Stored local date/time
        zone: Zone the stamp was written in

    Returns:
        Aware datetime in zone
    """
    day = datetime.strptime(stamp.date, DATE_FORMAT).date()
    clock = datetime.strptime(stamp.time, TIME_FORMAT).time()
    return datetime.combine(day, clock, tzinfo=zone).replace(fold=stamp.fold)


def format_instant(value: datetime) -> str:
    """Format an aware datetime as a fixed-width UTC string."""
    return value.astimezone(timezone.utc).strftime(INSTANT_FORMAT)


def parse_instant(value: str) -> datetime:
    """Parse a string written by format_instant."""
    return datetime.strptime(value, INSTANT_FORMAT).replace(tzinfo=timezone.utc)


def wall_clock_duration(local_start: datetime, local_end: datetime) -> timedelta:
    # Same tzinfo: Python subtracts wall-clock values; strip it to be explicit
    return local_end.replace(tzinfo=None) - local_start.replace(tzinfo=None)


def sync_window(
    now: datetime,
    past_days: int,
    future_days: int,
    zone: ZoneInfo
) -> Tuple[datetime, datetime]:
    """
    Calculate the sync window from signed day offsets.

    The offsets are plain date arithmetic: a negative past_days moves the
    window start into the future and a negative future_days moves the end
    into the past. Nothing is clamped.

    Args:
        now: Current instant
        past_days: Days before today to start the window
        future_days: Days after today to end the window
        zone: Zone in which "today" is evaluated

    Returns:
        Tuple of (window_start, window_end), aware datetimes in zone
    """
    today = now.astimezone(zone).date()
    from_date = today - timedelta(days=past_days)
    to_date = today + timedelta(days=future_days)

    window_start = datetime.combine(from_date, time.min, tzinfo=zone)
    window_end = datetime.combine(to_date, time.max, tzinfo=zone)
    logger.debug(f"Sync window: {from_date} to {to_date}")
    return window_start, window_end


def window_dates(window_start: datetime, window_end: datetime) -> Tuple[date, date]:
    """Return the window as inclusive (from, to) dates for API queries."""
    return window_start.date(), window_end.date()
