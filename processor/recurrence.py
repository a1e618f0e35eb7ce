"""Expansion of recurring appointments into concrete occurrences."""
import logging
from datetime import date, datetime, time
from typing import List, Optional
from zoneinfo import ZoneInfo

from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, rrule, rruleset, weekday

from processor.errors import MalformedOccurrence
from processor.models import Appointment, SourceOccurrence

logger = logging.getLogger(__name__)

# Source repeat ids
REPEAT_NONE = 0
REPEAT_DAILY = 1
REPEAT_WEEKLY = 7
REPEAT_MONTHLY_BY_DATE = 31
REPEAT_MONTHLY_BY_WEEKDAY = 32
REPEAT_YEARLY = 365
REPEAT_MANUAL = 999

LAST_WEEK_OF_MONTH = 6

FREQUENCIES = {
    REPEAT_DAILY: DAILY,
    REPEAT_WEEKLY: WEEKLY,
    REPEAT_MONTHLY_BY_DATE: MONTHLY,
    REPEAT_MONTHLY_BY_WEEKDAY: MONTHLY,
    REPEAT_YEARLY: YEARLY,
}

MAX_OCCURRENCES = 1000


def localize(value: datetime, zone: ZoneInfo) -> datetime:
    """
    Express a source datetime in zone.

    Date-only values arrive naive and are taken as wall-clock time in zone.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def expand(
    appointment: Appointment,
    window_start: datetime,
    window_end: datetime,
    zone: ZoneInfo
) -> List[SourceOccurrence]:
    """
    Expand an appointment into the occurrences overlapping the window.

    Recurrence is evaluated on the source wall clock in zone, so a series
    keeps its local start time across DST changes. The result depends only
    on the appointment and the window.

    Args:
        appointment: Appointment definition
        window_start: Aware window start
        window_end: Aware window end
        zone: Zone the series is defined in

    Returns:
        Occurrences ordered by start

    Raises:
        MalformedOccurrence: If start/end are missing or the rule is unknown
    """
    if appointment.start is None or appointment.end is None:
        raise MalformedOccurrence(
            f"Appointment {appointment.appointment_id} is missing start or end"
        )

    local_start = localize(appointment.start, zone)
    local_end = localize(appointment.end, zone)
    if local_end < local_start:
        raise MalformedOccurrence(
            f"Appointment {appointment.appointment_id} ends before it starts"
        )

    if not appointment.is_recurring:
        if _outside(local_start, local_end, window_start, window_end):
            return []
        return [_occurrence(appointment, local_start, local_end, None)]

    naive_start = local_start.replace(tzinfo=None)
    duration = local_end.replace(tzinfo=None) - naive_start
    rules = _build_ruleset(appointment, naive_start)

    lower = window_start.astimezone(zone).replace(tzinfo=None) - duration
    upper = window_end.astimezone(zone).replace(tzinfo=None)

    occurrences = []
    for naive in rules.between(lower, upper, inc=True):
        occ_start = naive.replace(tzinfo=zone)
        occ_end = (naive + duration).replace(tzinfo=zone)
        if _outside(occ_start, occ_end, window_start, window_end):
            continue
        occurrences.append(
            _occurrence(appointment, occ_start, occ_end, appointment.appointment_id)
        )
        if len(occurrences) >= MAX_OCCURRENCES:
            logger.warning(
                f"Appointment {appointment.appointment_id} reached the limit of "
                f"{MAX_OCCURRENCES} occurrences, remaining ones are ignored"
            )
            break

    logger.debug(
        f"Expanded appointment {appointment.appointment_id} into "
        f"{len(occurrences)} occurrences"
    )
    return occurrences


def _build_ruleset(appointment: Appointment, naive_start: datetime) -> rruleset:
    rules = rruleset()
    start_time = naive_start.time()

    if appointment.repeat_id != REPEAT_MANUAL:
        frequency = FREQUENCIES.get(appointment.repeat_id)
        if frequency is None:
            raise MalformedOccurrence(
                f"Appointment {appointment.appointment_id} has unknown "
                f"repeat id {appointment.repeat_id}"
            )

        kwargs = {
            'dtstart': naive_start,
            'interval': max(appointment.repeat_frequency or 1, 1),
            'until': _until(appointment.repeat_until),
        }
        if appointment.repeat_id == REPEAT_MONTHLY_BY_WEEKDAY:
            kwargs['byweekday'] = _nth_weekday(naive_start, appointment.repeat_option)
        rules.rrule(rrule(frequency, **kwargs))
        # The first date always belongs to the series
        rules.rdate(naive_start)
    else:
        rules.rdate(naive_start)

    for addition in appointment.additions:
        rules.rdate(datetime.combine(addition, start_time))
    for exception in appointment.exceptions:
        rules.exdate(datetime.combine(exception, start_time))

    return rules


def _until(repeat_until: Optional[date]) -> Optional[datetime]:
    if repeat_until is None:
        return None
    return datetime.combine(repeat_until, time.max)


def _nth_weekday(naive_start: datetime, repeat_option: Optional[int]) -> weekday:
    if repeat_option is None:
        ordinal = (naive_start.day - 1) // 7 + 1
    elif repeat_option == LAST_WEEK_OF_MONTH:
        ordinal = -1
    else:
        ordinal = repeat_option
    return weekday(naive_start.weekday(), ordinal)


def _outside(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    return end < window_start or start > window_end


def _occurrence(
    appointment: Appointment,
    start: datetime,
    end: datetime,
    repeating_group_id: Optional[int]
) -> SourceOccurrence:
    return SourceOccurrence(
        source_appointment_id=appointment.appointment_id,
        calendar_id=appointment.calendar_id,
        start=start,
        end=end,
        repeating_group_id=repeating_group_id,
        title=appointment.title,
        description=appointment.description,
        image=appointment.image,
        flyer=appointment.flyer,
        tags=frozenset(appointment.tags),
        resource_bookings=frozenset(appointment.resource_bookings),
        link=appointment.link,
        address=appointment.address,
        all_day=appointment.all_day,
    )
