"""Category derivation for target events."""
from typing import FrozenSet

from processor.models import CalendarConfig, SourceOccurrence, SyncConfiguration


def categories_for(
    occurrence: SourceOccurrence,
    calendar_config: CalendarConfig,
    config: SyncConfiguration
) -> FrozenSet[str]:
    """
    Derive the target categories of an occurrence.

    The calendar's category comes first. Names of booked resources of the
    configured resource type and the appointment's tags are added when the
    corresponding options are enabled. An empty set means no category.

    Args:
        occurrence: Source occurrence
        calendar_config: Configuration of the occurrence's calendar
        config: Run configuration

    Returns:
        Set of category names
    """
    categories = set()

    if calendar_config is not None and calendar_config.category.strip():
        categories.add(calendar_config.category.strip())

    if config.resource_type_for_categories >= 0:
        for booking in occurrence.resource_bookings:
            if booking.resource_type_id == config.resource_type_for_categories:
                categories.add(booking.resource_name.strip())

    if config.enable_tag_categories:
        categories.update(tag.strip() for tag in occurrence.tags)

    categories.discard('')
    return frozenset(categories)
