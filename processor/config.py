"""Configuration provider reading the sync settings from the environment."""
import json
import logging
import os
import re
from typing import List, Mapping, Optional
from zoneinfo import ZoneInfoNotFoundError

from processor.errors import ConfigurationInvalid
from processor.models import CalendarConfig, SyncConfiguration
from processor.normalizer import get_zone

logger = logging.getLogger(__name__)

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def normalize_url(url: str) -> str:
    """Ensure the URL ends with exactly one slash."""
    return url.strip().rstrip('/') + '/'


def parse_calendar_ids(value: str) -> List[int]:
    """
    Parse calendar ids from free text, any non-digit separates ids.

    Args:
        value: Text such as "3, 7;12"

    Returns:
        List of positive calendar ids
    """
    return [int(part) for part in re.split(r'\D', value or '') if part and int(part) > 0]


def parse_categories(value: str) -> List[str]:
    return [part.strip() for part in (value or '').split(',')]


class EnvironmentConfigProvider:
    """Builds a SyncConfiguration from environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        """
        Initialize the provider.

        Args:
            environ: Mapping to read from (default: os.environ)
        """
        self.environ = os.environ if environ is None else environ

    def load(self) -> SyncConfiguration:
        """
        Load and validate the configuration.

        Returns:
            SyncConfiguration snapshot

        Raises:
            ConfigurationInvalid: If URL, token or calendars are missing, or a
                value cannot be parsed
        """
        url = self.environ.get('CHURCHTOOLS_URL', '').strip()
        api_token = self.environ.get('CHURCHTOOLS_API_TOKEN', '').strip()

        if not url:
            raise ConfigurationInvalid("CHURCHTOOLS_URL is not set")
        if not api_token:
            raise ConfigurationInvalid("CHURCHTOOLS_API_TOKEN is not set")

        calendars = self._load_calendars()
        if not calendars:
            raise ConfigurationInvalid("No calendars configured")

        timezone_name = self.environ.get('TARGET_TIMEZONE', 'Europe/Zurich').strip()
        try:
            get_zone(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationInvalid(f"Unknown time zone '{timezone_name}'") from e

        config = SyncConfiguration(
            url=normalize_url(url),
            api_token=api_token,
            calendars=tuple(calendars),
            import_past_days=self._int('IMPORT_PAST_DAYS', 0),
            import_future_days=self._int('IMPORT_FUTURE_DAYS', 380),
            resource_type_for_categories=self._int('RESOURCE_TYPE_FOR_CATEGORIES', -1),
            em_image_attribute_name=self.environ.get('EM_IMAGE_ATTRIBUTE_NAME', '').strip(),
            enable_tag_categories=(
                self.environ.get('ENABLE_TAG_CATEGORIES', 'false').strip().lower() in TRUE_VALUES
            ),
            target_timezone=timezone_name
        )
        logger.info(
            f"Loaded configuration with {len(config.calendars)} calendars",
            extra={
                'import_past_days': config.import_past_days,
                'import_future_days': config.import_future_days,
            }
        )
        return config

    def _load_calendars(self) -> List[CalendarConfig]:
        raw = self.environ.get('SYNC_CALENDARS', '').strip()
        if raw:
            try:
                entries = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigurationInvalid(f"SYNC_CALENDARS is not valid JSON: {e}") from e
            if not isinstance(entries, list):
                raise ConfigurationInvalid("SYNC_CALENDARS must be a JSON list")

            calendars = []
            for entry in entries:
                try:
                    calendars.append(CalendarConfig(
                        calendar_id=int(entry['id']),
                        display_name=str(entry.get('name') or ''),
                        category=str(entry.get('category') or '').strip()
                    ))
                except (KeyError, TypeError, ValueError) as e:
                    raise ConfigurationInvalid(f"Invalid calendar entry {entry!r}") from e
            return calendars

        # Legacy format: ids and categories paired by position
        ids = parse_calendar_ids(self.environ.get('CALENDAR_IDS', ''))
        categories = parse_categories(self.environ.get('CALENDAR_CATEGORIES', ''))
        if ids:
            logger.info("Using legacy CALENDAR_IDS/CALENDAR_CATEGORIES settings")
        return [
            CalendarConfig(
                calendar_id=calendar_id,
                category=categories[index] if index < len(categories) else ''
            )
            for index, calendar_id in enumerate(ids)
        ]

    def _int(self, name: str, default: int) -> int:
        value = self.environ.get(name, '').strip()
        if not value:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationInvalid(f"{name} must be an integer, got '{value}'") from e
