"""ChurchTools REST API client for calendars, appointments and resource bookings."""
import logging
import time
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from processor.errors import FetchFailure, MalformedOccurrence
from processor.models import Appointment, FileRef, ResourceBooking
from processor.normalizer import parse_source_timestamp

logger = logging.getLogger(__name__)


class ChurchToolsClient:
    """Client for the ChurchTools REST API."""

    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds

    def __init__(self, base_url: str, api_token: str, timeout: int = 30):
        """
        Initialize the API client.

        Args:
            base_url: ChurchTools URL ending with a slash
            api_token: Login token of the API user
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.base_url = base_url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Authorization': f'Login {api_token}',
            'Accept': 'application/json',
        })

    def whoami(self) -> Dict[str, Any]:
        """Return the person the token belongs to."""
        return self._get('api/whoami').get('data') or {}

    def get_calendars(self) -> List[Dict[str, Any]]:
        """
        List calendars visible to the API user.

        Returns:
            List of dicts with "id" and "name"
        """
        data = self._get('api/calendars').get('data', [])
        return [{'id': item['id'], 'name': item.get('name', '')} for item in data]

    def get_resource_types(self) -> List[Dict[str, Any]]:
        """
        List resource types.

        Returns:
            List of dicts with "id" and "name"
        """
        data = self._get('api/resource/types').get('data', [])
        return [{'id': item['id'], 'name': item.get('name', '')} for item in data]

    def fetch_appointments(
        self,
        calendar_id: int,
        from_date: date,
        to_date: date
    ) -> List[Appointment]:
        """
        Fetch appointment definitions of one calendar overlapping a date range.

        The API returns one entry per calculated occurrence; entries are
        collapsed to one definition per appointment id.

        Args:
            calendar_id: Calendar to read
            from_date: First day of the range
            to_date: Last day of the range (inclusive)

        Returns:
            List of Appointment objects

        Raises:
            FetchFailure: If the request fails after retries or the payload is invalid
        """
        logger.info(f"Fetching appointments of calendar {calendar_id} from {from_date} to {to_date}")
        params = {
            'calendar_ids[]': [calendar_id],
            'from': from_date.strftime('%Y-%m-%d'),
            'to': to_date.strftime('%Y-%m-%d'),
            'include[]': ['tags'],
        }

        try:
            payload = self._get('api/calendars/appointments', params=params)
            items = payload.get('data', [])
        except (requests.RequestException, ValueError, AttributeError) as e:
            raise FetchFailure(
                f"Failed to fetch appointments of calendar {calendar_id}: {e}",
                calendar_id=calendar_id
            ) from e

        appointments = {}
        for item in items:
            base = item.get('base', item) if isinstance(item, dict) else None
            if not base or base.get('id') is None:
                logger.warning(f"Ignoring appointment entry without id in calendar {calendar_id}")
                continue
            if base['id'] in appointments:
                continue
            try:
                appointments[base['id']] = self._parse_appointment(base, calendar_id)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse appointment {base.get('id')}: {e}")
                continue

        logger.info(f"Fetched {len(appointments)} appointments from calendar {calendar_id}")
        return list(appointments.values())

    def fetch_resource_bookings(
        self,
        resource_type_id: int,
        from_date: date,
        to_date: date
    ) -> Dict[int, List[ResourceBooking]]:
        """
        Fetch bookings of all resources of one type, keyed by appointment id.

        Args:
            resource_type_id: Resource type whose bookings are wanted
            from_date: First day of the range
            to_date: Last day of the range (inclusive)

        Returns:
            Dict mapping appointment id to its bookings

        Raises:
            FetchFailure: If a request fails after retries
        """
        try:
            resources = [
                resource for resource in self._get('api/resources').get('data', [])
                if resource.get('resourceTypeId') == resource_type_id
            ]
            if not resources:
                logger.info(f"No resources of type {resource_type_id}")
                return {}

            params = {
                'resource_ids[]': [resource['id'] for resource in resources],
                'from': from_date.strftime('%Y-%m-%d'),
                'to': to_date.strftime('%Y-%m-%d'),
            }
            items = self._get('api/bookings', params=params).get('data', [])
        except (requests.RequestException, ValueError, AttributeError) as e:
            raise FetchFailure(f"Failed to fetch bookings of resource type {resource_type_id}: {e}") from e

        names = {resource['id']: resource.get('name', '') for resource in resources}
        bookings: Dict[int, List[ResourceBooking]] = {}
        for item in items:
            base = item.get('base', item)
            appointment_id = base.get('appointmentId')
            resource = base.get('resource') or {}
            name = resource.get('name') or names.get(resource.get('id'), '')
            if appointment_id is None or not name:
                continue
            booking = ResourceBooking(resource_type_id=resource_type_id, resource_name=name)
            if booking not in bookings.setdefault(appointment_id, []):
                bookings[appointment_id].append(booking)

        logger.info(f"Fetched bookings for {len(bookings)} appointments")
        return bookings

    def download_file(self, url: str) -> Tuple[bytes, str]:
        """
        Download a file referenced by an appointment.

        Args:
            url: Absolute file URL

        Returns:
            Tuple of (content, content type)
        """
        response = self._request(url)
        content_type = response.headers.get('Content-Type', 'application/octet-stream')
        return response.content, content_type

    def _get(self, path: str, params: Optional[dict] = None) -> dict:
        return self._request(self.base_url + path, params=params).json()

    def _request(self, url: str, params: Optional[dict] = None) -> requests.Response:
        """
        Send a GET request with retry logic.

        Network errors and server errors are retried with exponential backoff,
        client errors are raised immediately.

        Raises:
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                logger.debug(f"GET {url} (attempt {attempt + 1}/{self.MAX_RETRIES})")
                response = self.session.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response

            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status is not None and status < 500:
                    logger.error(f"Request to {url} rejected with status {status}")
                    raise
                self._backoff(attempt, url, e)

            except requests.RequestException as e:
                self._backoff(attempt, url, e)

    def _backoff(self, attempt: int, url: str, error: Exception) -> None:
        if attempt < self.MAX_RETRIES - 1:
            delay = self.BASE_DELAY * (2 ** attempt)
            logger.warning(
                f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {error}. "
                f"Retrying in {delay} seconds..."
            )
            time.sleep(delay)
        else:
            logger.error(
                f"All {self.MAX_RETRIES} retry attempts failed for {url}. Last error: {error}"
            )
            raise error

    def _parse_appointment(self, base: dict, calendar_id: int) -> Appointment:
        """
        Convert an appointment payload to an Appointment.

        Unparseable dates are left empty so the processor can skip the
        appointment.
        """
        all_day = bool(base.get('allDay'))
        calendar = base.get('calendar') or {}

        return Appointment(
            appointment_id=int(base['id']),
            calendar_id=int(calendar.get('id', calendar_id)),
            title=(base.get('caption') or base.get('title') or '').strip(),
            description=base.get('information') or base.get('description') or '',
            start=self._parse_date(base.get('startDate'), all_day, False, base['id']),
            end=self._parse_date(base.get('endDate'), all_day, True, base['id']),
            all_day=all_day,
            repeat_id=int(base.get('repeatId') or 0),
            repeat_frequency=int(base.get('repeatFrequency') or 1),
            repeat_until=self._parse_day(base.get('repeatUntil')),
            repeat_option=base.get('repeatOption'),
            exceptions=self._parse_days(base.get('exceptions')),
            additions=self._parse_days(base.get('additions')),
            image=self._parse_file(base.get('image')),
            flyer=self._parse_file(base.get('flyer')),
            link=base.get('link') or '',
            address=self._parse_address(base.get('address')),
            tags=self._parse_tags(base.get('tags')),
        )

    def _parse_date(self, value, all_day: bool, is_end: bool, appointment_id) -> Optional[datetime]:
        if not value:
            return None
        try:
            if all_day and len(value) == 10:
                day = datetime.strptime(value, '%Y-%m-%d')
                # All-day end dates are inclusive
                return day + timedelta(days=1) - timedelta(seconds=1) if is_end else day
            return parse_source_timestamp(value)
        except (MalformedOccurrence, ValueError) as e:
            logger.warning(f"Invalid date '{value}' in appointment {appointment_id}: {e}")
            return None

    @staticmethod
    def _parse_day(value) -> Optional[date]:
        if not value:
            return None
        try:
            return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
        except ValueError:
            logger.warning(f"Ignoring invalid date '{value}'")
            return None

    def _parse_days(self, values) -> List[date]:
        days = []
        for value in values or []:
            raw = value.get('date') if isinstance(value, dict) else value
            day = self._parse_day(raw)
            if day is not None:
                days.append(day)
        return days

    @staticmethod
    def _parse_file(value) -> Optional[FileRef]:
        if not value or value.get('id') is None:
            return None
        return FileRef(
            file_id=int(value['id']),
            name=value.get('name') or value.get('filename') or '',
            url=value.get('fileUrl') or value.get('url') or ''
        )

    @staticmethod
    def _parse_address(value) -> str:
        if not value:
            return ''
        if isinstance(value, str):
            return value.strip()
        parts = [
            value.get('meetingAt'),
            value.get('street'),
            ' '.join(filter(None, [value.get('zip'), value.get('city')])),
        ]
        return ', '.join(part.strip() for part in parts if part and part.strip())

    @staticmethod
    def _parse_tags(values) -> List[str]:
        tags = []
        for value in values or []:
            name = value.get('name') if isinstance(value, dict) else value
            if name and str(name).strip():
                tags.append(str(name).strip())
        return tags
