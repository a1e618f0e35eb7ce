"""Data models for the calendar sync."""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, FrozenSet, List, Optional, Tuple


@dataclass(frozen=True)
class CalendarConfig:
    """One source calendar selected for syncing."""
    calendar_id: int
    display_name: str = ''
    category: str = ''


@dataclass(frozen=True)
class SyncConfiguration:
    """Immutable configuration snapshot for a single run."""
    url: str
    api_token: str
    calendars: Tuple[CalendarConfig, ...]
    import_past_days: int = 0
    import_future_days: int = 380
    resource_type_for_categories: int = -1
    em_image_attribute_name: str = ''
    enable_tag_categories: bool = False
    target_timezone: str = 'Europe/Zurich'

    def calendar(self, calendar_id: int) -> Optional[CalendarConfig]:
        for calendar in self.calendars:
            if calendar.calendar_id == calendar_id:
                return calendar
        return None


@dataclass(frozen=True)
class FileRef:
    """Reference to a file (image or flyer) held by the source system."""
    file_id: int
    name: str
    url: str


@dataclass(frozen=True)
class ResourceBooking:
    """A resource booked for an appointment."""
    resource_type_id: int
    resource_name: str


@dataclass
class Appointment:
    """Raw appointment definition as delivered by the source calendar."""
    appointment_id: int
    calendar_id: int
    title: str
    start: Optional[datetime]
    end: Optional[datetime]
    description: str = ''
    all_day: bool = False
    repeat_id: int = 0
    repeat_frequency: int = 1
    repeat_until: Optional[date] = None
    repeat_option: Optional[int] = None
    exceptions: List[date] = field(default_factory=list)
    additions: List[date] = field(default_factory=list)
    image: Optional[FileRef] = None
    flyer: Optional[FileRef] = None
    link: str = ''
    address: str = ''
    tags: List[str] = field(default_factory=list)
    resource_bookings: List[ResourceBooking] = field(default_factory=list)

    @property
    def is_recurring(self) -> bool:
        return self.repeat_id != 0


@dataclass(frozen=True)
class SourceOccurrence:
    """One concrete dated instance of an appointment."""
    source_appointment_id: int
    calendar_id: int
    start: datetime
    end: datetime
    repeating_group_id: Optional[int]
    title: str
    description: str = ''
    image: Optional[FileRef] = None
    flyer: Optional[FileRef] = None
    tags: FrozenSet[str] = frozenset()
    resource_bookings: FrozenSet[ResourceBooking] = frozenset()
    link: str = ''
    address: str = ''
    all_day: bool = False


@dataclass(frozen=True)
class LocalStamp:
    """Local wall-clock representation of an instant, as stored in the target."""
    date: str
    time: str
    fold: int = 0


@dataclass
class ProcessedOccurrence:
    """Occurrence normalized to the target zone and ready to apply."""
    occurrence: SourceOccurrence
    local_start: datetime
    local_end: datetime
    categories: FrozenSet[str]
    fingerprint: str


@dataclass
class TargetEvent:
    """Event as written to the target event store."""
    title: str
    description: str
    start: LocalStamp
    end: LocalStamp
    timezone: str
    all_day: bool = False
    categories: List[str] = field(default_factory=list)
    link: str = ''
    location: str = ''
    image_url: Optional[str] = None
    image_attachment_id: Optional[str] = None
    flyer_attachment_id: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    event_type: str = 'single'
    event_status: str = 'publish'
    event_archetype: str = 'event'


@dataclass
class MappingRecord:
    """Persisted correspondence between a source occurrence and a target event."""
    record_id: str
    source_appointment_id: int
    calendar_id: int
    target_record_id: str
    occurrence_start: str
    occurrence_end: str
    last_seen_at: str
    repeating_group_id: Optional[int] = None
    source_image_id: Optional[int] = None
    target_image_id: Optional[str] = None
    source_flyer_id: Optional[int] = None
    target_flyer_id: Optional[str] = None
    fingerprint: str = ''


@dataclass
class RunStatus:
    """Run status as shown to dashboards."""
    in_progress: bool = False
    started_at: Optional[str] = None
    last_completed_at: Optional[str] = None
    last_run_duration_seconds: Optional[float] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class SyncResult:
    """Result of sync operation."""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    skipped: int = 0
    failed_calendars: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'created': self.created,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'deleted': self.deleted,
            'skipped': self.skipped,
            'failed_calendars': list(self.failed_calendars),
            'errors': list(self.errors),
        }
