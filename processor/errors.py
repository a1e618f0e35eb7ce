"""Exception types raised across the sync pipeline."""


class SyncError(Exception):
    """Base class for all sync errors."""


class ConfigurationInvalid(SyncError):
    """Configuration is missing the URL, the API token or any calendar."""


class FetchFailure(SyncError):
    """Fetching appointments for one calendar failed."""

    def __init__(self, message: str, calendar_id: int = None):
        super().__init__(message)
        self.calendar_id = calendar_id


class MalformedOccurrence(SyncError):
    """Appointment data cannot be turned into occurrences."""


class ApplyFailure(SyncError):
    """The target event store rejected a create, update or delete."""


class LockContention(SyncError):
    """Another run holds the run lock."""

    def __init__(self, started_at: str = None):
        message = "Sync already in progress"
        if started_at:
            message = f"{message} (started {started_at})"
        super().__init__(message)
        self.started_at = started_at


class MigrationFailure(SyncError):
    """A one-time migration body raised."""

    def __init__(self, message: str, migration_key: str = None):
        super().__init__(message)
        self.migration_key = migration_key
