"""Reconciliation of source occurrences against the mapping table and target store."""
import dataclasses
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

import requests
from botocore.exceptions import ClientError

from processor.event_processor import EventProcessor
from processor.errors import ApplyFailure, FetchFailure
from processor.models import (
    FileRef,
    MappingRecord,
    ProcessedOccurrence,
    ResourceBooking,
    SyncConfiguration,
    SyncResult,
)
from processor.normalizer import format_instant, sync_window, window_dates
from source.churchtools_client import ChurchToolsClient
from storage.event_store import EventStore
from storage.mapping_store import MappingStore

logger = logging.getLogger(__name__)


class ReconcilerState(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    DIFFING = 'diffing'
    APPLYING = 'applying'
    SWEEPING = 'sweeping'
    DONE = 'done'
    FAILED = 'failed'


@dataclasses.dataclass
class _Attachments:
    """Attachment ids after preparing an occurrence for writing."""
    source_image_id: Optional[int] = None
    target_image_id: Optional[str] = None
    source_flyer_id: Optional[int] = None
    target_flyer_id: Optional[str] = None
    uploaded: List[str] = dataclasses.field(default_factory=list)
    obsolete: List[str] = dataclasses.field(default_factory=list)


class Reconciler:
    """
    Drives one run: fetch, expand, normalize, diff, apply and sweep.

    Failures are isolated: a calendar that cannot be fetched is skipped and
    its mappings are excluded from the sweep, as are the mappings of a
    malformed appointment; an occurrence the target store rejects is skipped
    and retried on the next run.
    """

    def __init__(
        self,
        client: ChurchToolsClient,
        mapping_store: MappingStore,
        event_store: EventStore
    ):
        self.client = client
        self.mapping_store = mapping_store
        self.event_store = event_store
        self.state = ReconcilerState.IDLE

    def run(self, config: SyncConfiguration, run_start: datetime) -> SyncResult:
        """
        Reconcile all configured calendars.

        Args:
            config: Configuration snapshot of this run
            run_start: Aware start instant of this run

        Returns:
            SyncResult with counts of created, updated, unchanged and deleted events
        """
        result = SyncResult()
        run_start_key = format_instant(run_start)
        processor = EventProcessor(config)
        malformed_ids = set()

        try:
            window_start, window_end = sync_window(
                run_start, config.import_past_days, config.import_future_days, processor.zone
            )
            from_date, to_date = window_dates(window_start, window_end)
            logger.info(f"Starting reconciliation for window {from_date} to {to_date}")

            bookings = self._fetch_bookings(config, from_date, to_date, result)

            for calendar in config.calendars:
                if bookings is None:
                    # Categories would be incomplete, leave the calendar untouched
                    result.failed_calendars.append(calendar.calendar_id)
                    continue

                self._set_state(ReconcilerState.FETCHING, calendar.calendar_id)
                try:
                    appointments = self.client.fetch_appointments(
                        calendar.calendar_id, from_date, to_date
                    )
                except FetchFailure as e:
                    logger.error(f"Skipping calendar {calendar.calendar_id}: {e}")
                    result.failed_calendars.append(calendar.calendar_id)
                    result.errors.append(str(e))
                    continue

                for appointment in appointments:
                    appointment.resource_bookings = bookings.get(appointment.appointment_id, [])

                self._set_state(ReconcilerState.DIFFING, calendar.calendar_id)
                processed, skipped = processor.process_appointments(
                    appointments, window_start, window_end
                )
                result.skipped += len(skipped)
                malformed_ids.update(skipped)

                self._set_state(ReconcilerState.APPLYING, calendar.calendar_id)
                for item in processed:
                    self._apply(item, processor, run_start_key, result)

            self._set_state(ReconcilerState.SWEEPING)
            removed = self.mapping_store.sweep_stale(
                run_start_key,
                skip_calendar_ids=result.failed_calendars,
                skip_appointment_ids=malformed_ids,
                before_delete=self._delete_target
            )
            result.deleted = len(removed)

        except Exception:
            self._set_state(ReconcilerState.FAILED)
            raise

        self._set_state(ReconcilerState.DONE)
        logger.info(
            "Reconciliation complete",
            extra={
                'events_created': result.created,
                'events_updated': result.updated,
                'events_unchanged': result.unchanged,
                'events_deleted': result.deleted,
                'occurrences_skipped': result.skipped,
                'failed_calendars': result.failed_calendars,
            }
        )
        return result

    def _set_state(self, state: ReconcilerState, calendar_id: Optional[int] = None) -> None:
        self.state = state
        if calendar_id is None:
            logger.debug(f"Reconciler state: {state.value}")
        else:
            logger.debug(f"Reconciler state: {state.value} (calendar {calendar_id})")

    def _fetch_bookings(
        self,
        config: SyncConfiguration,
        from_date,
        to_date,
        result: SyncResult
    ) -> Optional[Dict[int, List[ResourceBooking]]]:
        if config.resource_type_for_categories < 0:
            return {}
        try:
            return self.client.fetch_resource_bookings(
                config.resource_type_for_categories, from_date, to_date
            )
        except FetchFailure as e:
            logger.error(f"Skipping all calendars, resource bookings unavailable: {e}")
            result.errors.append(str(e))
            return None

    def _apply(
        self,
        processed: ProcessedOccurrence,
        processor: EventProcessor,
        run_start_key: str,
        result: SyncResult
    ) -> None:
        occurrence = processed.occurrence
        occurrence_start = format_instant(occurrence.start)
        record = self.mapping_store.find(occurrence.source_appointment_id, occurrence_start)

        if record is None:
            try:
                self._create(processed, processor, run_start_key)
                result.created += 1
            except ApplyFailure as e:
                logger.error(f"Failed to create event for '{occurrence.title}' at {occurrence_start}: {e}")
                result.errors.append(str(e))
            return

        if record.fingerprint == processed.fingerprint:
            self.mapping_store.mark_seen(record.source_appointment_id, record.occurrence_start, run_start_key)
            result.unchanged += 1
            return

        try:
            self._update(processed, processor, record, run_start_key)
            result.updated += 1
        except ApplyFailure as e:
            logger.error(f"Failed to update event {record.target_record_id} ('{occurrence.title}'): {e}")
            result.errors.append(str(e))
            # Keep the old fingerprint so the update is retried, but protect the row from the sweep
            self.mapping_store.mark_seen(record.source_appointment_id, record.occurrence_start, run_start_key)

    def _create(self, processed: ProcessedOccurrence, processor: EventProcessor, run_start_key: str) -> None:
        occurrence = processed.occurrence
        attachments = self._prepare_attachments(processed, processor.config, None)

        event = processor.build_target_event(
            processed, attachments.target_image_id, attachments.target_flyer_id
        )
        try:
            target_id = self.event_store.create_event(event)
        except ApplyFailure:
            self._discard_attachments(attachments.uploaded)
            raise

        record = MappingRecord(
            record_id=MappingStore.new_record_id(),
            source_appointment_id=occurrence.source_appointment_id,
            calendar_id=occurrence.calendar_id,
            target_record_id=target_id,
            occurrence_start=format_instant(occurrence.start),
            occurrence_end=format_instant(occurrence.end),
            last_seen_at=run_start_key,
            repeating_group_id=occurrence.repeating_group_id,
            source_image_id=attachments.source_image_id,
            target_image_id=attachments.target_image_id,
            source_flyer_id=attachments.source_flyer_id,
            target_flyer_id=attachments.target_flyer_id,
            fingerprint=processed.fingerprint
        )
        try:
            self.mapping_store.upsert(record)
        except ClientError:
            # Without its mapping the event would be orphaned
            self.event_store.delete_event(target_id)
            self._discard_attachments(attachments.uploaded)
            raise

        logger.info(f"Created event {target_id} for '{occurrence.title}' at {record.occurrence_start}")

    def _update(
        self,
        processed: ProcessedOccurrence,
        processor: EventProcessor,
        record: MappingRecord,
        run_start_key: str
    ) -> None:
        occurrence = processed.occurrence
        attachments = self._prepare_attachments(processed, processor.config, record)

        event = processor.build_target_event(
            processed, attachments.target_image_id, attachments.target_flyer_id
        )
        try:
            self.event_store.update_event(record.target_record_id, event)
        except ApplyFailure:
            self._discard_attachments(attachments.uploaded)
            raise

        self.mapping_store.upsert(dataclasses.replace(
            record,
            calendar_id=occurrence.calendar_id,
            occurrence_end=format_instant(occurrence.end),
            last_seen_at=run_start_key,
            repeating_group_id=occurrence.repeating_group_id,
            source_image_id=attachments.source_image_id,
            target_image_id=attachments.target_image_id,
            source_flyer_id=attachments.source_flyer_id,
            target_flyer_id=attachments.target_flyer_id,
            fingerprint=processed.fingerprint
        ))
        self._discard_attachments(attachments.obsolete)
        logger.info(f"Updated event {record.target_record_id} for '{occurrence.title}'")

    def _prepare_attachments(
        self,
        processed: ProcessedOccurrence,
        config: SyncConfiguration,
        record: Optional[MappingRecord]
    ) -> _Attachments:
        """
        Upload new or changed image and flyer files.

        With an image attribute configured the image is embedded by URL and
        never stored.
        """
        occurrence = processed.occurrence
        attachments = _Attachments()

        embed_image = bool(config.em_image_attribute_name)
        attachments.source_image_id, attachments.target_image_id = self._sync_attachment(
            None if embed_image else occurrence.image,
            record.source_image_id if record else None,
            record.target_image_id if record else None,
            attachments
        )
        if embed_image and occurrence.image:
            attachments.source_image_id = occurrence.image.file_id

        attachments.source_flyer_id, attachments.target_flyer_id = self._sync_attachment(
            occurrence.flyer,
            record.source_flyer_id if record else None,
            record.target_flyer_id if record else None,
            attachments
        )
        return attachments

    def _sync_attachment(
        self,
        ref: Optional[FileRef],
        current_source_id: Optional[int],
        current_target_id: Optional[str],
        attachments: _Attachments
    ) -> Tuple[Optional[int], Optional[str]]:
        if ref is None:
            if current_target_id:
                attachments.obsolete.append(current_target_id)
            return None, None

        if ref.file_id == current_source_id and current_target_id:
            return current_source_id, current_target_id

        if not self.event_store.attachments_enabled or not ref.url:
            return ref.file_id, None

        try:
            content, content_type = self.client.download_file(ref.url)
        except requests.RequestException as e:
            self._discard_attachments(attachments.uploaded)
            raise ApplyFailure(f"Download of {ref.name} failed: {e}") from e

        try:
            key = self.event_store.store_attachment(ref.name, content, content_type)
        except ApplyFailure:
            self._discard_attachments(attachments.uploaded)
            raise

        attachments.uploaded.append(key)
        if current_target_id:
            attachments.obsolete.append(current_target_id)
        return ref.file_id, key

    def _delete_target(self, record: MappingRecord) -> None:
        self.event_store.delete_event(record.target_record_id)
        for key in (record.target_image_id, record.target_flyer_id):
            self._discard_attachment(key)
        logger.info(f"Deleted event {record.target_record_id} (no longer in source)")

    def _discard_attachments(self, keys: List[str]) -> None:
        for key in keys:
            self._discard_attachment(key)

    def _discard_attachment(self, key: Optional[str]) -> None:
        if not key:
            return
        try:
            self.event_store.delete_attachment(key)
        except ApplyFailure as e:
            logger.warning(f"Leaving orphaned attachment {key}: {e}")


def forget_target(
    mapping_store: MappingStore,
    event_store: EventStore,
    target_record_id: str
) -> Optional[MappingRecord]:
    """
    Drop the mapping of a target event that was deleted directly.

    Attachments of the event are removed as well. The occurrence is
    recreated on the next run if it still exists in the source.

    Args:
        mapping_store: Mapping table
        event_store: Target event store
        target_record_id: Id of the deleted target event

    Returns:
        The removed MappingRecord or None
    """
    record = mapping_store.delete_by_target_id(target_record_id)
    if record is None:
        return None

    for key in (record.target_image_id, record.target_flyer_id):
        if not key:
            continue
        try:
            event_store.delete_attachment(key)
        except ApplyFailure as e:
            logger.warning(f"Leaving orphaned attachment {key}: {e}")

    logger.info(f"Removed mapping of deleted target event {target_record_id}")
    return record
