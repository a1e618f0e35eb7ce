"""Event processor turning source appointments into target-ready occurrences."""
import hashlib
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from processor import normalizer, recurrence
from processor.categories import categories_for
from processor.errors import MalformedOccurrence
from processor.models import (
    Appointment,
    ProcessedOccurrence,
    SourceOccurrence,
    SyncConfiguration,
    TargetEvent,
)

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processor for expanding, normalizing and fingerprinting appointments."""

    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 5000
    UNSAFE_TAGS = ['script', 'style', 'iframe', 'object', 'embed']

    def __init__(self, config: SyncConfiguration):
        """
        Initialize the processor for one run.

        Args:
            config: Configuration of the current run
        """
        self.config = config
        self.zone = normalizer.get_zone(config.target_timezone)

    def process_appointments(
        self,
        appointments: List[Appointment],
        window_start: datetime,
        window_end: datetime
    ) -> Tuple[List[ProcessedOccurrence], List[int]]:
        """
        Expand and normalize appointments of one calendar.

        Malformed appointments are logged and skipped. Their ids are returned so
        the caller can keep their existing mappings.

        Args:
            appointments: Appointments fetched for one calendar
            window_start: Aware sync window start
            window_end: Aware sync window end

        Returns:
            Tuple of (processed occurrences, appointment ids of skipped items)
        """
        processed = []
        skipped = []

        for appointment in appointments:
            try:
                occurrences = recurrence.expand(
                    appointment, window_start, window_end, self.zone
                )
            except MalformedOccurrence as e:
                logger.warning(f"Skipping appointment '{appointment.title}': {e}")
                skipped.append(appointment.appointment_id)
                continue

            for occurrence in occurrences:
                try:
                    processed.append(self.process_occurrence(occurrence))
                except MalformedOccurrence as e:
                    logger.warning(
                        f"Skipping occurrence of '{appointment.title}' "
                        f"at {occurrence.start}: {e}"
                    )
                    skipped.append(appointment.appointment_id)

        logger.info(
            f"Processed {len(processed)} occurrences from "
            f"{len(appointments)} appointments ({len(skipped)} skipped)"
        )
        return processed, skipped

    def process_occurrence(self, occurrence: SourceOccurrence) -> ProcessedOccurrence:
        """
        Normalize a single occurrence and compute its categories and fingerprint.

        Args:
            occurrence: Expanded source occurrence

        Returns:
            ProcessedOccurrence
        """
        if not occurrence.title or not occurrence.title.strip():
            raise MalformedOccurrence(
                f"Appointment {occurrence.source_appointment_id} has no title"
            )

        local_start, local_end = normalizer.normalize(
            occurrence.start, occurrence.end, self.zone
        )
        categories = categories_for(
            occurrence,
            self.config.calendar(occurrence.calendar_id),
            self.config
        )
        fingerprint = self.generate_fingerprint(
            occurrence, local_start, local_end, categories
        )

        return ProcessedOccurrence(
            occurrence=occurrence,
            local_start=local_start,
            local_end=local_end,
            categories=categories,
            fingerprint=fingerprint
        )

    def generate_fingerprint(
        self,
        occurrence: SourceOccurrence,
        local_start: datetime,
        local_end: datetime,
        categories
    ) -> str:
        """
        Generate the comparison key of an occurrence's target representation.

        Args:
            occurrence: Source occurrence
            local_start: Normalized start
            local_end: Normalized end
            categories: Derived categories

        Returns:
            SHA256 hex digest
        """
        composite = '|'.join([
            occurrence.title,
            occurrence.description or '',
            local_start.isoformat(),
            local_end.isoformat(),
            ','.join(sorted(categories)),
            str(occurrence.image.file_id) if occurrence.image else '',
            str(occurrence.flyer.file_id) if occurrence.flyer else '',
            occurrence.link or '',
            occurrence.address or '',
            self.config.em_image_attribute_name,
        ])
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()

    def build_target_event(
        self,
        processed: ProcessedOccurrence,
        image_attachment_id: Optional[str] = None,
        flyer_attachment_id: Optional[str] = None
    ) -> TargetEvent:
        """
        Build the target event for a processed occurrence.

        When an image attribute name is configured the image is embedded by
        URL instead of being stored as an attachment.

        Args:
            processed: Processed occurrence
            image_attachment_id: Stored image attachment, if any
            flyer_attachment_id: Stored flyer attachment, if any

        Returns:
            TargetEvent
        """
        occurrence = processed.occurrence
        attributes = {}
        image_url = None
        if occurrence.image and self.config.em_image_attribute_name:
            attributes[self.config.em_image_attribute_name] = occurrence.image.url
            image_url = occurrence.image.url

        return TargetEvent(
            title=occurrence.title.strip()[:self.MAX_TITLE_LENGTH],
            description=self.clean_description(occurrence.description),
            start=normalizer.to_local_stamp(processed.local_start),
            end=normalizer.to_local_stamp(processed.local_end),
            timezone=self.config.target_timezone,
            all_day=occurrence.all_day,
            categories=sorted(processed.categories),
            link=occurrence.link,
            location=occurrence.address,
            image_url=image_url,
            image_attachment_id=image_attachment_id,
            flyer_attachment_id=flyer_attachment_id,
            attributes=attributes
        )

    def clean_description(self, description: str) -> str:
        """
        Strip active content from an HTML description.

        Args:
            description: Description HTML from the source

        Returns:
            Sanitized HTML, truncated to the maximum length
        """
        if not description:
            return ''

        soup = BeautifulSoup(description, 'html.parser')
        for element in soup.find_all(self.UNSAFE_TAGS):
            element.decompose()
        for element in soup.find_all(True):
            for attribute in list(element.attrs):
                if attribute.lower().startswith('on'):
                    del element.attrs[attribute]

        return str(soup).strip()[:self.MAX_DESCRIPTION_LENGTH]
