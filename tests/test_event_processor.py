"""Unit tests for EventProcessor."""
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from processor.errors import MalformedOccurrence
from processor.event_processor import EventProcessor
from processor.models import FileRef
from processor.normalizer import sync_window
from processor.recurrence import expand

RUN_START = datetime(2025, 10, 20, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def processor(sync_config):
    return EventProcessor(sync_config)


@pytest.fixture
def window(processor):
    return sync_window(RUN_START, 0, 30, processor.zone)


class TestEventProcessor:
    """Test cases for EventProcessor class."""

    def test_process_appointments_valid_appointment(self, processor, window, make_appointment):
        """Test processing a valid appointment."""
        appointment = make_appointment(
            title='Gottesdienst',
            start='2025-10-25T20:00:00+02:00',
            end='2025-10-26T09:00:00+01:00',
            description='<p>Willkommen</p>'
        )

        processed, skipped = processor.process_appointments([appointment], *window)

        assert skipped == []
        assert len(processed) == 1
        item = processed[0]
        assert item.local_start.strftime('%Y-%m-%d %H:%M') == '2025-10-25 20:00'
        assert item.local_end.strftime('%Y-%m-%d %H:%M') == '2025-10-26 09:00'
        assert item.categories == frozenset({'Worship'})
        assert len(item.fingerprint) == 64

    def test_process_appointments_skips_malformed(self, processor, window, make_appointment):
        """Test that malformed appointments are skipped without stopping the batch."""
        appointments = [
            make_appointment(appointment_id=1, start=None),
            make_appointment(appointment_id=2, repeat_id=5),
            make_appointment(appointment_id=3, title='   '),
            make_appointment(appointment_id=4),
        ]

        processed, skipped = processor.process_appointments(appointments, *window)

        assert skipped == [1, 2, 3]
        assert [item.occurrence.source_appointment_id for item in processed] == [4]

    def test_process_appointments_expands_series(self, processor, window, make_appointment):
        """Test that every occurrence of a series is processed."""
        appointment = make_appointment(
            start='2025-10-19T10:00:00+02:00', end='2025-10-19T11:00:00+02:00', repeat_id=7
        )

        processed, _ = processor.process_appointments([appointment], *window)

        assert len(processed) == 4
        assert len({item.fingerprint for item in processed}) == 4

    def test_process_appointments_empty_list(self, processor, window):
        """Test processing empty list."""
        assert processor.process_appointments([], *window) == ([], [])

    def test_process_occurrence_rejects_empty_title(self, processor, window, make_appointment):
        """Test that an occurrence without title is malformed."""
        occurrence = expand(make_appointment(title=''), *window, processor.zone)[0]

        with pytest.raises(MalformedOccurrence):
            processor.process_occurrence(occurrence)


class TestFingerprint:
    """Test cases for fingerprint generation."""

    def _process(self, processor, window, appointment):
        processed, _ = processor.process_appointments([appointment], *window)
        return processed[0]

    def test_fingerprint_is_stable(self, processor, window, make_appointment):
        """Test that the same input always yields the same fingerprint."""
        first = self._process(processor, window, make_appointment())
        second = self._process(processor, window, make_appointment())

        assert first.fingerprint == second.fingerprint

    @pytest.mark.parametrize('changes', [
        {'title': 'Abendmahl'},
        {'description': 'Neu'},
        {'start': '2025-10-26T09:30:00+01:00'},
        {'end': '2025-10-26T12:00:00+01:00'},
        {'image': FileRef(file_id=9, name='bild.jpg', url='https://example.com/bild.jpg')},
        {'flyer': FileRef(file_id=10, name='flyer.pdf', url='https://example.com/flyer.pdf')},
        {'link': 'https://example.com'},
        {'address': 'Kirchgasse 1, 8001 Zürich'},
    ])
    def test_fingerprint_changes_with_content(self, processor, window, make_appointment, changes):
        """Test that any change of the target representation changes the fingerprint."""
        original = self._process(processor, window, make_appointment())
        changed = self._process(processor, window, make_appointment(**changes))

        assert original.fingerprint != changed.fingerprint

    def test_fingerprint_changes_with_categories(self, sync_config, window, make_appointment):
        """Test that a changed calendar category changes the fingerprint."""
        other_config = replace(
            sync_config,
            calendars=(replace(sync_config.calendars[0], category='Events'),) + sync_config.calendars[1:]
        )

        original = self._process(EventProcessor(sync_config), window, make_appointment())
        changed = self._process(EventProcessor(other_config), window, make_appointment())

        assert original.fingerprint != changed.fingerprint


class TestBuildTargetEvent:
    """Test cases for target event construction."""

    def test_build_target_event(self, processor, window, make_appointment):
        """Test that local times and metadata are carried over."""
        appointment = make_appointment(
            start='2025-10-25T20:00:00+02:00',
            end='2025-10-26T09:00:00+01:00',
            link='https://example.com/live',
            address='Kirchgasse 1'
        )
        processed, _ = processor.process_appointments([appointment], *window)

        event = processor.build_target_event(processed[0], flyer_attachment_id='attachments/x/flyer.pdf')

        assert event.title == 'Gottesdienst'
        assert event.start.date == '2025-10-25'
        assert event.start.time == '20:00:00'
        assert event.end.date == '2025-10-26'
        assert event.end.time == '09:00:00'
        assert event.timezone == 'Europe/Zurich'
        assert event.categories == ['Worship']
        assert event.link == 'https://example.com/live'
        assert event.location == 'Kirchgasse 1'
        assert event.flyer_attachment_id == 'attachments/x/flyer.pdf'
        assert event.image_url is None
        assert event.attributes == {}
        assert (event.event_type, event.event_status, event.event_archetype) == ('single', 'publish', 'event')

    def test_image_embedded_by_attribute(self, sync_config, window, make_appointment):
        """Test that the image URL goes into the configured attribute."""
        processor = EventProcessor(replace(sync_config, em_image_attribute_name='header_image'))
        image = FileRef(file_id=9, name='bild.jpg', url='https://example.com/bild.jpg')
        processed, _ = processor.process_appointments([make_appointment(image=image)], *window)

        event = processor.build_target_event(processed[0])

        assert event.attributes == {'header_image': 'https://example.com/bild.jpg'}
        assert event.image_url == 'https://example.com/bild.jpg'

    def test_title_is_truncated(self, processor, window, make_appointment):
        processed, _ = processor.process_appointments([make_appointment(title='A' * 300)], *window)

        event = processor.build_target_event(processed[0])

        assert len(event.title) == EventProcessor.MAX_TITLE_LENGTH


class TestCleanDescription:
    """Test cases for description sanitizing."""

    def test_removes_scripts_and_handlers(self, processor):
        html = '<p onclick="steal()">Hallo <b>Welt</b></p><script>alert(1)</script>'

        cleaned = processor.clean_description(html)

        assert cleaned == '<p>Hallo <b>Welt</b></p>'

    def test_keeps_plain_text(self, processor):
        assert processor.clean_description('Nur Text') == 'Nur Text'

    def test_empty_description(self, processor):
        assert processor.clean_description('') == ''
        assert processor.clean_description(None) == ''

    def test_truncates_long_description(self, processor):
        cleaned = processor.clean_description('x' * 6000)

        assert len(cleaned) == EventProcessor.MAX_DESCRIPTION_LENGTH
