"""Shared pytest fixtures."""
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from processor.models import Appointment, CalendarConfig, SyncConfiguration
from storage.event_store import EventStore
from storage.mapping_store import MappingStore
from storage.state_store import StateStore

REGION = 'us-east-1'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', REGION)


@pytest.fixture
def dynamodb():
    """Mocked DynamoDB resource."""
    with mock_aws():
        yield boto3.resource('dynamodb', region_name=REGION)


def create_mapping_table(dynamodb, name='test-mapping'):
    return dynamodb.create_table(
        TableName=name,
        KeySchema=[
            {'AttributeName': 'source_appointment_id', 'KeyType': 'HASH'},
            {'AttributeName': 'occurrence_start', 'KeyType': 'RANGE'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'source_appointment_id', 'AttributeType': 'N'},
            {'AttributeName': 'occurrence_start', 'AttributeType': 'S'},
            {'AttributeName': 'target_record_id', 'AttributeType': 'S'}
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': MappingStore.TARGET_INDEX,
                'KeySchema': [
                    {'AttributeName': 'target_record_id', 'KeyType': 'HASH'}
                ],
                'Projection': {'ProjectionType': 'ALL'}
            }
        ],
        BillingMode='PAY_PER_REQUEST'
    )


def create_events_table(dynamodb, name='test-events'):
    return dynamodb.create_table(
        TableName=name,
        KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'event_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )


def create_state_table(dynamodb, name='test-state'):
    return dynamodb.create_table(
        TableName=name,
        KeySchema=[{'AttributeName': 'state_key', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'state_key', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def mapping_store(dynamodb):
    create_mapping_table(dynamodb)
    return MappingStore('test-mapping', dynamodb=dynamodb)


@pytest.fixture
def s3():
    # Runs inside the mock started by the dynamodb fixture
    client = boto3.client('s3', region_name=REGION)
    client.create_bucket(Bucket='test-attachments')
    return client


@pytest.fixture
def event_store(dynamodb, s3):
    create_events_table(dynamodb)
    return EventStore('test-events', 'test-attachments', dynamodb=dynamodb, s3=s3)


@pytest.fixture
def state_store(dynamodb):
    create_state_table(dynamodb)
    return StateStore('test-state', dynamodb=dynamodb)


@pytest.fixture
def sync_config():
    """Configuration with two calendars."""
    return SyncConfiguration(
        url='https://example.church.tools/',
        api_token='secret-token',
        calendars=(
            CalendarConfig(calendar_id=1, display_name='Gottesdienste', category='Worship'),
            CalendarConfig(calendar_id=2, display_name='Jugend', category=''),
        ),
        import_past_days=0,
        import_future_days=30,
        target_timezone='Europe/Zurich'
    )


@pytest.fixture
def run_start():
    return datetime(2025, 10, 20, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_appointment():
    """Factory for appointments with sensible defaults."""
    def _make(appointment_id=100, calendar_id=1, title='Gottesdienst',
              start='2025-10-26T10:00:00+01:00', end='2025-10-26T11:00:00+01:00', **kwargs):
        return Appointment(
            appointment_id=appointment_id,
            calendar_id=calendar_id,
            title=title,
            start=datetime.fromisoformat(start) if start else None,
            end=datetime.fromisoformat(end) if end else None,
            **kwargs
        )
    return _make
