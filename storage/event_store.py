"""Target event store: events in DynamoDB, attachments in S3."""
import logging
import time
import uuid
from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.errors import ApplyFailure
from processor.models import TargetEvent

logger = logging.getLogger(__name__)


class EventStore:
    """Manager for target events and their image/flyer attachments."""

    def __init__(self, table_name: str, bucket_name: Optional[str] = None, dynamodb=None, s3=None):
        """
        Initialize DynamoDB table and S3 bucket references.

        Args:
            table_name: Name of the events table
            bucket_name: Attachment bucket; attachments are disabled without it
            dynamodb: Optional boto3 DynamoDB resource
            s3: Optional boto3 S3 client
        """
        self.table_name = table_name
        self.bucket_name = bucket_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        self.s3 = s3 or (boto3.client('s3') if bucket_name else None)
        logger.info(f"Initialized EventStore for table: {table_name}, bucket: {bucket_name}")

    @property
    def attachments_enabled(self) -> bool:
        return bool(self.bucket_name)

    def create_event(self, event: TargetEvent) -> str:
        """
        Create a target event.

        Args:
            event: Event to store

        Returns:
            Id of the new event

        Raises:
            ApplyFailure: If the write is rejected
        """
        event_id = str(uuid.uuid4())
        item = self._event_to_item(event_id, event)
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(event_id)'
            )
        except ClientError as e:
            logger.error(f"Error creating event '{event.title}': {e}")
            raise ApplyFailure(f"Create of '{event.title}' rejected: {e}") from e

        logger.debug(f"Created event {event_id}: {event.title}")
        return event_id

    def update_event(self, event_id: str, event: TargetEvent) -> None:
        """
        Replace an existing target event.

        Raises:
            ApplyFailure: If the event does not exist or the write is rejected
        """
        try:
            self.table.put_item(
                Item=self._event_to_item(event_id, event),
                ConditionExpression='attribute_exists(event_id)'
            )
        except ClientError as e:
            logger.error(f"Error updating event {event_id}: {e}")
            raise ApplyFailure(f"Update of event {event_id} rejected: {e}") from e

        logger.debug(f"Updated event {event_id}: {event.title}")

    def delete_event(self, event_id: str) -> None:
        """
        Delete a target event. Deleting a missing event is not an error.

        Raises:
            ApplyFailure: If the delete is rejected
        """
        try:
            self.table.delete_item(Key={'event_id': event_id})
        except ClientError as e:
            logger.error(f"Error deleting event {event_id}: {e}")
            raise ApplyFailure(f"Delete of event {event_id} rejected: {e}") from e

        logger.debug(f"Deleted event {event_id}")

    def get_event(self, event_id: str) -> Optional[dict]:
        response = self.table.get_item(Key={'event_id': event_id})
        return response.get('Item')

    def store_attachment(self, name: str, content: bytes, content_type: str) -> str:
        """
        Upload an attachment.

        Args:
            name: Original file name
            content: File content
            content_type: MIME type

        Returns:
            Object key of the attachment

        Raises:
            ApplyFailure: If attachments are disabled or the upload fails
        """
        if not self.attachments_enabled:
            raise ApplyFailure("No attachment bucket configured")

        key = f"attachments/{uuid.uuid4()}/{name or 'file'}"
        try:
            self.s3.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=content,
                ContentType=content_type
            )
        except ClientError as e:
            logger.error(f"Error uploading attachment {name}: {e}")
            raise ApplyFailure(f"Upload of {name} rejected: {e}") from e

        logger.debug(f"Stored attachment {key}")
        return key

    def delete_attachment(self, key: str) -> None:
        if not self.attachments_enabled or not key:
            return
        try:
            self.s3.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            logger.error(f"Error deleting attachment {key}: {e}")
            raise ApplyFailure(f"Delete of attachment {key} rejected: {e}") from e

    def backfill_defaults(self, defaults: Dict[str, str]) -> int:
        """
        Set default attribute values on events written without them.

        Existing values are never overwritten, so repeated runs are no-ops.

        Args:
            defaults: Attribute name to default value

        Returns:
            Number of events updated
        """
        condition = None
        for name in defaults:
            missing = Attr(name).not_exists()
            condition = missing if condition is None else condition | missing

        items = self._scan(condition)
        names = {f'#a{index}': name for index, name in enumerate(defaults)}
        values = {f':v{index}': value for index, value in enumerate(defaults.values())}
        assignments = ', '.join(
            f'#a{index} = if_not_exists(#a{index}, :v{index})' for index in range(len(defaults))
        )

        for item in items:
            self.table.update_item(
                Key={'event_id': item['event_id']},
                UpdateExpression=f'SET {assignments}',
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values
            )

        logger.info(f"Backfilled {sorted(defaults)} on {len(items)} events")
        return len(items)

    def _scan(self, condition) -> List[dict]:
        kwargs = {'FilterExpression': condition} if condition is not None else {}
        response = self.table.scan(**kwargs)
        items = response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return items

    def _event_to_item(self, event_id: str, event: TargetEvent) -> dict:
        """
        Convert TargetEvent object to DynamoDB item.

        Args:
            event_id: Id of the event
            event: TargetEvent object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'event_id': event_id,
            'title': event.title,
            'description': event.description,
            'event_start_date': event.start.date,
            'event_start_time': event.start.time,
            'event_start_fold': event.start.fold,
            'event_end_date': event.end.date,
            'event_end_time': event.end.time,
            'event_end_fold': event.end.fold,
            'event_timezone': event.timezone,
            'all_day': event.all_day,
            'categories': list(event.categories),
            'attributes': dict(event.attributes),
            'event_type': event.event_type,
            'event_status': event.event_status,
            'event_archetype': event.event_archetype,
            'last_updated': int(time.time()),
        }

        # Add optional fields if present
        if event.link:
            item['link'] = event.link
        if event.location:
            item['location'] = event.location
        if event.image_url:
            item['image_url'] = event.image_url
        if event.image_attachment_id:
            item['image_attachment_id'] = event.image_attachment_id
        if event.flyer_attachment_id:
            item['flyer_attachment_id'] = event.flyer_attachment_id

        return item
