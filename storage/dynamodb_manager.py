"""DynamoDB repository for manual event time overrides."""
import logging
import time
from typing import Dict, List, Mapping

import boto3
from botocore.exceptions import ClientError

from processor.models import Override, SyncResult

logger = logging.getLogger(__name__)


class OverrideRepository:
    """Repository persisting overrides keyed by event_id."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    TTL_DAYS = 7

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized OverrideRepository for table: {table_name}")

    def get_all_overrides(self) -> Dict[str, Override]:
        """
        Retrieve all stored overrides using a Scan operation.

        Returns:
            Dictionary mapping event_id to Override objects
        """
        logger.info("Scanning DynamoDB table for overrides")
        overrides = {}

        try:
            response = self.table.scan()
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))

            for item in items:
                override = self._item_to_override(item)
                if override:
                    overrides[override.event_id] = override

            logger.info(f"Retrieved {len(overrides)} overrides from DynamoDB")
            return overrides

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise

    def sync_overrides(self, overrides: Mapping[str, Override]) -> SyncResult:
        """
        Make the table match the given override map.

        Args:
            overrides: Current override map

        Returns:
            SyncResult with counts of added, updated, deleted overrides
        """
        logger.info(f"Starting override sync with {len(overrides)} overrides")
        errors = []

        try:
            existing = self.get_all_overrides()

            to_add = [
                override for event_id, override in overrides.items()
                if event_id not in existing
            ]
            to_update = [
                override for event_id, override in overrides.items()
                if event_id in existing and existing[event_id] != override
            ]
            ids_to_delete = [
                event_id for event_id in existing
                if event_id not in overrides
            ]

            logger.info(
                f"Sync plan: {len(to_add)} to add, {len(to_update)} to update, "
                f"{len(ids_to_delete)} to delete"
            )

            added_count = 0
            updated_count = 0
            deleted_count = 0

            if to_add or to_update:
                write_count = self.save_overrides(to_add + to_update)
                added_count = min(write_count, len(to_add))
                updated_count = write_count - added_count

            if ids_to_delete:
                deleted_count = self.delete_overrides(ids_to_delete)

            failed_writes = len(to_add) + len(to_update) - added_count - updated_count
            if failed_writes:
                errors.append(f"{failed_writes} overrides failed to write")
            failed_deletes = len(ids_to_delete) - deleted_count
            if failed_deletes:
                errors.append(f"{failed_deletes} overrides failed to delete")

            logger.info(
                f"Sync complete: {added_count} added, {updated_count} updated, "
                f"{deleted_count} deleted"
            )

            return SyncResult(
                added=added_count,
                updated=updated_count,
                deleted=deleted_count,
                errors=errors
            )

        except Exception as e:
            error_msg = f"Error during override sync: {e}"
            logger.error(error_msg)
            errors.append(error_msg)
            return SyncResult(added=0, updated=0, deleted=0, errors=errors)

    def save_overrides(self, overrides: List[Override]) -> int:
        """
        Write overrides in batches of 25 items.

        Args:
            overrides: Override objects to write

        Returns:
            Count of successfully written overrides
        """
        if not overrides:
            return 0

        logger.info(f"Writing {len(overrides)} overrides to DynamoDB")
        success_count = 0
        now = int(time.time())

        for i in range(0, len(overrides), self.BATCH_SIZE):
            batch = overrides[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for override in batch:
                        writer.put_item(Item=self._override_to_item(override, now))
                # batch_writer flushes on exit, so count only after it succeeds
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error writing batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully wrote {success_count} overrides")
        return success_count

    def delete_overrides(self, event_ids: List[str]) -> int:
        """
        Delete overrides in batches of 25 items.

        Args:
            event_ids: Event IDs whose overrides should be removed

        Returns:
            Count of successfully deleted overrides
        """
        if not event_ids:
            return 0

        logger.info(f"Deleting {len(event_ids)} overrides from DynamoDB")
        success_count = 0

        for i in range(0, len(event_ids), self.BATCH_SIZE):
            batch = event_ids[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for event_id in batch:
                        writer.delete_item(Key={'event_id': event_id})
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully deleted {success_count} overrides")
        return success_count

    def _item_to_override(self, item: dict) -> Override:
        """
        Convert a DynamoDB item to an Override.

        Returns:
            Override or None if the item is unusable
        """
        try:
            override = Override(
                event_id=item['event_id'],
                start_at=item.get('start_at'),
                end_at=item.get('end_at')
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to Override: {e}")
            return None

        if override.is_empty:
            logger.warning(f"Ignoring empty override for {override.event_id}")
            return None
        return override

    def _override_to_item(self, override: Override, now: int) -> dict:
        item = {
            'event_id': override.event_id,
            'last_updated': now,
            'ttl': now + self.TTL_DAYS * 86400
        }

        # Add optional fields if present
        if override.start_at:
            item['start_at'] = override.start_at
        if override.end_at:
            item['end_at'] = override.end_at

        return item
