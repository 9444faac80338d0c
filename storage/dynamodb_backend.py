"""DynamoDB persistence backend for the local event store."""
import logging
import time
import uuid
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from storage.backends import PersistenceBackend, PersistenceError, StorageFullError

logger = logging.getLogger(__name__)


class DynamoDBBackend(PersistenceBackend):
    """
    Key-value backend on a DynamoDB table keyed by ``cache_key`` (S).

    Values can exceed the 400 KB item limit, so each value is split into
    chunks written under a fresh version id. A manifest item points at the
    current version; it is written after all chunks, so readers never see
    a half-written value. Chunks of the previous version are deleted last.
    """

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    CHUNK_SIZE = 90_000  # characters; stays under 400 KB for any UTF-8 text
    QUOTA_ERROR_CODES = {'ItemCollectionSizeLimitExceededException'}

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region; defaults to the environment's
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBBackend for table: {table_name}")

    def get(self, key: str) -> Optional[str]:
        try:
            manifest = self.table.get_item(
                Key={'cache_key': key}, ConsistentRead=True
            ).get('Item')
            if not manifest:
                return None

            parts = []
            for chunk_key in self._chunk_keys(key, manifest['version'], int(manifest['chunk_count'])):
                item = self.table.get_item(
                    Key={'cache_key': chunk_key}, ConsistentRead=True
                ).get('Item')
                if item is None:
                    raise PersistenceError(f"Missing chunk {chunk_key} for '{key}'")
                parts.append(item['payload'])
            return ''.join(parts)

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading '{key}' from DynamoDB: {e}")
            raise PersistenceError(str(e)) from e
        except (KeyError, ValueError) as e:
            logger.error(f"Malformed manifest for '{key}' in DynamoDB: {e}")
            raise PersistenceError(f"Malformed manifest for '{key}'") from e

    def set(self, key: str, value: str) -> None:
        chunks = [
            value[i:i + self.CHUNK_SIZE]
            for i in range(0, len(value), self.CHUNK_SIZE)
        ] or ['']
        version = uuid.uuid4().hex

        try:
            previous = self.table.get_item(Key={'cache_key': key}).get('Item')
            chunk_keys = self._chunk_keys(key, version, len(chunks))

            # Process in batches of 25 (DynamoDB limit)
            for i in range(0, len(chunks), self.BATCH_SIZE):
                with self.table.batch_writer() as writer:
                    for chunk_key, payload in zip(chunk_keys[i:i + self.BATCH_SIZE],
                                                  chunks[i:i + self.BATCH_SIZE]):
                        writer.put_item(Item={'cache_key': chunk_key, 'payload': payload})

            self.table.put_item(Item={
                'cache_key': key,
                'version': version,
                'chunk_count': len(chunks),
                'updated_at': int(time.time()),
            })

        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            logger.error(f"Error writing '{key}' to DynamoDB: {e}")
            if code in self.QUOTA_ERROR_CODES:
                raise StorageFullError(str(e)) from e
            raise PersistenceError(str(e)) from e
        except BotoCoreError as e:
            logger.error(f"Error writing '{key}' to DynamoDB: {e}")
            raise PersistenceError(str(e)) from e

        if previous:
            self._delete_chunks(self._manifest_chunk_keys(key, previous))

    def delete(self, key: str) -> None:
        try:
            manifest = self.table.get_item(Key={'cache_key': key}).get('Item')
            if not manifest:
                return
            self.table.delete_item(Key={'cache_key': key})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error deleting '{key}' from DynamoDB: {e}")
            raise PersistenceError(str(e)) from e

        self._delete_chunks(self._manifest_chunk_keys(key, manifest))

    def _delete_chunks(self, chunk_keys: List[str]) -> int:
        """
        Delete chunk items in batches of 25.

        Failures are logged only; orphaned chunks are unreachable once the
        manifest has moved on.

        Returns:
            Count of deleted chunk items
        """
        deleted = 0
        for i in range(0, len(chunk_keys), self.BATCH_SIZE):
            batch = chunk_keys[i:i + self.BATCH_SIZE]
            try:
                with self.table.batch_writer() as writer:
                    for chunk_key in batch:
                        writer.delete_item(Key={'cache_key': chunk_key})
                        deleted += 1
            except (ClientError, BotoCoreError) as e:
                logger.warning(
                    f"Error deleting chunk batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue
        return deleted

    def _manifest_chunk_keys(self, key: str, manifest: dict) -> List[str]:
        """Chunk keys named by a manifest; a malformed manifest names none."""
        try:
            return self._chunk_keys(key, manifest['version'], int(manifest['chunk_count']))
        except (KeyError, ValueError, TypeError):
            logger.warning(f"Ignoring malformed manifest for '{key}'")
            return []

    @staticmethod
    def _chunk_keys(key: str, version: str, count: int) -> List[str]:
        return [f"{key}#{version}#{index}" for index in range(count)]
