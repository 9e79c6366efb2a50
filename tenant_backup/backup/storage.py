"""
Object storage access for backups.

S3ObjectStore wraps a boto3 S3 client (AWS or any S3-compatible endpoint) with the
three primitives the backup needs: list buckets, list the immediate children of a
prefix, and download one object as a stream of chunks.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(Exception):
    """Raised when an object storage operation fails."""
    pass


@dataclass(frozen=True)
class ListingEntry:
    """
    One child of a listed prefix.

    ``object_id`` is the store's native identifier (the ETag for S3). Folders have none.
    """
    name: str
    object_id: Optional[str] = None
    size: Optional[int] = None


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3ObjectStore:
    """
    Read-only handler for the tenant's S3 buckets.
    """

    def __init__(
        self,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 object store.

        Args:
            access_key: AWS access key ID (None uses boto3's default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def list_containers(self) -> List[str]:
        """
        List every bucket visible to the credentials, sorted by name.

        Raises:
            StorageError: If listing fails
        """
        try:
            response = self.s3_client.list_buckets()
            return sorted(bucket['Name'] for bucket in response.get('Buckets', []))
        except ClientError as e:
            raise StorageError(f"S3 bucket listing failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 bucket listing failed: {e}")

    def list_children(self, container: str, prefix: str = '') -> List[ListingEntry]:
        """
        List the immediate children of a prefix.

        Sub-prefixes come back as entries without an object_id. The zero-byte marker
        object some tools create for a folder (key == prefix) is not a child of that
        folder and is left out.

        Args:
            container: Bucket name
            prefix: Folder path ending in '/', or '' for the bucket root

        Returns:
            Entries sorted by name, names relative to prefix

        Raises:
            StorageError: If listing fails
        """
        entries = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=container, Prefix=prefix, Delimiter='/'):
                for common_prefix in page.get('CommonPrefixes', []):
                    # Only the delimiter is stripped; "a//" is the folder "" inside "a/"
                    name = common_prefix['Prefix'][len(prefix):-1]
                    entries.append(ListingEntry(name=name))

                for obj in page.get('Contents', []):
                    if obj['Key'] == prefix:
                        continue
                    entries.append(ListingEntry(
                        name=obj['Key'][len(prefix):],
                        object_id=obj.get('ETag', '').strip('"') or None,
                        size=obj.get('Size')
                    ))

        except ClientError as e:
            raise StorageError(
                f"S3 list failed for {container}/{prefix} ({_client_error_code(e)}): {e}"
            )
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed for {container}/{prefix}: {e}")

        entries.sort(key=lambda entry: entry.name)
        return entries

    def download(self, container: str, key: str, chunk_size: int) -> Tuple[Optional[int], Iterator[bytes]]:
        """
        Start downloading an object.

        Args:
            container: Bucket name
            key: Object key
            chunk_size: Bytes per chunk yielded by the returned iterator

        Returns:
            Tuple of (content length or None, iterator over the content). Read errors
            raised by the iterator are StorageError. Closing the iterator releases
            the HTTP connection.

        Raises:
            StorageError: If the object cannot be opened
        """
        try:
            response = self.s3_client.get_object(Bucket=container, Key=key)
        except ClientError as e:
            raise StorageError(
                f"S3 download failed for {container}/{key} ({_client_error_code(e)}): {e}"
            )
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed for {container}/{key}: {e}")

        return response.get('ContentLength'), self._iter_body(response['Body'], container, key, chunk_size)

    def _iter_body(self, body, container: str, key: str, chunk_size: int) -> Iterator[bytes]:
        try:
            for chunk in body.iter_chunks(chunk_size):
                yield chunk
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 read failed for {container}/{key}: {e}")
        finally:
            body.close()

    def close(self):
        """Release the client's connection pool."""
        self.s3_client.close()
