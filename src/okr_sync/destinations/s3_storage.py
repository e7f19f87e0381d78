"""S3 (and S3-compatible) object access for backups."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError

from ..config.settings import S3Config
from ..exceptions import (
    GenericOperationError,
    NetworkError,
    NetworkFailureKind,
    OkrSyncError,
    StorageConnectionError,
    StorageFailureKind,
)

logger = logging.getLogger(__name__)

_ERROR_KINDS: Dict[str, StorageFailureKind] = {
    'AccessDenied': StorageFailureKind.ACCESS_DENIED,
    'AllAccessDisabled': StorageFailureKind.ACCESS_DENIED,
    'Forbidden': StorageFailureKind.ACCESS_DENIED,
    '403': StorageFailureKind.ACCESS_DENIED,
    'NoSuchBucket': StorageFailureKind.BUCKET_MISSING,
    'InvalidAccessKeyId': StorageFailureKind.INVALID_CREDENTIALS,
    'InvalidToken': StorageFailureKind.INVALID_CREDENTIALS,
    'ExpiredToken': StorageFailureKind.INVALID_CREDENTIALS,
    'SignatureDoesNotMatch': StorageFailureKind.SIGNATURE_MISMATCH,
}

_MESSAGES: Dict[StorageFailureKind, str] = {
    StorageFailureKind.ACCESS_DENIED: "Access denied, check the access key permissions for this bucket",
    StorageFailureKind.BUCKET_MISSING: "Bucket does not exist, check the bucket name and region",
    StorageFailureKind.INVALID_CREDENTIALS: "Invalid access key, check the access key ID",
    StorageFailureKind.SIGNATURE_MISMATCH: "Signature mismatch, check the secret access key",
    StorageFailureKind.GENERIC: "Object storage request failed",
}


@dataclass
class StoredObject:
    """One object in a listing."""
    key: str
    size: int
    last_modified: datetime
    etag: Optional[str] = None


@dataclass
class ObjectDetails:
    """Result of a HEAD request."""
    key: str
    size: int
    last_modified: datetime
    content_type: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


def classify_client_error(error: ClientError) -> StorageFailureKind:
    """Map a botocore ClientError to a storage failure kind using its error code."""
    code = str(error.response.get('Error', {}).get('Code', ''))
    return _ERROR_KINDS.get(code, StorageFailureKind.GENERIC)


def storage_error(error: Exception, operation: str) -> OkrSyncError:
    """Translate a boto3 failure into the package's error taxonomy."""
    if isinstance(error, ClientError):
        kind = classify_client_error(error)
        message = _MESSAGES[kind]
        if kind is StorageFailureKind.GENERIC:
            message = f"{message}: {error.response.get('Error', {}).get('Message') or error}"
        return StorageConnectionError(message, kind=kind, operation=operation)
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return NetworkError("Object storage request timed out", kind=NetworkFailureKind.TIMEOUT, operation=operation)
    if isinstance(error, EndpointConnectionError):
        return NetworkError("Could not reach the object storage endpoint",
                            kind=NetworkFailureKind.UNREACHABLE, operation=operation)
    return GenericOperationError(f"{operation} failed: {error}", operation=operation)


class S3Storage:
    """Thin wrapper over a boto3 S3 client bound to one bucket."""

    def __init__(self, config: S3Config, client: Any = None):
        """Initialize storage.

        Args:
            config: S3 settings
            client: Pre-built S3 client (built from ``config`` if omitted)
        """
        self.config = config
        self.bucket = config.bucket
        self._s3_client = client

    @property
    def client(self):
        """Get authenticated S3 client.

        Returns:
            boto3 S3 client
        """
        if self._s3_client is None:
            access_key_id = self.config.access_key_id.get_secret_value()
            secret_access_key = self.config.secret_access_key.get_secret_value()
            options: Dict[str, Any] = {'region_name': self.config.region}

            if self.config.endpoint:
                # S3-compatible providers generally need path-style addressing
                options['endpoint_url'] = self.config.endpoint
                options['config'] = Config(s3={'addressing_style': 'path'})

            if access_key_id and secret_access_key:
                self._s3_client = boto3.client(
                    's3',
                    aws_access_key_id=access_key_id,
                    aws_secret_access_key=secret_access_key,
                    **options
                )
            else:
                # Default credential chain (environment, instance profile, etc.)
                self._s3_client = boto3.client('s3', **options)
        return self._s3_client

    @property
    def listing_prefix(self) -> str:
        """Prefix used when listing backups.

        Qiniu's S3 gateway expects the bucket name in front of the prefix.
        """
        endpoint = self.config.endpoint or ""
        if "qiniucs.com" in endpoint:
            return f"{self.bucket}/{self.config.path_prefix}"
        return self.config.path_prefix

    def check_access(self) -> None:
        """List at most one object to verify credentials and bucket.

        Raises:
            StorageConnectionError: Access denied, missing bucket, bad credentials...
        """
        try:
            self.client.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as e:
            raise storage_error(e, "test connection") from e

    def put(self, key: str, body: bytes, metadata: Dict[str, str], content_type: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                Metadata=metadata,
                ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise storage_error(e, "upload") from e

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response['Body'].read()
        except (ClientError, BotoCoreError) as e:
            raise storage_error(e, "download") from e

    def head(self, key: str) -> ObjectDetails:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise storage_error(e, "head") from e
        return ObjectDetails(
            key=key,
            size=response.get('ContentLength', 0),
            last_modified=response.get('LastModified'),
            content_type=response.get('ContentType'),
            metadata=dict(response.get('Metadata') or {}),
        )

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise storage_error(e, "delete") from e

    def list(self, prefix: Optional[str] = None) -> List[StoredObject]:
        """List every object under a prefix, following pagination."""
        prefix = self.listing_prefix if prefix is None else prefix
        objects: List[StoredObject] = []
        try:
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get('Contents', []):
                    objects.append(StoredObject(
                        key=item['Key'],
                        size=item.get('Size', 0),
                        last_modified=item['LastModified'],
                        etag=item.get('ETag'),
                    ))
        except (ClientError, BotoCoreError) as e:
            raise storage_error(e, "list") from e

        logger.debug(f"Listed {len(objects)} objects under s3://{self.bucket}/{prefix}")
        return objects
