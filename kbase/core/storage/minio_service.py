"""
MinIO Storage Service.

Blob store for resource documents, using the MinIO S3-compatible API.
Keys are opaque strings; server-persisted resource content lives under
``resource/<resourceId>`` (see kbase.core.utils.ids.resource_storage_key).

The MinIO SDK is synchronous. Async callers run these methods through
``asyncio.to_thread`` and bound them with their own timeout.
"""

import logging
from functools import lru_cache
from io import BytesIO
from typing import List, Optional, Tuple, Union

from minio import Minio
from minio.error import S3Error

from kbase.config import settings

logger = logging.getLogger("kbase.minio")


class MinIOService:
    """
    Object storage for resource documents.

    Provides:
    - upload_data / download_data for whole-object byte content
    - bucket bootstrap and health check
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        secure: Optional[bool] = None,
        bucket: Optional[str] = None,
    ):
        self.endpoint = endpoint or settings.minio_endpoint
        self.access_key = access_key or settings.minio_access_key
        self.secret_key = secret_key or settings.minio_secret_key
        self.secure = settings.minio_secure if secure is None else secure
        self.bucket = bucket or settings.minio_bucket
        self._client: Optional[Minio] = None

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(f"MinIO client initialized (endpoint={self.endpoint}, secure={self.secure})")
        return self._client

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    def check_health(self) -> Tuple[bool, Optional[List[str]], Optional[str]]:
        """
        Check MinIO connection health.

        Returns:
            Tuple of (connected, buckets list, error message)
        """
        try:
            buckets = self.client.list_buckets()
            return True, [b.name for b in buckets], None
        except Exception as e:
            logger.error(f"MinIO health check failed: {e}")
            return False, None, str(e)

    # =========================================================================
    # BUCKET OPERATIONS
    # =========================================================================

    def ensure_bucket(self, bucket: Optional[str] = None) -> bool:
        """
        Create the bucket if it doesn't exist.

        Returns:
            True if the bucket was created, False if it already existed
        """
        bucket = bucket or self.bucket
        try:
            if not self.client.bucket_exists(bucket):
                self.client.make_bucket(bucket)
                logger.info(f"Created bucket: {bucket}")
                return True
            logger.debug(f"Bucket already exists: {bucket}")
            return False
        except S3Error as e:
            logger.error(f"Failed to create bucket {bucket}: {e}")
            raise

    # =========================================================================
    # OBJECT OPERATIONS
    # =========================================================================

    def upload_data(
        self,
        key: str,
        data: Union[bytes, str],
        content_type: str = "text/markdown; charset=utf-8",
    ) -> str:
        """
        Upload a whole object.

        Args:
            key: Object key
            data: Content; strings are encoded as UTF-8
            content_type: MIME type

        Returns:
            Object ETag
        """
        payload = data.encode("utf-8") if isinstance(data, str) else data
        result = self.client.put_object(
            bucket_name=self.bucket,
            object_name=key,
            data=BytesIO(payload),
            length=len(payload),
            content_type=content_type,
        )
        logger.info(f"Uploaded object {self.bucket}/{key} ({len(payload)} bytes)")
        return result.etag

    def download_data(self, key: str) -> bytes:
        """
        Download a whole object.

        Raises:
            S3Error: If the object does not exist or cannot be read
        """
        response = self.client.get_object(self.bucket, key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()


# =============================================================================
# SINGLETON SERVICE
# =============================================================================


@lru_cache()
def get_minio_service() -> MinIOService:
    """Get the process-wide MinIO service."""
    return MinIOService()
