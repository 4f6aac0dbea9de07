"""Content-addressed archive of original invoice documents (MinIO / S3).

Original bytes are stored once per content hash, so a resubmitted document
never creates a second object. The archive is optional: when disabled,
invoices simply carry no storage_path.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
from datetime import timedelta

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.intake.service import IntakeDocument
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ArchiveResult(BaseModel):
    """Result of archiving a document.

    Attributes:
        success: Whether the document is in the archive
        object_name: Object path inside the bucket
        bucket: Bucket name
        already_present: The object existed before this call
        error: Error message if archiving failed
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    already_present: bool = False
    error: str | None = None

    @property
    def storage_path(self) -> str | None:
        if not self.success or self.object_name is None:
            return None
        return f"{self.bucket}/{self.object_name}"


def object_name_for(content_hash: str, extension: str = "") -> str:
    """Object path for a document: sharded by the first two hash characters."""
    return f"documents/{content_hash[:2]}/{content_hash}{extension}"


class DocumentArchive:
    """Stores and retrieves original documents keyed by content hash."""

    def __init__(self, settings: Settings, client: Minio | None = None) -> None:
        self.settings = settings
        self._client = client
        self._bucket_ready = False

    def _get_client(self) -> Minio:
        """Get or create the MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not (self.settings.storage_access_key and self.settings.storage_secret_key):
                raise ValueError(
                    "Storage credentials not configured. "
                    "Set APP_STORAGE_ACCESS_KEY and APP_STORAGE_SECRET_KEY."
                )
            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")
        return self._client

    def is_available(self) -> bool:
        """True when archiving is enabled and credentials are set."""
        if not self.settings.storage_enabled:
            return False
        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def health_check(self) -> bool:
        """True when the MinIO server answers."""
        if not self.is_available():
            return False
        try:
            self._get_client().list_buckets()
            return True
        except (S3Error, ValueError, OSError) as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        client = self._get_client()
        bucket = self.settings.storage_bucket
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")
        self._bucket_ready = True

    def _exists(self, object_name: str) -> bool:
        try:
            self._get_client().stat_object(self.settings.storage_bucket, object_name)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                return False
            raise

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put(self, document: IntakeDocument, object_name: str) -> bool:
        self._ensure_bucket()
        if self._exists(object_name):
            return True
        self._get_client().put_object(
            bucket_name=self.settings.storage_bucket,
            object_name=object_name,
            data=io.BytesIO(document.content),
            length=document.size,
            content_type=document.mime_type,
            metadata={"content-hash": document.content_hash},
        )
        logger.info(f"Archived {object_name} ({document.size} bytes)")
        return False

    def archive(self, document: IntakeDocument) -> ArchiveResult:
        """Store the original bytes unless an object for the same hash exists.

        Failures are reported in the result; archiving never blocks intake.
        """
        bucket = self.settings.storage_bucket
        object_name = object_name_for(document.content_hash, document.extension)
        try:
            already_present = self._put(document, object_name)
        except (S3Error, ValueError, OSError) as e:
            logger.error(f"Failed to archive {object_name}: {e}")
            return ArchiveResult(
                success=False, object_name=object_name, bucket=bucket, error=str(e)
            )
        return ArchiveResult(
            success=True,
            object_name=object_name,
            bucket=bucket,
            already_present=already_present,
        )

    def fetch(self, object_name: str) -> bytes:
        """Read an archived document back.

        Raises:
            S3Error: If the object does not exist or cannot be read
        """
        response = self._get_client().get_object(self.settings.storage_bucket, object_name)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def get_presigned_url(self, object_name: str, expires_seconds: int = 3600) -> str:
        """Presigned download URL for an archived document."""
        return self._get_client().presigned_get_object(
            bucket_name=self.settings.storage_bucket,
            object_name=object_name,
            expires=timedelta(seconds=expires_seconds),
        )
