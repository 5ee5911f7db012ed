"""MinIO object store adapter (implements ObjectStorePort)."""

import io

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import ObjectStoreError
from media_ingest.services.mime_types import content_disposition
from media_ingest.services.storage_paths import build_public_url

logger = get_logger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchObject", "NoSuchBucket"})


class MinioObjectStore:
    """Stores media objects in a single MinIO bucket."""

    def __init__(
        self,
        client: Minio,
        bucket: str,
        public_base_url: str,
        *,
        ensure_bucket: bool = True,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._public_base_url = public_base_url
        if ensure_bucket:
            self._ensure_bucket()

    @classmethod
    def from_credentials(
        cls,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        public_base_url: str,
        *,
        secure: bool = False,
    ) -> "MinioObjectStore":
        # Minio expects host:port, not a URL
        host = endpoint.replace("http://", "").replace("https://", "")
        client = Minio(host, access_key=access_key, secret_key=secret_key, secure=secure)
        return cls(client, bucket, public_base_url)

    @property
    def bucket(self) -> str:
        return self._bucket

    def _ensure_bucket(self) -> None:
        try:
            if not self._client.bucket_exists(self._bucket):
                self._client.make_bucket(self._bucket)
                logger.info("minio_bucket_created", bucket=self._bucket)
        except (S3Error, Urllib3HTTPError) as e:
            raise ObjectStoreError(f"Failed to prepare bucket {self._bucket}: {e}") from e

    def public_url(self, key: str) -> str:
        return build_public_url(self._public_base_url, self._bucket, key)

    def exists(self, key: str) -> bool:
        try:
            self._client.stat_object(self._bucket, key)
        except S3Error as e:
            if e.code in _MISSING_CODES:
                return False
            raise ObjectStoreError(f"Failed to stat {key}: {e}") from e
        except Urllib3HTTPError as e:
            raise ObjectStoreError(f"Failed to stat {key}: {e}") from e
        return True

    def upload(
        self, key: str, data: bytes, content_type: str, *, upsert: bool = True
    ) -> str:
        """Store ``data`` under ``key``; with ``upsert=False`` an existing object is kept."""
        if not upsert and self.exists(key):
            logger.debug("minio_upload_skipped_existing", key=key)
            return self.public_url(key)

        try:
            self._client.put_object(
                self._bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata={"Content-Disposition": content_disposition(content_type)},
            )
        except (S3Error, Urllib3HTTPError) as e:
            raise ObjectStoreError(f"Failed to upload {key}: {e}") from e

        logger.info(
            "minio_object_uploaded",
            key=key,
            size_bytes=len(data),
            content_type=content_type,
        )
        return self.public_url(key)

    def download(self, key: str) -> bytes:
        response = None
        try:
            response = self._client.get_object(self._bucket, key)
            return response.read()
        except (S3Error, Urllib3HTTPError) as e:
            raise ObjectStoreError(f"Failed to download {key}: {e}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def delete(self, key: str) -> None:
        try:
            self._client.remove_object(self._bucket, key)
        except (S3Error, Urllib3HTTPError) as e:
            raise ObjectStoreError(f"Failed to delete {key}: {e}") from e
        logger.info("minio_object_deleted", key=key)
