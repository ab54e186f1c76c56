"""
Object Store Uploader
=====================

Destination connector for S3-compatible object storage (AWS S3, MinIO, ...).

Endpoint resolution:
- endpoint_override given: every request goes to that host; the URL
  scheme decides TLS
- otherwise: the regional AWS endpoint ``s3.<region>.amazonaws.com``
- path_style_access: bucket in the path instead of the host name

Each upload is a single ``fput_object`` call, so the object is either
absent or complete from a reader's point of view.
"""

import io
import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

import pandas as pd
import urllib3
from minio import Minio
from minio.error import MinioException, S3Error, ServerError

from ..cancellation import CancellationToken
from ..errors import ConfigurationError, UploadError
from ..models import FileHandle, ObjectRef
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

# S3 error codes worth another attempt
TRANSIENT_S3_CODES = {
    "InternalError",
    "OperationAborted",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
}


@dataclass(frozen=True)
class Endpoint:
    host: str
    secure: bool
    virtual_style: bool


def resolve_endpoint(config) -> Endpoint:
    """
    Work out where requests go for a DestinationConfig.

    Args:
        config: DestinationConfig (region, endpoint_override, path_style_access)

    Returns:
        Endpoint with host[:port], TLS flag and addressing style
    """
    if config.endpoint_override:
        raw = config.endpoint_override
        parsed = urlparse(raw if "://" in raw else f"https://{raw}")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid endpoint_override: {raw!r}")
        if parsed.path not in ("", "/"):
            raise ConfigurationError(f"endpoint_override must not carry a path: {raw!r}")
        return Endpoint(
            host=parsed.netloc,
            secure=parsed.scheme == "https",
            virtual_style=not config.path_style_access,
        )

    if not config.region:
        raise ConfigurationError("region is required when no endpoint_override is set")
    return Endpoint(
        host=f"s3.{config.region}.amazonaws.com",
        secure=True,
        virtual_style=not config.path_style_access,
    )


def build_client(config, timeout: float = 30.0) -> Minio:
    """
    Create a minio client for a DestinationConfig.

    Retries are disabled in the HTTP pool; the uploader's RetryPolicy owns
    them. ``timeout`` bounds connect and each read.
    """
    endpoint = resolve_endpoint(config)
    http_client = urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=timeout, read=timeout),
        retries=False,
        maxsize=10,
    )
    client = Minio(
        endpoint=endpoint.host,
        access_key=config.access_key,
        secret_key=config.secret_key,
        session_token=config.session_token,
        secure=endpoint.secure,
        region=config.region,
        http_client=http_client,
    )
    if endpoint.virtual_style:
        client.enable_virtual_style_endpoint()
    else:
        client.disable_virtual_style_endpoint()
    logger.info(
        f"Object store endpoint: {'https' if endpoint.secure else 'http'}://{endpoint.host} "
        f"({'virtual-host' if endpoint.virtual_style else 'path'} style), bucket: {config.bucket}"
    )
    return client


def is_transient_upload_error(error: BaseException) -> bool:
    if isinstance(error, S3Error):
        return error.code in TRANSIENT_S3_CODES
    if isinstance(error, ServerError):
        return True
    return isinstance(error, (urllib3.exceptions.HTTPError, OSError))


class ObjectStoreUploader:
    """
    S3-compatible uploader for flushed columnar files.
    """

    def __init__(
        self,
        config,
        retry_policy: Optional[RetryPolicy] = None,
        client=None,
        timeout: float = 30.0,
        metrics=None,
    ):
        """
        Initialize uploader.

        Args:
            config: DestinationConfig (bucket, region, endpoint_override,
                path_style_access, credentials, create_bucket, verify_uploads)
            retry_policy: Backoff for transient failures
            client: Pre-built client (tests substitute a fake)
            timeout: Per-request deadline in seconds
            metrics: Optional MetricsCollector
        """
        self.config = config
        self.bucket = config.bucket
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = client if client is not None else build_client(config, timeout)
        self.metrics = metrics

    def _call(self, fn, description: str, key: Optional[str] = None,
              cancel_token: Optional[CancellationToken] = None):
        attempts = {"count": 0}

        def attempt():
            attempts["count"] += 1
            return fn()

        def on_retry(attempt_number, error, delay):
            if self.metrics is not None:
                self.metrics.record_counter("lakesync_upload_retries_total", 1, {"bucket": self.bucket})

        try:
            return self.retry_policy.call(
                attempt,
                is_transient=is_transient_upload_error,
                on_retry=on_retry,
                cancel_token=cancel_token,
                description=description,
            )
        except (MinioException, urllib3.exceptions.HTTPError, OSError) as e:
            raise UploadError(
                f"{description} failed after {attempts['count']} attempt(s): {e}",
                key=key,
                attempts=attempts["count"],
            ) from e

    def ensure_bucket(self):
        """Check the bucket exists, creating it when configured to."""
        exists = self._call(lambda: self.client.bucket_exists(self.bucket), f"check bucket {self.bucket}")
        if exists:
            return
        if not self.config.create_bucket:
            raise UploadError(f"Bucket does not exist: {self.bucket}")
        self._call(
            lambda: self.client.make_bucket(self.bucket, location=self.config.region),
            f"create bucket {self.bucket}",
        )
        logger.info(f"Created bucket: {self.bucket}")

    def check(self):
        self.ensure_bucket()
        logger.info(f"Connected to object store, bucket: {self.bucket}")

    def upload(
        self,
        file_handle: FileHandle,
        destination_path: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ObjectRef:
        """
        Upload a flushed file under a destination prefix.

        Args:
            file_handle: File produced by the writer
            destination_path: Key prefix; the object is
                ``<destination_path>/<file_handle.file_name>``
            cancel_token: Aborts retry backoff

        Returns:
            ObjectRef of the stored object

        Raises:
            UploadError: rejected by the store or retries exhausted
        """
        key = f"{destination_path.strip('/')}/{file_handle.file_name}"

        result = self._call(
            lambda: self.client.fput_object(
                self.bucket,
                key,
                file_handle.path,
                content_type="application/octet-stream",
                metadata={"sha256": file_handle.sha256},
            ),
            f"upload s3://{self.bucket}/{key}",
            key=key,
            cancel_token=cancel_token,
        )
        etag = getattr(result, "etag", None)
        version_id = getattr(result, "version_id", None)

        if getattr(self.config, "verify_uploads", True):
            stat = self._call(
                lambda: self.client.stat_object(self.bucket, key),
                f"verify s3://{self.bucket}/{key}",
                key=key,
                cancel_token=cancel_token,
            )
            if stat.size != file_handle.byte_size:
                raise UploadError(
                    f"Size mismatch for s3://{self.bucket}/{key}: "
                    f"stored {stat.size}, expected {file_handle.byte_size}",
                    key=key,
                )
            etag = etag or stat.etag

        ref = ObjectRef(
            bucket=self.bucket,
            key=key,
            size=file_handle.byte_size,
            etag=etag,
            version_id=version_id,
        )
        logger.info(f"Uploaded {file_handle.row_count} rows ({file_handle.byte_size} bytes) to {ref.uri}")
        return ref

    def list_objects(self, prefix: str = "", recursive: bool = True) -> List[str]:
        """
        List object keys under a prefix.

        Args:
            prefix: Key prefix filter
            recursive: Include nested objects
        """
        objects = self._call(
            lambda: list(self.client.list_objects(self.bucket, prefix=prefix, recursive=recursive)),
            f"list s3://{self.bucket}/{prefix}",
        )
        return [obj.object_name for obj in objects]

    def remove_objects(self, keys: List[str]) -> int:
        """Delete objects one by one. Returns the number removed."""
        for key in keys:
            self._call(lambda k=key: self.client.remove_object(self.bucket, k), f"delete s3://{self.bucket}/{key}", key=key)
            logger.info(f"Deleted: s3://{self.bucket}/{key}")
        return len(keys)

    def object_exists(self, key: str) -> bool:
        try:
            self.client.stat_object(self.bucket, key)
            return True
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject", "NotFound"):
                return False
            raise UploadError(f"stat s3://{self.bucket}/{key} failed: {e}", key=key) from e

    def read_parquet(self, key: str) -> pd.DataFrame:
        """
        Read a Parquet object into a DataFrame.

        Args:
            key: Object key in bucket
        """
        response = self._call(lambda: self.client.get_object(self.bucket, key), f"get s3://{self.bucket}/{key}", key=key)
        try:
            df = pd.read_parquet(io.BytesIO(response.read()))
        finally:
            response.close()
            response.release_conn()
        return df

