import re
import threading
import time
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from urllib.parse import quote
from pydantic import BaseModel
from image_vault.settings import Settings, settings as default_settings
from image_vault.exceptions import MissingFieldException, NotConfiguredException, UpstreamException
import logging

log = logging.getLogger(__name__)

class UploadGrant(BaseModel):
    url: str
    key: str
    bucket: str
    expires_in: int
    expires_at: datetime

class DownloadGrant(BaseModel):
    url: str
    key: str
    expires_in: int
    expires_at: datetime

def sanitize_file_name(name: str) -> str:
    """Makes a file name safe to embed in an object key."""
    base = name.replace("\\", "").replace("/", "").strip()
    base = re.sub(r"\s+", "_", base)
    base = re.sub(r"\.+", ".", base)
    base = re.sub(r"[^a-zA-Z0-9._-]", "", base)
    return quote(base) or "file"

class _MillisClock:
    """Epoch milliseconds that never repeat within the process."""
    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            now = int(time.time() * 1000)
            self._last = now if now > self._last else self._last + 1
            return self._last

_clock = _MillisClock()

def build_storage_key(owner_id: str, file_name: str) -> str:
    return f"{owner_id}/{_clock.next()}-{sanitize_file_name(file_name)}"

# -------------------------
# S3 Service
# -------------------------
class S3Service:
    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        session = boto3.session.Session(region_name=self.config.aws_region)
        kwargs = {
            "aws_access_key_id": self.config.aws_access_key_id,
            "aws_secret_access_key": self.config.aws_secret_access_key,
            # SigV4 so every grant carries X-Amz-Signature
            "config": Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "adaptive"}),
        }
        if self.config.aws_endpoint_url:
            kwargs["endpoint_url"] = self.config.aws_endpoint_url

        self.bucket = self.config.s3_bucket
        self.client = session.client("s3", **kwargs)
        log.info("Initialized S3 client for bucket %s", self.bucket)

        # Ensure bucket exists at initialization
        if self.configured:
            self.ensure_bucket()

    @property
    def configured(self) -> bool:
        return bool(self.config.aws_access_key_id and self.config.aws_secret_access_key and self.bucket)

    def _require_configured(self):
        if not self.configured:
            raise NotConfiguredException("Storage credentials are not configured")

    def ensure_bucket(self):
        try:
            self.client.head_bucket(Bucket=self.bucket)
            log.debug("Bucket %s already exists", self.bucket)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code in ("404", "NoSuchBucket"):
                self.client.create_bucket(Bucket=self.bucket)
                log.info("Created bucket %s", self.bucket)
            else:
                log.error("Failed to check/create bucket: %s", e)
                raise

    def _external_url(self, url: str) -> str:
        if self.config.external_endpoint and self.config.aws_endpoint_url:
            url = url.replace(self.config.aws_endpoint_url, self.config.external_endpoint)
        return url

    def issue_upload_grant(self, owner_id: str, file_name: str, content_type: str) -> UploadGrant:
        """
            Presigns a single PUT of `content_type` to a freshly derived key.
            Nothing is created in the bucket until the caller performs the PUT.
        """
        missing = [
            name for name, value in (
                ("fileName", file_name), ("contentType", content_type), ("userId", owner_id)
            ) if not value or not value.strip()
        ]
        if missing:
            raise MissingFieldException(*missing)
        self._require_configured()

        key = build_storage_key(owner_id, file_name)
        expires = self.config.presign_expire_seconds
        try:
            url = self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=expires,
            )
        except (BotoCoreError, ClientError) as e:
            log.error("Failed to presign upload for %s: %s", key, e)
            raise UpstreamException(f"Failed to generate upload URL: {e}", error="Failed to generate presigned URL")
        log.debug("Issued upload grant for s3://%s/%s", self.bucket, key)
        return UploadGrant(
            url=self._external_url(url),
            key=key,
            bucket=self.bucket,
            expires_in=expires,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires),
        )

    def issue_download_grant(self, key: str, expires_in: Optional[int] = None) -> DownloadGrant:
        if not key:
            raise MissingFieldException("key")
        self._require_configured()

        expires = expires_in or self.config.presign_expire_seconds
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires,
            )
        except (BotoCoreError, ClientError) as e:
            log.error("Failed to presign download for %s: %s", key, e)
            raise UpstreamException(f"Failed to generate download URL: {e}", error="Failed to generate presigned URL")
        return DownloadGrant(
            url=self._external_url(url),
            key=key,
            expires_in=expires,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires),
        )

    def upload(self, fileobj, key: str, content_type: str):
        self._require_configured()
        try:
            self.client.upload_fileobj(
                Fileobj=fileobj,
                Bucket=self.bucket,
                Key=key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            log.error("S3 upload of %s failed: %s", key, e)
            raise UpstreamException(f"Failed to upload image to S3: {e}", error="Failed to upload image")
        log.debug("Uploaded %s to s3://%s/%s", key, self.bucket, key)

    def head(self, key: str) -> Optional[Dict[str, Any]]:
        """Returns object metadata, or None when the key does not exist."""
        self._require_configured()
        try:
            return self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return None
            log.error("S3 head_object for %s failed: %s", key, e)
            raise UpstreamException(f"Failed to check object in S3: {e}")
        except BotoCoreError as e:
            log.error("S3 head_object for %s failed: %s", key, e)
            raise UpstreamException(f"Failed to check object in S3: {e}")

    def get_object_bytes(self, key: str) -> bytes:
        self._require_configured()
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except (BotoCoreError, ClientError) as e:
            log.error("S3 get_object for %s failed: %s", key, e)
            raise UpstreamException(f"Failed to fetch image from S3: {e}")

    def delete_object(self, key: str):
        """Deletes `key`. Deleting a key that never existed is a no-op."""
        if not key:
            raise MissingFieldException("key")
        self._require_configured()
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            log.error("S3 delete_object for %s failed: %s", key, e)
            raise UpstreamException(f"Failed to delete object from S3: {e}", error="Failed to delete object")
        log.debug("Deleted s3://%s/%s", self.bucket, key)

    def close(self):
        self.client.close()
        log.info("Closed S3 client")
