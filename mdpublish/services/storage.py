from __future__ import annotations

import io
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import quote

from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings
from .aws import boto3_client


class StorageError(RuntimeError):
    pass


@dataclass
class StoredFile:
    key: str
    storage_url: str
    public_url: Optional[str] = None


class StorageService:
    """One bucket of the S3-compatible object store."""

    def __init__(self, bucket: str, client=None) -> None:
        self.bucket = bucket
        self._client = client or boto3_client("s3")

    def _build_key(self, project_id: str | uuid.UUID, original_name: str) -> str:
        suffix = Path(original_name).suffix.lower() or ".bin"
        return f"{project_id}/{uuid.uuid4()}{suffix}"

    def put_bytes(self, key: str, data: bytes, content_type: str) -> StoredFile:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload to S3: {exc}") from exc
        return StoredFile(key=key, storage_url=f"s3://{self.bucket}/{key}", public_url=self.public_url(key))

    def upload_fileobj(
        self,
        project_id: str | uuid.UUID,
        file_obj: BinaryIO | bytes,
        filename: str,
        content_type: str,
    ) -> StoredFile:
        buffer: BinaryIO
        if isinstance(file_obj, (bytes, bytearray)):
            buffer = io.BytesIO(file_obj)
        else:
            buffer = file_obj
            buffer.seek(0)

        key = self._build_key(project_id, filename)
        try:
            self._client.upload_fileobj(buffer, self.bucket, key, ExtraArgs={"ContentType": content_type})
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload to S3: {exc}") from exc

        return StoredFile(key=key, storage_url=f"s3://{self.bucket}/{key}", public_url=self.public_url(key))

    def get_bytes(self, key: str) -> bytes:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to download S3 object: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete S3 object: {exc}") from exc

    def generate_presigned_url(self, key: str, ttl: timedelta = timedelta(hours=1)) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl.total_seconds()),
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to generate presigned URL: {exc}") from exc

    def public_url(self, key: str) -> str:
        quoted = quote(key)
        if settings.aws.public_base_url:
            return f"{settings.aws.public_base_url.rstrip('/')}/{self.bucket}/{quoted}"
        if settings.aws.s3_endpoint_url:
            return f"{settings.aws.s3_endpoint_url.rstrip('/')}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{settings.aws.region}.amazonaws.com/{quoted}"


def get_assets_storage() -> StorageService:
    return StorageService(settings.aws.assets_bucket)


def get_sites_storage() -> StorageService:
    return StorageService(settings.aws.sites_bucket)
