import asyncio
import logging

from config.settings import settings
from services.storage.base import (
    PhotoStorage,
    StorageError,
    StoredFile,
    StoredObject,
    content_type_for,
    unique_filename,
)

log = logging.getLogger(__name__)


class S3Storage(PhotoStorage):
    """Photos in an S3-compatible bucket (AWS, Tigris, MinIO)."""

    backend_name = "s3"

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        public_url: str | None = None,
        client=None,
    ):
        self.bucket = bucket or settings.s3_bucket
        self.public_url = (public_url or settings.s3_public_url).rstrip("/")

        if client is None:
            import boto3

            kwargs = {}
            if region or settings.s3_region:
                kwargs["region_name"] = region or settings.s3_region
            if endpoint_url or settings.s3_endpoint_url:
                kwargs["endpoint_url"] = endpoint_url or settings.s3_endpoint_url
            client = boto3.client("s3", **kwargs)
        self._s3 = client

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    async def save(self, data: bytes, suggested_name: str, folder: str = "batch") -> StoredFile | StorageError:
        key = f"{folder}/{unique_filename(suggested_name)}"
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type_for(suggested_name),
            )
        except Exception as e:
            log.error(f"S3 upload failed for {suggested_name}: {e}")
            return StorageError(key=key, message=str(e))

        log.info(f"Uploaded {suggested_name} to s3://{self.bucket}/{key}")
        return StoredFile(key=key, url=self.url_for(key))

    def _get_bytes(self, key: str) -> bytes:
        response = self._s3.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    async def read(self, key: str) -> bytes | StorageError:
        try:
            return await asyncio.to_thread(self._get_bytes, key)
        except Exception as e:
            return StorageError(key=key, message=str(e))

    async def delete(self, key: str) -> StorageError | None:
        try:
            await asyncio.to_thread(self._s3.delete_object, Bucket=self.bucket, Key=key)
        except Exception as e:
            log.warning(f"S3 delete failed for {key}: {e}")
            return StorageError(key=key, message=str(e))
        return None

    async def copy(self, source_key: str, dest_key: str) -> StoredFile | StorageError:
        try:
            await asyncio.to_thread(
                self._s3.copy_object,
                Bucket=self.bucket,
                CopySource={"Bucket": self.bucket, "Key": source_key},
                Key=dest_key,
            )
        except Exception as e:
            log.error(f"S3 copy {source_key} -> {dest_key} failed: {e}")
            return StorageError(key=source_key, message=str(e))

        return StoredFile(key=dest_key, url=self.url_for(dest_key))

    def _list_objects(self, prefix: str) -> list[StoredObject]:
        paginator = self._s3.get_paginator("list_objects_v2")
        return [
            StoredObject(key=obj["Key"], modified_at=obj["LastModified"])
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix)
            for obj in page.get("Contents", [])
        ]

    async def list_files(self, folder: str) -> list[StoredObject] | StorageError:
        try:
            return await asyncio.to_thread(self._list_objects, f"{folder.rstrip('/')}/")
        except Exception as e:
            log.warning(f"S3 listing of {folder} failed: {e}")
            return StorageError(key=folder, message=str(e))
