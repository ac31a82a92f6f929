# Overview: File storage adapter; presigned S3 upload URLs for service images.

from __future__ import annotations

import uuid

import boto3


ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class StorageError(ValueError):
    """Raised for rejected uploads or unconfigured storage."""
    pass


class S3Storage:
    """
    S3-compatible object storage.

    Clients upload directly with the presigned PUT URL; only the resulting
    object key and public URL are stored on the service row.
    """

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        expiration: int = 3600,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.expiration = expiration
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region, endpoint_url=self.endpoint_url)
        return self._client

    def object_key(self, tenant_id: int, content_type: str) -> str:
        ext = ALLOWED_IMAGE_TYPES.get(content_type)
        if ext is None:
            raise StorageError(f"Unsupported file type: {content_type}")
        return f"tenants/{tenant_id}/services/{uuid.uuid4().hex}.{ext}"

    def public_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def presigned_upload(self, tenant_id: int, content_type: str) -> dict:
        """Returns {upload_url, key, file_url, expires_in} for a PUT upload."""
        key = self.object_key(tenant_id, content_type)
        url = self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=self.expiration,
        )
        return {
            "upload_url": url,
            "key": key,
            "file_url": self.public_url(key),
            "expires_in": self.expiration,
        }
