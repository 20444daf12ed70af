from __future__ import annotations

import aioboto3
from typing import Optional
from settings.config import settings


class S3Client:
    """Presigned access to the original PDFs; the API never streams document bytes itself."""

    def __init__(self, bucket: Optional[str] = None, region: Optional[str] = None):
        self.bucket = bucket or settings.AWS_S3_BUCKET_NAME
        self.region = region or settings.AWS_REGION
        self._session = aioboto3.Session()

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    async def _sign(self, method: str, params: dict, expires: int) -> str:
        async with self._session.client("s3", region_name=self.region) as s3:
            return await s3.generate_presigned_url(
                ClientMethod=method,
                Params={"Bucket": self.bucket, **params},
                ExpiresIn=expires,
            )

    async def presigned_put(self, key: str, content_type: str, expires: int | None = None) -> str:
        return await self._sign(
            "put_object",
            {"Key": key, "ContentType": content_type},
            expires or settings.UPLOAD_URL_EXPIRES_SECONDS,
        )

    async def presigned_get(self, key: str, expires: int | None = None) -> str:
        return await self._sign("get_object", {"Key": key}, expires or settings.DOWNLOAD_URL_EXPIRES_SECONDS)


def get_s3_client() -> S3Client:
    return S3Client()
