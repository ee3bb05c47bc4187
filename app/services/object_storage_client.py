from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from app.core.config import Settings
from app.services.errors import ConfigError, ProviderError


class ObjectStorageError(ProviderError):
    pass


class S3ObjectStorageClient:
    """Thin wrapper over the S3 multipart and presigning calls used for recordings."""

    def __init__(self, s3_client: Any, bucket: str) -> None:
        if not bucket:
            raise ConfigError("S3_BUCKET is not configured.")
        self._s3 = s3_client
        self.bucket = bucket

    def create_multipart_upload(self, key: str, content_type: str = "video/webm") -> str:
        response = self._call(
            "create_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
        )
        upload_id = response.get("UploadId")
        if not upload_id:
            raise ObjectStorageError("S3 did not return an UploadId.")
        return str(upload_id)

    def presign_upload_part(self, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        return self._presign(
            "upload_part",
            params={
                "Bucket": self.bucket,
                "Key": key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            expires_in=expires_in,
        )

    def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Iterable[Mapping[str, Any]],
    ) -> None:
        self._call(
            "complete_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [
                    {"PartNumber": int(part["part_number"]), "ETag": str(part["etag"])}
                    for part in parts
                ],
            },
        )

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._call(
            "abort_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
        )

    def presign_get_object(self, key: str, expires_in: int) -> str:
        return self._presign(
            "get_object",
            params={"Bucket": self.bucket, "Key": key},
            expires_in=expires_in,
        )

    def _call(self, operation_name: str, **kwargs: Any) -> dict[str, Any]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return getattr(self._s3, operation_name)(**kwargs)
        except ClientError as exc:
            error_payload = exc.response.get("Error", {})
            raise ObjectStorageError(
                f"S3 {operation_name} failed: "
                f"{error_payload.get('Code', 'Unknown')} {error_payload.get('Message', '')}".strip(),
            ) from exc
        except BotoCoreError as exc:
            raise ObjectStorageError(f"S3 {operation_name} failed: {exc}") from exc

    def _presign(self, operation_name: str, *, params: Mapping[str, Any], expires_in: int) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return self._s3.generate_presigned_url(
                ClientMethod=operation_name,
                Params=dict(params),
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStorageError(f"S3 presign {operation_name} failed: {exc}") from exc


def create_object_storage_client(settings: Settings) -> S3ObjectStorageClient:
    import boto3
    from botocore.config import Config

    if not settings.s3_bucket:
        raise ConfigError("S3_BUCKET is not configured.")

    # Browser part uploads need SigV4 presigned URLs in every region.
    kwargs: dict[str, Any] = {
        "region_name": settings.aws_region,
        "config": Config(signature_version="s3v4"),
    }
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    return S3ObjectStorageClient(boto3.client("s3", **kwargs), bucket=settings.s3_bucket)
