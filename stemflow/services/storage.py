"""Object storage service for uploaded audio and separated stems."""

from io import BytesIO
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from stemflow.config import get_settings

settings = get_settings()


class StorageService:
    """Service for managing object storage (MinIO/S3)."""

    def __init__(self):
        self._client = None
        self._bucket = settings.minio_bucket

    @property
    def client(self):
        """Lazy initialization of S3 client."""
        if self._client is None:
            endpoint_url = f"{'https' if settings.minio_use_ssl else 'http'}://{settings.minio_endpoint}"
            self._client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=settings.minio_access_key,
                aws_secret_access_key=settings.minio_secret_key,
                config=Config(signature_version="s3v4"),
            )
            self._ensure_bucket()
        return self._client

    def _ensure_bucket(self):
        """Create bucket if it doesn't exist."""
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError:
            self._client.create_bucket(Bucket=self._bucket)

    @staticmethod
    def upload_key(tool_type: str, original_name: str, mime_type: str) -> str:
        """Key for a newly uploaded source file: uploads/{tool}/{uuid}.{ext}."""
        ext = original_name.rsplit(".", 1)[-1].lower() if "." in original_name else ""
        if not ext:
            ext = settings.allowed_upload_types.get(mime_type, "bin")
        return f"uploads/{tool_type}/{uuid4()}.{ext}"

    @staticmethod
    def result_key(file_id: int, result_type: str) -> str:
        """Key for one separated output: results/{fileId}/{resultType}."""
        return f"results/{file_id}/{result_type}"

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        """Store a blob under key. Returns the key."""
        self.client.upload_fileobj(
            BytesIO(data),
            self._bucket,
            key,
            ExtraArgs={"ContentType": mime_type},
        )
        return key

    def get(self, key: str) -> bytes:
        """Read a whole blob."""
        response = self.client.get_object(Bucket=self._bucket, Key=key)
        return response["Body"].read()

    def delete(self, key: str):
        """Delete a blob. Deleting a missing key is not an error."""
        self.client.delete_object(Bucket=self._bucket, Key=key)

    def generate_presigned_url(self, key: str, expires_in: int | None = None) -> str:
        """Generate a presigned URL for downloading a blob."""
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=expires_in or settings.download_url_expires_in,
        )

    def health_check(self) -> bool:
        """Check if storage is accessible."""
        try:
            self.client.head_bucket(Bucket=self._bucket)
            return True
        except (BotoCoreError, ClientError):
            return False


# Singleton instance
storage_service = StorageService()


def get_storage() -> StorageService:
    """FastAPI dependency returning the storage singleton."""
    return storage_service
