import logging
import os
import uuid

import requests

from errors import StorageError, ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_FILE_TYPES = ("image/jpeg", "image/png", "image/webp")
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB


def validate_image(content_type: str, size: int) -> None:
    if content_type not in ALLOWED_FILE_TYPES:
        raise ValidationFailed(
            [{"field": "image", "message": "Invalid file type"}],
            f"Invalid file type. Allowed types: {', '.join(ALLOWED_FILE_TYPES)}",
        )
    if size > MAX_FILE_SIZE:
        raise ValidationFailed(
            [{"field": "image", "message": "File too large"}],
            f"File too large. Maximum size: {MAX_FILE_SIZE // (1024 * 1024)}MB",
        )


def make_file_name(original_name: str) -> str:
    ext = os.path.splitext(original_name or "")[1].lower().lstrip(".") or "bin"
    return f"{uuid.uuid4().hex}.{ext}"


class SupabaseStorage:
    """Blob store backed by a public Supabase Storage bucket."""

    def __init__(self, url: str, service_key: str, bucket: str, timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.timeout = timeout

    def public_url(self, file_name: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{file_name}"

    def upload(self, file_name: str, data: bytes, content_type: str) -> str:
        try:
            resp = requests.post(
                f"{self.url}/storage/v1/object/{self.bucket}/{file_name}",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": content_type,
                    "cache-control": "3600",
                    "x-upsert": "false",
                },
                data=data,
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Storage upload of %s failed: %s", file_name, exc)
            raise StorageError() from exc
        return self.public_url(file_name)
