import logging
import secrets
import time
from typing import Optional

from supabase import Client, create_client

from cookieshop.exceptions import DomainValidationError, StorageError
from cookieshop.settings import settings

logger = logging.getLogger(__name__)


class StorageService:
    """상품 이미지를 Supabase Storage에 업로드하고 public URL을 반환합니다."""

    def __init__(self, client: Optional[Client] = None, bucket: Optional[str] = None,
                 max_bytes: Optional[int] = None):
        self.bucket = bucket or settings.supabase_bucket
        self.max_bytes = max_bytes or settings.upload_max_bytes
        self.client = client

        if self.client is None:
            if not settings.supabase_url or not settings.supabase_service_role_key:
                logger.warning("Supabase credentials not set. Storage service disabled.")
            else:
                self.client = create_client(settings.supabase_url, settings.supabase_service_role_key)

    @staticmethod
    def build_path(filename: Optional[str], prefix: str = "products") -> str:
        """{prefix}/{timestamp_ms}-{random}.{ext}"""
        ext = "jpg"
        if filename and "." in filename:
            ext = filename.rsplit(".", 1)[-1].lower() or "jpg"
        return f"{prefix}/{int(time.time() * 1000)}-{secrets.token_hex(6)}.{ext}"

    def validate(self, content: bytes, content_type: Optional[str]) -> None:
        if not content_type or not content_type.startswith("image/"):
            raise DomainValidationError("Only image files are allowed", {"content_type": content_type})
        if len(content) > self.max_bytes:
            raise DomainValidationError(
                f"File size must be less than {self.max_bytes // (1024 * 1024)}MB",
                {"size": len(content)},
            )

    def upload_image(self, content: bytes, content_type: Optional[str], filename: Optional[str] = None) -> str:
        self.validate(content, content_type)
        if self.client is None:
            raise StorageError("Supabase storage is not configured")

        path = self.build_path(filename)
        try:
            bucket = self.client.storage.from_(self.bucket)
            bucket.upload(
                path=path,
                file=content,
                file_options={"content-type": content_type, "cache-control": "31536000"},
            )
            public_url = bucket.get_public_url(path)
        except Exception as e:
            logger.error(f"Failed to upload image to Supabase: {e}")
            raise StorageError("Failed to upload file", {"path": path}) from e

        logger.info(f"[UPLOAD] Stored {path} ({len(content)} bytes)")
        return public_url
