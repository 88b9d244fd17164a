import io
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Any, Callable, Optional

import requests
from PIL import Image, UnidentifiedImageError

from .errors import StorageError, ValidationFailure


class StoredObject:
    def __init__(self, key: str, url: str, mime_type: str, filename: str):
        self.key = key
        self.url = url
        self.mime_type = mime_type
        self.filename = filename

    def __repr__(self):
        return f"StoredObject(key={self.key}, mime_type='{self.mime_type}')"

    def to_dict(self) -> Dict[str, str]:
        return {"imageUrl": self.url, "fileName": self.key, "fileType": self.mime_type}


class ObjectStorage(ABC):
    """
    Validates and stores supporting visa documents.

    Subclasses implement ``_put`` and ``public_url``; validation and key
    naming live here so every backend applies the same rules.
    """
    def __init__(self, config: Dict[str, Any], clock: Callable[[], float] = time.time):
        self.config = config.get('storage', {})
        self.bucket = self.config.get('bucket', 'visa-images')
        self.max_bytes = int(float(self.config.get('max_file_size_mb', 10)) * 1024 * 1024)
        self.allowed_mime_types = set(self.config.get('allowed_mime_types', []))
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def upload(self, artist_id: str, filename: str, data: bytes, mime_type: Optional[str]) -> StoredObject:
        """
        Stores one file for an artist.

        Raises:
            ValidationFailure: Missing artist, empty or oversized file, disallowed or corrupt content.
            StorageError: The backend rejected the upload.
        """
        mime_type = (mime_type or "application/octet-stream").lower()
        self.validate(artist_id, data, mime_type)

        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
        key = f"{self.bucket}/{artist_id}-{int(self.clock() * 1000)}.{extension}"

        self.logger.info(f"Uploading {filename} ({len(data)} bytes, {mime_type}) as {key}")
        self._put(key, data, mime_type)
        return StoredObject(key, self.public_url(key), mime_type, filename)

    def validate(self, artist_id: str, data: bytes, mime_type: str):
        if not artist_id:
            raise ValidationFailure("Artist ID is required")
        if not data:
            raise ValidationFailure("No file provided")
        if len(data) > self.max_bytes:
            raise ValidationFailure(f"File exceeds the {self.max_bytes // (1024 * 1024)} MB limit")
        if self.allowed_mime_types and mime_type not in self.allowed_mime_types:
            raise ValidationFailure(f"File type {mime_type} is not allowed")

        if mime_type.startswith("image/"):
            try:
                with Image.open(io.BytesIO(data)) as img:
                    img.verify()
            except (UnidentifiedImageError, OSError, SyntaxError) as e:
                raise ValidationFailure(f"Uploaded image could not be read: {e}")

    @abstractmethod
    def _put(self, key: str, data: bytes, mime_type: str):
        """Writes the bytes under key."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        """URL the stored object can be fetched from."""


class SupabaseStorage(ObjectStorage):
    """Uploads to a Supabase Storage bucket through its REST API."""

    def __init__(self, config: Dict[str, Any], clock: Callable[[], float] = time.time):
        super().__init__(config, clock)
        self.base_url = (self.config.get('supabase_url') or "").rstrip("/")
        self.service_role_key = self.config.get('service_role_key')
        self.timeout = float(self.config.get('timeout_seconds', 30))

    def _put(self, key: str, data: bytes, mime_type: str):
        if not self.base_url or not self.service_role_key:
            raise StorageError("Supabase storage is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY).")

        headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
            "Content-Type": mime_type,
            "Cache-Control": "3600",
            "x-upsert": "false",
        }
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{key}"
        try:
            response = requests.post(url, headers=headers, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.error(f"Supabase upload failed: {e}")
            raise StorageError(f"Failed to upload file to storage: {e}")

        if response.status_code >= 400:
            detail = response.text[:200]
            self.logger.error(f"Supabase upload returned HTTP {response.status_code}: {detail}")
            if "bucket" in detail.lower() or response.status_code == 404:
                raise StorageError(f"Supabase storage bucket {self.bucket} does not exist or is misconfigured.")
            if response.status_code in (401, 403):
                raise StorageError("Supabase storage permission denied. Check your service role key and bucket policy.")
            raise StorageError(f"Failed to upload file to storage: {detail}")

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{key}"


class InMemoryStorage(ObjectStorage):
    """Keeps uploads in a dict. Used in tests and local runs without Supabase."""

    def __init__(self, config: Dict[str, Any], clock: Callable[[], float] = time.time):
        super().__init__(config, clock)
        self.objects: Dict[str, bytes] = {}

    def _put(self, key: str, data: bytes, mime_type: str):
        self.objects[key] = data

    def public_url(self, key: str) -> str:
        return f"memory://{self.bucket}/{key}"
