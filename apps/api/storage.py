"""
Per-user photo storage on Cloudinary.

Objects live at users/{user_id}/try-on/{category}/{timestamp}-{token}.{ext}.
Cloudinary keeps the extension as the resource format, so the public id is
the path without its extension.
"""
import base64
import io
import logging
import posixpath
import secrets
import string
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cloudinary
import cloudinary.api
import cloudinary.uploader
import cloudinary.utils
import requests
from cloudinary.exceptions import Error as CloudinaryError
from PIL import Image, UnidentifiedImageError

from config import CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET, CLOUDINARY_CLOUD_NAME

logger = logging.getLogger(__name__)

PHOTO_CATEGORIES = ("model", "cloth", "results")
TOKEN_ALPHABET = string.digits + string.ascii_lowercase
TOKEN_LENGTH = 11
LIST_PAGE_SIZE = 500

# Pillow format name -> file extension
IMAGE_EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp", "GIF": "gif"}


class StorageError(Exception):
    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class InvalidPhoto(StorageError):
    status_code = 422


@dataclass(frozen=True)
class StoredPhoto:
    path: str
    name: str
    download_url: str
    timestamp: int


def configure_cloudinary() -> bool:
    """Apply credentials from the environment; False when any are missing"""
    if not (CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET):
        logger.warning("Cloudinary not configured - photo storage is disabled")
        return False
    cloudinary.config(
        cloud_name=CLOUDINARY_CLOUD_NAME,
        api_key=CLOUDINARY_API_KEY,
        api_secret=CLOUDINARY_API_SECRET,
        secure=True,
    )
    logger.info("Cloudinary configured for cloud %s", CLOUDINARY_CLOUD_NAME)
    return True


def user_prefix(user_id: str) -> str:
    return f"users/{user_id}/try-on/"


def generate_file_path(user_id: str, category: str, extension: str) -> str:
    """Unique storage path: millisecond timestamp plus a random base36 token"""
    if category not in PHOTO_CATEGORIES:
        raise ValueError(f"Invalid photo category: {category}")
    timestamp = int(time.time() * 1000)
    token = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
    return f"{user_prefix(user_id)}{category}/{timestamp}-{token}.{extension.lstrip('.').lower()}"


def path_timestamp(path: str) -> int:
    """Numeric timestamp prefix of a stored file name, 0 if it has none"""
    prefix = posixpath.basename(path).split("-")[0]
    return int(prefix) if prefix.isdigit() else 0


def _split_path(path: str):
    public_id, _, extension = path.rpartition(".")
    if not public_id:
        return path, None
    return public_id, extension


def detect_extension(data: bytes) -> str:
    """Identify the image format of an upload without decoding pixels"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidPhoto("Uploaded file is not an image") from e
    if image_format not in IMAGE_EXTENSIONS:
        raise InvalidPhoto(f"Unsupported image format: {image_format}")
    return IMAGE_EXTENSIONS[image_format]


class PhotoStorage:
    def __init__(self, enabled: bool = True, uploader=None, api=None, http=None, timeout: float = 30.0):
        self.enabled = enabled
        self.uploader = uploader or cloudinary.uploader
        self.api = api or cloudinary.api
        self.http = http or requests.Session()
        self.timeout = timeout

    def _require_enabled(self):
        if not self.enabled:
            raise StorageError("Photo storage is not configured", status_code=503)

    @staticmethod
    def owns(user_id: str, path: str) -> bool:
        """True when the path sits inside the user's own folder"""
        if not path or ".." in path.split("/"):
            return False
        return path.startswith(user_prefix(user_id))

    @staticmethod
    def download_url(path: str) -> str:
        public_id, extension = _split_path(path)
        url, _ = cloudinary.utils.cloudinary_url(public_id, format=extension, secure=True)
        return url

    def upload(self, user_id: str, category: str, data: bytes) -> StoredPhoto:
        self._require_enabled()
        path = generate_file_path(user_id, category, detect_extension(data))
        public_id, extension = _split_path(path)
        try:
            result = self.uploader.upload(
                io.BytesIO(data),
                public_id=public_id,
                format=extension,
                resource_type="image",
                overwrite=False,
            )
        except CloudinaryError as e:
            logger.error("Failed to upload %s: %s", path, e)
            raise StorageError(f"Failed to upload file: {e}") from e

        logger.info("Uploaded %s (%d bytes)", path, len(data))
        return StoredPhoto(
            path=path,
            name=posixpath.basename(path),
            download_url=result.get("secure_url") or self.download_url(path),
            timestamp=path_timestamp(path),
        )

    def list_photos(self, user_id: str, category: str) -> List[StoredPhoto]:
        """All photos in one category, newest first"""
        self._require_enabled()
        if category not in PHOTO_CATEGORIES:
            raise ValueError(f"Invalid photo category: {category}")

        prefix = f"{user_prefix(user_id)}{category}/"
        photos = []
        cursor = None
        try:
            while True:
                params = {"type": "upload", "resource_type": "image", "prefix": prefix,
                          "max_results": LIST_PAGE_SIZE}
                if cursor:
                    params["next_cursor"] = cursor
                page = self.api.resources(**params)
                for resource in page.get("resources", []):
                    path = f"{resource['public_id']}.{resource['format']}"
                    photos.append(StoredPhoto(
                        path=path,
                        name=posixpath.basename(path),
                        download_url=resource.get("secure_url") or self.download_url(path),
                        timestamp=path_timestamp(path),
                    ))
                cursor = page.get("next_cursor")
                if not cursor:
                    break
        except CloudinaryError as e:
            logger.error("Failed to list %s: %s", prefix, e)
            raise StorageError(f"Failed to list photos: {e}") from e

        return sorted(photos, key=lambda photo: photo.timestamp, reverse=True)

    def delete(self, path: str) -> None:
        self._require_enabled()
        public_id, _ = _split_path(path)
        try:
            result = self.uploader.destroy(public_id, resource_type="image", invalidate=True)
        except CloudinaryError as e:
            logger.error("Failed to delete %s: %s", path, e)
            raise StorageError(f"Failed to delete file: {e}") from e
        if result.get("result") == "not found":
            raise StorageError("File not found", status_code=404)
        logger.info("Deleted %s", path)

    def fetch(self, path: str) -> bytes:
        self._require_enabled()
        try:
            response = self.http.get(self.download_url(path), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Failed to fetch %s: %s", path, e)
            raise StorageError(f"Failed to fetch file: {e}") from e
        return response.content

    def fetch_base64(self, paths: Sequence[str]) -> List[str]:
        """Download several objects concurrently, base64 encoded, in input order"""
        if not paths:
            return []
        with ThreadPoolExecutor(max_workers=len(paths)) as pool:
            contents = list(pool.map(self.fetch, paths))
        return [base64.b64encode(content).decode("ascii") for content in contents]
