import os
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin
from uuid import uuid4

from flask import current_app
from werkzeug.utils import secure_filename

ALLOWED_IMAGE_TYPES = {
    "png": {"image/png"},
    "jpg": {"image/jpeg"},
    "jpeg": {"image/jpeg"},
    "svg": {"image/svg+xml"},
}
GENERIC_MIMETYPES = {"application/octet-stream"}
UNSUPPORTED_IMAGE_MESSAGE = "Only jpg, png, svg files are supported"
DEFAULT_AVATAR_ID = "default_avatar_id"


def measure_upload(image_file) -> int:
    stream = image_file.stream
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


class ImageHost:
    """Stores uploaded images and hands out ``{public_id, url}`` references.

    Files land under ``upload_folder/<folder>/`` and are served back by the
    ``/uploads/<path>`` route, so the URL is only known once the public host
    of the current request is.
    """

    def __init__(self, upload_folder: str, url_prefix: str = "uploads"):
        self.upload_folder = upload_folder
        self.url_prefix = url_prefix.strip("/")
        os.makedirs(self.upload_folder, exist_ok=True)

    def is_allowed(self, image_file) -> bool:
        original_filename = secure_filename(image_file.filename or "")
        extension = os.path.splitext(original_filename)[1].lower().lstrip(".")
        if extension not in ALLOWED_IMAGE_TYPES:
            return False
        mimetype = (image_file.mimetype or "").lower()
        if not mimetype or mimetype in GENERIC_MIMETYPES:
            return True
        return mimetype in ALLOWED_IMAGE_TYPES[extension]

    def build_url(self, public_id: Optional[str], base_url: str) -> str:
        if not public_id:
            return ""
        return urljoin(base_url, f"{self.url_prefix}/{public_id}")

    def upload(
        self, image_file, folder: str, max_bytes: int, base_url: str
    ) -> Tuple[Optional[Dict[str, str]], Optional[str]]:
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "Please choose an image to upload."

        if not self.is_allowed(image_file):
            return None, UNSUPPORTED_IMAGE_MESSAGE

        if measure_upload(image_file) > max_bytes:
            limit_mb = max_bytes // (1024 * 1024)
            return None, f"File too large. The limit is {limit_mb} MB."

        extension = os.path.splitext(secure_filename(image_file.filename))[1].lower()
        target_folder = secure_filename(folder) or "images"
        public_id = f"{target_folder}/{uuid4().hex}{extension}"
        destination = os.path.join(self.upload_folder, target_folder)
        os.makedirs(destination, exist_ok=True)

        try:
            image_file.save(os.path.join(self.upload_folder, public_id))
        except OSError:
            return None, "We could not store the uploaded image. Please try again."

        return {"public_id": public_id, "url": self.build_url(public_id, base_url)}, None

    def remove(self, public_id: Optional[str]) -> None:
        if not public_id or public_id == DEFAULT_AVATAR_ID:
            return

        target = os.path.normpath(os.path.join(self.upload_folder, str(public_id)))
        if not target.startswith(os.path.normpath(self.upload_folder) + os.sep):
            return
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            current_app.logger.warning("Unable to remove image %s: %s", public_id, exc)
