"""
Image host backed by the local upload folder.

Stored images are addressed by URL (``<host>/uploads/<folder>/<file>``), which is
what product and slider documents keep.
"""
import base64
import binascii
import os
import re
from typing import Optional
from urllib.parse import urljoin, urlparse
from uuid import uuid4

from flask import current_app, request
from werkzeug.utils import secure_filename

from .errors import UpstreamFailure, ValidationError

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
IMAGE_FOLDERS = ("products", "sliders")
UPLOAD_URL_PREFIX = "/uploads/"

data_url_regex = re.compile(
    r"^data:image/(?P<extension>[a-z0-9.+-]+);base64,(?P<data>.+)$",
    re.IGNORECASE | re.DOTALL,
)


def upload_root() -> str:
    return current_app.config["UPLOAD_FOLDER"]


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in ALLOWED_IMAGE_EXTENSIONS


def build_upload_url(relative_path: Optional[str]) -> str:
    if not relative_path:
        return ""
    sanitized = str(relative_path).strip().lstrip("/")
    if not sanitized:
        return ""
    base_url = current_app.config.get("PUBLIC_BASE_URL") or request.host_url
    return urljoin(base_url, f"uploads/{sanitized}")


def _destination(folder: str, extension: str) -> str:
    if folder not in IMAGE_FOLDERS:
        raise ValidationError("Unknown image folder.")
    directory = os.path.join(upload_root(), folder)
    os.makedirs(directory, exist_ok=True)
    return os.path.join(directory, f"{uuid4().hex}.{extension}")


def save_uploaded_image(image_file, folder: str = "products") -> str:
    if not image_file or not getattr(image_file, "filename", ""):
        raise ValidationError("An image file is required.")

    original_filename = secure_filename(image_file.filename)
    if not original_filename or not allowed_image_extension(original_filename):
        raise ValidationError(
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
        )

    extension = os.path.splitext(original_filename)[1].lower().lstrip(".")
    destination = _destination(folder, extension)
    try:
        image_file.save(destination)
    except OSError as exc:
        current_app.logger.error("Unable to store uploaded image: %s", exc)
        raise UpstreamFailure("We could not store the uploaded image. Please try again.")

    return build_upload_url(os.path.relpath(destination, upload_root()).replace(os.sep, "/"))


def save_data_url_image(data_url: str, folder: str = "products") -> str:
    match = data_url_regex.match(str(data_url or "").strip())
    if not match:
        raise ValidationError("Image must be a base64 data URL.")

    extension = match.group("extension").lower()
    if extension == "jpg":
        extension = "jpeg"
    if extension not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationError(
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
        )

    try:
        content = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Image data is not valid base64.")

    destination = _destination(folder, extension)
    try:
        with open(destination, "wb") as handle:
            handle.write(content)
    except OSError as exc:
        current_app.logger.error("Unable to store uploaded image: %s", exc)
        raise UpstreamFailure("We could not store the uploaded image. Please try again.")

    return build_upload_url(os.path.relpath(destination, upload_root()).replace(os.sep, "/"))


def resolve_upload_path(image_url: str) -> Optional[str]:
    path = urlparse(str(image_url or "")).path
    if not path.startswith(UPLOAD_URL_PREFIX):
        return None

    root = os.path.realpath(upload_root())
    candidate = os.path.realpath(os.path.join(root, path[len(UPLOAD_URL_PREFIX):]))
    if os.path.commonpath([root, candidate]) != root or candidate == root:
        return None
    return candidate


def delete_image_url(image_url: str) -> bool:
    """Remove a hosted image. Failures are logged and reported, never raised."""
    target = resolve_upload_path(image_url)
    if not target:
        current_app.logger.info("Skipping removal of non-hosted image %s", image_url)
        return False
    try:
        os.remove(target)
    except FileNotFoundError:
        current_app.logger.warning("Hosted image already missing: %s", image_url)
        return False
    except OSError as exc:
        current_app.logger.error("Unable to remove hosted image %s: %s", image_url, exc)
        return False
    return True
