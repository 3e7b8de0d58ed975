import os
import logging
from typing import Dict, Optional

import cloudinary
import cloudinary.uploader

from errors import UploadFailed

logger = logging.getLogger(__name__)

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")
CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "tragic-bricks")

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 10 * 1024 * 1024))

_configured = False


def configure() -> bool:
    global _configured
    if _configured:
        return True
    if not (CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET):
        return False
    cloudinary.config(
        cloud_name=CLOUDINARY_CLOUD_NAME,
        api_key=CLOUDINARY_API_KEY,
        api_secret=CLOUDINARY_API_SECRET,
        secure=True,
    )
    _configured = True
    return True


def check_content_type(content_type: Optional[str]) -> None:
    if (content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
        logger.info("Rejected upload with content type %s", content_type)
        raise UploadFailed(f"Unsupported file type. Allowed: {', '.join(ALLOWED_CONTENT_TYPES)}", status_code=400)


def check_upload(content_type: Optional[str], data: bytes) -> None:
    check_content_type(content_type)
    if not data:
        raise UploadFailed("No file provided", status_code=400)
    if len(data) > MAX_UPLOAD_BYTES:
        raise UploadFailed(f"File too large. Limit is {MAX_UPLOAD_BYTES} bytes", status_code=413)


def upload_image(data: bytes, content_type: Optional[str]) -> Dict[str, str]:
    """Forward an image to Cloudinary; returns its public url and public id."""
    check_upload(content_type, data)
    if not configure():
        logger.error("Cloudinary credentials are not configured")
        raise UploadFailed()
    try:
        result = cloudinary.uploader.upload(data, folder=CLOUDINARY_FOLDER, resource_type="image")
    except Exception:
        logger.exception("Cloudinary upload failed")
        raise UploadFailed()
    url = result.get("secure_url")
    if not url:
        logger.error("Cloudinary response carried no secure_url: %s", result)
        raise UploadFailed()
    return {"url": url, "publicId": result.get("public_id")}
