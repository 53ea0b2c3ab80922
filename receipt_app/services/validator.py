# receipt_app/services/validator.py

import base64
import binascii
import io
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from ..errors import ImageTooLargeError, InvalidImageError, QuotaExceededError
from ..models import UPLOAD_RECEIPT_ACTION

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


def decode_image(image: str) -> bytes:
    """
    Decodes a base64 string, with or without a data URL prefix, into raw bytes.
    """
    try:
        return base64.b64decode(_DATA_URL_PREFIX.sub("", image.strip()))
    except (binascii.Error, ValueError):
        raise InvalidImageError("Invalid request. Image could not be decoded.")


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """
    Returns [start of this calendar month, start of next month) in UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class UploadValidator:
    def __init__(self, store, max_image_mb: float = 2.0, monthly_upload_limit: int = 10):
        self.store = store
        self.max_image_mb = max_image_mb
        self.monthly_upload_limit = monthly_upload_limit

    def check_size(self, data: bytes) -> None:
        size_mb = len(data) / (1024 * 1024)
        if size_mb > self.max_image_mb:
            logger.warning("Rejecting image of %.2f MB (limit %g MB)", size_mb, self.max_image_mb)
            raise ImageTooLargeError(f"Image size exceeds {self.max_image_mb:g} MB")

    def inspect_image(self, data: bytes) -> str:
        """
        Makes sure the bytes are an image Pillow can identify and returns
        its MIME type, so nothing else reaches the extraction service.
        """
        try:
            with Image.open(io.BytesIO(data)) as img:
                image_format = img.format
        except (UnidentifiedImageError, OSError):
            logger.warning("Rejecting upload that is not a recognisable image")
            raise InvalidImageError("Invalid request. The uploaded file is not an image.")
        return Image.MIME.get(image_format, "image/jpeg")

    def check_quota(self, user_id: str, now: Optional[datetime] = None) -> None:
        # Count-then-write is not atomic: concurrent uploads can overshoot the limit.
        start, end = month_bounds(now or datetime.now(timezone.utc))
        count = self.store.count_monthly_uploads(user_id, start, end, action=UPLOAD_RECEIPT_ACTION)
        if count >= self.monthly_upload_limit:
            logger.warning("User %s hit the monthly upload limit (%d)", user_id, count)
            raise QuotaExceededError(
                "Monthly upload limit exceeded. "
                f"You can only upload {self.monthly_upload_limit} receipts per month."
            )
