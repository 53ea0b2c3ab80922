# receipt_app/services/pipeline.py

import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from ..errors import InvalidRequestError
from ..flatten import flatten_receipt
from ..models import UPLOAD_RECEIPT_ACTION, UploadEvent, UploadResult
from .validator import UploadValidator, decode_image

logger = logging.getLogger(__name__)

MISSING_FIELDS_MESSAGE = "Invalid request. Image and user ID are required."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadPipeline:
    """
    One upload, start to finish: validate, extract, flatten, persist.

    Every rejection happens before the extraction service is called or
    anything is written. The writes that follow are not transactional, so
    a failure partway leaves what was already written (an orphaned blob,
    a debug log entry) in place.
    """

    def __init__(self, store, storage, extractor, validator: UploadValidator,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.storage = storage
        self.extractor = extractor
        self.validator = validator
        self.clock = clock

    def process_inline(self, image: str, user_id: str) -> UploadResult:
        """Direct HTTP path: the image arrives as a base64 string."""
        if not image or not user_id:
            raise InvalidRequestError(MISSING_FIELDS_MESSAGE)

        data = decode_image(image)
        self.validator.check_size(data)
        mime_type = self.validator.inspect_image(data)
        self.validator.check_quota(user_id, self.clock())

        image_url = self.storage.upload_blob(f"uploads/{user_id}/{uuid.uuid4()}", data, mime_type)

        data_url = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
        receipt_data, document = self.extractor.extract(data_url)

        return self._persist(user_id, image_url, receipt_data, document)

    def process_event(self, event: UploadEvent) -> UploadResult:
        """Event path: an upload record pointing at an already stored image."""
        logger.info("Processing upload %s for user %s", event.upload_id or "-", event.user_id)

        data = self.extractor.fetch_image(event.url)
        self.validator.check_size(data)
        self.validator.inspect_image(data)
        self.validator.check_quota(event.user_id, self.clock())

        raw = self.extractor.request_completion(event.url)
        self.store.log_extraction_response(raw)
        receipt_data, document = self.extractor.parse_completion(raw)

        return self._persist(event.user_id, event.url, receipt_data, document)

    def _persist(self, user_id, image_url, receipt_data, document) -> UploadResult:
        rows = flatten_receipt(document)
        receipt_id = self.store.store_receipt(user_id, image_url, rows, self.clock())
        self.store.store_upload_audit(user_id, UPLOAD_RECEIPT_ACTION, self.clock())
        logger.info("Upload for user %s stored as receipt %s", user_id, receipt_id)
        return UploadResult(
            receipt_id=receipt_id,
            image_url=image_url,
            receipt_data=receipt_data,
            rows=rows,
        )
