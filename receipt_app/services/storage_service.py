# receipt_app/services/storage_service.py

import json
import logging
from datetime import datetime
from typing import Optional

from google.cloud import storage

logger = logging.getLogger(__name__)


class StorageService:
    def __init__(
        self,
        bucket_name: str,
        credentials_json_string: Optional[str] = None,
        url_expiration: datetime = datetime(2491, 3, 9),
    ):
        """
        Initializes the Storage Service client. Credentials come from the
        provided service account JSON string, or from Application Default
        Credentials when none is given.
        """
        try:
            if credentials_json_string:
                creds_dict = json.loads(credentials_json_string)
                self.client = storage.Client.from_service_account_info(creds_dict)
            else:
                self.client = storage.Client()

            self.bucket_name = bucket_name
            self.bucket = self.client.bucket(bucket_name)
            self.url_expiration = url_expiration
            logger.info("Connected to GCS bucket: %s", bucket_name)
        except Exception as e:
            logger.error("Failed to connect to GCS: %s", e)
            raise

    def upload_blob(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Uploads raw bytes to the bucket and returns a long-lived signed URL
        for reading them back.
        """
        blob = self.bucket.blob(path)
        logger.info("Uploading %d bytes to gs://%s/%s", len(data), self.bucket_name, path)
        blob.upload_from_string(data, content_type=content_type)

        # V2 signatures allow an expiration far in the future; V4 caps at 7 days.
        url = blob.generate_signed_url(expiration=self.url_expiration, method="GET", version="v2")
        logger.info("Upload successful: gs://%s/%s", self.bucket_name, path)
        return url
