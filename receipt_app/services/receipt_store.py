# receipt_app/services/receipt_store.py

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import NotFound
from google.cloud.firestore_v1.base_query import FieldFilter

from ..errors import ReceiptNotFoundError
from ..models import UPLOAD_RECEIPT_ACTION, ReceiptRecord, ReceiptRow

logger = logging.getLogger(__name__)

UPLOADS = "uploads"
RECEIPT_DATA = "receipt_data"
USER_REQUESTS = "user_requests"
RECEIPT_REQUESTS = "receipt_requests"


def create_firestore_client(credentials_json_string: Optional[str] = None, app_name: str = "receipt-app"):
    """
    Initializes a named Firebase app and returns its Firestore client.
    """
    if credentials_json_string:
        cred = credentials.Certificate(json.loads(credentials_json_string))
    else:
        cred = credentials.ApplicationDefault()
    try:
        app = firebase_admin.get_app(app_name)
    except ValueError:
        app = firebase_admin.initialize_app(cred, name=app_name)
    return firestore.client(app=app)


def _rows_to_dicts(rows: List[ReceiptRow]) -> List[Dict[str, Any]]:
    return [row.model_dump() for row in rows]


class ReceiptStore:
    """
    Every read and write against Firestore. None of these operations are
    transactional with each other.
    """

    def __init__(self, db):
        self.db = db

    # --- append-only collections ---

    def add_upload(self, user_id: str, url: str, timestamp: datetime) -> str:
        _, ref = self.db.collection(UPLOADS).add(
            {"url": url, "user_id": user_id, "uploaded_at": timestamp}
        )
        logger.info("Recorded upload %s for user %s", ref.id, user_id)
        return ref.id

    def store_upload_audit(self, user_id: str, action: str, timestamp: datetime) -> str:
        _, ref = self.db.collection(USER_REQUESTS).add(
            {"user_id": user_id, "action": action, "created_at": timestamp}
        )
        return ref.id

    def log_extraction_response(self, raw: Dict[str, Any]) -> str:
        _, ref = self.db.collection(RECEIPT_REQUESTS).add(raw)
        logger.debug("Logged raw extraction response as %s", ref.id)
        return ref.id

    def count_monthly_uploads(
        self,
        user_id: str,
        month_start: datetime,
        month_end: datetime,
        action: str = UPLOAD_RECEIPT_ACTION,
    ) -> int:
        query = (
            self.db.collection(USER_REQUESTS)
            .where(filter=FieldFilter("user_id", "==", user_id))
            .where(filter=FieldFilter("action", "==", action))
            .where(filter=FieldFilter("created_at", ">=", month_start))
            .where(filter=FieldFilter("created_at", "<", month_end))
        )
        results = query.count().get()
        return int(results[0][0].value)

    # --- receipt records ---

    def store_receipt(self, user_id: str, image_url: str, rows: List[ReceiptRow], timestamp: datetime) -> str:
        _, ref = self.db.collection(RECEIPT_DATA).add(
            {
                "image_url": image_url,
                "items": _rows_to_dicts(rows),
                "user_id": user_id,
                "uploaded_at": timestamp,
            }
        )
        logger.info("Stored receipt %s for user %s (%d rows)", ref.id, user_id, len(rows))
        return ref.id

    def get_receipt(self, receipt_id: str) -> Optional[ReceiptRecord]:
        snapshot = self.db.collection(RECEIPT_DATA).document(receipt_id).get()
        if not snapshot.exists:
            return None
        return ReceiptRecord(id=snapshot.id, **snapshot.to_dict())

    def list_receipts(self, user_id: str) -> List[ReceiptRecord]:
        query = (
            self.db.collection(RECEIPT_DATA)
            .where(filter=FieldFilter("user_id", "==", user_id))
            .order_by("uploaded_at", direction=firestore.Query.DESCENDING)
        )
        return [ReceiptRecord(id=doc.id, **doc.to_dict()) for doc in query.stream()]

    def replace_receipt_rows(self, receipt_id: str, rows: List[ReceiptRow]) -> None:
        # Whole-field overwrite, last write wins.
        try:
            self.db.collection(RECEIPT_DATA).document(receipt_id).update({"items": _rows_to_dicts(rows)})
        except NotFound:
            raise ReceiptNotFoundError("Receipt not found")
        logger.info("Replaced rows of receipt %s (%d rows)", receipt_id, len(rows))

    def delete_receipt(self, receipt_id: str) -> None:
        # The stored image blob is left in place.
        self.db.collection(RECEIPT_DATA).document(receipt_id).delete()
        logger.info("Deleted receipt %s", receipt_id)
