# receipt_app/models.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

UPLOAD_RECEIPT_ACTION = "upload_receipt"


# --- What the model answers with ---

class ReceiptLine(BaseModel):
    name: str
    price: float


class ReceiptDocument(BaseModel):
    items: List[ReceiptLine] = []
    taxes: List[ReceiptLine] = []
    total: float


# --- What we persist ---

class ReceiptRow(BaseModel):
    name: str
    value: float


class ReceiptRecord(BaseModel):
    id: Optional[str] = None
    user_id: str
    image_url: str
    items: List[ReceiptRow] = []
    uploaded_at: datetime


class UploadRecord(BaseModel):
    id: Optional[str] = None
    url: str
    user_id: str
    uploaded_at: datetime


class AuditRecord(BaseModel):
    user_id: str
    action: str = UPLOAD_RECEIPT_ACTION
    created_at: datetime


# --- Request / response bodies ---

class UploadEvent(BaseModel):
    url: str
    user_id: str
    upload_id: Optional[str] = None


class UploadRecordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    user_id: str = Field(alias="userId")


class RowsUpdate(BaseModel):
    items: List[ReceiptRow]


class UploadResult(BaseModel):
    receipt_id: str
    image_url: str
    receipt_data: Dict[str, Any]
    rows: List[ReceiptRow]
