# receipt_app/main.py

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .dependencies import Services, build_services, get_api_key, get_services
from .errors import InvalidRequestError, ReceiptAppError, ReceiptNotFoundError
from .models import RowsUpdate, UploadRecordRequest
from .services.pipeline import MISSING_FIELDS_MESSAGE

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger(__name__)


async def read_upload_body(request: Request) -> Dict[str, Any]:
    """
    The upload body must be a JSON object; anything else is answered like
    a request with no image or user ID.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidRequestError(MISSING_FIELDS_MESSAGE)
    if not isinstance(payload, dict):
        raise InvalidRequestError(MISSING_FIELDS_MESSAGE)
    return payload


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.services is None:
        app.state.services = build_services(app.state.settings)
    yield
    logger.info("Shutting down")


def create_app(services: Optional[Services] = None) -> FastAPI:
    settings = services.settings if services else Settings.from_env()

    app = FastAPI(title="Receipt Scanner API", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_origins.split(",")],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReceiptAppError)
    async def receipt_app_error_handler(request: Request, exc: ReceiptAppError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.get("/")
    def read_root():
        return {"status": "ok", "message": "Welcome to the Receipt Scanner API!"}

    @app.post("/upload")
    def upload_receipt(
        services: Services = Depends(get_services),
        api_key: Optional[str] = Depends(get_api_key),
        payload: Dict[str, Any] = Depends(read_upload_body),
    ):
        """
        Stores the image, extracts the receipt with the vision model and
        saves the flattened rows, all within this request.
        """
        image = payload.get("image")
        user_id = payload.get("userId")
        try:
            result = services.pipeline.process_inline(
                image if isinstance(image, str) else None,
                user_id if isinstance(user_id, str) else None,
            )
        except ReceiptAppError as e:
            logger.warning("Upload rejected: %s", e.message)
            return JSONResponse(status_code=e.status_code, content={"message": e.message})
        except Exception as e:
            logger.exception("Error uploading image")
            return JSONResponse(
                status_code=500,
                content={"message": f"An error occurred during the upload: {e}"},
            )
        return {
            "message": "Upload successful",
            "receiptData": result.receipt_data,
            "receiptId": result.receipt_id,
        }

    @app.api_route(
        "/upload",
        methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "OPTIONS"],
        include_in_schema=False,
    )
    def upload_method_not_allowed():
        return JSONResponse(status_code=405, content={"message": "Method not allowed"})

    @app.post("/uploads")
    def record_upload(
        req: UploadRecordRequest,
        services: Services = Depends(get_services),
        api_key: Optional[str] = Depends(get_api_key),
    ):
        upload_id = services.store.add_upload(req.user_id, req.url, services.pipeline.clock())
        return {"message": "Upload recorded", "uploadId": upload_id}

    @app.get("/receipts")
    def list_receipts(
        userId: str,
        services: Services = Depends(get_services),
        api_key: Optional[str] = Depends(get_api_key),
    ):
        records = services.store.list_receipts(userId)
        logger.info("Found %d receipts for user %s", len(records), userId)
        return [record.model_dump(mode="json") for record in records]

    @app.get("/receipts/{receipt_id}")
    def get_receipt(
        receipt_id: str,
        services: Services = Depends(get_services),
        api_key: Optional[str] = Depends(get_api_key),
    ):
        record = services.store.get_receipt(receipt_id)
        if record is None:
            raise ReceiptNotFoundError("Receipt not found")
        return record.model_dump(mode="json")

    @app.put("/receipts/{receipt_id}/rows")
    def replace_rows(
        receipt_id: str,
        update: RowsUpdate,
        services: Services = Depends(get_services),
        api_key: Optional[str] = Depends(get_api_key),
    ):
        services.store.replace_receipt_rows(receipt_id, update.items)
        return {"message": "Receipt updated", "receiptId": receipt_id}

    @app.delete("/receipts/{receipt_id}")
    def delete_receipt(
        receipt_id: str,
        services: Services = Depends(get_services),
        api_key: Optional[str] = Depends(get_api_key),
    ):
        services.store.delete_receipt(receipt_id)
        return {"message": "Receipt deleted", "receiptId": receipt_id}

    return app


app = create_app()
