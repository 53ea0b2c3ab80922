# receipt_app/dependencies.py

import logging
from dataclasses import dataclass
from typing import Optional

import requests
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from .config import Settings
from .services.extraction import ExtractionService
from .services.pipeline import UploadPipeline
from .services.receipt_store import ReceiptStore, create_firestore_client
from .services.storage_service import StorageService
from .services.validator import UploadValidator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The clients one process needs, built once at startup."""

    settings: Settings
    store: ReceiptStore
    storage: StorageService
    extractor: ExtractionService
    validator: UploadValidator
    pipeline: UploadPipeline


def build_services(
    settings: Settings,
    store=None,
    storage=None,
    session: Optional[requests.Session] = None,
) -> Services:
    """
    Builds the client bundle. Anything passed in is used as-is; the rest is
    created from the settings.
    """
    logger.info("Initializing services...")
    if store is None:
        store = ReceiptStore(create_firestore_client(settings.google_credentials_json))
    if storage is None:
        storage = StorageService(
            bucket_name=settings.gcs_bucket_name,
            credentials_json_string=settings.google_credentials_json,
            url_expiration=settings.signed_url_expiration,
        )
    extractor = ExtractionService(
        api_key=settings.openai_api_key,
        organization_id=settings.openai_organization_id,
        project_id=settings.openai_project_id,
        model=settings.openai_model,
        api_url=settings.openai_api_url,
        timeout=settings.openai_timeout_seconds,
        fetch_timeout=settings.image_fetch_timeout_seconds,
        session=session,
        retries=settings.upstream_retries,
    )
    validator = UploadValidator(
        store,
        max_image_mb=settings.max_image_mb,
        monthly_upload_limit=settings.monthly_upload_limit,
    )
    pipeline = UploadPipeline(store, storage, extractor, validator)
    logger.info("Services initialized.")
    return Services(settings, store, storage, extractor, validator, pipeline)


def get_services(request: Request) -> Services:
    return request.app.state.services


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)):
    """
    Only enforced when API_SECRET_KEY is configured.
    """
    expected = get_services(request).settings.api_secret_key
    if expected and api_key != expected:
        raise HTTPException(status_code=403, detail="Could not validate credentials")
    return api_key
