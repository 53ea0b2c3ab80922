# worker.py

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException

from receipt_app.config import Settings
from receipt_app.dependencies import Services, build_services, get_services
from receipt_app.models import UploadEvent

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger("worker")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.services is None:
        logger.info("Worker: Loading configuration and initializing services...")
        app.state.services = build_services(Settings.from_env())
    yield


def create_worker_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Receipt Processor Worker", lifespan=lifespan)
    app.state.services = services

    @app.post("/events/upload-created")
    def process_upload_event(event: UploadEvent, services: Services = Depends(get_services)):
        """
        Called by the platform when a new upload record is created. There is
        no caller to answer, so every failure becomes a 500 and the
        invocation is reported as failed.
        """
        try:
            result = services.pipeline.process_event(event)
        except Exception as e:
            logger.error("WORKER: Job failed for image %s: %s", event.url, e)
            raise HTTPException(status_code=500, detail=str(e))
        logger.info("WORKER: Stored receipt %s for upload %s", result.receipt_id, event.upload_id or "-")
        return {"status": "success", "receiptId": result.receipt_id}

    @app.get("/")
    def read_root():
        return {"status": "ok", "message": "Worker is running."}

    return app


app = create_worker_app()
