"""
Shared pytest fixtures — in-memory services + FastAPI TestClient.
"""
import pytest
from fastapi.testclient import TestClient

from receipt_app.config import Settings
from receipt_app.dependencies import build_services
from receipt_app.main import create_app
from worker import create_worker_app

from fakes import FakeSession, FakeStorageService, InMemoryReceiptStore


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        api_secret_key=None,
        openai_api_key="sk-test",
        openai_organization_id="org-test",
        openai_project_id="proj-test",
        gcs_bucket_name="receipts-test",
    )


@pytest.fixture()
def store():
    return InMemoryReceiptStore()


@pytest.fixture()
def storage():
    return FakeStorageService()


@pytest.fixture()
def session():
    return FakeSession()


@pytest.fixture()
def services(settings, store, storage, session):
    return build_services(settings, store=store, storage=storage, session=session)


@pytest.fixture()
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture()
def worker_client(services):
    with TestClient(create_worker_app(services)) as c:
        yield c
