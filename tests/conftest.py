"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Optional

import pytest
from fastapi.testclient import TestClient

from portal.access import AccessRequestService
from portal.auth import BootstrapCredentials
from portal.config import Settings
from portal.database import CHAT_DEFAULTS, PORTAL_DEFAULTS, JsonDocumentStore
from portal.errors import UpstreamError
from portal.mailer import Mailer
from portal.main import create_app
from portal.papers import PaperService
from portal.uploads import LocalUploadStore

ADMIN_HEADERS = {"Authorization": "Bearer test-token"}
PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n%%EOF\n"


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})


class FailingMailer(Mailer):
    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        raise UpstreamError("provider down")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "volume",
        railway_volume_mount_path=None,
        public_base_url="https://portal.example.org",
        upload_backend="local",
        sendgrid_api_key="",
        bootstrap_enabled=True,
        admin_emails=["employee@perrin.org", "boss@perrin.org"],
        jwt_secret="test-secret",
        pin_ttl_days=None,
        chat_history_limit=None,
        store_locking=True,
        cors_origins=["*"],
    )


@pytest.fixture
def portal_store(tmp_path) -> JsonDocumentStore:
    return JsonDocumentStore(tmp_path / "db.json", PORTAL_DEFAULTS)


@pytest.fixture
def chat_store(tmp_path) -> JsonDocumentStore:
    return JsonDocumentStore(tmp_path / "data" / "chat.json", CHAT_DEFAULTS)


@pytest.fixture
def uploads(tmp_path) -> LocalUploadStore:
    return LocalUploadStore(tmp_path / "uploads")


@pytest.fixture
def paper_service(portal_store, uploads) -> PaperService:
    return PaperService(portal_store, uploads)


@pytest.fixture
def bootstrap() -> BootstrapCredentials:
    return BootstrapCredentials(
        enabled=True,
        token="test-token",
        pin="000000",
        email="employee@perrin.org",
        password="password",
    )


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def access_service(portal_store, mailer, bootstrap) -> AccessRequestService:
    return AccessRequestService(portal_store, mailer, bootstrap, signin_url="https://portal.example.org/signin")


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        test_client.app.state.access.mailer = RecordingMailer()
        yield test_client
