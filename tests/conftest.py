"""
Pytest configuration and shared fixtures.

Test settings are put into the environment before any application import,
and the settings cache is cleared so they take effect. Provider HTTP calls
go through httpx.MockTransport; object storage is an in-memory MediaStore.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_waba_inbox.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("META_APP_SECRET", None)
os.environ.pop("MEDIA_BUCKET", None)

from waba_inbox.config import get_settings  # noqa: E402

get_settings.cache_clear()

import json  # noqa: E402
import re  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from waba_inbox import models  # noqa: E402
from waba_inbox.main import app  # noqa: E402
from waba_inbox.media import MediaRelay, get_media_relay  # noqa: E402
from waba_inbox.storage import SessionLocal, Base, engine  # noqa: E402


GRAPH_BASE_URL = "https://graph.test"
CDN_BASE_URL = "https://lookaside.test"

TENANT_ID = "tenant-1"
CHANNEL_ID = "109876543210"
ACCESS_TOKEN = "EAAG-test-token"
VERIFY_TOKEN = "verify-secret"


class FakeMediaStore:
    """In-memory MediaStore; set fail_uploads to simulate a storage outage."""

    def __init__(self):
        self.objects = {}
        self.fail_uploads = False

    def upload(self, key, fileobj, content_type):
        if self.fail_uploads:
            raise RuntimeError("bucket unavailable")
        self.objects[key] = (fileobj.read(), content_type)

    def signed_url(self, key, expires_in):
        return f"https://storage.test/{key}?X-Goog-Expires={expires_in}"


class FakeProvider:
    """
    Serves the two provider media calls:
    GET {graph}/{version}/{media_id} and GET {cdn}/{media_id}.
    """

    def __init__(self):
        self.media = {}
        self.requests = []

    def add_media(self, media_id, content=b"\x89PNG-bytes"):
        self.media[media_id] = content

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
            return httpx.Response(401, json={"error": {"message": "Invalid OAuth access token"}})

        url = str(request.url)
        info = re.fullmatch(rf"{GRAPH_BASE_URL}/v[\d.]+/(\d+)", url)
        if info:
            media_id = info.group(1)
            if media_id not in self.media:
                return httpx.Response(404, json={"error": {"message": "Unsupported get request"}})
            return httpx.Response(200, json={
                "url": f"{CDN_BASE_URL}/{media_id}",
                "mime_type": "image/jpeg",
                "id": media_id,
            })

        download = re.fullmatch(rf"{CDN_BASE_URL}/(\d+)", url)
        if download and download.group(1) in self.media:
            return httpx.Response(200, content=self.media[download.group(1)])

        return httpx.Response(404)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def media_store():
    return FakeMediaStore()


@pytest.fixture
def relay(provider, media_store):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))
    return MediaRelay(
        http_client=http_client,
        store=media_store,
        base_url=GRAPH_BASE_URL,
        signed_url_ttl=3600,
        max_bytes=1024,
    )


@pytest.fixture(scope="function")
def client(relay):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_media_relay] = lambda: relay

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(client, db):
    """A tenant owning CHANNEL_ID, not yet verified."""
    row = models.Tenant(
        id=TENANT_ID,
        channel_id=CHANNEL_ID,
        access_token=ACCESS_TOKEN,
        api_version="v23.0",
        verify_token=VERIFY_TOKEN,
        webhook_verified=False,
    )
    db.add(row)
    db.commit()
    return row


def build_envelope(messages, contacts=None, channel_id=CHANNEL_ID):
    """Provider delivery body with one entry and one change."""
    metadata = {"display_phone_number": "15550001111"}
    if channel_id is not None:
        metadata["phone_number_id"] = channel_id
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": metadata,
                    "contacts": contacts or [],
                    "messages": messages,
                },
            }],
        }],
    }


def text_message(message_id, sender="15551234567", body="Hello", timestamp="1700000000"):
    return {
        "id": message_id,
        "from": sender,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }


def image_message(message_id, media_id, sender="15551234567", caption=None, timestamp="1700000000"):
    image = {"id": media_id, "mime_type": "image/jpeg", "sha256": "abc123"}
    if caption is not None:
        image["caption"] = caption
    return {
        "id": message_id,
        "from": sender,
        "timestamp": timestamp,
        "type": "image",
        "image": image,
    }


def post_envelope(client, envelope, headers=None):
    return client.post(
        "/webhook",
        content=json.dumps(envelope),
        headers={"Content-Type": "application/json", **(headers or {})},
    )
