"""
Tests for the GET /stats endpoint.

Tests cover:
- Empty database returns zeros
- Total messages and unique senders
- Per-type counts, most frequent first
- Media that could not be relayed
- Scoping to one tenant
"""

import pytest

from conftest import TENANT_ID, build_envelope, image_message, post_envelope, text_message
from waba_inbox import models


@pytest.fixture
def seeded_client(client, tenant, db, provider):
    provider.add_media("900")
    messages = [
        text_message("wamid.1", sender="15551110001"),
        text_message("wamid.2", sender="15551110001"),
        text_message("wamid.3", sender="15551110002"),
        image_message("wamid.4", "900", sender="15551110002"),
        image_message("wamid.5", "901", sender="15551110003"),
        {
            "id": "wamid.6",
            "from": "15551110003",
            "timestamp": "1700000000",
            "type": "reaction",
            "reaction": {"message_id": "wamid.1", "emoji": "+1"},
        },
    ]
    assert post_envelope(client, build_envelope(messages)).status_code == 200

    db.add(models.Message(
        id="wamid.other",
        sender_id="15551110009",
        receiver_id="tenant-2",
        content="Elsewhere",
        timestamp="2023-11-14T22:30:00.000Z",
        message_type="text",
        created_at="2023-11-14T22:30:00.000Z",
    ))
    db.commit()
    return client


class TestStatsEmpty:

    def test_empty_database(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_messages": 0,
            "senders_count": 0,
            "messages_per_type": [],
            "media_relay_failures": 0,
        }


class TestStatsCounts:

    def test_totals(self, seeded_client):
        data = seeded_client.get("/stats").json()

        assert data["total_messages"] == 7
        assert data["senders_count"] == 4

    def test_messages_per_type(self, seeded_client):
        data = seeded_client.get("/stats").json()

        assert data["messages_per_type"] == [
            {"message_type": "text", "count": 4},
            {"message_type": "image", "count": 2},
            {"message_type": "reaction", "count": 1},
        ]

    def test_media_relay_failures(self, seeded_client):
        assert seeded_client.get("/stats").json()["media_relay_failures"] == 1


class TestStatsScope:

    def test_scoped_to_tenant(self, seeded_client):
        data = seeded_client.get("/stats", params={"receiver_id": TENANT_ID}).json()

        assert data["total_messages"] == 6
        assert data["senders_count"] == 3
        assert {"message_type": "text", "count": 3} in data["messages_per_type"]

    def test_unknown_tenant_is_empty(self, seeded_client):
        data = seeded_client.get("/stats", params={"receiver_id": "nobody"}).json()

        assert data["total_messages"] == 0
        assert data["messages_per_type"] == []
