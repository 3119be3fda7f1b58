"""
Tests for the GET /webhook subscription handshake.
"""

import pytest

from conftest import TENANT_ID, VERIFY_TOKEN
from waba_inbox import models


def verified_flag(db):
    db.expire_all()
    return db.get(models.Tenant, TENANT_ID).webhook_verified


class TestVerification:

    def test_challenge_echoed_and_tenant_verified(self, client, tenant, db):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": VERIFY_TOKEN,
            "hub.challenge": "xyz",
        })

        assert response.status_code == 200
        assert response.text == "xyz"
        assert verified_flag(db) is True

    def test_wrong_token_forbidden(self, client, tenant, db):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "not-the-secret",
            "hub.challenge": "xyz",
        })

        assert response.status_code == 403
        assert "xyz" not in response.text
        assert verified_flag(db) is False

    @pytest.mark.parametrize("params", [
        {"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "xyz"},
        {"hub.verify_token": VERIFY_TOKEN, "hub.challenge": "xyz"},
        {"hub.mode": "subscribe", "hub.challenge": "xyz"},
        {"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN},
        {},
    ])
    def test_incomplete_handshake_forbidden(self, client, tenant, db, params):
        response = client.get("/webhook", params=params)

        assert response.status_code == 403
        assert verified_flag(db) is False

    def test_repeat_verification_is_harmless(self, client, tenant, db):
        params = {"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"}

        assert client.get("/webhook", params=params).text == "1158201444"
        assert client.get("/webhook", params=params).text == "1158201444"
        assert verified_flag(db) is True
