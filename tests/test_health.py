"""
Tests for the health probes and the /metrics endpoint.
"""

from conftest import build_envelope, post_envelope, text_message


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client):
        from waba_inbox.storage import Base, engine

        Base.metadata.drop_all(bind=engine)
        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestMetrics:

    def test_exposes_webhook_counters(self, client, tenant):
        post_envelope(client, build_envelope([text_message("wamid.1")]))
        post_envelope(client, build_envelope([text_message("wamid.2")], channel_id="999"))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert 'webhook_requests_total{result="processed"}' in body
        assert 'webhook_requests_total{result="unknown_tenant"}' in body
        assert 'webhook_messages_total{result="created"}' in body
        assert 'http_requests_total{method="POST",path="/webhook",status="200"}' in body
