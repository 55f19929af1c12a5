"""
API tests for the change stream endpoints.

The stream itself is covered through its generator in test_change_feed.py;
here only the HTTP surface is checked.
"""


class TestPublish:

    def test_publish_without_subscribers(self, test_client, auth_headers):
        response = test_client.post(
            "/api/changes/publish",
            json={"table": "orders", "type": "INSERT", "new": {"id": 1, "restaurant_id": "rest_1"}},
            headers=auth_headers(),
        )
        assert response.status_code == 202
        assert response.json() == {"subscribers": 0}

    def test_publish_rejects_unknown_type(self, test_client, auth_headers):
        response = test_client.post(
            "/api/changes/publish",
            json={"table": "orders", "type": "UPSERT"},
            headers=auth_headers(),
        )
        assert response.status_code == 422

    def test_publish_requires_auth(self, test_client):
        response = test_client.post("/api/changes/publish", json={"table": "orders", "type": "INSERT"})
        assert response.status_code == 401


class TestStreamAuth:

    def test_stream_requires_token(self, test_client):
        assert test_client.get("/api/changes/stream").status_code == 401

    def test_stream_rejects_bad_query_token(self, test_client):
        response = test_client.get("/api/changes/stream", params={"access_token": "not-a-jwt"})
        assert response.status_code == 401
