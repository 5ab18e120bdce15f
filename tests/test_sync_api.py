"""Tests for the /v1/sync endpoints."""

import pytest

from conftest import PEOPLE_CSV
from kbchat.db.storage import CHUNKS_TABLE


class TestSyncEndpoint:
    @pytest.mark.asyncio
    async def test_admin_sync(self, api_client, storage, admin_headers):
        response = await api_client.post(
            "/v1/sync",
            json={"csv": PEOPLE_CSV, "source_label": "people.csv"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"chunk_count": 2, "row_count": 2}
        assert await storage.count_records(CHUNKS_TABLE) == 2

    @pytest.mark.asyncio
    async def test_free_text_sync(self, api_client, admin_headers):
        response = await api_client.post(
            "/v1/sync",
            json={"content": "Opening hours are 9am to 5pm.", "source_label": "hours.txt"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["chunk_count"] == 1

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, api_client, storage, user_headers):
        response = await api_client.post("/v1/sync", json={"csv": PEOPLE_CSV}, headers=user_headers)

        assert response.status_code == 403
        assert await storage.count_records(CHUNKS_TABLE) == 0

    @pytest.mark.asyncio
    async def test_missing_token(self, api_client):
        response = await api_client.post("/v1/sync", json={"csv": PEOPLE_CSV})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_blank_csv(self, api_client, admin_headers):
        response = await api_client.post("/v1/sync", json={"csv": "  "}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "csv is required"

    @pytest.mark.asyncio
    async def test_exactly_one_source(self, api_client, admin_headers):
        response = await api_client.post(
            "/v1/sync",
            json={"csv": PEOPLE_CSV, "content": "text"},
            headers=admin_headers,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_header_only_reports_error_status(self, api_client, admin_headers, user_headers):
        response = await api_client.post("/v1/sync", json={"csv": "name,age"}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "CSV must have at least a header row and one data row."

        status = await api_client.get("/v1/sync/status", headers=user_headers)
        assert status.json()["data"]["status"] == "error"


class TestSyncStatusEndpoint:
    @pytest.mark.asyncio
    async def test_idle_before_first_sync(self, api_client, user_headers):
        response = await api_client.get("/v1/sync/status", headers=user_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "idle"
        assert data["chunk_count"] == 0

    @pytest.mark.asyncio
    async def test_done_after_sync(self, api_client, admin_headers, user_headers):
        await api_client.post("/v1/sync", json={"csv": PEOPLE_CSV, "source_label": "people.csv"}, headers=admin_headers)

        data = (await api_client.get("/v1/sync/status", headers=user_headers)).json()["data"]

        assert data["status"] == "done"
        assert data["chunk_count"] == 2
        assert data["doc_title"] == "people.csv"
        assert data["last_synced_at"]

    @pytest.mark.asyncio
    async def test_requires_auth(self, api_client):
        response = await api_client.get("/v1/sync/status")

        assert response.status_code == 401
