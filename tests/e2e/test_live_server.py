"""
E2E tests against a live pgpitr server.

Tests cover:
- Base backup and restore point creation through the HTTP API
- Validation as a sandbox trial restore
- Archive health after the above
"""

import os

import aiohttp
import pytest

# Skip if not in E2E mode
E2E_ENABLED = os.environ.get("PGPITR_E2E_TESTS", "0") == "1"
pytestmark = pytest.mark.skipif(
    not E2E_ENABLED, reason="E2E tests disabled. Set PGPITR_E2E_TESTS=1 to enable."
)


class TestLiveServer:
    """Trigger API round trips on a real PostgreSQL."""

    @pytest.mark.asyncio
    async def test_backup_and_restore_point(self, http_base_url, restore_point_name):
        async with aiohttp.ClientSession(base_url=http_base_url) as session:
            async with session.post("/v1/backups", json={"label": "e2e"}) as resp:
                assert resp.status == 201
                backup = (await resp.json())["data"]
                assert backup["status"] == "complete"

            async with session.post("/v1/restore-points", json={"name": restore_point_name}) as resp:
                assert resp.status == 201

            async with session.get("/v1/restore-points") as resp:
                names = [p["name"] for p in (await resp.json())["data"]["restore_points"]]
                assert restore_point_name in names

    @pytest.mark.asyncio
    async def test_validation(self, http_base_url):
        async with aiohttp.ClientSession(base_url=http_base_url) as session:
            async with session.post("/v1/backups") as resp:
                assert resp.status == 201

            async with session.post("/v1/validations") as resp:
                body = await resp.json()
                assert resp.status == 200, body["diagnostic"]
                assert body["data"]["outcome"] == "pass"

    @pytest.mark.asyncio
    async def test_health(self, http_base_url):
        async with aiohttp.ClientSession(base_url=http_base_url) as session:
            async with session.get("/v1/health") as resp:
                body = await resp.json()
                assert resp.status == 200, body
                assert body["data"]["wal_gaps"] == []
