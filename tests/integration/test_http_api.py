"""
Integration tests for the HTTP trigger API.

The supervisor runs with injected in-memory components; requests go through
aiohttp's test client against create_http_app().

Tests cover:
- Each trigger route and its success status
- Error codes mapped to HTTP statuses
- Request validation
"""

import asyncio
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from pgpitr.pitr_server.api import create_http_app
from pgpitr.pitr_server.config import BaseBackupConfig, CatalogConfig, ServerConfig, StorageBackend
from pgpitr.pitr_server.engine import InMemoryEngine
from pgpitr.pitr_server.main import PitrSupervisor
from pgpitr.pitr_server.notify import NotificationHub
from pgpitr.pitr_server.storage import InMemoryStorageBackend


@pytest.fixture
async def supervisor(data_dir, events):
    """Supervisor on in-memory components with its archiver running."""
    config = ServerConfig(
        storage_backend=StorageBackend.MEMORY,
        catalog=CatalogConfig(path=str(Path(data_dir) / "catalog.db")),
        backup=BaseBackupConfig(wal_wait_timeout_seconds=5.0),
    )
    supervisor = PitrSupervisor(
        config,
        engine=InMemoryEngine(instance_id="primary", segment_size=16),
        storage=InMemoryStorageBackend(),
        replicas={"eu-west-1": InMemoryStorageBackend()},
        notifier=NotificationHub([events]),
        sandbox=lambda: InMemoryEngine(instance_id="sandbox"),
    )
    await supervisor.initialize()
    supervisor.backups.wal_poll_interval = 0.01
    archiver_task = asyncio.create_task(supervisor.archiver.run())
    yield supervisor
    await supervisor.stop()
    await archiver_task


@pytest.fixture
async def client(supervisor):
    client = TestClient(TestServer(create_http_app(supervisor)))
    await client.start_server()
    yield client
    await client.close()


async def settle(supervisor):
    """Wait until every completed segment is archived."""
    while supervisor.engine.unacknowledged:
        await asyncio.sleep(0.01)


class TestBackupRoutes:
    """POST/GET /v1/backups."""

    @pytest.mark.asyncio
    async def test_take_backup(self, client):
        resp = await client.post("/v1/backups", json={"label": "nightly"})

        assert resp.status == 201
        body = await resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "complete"
        assert body["data"]["label"] == "nightly"

    @pytest.mark.asyncio
    async def test_take_backup_without_body(self, client):
        resp = await client.post("/v1/backups")
        assert resp.status == 201

    @pytest.mark.asyncio
    async def test_concurrent_backup_conflict(self, client, supervisor):
        supervisor.backups.wal_poll_interval = 0.2

        responses = await asyncio.gather(client.post("/v1/backups"), client.post("/v1/backups"))

        statuses = sorted(r.status for r in responses)
        assert statuses == [201, 409]
        conflict = [r for r in responses if r.status == 409][0]
        assert (await conflict.json())["diagnostic"]["error_code"] == "CONCURRENCY_CONFLICT"

    @pytest.mark.asyncio
    async def test_list_backups(self, client):
        await client.post("/v1/backups")

        resp = await client.get("/v1/backups")

        assert resp.status == 200
        assert len((await resp.json())["data"]["backups"]) == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post(
            "/v1/backups", data="{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400


class TestRestorePointRoutes:
    """POST/GET /v1/restore-points."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        resp = await client.post("/v1/restore-points", json={"name": "pre-migration"})
        assert resp.status == 201

        resp = await client.get("/v1/restore-points")
        points = (await resp.json())["data"]["restore_points"]
        assert [p["name"] for p in points] == ["pre-migration"]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, client):
        await client.post("/v1/restore-points", json={"name": "pre-migration"})

        resp = await client.post("/v1/restore-points", json={"name": "pre-migration"})

        assert resp.status == 409
        assert (await resp.json())["diagnostic"]["error_code"] == "ALREADY_EXISTS"

    @pytest.mark.asyncio
    async def test_name_required(self, client):
        resp = await client.post("/v1/restore-points", json={})
        assert resp.status == 400


class TestRecoveryRoutes:
    """POST/GET/DELETE /v1/recoveries."""

    async def prepare(self, client, supervisor):
        await client.post("/v1/backups")
        supervisor.engine.execute("users", {"id": 1})
        await client.post("/v1/restore-points", json={"name": "pre-migration"})
        supervisor.engine.execute("users", {"id": 2})
        supervisor.engine.switch_wal_now()
        await settle(supervisor)

    @pytest.mark.asyncio
    async def test_recover_and_wait(self, client, supervisor):
        await self.prepare(client, supervisor)

        resp = await client.post(
            "/v1/recoveries", json={"kind": "name", "value": "pre-migration", "wait": True}
        )

        assert resp.status == 200
        data = (await resp.json())["data"]
        assert data["state"] == "promoted"
        assert data["new_timeline"] == 2
        assert supervisor.engine.rows("users") == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_recover_in_background(self, client, supervisor):
        await self.prepare(client, supervisor)

        resp = await client.post("/v1/recoveries", json={"kind": "name", "value": "pre-migration"})

        assert resp.status == 202
        session_id = (await resp.json())["data"]["session_id"]
        await supervisor.recovery.wait(session_id)

        resp = await client.get(f"/v1/recoveries/{session_id}")
        assert resp.status == 200
        assert (await resp.json())["data"]["state"] == "promoted"

    @pytest.mark.asyncio
    async def test_unresolvable_target(self, client, supervisor):
        await self.prepare(client, supervisor)

        resp = await client.post(
            "/v1/recoveries", json={"kind": "name", "value": "nope", "wait": True}
        )

        assert resp.status == 422
        assert (await resp.json())["diagnostic"]["error_code"] == "TARGET_UNRESOLVED"

    @pytest.mark.asyncio
    async def test_unknown_target_kind(self, client):
        resp = await client.post("/v1/recoveries", json={"kind": "scn", "value": 5})
        assert resp.status == 422

    @pytest.mark.asyncio
    async def test_kind_and_value_required(self, client):
        resp = await client.post("/v1/recoveries", json={"kind": "lsn"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unknown_session(self, client):
        resp = await client.get("/v1/recoveries/does-not-exist")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, client):
        resp = await client.delete("/v1/recoveries/primary")
        assert resp.status == 404


class TestOperationalRoutes:
    """Validation, replication and health."""

    @pytest.mark.asyncio
    async def test_validation_without_backup_fails(self, client):
        resp = await client.post("/v1/validations")

        assert resp.status == 500
        assert (await resp.json())["diagnostic"]["error_code"] == "VALIDATION_FAIL"

    @pytest.mark.asyncio
    async def test_validation_passes(self, client, supervisor):
        await client.post("/v1/backups")
        supervisor.engine.execute("users", {"id": 1})
        supervisor.engine.switch_wal_now()
        await settle(supervisor)

        resp = await client.post("/v1/validations")

        assert resp.status == 200
        assert (await resp.json())["data"]["outcome"] == "pass"

    @pytest.mark.asyncio
    async def test_sync_and_verify(self, client, supervisor):
        await client.post("/v1/backups")
        await settle(supervisor)

        resp = await client.post("/v1/replication/sync")
        assert resp.status == 200
        assert (await resp.json())["data"]["eu-west-1"]["failed"] == 0

        resp = await client.get("/v1/replication/verify")
        assert resp.status == 200
        assert (await resp.json())["data"]["eu-west-1"]["in_sync"] is True

    @pytest.mark.asyncio
    async def test_health(self, client, supervisor):
        await client.post("/v1/backups")

        resp = await client.get("/v1/health")

        assert resp.status == 200
        data = (await resp.json())["data"]
        assert data["healthy"] is True
        assert data["latest_backup"] is not None
        assert data["wal_gaps"] == []
