"""
HTTP trigger API for pgpitr.

Exposes the supervisor's trigger interface to operators and to the external
scheduler:

    POST   /v1/backups                   take a base backup {"label"?}
    GET    /v1/backups                   list base backups
    POST   /v1/restore-points            create a restore point {"name"}
    GET    /v1/restore-points            list restore points
    POST   /v1/recoveries                start a recovery {"kind", "value", "wait"?}
    GET    /v1/recoveries/{session_id}   recovery session status
    DELETE /v1/recoveries/{instance_id}  cancel the active recovery of an instance
    POST   /v1/validations               run a validation now
    POST   /v1/replication/sync          run a replication pass now
    GET    /v1/replication/verify        compare regions against the catalog
    GET    /v1/health                    archive health

Every response body is a TriggerResult as JSON.

Invariants:
    - Handlers never raise PitrError to aiohttp; the error code picks the status
    - The API binds to localhost unless configured otherwise

How to change safely:
    - Keep paths stable; the external scheduler calls them
    - Add new error codes to STATUS_BY_ERROR_CODE
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..errors import PitrError

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_CODE = {
    "CONCURRENCY_CONFLICT": 409,
    "ALREADY_EXISTS": 409,
    "INVALID_TRANSITION": 409,
    "TARGET_UNRESOLVED": 422,
    "CHAIN_GAP": 422,
    "CORRUPTION": 502,
    "NOT_FOUND": 502,
    "RETRY_EXHAUSTED": 503,
    "TRANSIENT_IO": 503,
    "BACKUP_FAILED": 500,
    "ENGINE_ERROR": 500,
    "REPLICATION_INCOMPLETE": 502,
    "VALIDATION_FAIL": 500,
    "VALIDATION_TIMEOUT": 504,
}


def status_for(result: Any, success_status: int = 200) -> int:
    """HTTP status for a TriggerResult."""
    if result.success:
        return success_status
    return STATUS_BY_ERROR_CODE.get(result.error_code, 500)


def create_http_app(supervisor: Any) -> web.Application:
    """Create the HTTP application.

    Args:
        supervisor: PitrSupervisor instance

    Returns:
        aiohttp Application instance
    """
    app = web.Application(middlewares=[error_middleware])

    app.router.add_post("/v1/backups", lambda r: handle_take_backup(r, supervisor))
    app.router.add_get("/v1/backups", lambda r: handle_list_backups(r, supervisor))
    app.router.add_post("/v1/restore-points", lambda r: handle_create_restore_point(r, supervisor))
    app.router.add_get("/v1/restore-points", lambda r: handle_list_restore_points(r, supervisor))
    app.router.add_post("/v1/recoveries", lambda r: handle_recover(r, supervisor))
    app.router.add_get("/v1/recoveries/{session_id}", lambda r: handle_recovery_status(r, supervisor))
    app.router.add_delete("/v1/recoveries/{instance_id}", lambda r: handle_cancel(r, supervisor))
    app.router.add_post("/v1/validations", lambda r: handle_validate(r, supervisor))
    app.router.add_post("/v1/replication/sync", lambda r: handle_sync(r, supervisor))
    app.router.add_get("/v1/replication/verify", lambda r: handle_verify(r, supervisor))
    app.router.add_get("/v1/health", lambda r: handle_health(r, supervisor))

    return app


@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.Response:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except PitrError as e:
        return web.json_response(e.to_dict(), status=STATUS_BY_ERROR_CODE.get(e.code, 500))
    except Exception as e:
        logger.error(f"HTTP handler error: {e}", exc_info=True)
        return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)


async def read_body(request: web.Request) -> dict[str, Any]:
    """Parse an optional JSON object body.

    Raises:
        web.HTTPBadRequest: If the body is not a JSON object
    """
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return body


def respond(result: Any, success_status: int = 200) -> web.Response:
    return web.json_response(result.to_dict(), status=status_for(result, success_status))


async def handle_take_backup(request: web.Request, supervisor: Any) -> web.Response:
    """Handle POST /v1/backups - Take a base backup."""
    body = await read_body(request)
    result = await supervisor.take_base_backup(label=body.get("label"))
    return respond(result, 201)


async def handle_list_backups(request: web.Request, supervisor: Any) -> web.Response:
    """Handle GET /v1/backups - List base backups."""
    return respond(await supervisor.list_backups())


async def handle_create_restore_point(request: web.Request, supervisor: Any) -> web.Response:
    """Handle POST /v1/restore-points - Create a named restore point."""
    body = await read_body(request)
    name = body.get("name")
    if not name:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "name is required"}),
            content_type="application/json",
        )
    return respond(await supervisor.create_restore_point(name), 201)


async def handle_list_restore_points(request: web.Request, supervisor: Any) -> web.Response:
    """Handle GET /v1/restore-points - List restore points."""
    return respond(await supervisor.list_restore_points())


async def handle_recover(request: web.Request, supervisor: Any) -> web.Response:
    """Handle POST /v1/recoveries - Start a recovery."""
    body = await read_body(request)
    if "kind" not in body or "value" not in body:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "kind and value are required"}),
            content_type="application/json",
        )
    wait = bool(body.get("wait", False))
    result = await supervisor.recover(body["kind"], body["value"], wait=wait)
    return respond(result, 200 if wait else 202)


async def handle_recovery_status(request: web.Request, supervisor: Any) -> web.Response:
    """Handle GET /v1/recoveries/{session_id} - Recovery session status."""
    result = await supervisor.recovery_status(request.match_info["session_id"])
    if not result.success:
        return web.json_response(result.to_dict(), status=404)
    return respond(result)


async def handle_cancel(request: web.Request, supervisor: Any) -> web.Response:
    """Handle DELETE /v1/recoveries/{instance_id} - Cancel a recovery."""
    result = await supervisor.cancel_recovery(request.match_info["instance_id"])
    if result.error_code == "TARGET_UNRESOLVED":
        return web.json_response(result.to_dict(), status=404)
    return respond(result)


async def handle_validate(request: web.Request, supervisor: Any) -> web.Response:
    """Handle POST /v1/validations - Run a validation."""
    return respond(await supervisor.validate())


async def handle_sync(request: web.Request, supervisor: Any) -> web.Response:
    """Handle POST /v1/replication/sync - Run a replication pass."""
    return respond(await supervisor.sync())


async def handle_verify(request: web.Request, supervisor: Any) -> web.Response:
    """Handle GET /v1/replication/verify - Compare regions with the catalog."""
    return respond(await supervisor.verify_replication())


async def handle_health(request: web.Request, supervisor: Any) -> web.Response:
    """Handle GET /v1/health - Archive health."""
    result = await supervisor.health()
    status = 200 if result.success else 503
    return web.json_response(result.to_dict(), status=status)


async def run_http_server(
    supervisor: Any,
    host: str = "127.0.0.1",
    port: int = 8085,
) -> None:
    """Run the HTTP server until cancelled.

    Args:
        supervisor: PitrSupervisor instance
        host: Host to bind to
        port: Port to listen on
    """
    app = create_http_app(supervisor)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP trigger API running on http://{host}:{port}")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
