"""Embedded HTTP server: health check plus the admission, control and checkpoint APIs.

Binds to ``server.host:server.port`` (loopback by default).  Channel
adapters that aren't shell scripts use this instead of the CLI.
"""

from __future__ import annotations

import json
import time
from typing import Any, Protocol

from aiohttp import web

from baton.config import get_settings
from baton.intake import receive
from baton.logger import logger
from baton.state import (
    ack_control,
    complete_message,
    create_checkpoint,
    enqueue_control,
    get_control_status,
    get_message,
    latest_checkpoint,
    list_checkpoints,
)
from baton.types import Health

_start_time = time.monotonic()

_ADMISSION_STATUS = {
    "INVALID_ARGS": 400,
    "HEALTH_RECOVERING": 503,
    "HEALTH_DOWN": 503,
    "INTERNAL_ERROR": 500,
}


class HttpDeps(Protocol):
    """Dependencies injected by app.py."""

    def health(self) -> Health: ...

    async def session_exists(self) -> bool: ...


deps_key = web.AppKey("deps", HttpDeps)


def _error(message: str, status: int = 400) -> web.Response:
    return web.json_response({"ok": False, "error": message}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    """Parsed JSON object body; an empty body is an empty dict."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON body: {exc}") from exc
    if not isinstance(body, dict):
        raise ValueError("JSON body must be an object")
    return body


def _int_param(request: web.Request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError as exc:
        raise web.HTTPBadRequest(reason=f"{name} must be an integer") from exc


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "health": deps.health(),
            "session": await deps.session_exists(),
        }
    )


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


async def _handle_receive(request: web.Request) -> web.Response:
    try:
        body = await _json_body(request)
    except ValueError as exc:
        return _error(str(exc))

    result = await receive(
        body.get("channel"),
        body.get("content"),
        endpoint=body.get("endpoint"),
        priority=body.get("priority", 3),
        require_idle=bool(body.get("require_idle", False)),
        no_reply=bool(body.get("no_reply", False)),
    )
    status = 200 if result.ok else _ADMISSION_STATUS[result.code or "INTERNAL_ERROR"]
    return web.json_response(result.to_dict(), status=status)


async def _handle_message_done(request: web.Request) -> web.Response:
    message_id = _int_param(request, "id")
    try:
        body = await _json_body(request)
    except ValueError as exc:
        return _error(str(exc))

    success = bool(body.get("success", True))
    if await complete_message(message_id, success=success, error=body.get("error")):
        return web.json_response({"ok": True, "id": message_id})
    message = await get_message(message_id)
    if message is None:
        return _error(f"message {message_id} not found", 404)
    return _error(f"message {message_id} is {message.status}, not running", 409)


# ------------------------------------------------------------------
# Control
# ------------------------------------------------------------------


async def _handle_control_enqueue(request: web.Request) -> web.Response:
    try:
        body = await _json_body(request)
        record = await enqueue_control(
            body.get("content") or "",
            priority=int(body.get("priority", 3)),
            require_idle=bool(body.get("require_idle", False)),
            bypass_state=bool(body.get("bypass_state", False)),
            ack_deadline_seconds=body.get("ack_deadline_seconds"),
            available_in_seconds=body.get("available_in_seconds"),
        )
    except (ValueError, TypeError) as exc:
        return _error(str(exc))
    return web.json_response({"ok": True, "id": record.id}, status=201)


async def _handle_control_get(request: web.Request) -> web.Response:
    control_id = _int_param(request, "id")
    status = await get_control_status(control_id)
    if status is None:
        return _error(f"control {control_id} not found", 404)
    return web.json_response({"id": control_id, "status": status})


async def _handle_control_ack(request: web.Request) -> web.Response:
    control_id = _int_param(request, "id")
    result = await ack_control(control_id)
    if not result.found:
        return _error(f"control {control_id} not found", 404)
    return web.json_response(
        {"ok": True, "already_final": result.already_final, "status": result.status}
    )


# ------------------------------------------------------------------
# Checkpoints
# ------------------------------------------------------------------


async def _handle_checkpoint_create(request: web.Request) -> web.Response:
    try:
        body = await _json_body(request)
        if "end_id" not in body:
            raise ValueError("end_id is required")
        checkpoint = await create_checkpoint(int(body["end_id"]), body.get("summary"))
    except (ValueError, TypeError) as exc:
        return _error(str(exc))
    return web.json_response(checkpoint.to_dict(), status=201)


async def _handle_checkpoint_list(request: web.Request) -> web.Response:
    raw = request.query.get("limit")
    try:
        checkpoints = await list_checkpoints(int(raw) if raw else None)
    except ValueError as exc:
        return _error(str(exc))
    return web.json_response([c.to_dict() for c in checkpoints])


async def _handle_checkpoint_latest(request: web.Request) -> web.Response:
    checkpoint = await latest_checkpoint()
    if checkpoint is None:
        return _error("no checkpoints", 404)
    return web.json_response(checkpoint.to_dict())


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def build_app(deps: HttpDeps) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_post("/api/receive", _handle_receive)
    app.router.add_post("/api/messages/{id}/done", _handle_message_done)
    app.router.add_post("/api/control", _handle_control_enqueue)
    app.router.add_get("/api/control/{id}", _handle_control_get)
    app.router.add_post("/api/control/{id}/ack", _handle_control_ack)
    app.router.add_post("/api/checkpoints", _handle_checkpoint_create)
    app.router.add_get("/api/checkpoints", _handle_checkpoint_list)
    app.router.add_get("/api/checkpoints/latest", _handle_checkpoint_latest)
    return app


async def start_http_server(deps: HttpDeps) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    s = get_settings().server
    runner = web.AppRunner(build_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, s.host, s.port)
    await site.start()
    logger.info("HTTP server listening", host=s.host, port=s.port)
    return runner
