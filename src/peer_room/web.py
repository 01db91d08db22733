"""Room webapp: landing redirect, room views and call controls over aiohttp."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import aiohttp_jinja2
import jinja2
from aiohttp import web

from peer_room.rooms import generate_room_id, room_path
from peer_room.session.controller import CallSession
from peer_room.session.state import SessionState

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], CallSession]

_factory_key: web.AppKey[SessionFactory] = web.AppKey("session_factory")
_sessions_key = web.AppKey("sessions", dict)
_activations_key = web.AppKey("activations", set)


async def _index_handler(request: web.Request) -> web.Response:
    room_id = generate_room_id()
    logger.info("Creating room %s", room_id)
    raise web.HTTPSeeOther(location=room_path(room_id))


async def _room_handler(request: web.Request) -> web.Response:
    room_id = request.match_info["room_id"]
    session = _get_or_activate(request.app, room_id)
    data = session.data
    context = {
        "room_id": room_id,
        "state": data.state,
        "local_id": data.local_id,
        "remote_peer_id": data.remote_peer_id,
        "can_dial": bool(data.local_id) and data.state is SessionState.READY_IDLE,
        "notices": session.pop_notices(),
    }
    return aiohttp_jinja2.render_template("room.html", request, context)


async def _call_handler(request: web.Request) -> web.Response:
    session = _lookup(request)
    form = await request.post()
    session.dial(str(form.get("peer_id", "")))
    raise web.HTTPSeeOther(location=room_path(session.room_id))


async def _leave_handler(request: web.Request) -> web.Response:
    session = _lookup(request)
    request.app[_sessions_key].pop(session.room_id, None)
    await session.teardown()
    raise web.HTTPSeeOther(location="/")


async def _status_handler(request: web.Request) -> web.Response:
    session = _lookup(request)
    data = session.data
    return web.json_response(
        {
            "room_id": session.room_id,
            "state": str(data.state),
            "local_id": data.local_id,
            "remote_peer_id": data.remote_peer_id,
            "notices": [
                {"kind": str(n.kind), "message": n.message} for n in session.notices
            ],
        }
    )


def _lookup(request: web.Request) -> CallSession:
    room_id = request.match_info["room_id"]
    session = request.app[_sessions_key].get(room_id)
    if session is None:
        raise web.HTTPNotFound(text=f"No active session for room {room_id}")
    return session


def _get_or_activate(app: web.Application, room_id: str) -> CallSession:
    """Return the room's session, creating and activating it on first view."""
    sessions: dict[str, CallSession] = app[_sessions_key]
    session = sessions.get(room_id)
    if session is not None:
        return session
    session = app[_factory_key](room_id)
    sessions[room_id] = session
    activations: set[asyncio.Task[Any]] = app[_activations_key]
    task = asyncio.get_running_loop().create_task(session.activate())
    activations.add(task)
    task.add_done_callback(activations.discard)
    return session


async def _on_cleanup(app: web.Application) -> None:
    for task in list(app[_activations_key]):
        task.cancel()
    sessions: dict[str, CallSession] = app[_sessions_key]
    for session in list(sessions.values()):
        await session.teardown()
    sessions.clear()


def create_app(session_factory: SessionFactory) -> web.Application:
    app = web.Application()
    aiohttp_jinja2.setup(
        app,
        loader=jinja2.PackageLoader("peer_room"),
        autoescape=jinja2.select_autoescape(),
    )
    app[_factory_key] = session_factory
    app[_sessions_key] = {}
    app[_activations_key] = set()
    app.router.add_get("/", _index_handler)
    app.router.add_get("/room/{room_id}", _room_handler)
    app.router.add_post("/room/{room_id}/call", _call_handler)
    app.router.add_post("/room/{room_id}/leave", _leave_handler)
    app.router.add_get("/room/{room_id}/status", _status_handler)
    app.on_cleanup.append(_on_cleanup)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
