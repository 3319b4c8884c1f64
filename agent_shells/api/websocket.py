import asyncio
import logging
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import AgentShellsError
from ..gateway import (
    AGENT_CHANNEL,
    CLOSE_POLICY_VIOLATION,
    CLOSE_SESSION_NOT_FOUND,
    SHELL_CHANNEL,
    ViewerConnection,
)
from ..runtime import AgentShellsRuntime

logger = logging.getLogger("agent_shells.api.websocket")

router = APIRouter()

MessageHandler = Callable[[ViewerConnection, str], Awaitable[None]]


def _runtime(websocket: WebSocket) -> AgentShellsRuntime:
    return websocket.app.state.runtime


def _session_id(websocket: WebSocket) -> Optional[str]:
    params = websocket.query_params
    return params.get("session_id") or params.get("sessionId")


async def _send_loop(websocket: WebSocket, viewer: ViewerConnection) -> None:
    while True:
        frame = await viewer.next_frame()
        if frame is None:
            try:
                await websocket.close(code=viewer.close_code or 1000, reason=viewer.close_reason)
            except RuntimeError:
                pass
            return
        try:
            await websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError):
            return


async def _receive_loop(websocket: WebSocket, viewer: ViewerConnection, handler: MessageHandler) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        raw = message.get("text")
        if raw is None and message.get("bytes") is not None:
            raw = message["bytes"].decode("utf-8", errors="replace")
        if raw is None:
            continue
        try:
            await handler(viewer, raw)
        except AgentShellsError as exc:
            logger.warning("Frame from %s viewer failed: %s", viewer.session_id, exc)


async def _serve(websocket: WebSocket, viewer: ViewerConnection, handler: Optional[MessageHandler]) -> None:
    tasks = {asyncio.create_task(_send_loop(websocket, viewer))}
    if handler is not None:
        tasks.add(asyncio.create_task(_receive_loop(websocket, viewer, handler)))
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/ws")
async def agent_ws(websocket: WebSocket):
    """Agent channel: scrollback replay, then live output and status."""
    await websocket.accept()
    rt = _runtime(websocket)
    session_id = _session_id(websocket)
    if not session_id:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="session_id is required")
        return
    if session_id not in rt.registry:
        await websocket.close(code=CLOSE_SESSION_NOT_FOUND, reason="Session not found")
        return

    viewer = ViewerConnection(session_id, AGENT_CHANNEL)
    rt.gateway.attach_agent(viewer)
    try:
        await _serve(websocket, viewer, rt.gateway.handle_agent_message)
    finally:
        rt.gateway.detach_agent(viewer)


@router.websocket("/ws/shell")
async def shell_ws(websocket: WebSocket):
    """Shell channel: the shared tmux attach stream, focused on this session's window."""
    await websocket.accept()
    rt = _runtime(websocket)
    session_id = _session_id(websocket)
    if not session_id:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="session_id is required")
        return

    viewer = ViewerConnection(session_id, SHELL_CHANNEL)
    attached = await rt.gateway.attach_shell(viewer, websocket.query_params.get("cwd"))
    try:
        await _serve(websocket, viewer, rt.gateway.handle_shell_message if attached else None)
    finally:
        rt.gateway.detach_shell(viewer)


@router.websocket("/ws/events")
async def session_events_ws(websocket: WebSocket):
    """Stream all session lifecycle events."""
    await websocket.accept()
    bus = _runtime(websocket).events
    q = bus.subscribe()

    try:
        while True:
            event = await q.get()
            await websocket.send_json(event.to_dict())
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        bus.unsubscribe(q)
