"""Streaming plane: relays PTY output and status to viewers, input back to PTYs.

The gateway never awaits a socket. Each ``ViewerConnection`` owns a bounded
outbound queue that its WebSocket endpoint drains; a viewer that falls too
far behind is closed instead of slowing everyone else down.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Set, Union

from .errors import AgentShellsError, MalformedFrame
from .registry import SessionRegistry
from .session import Session

if TYPE_CHECKING:
    from .multiplexer import ShellMultiplexer
    from .supervisor import ProcessSupervisor

logger = logging.getLogger("agent_shells.gateway")

OUTBOX_SIZE = 1000

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_UNAVAILABLE = 1011
CLOSE_TOO_SLOW = 1013
CLOSE_SESSION_NOT_FOUND = 4404

AGENT_CHANNEL = "agent"
SHELL_CHANNEL = "shell"

DISCONNECTED_NOTICE = (
    "\x1b[38;5;245mSession was disconnected.\r\n"
    "Restart the session to resume it.\x1b[0m\r\n"
)
SHELL_UNAVAILABLE_NOTICE = "\x1b[38;5;245mtmux is not available on this host.\x1b[0m\r\n"

INBOUND_KINDS = {"input", "resize", "restart"}


class ViewerConnection:
    """One attached client. Holds only the session id, never the session."""

    def __init__(self, session_id: str, channel: str = AGENT_CHANNEL, *, maxsize: int = OUTBOX_SIZE):
        self.session_id = session_id
        self.channel = channel
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: str = ""

    def push(self, frame: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Viewer on %s fell behind, dropping it", self.session_id)
            self.close(CLOSE_TOO_SLOW, "viewer too slow")
            return False
        return True

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        # the None sentinel must fit even when the queue is full
        while True:
            try:
                self.outbox.put_nowait(None)
                return
            except asyncio.QueueFull:
                self.outbox.get_nowait()

    async def next_frame(self) -> Optional[Dict[str, Any]]:
        return await self.outbox.get()

    def drain(self) -> list:
        """Frames queued so far, without waiting. Stops at the close sentinel."""
        frames = []
        while not self.outbox.empty():
            frame = self.outbox.get_nowait()
            if frame is None:
                break
            frames.append(frame)
        return frames


def parse_frame(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedFrame(f"invalid JSON: {exc.msg}", raw) from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise MalformedFrame("frame must be an object", raw)

    kind = data.get("type") or data.get("kind")
    if kind not in INBOUND_KINDS:
        raise MalformedFrame(f"unknown frame kind {kind!r}", raw)

    if kind == "input":
        text = data.get("data")
        if not isinstance(text, str):
            raise MalformedFrame("input frame needs string data", raw)
        return {"type": "input", "data": text}

    if kind == "resize":
        try:
            cols, rows = int(data["cols"]), int(data["rows"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedFrame("resize frame needs integer cols and rows", raw) from exc
        if cols <= 0 or rows <= 0:
            raise MalformedFrame("resize dimensions must be positive", raw)
        return {"type": "resize", "cols": cols, "rows": rows}

    return {"type": "restart"}


def output_frame(data: str) -> Dict[str, Any]:
    return {"type": "output", "data": data}


def status_frame(session: Session) -> Dict[str, Any]:
    return {
        "type": "status",
        "status": session.status.value,
        "tool": session.current_tool,
        "isRestored": session.is_restored,
    }


def restarted_frame() -> Dict[str, Any]:
    return {"type": "restarted"}


class StreamingGateway:
    def __init__(
        self,
        registry: SessionRegistry,
        supervisor: "ProcessSupervisor",
        multiplexer: Optional["ShellMultiplexer"] = None,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.multiplexer = multiplexer
        self.shell_viewers: Set[ViewerConnection] = set()
        if multiplexer is not None:
            multiplexer.add_output_listener(self.broadcast_shell_output)
            multiplexer.add_restart_listener(self._shell_restarted)

    # -- agent channel ---------------------------------------------------

    def attach_agent(self, viewer: ViewerConnection) -> Session:
        session = self.registry.require(viewer.session_id)
        session.viewers.add(viewer)
        if session.is_live:
            if session.scrollback:
                viewer.push(output_frame(session.scrollback.text()))
        else:
            viewer.push(output_frame(DISCONNECTED_NOTICE))
        viewer.push(status_frame(session))
        logger.info("Viewer attached to %s (%d total)", session.id, len(session.viewers))
        return session

    def detach_agent(self, viewer: ViewerConnection) -> None:
        session = self.registry.get(viewer.session_id)
        if session is not None and viewer in session.viewers:
            session.viewers.discard(viewer)
            logger.info("Viewer detached from %s (%d left)", session.id, len(session.viewers))

    async def handle_agent_message(self, viewer: ViewerConnection, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except MalformedFrame as exc:
            logger.warning("Dropping frame from %s viewer: %s", viewer.session_id, exc.reason)
            return
        session = self.registry.get(viewer.session_id)
        if session is None:
            viewer.close(CLOSE_SESSION_NOT_FOUND, "session removed")
            return
        logger.debug("%s <- %s", session.id, frame["type"])

        kind = frame["type"]
        if kind == "input":
            await self.supervisor.write_input(session.id, frame["data"])
        elif kind == "resize":
            await self.supervisor.resize(session.id, frame["cols"], frame["rows"])
        elif kind == "restart":
            try:
                await self.supervisor.restart_session(session.id)
            except AgentShellsError as exc:
                viewer.push(output_frame(f"\r\n\x1b[38;5;245m{exc}\x1b[0m\r\n"))

    def broadcast_output(self, session: Session, data: str) -> None:
        self._broadcast(session, output_frame(data))

    def broadcast_status(self, session: Session) -> None:
        self._broadcast(session, status_frame(session))

    def _broadcast(self, session: Session, frame: Dict[str, Any]) -> None:
        for viewer in list(session.viewers):
            if not viewer.push(frame):
                session.viewers.discard(viewer)

    def close_session_viewers(self, session: Session, reason: str = "session deleted") -> None:
        for viewer in list(session.viewers):
            viewer.close(CLOSE_NORMAL, reason)
        session.viewers.clear()
        for viewer in [v for v in self.shell_viewers if v.session_id == session.id]:
            viewer.close(CLOSE_NORMAL, reason)
            self.shell_viewers.discard(viewer)

    # -- shell channel ---------------------------------------------------

    async def attach_shell(self, viewer: ViewerConnection, cwd: Optional[str] = None) -> bool:
        """Open (or reuse) the window keyed by the viewer's session id.

        Windows do not require a registered session: a deleted session's id
        gets a fresh window in ``cwd`` or the multiplexer's default directory.
        """
        mux = self.multiplexer
        if mux is None or not mux.available():
            viewer.push(output_frame(SHELL_UNAVAILABLE_NOTICE))
            viewer.close(CLOSE_UNAVAILABLE, "tmux unavailable")
            return False
        session = self.registry.get(viewer.session_id)
        if not cwd and session is not None:
            cwd = session.record.cwd
        try:
            await mux.open(viewer.session_id, cwd)
        except (RuntimeError, OSError) as exc:
            logger.warning("Could not open shell for %s: %s", viewer.session_id, exc)
            viewer.push(output_frame(SHELL_UNAVAILABLE_NOTICE))
            viewer.close(CLOSE_UNAVAILABLE, "shell unavailable")
            return False
        self.shell_viewers.add(viewer)
        logger.info("Shell viewer attached to %s", viewer.session_id)
        return True

    def detach_shell(self, viewer: ViewerConnection) -> None:
        self.shell_viewers.discard(viewer)

    async def handle_shell_message(self, viewer: ViewerConnection, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except MalformedFrame as exc:
            logger.warning("Dropping shell frame from %s: %s", viewer.session_id, exc.reason)
            return
        mux = self.multiplexer
        if mux is None:
            return

        kind = frame["type"]
        if kind == "input":
            if viewer.session_id not in mux.windows:
                session = self.registry.get(viewer.session_id)
                try:
                    await mux.open(viewer.session_id, session.record.cwd if session else None)
                except (RuntimeError, OSError) as exc:
                    logger.warning("Dropping shell input for %s: %s", viewer.session_id, exc)
                    return
            await mux.select(viewer.session_id)
            await mux.write(frame["data"])
        elif kind == "resize":
            await mux.resize(frame["cols"], frame["rows"])
        elif kind == "restart":
            await mux.restart_window(viewer.session_id)

    def broadcast_shell_output(self, data: str) -> None:
        frame = output_frame(data)
        for viewer in list(self.shell_viewers):
            if not viewer.push(frame):
                self.shell_viewers.discard(viewer)

    def _shell_restarted(self, session_id: str) -> None:
        frame = restarted_frame()
        for viewer in list(self.shell_viewers):
            if not viewer.push(frame):
                self.shell_viewers.discard(viewer)
