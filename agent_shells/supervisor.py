from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .agentspec import AgentCatalog, AgentSpec, render_ticket_prompt
from .config import LocalConfig, Settings
from .deferred import DeferredQueue
from .errors import (
    InvalidRequest,
    InvalidSessionState,
    NotAVersionControlRepo,
    ProcessSpawnFailed,
    WorkspaceCreationFailed,
)
from .events import EventBus, EventType, SessionEvent
from .persistence import PersistenceStore
from .pty import DEFAULT_COLS, DEFAULT_ROWS, PtyProcess, spawn_pipe, spawn_pty
from .record import SessionRecord, parse_position
from .registry import SessionRegistry
from .session import Scrollback, Session, SessionStatus
from .status import HookSignal, StatusTracker
from .worktree import WorktreeManager

logger = logging.getLogger("agent_shells.supervisor")

OutputListener = Callable[[Session, str], None]
SessionListener = Callable[[Session], None]

EDITABLE_FIELDS = ("custom_name", "custom_color", "notes", "position")


def new_session_id() -> str:
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class IsolationRequest:
    branch: str
    base_branch: Optional[str] = None


@dataclass
class TicketLink:
    id: str
    title: str = ""
    url: str = ""


@dataclass
class CreateSessionRequest:
    agent_id: str
    command: str
    cwd: Optional[str] = None
    agent_name: Optional[str] = None
    node_id: Optional[str] = None
    custom_name: Optional[str] = None
    custom_color: Optional[str] = None
    position: Optional[Dict[str, float]] = None
    isolation: Optional[IsolationRequest] = None
    ticket: Optional[TicketLink] = None


@dataclass
class CreateSessionResult:
    session: Session
    warnings: List[str] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def cwd(self) -> str:
        return self.session.record.cwd

    @property
    def branch(self) -> Optional[str]:
        return self.session.record.branch

    def to_payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "node_id": self.session.record.node_id,
            "cwd": self.cwd,
            "branch": self.branch,
            "worktree_path": self.session.record.worktree_path,
            "warnings": list(self.warnings),
        }


class ProcessSupervisor:
    """Owns the process side of every session: spawn, restart, kill, restore.

    Output and removal are announced through listeners so the streaming
    gateway can be wired in without the supervisor knowing about sockets.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        tracker: StatusTracker,
        deferred: DeferredQueue,
        persistence: PersistenceStore,
        *,
        settings: Optional[Settings] = None,
        catalog: Optional[AgentCatalog] = None,
        worktrees: Optional[WorktreeManager] = None,
        local_config: Optional[LocalConfig] = None,
        multiplexer=None,
        events: Optional[EventBus] = None,
        spawner=spawn_pty,
        pipe_spawner=spawn_pipe,
    ):
        self.registry = registry
        self.tracker = tracker
        self.deferred = deferred
        self.persistence = persistence
        self.settings = settings or Settings()
        self.timing = self.settings.timing
        self.catalog = catalog or AgentCatalog()
        self.worktrees = worktrees or WorktreeManager()
        self.local_config = local_config or LocalConfig(persistence.store)
        self.multiplexer = multiplexer
        self.events = events or EventBus()
        self._spawn = spawner
        self._spawn_pipe = pipe_spawner
        self._output_listeners: List[OutputListener] = []
        self._removal_listeners: List[SessionListener] = []

    def add_output_listener(self, listener: OutputListener) -> None:
        self._output_listeners.append(listener)

    def add_removal_listener(self, listener: SessionListener) -> None:
        self._removal_listeners.append(listener)

    def _publish(self, kind: EventType, session: Session, **data: Any) -> None:
        self.events.publish(SessionEvent(type=kind, session_id=session.id, data=data))

    # -- create ----------------------------------------------------------

    def _resolve_cwd(self, cwd: Optional[str]) -> str:
        path = Path(os.path.expanduser(cwd or self.settings.launch_cwd))
        if not path.is_dir():
            raise InvalidRequest(f"Working directory does not exist: {path}")
        return str(path.resolve())

    async def create_session(self, request: CreateSessionRequest) -> CreateSessionResult:
        command = (request.command or "").strip()
        if not command:
            raise InvalidRequest("command is required")
        cwd = self._resolve_cwd(request.cwd)
        session_id = new_session_id()
        warnings: List[str] = []

        origin_cwd: Optional[str] = None
        worktree_path: Optional[str] = None
        created_worktree = False
        if request.isolation and request.isolation.branch:
            base = request.isolation.base_branch or (await self.local_config.load()).get("default_base_branch") or "main"
            try:
                result = await self.worktrees.create(cwd, request.isolation.branch, base)
            except (NotAVersionControlRepo, WorkspaceCreationFailed) as exc:
                logger.warning("Isolation skipped for %s: %s", session_id, exc)
                warnings.append(str(exc))
            else:
                cwd = result.path
                origin_cwd = result.origin_cwd
                worktree_path = result.path
                created_worktree = result.created
        else:
            origin_cwd = await self.worktrees.detect_origin(cwd)

        spec = self.catalog.resolve(request.agent_id, command)
        record = SessionRecord(
            session_id=session_id,
            node_id=request.node_id or session_id,
            agent_id=request.agent_id or spec.id,
            agent_name=request.agent_name or spec.name,
            command=command,
            cwd=cwd,
            created_at=_now_iso(),
            origin_cwd=origin_cwd,
            worktree_path=worktree_path,
            branch=await self.worktrees.current_branch(cwd),
            custom_name=request.custom_name or None,
            custom_color=request.custom_color or None,
            position=parse_position(request.position),
            ticket_id=request.ticket.id if request.ticket else None,
            ticket_title=request.ticket.title if request.ticket else None,
            ticket_url=request.ticket.url if request.ticket else None,
        )
        session = Session(record=record, scrollback=Scrollback(self.settings.scrollback_cap))

        try:
            await self._start_process(session)
        except ProcessSpawnFailed:
            if created_worktree and worktree_path:
                await self.worktrees.remove(origin_cwd, worktree_path)
            raise

        self.registry.add(session)
        self._schedule_startup(session, spec, spec.startup_command(command, plugin_dir=spec.discover_plugin_dir()))
        if request.ticket:
            template = await self.local_config.ticket_prompt_template()
            prompt = render_ticket_prompt(
                template,
                ticket_id=request.ticket.id,
                title=request.ticket.title,
                url=request.ticket.url,
            )
            self.deferred.schedule(
                self.timing.startup_delay + self.timing.ticket_prompt_delay,
                lambda: self._write_deferred(session_id, prompt),
                session_id=session_id,
                label="ticket",
            )
        await self._start_event_stream(session, spec)

        logger.info("Created %s for %s in %s", session_id, record.agent_name, cwd)
        self._publish(EventType.SESSION_CREATED, session, cwd=cwd, branch=record.branch)
        await self.snapshot()
        return CreateSessionResult(session=session, warnings=warnings)

    async def _start_process(self, session: Session) -> PtyProcess:
        shell = os.environ.get("SHELL") or "/bin/bash"
        session_id = session.id
        holder: Dict[str, PtyProcess] = {}
        try:
            process = await self._spawn(
                [shell],
                cwd=session.record.cwd,
                env={"TERM": "xterm-256color", "AGENT_SHELLS_SESSION_ID": session_id},
                cols=DEFAULT_COLS,
                rows=DEFAULT_ROWS,
                on_output=lambda data: self._on_output(session_id, data),
                on_exit=lambda code: self._on_exit(session_id, holder.get("process"), code),
                label=session_id,
            )
        except OSError as exc:
            raise ProcessSpawnFailed(shell, str(exc)) from exc
        holder["process"] = process
        session.process = process
        self.deferred.every(
            self.timing.decay_interval,
            lambda: self._decay(session_id),
            session_id=session_id,
            label="decay",
        )
        logger.debug("Spawned %s (pid %s) for %s", shell, process.pid, session_id)
        return process

    def _schedule_startup(self, session: Session, spec: AgentSpec, command: str) -> None:
        session_id = session.id
        self.deferred.schedule(
            self.timing.startup_delay,
            lambda: self._write_deferred(session_id, command),
            session_id=session_id,
            label="startup",
        )

    async def _write_deferred(self, session_id: str, text: str) -> None:
        session = self.registry.get(session_id)
        if session is None or session.process is None:
            return
        try:
            await session.process.write(f"{text}\r")
        except OSError as exc:
            logger.error("Write to %s failed: %s", session_id, exc)
            self.tracker.mark_error(session)

    async def _start_event_stream(self, session: Session, spec: AgentSpec) -> None:
        if not spec.supports_event_stream:
            return
        session_id = session.id
        argv = spec.event_stream_command(session.record.command)
        try:
            session.tracker = await self._spawn_pipe(
                argv,
                cwd=session.record.cwd,
                env={"AGENT_SHELLS_SESSION_ID": session_id},
                on_line=lambda line: self._on_event_line(session_id, line),
                on_exit=lambda code: logger.debug("Event stream for %s exited (%s)", session_id, code),
            )
        except OSError as exc:
            logger.warning("Event stream for %s unavailable: %s", session_id, exc)
            session.tracker = None

    # -- process callbacks -------------------------------------------------

    def _on_output(self, session_id: str, data: str) -> None:
        session = self.registry.get(session_id)
        if session is None:
            return
        session.scrollback.append(data)
        for listener in list(self._output_listeners):
            try:
                listener(session, data)
            except Exception:
                logger.exception("Output listener failed for %s", session_id)
        self.tracker.record_output(session, data)

    def _on_exit(self, session_id: str, process: Optional[PtyProcess], code: Optional[int]) -> None:
        session = self.registry.get(session_id)
        if session is None or process is None or session.process is not process:
            return
        logger.info("Process for %s exited (%s)", session_id, code)
        session.process = None
        self.deferred.cancel_session(session_id)
        self._stop_event_stream(session)
        self.tracker.mark_disconnected(session)
        self._publish(EventType.SESSION_EXITED, session, code=code)

    def _on_event_line(self, session_id: str, line: str) -> None:
        session = self.registry.get(session_id)
        if session is not None:
            self.tracker.feed_event_stream(session, line)

    def _decay(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        if session is not None and session.is_live:
            self.tracker.decay(session)

    def _stop_event_stream(self, session: Session) -> None:
        pipe, session.tracker = session.tracker, None
        if pipe is not None:
            self.deferred.schedule(0, lambda: pipe.kill(self.timing.kill_timeout), label="tracker-kill")

    # -- viewer-driven ---------------------------------------------------

    async def write_input(self, session_id: str, data: str) -> bool:
        session = self.registry.require(session_id)
        if session.process is None:
            logger.debug("Input for %s dropped: no live process", session_id)
            return False
        self.tracker.record_input(session)
        try:
            await session.process.write(data)
        except OSError as exc:
            logger.error("Write to %s failed: %s", session_id, exc)
            self.tracker.mark_error(session)
            return False
        return True

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self.registry.require(session_id)
        if session.process is None:
            return
        try:
            await session.process.resize(cols, rows)
        except OSError as exc:
            logger.warning("Resize of %s failed: %s", session_id, exc)

    # -- lifecycle -------------------------------------------------------

    async def restart_session(self, session_id: str) -> Session:
        session = self.registry.require(session_id)
        if session.is_live:
            raise InvalidSessionState(session_id, "process is still running")
        record = session.record
        if not os.path.isdir(record.cwd):
            raise InvalidSessionState(session_id, f"working directory is gone: {record.cwd}")

        spec = self.catalog.resolve(record.agent_id, record.command)
        command = spec.restart_command(
            record.command,
            resume_token=record.resume_token if spec.supports_resume else None,
            plugin_dir=spec.discover_plugin_dir(),
        )
        await self._start_process(session)
        session.is_restored = False
        self.tracker.mark_starting(session)
        self._schedule_startup(session, spec, command)
        await self._start_event_stream(session, spec)
        branch = await self.worktrees.current_branch(record.cwd)
        if branch:
            record.branch = branch

        resumed = bool(spec.supports_resume and record.resume_token)
        logger.info("Restarted %s%s", session_id, " (resuming agent session)" if resumed else "")
        self._publish(EventType.SESSION_RESTARTED, session, command=command)
        await self.snapshot()
        return session

    async def delete_session(self, session_id: str) -> None:
        session = self.registry.require(session_id)
        self.deferred.cancel_session(session_id)
        self.tracker.forget(session)

        process, session.process = session.process, None
        self.registry.remove(session_id)
        if process is not None:
            await process.kill(self.timing.kill_timeout)
        pipe, session.tracker = session.tracker, None
        if pipe is not None:
            await pipe.kill(self.timing.kill_timeout)
        session.status = SessionStatus.DISCONNECTED

        if self.multiplexer is not None:
            try:
                await self.multiplexer.remove_window(session_id)
            except OSError as exc:
                logger.warning("Could not remove shell window for %s: %s", session_id, exc)

        for listener in list(self._removal_listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Removal listener failed for %s", session_id)

        if session.record.worktree_path:
            await self.worktrees.remove(session.record.origin_cwd, session.record.worktree_path)

        await self.persistence.delete_buffer(session_id)
        logger.info("Deleted %s", session_id)
        self._publish(EventType.SESSION_REMOVED, session)
        await self.snapshot()

    async def restore_all(self) -> List[Session]:
        restored: List[Session] = []
        for record in await self.persistence.load_records():
            if record.session_id in self.registry:
                continue
            text = await self.persistence.load_buffer(record.session_id)
            session = Session(
                record=record,
                scrollback=Scrollback(self.settings.scrollback_cap, [text] if text else []),
                status=SessionStatus.DISCONNECTED,
                is_restored=True,
            )
            branch = await self.worktrees.current_branch(record.cwd)
            if branch:
                record.branch = branch
            self.registry.add(session)
            self._publish(EventType.SESSION_RESTORED, session)
            restored.append(session)
        logger.info("Restored %d saved sessions", len(restored))
        return restored

    async def update_session(self, session_id: str, fields: Mapping[str, Any]) -> Session:
        session = self.registry.require(session_id)
        record = session.record
        changed = {}
        for key in EDITABLE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if key == "position":
                if value is not None and parse_position(value) is None:
                    raise InvalidRequest("position must be an object with x and y")
                value = parse_position(value)
            elif value is not None and not isinstance(value, str):
                raise InvalidRequest(f"{key} must be a string")
            elif key != "notes":
                value = value or None
            setattr(record, key, value)
            changed[key] = value
        if changed:
            self._publish(EventType.SESSION_UPDATED, session, **changed)
            await self.snapshot()
        return session

    async def update_positions(self, positions: Mapping[str, Any]) -> int:
        for node_id, raw in positions.items():
            session = self.registry.find_by_node_id(node_id)
            pos = parse_position(raw)
            if session is not None and pos is not None:
                session.record.position = pos
        return await self.persistence.save_positions(positions)

    # -- external signals --------------------------------------------------

    async def apply_hook(self, hook: HookSignal) -> Optional[Session]:
        session = self.registry.get(hook.session_id) or self.registry.find_by_agent_session_id(hook.agent_session_id)
        if session is None:
            logger.warning(
                "Status update for unknown session (id=%s, agent session=%s)",
                hook.session_id, hook.agent_session_id,
            )
            return None
        token_before = session.record.resume_token
        self.tracker.apply_hook(session, hook)
        if session.record.resume_token != token_before:
            await self.snapshot()
        return session

    def push_events(self, session_id: str, events: Iterable[Dict[str, Any]]) -> Session:
        session = self.registry.require(session_id)
        for event in events:
            if isinstance(event, dict):
                self.tracker.apply_event(session, event)
        return session

    # -- persistence / shutdown ----------------------------------------------

    async def snapshot(self) -> bool:
        return await self.persistence.save_snapshot(self.registry.values())

    async def shutdown(self) -> None:
        await self.snapshot()
        procs = []
        for session in self.registry.values():
            self.deferred.cancel_session(session.id)
            self.tracker.forget(session)
            if session.process is not None:
                procs.append(session.process)
                session.process = None
            if session.tracker is not None:
                procs.append(session.tracker)
                session.tracker = None
            session.status = SessionStatus.DISCONNECTED
        if procs:
            await asyncio.gather(*(p.kill(self.timing.kill_timeout) for p in procs), return_exceptions=True)
        logger.info("Stopped %d processes", len(procs))
