from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .agentspec import AgentCatalog
from .classifier import StructuredEventClassifier
from .config import LocalConfig, Settings
from .deferred import Clock, DeferredEntry, DeferredQueue
from .events import EventBus, EventType, SessionEvent
from .gateway import StreamingGateway
from .multiplexer import ShellMultiplexer, TmuxRunner
from .persistence import PersistenceStore
from .pty import spawn_pipe, spawn_pty
from .registry import SessionRegistry
from .session import Session
from .status import StatusTracker
from .store import DataStore
from .supervisor import ProcessSupervisor
from .worktree import GitRunner, WorktreeManager

logger = logging.getLogger("agent_shells.runtime")


class AgentShellsRuntime:
    """Builds and owns every component of one server instance.

    Nothing here is a module-level singleton; the FastAPI app holds the
    runtime on ``app.state`` and tests build their own with fakes injected.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        spawner=spawn_pty,
        pipe_spawner=spawn_pipe,
        tmux_runner: Optional[TmuxRunner] = None,
        git_runner: Optional[GitRunner] = None,
        catalog: Optional[AgentCatalog] = None,
    ):
        self.settings = settings or Settings.from_env()
        timing = self.settings.timing
        data_dir = Path(self.settings.data_dir).expanduser() if self.settings.data_dir else None

        self.store = DataStore(data_dir, launch_cwd=self.settings.launch_cwd)
        self.deferred = DeferredQueue(clock)
        self.registry = SessionRegistry()
        self.events = EventBus()
        self.catalog = catalog or AgentCatalog.load(
            self.settings.agents_file, event_streams=self.settings.event_streams
        )
        self.local_config = LocalConfig(self.store)
        self.persistence = PersistenceStore(self.store)
        self.tracker = StatusTracker(
            self.deferred,
            timing,
            structured=StructuredEventClassifier(self.catalog),
        )
        self.multiplexer = ShellMultiplexer(
            self.deferred,
            timing,
            session_name=self.settings.tmux_session,
            default_cwd=self.settings.launch_cwd,
            runner=tmux_runner,
            spawner=spawner,
        )
        self.worktrees = WorktreeManager(git_runner)
        self.supervisor = ProcessSupervisor(
            self.registry,
            self.tracker,
            self.deferred,
            self.persistence,
            settings=self.settings,
            catalog=self.catalog,
            worktrees=self.worktrees,
            local_config=self.local_config,
            multiplexer=self.multiplexer,
            events=self.events,
            spawner=spawner,
            pipe_spawner=pipe_spawner,
        )
        self.gateway = StreamingGateway(self.registry, self.supervisor, self.multiplexer)

        self.supervisor.add_output_listener(self.gateway.broadcast_output)
        self.supervisor.add_removal_listener(self.gateway.close_session_viewers)
        self.tracker.add_listener(self.gateway.broadcast_status)
        self.tracker.add_listener(self._publish_status)

        self._snapshot_entry: Optional[DeferredEntry] = None
        self.started = False

    def _publish_status(self, session: Session) -> None:
        self.events.publish(
            SessionEvent(
                type=EventType.SESSION_STATUS,
                session_id=session.id,
                data={"status": session.status.value, "tool": session.current_tool},
            )
        )

    async def start(self, *, run_timers: bool = True, tick: float = 0.05) -> None:
        if self.started:
            return
        self.started = True
        await self.supervisor.restore_all()
        self._snapshot_entry = self.deferred.every(
            self.settings.timing.snapshot_interval,
            self.supervisor.snapshot,
            label="snapshot",
        )
        if run_timers:
            self.deferred.start(tick)
        logger.info(
            "agent_shells ready (launch cwd %s, data dir %s)",
            self.settings.launch_cwd, self.store.root,
        )

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        self.deferred.cancel(self._snapshot_entry)
        await self.deferred.stop()
        await self.supervisor.shutdown()
        await self.multiplexer.shutdown()
        logger.info("agent_shells stopped")
