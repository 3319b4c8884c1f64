"""Companion shells: one tmux session, one window per agent session.

A single PTY runs ``tmux attach-session``; every shell viewer sees that one
stream, and bringing a session's shell forward means selecting its window.
Windows outlive viewers and are only killed when their session is deleted.
"""
from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .config import DEFAULT_TMUX_SESSION, TimingConfig
from .deferred import DeferredQueue
from .pty import DEFAULT_COLS, DEFAULT_ROWS, CommandResult, PtyProcess, run_command, spawn_pty

logger = logging.getLogger("agent_shells.multiplexer")

TmuxRunner = Callable[[Sequence[str]], Awaitable[CommandResult]]
Listener = Callable[[str], None]


async def run_tmux(args: Sequence[str]) -> CommandResult:
    return await run_command(["tmux", *args])


def window_name(session_id: str) -> str:
    return session_id.replace(":", "-").replace(".", "-")


@dataclass
class ShellWindow:
    session_id: str
    name: str
    cwd: str
    created_at: float = field(default_factory=time.time)


class TmuxUnavailable(RuntimeError):
    pass


class ShellMultiplexer:
    def __init__(
        self,
        deferred: DeferredQueue,
        timing: Optional[TimingConfig] = None,
        *,
        session_name: str = DEFAULT_TMUX_SESSION,
        default_cwd: Optional[str] = None,
        runner: Optional[TmuxRunner] = None,
        spawner=spawn_pty,
    ):
        self.deferred = deferred
        self.timing = timing or TimingConfig()
        self.session_name = session_name
        self.default_cwd = default_cwd or os.getcwd()
        self._tmux = runner or run_tmux
        self._injected_runner = runner is not None
        self._spawn = spawner
        self.process: Optional[PtyProcess] = None
        self.windows: Dict[str, ShellWindow] = {}
        self.current: Optional[str] = None
        self._output_listeners: List[Listener] = []
        self._restart_listeners: List[Listener] = []
        self._closing = False

    def available(self) -> bool:
        return self._injected_runner or shutil.which("tmux") is not None

    def add_output_listener(self, listener: Listener) -> None:
        self._output_listeners.append(listener)

    def add_restart_listener(self, listener: Listener) -> None:
        self._restart_listeners.append(listener)

    def _target(self, session_id: str) -> str:
        return f"{self.session_name}:{window_name(session_id)}"

    def _emit(self, data: str) -> None:
        for listener in list(self._output_listeners):
            try:
                listener(data)
            except Exception:
                logger.exception("Shell output listener failed")

    async def ensure_attached(self, cwd: Optional[str] = None) -> None:
        if self.process is not None and self.process.alive:
            return
        if not self.available():
            raise TmuxUnavailable("tmux is not installed")
        self._closing = False
        cwd = cwd if cwd and os.path.isdir(cwd) else self.default_cwd

        has = await self._tmux(["has-session", "-t", self.session_name])
        if not has.ok:
            if self.windows:
                logger.warning("tmux session %s is gone, dropping %d windows", self.session_name, len(self.windows))
            self.windows.clear()
            self.current = None
            created = await self._tmux(["new-session", "-d", "-s", self.session_name, "-c", cwd])
            if not created.ok:
                raise TmuxUnavailable(created.stderr or "tmux new-session failed")
            logger.info("Created tmux session %s", self.session_name)

        self.process = await self._spawn(
            ["tmux", "attach-session", "-t", self.session_name],
            cwd=cwd,
            env={"TERM": "xterm-256color", "TMUX": None},
            cols=DEFAULT_COLS,
            rows=DEFAULT_ROWS,
            on_output=self._emit,
            on_exit=self._on_attach_exit,
            label="tmux",
        )
        logger.info("Attached to tmux session %s (pid %s)", self.session_name, self.process.pid)

    def _on_attach_exit(self, code: Optional[int]) -> None:
        self.process = None
        if self._closing:
            return
        logger.warning("tmux attach exited (%s), reattaching", code)
        self.deferred.schedule(self.timing.shell_reattach_delay, self._reattach, label="tmux-reattach")

    async def _reattach(self) -> None:
        if self._closing or (self.process is not None and self.process.alive):
            return
        focused = self.windows.get(self.current) if self.current is not None else None
        await self.ensure_attached()
        if focused is not None:
            # only creates anything when the tmux server was lost along with the window
            await self.ensure_window(focused.session_id, focused.cwd)
            self.current = None
            await self.select(focused.session_id)

    async def ensure_window(self, session_id: str, cwd: str) -> ShellWindow:
        window = self.windows.get(session_id)
        if window is not None:
            return window
        name = window_name(session_id)
        listed = await self._tmux(["list-windows", "-t", self.session_name, "-F", "#{window_name}"])
        existing = listed.stdout.splitlines() if listed.ok else []
        if name not in existing:
            res = await self._tmux(["new-window", "-t", self.session_name, "-n", name, "-c", cwd])
            if not res.ok:
                raise TmuxUnavailable(f"tmux new-window {name} failed: {res.stderr or res.returncode}")
            logger.info("Created shell window %s", name)
        window = ShellWindow(session_id=session_id, name=name, cwd=cwd)
        self.windows[session_id] = window
        return window

    async def select(self, session_id: str) -> None:
        if self.current == session_id:
            return
        res = await self._tmux(["select-window", "-t", self._target(session_id)])
        if not res.ok:
            logger.warning("tmux select-window %s failed: %s", session_id, res.stderr)
        self.current = session_id

    async def open(self, session_id: str, cwd: Optional[str] = None) -> ShellWindow:
        cwd = cwd if cwd and os.path.isdir(cwd) else self.default_cwd
        await self.ensure_attached(cwd)
        window = await self.ensure_window(session_id, cwd)
        await self.select(session_id)
        return window

    async def write(self, data: str) -> None:
        if self.process is not None and self.process.alive:
            await self.process.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        if self.process is not None:
            await self.process.resize(cols, rows)

    async def restart_window(self, session_id: Optional[str] = None) -> bool:
        session_id = session_id or self.current
        if session_id is None:
            return False
        window = self.windows.get(session_id)
        cwd = window.cwd if window else self.default_cwd
        res = await self._tmux(["respawn-window", "-t", self._target(session_id), "-k", "-c", cwd])
        if not res.ok:
            logger.warning("tmux respawn-window %s failed: %s", session_id, res.stderr)
            return False
        logger.info("Restarted shell window %s", window_name(session_id))
        for listener in list(self._restart_listeners):
            try:
                listener(session_id)
            except Exception:
                logger.exception("Shell restart listener failed")
        return True

    async def remove_window(self, session_id: str) -> None:
        self.windows.pop(session_id, None)
        if self.current == session_id:
            self.current = None
        if not self.available():
            return
        res = await self._tmux(["kill-window", "-t", self._target(session_id)])
        if res.ok:
            logger.info("Removed shell window %s", window_name(session_id))

    async def shutdown(self, *, kill_session: bool = False) -> None:
        self._closing = True
        for entry in self.deferred.pending(label="tmux-reattach"):
            self.deferred.cancel(entry)
        process, self.process = self.process, None
        if process is not None:
            await process.kill(self.timing.kill_timeout)
        if kill_session and self.available():
            await self._tmux(["kill-session", "-t", self.session_name])
