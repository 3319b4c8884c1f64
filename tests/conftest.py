from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from agent_shells.agentspec import BUILTIN_AGENTS, AgentCatalog
from agent_shells.config import Settings, TimingConfig
from agent_shells.deferred import Clock
from agent_shells.pty import CommandResult
from agent_shells.runtime import AgentShellsRuntime


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    caplog.set_level(logging.DEBUG, logger="agent_shells")


class FakeClock(Clock):
    def __init__(self, start: float = 1_000_000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


_pids = itertools.count(40000)


class FakeProcess:
    """Stands in for PtyProcess/PipeProcess; the test drives output and exit."""

    def __init__(self, argv, *, cwd, env, on_output, on_exit, label=None):
        self.argv = list(argv)
        self.cwd = cwd
        self.env = dict(env or {})
        self.label = label
        self.pid = next(_pids)
        self._on_output = on_output
        self._on_exit = on_exit
        self.alive = True
        self.killed = False
        self.writes: List[str] = []
        self.sizes: List[tuple] = []
        self.fail_writes = False
        self._exited = False

    def emit(self, text: str) -> None:
        self._on_output(text)

    def exit(self, code: Optional[int] = 0) -> None:
        self.alive = False
        if not self._exited:
            self._exited = True
            self._on_exit(code)

    async def write(self, data: str) -> None:
        if self.fail_writes or not self.alive:
            raise OSError("EIO")
        self.writes.append(data)

    async def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    async def kill(self, timeout: float = 2.0) -> None:
        self.killed = True
        self.exit(-15)

    @property
    def typed(self) -> str:
        return "".join(self.writes)


class FakeSpawner:
    def __init__(self):
        self.spawned: List[FakeProcess] = []
        self.fail = False

    async def __call__(self, argv, *, cwd, env=None, cols=120, rows=30, on_output, on_exit, label=None):
        if self.fail:
            raise FileNotFoundError(2, "No such file or directory", argv[0])
        proc = FakeProcess(argv, cwd=cwd, env=env, on_output=on_output, on_exit=on_exit, label=label)
        proc.size = (cols, rows)
        self.spawned.append(proc)
        return proc

    def for_label(self, label: str) -> List[FakeProcess]:
        return [p for p in self.spawned if p.label == label]

    @property
    def last(self) -> FakeProcess:
        return self.spawned[-1]


class FakePipeSpawner:
    def __init__(self):
        self.spawned: List[FakeProcess] = []

    async def __call__(self, argv, *, cwd, env=None, on_line, on_exit):
        proc = FakeProcess(argv, cwd=cwd, env=env, on_output=on_line, on_exit=on_exit)
        self.spawned.append(proc)
        return proc


class FakeTmux:
    """In-memory tmux server answering the subcommands the multiplexer uses."""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.selected: Optional[str] = None
        self.calls: List[List[str]] = []
        self.failing: Dict[str, int] = {}

    @staticmethod
    def _opts(args):
        out = {}
        i = 1
        while i < len(args):
            if args[i] in ("-d", "-k"):
                out[args[i]] = True
                i += 1
            else:
                out[args[i]] = args[i + 1] if i + 1 < len(args) else None
                i += 2
        return out

    @staticmethod
    def _split_target(target: str):
        session, _, window = target.partition(":")
        return session, window

    async def __call__(self, args: Sequence[str]) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        cmd = args[0]
        if self.failing.get(cmd):
            self.failing[cmd] -= 1
            return CommandResult(1, "", f"{cmd} failed")
        opts = self._opts(args)

        if cmd == "has-session":
            return CommandResult(0 if opts["-t"] in self.sessions else 1)
        if cmd == "new-session":
            self.sessions.setdefault(opts["-s"], {})
            return CommandResult(0)
        if cmd == "list-windows":
            windows = self.sessions.get(opts["-t"])
            if windows is None:
                return CommandResult(1, "", "no such session")
            return CommandResult(0, "\n".join(windows))
        if cmd == "new-window":
            self.sessions.setdefault(opts["-t"], {})[opts["-n"]] = opts["-c"]
            return CommandResult(0)

        session, window = self._split_target(opts["-t"])
        windows = self.sessions.get(session, {})
        if cmd == "select-window":
            if window not in windows:
                return CommandResult(1, "", "can't find window")
            self.selected = window
            return CommandResult(0)
        if cmd == "kill-window":
            if windows.pop(window, None) is None:
                return CommandResult(1, "", "can't find window")
            return CommandResult(0)
        if cmd == "respawn-window":
            return CommandResult(0 if window in windows else 1)
        if cmd == "kill-session":
            self.sessions.pop(session, None)
            return CommandResult(0)
        return CommandResult(1, "", f"unknown command {cmd}")

    def count(self, cmd: str) -> int:
        return sum(1 for c in self.calls if c[0] == cmd)


async def not_a_repo(args, cwd) -> CommandResult:
    return CommandResult(128, "", "fatal: not a git repository")


def quiet_catalog() -> AgentCatalog:
    specs = dict(BUILTIN_AGENTS)
    specs["claude"] = replace(specs["claude"], plugin_dirs=[])
    return AgentCatalog(specs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def pipe_spawner() -> FakePipeSpawner:
    return FakePipeSpawner()


@pytest.fixture
def tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture
def launch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "launch"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, launch_dir: Path) -> Settings:
    return Settings(
        launch_cwd=str(launch_dir),
        data_dir=str(tmp_path / "state"),
        scrollback_cap=1000,
        tmux_session="agent-shells-test",
        timing=TimingConfig(),
    )


@pytest.fixture
def make_runtime(settings, clock, spawner, pipe_spawner, tmux):
    def _make(runtime_settings: Optional[Settings] = None, **overrides) -> AgentShellsRuntime:
        kwargs = dict(
            clock=clock,
            spawner=spawner,
            pipe_spawner=pipe_spawner,
            tmux_runner=tmux,
            git_runner=not_a_repo,
            catalog=quiet_catalog(),
        )
        kwargs.update(overrides)
        return AgentShellsRuntime(runtime_settings or settings, **kwargs)

    return _make


@pytest.fixture
def runtime(make_runtime) -> AgentShellsRuntime:
    return make_runtime()


async def advance(runtime: AgentShellsRuntime, clock: FakeClock, seconds: float, step: float = 0.1) -> None:
    """Move the fake clock forward, running due deferred actions along the way."""
    remaining = seconds
    while remaining > 1e-9:
        delta = min(step, remaining)
        clock.advance(delta)
        remaining -= delta
        await runtime.deferred.run_due()
