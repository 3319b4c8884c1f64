from __future__ import annotations

import asyncio
import os
import sys

import pytest

from agent_shells.pty import _child_env, run_command, spawn_pipe, spawn_pty

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX pty")


class Collector:
    def __init__(self):
        self.chunks = []
        self.codes = []
        self.exited = asyncio.Event()

    def output(self, data: str) -> None:
        self.chunks.append(data)

    def exit(self, code) -> None:
        self.codes.append(code)
        self.exited.set()

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    async def wait_for_text(self, needle: str, timeout: float = 5.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while needle not in self.text:
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"{needle!r} not in {self.text!r}")
            await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_output_and_exit_code(tmp_path):
    sink = Collector()
    proc = await spawn_pty(
        ["/bin/sh", "-c", "printf 'hello from pty\\n'; exit 3"],
        cwd=str(tmp_path),
        on_output=sink.output,
        on_exit=sink.exit,
    )

    await asyncio.wait_for(sink.exited.wait(), timeout=10)

    assert "hello from pty" in sink.text
    assert sink.codes == [3]
    assert not proc.alive
    with pytest.raises(OSError):
        await proc.write("late\n")


@pytest.mark.asyncio
async def test_interactive_shell_sees_env_and_size(tmp_path):
    sink = Collector()
    proc = await spawn_pty(
        ["/bin/sh"],
        cwd=str(tmp_path),
        env={"AGENT_SHELLS_SESSION_ID": "session-pty-test"},
        cols=90,
        rows=33,
        on_output=sink.output,
        on_exit=sink.exit,
    )
    try:
        await proc.write("echo id=$AGENT_SHELLS_SESSION_ID\n")
        await sink.wait_for_text("id=session-pty-test")

        await proc.write("stty size\n")
        await sink.wait_for_text("33 90")

        await proc.resize(100, 40)
        await proc.write("stty size\n")
        await sink.wait_for_text("40 100")
    finally:
        await proc.kill(timeout=1.0)

    await asyncio.wait_for(sink.exited.wait(), timeout=10)
    assert len(sink.codes) == 1
    assert not proc.alive


@pytest.mark.asyncio
async def test_pipe_process_delivers_lines(tmp_path):
    lines = []
    done = asyncio.Event()
    await spawn_pipe(
        ["/bin/sh", "-c", "echo one; echo two"],
        cwd=str(tmp_path),
        on_line=lines.append,
        on_exit=lambda code: done.set(),
    )

    await asyncio.wait_for(done.wait(), timeout=10)
    assert lines == ["one\n", "two\n"]


@pytest.mark.asyncio
async def test_run_command(tmp_path):
    res = await run_command(["/bin/sh", "-c", "pwd; echo oops >&2; exit 2"], cwd=str(tmp_path))
    assert res.returncode == 2
    assert not res.ok
    assert os.path.realpath(res.stdout) == os.path.realpath(tmp_path)
    assert res.stderr == "oops"

    missing = await run_command(["definitely-not-a-real-binary-xyz"])
    assert missing.returncode == 127


def test_child_env_none_removes_variables(monkeypatch):
    monkeypatch.setenv("TMUX", "/tmp/tmux-0/default,1,0")
    env = _child_env({"TMUX": None, "TERM": "xterm-256color"})
    assert "TMUX" not in env
    assert env["TERM"] == "xterm-256color"
