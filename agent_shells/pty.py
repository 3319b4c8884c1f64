from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import termios
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import psutil

logger = logging.getLogger("agent_shells.pty")

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[Optional[int]], None]

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
READ_CHUNK = 4096


def _child_env(env: Optional[Dict[str, Optional[str]]]) -> Dict[str, str]:
    # a None value removes the variable from the inherited environment
    envp = os.environ.copy()
    for key, value in (env or {}).items():
        if value is None:
            envp.pop(key, None)
        else:
            envp[key] = value
    return envp


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsz = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsz)


def _acquire_controlling_tty() -> None:
    # runs in the child after setsid(); stdin is already the PTY slave
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


def terminate_tree(pid: int, timeout: float = 2.0) -> None:
    """SIGHUP the root (interactive shells ignore SIGTERM), SIGTERM its
    descendants, then SIGKILL whatever is left after ``timeout``."""
    try:
        root = psutil.Process(pid)
        procs = root.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    try:
        root.send_signal(signal.SIGHUP)
    except psutil.NoSuchProcess:
        pass
    procs.append(root)
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=timeout)


class PtyProcess:
    """A process attached to its own pseudo-terminal.

    Output is read on a background task and handed to ``on_output`` in the
    order the kernel produced it; ``on_exit`` fires once when the PTY closes.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        label: Optional[str] = None,
    ):
        self._proc = proc
        self.master_fd = master_fd
        self.label = label
        self._on_output = on_output
        self._on_exit = on_exit
        self._stop = asyncio.Event()
        self._exited = False
        self.exit_code: Optional[int] = None
        self.reader: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def alive(self) -> bool:
        return not self._exited and self._proc.returncode is None

    def start(self) -> None:
        if self.reader is None:
            self.reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        loop = asyncio.get_running_loop()
        while not self._stop.is_set():
            try:
                rlist, _, _ = await loop.run_in_executor(
                    None, lambda: select.select([self.master_fd], [], [], 0.5)
                )
                if not rlist:
                    continue
                data = await asyncio.to_thread(os.read, self.master_fd, READ_CHUNK)
            except (OSError, ValueError):
                # EIO once the slave side is gone
                break
            if not data:
                break
            text = decoder.decode(data)
            if not text:
                continue
            try:
                self._on_output(text)
            except Exception:
                logger.exception("Output handler failed for pid %s", self.pid)

        try:
            os.close(self.master_fd)
        except OSError:
            pass
        try:
            self.exit_code = await asyncio.wait_for(self._proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            self.exit_code = None
        self._finish()

    def _finish(self) -> None:
        if self._exited:
            return
        self._exited = True
        try:
            self._on_exit(self.exit_code)
        except Exception:
            logger.exception("Exit handler failed for pid %s", self.pid)

    async def write(self, data: str) -> None:
        if not self.alive:
            raise OSError(f"PTY for pid {self.pid} is closed")
        payload = data.encode("utf-8")
        while payload:
            written = await asyncio.to_thread(os.write, self.master_fd, payload)
            payload = payload[written:]

    async def resize(self, cols: int, rows: int) -> None:
        if not self.alive:
            return
        await asyncio.to_thread(_set_winsize, self.master_fd, cols, rows)

    async def kill(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._proc.returncode is None:
            await asyncio.to_thread(terminate_tree, self.pid, timeout)
        if self.reader is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self.reader), timeout=timeout + 1.0)
            except asyncio.TimeoutError:
                self.reader.cancel()
                self._finish()


async def spawn_pty(
    argv: List[str],
    *,
    cwd: str,
    env: Optional[Dict[str, Optional[str]]] = None,
    cols: int = DEFAULT_COLS,
    rows: int = DEFAULT_ROWS,
    on_output: OutputCallback,
    on_exit: ExitCallback,
    label: Optional[str] = None,
) -> PtyProcess:
    """Start ``argv`` on a fresh PTY. Raises OSError if the process cannot start."""
    master_fd, slave_fd = await asyncio.to_thread(pty.openpty)
    envp = _child_env(env)
    envp.setdefault("TERM", "xterm-256color")

    try:
        _set_winsize(slave_fd, cols, rows)
    except OSError:
        pass

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=envp,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except OSError:
        os.close(master_fd)
        raise
    finally:
        await asyncio.to_thread(os.close, slave_fd)

    process = PtyProcess(proc, master_fd, on_output=on_output, on_exit=on_exit, label=label)
    process.start()
    return process


class PipeProcess:
    """A process with stdin/stdout pipes whose stdout is consumed line by line."""

    def __init__(self, proc: asyncio.subprocess.Process, *, on_line: OutputCallback, on_exit: ExitCallback):
        self._proc = proc
        self._on_line = on_line
        self._on_exit = on_exit
        self.reader: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def alive(self) -> bool:
        return self._proc.returncode is None

    def start(self) -> None:
        if self.reader is None:
            self.reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        stdout = self._proc.stdout
        if stdout is not None:
            while True:
                try:
                    line = await stdout.readline()
                except (OSError, ValueError):
                    break
                if not line:
                    break
                try:
                    self._on_line(line.decode("utf-8", errors="replace"))
                except Exception:
                    logger.exception("Line handler failed for pid %s", self.pid)
        code = await self._proc.wait()
        try:
            self._on_exit(code)
        except Exception:
            logger.exception("Exit handler failed for pid %s", self.pid)

    async def kill(self, timeout: float = 2.0) -> None:
        proc = self._proc
        if proc.stdin and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            await asyncio.to_thread(terminate_tree, proc.pid, timeout)


async def spawn_pipe(
    argv: List[str],
    *,
    cwd: str,
    env: Optional[Dict[str, Optional[str]]] = None,
    on_line: OutputCallback,
    on_exit: ExitCallback,
) -> PipeProcess:
    envp = _child_env(env)
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=envp,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )
    process = PipeProcess(proc, on_line=on_line, on_exit=on_exit)
    process.start()
    return process


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(argv: Sequence[str], cwd: Optional[str] = None) -> CommandResult:
    """Run a short-lived command to completion. A missing binary is exit code 127."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as exc:
        return CommandResult(127, "", str(exc))
    out, err = await proc.communicate()
    return CommandResult(
        proc.returncode if proc.returncode is not None else 1,
        out.decode("utf-8", errors="replace").strip(),
        err.decode("utf-8", errors="replace").strip(),
    )
