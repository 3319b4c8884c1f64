from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Deque, Dict, Iterable, Optional, Set

from .record import SessionRecord

if TYPE_CHECKING:
    from .gateway import ViewerConnection
    from .pty import PipeProcess, PtyProcess


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    TOOL_CALLING = "tool_calling"
    WAITING_INPUT = "waiting_input"
    IDLE = "idle"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> Optional["SessionStatus"]:
        try:
            return cls(str(value))
        except ValueError:
            return None


class Scrollback:
    """Bounded output history. Oldest chunks fall off once ``cap`` is exceeded."""

    def __init__(self, cap: int, chunks: Iterable[str] = ()):
        self.cap = max(1, int(cap))
        self._chunks: Deque[str] = deque(chunks, maxlen=self.cap)
        self.dirty = False

    def append(self, chunk: str) -> None:
        self._chunks.append(chunk)
        self.dirty = True

    def text(self) -> str:
        return "".join(self._chunks)

    def tail(self, size: int) -> str:
        parts = []
        total = 0
        for chunk in reversed(self._chunks):
            parts.append(chunk)
            total += len(chunk)
            if total >= size:
                break
        return "".join(reversed(parts))[-size:]

    def chunks(self) -> list:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    def __bool__(self) -> bool:
        return bool(self._chunks)


@dataclass(eq=False)
class Session:
    record: SessionRecord
    scrollback: Scrollback
    process: Optional["PtyProcess"] = None
    tracker: Optional["PipeProcess"] = None
    status: SessionStatus = SessionStatus.STARTING
    last_output_at: float = 0.0
    last_input_at: float = 0.0
    recent_output: int = 0
    current_tool: Optional[str] = None
    pending_tool: Optional[str] = None
    signal_source: Optional[str] = None
    last_hook_event: Optional[str] = None
    is_restored: bool = False
    viewers: Set["ViewerConnection"] = field(default_factory=set)

    @property
    def id(self) -> str:
        return self.record.session_id

    @property
    def is_live(self) -> bool:
        return self.process is not None

    def to_payload(self) -> Dict[str, Any]:
        payload = self.record.to_payload()
        payload.update(
            {
                "status": self.status.value,
                "is_restored": self.is_restored,
                "is_live": self.is_live,
                "pid": self.process.pid if self.process else None,
                "current_tool": self.current_tool,
                "viewers": len(self.viewers),
            }
        )
        return payload
