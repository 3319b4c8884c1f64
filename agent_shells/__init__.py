"""agent_shells - supervise AI coding agents running on pseudo-terminals."""

from .agentspec import AgentCatalog, AgentSpec
from .config import LocalConfig, Settings, TimingConfig
from .deferred import Clock, DeferredQueue
from .errors import AgentShellsError, SessionNotFound
from .events import EventBus, EventType, SessionEvent
from .record import CategoryRecord, SessionRecord
from .registry import SessionRegistry
from .runtime import AgentShellsRuntime
from .session import Session, SessionStatus
from .supervisor import CreateSessionRequest, IsolationRequest, ProcessSupervisor, TicketLink

__version__ = "0.1.0"

__all__ = [
    "AgentCatalog",
    "AgentSpec",
    "AgentShellsError",
    "AgentShellsRuntime",
    "CategoryRecord",
    "Clock",
    "CreateSessionRequest",
    "DeferredQueue",
    "EventBus",
    "EventType",
    "IsolationRequest",
    "LocalConfig",
    "ProcessSupervisor",
    "Session",
    "SessionEvent",
    "SessionNotFound",
    "SessionRecord",
    "SessionRegistry",
    "SessionStatus",
    "Settings",
    "TicketLink",
    "TimingConfig",
]
