from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .classifier import EventStreamDecoder, HeuristicClassifier, StructuredEventClassifier
from .config import TimingConfig
from .deferred import DeferredEntry, DeferredQueue
from .session import Session, SessionStatus

logger = logging.getLogger("agent_shells.status")

PRE_TOOL_EVENTS = {"PreToolUse"}
POST_TOOL_EVENTS = {"PostToolUse"}
HOOK_SETTABLE = {
    SessionStatus.RUNNING,
    SessionStatus.TOOL_CALLING,
    SessionStatus.WAITING_INPUT,
    SessionStatus.IDLE,
}

StatusListener = Callable[[Session], None]


def _first(data: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is not None and str(value).strip():
            return str(value)
    return None


@dataclass
class HookSignal:
    """Status pushed by an agent's own hook scripts."""

    status: Optional[str] = None
    session_id: Optional[str] = None
    agent_session_id: Optional[str] = None
    cwd: Optional[str] = None
    hook_event: Optional[str] = None
    tool_name: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "HookSignal":
        return cls(
            status=_first(data, "status"),
            session_id=_first(data, "session_id", "sessionId", "agent_shells_session_id", "correlatingSessionId"),
            agent_session_id=_first(data, "agent_session_id", "agentSessionId", "claudeSessionId", "agentNativeSessionId"),
            cwd=_first(data, "cwd"),
            hook_event=_first(data, "hook_event", "hookEvent"),
            tool_name=_first(data, "tool_name", "toolName"),
        )

    @property
    def is_pre_tool(self) -> bool:
        return self.hook_event in PRE_TOOL_EVENTS or self.status == "pre_tool"

    @property
    def is_post_tool(self) -> bool:
        return self.hook_event in POST_TOOL_EVENTS or self.status == "post_tool"


class StatusTracker:
    """Owns every status transition.

    Precedence: hook signals, then structured events, then the heuristic.
    ``session.signal_source`` remembers the strongest source seen since the
    process started, and weaker sources stop writing once it is set.
    """

    def __init__(
        self,
        deferred: DeferredQueue,
        timing: Optional[TimingConfig] = None,
        *,
        heuristic: Optional[HeuristicClassifier] = None,
        structured: Optional[StructuredEventClassifier] = None,
    ):
        self.deferred = deferred
        self.timing = timing or TimingConfig()
        self.heuristic = heuristic or HeuristicClassifier(self.timing)
        self.structured = structured or StructuredEventClassifier()
        self._listeners: List[StatusListener] = []
        self._permission: Dict[str, DeferredEntry] = {}
        self._decoders: Dict[str, EventStreamDecoder] = {}

    @property
    def now(self) -> float:
        return self.deferred.clock.now()

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def set_status(self, session: Session, status: SessionStatus, *, announce: bool = False) -> bool:
        changed = session.status != status
        if changed:
            logger.debug("%s: %s -> %s", session.id, session.status.value, status.value)
            session.status = status
        if changed or announce:
            for listener in list(self._listeners):
                try:
                    listener(session)
                except Exception:
                    logger.exception("Status listener failed for %s", session.id)
        return changed

    # -- heuristic -------------------------------------------------------

    def record_output(self, session: Session, chunk: str) -> None:
        session.last_output_at = self.now
        session.recent_output += len(chunk)
        self.reclassify(session)

    def record_input(self, session: Session) -> None:
        session.last_input_at = self.now

    def decay(self, session: Session) -> None:
        session.recent_output = max(0, session.recent_output - self.timing.decay_amount)
        self.reclassify(session)

    def reclassify(self, session: Session) -> None:
        if not session.is_live:
            self.set_status(session, SessionStatus.DISCONNECTED)
            return
        if session.signal_source is not None:
            return
        if session.status == SessionStatus.STARTING and not session.last_output_at:
            return
        status = self.heuristic.classify(session, None, self.now)
        if status is not None:
            self.set_status(session, status)

    # -- structured events ----------------------------------------------

    def feed_event_stream(self, session: Session, data: str) -> None:
        decoder = self._decoders.setdefault(session.id, EventStreamDecoder())
        for event in decoder.feed(data):
            self.apply_event(session, event)

    def apply_event(self, session: Session, event: Dict[str, Any]) -> None:
        if not session.is_live or session.signal_source == "hooks":
            return
        session.signal_source = "events"
        tool_before = session.current_tool
        status = self.structured.classify(session, event, self.now)
        announce = session.current_tool != tool_before
        if status is not None:
            self.set_status(session, status, announce=announce)
        elif announce:
            self.set_status(session, session.status, announce=True)

    # -- hooks -----------------------------------------------------------

    def apply_hook(self, session: Session, hook: HookSignal) -> None:
        if hook.agent_session_id:
            session.record.resume_token = hook.agent_session_id
        session.signal_source = "hooks"
        session.last_hook_event = hook.hook_event or hook.status
        if not session.is_live:
            return

        if hook.is_pre_tool:
            self._cancel_permission(session)
            if hook.tool_name:
                session.current_tool = hook.tool_name
            session.pending_tool = hook.tool_name
            self._permission[session.id] = self.deferred.schedule(
                self.timing.permission_timeout,
                lambda: self._permission_expired(session),
                session_id=session.id,
                label="permission",
            )
            self.set_status(session, SessionStatus.RUNNING, announce=True)
            return

        if hook.is_post_tool:
            pending = self._permission.get(session.id)
            if pending is not None and not self._tool_matches(session.pending_tool, hook.tool_name):
                logger.debug(
                    "%s: post-tool for %s does not match pending %s",
                    session.id, hook.tool_name, session.pending_tool,
                )
                return
            self._cancel_permission(session)
            self.set_status(session, SessionStatus.RUNNING)
            return

        status = SessionStatus.parse(hook.status)
        if status is None or status not in HOOK_SETTABLE:
            logger.warning("Ignoring hook status %r for %s", hook.status, session.id)
            return
        self._cancel_permission(session)
        self.set_status(session, status)

    @staticmethod
    def _tool_matches(pending: Optional[str], incoming: Optional[str]) -> bool:
        return pending is None or incoming is None or pending == incoming

    def _permission_expired(self, session: Session) -> None:
        self._permission.pop(session.id, None)
        if not session.is_live:
            return
        logger.info("%s: no post-tool signal for %s, assuming permission prompt", session.id, session.pending_tool)
        self.set_status(session, SessionStatus.WAITING_INPUT)

    def _cancel_permission(self, session: Session) -> None:
        entry = self._permission.pop(session.id, None)
        self.deferred.cancel(entry)
        session.pending_tool = None

    def permission_pending(self, session: Session) -> bool:
        return session.id in self._permission

    # -- lifecycle -------------------------------------------------------

    def mark_starting(self, session: Session) -> None:
        self._cancel_permission(session)
        self._decoders.pop(session.id, None)
        session.signal_source = None
        session.current_tool = None
        session.recent_output = 0
        session.last_output_at = 0.0
        self.set_status(session, SessionStatus.STARTING)

    def mark_disconnected(self, session: Session) -> None:
        self._cancel_permission(session)
        self._decoders.pop(session.id, None)
        self.set_status(session, SessionStatus.DISCONNECTED)

    def mark_error(self, session: Session) -> None:
        self.set_status(session, SessionStatus.ERROR)

    def forget(self, session: Session) -> None:
        self._cancel_permission(session)
        self._decoders.pop(session.id, None)
