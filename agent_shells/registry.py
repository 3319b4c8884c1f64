from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from .errors import SessionNotFound
from .session import Session


class SessionRegistry:
    """In-memory map of session id to live ``Session``.

    One instance per server, built by the runtime and handed to every
    component that needs it. Mutations happen on the event loop only.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        if session.id in self._sessions:
            raise ValueError(f"session {session.id} already registered")
        self._sessions[session.id] = session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def values(self) -> List[Session]:
        return list(self._sessions.values())

    def find_by_node_id(self, node_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.record.node_id == node_id:
                return session
        return None

    def find_by_agent_session_id(self, agent_session_id: Optional[str]) -> Optional[Session]:
        if not agent_session_id:
            return None
        for session in self._sessions.values():
            if session.record.resume_token == agent_session_id:
                return session
        return None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
