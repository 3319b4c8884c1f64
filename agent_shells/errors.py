"""Exception hierarchy for agent_shells.

External failures (git, process spawn, filesystem) are converted to one of
these at the call site. Control-plane handlers turn them into structured
error payloads; nothing here is allowed to take the server down.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class AgentShellsError(Exception):
    """Base exception for all agent_shells errors."""

    kind = "internal_error"
    status_code = 500

    def to_payload(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.kind, "detail": str(self)}


class SessionNotFound(AgentShellsError):
    kind = "session_not_found"
    status_code = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidSessionState(AgentShellsError):
    kind = "invalid_session_state"
    status_code = 409

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id}: {reason}")


class InvalidRequest(AgentShellsError):
    kind = "invalid_request"
    status_code = 400


class NotAVersionControlRepo(AgentShellsError):
    """Raised when isolation is requested outside a git repository."""

    kind = "not_a_version_control_repo"
    status_code = 400

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Not a git repository: {path}")


class WorkspaceCreationFailed(AgentShellsError):
    kind = "workspace_creation_failed"
    status_code = 500

    def __init__(self, branch: str, reason: str):
        self.branch = branch
        self.reason = reason
        super().__init__(f"Failed to create worktree for {branch}: {reason}")


class WorkspaceRemovalFailed(AgentShellsError):
    kind = "workspace_removal_failed"
    status_code = 500

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to remove worktree {path}: {reason}")


class ProcessSpawnFailed(AgentShellsError):
    kind = "process_spawn_failed"
    status_code = 500

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command!r}: {reason}")


class ViewerDisconnected(AgentShellsError):
    kind = "viewer_disconnected"


class MalformedFrame(AgentShellsError):
    kind = "malformed_frame"
    status_code = 400

    def __init__(self, reason: str, raw: Optional[Any] = None):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Malformed frame: {reason}")


class PersistenceWriteFailed(AgentShellsError):
    kind = "persistence_write_failed"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to write {path}: {reason}")
