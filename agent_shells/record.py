from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def parse_position(raw: Any) -> Optional[Dict[str, float]]:
    if not isinstance(raw, dict):
        return None
    try:
        return {"x": float(raw.get("x", 0)), "y": float(raw.get("y", 0))}
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s if s else None


@dataclass
class SessionRecord:
    """Serializable metadata describing an agent session.

    This is what survives a restart: no process handle, no viewers.
    """

    session_id: str
    node_id: str
    agent_id: str
    agent_name: str
    command: str
    cwd: str
    created_at: str
    origin_cwd: Optional[str] = None
    worktree_path: Optional[str] = None
    branch: Optional[str] = None
    custom_name: Optional[str] = None
    custom_color: Optional[str] = None
    notes: Optional[str] = None
    position: Optional[Dict[str, float]] = None
    resume_token: Optional[str] = None
    ticket_id: Optional[str] = None
    ticket_title: Optional[str] = None
    ticket_url: Optional[str] = None

    REQUIRED = ("session_id", "agent_id", "command", "cwd")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        if not isinstance(data, dict):
            raise ValueError("record must be a mapping")
        missing = [k for k in cls.REQUIRED if not data.get(k)]
        if missing:
            raise ValueError(f"record missing {', '.join(missing)}")
        session_id = str(data["session_id"])
        return cls(
            session_id=session_id,
            node_id=str(data.get("node_id") or session_id),
            agent_id=str(data["agent_id"]),
            agent_name=str(data.get("agent_name") or data["agent_id"]),
            command=str(data["command"]),
            cwd=str(data["cwd"]),
            created_at=str(data.get("created_at") or ""),
            origin_cwd=_opt_str(data.get("origin_cwd")),
            worktree_path=_opt_str(data.get("worktree_path")),
            branch=_opt_str(data.get("branch")),
            custom_name=_opt_str(data.get("custom_name")),
            custom_color=_opt_str(data.get("custom_color")),
            notes=data.get("notes") if isinstance(data.get("notes"), str) else None,
            position=parse_position(data.get("position")),
            resume_token=_opt_str(data.get("resume_token")),
            ticket_id=_opt_str(data.get("ticket_id")),
            ticket_title=_opt_str(data.get("ticket_title")),
            ticket_url=_opt_str(data.get("ticket_url")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "node_id": self.node_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "command": self.command,
            "cwd": self.cwd,
            "created_at": self.created_at,
            "origin_cwd": self.origin_cwd,
            "worktree_path": self.worktree_path,
            "branch": self.branch,
            "custom_name": self.custom_name,
            "custom_color": self.custom_color,
            "notes": self.notes,
            "position": dict(self.position) if self.position else None,
            "resume_token": self.resume_token,
            "ticket_id": self.ticket_id,
            "ticket_title": self.ticket_title,
            "ticket_url": self.ticket_url,
        }

    def to_payload(self) -> Dict[str, Any]:
        payload = self.to_dict()
        payload["display_name"] = self.custom_name or self.agent_name
        return payload


@dataclass
class CategoryRecord:
    """A grouping box drawn on the canvas around a set of nodes."""

    id: str
    label: str = ""
    color: str = ""
    position: Dict[str, float] = field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    width: float = 0.0
    height: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryRecord":
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("category requires an id")
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or ""),
            color=str(data.get("color") or ""),
            position=parse_position(data.get("position")) or {"x": 0.0, "y": 0.0},
            width=float(data.get("width") or 0),
            height=float(data.get("height") or 0),
        )

    def merged(self, updates: Dict[str, Any]) -> "CategoryRecord":
        data = self.to_dict()
        data.update({k: v for k, v in updates.items() if v is not None and k != "id"})
        return CategoryRecord.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "color": self.color,
            "position": dict(self.position),
            "width": self.width,
            "height": self.height,
        }
