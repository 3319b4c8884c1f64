"""Agent type capability records.

Everything that differs between agent CLIs (resume support, plugin directory
injection, structured event output, the name of the interactive question
tool) is declared here once, so the supervisor and classifiers never branch
on agent names.
"""
from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml


@dataclass(frozen=True)
class AgentSpec:
    id: str
    name: str
    command: str
    description: str = ""
    color: str = "#6B7280"
    icon: str = "terminal"
    # `<command> --resume <token>` style continuation of a prior conversation
    resume_flag: Optional[str] = None
    # `<command> --plugin-dir <dir>` injected when one of plugin_dirs exists
    plugin_flag: Optional[str] = None
    plugin_dirs: List[str] = field(default_factory=list)
    # extra args that make a companion process print NDJSON events
    event_stream_args: List[str] = field(default_factory=list)
    question_tool: str = "AskUserQuestion"

    @property
    def supports_resume(self) -> bool:
        return bool(self.resume_flag)

    @property
    def supports_event_stream(self) -> bool:
        return bool(self.event_stream_args)

    def discover_plugin_dir(self) -> Optional[str]:
        if not self.plugin_flag:
            return None
        for candidate in self.plugin_dirs:
            path = Path(os.path.expanduser(candidate))
            if path.is_dir():
                return str(path.resolve())
        return None

    def startup_command(self, command: str, *, plugin_dir: Optional[str] = None) -> str:
        command = command.strip()
        if not self.plugin_flag or not plugin_dir or not command:
            return command
        if _has_flag(command, self.plugin_flag):
            return command
        parts = command.split(None, 1)
        injected = f"{parts[0]} {self.plugin_flag} {shlex.quote(plugin_dir)}"
        return f"{injected} {parts[1]}" if len(parts) > 1 else injected

    def restart_command(
        self,
        command: str,
        *,
        resume_token: Optional[str] = None,
        plugin_dir: Optional[str] = None,
    ) -> str:
        cmd = self.startup_command(command, plugin_dir=plugin_dir)
        if self.resume_flag and resume_token and not _has_flag(cmd, self.resume_flag):
            cmd = f"{cmd} {self.resume_flag} {shlex.quote(resume_token)}"
        return cmd

    def event_stream_command(self, command: str) -> List[str]:
        return _split(command) + list(self.event_stream_args)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "supports_resume": self.supports_resume,
            "supports_event_stream": self.supports_event_stream,
            "plugin_flag": self.plugin_flag,
        }


def _split(command: str) -> List[str]:
    try:
        return shlex.split(command)
    except ValueError:
        return command.split()


def _has_flag(command: str, flag: str) -> bool:
    for token in _split(command):
        if token == flag or token.startswith(flag + "="):
            return True
    return False


CLAUDE_EVENT_STREAM_ARGS = ["--output-format=stream-json"]

BUILTIN_AGENTS: Dict[str, AgentSpec] = {
    "claude": AgentSpec(
        id="claude",
        name="Claude Code",
        command="claude",
        description="Anthropic's official CLI for Claude",
        color="#F97316",
        icon="sparkles",
        resume_flag="--resume",
        plugin_flag="--plugin-dir",
        plugin_dirs=["~/.agent_shells/plugins/claude-code"],
        question_tool="AskUserQuestion",
    ),
    "opencode": AgentSpec(
        id="opencode",
        name="OpenCode",
        command="opencode",
        description="Open source AI coding assistant",
        color="#22C55E",
        icon="code",
    ),
}


_TEMPLATE_RE = re.compile(r"\{\{\s*([a-zA-Z_]+)\s*\}\}")


def render_ticket_prompt(template: str, *, ticket_id: str = "", title: str = "", url: str = "") -> str:
    """Fill ``{{url}}``, ``{{id}}`` and ``{{title}}``; unknown placeholders become empty."""
    values = {"url": url or "", "id": ticket_id or "", "title": title or ""}

    def _replace(match: re.Match) -> str:
        return values.get(match.group(1).lower(), "")

    return _TEMPLATE_RE.sub(_replace, template)


def _spec_from_dict(agent_id: str, raw: Mapping[str, Any], base: Optional[AgentSpec] = None) -> AgentSpec:
    command = raw.get("command") or (base.command if base else None)
    if not command or not isinstance(command, str):
        raise ValueError(f"agent '{agent_id}' missing command")

    def get_list(key: str, default: List[str]) -> List[str]:
        value = raw.get(key)
        if value is None:
            return list(default)
        if not isinstance(value, list):
            raise ValueError(f"agent '{agent_id}' {key} must be a list")
        return [str(v) for v in value]

    if base is None:
        base = AgentSpec(id=agent_id, name=agent_id, command=command)
    return replace(
        base,
        id=str(raw.get("id") or agent_id),
        name=str(raw.get("name") or base.name),
        command=command,
        description=str(raw.get("description") or base.description),
        color=str(raw.get("color") or base.color),
        icon=str(raw.get("icon") or base.icon),
        resume_flag=raw.get("resume_flag", base.resume_flag) or None,
        plugin_flag=raw.get("plugin_flag", base.plugin_flag) or None,
        plugin_dirs=get_list("plugin_dirs", base.plugin_dirs),
        event_stream_args=get_list("event_stream_args", base.event_stream_args),
        question_tool=str(raw.get("question_tool") or base.question_tool),
    )


def parse_agentspec_data(raw: Any, *, base: Optional[Mapping[str, AgentSpec]] = None) -> Dict[str, AgentSpec]:
    """Parse ``{agents: {id: {...}}}``; entries matching ``base`` override only what they set."""
    base = base or {}
    if not isinstance(raw, dict) or not isinstance(raw.get("agents"), dict):
        return {}
    out: Dict[str, AgentSpec] = {}
    for agent_id, agent_def in raw["agents"].items():
        if not isinstance(agent_def, dict):
            continue
        spec = _spec_from_dict(str(agent_id), agent_def, base.get(str(agent_id)))
        out[spec.id] = spec
    return out


def load_agentspecs(path: Union[str, Path], *, base: Optional[Mapping[str, AgentSpec]] = None) -> Dict[str, AgentSpec]:
    p = Path(os.path.expanduser(str(path)))
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return parse_agentspec_data(raw, base=base)


class AgentCatalog:
    def __init__(self, specs: Optional[Mapping[str, AgentSpec]] = None):
        self._specs: Dict[str, AgentSpec] = dict(BUILTIN_AGENTS if specs is None else specs)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None, *, event_streams: bool = False) -> "AgentCatalog":
        """Builtins plus the YAML definitions in ``path``.

        The builtin ``claude`` record only runs its stream-json companion when
        ``event_streams`` is set, because the companion is a second agent
        process with its own cost. Without it, structured events arrive via
        ``POST /api/sessions/{id}/events`` or an ``event_stream_args`` entry
        in the agents file.
        """
        base = dict(BUILTIN_AGENTS)
        if event_streams:
            base["claude"] = replace(base["claude"], event_stream_args=list(CLAUDE_EVENT_STREAM_ARGS))
        specs = dict(base)
        if path:
            specs.update(load_agentspecs(path, base=base))
        return cls(specs)

    def resolve(self, agent_id: Optional[str], command: str = "") -> AgentSpec:
        """Capability record for an agent id, falling back to the command's binary name."""
        if agent_id and agent_id in self._specs:
            return self._specs[agent_id]
        tokens = _split(command)
        binary = os.path.basename(tokens[0]) if tokens else ""
        for spec in self._specs.values():
            if spec.command == binary:
                return spec
        fallback_id = agent_id or binary or "custom"
        return AgentSpec(id=fallback_id, name=fallback_id, command=binary or command)

    def values(self) -> List[AgentSpec]:
        return list(self._specs.values())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._specs
