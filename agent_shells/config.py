from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import PersistenceWriteFailed
from .store import DataStore, read_json, write_json_atomic

logger = logging.getLogger("agent_shells.config")

DEFAULT_PORT = 6968
DEFAULT_HOST = "127.0.0.1"
DEFAULT_SCROLLBACK_CAP = 1000
DEFAULT_TMUX_SESSION = "agent-shells"

DEFAULT_TICKET_PROMPT = (
    "Here is the ticket for this session: {{url}}\n\n"
    "Ticket {{id}}: {{title}}\n\n"
    "Please read the full ticket details before starting work."
)


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    val = str(raw).strip().lower()
    return val in {"1", "true", "yes", "y", "on"}


def _int_env(*names: str, default: int) -> int:
    for name in names:
        raw = os.environ.get(name)
        if raw is None or not raw.strip():
            continue
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r", name, raw)
    return default


# periods and thresholds where zero would stop the behaviour altogether
POSITIVE_TIMINGS = frozenset({"decay_interval", "decay_amount", "snapshot_interval", "kill_timeout"})


@dataclass(frozen=True)
class TimingConfig:
    """Heuristic and scheduling constants, in seconds (volumes in characters).

    Every field can be overridden with AGENT_SHELLS_<FIELD_NAME_UPPER>.
    """

    startup_delay: float = 0.3
    ticket_prompt_delay: float = 1.5
    decay_interval: float = 0.5
    decay_amount: int = 50
    permission_timeout: float = 2.5
    tool_recency: float = 3.0
    running_recency: float = 0.5
    running_min_volume: int = 50
    streaming_recency: float = 2.0
    streaming_min_volume: int = 100
    input_recency: float = 1.0
    snapshot_interval: float = 30.0
    shell_reattach_delay: float = 0.5
    kill_timeout: float = 2.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "TimingConfig":
        env = os.environ if env is None else env
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"AGENT_SHELLS_{f.name.upper()}")
            if raw is None or not str(raw).strip():
                continue
            caster = int if f.type in ("int", int) else float
            try:
                value = caster(raw)
            except ValueError:
                logger.warning("Ignoring invalid timing override %s=%r", f.name, raw)
                continue
            if not math.isfinite(value) or value < 0 or (value == 0 and f.name in POSITIVE_TIMINGS):
                logger.warning("Ignoring invalid timing override %s=%r", f.name, raw)
                continue
            overrides[f.name] = value
        return replace(cls(), **overrides)


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    launch_cwd: str = field(default_factory=os.getcwd)
    data_dir: Optional[str] = None
    verbose: bool = False
    agents_file: Optional[str] = None
    scrollback_cap: int = DEFAULT_SCROLLBACK_CAP
    tmux_session: str = DEFAULT_TMUX_SESSION
    # run the builtin claude stream-json companion next to each session
    event_streams: bool = False
    timing: TimingConfig = field(default_factory=TimingConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        launch_cwd = os.environ.get("AGENT_SHELLS_LAUNCH_CWD") or os.environ.get("LAUNCH_CWD") or os.getcwd()
        return cls(
            host=os.environ.get("AGENT_SHELLS_HOST", DEFAULT_HOST),
            port=_int_env("AGENT_SHELLS_PORT", "PORT", default=DEFAULT_PORT),
            launch_cwd=str(Path(os.path.expanduser(launch_cwd)).resolve()),
            data_dir=os.environ.get("AGENT_SHELLS_DATA_DIR") or None,
            verbose=_truthy_env("AGENT_SHELLS_VERBOSE", default=False),
            agents_file=os.environ.get("AGENT_SHELLS_AGENTS_FILE") or None,
            scrollback_cap=_int_env("AGENT_SHELLS_SCROLLBACK_CAP", default=DEFAULT_SCROLLBACK_CAP),
            tmux_session=os.environ.get("AGENT_SHELLS_TMUX_SESSION", DEFAULT_TMUX_SESSION),
            event_streams=_truthy_env("AGENT_SHELLS_EVENT_STREAMS", default=False),
            timing=TimingConfig.from_env(),
        )


async def _write_config(path: Path, data: Dict[str, Any]) -> None:
    try:
        await write_json_atomic(path, data)
    except OSError as exc:
        raise PersistenceWriteFailed(str(path), str(exc)) from exc


class LocalConfig:
    """Non-secret settings in config.json, the API key in secrets.json.

    The key is never handed out; readers only get ``has_api_key``.
    """

    DEFAULTS: Dict[str, Any] = {
        "default_base_branch": "main",
        "create_worktree": True,
        "ticket_prompt_template": None,
        "worktree_repos": [],
    }

    def __init__(self, store: DataStore):
        self.store = store

    async def load(self) -> Dict[str, Any]:
        raw = await read_json(self.store.config_file)
        data = dict(self.DEFAULTS)
        if isinstance(raw, dict):
            data.update({k: v for k, v in raw.items() if k != "api_key"})
        return data

    async def save(self, updates: Mapping[str, Any]) -> Dict[str, Any]:
        updates = dict(updates)
        api_key = updates.pop("api_key", None)
        current = await self.load()
        current.update({k: v for k, v in updates.items() if v is not None})
        await _write_config(self.store.config_file, current)
        if api_key is not None:
            await self._save_api_key(api_key)
        return current

    async def api_key(self) -> Optional[str]:
        raw = await read_json(self.store.secrets_file)
        if isinstance(raw, dict) and raw.get("api_key"):
            return str(raw["api_key"])
        return None

    async def _save_api_key(self, api_key: str) -> None:
        raw = await read_json(self.store.secrets_file)
        secrets = raw if isinstance(raw, dict) else {}
        if api_key:
            secrets["api_key"] = api_key
        else:
            secrets.pop("api_key", None)
        await _write_config(self.store.secrets_file, secrets)
        try:
            os.chmod(self.store.secrets_file, 0o600)
        except OSError:
            logger.warning("Could not restrict permissions on %s", self.store.secrets_file)

    async def public_view(self) -> Dict[str, Any]:
        data = await self.load()
        data["has_api_key"] = bool(await self.api_key())
        return data

    async def ticket_prompt_template(self) -> str:
        data = await self.load()
        return data.get("ticket_prompt_template") or DEFAULT_TICKET_PROMPT

    async def worktree_repos(self) -> List[Dict[str, Any]]:
        data = await self.load()
        repos = data.get("worktree_repos")
        return [r for r in repos if isinstance(r, dict)] if isinstance(repos, list) else []
