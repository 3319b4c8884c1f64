from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import aiofiles

logger = logging.getLogger("agent_shells.store")

DATA_DIR_NAME = ".agent_shells"


def _default_base_dir(launch_cwd: Optional[str] = None) -> Path:
    return Path(launch_cwd or os.getcwd()).resolve() / DATA_DIR_NAME


class DataStore:
    """Durable storage paths for one agent_shells instance.

    Everything lives under ``<launch cwd>/.agent_shells`` unless
    AGENT_SHELLS_DATA_DIR points elsewhere.
    """

    def __init__(self, base_dir: Optional[Path] = None, *, launch_cwd: Optional[str] = None):
        base = (
            base_dir
            or (Path(os.path.expanduser(os.environ["AGENT_SHELLS_DATA_DIR"])).resolve() if os.environ.get("AGENT_SHELLS_DATA_DIR") else None)
            or _default_base_dir(launch_cwd)
        )
        self.root = Path(base)
        self.buffers_dir = self.root / "buffers"
        self.state_file = self.root / "state.json"
        self.config_file = self.root / "config.json"
        self.secrets_file = self.root / "secrets.json"

        for d in (self.root, self.buffers_dir):
            d.mkdir(parents=True, exist_ok=True)

    def buffer_path(self, session_id: str) -> Path:
        safe = session_id.replace("/", "_").replace("\\", "_")
        return self.buffers_dir / f"{safe}.txt"


async def read_json(path: Path) -> Optional[Any]:
    """Read a JSON document; None when missing, empty or unparseable."""
    if not path.exists():
        return None
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as fh:
            content = await fh.read()
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return None
    if not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed JSON in %s: %s", path, exc)
        return None


async def write_json_atomic(path: Path, data: Any) -> None:
    """Write via a temp file and rename so readers never see a torn document."""
    await write_text_atomic(path, json.dumps(data, indent=2))


async def write_text_atomic(path: Path, text: str) -> None:
    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
        await fh.write(text)
    await asyncio.to_thread(tmp_path.replace, path)
