from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import aiofiles

from .errors import PersistenceWriteFailed
from .record import CategoryRecord, SessionRecord, parse_position
from .session import Session
from .store import DataStore, read_json, write_json_atomic, write_text_atomic

logger = logging.getLogger("agent_shells.persistence")


def _empty_document() -> Dict[str, Any]:
    return {"nodes": [], "categories": []}


class PersistenceStore:
    """state.json plus one scrollback blob per session.

    Partial updates always read the current document first and only touch
    the fields they own.
    """

    def __init__(self, store: DataStore):
        self.store = store

    async def load_document(self) -> Dict[str, Any]:
        raw = await read_json(self.store.state_file)
        if not isinstance(raw, dict):
            return _empty_document()
        nodes = raw.get("nodes")
        categories = raw.get("categories")
        return {
            "nodes": nodes if isinstance(nodes, list) else [],
            "categories": categories if isinstance(categories, list) else [],
        }

    async def _commit_document(self, document: Dict[str, Any]) -> None:
        try:
            await write_json_atomic(self.store.state_file, document)
        except OSError as exc:
            raise PersistenceWriteFailed(str(self.store.state_file), str(exc)) from exc

    async def _write_document(self, document: Dict[str, Any]) -> bool:
        """Snapshot write: failures are logged and reported, never raised."""
        try:
            await self._commit_document(document)
        except PersistenceWriteFailed as exc:
            logger.error("%s", exc)
            return False
        return True

    async def load_records(self) -> List[SessionRecord]:
        document = await self.load_document()
        records: List[SessionRecord] = []
        for raw in document["nodes"]:
            try:
                records.append(SessionRecord.from_dict(raw))
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping malformed session record: %s", exc)
        return records

    async def save_snapshot(self, sessions: Iterable[Session]) -> bool:
        """Write every session record and any scrollback that changed.

        Returns False if anything failed to write; dirty flags stay set on
        failure so the next snapshot retries.
        """
        sessions = list(sessions)
        document = await self.load_document()
        previous = {
            n.get("session_id"): n for n in document["nodes"] if isinstance(n, dict)
        }

        nodes = []
        for session in sessions:
            node = session.record.to_dict()
            if node["position"] is None:
                node["position"] = parse_position((previous.get(session.id) or {}).get("position"))
            nodes.append(node)

        ok = await self._write_document({"nodes": nodes, "categories": document["categories"]})

        for session in sessions:
            if not session.scrollback.dirty:
                continue
            if await self.save_buffer(session.id, session.scrollback.text()):
                session.scrollback.dirty = False
            else:
                ok = False
        return ok

    async def save_positions(self, positions: Mapping[str, Any]) -> int:
        """Merge ``{node_id: {x, y}}`` into the document. Returns how many nodes changed."""
        document = await self.load_document()
        by_node = {n.get("node_id"): n for n in document["nodes"] if isinstance(n, dict)}
        updated = 0
        for node_id, raw in positions.items():
            pos = parse_position(raw)
            node = by_node.get(node_id)
            if pos is None or node is None:
                logger.debug("Position for unknown node %s ignored", node_id)
                continue
            node["position"] = pos
            updated += 1
        if updated:
            await self._commit_document(document)
        return updated

    async def load_categories(self) -> List[CategoryRecord]:
        document = await self.load_document()
        out: List[CategoryRecord] = []
        for raw in document["categories"]:
            try:
                out.append(CategoryRecord.from_dict(raw))
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping malformed category: %s", exc)
        return out

    async def upsert_category(self, data: Mapping[str, Any]) -> CategoryRecord:
        document = await self.load_document()
        categories = document["categories"]
        incoming = dict(data)
        for i, raw in enumerate(categories):
            if isinstance(raw, dict) and raw.get("id") == incoming.get("id"):
                category = CategoryRecord.from_dict(raw).merged(incoming)
                categories[i] = category.to_dict()
                break
        else:
            category = CategoryRecord.from_dict(incoming)
            categories.append(category.to_dict())
        await self._commit_document(document)
        return category

    async def delete_category(self, category_id: str) -> bool:
        document = await self.load_document()
        before = len(document["categories"])
        document["categories"] = [
            c for c in document["categories"] if not (isinstance(c, dict) and c.get("id") == category_id)
        ]
        if len(document["categories"]) == before:
            return False
        await self._commit_document(document)
        return True

    async def save_buffer(self, session_id: str, text: str) -> bool:
        path = self.store.buffer_path(session_id)
        try:
            await write_text_atomic(path, text)
        except OSError as exc:
            logger.error("%s", PersistenceWriteFailed(str(path), str(exc)))
            return False
        return True

    async def load_buffer(self, session_id: str) -> Optional[str]:
        path = self.store.buffer_path(session_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as fh:
                return await fh.read()
        except OSError as exc:
            logger.warning("Failed to load scrollback for %s: %s", session_id, exc)
            return None

    async def delete_buffer(self, session_id: str) -> None:
        path = self.store.buffer_path(session_id)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            logger.warning("Failed to delete scrollback for %s: %s", session_id, exc)
