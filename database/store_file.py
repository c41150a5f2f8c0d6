"""
FileMessageStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    contacts.json
    conversations.json
    messages.json
    events.json

Features:
  - Survives process restarts (unlike InMemoryMessageStore)
  - No external dependencies (no database server, no Redis)
  - Flush on every mutation, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryMessageStore
from models.schemas import Contact, Conversation, DispatchAttemptEvent, Message

logger = structlog.get_logger()

_COLLECTIONS = ["contacts", "conversations", "messages", "events"]


class FileMessageStore(InMemoryMessageStore):
    """
    Extends InMemoryMessageStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data)
                logger.debug("file_store_loaded", collection=collection, records=len(data))
            except Exception as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        if collection == "contacts":
            self._contacts = {k: Contact.model_validate(v) for k, v in data.items()}
        elif collection == "conversations":
            self._conversations = {k: Conversation.model_validate(v) for k, v in data.items()}
        elif collection == "messages":
            self._messages = {k: Message.model_validate(v) for k, v in data.items()}
            # Rebuild indexes
            self._provider_index.clear()
            self._idempotency_index.clear()
            for mid, m in self._messages.items():
                if m.provider_message_id:
                    self._provider_index[m.provider_message_id] = mid
                if m.idempotency_key:
                    self._idempotency_index[f"{m.workspace_id}:{m.idempotency_key}"] = mid
        elif collection == "events":
            self._events = [DispatchAttemptEvent.model_validate(e) for e in data]

    def _get_collection_data(self, collection: str) -> Any:
        if collection == "events":
            return [e.model_dump(mode="json") for e in self._events]
        mapping = {
            "contacts": self._contacts,
            "conversations": self._conversations,
            "messages": self._messages,
        }
        return {k: v.model_dump(mode="json") for k, v in mapping.get(collection, {}).items()}

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)

    def _mark_dirty(self, collection: str) -> None:
        if self._flush_interval <= 0:
            self._flush_collection(collection)
            return
        self._dirty.add(collection)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")
