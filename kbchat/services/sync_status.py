"""Singleton sync status record.

The row lives in storage, not in process memory, so every server instance sees
the same state. Writes select the existing row and update it, inserting only
when the table is empty.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from kbchat.db.storage import SYNC_STATUS_TABLE, Storage

STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_DONE = "done"
STATUS_ERROR = "error"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _current_row(storage: Storage) -> Optional[Dict[str, Any]]:
    rows = await storage.get_records(SYNC_STATUS_TABLE, limit=1, order_by="created_at")
    return rows[0] if rows else None


async def _write(storage: Storage, updates: Dict[str, Any]) -> Dict[str, Any]:
    updates = {**updates, "updated_at": _now()}
    row = await _current_row(storage)
    if row:
        updated = await storage.update_records(SYNC_STATUS_TABLE, {"id": row["id"]}, updates)
        return updated[0] if updated else {**row, **updates}

    now = updates["updated_at"]
    created = await storage.insert_records(
        SYNC_STATUS_TABLE,
        [{"id": str(uuid4()), "chunk_count": 0, "created_at": now, **updates}],
    )
    return created[0]


async def get_sync_status(storage: Storage) -> Dict[str, Any]:
    """Current status; ``idle`` with zero chunks when no sync has ever run."""
    row = await _current_row(storage)
    if row is None:
        return {
            "status": STATUS_IDLE,
            "chunk_count": 0,
            "doc_title": None,
            "last_synced_at": None,
            "error_message": None,
        }
    return row


async def begin_sync(storage: Storage) -> Dict[str, Any]:
    return await _write(storage, {"status": STATUS_SYNCING, "error_message": None})


async def finish_sync(storage: Storage, chunk_count: int, doc_title: str) -> Dict[str, Any]:
    return await _write(
        storage,
        {
            "status": STATUS_DONE,
            "chunk_count": chunk_count,
            "doc_title": doc_title,
            "last_synced_at": _now(),
            "error_message": None,
        },
    )


async def fail_sync(storage: Storage, message: str) -> Dict[str, Any]:
    return await _write(storage, {"status": STATUS_ERROR, "error_message": message})
