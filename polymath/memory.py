"""
Polymath Brain - State Persistence

One JSON blob per ``(user_id, goal_id)``, whole-state overwrite,
last write wins.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from loguru import logger


class StateStore:
    """Key-value record store keyed by user + goal"""

    def load(self, user_id: str, goal_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def save(self, user_id: str, goal_id: str, state: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    def __init__(self):
        self._records: Dict[Tuple[str, str], str] = {}
        self.saves = 0

    def load(self, user_id: str, goal_id: str) -> Optional[Dict[str, Any]]:
        payload = self._records.get((user_id, goal_id))
        return json.loads(payload) if payload else None

    def save(self, user_id: str, goal_id: str, state: Dict[str, Any]) -> None:
        self._records[(user_id, goal_id)] = json.dumps(state, ensure_ascii=False)
        self.saves += 1


class SQLiteStateStore(StateStore):
    """
    ``thesis(id, user_id, goal_id, payload, updated_at)`` table; the record
    id is ``state-<user>-<goal>`` so each session upserts a single row.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS thesis (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            goal_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        )
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute(self.SCHEMA)
        self._conn.commit()

    @staticmethod
    def record_id(user_id: str, goal_id: str) -> str:
        return f"state-{user_id}-{goal_id}"

    def save(self, user_id: str, goal_id: str, state: Dict[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO thesis (id, user_id, goal_id, payload, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (
                    self.record_id(user_id, goal_id),
                    user_id,
                    goal_id,
                    json.dumps(state, ensure_ascii=False),
                    int(time.time() * 1000),
                ),
            )
            self._conn.commit()

    def load(self, user_id: str, goal_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM thesis WHERE user_id = ? AND goal_id = ? ORDER BY updated_at DESC LIMIT 1",
                (user_id, goal_id),
            ).fetchone()
        if not row or not row[0]:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning(f"Corrupt persisted state for {user_id}/{goal_id}, ignoring")
            return None

    def close(self) -> None:
        self._conn.close()


__all__ = ["StateStore", "InMemoryStateStore", "SQLiteStateStore"]
