"""Postgres persistence for task snapshots."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg
from psycopg.rows import dict_row

from .store import TaskSnapshot


class PostgresTaskStore:
    def __init__(self, db_url: str) -> None:
        self.db_url = db_url
        self._ensure_schema()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.db_url, row_factory=dict_row)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS taskweave_tasks (
                    task_id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL,
                    snapshot JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.commit()

    def save(self, snapshot: TaskSnapshot) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO taskweave_tasks (task_id, description, status, snapshot, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (task_id) DO UPDATE SET
                    description=excluded.description,
                    status=excluded.status,
                    snapshot=excluded.snapshot,
                    updated_at=excluded.updated_at
                """,
                (
                    snapshot.task.id,
                    snapshot.task.description,
                    snapshot.task.status.value,
                    json.dumps(snapshot.to_dict(), default=str),
                    now,
                ),
            )
            conn.commit()

    def load(self, task_id: str) -> Optional[TaskSnapshot]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT snapshot FROM taskweave_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        data = row["snapshot"]
        if not isinstance(data, dict):
            data = json.loads(data)
        return TaskSnapshot.from_dict(data)

    def list_tasks(self, limit: int = 200) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT task_id, description, status, updated_at
                FROM taskweave_tasks
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (limit,),
            ).fetchall()
        return [
            {
                "task_id": row["task_id"],
                "description": row["description"],
                "status": row["status"],
                "updated_at": row["updated_at"].timestamp(),
            }
            for row in rows
        ]
