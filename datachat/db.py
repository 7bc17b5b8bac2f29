import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _loads(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except ValueError:
        return []
    return data if isinstance(data, list) else []


def _dumps(items: Optional[List[Any]]) -> Optional[str]:
    if not items:
        return None
    return json.dumps([i.model_dump() if hasattr(i, "model_dump") else i for i in items])


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sessions(
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    agent TEXT,
                    title TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    role TEXT,
                    content TEXT,
                    images_json TEXT,
                    charts_json TEXT,
                    tool_calls_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(owner, created_at);
                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def create_session(self, owner: str, agent: Optional[str] = None, title: Optional[str] = None) -> dict:
        session_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO sessions(id, owner, agent, title, created_at) VALUES (?,?,?,?,?)",
            (session_id, owner, agent, title, created_at),
        )
        return {
            "id": session_id,
            "owner": owner,
            "agent": agent,
            "title": title,
            "created_at": created_at,
            "message_count": 0,
        }

    async def get_session(self, session_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, owner, agent, title, created_at, "
            "(SELECT COUNT(*) FROM messages WHERE session_id=sessions.id) AS message_count "
            "FROM sessions WHERE id=?",
            (session_id,),
        )
        return dict(row) if row else None

    async def list_sessions(self, owner: str, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, owner, agent, title, created_at, "
            "(SELECT COUNT(*) FROM messages WHERE session_id=sessions.id) AS message_count "
            "FROM sessions WHERE owner=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (owner, limit),
        )
        return [dict(r) for r in rows]

    async def update_session_title(self, session_id: str, title: str) -> Optional[dict]:
        if not await self.fetchone("SELECT id FROM sessions WHERE id=?", (session_id,)):
            return None
        await self.execute("UPDATE sessions SET title=? WHERE id=?", (title, session_id))
        return await self.get_session(session_id)

    async def delete_session(self, session_id: str) -> bool:
        existed = await self.fetchone("SELECT id FROM sessions WHERE id=?", (session_id,))
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM messages WHERE session_id=?", (session_id,))
            await db.execute("DELETE FROM sessions WHERE id=?", (session_id,))
            await db.commit()
        return existed is not None

    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        images: Optional[List[Any]] = None,
        charts: Optional[List[Any]] = None,
        tool_calls: Optional[List[Any]] = None,
    ) -> dict:
        created_at = utc_now()
        await self.execute(
            "INSERT INTO messages(session_id, role, content, images_json, charts_json, tool_calls_json, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (session_id, role, content, _dumps(images), _dumps(charts), _dumps(tool_calls), created_at),
        )
        return {"session_id": session_id, "role": role, "content": content, "timestamp": created_at}

    async def load_messages(self, session_id: str, limit: int = 1000) -> List[dict]:
        rows = await self.fetchall(
            "SELECT role, content, images_json, charts_json, tool_calls_json, created_at "
            "FROM messages WHERE session_id=? ORDER BY id ASC LIMIT ?",
            (session_id, limit),
        )
        return [
            {
                "role": r["role"],
                "content": r["content"] or "",
                "timestamp": r["created_at"],
                "images": _loads(r["images_json"]),
                "charts": _loads(r["charts_json"]),
                "tool_calls": _loads(r["tool_calls_json"]),
            }
            for r in rows
        ]

    async def counts(self) -> Dict[str, int]:
        row = await self.fetchone(
            "SELECT (SELECT COUNT(*) FROM sessions) AS sessions, "
            "(SELECT COUNT(*) FROM messages) AS messages, "
            "(SELECT COUNT(DISTINCT owner) FROM sessions) AS owners"
        )
        if not row:
            return {"sessions": 0, "messages": 0, "owners": 0}
        return {"sessions": row["sessions"], "messages": row["messages"], "owners": row["owners"]}
