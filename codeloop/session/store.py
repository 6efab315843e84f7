"""
SQLite-backed session store.

Holds the sessions, their finished turns, and one embedding vector per turn.
Uses ``aiosqlite`` for async database access with a write lock to serialise
mutations (SQLite only supports one writer at a time in WAL mode).

Nearest-neighbour lookups compute cosine similarity over a session's vectors
in Python; a session holds at most a few thousand turns.

Schema is version-tracked via a ``schema_version`` table.  Migrations are
applied automatically on ``init()``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

import aiosqlite

from codeloop.session.embeddings import cosine_similarity
from codeloop.session.turns import Turn

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}'
        )""",
        """CREATE TABLE IF NOT EXISTS turns (
            turn_id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            role TEXT NOT NULL,
            data TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        )""",
        """CREATE TABLE IF NOT EXISTS embeddings (
            turn_id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            dims INTEGER NOT NULL,
            vector TEXT NOT NULL,
            FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
        )""",
        """CREATE INDEX IF NOT EXISTS idx_turns_session ON turns(session_id, seq)""",
        """CREATE INDEX IF NOT EXISTS idx_embeddings_session ON embeddings(session_id)""",
    ],
}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """
    Async SQLite store for sessions, turns, and turn embeddings.

    Usage::

        store = SessionStore("~/.codeloop/history.db")
        await store.init()
        sid = await store.create_session()
        await store.save_turn(sid, turn)
        await store.save_embedding(sid, turn, vector)
        hits = await store.nearest(sid, query_vector, limit=5)
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SessionStore is not initialised -- call init() first")
        return self._db

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def _get_schema_version(self) -> int:
        """Return the current schema version, or 0 if not initialised."""
        cursor = await self.db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self.db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def _run_migrations(self) -> None:
        current = await self._get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self.db.execute(stmt)
            await self.db.execute("DELETE FROM schema_version")
            await self.db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

        await self.db.commit()

    async def get_schema_version(self) -> int:
        return await self._get_schema_version()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, metadata: dict | None = None) -> str:
        """Create a new session and return its id."""
        session_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        async with self._write_lock:
            await self.db.execute(
                "INSERT INTO sessions (session_id, created_at, metadata) VALUES (?, ?, ?)",
                (session_id, now, json.dumps(metadata or {})),
            )
            await self.db.commit()

        return session_id

    async def get_session(self, session_id: str) -> dict | None:
        cursor = await self.db.execute(
            "SELECT session_id, created_at, metadata FROM sessions WHERE session_id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "session_id": row[0],
            "created_at": row[1],
            "metadata": json.loads(row[2]),
        }

    async def list_sessions(self) -> list[dict]:
        """Return all sessions, newest first, with their turn counts."""
        cursor = await self.db.execute(
            """SELECT s.session_id, s.created_at, s.metadata, COUNT(t.turn_id)
               FROM sessions s LEFT JOIN turns t ON t.session_id = s.session_id
               GROUP BY s.session_id
               ORDER BY s.created_at DESC"""
        )
        rows = await cursor.fetchall()
        return [
            {
                "session_id": row[0],
                "created_at": row[1],
                "metadata": json.loads(row[2]),
                "turns": row[3],
            }
            for row in rows
        ]

    async def delete_session(self, session_id: str) -> None:
        """Delete a session together with its turns and embeddings."""
        async with self._write_lock:
            for table in ("embeddings", "turns", "sessions"):
                await self.db.execute(
                    f"DELETE FROM {table} WHERE session_id = ?", (session_id,)
                )
            await self.db.commit()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def save_turn(self, session_id: str, turn: Turn) -> None:
        """Insert or replace a finished turn."""
        async with self._write_lock:
            await self.db.execute(
                """INSERT OR REPLACE INTO turns (turn_id, session_id, seq, role, data)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    turn.turn_id,
                    session_id,
                    turn.seq,
                    turn.role,
                    json.dumps(turn.to_record()),
                ),
            )
            await self.db.commit()

    async def get_turns(self, session_id: str) -> list[Turn]:
        """Return a session's persisted turns in creation order."""
        cursor = await self.db.execute(
            "SELECT data FROM turns WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [Turn.from_record(json.loads(row[0])) for row in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def save_embedding(
        self, session_id: str, turn: Turn, vector: Sequence[float]
    ) -> None:
        async with self._write_lock:
            await self.db.execute(
                """INSERT OR REPLACE INTO embeddings
                   (turn_id, session_id, seq, role, content, dims, vector)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    turn.turn_id,
                    session_id,
                    turn.seq,
                    turn.role,
                    turn.content,
                    len(vector),
                    json.dumps(list(vector)),
                ),
            )
            await self.db.commit()

    async def get_embeddings(self, session_id: str) -> list[dict]:
        """Return every stored embedding of a session in creation order."""
        cursor = await self.db.execute(
            """SELECT turn_id, seq, role, content, vector
               FROM embeddings WHERE session_id = ? ORDER BY seq ASC""",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "turn_id": row[0],
                "seq": row[1],
                "role": row[2],
                "content": row[3],
                "vector": json.loads(row[4]),
            }
            for row in rows
        ]

    async def nearest(
        self,
        session_id: str,
        vector: Sequence[float],
        limit: int,
        *,
        roles: Iterable[str] | None = None,
        exclude: Iterable[str] = (),
    ) -> list[dict]:
        """
        Return up to *limit* embedded turns most similar to *vector*.

        Results are ordered by descending cosine similarity and carry a
        ``score`` key.  Vectors of a different dimension never match.
        """
        if limit <= 0:
            return []
        role_filter = set(roles) if roles is not None else None
        excluded = set(exclude)
        scored = []
        for record in await self.get_embeddings(session_id):
            if record["turn_id"] in excluded:
                continue
            if role_filter is not None and record["role"] not in role_filter:
                continue
            if len(record["vector"]) != len(vector):
                continue
            record["score"] = cosine_similarity(vector, record["vector"])
            scored.append(record)
        scored.sort(key=lambda r: r["score"], reverse=True)
        return scored[:limit]
