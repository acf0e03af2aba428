"""
SQLite Project Store
====================
Persistent storage with three independent namespaces:

    projects  project id   -> full project document (JSON)
    media     page id      -> raw page blob (image bytes or UTF-8 text)
    cache     content hash -> analysis result payload + timestamp

Every call opens its own connection; a ``put_project`` is a single
transaction so readers never see a half-written project.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from .models import Project

logger = logging.getLogger(__name__)

# Default database path: current working directory
_DEFAULT_DB_PATH = str(Path.cwd() / "intake.sqlite")


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("INTAKE_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times; uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT DEFAULT 'draft',
                document TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS media (
                page_id TEXT PRIMARY KEY,
                mime_type TEXT NOT NULL,
                data BLOB NOT NULL,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cache (
                content_hash TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_projects_updated
                ON projects(updated_at);
        """)

    logger.info("Database schema initialized successfully")


class ProjectStore:
    """Typed access to the three namespaces of one database file."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or get_db_path()

    def init(self):
        init_db(self.db_path)
        return self

    # ─── Projects ─────────────────────────────────────────────────────────

    def put_project(self, project: Project):
        """
        Write the whole project document in one transaction.
        Inline page data is limited to the preview; raw media stays in the
        media namespace.
        """
        project.touch()
        document = project.model_dump_json()
        with get_connection(self.db_path) as conn:
            conn.execute(
                """INSERT INTO projects (id, name, status, document, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       status = excluded.status,
                       document = excluded.document,
                       updated_at = excluded.updated_at""",
                (project.id, project.name, project.status.value,
                 document, project.updated_at),
            )

    def get_project(self, project_id: str) -> Optional[Project]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT document FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        if not row:
            return None
        return Project.model_validate_json(row["document"])

    def list_projects(self) -> list[dict]:
        """Project summaries, most recently updated first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, name, status, updated_at FROM projects "
                "ORDER BY updated_at DESC"
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_project(self, project_id: str) -> bool:
        """
        Delete a project and the media of every page it references.
        Returns True if the project existed.
        """
        project = self.get_project(project_id)
        if project is None:
            return False
        page_ids = [p.id for p in project.unprocessed_pages]
        for cand in project.candidates:
            page_ids.extend(p.id for p in cand.pages)
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            conn.executemany(
                "DELETE FROM media WHERE page_id = ?",
                [(pid,) for pid in page_ids],
            )
        logger.info(
            f"Deleted project {project_id} and {len(page_ids)} media blob(s)"
        )
        return True

    # ─── Media ────────────────────────────────────────────────────────────

    def put_media(self, page_id: str, data: bytes, mime_type: str):
        with get_connection(self.db_path) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO media
                   (page_id, mime_type, data, created_at)
                   VALUES (?, ?, ?, ?)""",
                (page_id, mime_type, sqlite3.Binary(data), time.time()),
            )

    def get_media(self, page_id: str) -> Optional[bytes]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT data FROM media WHERE page_id = ?", (page_id,)
            ).fetchone()
        return bytes(row["data"]) if row else None

    def delete_media(self, page_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM media WHERE page_id = ?", (page_id,)
            )
            return cursor.rowcount > 0

    # ─── Cache ────────────────────────────────────────────────────────────

    def cache_get(self, content_hash: str) -> Optional[Any]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM cache WHERE content_hash = ?",
                (content_hash,),
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    def cache_put(self, content_hash: str, payload: Any):
        with get_connection(self.db_path) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO cache
                   (content_hash, payload, updated_at)
                   VALUES (?, ?, ?)""",
                (content_hash, json.dumps(payload, ensure_ascii=False),
                 time.time()),
            )

    def cache_clear(self) -> int:
        """Drop every cache entry. Returns the number removed."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM cache")
            return cursor.rowcount

    def cache_count(self) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM cache").fetchone()
            return row["cnt"] if row else 0
