"""
Resource storage for VaultIngest.
ResourceStorage is the seam the completion handler writes through;
SqliteResourceStore is the local implementation.
Thread-safe via check_same_thread=False + explicit locking.
"""

import json
import sqlite3
import threading
import uuid
import logging
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path

from vault_ingest.core.constants import DB_PATH
from vault_ingest.core.models import Resource
from vault_ingest.core.url_detect import normalize_url

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    notes TEXT DEFAULT '',
    tags TEXT DEFAULT '[]',
    url TEXT,
    normalized_url TEXT,
    platform TEXT,
    creator TEXT,
    duration TEXT,
    transcript TEXT,
    channel_name TEXT,
    handle TEXT,
    view_count INTEGER,
    hashtags TEXT DEFAULT '[]',
    extracted_at TEXT,
    extraction_method TEXT,
    source_job_id TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_resources_created_at ON resources(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_resources_normalized_url ON resources(normalized_url);
"""

_JSON_COLUMNS = ('tags', 'hashtags')
_RESOURCE_FIELDS = tuple(f.name for f in fields(Resource))


class ResourceStorage:
    """Persistence collaborator used once per successfully completed job."""

    def add_resource(self, resource: Resource) -> Resource:
        raise NotImplementedError

    def find_by_url(self, url: str) -> Resource | None:
        return None


class SqliteResourceStore(ResourceStorage):
    """SQLite-backed resource store."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.Lock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_resource(row: sqlite3.Row) -> Resource:
        data = {k: row[k] for k in row.keys() if k in _RESOURCE_FIELDS}
        for col in _JSON_COLUMNS:
            data[col] = json.loads(data.get(col) or "[]")
        return Resource(**data)

    # ── Resource CRUD ─────────────────────────────────────────────────

    def add_resource(self, resource: Resource) -> Resource:
        now = self._now()
        if not resource.id:
            resource.id = str(uuid.uuid4())
        resource.created_at = resource.created_at or now
        resource.updated_at = resource.updated_at or now

        row = {name: getattr(resource, name) for name in _RESOURCE_FIELDS}
        for col in _JSON_COLUMNS:
            row[col] = json.dumps(row[col] or [])
        row['normalized_url'] = normalize_url(resource.url) if resource.url else None

        cols = ', '.join(row)
        marks = ', '.join('?' for _ in row)
        with self._lock:
            self.conn.execute(
                f"INSERT INTO resources ({cols}) VALUES ({marks})",
                list(row.values()),
            )
            self.conn.commit()
        logger.info("Saved resource %s (%s)", resource.id, resource.title)
        return self.get_resource(resource.id)

    def get_resource(self, resource_id: str) -> Resource | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
        return self._row_to_resource(row) if row else None

    def list_resources(self) -> list[Resource]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM resources ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_resource(r) for r in rows]

    def find_by_url(self, url: str) -> Resource | None:
        """First resource whose normalized URL matches the given URL."""
        if not url:
            return None
        target = normalize_url(url)
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM resources WHERE normalized_url = ? ORDER BY created_at ASC LIMIT 1",
                (target,),
            ).fetchone()
        return self._row_to_resource(row) if row else None

    def delete_resource(self, resource_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM resources WHERE id = ?", (resource_id,))
            self.conn.commit()
