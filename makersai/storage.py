# Persistent store for saved designs and usage tracking.
# Write-behind sink for the generation pipeline: saving and usage events never
# fail a generation request.

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SavedDesign(BaseModel):
    id: Optional[int] = None
    name: str = Field(min_length=1, max_length=100)
    prompt: str = Field(min_length=1, max_length=1000)
    scad_code: str = Field(min_length=1)
    image_url: str
    svg_code: Optional[str] = None
    tags: List[str] = Field(default_factory=list, max_length=10)
    is_favorite: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class DesignStore:
    """SQLite-backed store for saved designs and usage analytics."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).resolve().parent.mkdir(parents=True, exist_ok=True)
        self.conn: Optional[sqlite3.Connection] = sqlite3.connect(
            db_path, timeout=30.0, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row
        self.cursor = self.conn.cursor()
        self._lock = threading.RLock()
        self._create_tables()
        logger.info("✅ Database initialized at %s", db_path)

    def _create_tables(self) -> None:
        with self._lock:
            if self.db_path != ":memory:":
                self.cursor.execute("PRAGMA journal_mode = WAL;")
            self.cursor.execute("PRAGMA busy_timeout = 30000;")
            self.cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS designs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    scad_code TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    svg_code TEXT,
                    tags TEXT,
                    is_favorite INTEGER DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            self.cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_tracking (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    action TEXT NOT NULL,
                    metadata TEXT,
                    created_at TEXT
                )
                """
            )
            self.cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_designs_created_at ON designs(created_at DESC)"
            )
            self.cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_designs_is_favorite ON designs(is_favorite)"
            )
            self.cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_tracking_created_at ON usage_tracking(created_at DESC)"
            )
            self.conn.commit()

    def save_design(self, design: SavedDesign) -> SavedDesign:
        now = _now_iso()
        with self._lock:
            self.cursor.execute(
                """
                INSERT INTO designs (
                    name, prompt, scad_code, image_url, svg_code, tags,
                    is_favorite, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    design.name,
                    design.prompt,
                    design.scad_code,
                    design.image_url,
                    design.svg_code,
                    json.dumps(design.tags),
                    int(design.is_favorite),
                    now,
                    now,
                ),
            )
            self.conn.commit()
            design_id = self.cursor.lastrowid
        return design.model_copy(update={"id": design_id, "created_at": now, "updated_at": now})

    def _design_from_row(self, row: Optional[sqlite3.Row]) -> Optional[SavedDesign]:
        if not row:
            return None
        data = dict(row)
        data["tags"] = json.loads(row["tags"] or "[]")
        data["is_favorite"] = bool(row["is_favorite"])
        return SavedDesign.model_validate(data)

    def get_design(self, design_id: int) -> Optional[SavedDesign]:
        with self._lock:
            self.cursor.execute("SELECT * FROM designs WHERE id = ?", (design_id,))
            return self._design_from_row(self.cursor.fetchone())

    def list_designs(self, favorites_only: bool = False, limit: int = 50) -> List[SavedDesign]:
        query = "SELECT * FROM designs"
        if favorites_only:
            query += " WHERE is_favorite = 1"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._lock:
            self.cursor.execute(query, (limit,))
            return [self._design_from_row(row) for row in self.cursor.fetchall() if row]

    def set_favorite(self, design_id: int, is_favorite: bool) -> Optional[SavedDesign]:
        with self._lock:
            self.cursor.execute(
                "UPDATE designs SET is_favorite = ?, updated_at = ? WHERE id = ?",
                (int(is_favorite), _now_iso(), design_id),
            )
            self.conn.commit()
            if self.cursor.rowcount == 0:
                return None
        return self.get_design(design_id)

    def delete_design(self, design_id: int) -> bool:
        with self._lock:
            self.cursor.execute("DELETE FROM designs WHERE id = ?", (design_id,))
            self.conn.commit()
            return self.cursor.rowcount > 0

    def record_usage(self, action: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        """Fire-and-forget usage event. Storage errors are logged, never raised."""
        try:
            with self._lock:
                self.cursor.execute(
                    "INSERT INTO usage_tracking (action, metadata, created_at) VALUES (?, ?, ?)",
                    (action, json.dumps(dict(metadata or {}), ensure_ascii=False), _now_iso()),
                )
                self.conn.commit()
        except Exception as exc:
            logger.warning("Failed to record usage event %s: %s", action, exc)

    def usage_counts(self) -> Dict[str, int]:
        with self._lock:
            self.cursor.execute(
                "SELECT action, COUNT(*) AS total FROM usage_tracking GROUP BY action"
            )
            return {row["action"]: row["total"] for row in self.cursor.fetchall()}

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info("✅ Database closed")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
