"""
Storage layer for meme items and settings.

This module handles metadata persistence, embedding storage and the
lookups used by scanning, processing and search, with a SQLite backend.
"""

import functools
import json
import logging
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .config import Settings
from .errors import MemedexError, NotFoundError, ValidationError
from .models.schemas import (
    CleanupResult,
    ItemStatus,
    ItemUpdate,
    MemeItem,
    StatsResponse,
    folder_of,
)
from .query import ItemQuery

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memes (
    id TEXT PRIMARY KEY,
    file_path TEXT NOT NULL UNIQUE,
    folder TEXT NOT NULL DEFAULT '',
    title TEXT,
    description TEXT,
    embedding BLOB,
    tags TEXT NOT NULL DEFAULT '[]',
    starred INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'complete', 'error')),
    meta TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memes_folder ON memes (folder);
CREATE INDEX IF NOT EXISTS idx_memes_status ON memes (status);
CREATE INDEX IF NOT EXISTS idx_memes_starred ON memes (starred) WHERE starred = 1;
CREATE INDEX IF NOT EXISTS idx_memes_created ON memes (created_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS memes_fts
    USING fts5(description, tokenize = 'porter unicode61');

CREATE TRIGGER IF NOT EXISTS memes_fts_insert AFTER INSERT ON memes BEGIN
    INSERT INTO memes_fts (rowid, description)
    VALUES (NEW.rowid, COALESCE(NEW.description, ''));
END;

CREATE TRIGGER IF NOT EXISTS memes_fts_delete AFTER DELETE ON memes BEGIN
    DELETE FROM memes_fts WHERE rowid = OLD.rowid;
END;

CREATE TRIGGER IF NOT EXISTS memes_fts_update AFTER UPDATE OF description ON memes BEGIN
    DELETE FROM memes_fts WHERE rowid = OLD.rowid;
    INSERT INTO memes_fts (rowid, description)
    VALUES (NEW.rowid, COALESCE(NEW.description, ''));
END;

CREATE TRIGGER IF NOT EXISTS memes_updated_at AFTER UPDATE ON memes
WHEN NEW.updated_at = OLD.updated_at BEGIN
    UPDATE memes
    SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') || '+00:00'
    WHERE rowid = NEW.rowid;
END;

CREATE TRIGGER IF NOT EXISTS settings_updated_at AFTER UPDATE ON settings
WHEN NEW.updated_at = OLD.updated_at BEGIN
    UPDATE settings
    SET updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') || '+00:00'
    WHERE key = NEW.key;
END;
"""

# English stop words dropped from full-text queries
STOP_WORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because
    been before being below between both but by can did do does doing don
    down during each few for from further had has have having he her here
    hers herself him himself his how i if in into is it its itself just me
    more most my myself no nor not now of off on once only or other our ours
    ourselves out over own s same she should so some such t than that the
    their theirs them themselves then there these they this those through to
    too under until up very was we were what when where which while who whom
    why will with you your yours yourself yourselves
    """.split()
)


class StorageError(MemedexError):
    """Storage related errors."""


class ItemNotFoundError(NotFoundError):
    """No item with the requested id."""

    def __init__(self, item_id: str):
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@functools.lru_cache(maxsize=128)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def _regexp(pattern: str, value: Optional[str]) -> bool:
    """SQLite REGEXP implementation: ``value REGEXP pattern``."""
    if value is None:
        return False
    return _compile(pattern).search(value) is not None


def _encode_embedding(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _decode_embedding(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32)


def image_path_candidates(file_path: str) -> List[Path]:
    """
    Paths an item's file may live at.

    Items are recorded either with absolute container paths (``/data/...``)
    or with paths relative to the working directory (``data/...``); the
    other form is tried as a fallback.
    """
    if file_path.startswith("/"):
        alternate = file_path[1:]
    else:
        alternate = f"/{file_path}"
    return [Path(file_path), Path(alternate)]


def resolve_image_path(file_path: str) -> Optional[Path]:
    """Return the first existing candidate path for ``file_path``."""
    for candidate in image_path_candidates(file_path):
        if candidate.is_file():
            return candidate
    return None


class ItemStore:
    """
    Manages meme item persistence.

    Handles item records, embeddings, full-text indexing and the
    key/value settings table with a SQLite backend. A new connection is
    opened per operation so one store may be shared across threads.
    """

    def __init__(self, settings: Settings):
        """
        Initialize item store.

        Args:
            settings: Application settings

        Raises:
            StorageError: If initialization fails
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.db_path = Path(settings.database_path)
        self.embedding_dimension = settings.embedding_dimension

        self._setup_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and always close it."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.create_function("REGEXP", 2, _regexp, deterministic=True)
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _setup_database(self) -> None:
        """Setup SQLite database, tables and seed settings."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(_SCHEMA)

                defaults = {
                    "scan_paths": [],
                    "ml_model": {
                        "name": self.settings.ollama_model,
                        "endpoint": self.settings.ollama_url,
                    },
                    "embedding_model": {"name": self.settings.embedding_model_name},
                }
                now = _now()
                conn.executemany(
                    "INSERT OR IGNORE INTO settings (key, value, updated_at) "
                    "VALUES (?, ?, ?)",
                    [(key, json.dumps(value), now) for key, value in defaults.items()],
                )

            logger.info(f"Database initialized: {self.db_path}")

        except (sqlite3.Error, OSError) as e:
            error_msg = f"Failed to setup database: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def _item_from_row(self, row: sqlite3.Row) -> MemeItem:
        """
        Create MemeItem instance from database row.

        Args:
            row: Database row from the memes table

        Returns:
            MemeItem instance
        """
        embedding = _decode_embedding(row["embedding"])
        return MemeItem(
            id=row["id"],
            file_path=row["file_path"],
            folder=row["folder"],
            title=row["title"],
            description=row["description"],
            embedding=embedding.tolist() if embedding is not None else None,
            tags=json.loads(row["tags"]) if row["tags"] else [],
            starred=bool(row["starred"]),
            status=ItemStatus(row["status"]),
            meta=json.loads(row["meta"]) if row["meta"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _fetch_by_ids(
        self, conn: sqlite3.Connection, item_ids: Sequence[str]
    ) -> Dict[str, MemeItem]:
        if not item_ids:
            return {}
        placeholders = ", ".join("?" for _ in item_ids)
        cursor = conn.execute(
            f"SELECT * FROM memes WHERE id IN ({placeholders})", list(item_ids)
        )
        return {row["id"]: self._item_from_row(row) for row in cursor.fetchall()}

    # ========================================
    # CREATE
    # ========================================

    def add_item(
        self,
        file_path: str,
        title: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Optional[MemeItem]:
        """
        Insert a pending item unless one already exists for ``file_path``.

        Args:
            file_path: Image file path (natural key)
            title: Optional title
            meta: Initial metadata

        Returns:
            The created item, or None if the path was already indexed

        Raises:
            StorageError: If the insert fails
        """
        assert file_path, "File path is required"

        item_id = str(uuid.uuid4())
        now = _now()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO memes (
                        id, file_path, folder, title, meta, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (file_path) DO NOTHING
                """,
                    (
                        item_id,
                        file_path,
                        folder_of(file_path),
                        title,
                        json.dumps(meta or {}),
                        now,
                        now,
                    ),
                )
                if cursor.rowcount == 0:
                    return None

                row = conn.execute(
                    "SELECT * FROM memes WHERE id = ?", (item_id,)
                ).fetchone()

            logger.debug(f"Added item {item_id} for {file_path}")
            return self._item_from_row(row)

        except sqlite3.Error as e:
            error_msg = f"Failed to add item for {file_path}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    # ========================================
    # READ
    # ========================================

    def get_item(self, item_id: str) -> Optional[MemeItem]:
        """
        Get item by ID.

        Returns:
            Item or None if not found
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM memes WHERE id = ?", (item_id,)
                ).fetchone()
                return self._item_from_row(row) if row else None

        except sqlite3.Error as e:
            error_msg = f"Failed to get item: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def require_item(self, item_id: str) -> MemeItem:
        """Get item by ID or raise ItemNotFoundError."""
        item = self.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def has_path(self, file_path: str) -> bool:
        """Check whether an item exists for ``file_path``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM memes WHERE file_path = ?", (file_path,)
            ).fetchone()
            return row is not None

    def list_items(self, query: Optional[ItemQuery] = None) -> List[MemeItem]:
        """
        List items matching a validated filter, newest first.

        Args:
            query: Filter and pagination; defaults to the first page

        Returns:
            Page of items
        """
        query = query or ItemQuery()
        sql, params = query.to_sql()
        try:
            with self._connect() as conn:
                cursor = conn.execute(sql, params)
                return [self._item_from_row(row) for row in cursor.fetchall()]

        except sqlite3.Error as e:
            error_msg = f"Failed to list items: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def pending_items(self, limit: int) -> List[MemeItem]:
        """Oldest pending items, at most ``limit``."""
        assert limit > 0, f"Invalid limit: {limit}"

        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM memes WHERE status = ? "
                "ORDER BY created_at, rowid LIMIT ?",
                (ItemStatus.PENDING.value, limit),
            )
            return [self._item_from_row(row) for row in cursor.fetchall()]

    def all_paths(self) -> List[Tuple[str, str]]:
        """All ``(id, file_path)`` pairs."""
        with self._connect() as conn:
            cursor = conn.execute("SELECT id, file_path FROM memes ORDER BY rowid")
            return [(row["id"], row["file_path"]) for row in cursor.fetchall()]

    def get_stats(self) -> StatsResponse:
        """Item counts by status plus starred count."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(status = 'pending'), 0) AS pending,
                    COALESCE(SUM(status = 'processing'), 0) AS processing,
                    COALESCE(SUM(status = 'complete'), 0) AS complete,
                    COALESCE(SUM(status = 'error'), 0) AS error,
                    COALESCE(SUM(starred), 0) AS starred
                FROM memes
            """
            ).fetchone()
        return StatsResponse(**dict(row))

    # ========================================
    # UPDATE
    # ========================================

    def update_item(self, item_id: str, update: ItemUpdate) -> MemeItem:
        """
        Apply a partial user update.

        Args:
            item_id: Item identifier
            update: Fields to change

        Returns:
            Updated item

        Raises:
            ValidationError: If the update sets no field
            ItemNotFoundError: If the item does not exist
        """
        changes = update.changes()
        if not changes:
            raise ValidationError("No updates")

        columns: List[str] = []
        params: List[Any] = []
        for field in ("title", "description", "tags", "starred", "status"):
            if field not in changes:
                continue
            value = changes[field]
            if field == "tags":
                value = json.dumps(value or [])
            elif field in ("starred", "status") and value is None:
                raise ValidationError(f"{field} cannot be null")
            elif field == "starred":
                value = 1 if value else 0
            elif field == "status":
                value = ItemStatus(value).value
            columns.append(f"{field} = ?")
            params.append(value)

        params.append(item_id)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE memes SET {', '.join(columns)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise ItemNotFoundError(item_id)

        logger.info(f"Updated item {item_id}: {', '.join(changes)}")
        return self.require_item(item_id)

    def toggle_star(self, item_id: str) -> MemeItem:
        """Flip the starred flag."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memes SET starred = NOT starred WHERE id = ?", (item_id,)
            )
            if cursor.rowcount == 0:
                raise ItemNotFoundError(item_id)
        return self.require_item(item_id)

    def merge_meta(self, item_id: str, patch: Dict[str, Any]) -> MemeItem:
        """
        Merge keys into an item's metadata.

        Keys not present in ``patch`` are kept unchanged.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT meta FROM memes WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                raise ItemNotFoundError(item_id)

            meta = json.loads(row["meta"]) if row["meta"] else {}
            meta.update(patch)
            conn.execute(
                "UPDATE memes SET meta = ? WHERE id = ?", (json.dumps(meta), item_id)
            )
        return self.require_item(item_id)

    def append_share(
        self, item_id: str, url: str, text_boxes: List[Dict[str, Any]]
    ) -> MemeItem:
        """Append an entry to ``meta.shares``."""
        item = self.require_item(item_id)
        shares = list(item.meta.get("shares", []))
        shares.append(
            {"url": url, "text_boxes": text_boxes or [], "created_at": _now()}
        )
        return self.merge_meta(item_id, {"shares": shares})

    def set_status(self, item_id: str, status: ItemStatus) -> None:
        """Set an item's status."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memes SET status = ? WHERE id = ?", (status.value, item_id)
            )
            if cursor.rowcount == 0:
                raise ItemNotFoundError(item_id)

    def complete_item(
        self, item_id: str, description: str, embedding: Sequence[float]
    ) -> MemeItem:
        """
        Store processing results and mark the item complete.

        Description, embedding and status are written in one statement.

        Raises:
            StorageError: If the description is empty or the embedding has
                the wrong dimension
            ItemNotFoundError: If the item does not exist
        """
        if not description or not description.strip():
            raise StorageError("Description is required to complete an item")
        if len(embedding) != self.embedding_dimension:
            raise StorageError(
                f"Embedding dimension mismatch: expected "
                f"{self.embedding_dimension}, got {len(embedding)}"
            )

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memes SET description = ?, embedding = ?, status = ? "
                "WHERE id = ?",
                (
                    description,
                    _encode_embedding(embedding),
                    ItemStatus.COMPLETE.value,
                    item_id,
                ),
            )
            if cursor.rowcount == 0:
                raise ItemNotFoundError(item_id)
        return self.require_item(item_id)

    def reset_status(
        self, from_status: ItemStatus, to_status: ItemStatus = ItemStatus.PENDING
    ) -> int:
        """
        Move every item in ``from_status`` to ``to_status``.

        Returns:
            Number of items changed
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE memes SET status = ? WHERE status = ?",
                (to_status.value, from_status.value),
            )
            count = cursor.rowcount

        logger.info(f"Reset {count} {from_status.value} items to {to_status.value}")
        return count

    # ========================================
    # DELETE
    # ========================================

    def delete_item(self, item_id: str) -> bool:
        """
        Delete an item record (the image file is left in place).

        Returns:
            True if deleted, False if not found
        """
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM memes WHERE id = ?", (item_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted item: {item_id}")
        return deleted

    def cleanup_missing_files(self) -> CleanupResult:
        """
        Delete items whose image file no longer exists.

        A file that cannot be checked is counted as failed and kept.
        """
        result = CleanupResult()
        for item_id, file_path in self.all_paths():
            result.checked += 1
            try:
                exists = resolve_image_path(file_path) is not None
            except OSError as e:
                result.failed += 1
                logger.warning(f"Could not check {file_path}: {e}")
                continue

            if not exists and self.delete_item(item_id):
                result.deleted += 1

        logger.info(
            f"Cleanup checked {result.checked}, deleted {result.deleted}, "
            f"failed {result.failed}"
        )
        return result

    # ========================================
    # SEARCH SUPPORT
    # ========================================

    def nearest_by_embedding(
        self, vector: Sequence[float], k: int
    ) -> List[Tuple[MemeItem, float]]:
        """
        Items with an embedding, by descending cosine similarity.

        Args:
            vector: Query vector
            k: Maximum number of results

        Returns:
            List of (item, cosine similarity) tuples
        """
        assert k > 0, f"Invalid k value: {k}"

        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0:
            return []

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, embedding FROM memes WHERE embedding IS NOT NULL"
            ).fetchall()
            if not rows:
                return []

            ids = [row["id"] for row in rows]
            matrix = np.vstack([_decode_embedding(row["embedding"]) for row in rows])
            norms = np.linalg.norm(matrix, axis=1)
            norms[norms == 0] = 1.0
            similarities = (matrix @ query) / (norms * query_norm)

            order = np.argsort(-similarities, kind="stable")[:k]
            top_ids = [ids[i] for i in order]
            items = self._fetch_by_ids(conn, top_ids)

        return [
            (items[ids[i]], float(similarities[i])) for i in order if ids[i] in items
        ]

    def match_title_path(self, pattern: str, limit: int) -> List[MemeItem]:
        """
        Items whose lowercased ``title || ' ' || file_path`` matches a regex.

        Args:
            pattern: Python regular expression
            limit: Maximum number of results
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM memes "
                "WHERE LOWER(COALESCE(title, '') || ' ' || file_path) REGEXP ? "
                "ORDER BY rowid LIMIT ?",
                (pattern, limit),
            )
            return [self._item_from_row(row) for row in cursor.fetchall()]

    def contains_title_path(self, needle: str) -> List[MemeItem]:
        """Items whose lowercased ``title || ' ' || file_path`` contains ``needle``."""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM memes "
                "WHERE instr(LOWER(COALESCE(title, '') || ' ' || file_path), ?) > 0 "
                "ORDER BY rowid",
                (needle,),
            )
            return [self._item_from_row(row) for row in cursor.fetchall()]

    def full_text_search(self, terms: Sequence[str]) -> List[Tuple[MemeItem, float]]:
        """
        Rank descriptions matching every term.

        Stop words are dropped and the remaining terms are matched with the
        porter stemmer; each is quoted so no FTS5 query syntax reaches the
        index. A query of only stop words matches nothing.

        Returns:
            List of (item, relevance) tuples, relevance in (0, 1)
        """
        terms = [term for term in terms if term.lower() not in STOP_WORDS]
        if not terms:
            return []

        match_expr = " ".join('"{}"'.format(term.replace('"', '""')) for term in terms)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT m.*, -bm25(memes_fts) AS relevance
                FROM memes_fts JOIN memes AS m ON m.rowid = memes_fts.rowid
                WHERE memes_fts MATCH ?
                ORDER BY relevance DESC
            """,
                (match_expr,),
            )
            results = []
            for row in cursor.fetchall():
                relevance = max(float(row["relevance"]), 0.0)
                results.append(
                    (self._item_from_row(row), relevance / (1.0 + relevance))
                )
            return results

    # ========================================
    # SETTINGS
    # ========================================

    def get_settings(self) -> Dict[str, Any]:
        """All stored settings as a dictionary."""
        with self._connect() as conn:
            cursor = conn.execute("SELECT key, value FROM settings ORDER BY key")
            return {row["key"]: json.loads(row["value"]) for row in cursor.fetchall()}

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Value of one setting."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row["value"]) if row else default

    def set_setting(self, key: str, value: Any) -> None:
        """Insert or replace one setting."""
        if not key or not key.strip():
            raise ValidationError("Setting key cannot be empty")

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
                (key, json.dumps(value), _now()),
            )
        logger.info(f"Setting updated: {key}")
