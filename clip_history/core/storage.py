"""SQLite storage backend for clips with FTS5 keyword search and an embeddings side table."""

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from clip_history.core.errors import (
    ConsistencyError,
    NotFoundError,
    StorageError,
    TransientIOError,
)
from clip_history.core.schema import (
    CLIP_COLUMN_MIGRATIONS,
    CLIP_COLUMNS,
    POST_MIGRATION_SQL,
    SCHEMA_SQL,
)
from clip_history.models.schemas import Clip, Collection, Embedding, Tag

logger = logging.getLogger(__name__)

CLIP_FIELDS = (
    "clips.*, "
    "EXISTS(SELECT 1 FROM embeddings e WHERE e.clip_id = clips.id) AS has_embedding"
)
RECENCY_ORDER = "clips.updated_at DESC, clips.rowid DESC"
TOGGLE_COLUMNS = ("is_favorite", "is_pinned")


def escape_fts_query(query: str) -> str:
    """Turn free text into an FTS5 expression.

    Every whitespace-separated token is quoted (so FTS5 operators and
    punctuation are literals) and prefix-matched, and tokens are ANDed:
    ``hello wor`` -> ``"hello"* AND "wor"*``.
    """
    tokens = query.split()
    if not tokens:
        return '""'
    return " AND ".join('"{}"*'.format(token.replace('"', '""')) for token in tokens)


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def vector_to_blob(vector: Sequence[float]) -> bytes:
    """Pack as raw bytes (little-endian float32)."""
    return np.asarray(vector, dtype="<f4").tobytes()


def blob_to_vector(blob: bytes) -> List[float]:
    return np.frombuffer(blob, dtype="<f4").tolist()


def _now() -> int:
    return int(time.time())


class ClipStorage:
    """SQLite storage for clips, tags, collections and embeddings."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = os.path.expanduser(db_path or "~/.clip-history/clips.db")
        if self.db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)

        self.conn: Optional[sqlite3.Connection] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _ensure_initialized(self):
        """Lazy initialization of the SQLite connection and schema."""
        if self._initialized:
            return

        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self.conn.execute("PRAGMA busy_timeout=5000")
            self.conn.executescript(SCHEMA_SQL)
            self._migrate()
            self.conn.executescript(POST_MIGRATION_SQL)
            self.conn.commit()
            self._initialized = True
        except sqlite3.Error as e:
            logger.error(f"Storage initialization error: {e}")
            raise StorageError(f"Failed to open clip database {self.db_path}: {e}") from e

    def _migrate(self):
        cols = {row["name"] for row in self.conn.execute("PRAGMA table_info(clips)")}
        for column, ddl in CLIP_COLUMN_MIGRATIONS.items():
            if column not in cols:
                logger.info(f"Migrating clips table: adding column {column}")
                self.conn.execute(f"ALTER TABLE clips ADD COLUMN {column} {ddl}")

    def close(self):
        if self.conn is not None:
            self.conn.close()
        self.conn = None
        self._initialized = False

    @contextmanager
    def _guard(self, action: str) -> Iterator[sqlite3.Connection]:
        """Run one unit of work in a transaction, mapping sqlite errors."""
        try:
            with self.conn:
                yield self.conn
        except sqlite3.IntegrityError as e:
            logger.warning(f"{action} violated a constraint: {e}")
            raise StorageError(f"{action} failed: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"{action} error: {e}")
            raise TransientIOError(f"{action} failed: {e}") from e

    @staticmethod
    def _filters(
        filter_types: Optional[Sequence[str]] = None,
        favorites_only: bool = False,
        pinned_only: bool = False,
    ) -> Tuple[str, List[Any]]:
        sql = ""
        params: List[Any] = []
        if filter_types:
            sql += " AND clips.detected_type IN ({})".format(
                ", ".join("?" for _ in filter_types)
            )
            params.extend(filter_types)
        if favorites_only:
            sql += " AND clips.is_favorite = 1"
        if pinned_only:
            sql += " AND clips.is_pinned = 1"
        return sql, params

    # ------------------------------------------------------------------
    # Clips
    # ------------------------------------------------------------------

    async def insert_clip(self, clip: Clip) -> Clip:
        """Insert a clip row. The FTS triggers index its content_text."""
        await self._ensure_initialized()

        row = clip.model_dump(include=set(CLIP_COLUMNS))
        with self._guard("Insert clip") as conn:
            conn.execute(
                "INSERT INTO clips ({}) VALUES ({})".format(
                    ", ".join(CLIP_COLUMNS), ", ".join("?" for _ in CLIP_COLUMNS)
                ),
                [row[column] for column in CLIP_COLUMNS],
            )
        logger.debug(f"Inserted clip {clip.id} ({clip.content_type}/{clip.detected_type})")
        return await self.get_clip(clip.id)

    async def get_clip(self, clip_id: str) -> Optional[Clip]:
        await self._ensure_initialized()

        with self._guard("Get clip") as conn:
            row = conn.execute(
                f"SELECT {CLIP_FIELDS} FROM clips WHERE clips.id = ?", (clip_id,)
            ).fetchone()
        return Clip.from_row(row) if row else None

    async def get_clips_by_ids(self, ids: Sequence[str]) -> List[Clip]:
        """Fetch clips by id, in the order of ``ids``; unknown ids are skipped."""
        await self._ensure_initialized()
        if not ids:
            return []

        with self._guard("Get clips by ids") as conn:
            rows = conn.execute(
                "SELECT {} FROM clips WHERE clips.id IN ({})".format(
                    CLIP_FIELDS, ", ".join("?" for _ in ids)
                ),
                list(ids),
            ).fetchall()

        by_id = {row["id"]: Clip.from_row(row) for row in rows}
        return [by_id[clip_id] for clip_id in ids if clip_id in by_id]

    async def find_by_hash(self, content_hash: str) -> Optional[Clip]:
        """Most recently used clip with this content hash."""
        await self._ensure_initialized()

        with self._guard("Find by hash") as conn:
            row = conn.execute(
                f"SELECT {CLIP_FIELDS} FROM clips WHERE clips.content_hash = ? "
                f"ORDER BY {RECENCY_ORDER} LIMIT 1",
                (content_hash,),
            ).fetchone()
        return Clip.from_row(row) if row else None

    async def get_recent_paginated(
        self,
        limit: int,
        offset: int,
        favorites_only: bool = False,
        pinned_only: bool = False,
        filter_types: Optional[Sequence[str]] = None,
    ) -> List[Clip]:
        """Chronological page, most recently used first."""
        await self._ensure_initialized()

        where, params = self._filters(filter_types, favorites_only, pinned_only)
        with self._guard("List recent") as conn:
            rows = conn.execute(
                f"SELECT {CLIP_FIELDS} FROM clips WHERE 1=1{where} "
                f"ORDER BY {RECENCY_ORDER} LIMIT ? OFFSET ?",
                params + [int(limit), int(offset)],
            ).fetchall()
        return [Clip.from_row(row) for row in rows]

    def _keyword_sql(
        self,
        conn: sqlite3.Connection,
        query: str,
        columns: str,
        filter_types: Optional[Sequence[str]],
        favorites_only: bool,
        pinned_only: bool,
    ) -> Tuple[str, List[Any]]:
        """Build the ranked keyword query (without LIMIT) for ``query``.

        FTS5 prefix hits come first in rank order, followed by every other
        row whose content_text contains ``query`` as a plain substring, so a
        mid-word match is never hidden by an unrelated token match. Each row
        appears once and the ordering is the same for every page.
        """
        where, params = self._filters(filter_types, favorites_only, pinned_only)
        fts_query = escape_fts_query(query)
        like = f"%{escape_like(query.strip())}%"

        try:
            conn.execute("SELECT 1 FROM clips_fts WHERE clips_fts MATCH ? LIMIT 1", (fts_query,))
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS query {fts_query!r} failed, using substring match only: {e}")
            like_sql = (
                f"SELECT {columns} FROM clips "
                f"WHERE clips.content_text LIKE ? ESCAPE '\\'{where} "
                f"ORDER BY {RECENCY_ORDER}"
            )
            return like_sql, [like] + params

        hits_sql = (
            "SELECT clips_fts.rowid AS hit_rowid, 0 AS hit_group, clips_fts.rank AS hit_rank "
            "FROM clips_fts WHERE clips_fts MATCH ? "
            "UNION ALL "
            "SELECT clips.rowid, 1, 0.0 FROM clips "
            "WHERE clips.content_text LIKE ? ESCAPE '\\' "
            "AND clips.rowid NOT IN (SELECT rowid FROM clips_fts WHERE clips_fts MATCH ?)"
        )
        sql = (
            f"SELECT {columns} FROM ({hits_sql}) AS hits "
            f"JOIN clips ON clips.rowid = hits.hit_rowid "
            f"WHERE 1 = 1{where} "
            f"ORDER BY hits.hit_group, hits.hit_rank, {RECENCY_ORDER}"
        )
        return sql, [fts_query, like, fts_query] + params

    async def search_paginated(
        self,
        query: str,
        filter_types: Optional[Sequence[str]] = None,
        limit: int = 50,
        offset: int = 0,
        favorites_only: bool = False,
        pinned_only: bool = False,
    ) -> List[Clip]:
        """Keyword search over the shadow index, ranked, same paging contract."""
        if not query or not query.strip():
            return await self.get_recent_paginated(
                limit, offset, favorites_only, pinned_only, filter_types
            )

        await self._ensure_initialized()
        with self._guard("Search") as conn:
            sql, params = self._keyword_sql(
                conn, query, CLIP_FIELDS, filter_types, favorites_only, pinned_only
            )
            rows = conn.execute(
                sql + " LIMIT ? OFFSET ?", params + [int(limit), int(offset)]
            ).fetchall()
        return [Clip.from_row(row) for row in rows]

    async def search_ids(
        self,
        query: str,
        filter_types: Optional[Sequence[str]] = None,
        limit: int = 500,
        favorites_only: bool = False,
        pinned_only: bool = False,
    ) -> List[str]:
        """Keyword-ranked clip ids, best first."""
        if not query or not query.strip():
            return []

        await self._ensure_initialized()
        with self._guard("Search ids") as conn:
            sql, params = self._keyword_sql(
                conn, query, "clips.id", filter_types, favorites_only, pinned_only
            )
            rows = conn.execute(sql + " LIMIT ?", params + [int(limit)]).fetchall()
        return [row["id"] for row in rows]

    async def _update_one(self, action: str, sql: str, params: Sequence[Any], clip_id: str):
        await self._ensure_initialized()
        with self._guard(action) as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                raise NotFoundError(f"Clip not found: {clip_id}")

    async def touch(self, clip_id: str):
        """Bump updated_at so the clip sorts first."""
        await self._update_one(
            "Touch clip", "UPDATE clips SET updated_at = ? WHERE id = ?", (_now(), clip_id), clip_id
        )

    async def increment_access(self, clip_id: str):
        await self._update_one(
            "Increment access",
            "UPDATE clips SET access_count = access_count + 1 WHERE id = ?",
            (clip_id,),
            clip_id,
        )

    async def update_clip_text(self, clip_id: str, text: str) -> Clip:
        """Replace content_text. Any stored embedding becomes stale."""
        await self._update_one(
            "Update clip text",
            "UPDATE clips SET content_text = ?, content_hash = ?, updated_at = ? WHERE id = ?",
            (text, Clip.compute_hash(text), _now(), clip_id),
            clip_id,
        )
        return await self.get_clip(clip_id)

    async def delete_clip(self, clip_id: str):
        """Delete a clip; junction rows and its embedding cascade."""
        await self._update_one(
            "Delete clip", "DELETE FROM clips WHERE id = ?", (clip_id,), clip_id
        )
        logger.debug(f"Deleted clip {clip_id}")

    async def clear_all(self) -> int:
        await self._ensure_initialized()
        with self._guard("Clear clips") as conn:
            removed = conn.execute("DELETE FROM clips").rowcount
        logger.info(f"Cleared {removed} clips")
        return removed

    async def _toggle(self, clip_id: str, column: str) -> bool:
        if column not in TOGGLE_COLUMNS:
            raise ValueError(f"Not a toggle column: {column}")
        await self._ensure_initialized()

        with self._guard(f"Toggle {column}") as conn:
            row = conn.execute(f"SELECT {column} FROM clips WHERE id = ?", (clip_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Clip not found: {clip_id}")
            new_value = 0 if row[column] else 1
            conn.execute(f"UPDATE clips SET {column} = ? WHERE id = ?", (new_value, clip_id))
        return new_value == 1

    async def toggle_favorite(self, clip_id: str) -> bool:
        return await self._toggle(clip_id, "is_favorite")

    async def toggle_pin(self, clip_id: str) -> bool:
        return await self._toggle(clip_id, "is_pinned")

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def create_tag(self, name: str, color: Optional[str] = None) -> Tag:
        await self._ensure_initialized()
        now = _now()
        with self._guard("Create tag") as conn:
            cursor = conn.execute(
                "INSERT INTO tags (name, color, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (name, color, now, now),
            )
        return Tag(id=cursor.lastrowid, name=name, color=color, created_at=now, updated_at=now)

    async def get_all_tags(self) -> List[Tag]:
        await self._ensure_initialized()
        with self._guard("List tags") as conn:
            rows = conn.execute("SELECT * FROM tags ORDER BY name").fetchall()
        return [Tag.model_validate(dict(row)) for row in rows]

    async def delete_tag(self, tag_id: int):
        """Delete a tag; only its clip_tags rows go with it."""
        await self._ensure_initialized()
        with self._guard("Delete tag") as conn:
            if conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,)).rowcount == 0:
                raise NotFoundError(f"Tag not found: {tag_id}")

    async def add_tag_to_clip(self, clip_id: str, tag_id: int):
        await self._ensure_initialized()
        with self._guard("Tag clip") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO clip_tags (clip_id, tag_id, created_at) VALUES (?, ?, ?)",
                (clip_id, tag_id, _now()),
            )

    async def remove_tag_from_clip(self, clip_id: str, tag_id: int):
        await self._ensure_initialized()
        with self._guard("Untag clip") as conn:
            conn.execute(
                "DELETE FROM clip_tags WHERE clip_id = ? AND tag_id = ?", (clip_id, tag_id)
            )

    async def get_tags_for_clip(self, clip_id: str) -> List[Tag]:
        await self._ensure_initialized()
        with self._guard("Tags for clip") as conn:
            rows = conn.execute(
                """
                SELECT t.* FROM tags t
                INNER JOIN clip_tags ct ON t.id = ct.tag_id
                WHERE ct.clip_id = ?
                ORDER BY t.name
                """,
                (clip_id,),
            ).fetchall()
        return [Tag.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def create_collection(
        self, name: str, icon: Optional[str] = None, description: Optional[str] = None
    ) -> Collection:
        await self._ensure_initialized()
        now = _now()
        with self._guard("Create collection") as conn:
            cursor = conn.execute(
                "INSERT INTO collections (name, icon, description, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (name, icon, description, now, now),
            )
        return Collection(
            id=cursor.lastrowid,
            name=name,
            icon=icon,
            description=description,
            created_at=now,
            updated_at=now,
        )

    async def get_all_collections(self) -> List[Collection]:
        await self._ensure_initialized()
        with self._guard("List collections") as conn:
            rows = conn.execute("SELECT * FROM collections ORDER BY name").fetchall()
        return [Collection.model_validate(dict(row)) for row in rows]

    async def delete_collection(self, collection_id: int):
        """Delete a collection; member clips stay."""
        await self._ensure_initialized()
        with self._guard("Delete collection") as conn:
            cursor = conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Collection not found: {collection_id}")

    async def add_clip_to_collection(self, clip_id: str, collection_id: int):
        await self._ensure_initialized()
        with self._guard("Add to collection") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO clip_collections (clip_id, collection_id, added_at) "
                "VALUES (?, ?, ?)",
                (clip_id, collection_id, _now()),
            )

    async def remove_clip_from_collection(self, clip_id: str, collection_id: int):
        await self._ensure_initialized()
        with self._guard("Remove from collection") as conn:
            conn.execute(
                "DELETE FROM clip_collections WHERE clip_id = ? AND collection_id = ?",
                (clip_id, collection_id),
            )

    async def get_collections_for_clip(self, clip_id: str) -> List[Collection]:
        await self._ensure_initialized()
        with self._guard("Collections for clip") as conn:
            rows = conn.execute(
                """
                SELECT c.* FROM collections c
                INNER JOIN clip_collections cc ON c.id = cc.collection_id
                WHERE cc.clip_id = ?
                ORDER BY c.name
                """,
                (clip_id,),
            ).fetchall()
        return [Collection.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    @staticmethod
    def _embedding_from_row(row: sqlite3.Row) -> Embedding:
        return Embedding(
            id=row["id"],
            clip_id=row["clip_id"],
            vector=blob_to_vector(row["vector"]),
            model=row["model"],
            dimensions=row["dimensions"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def upsert_embedding(
        self, clip_id: str, vector: Sequence[float], model: str
    ) -> Embedding:
        """Store (or replace) the single embedding of a clip."""
        await self._ensure_initialized()
        if not len(vector):
            raise ValueError("Cannot store an empty embedding vector")

        now = _now()
        with self._guard("Store embedding") as conn:
            exists = conn.execute("SELECT 1 FROM clips WHERE id = ?", (clip_id,)).fetchone()
            if exists is None:
                raise NotFoundError(f"Clip not found: {clip_id}")
            conn.execute(
                """
                INSERT INTO embeddings (clip_id, vector, model, dimensions, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(clip_id) DO UPDATE SET
                    vector = excluded.vector,
                    model = excluded.model,
                    dimensions = excluded.dimensions,
                    updated_at = excluded.updated_at
                """,
                (clip_id, vector_to_blob(vector), model, len(vector), now, now),
            )
        return await self.get_embedding(clip_id)

    async def get_embedding(self, clip_id: str) -> Optional[Embedding]:
        await self._ensure_initialized()
        with self._guard("Get embedding") as conn:
            row = conn.execute("SELECT * FROM embeddings WHERE clip_id = ?", (clip_id,)).fetchone()
        return self._embedding_from_row(row) if row else None

    async def get_embeddings_with_filters(
        self,
        filter_types: Optional[Sequence[str]] = None,
        favorites_only: bool = False,
        pinned_only: bool = False,
    ) -> List[Embedding]:
        await self._ensure_initialized()
        where, params = self._filters(filter_types, favorites_only, pinned_only)
        with self._guard("List embeddings") as conn:
            rows = conn.execute(
                "SELECT e.* FROM embeddings e INNER JOIN clips ON e.clip_id = clips.id "
                f"WHERE 1=1{where}",
                params,
            ).fetchall()
        return [self._embedding_from_row(row) for row in rows]

    async def delete_embedding(self, clip_id: str):
        await self._ensure_initialized()
        with self._guard("Delete embedding") as conn:
            conn.execute("DELETE FROM embeddings WHERE clip_id = ?", (clip_id,))

    async def list_stale_embeddings(self) -> List[str]:
        """Ids of clips changed after their embedding was computed."""
        await self._ensure_initialized()
        with self._guard("List stale embeddings") as conn:
            rows = conn.execute(
                "SELECT e.clip_id FROM embeddings e INNER JOIN clips c ON e.clip_id = c.id "
                "WHERE e.updated_at < c.updated_at ORDER BY c.updated_at DESC"
            ).fetchall()
        return [row["clip_id"] for row in rows]

    # ------------------------------------------------------------------
    # Shadow index maintenance
    # ------------------------------------------------------------------

    async def reindex(self) -> int:
        """Rebuild clips_fts from the clips table. Returns rows indexed."""
        await self._ensure_initialized()
        with self._guard("Reindex") as conn:
            conn.execute("INSERT INTO clips_fts(clips_fts) VALUES('rebuild')")
            count = conn.execute("SELECT COUNT(*) FROM clips").fetchone()[0]
        logger.info(f"Rebuilt search index over {count} clips")
        return count

    async def check_index(self) -> Dict[str, int]:
        """Compare indexed rows with clip rows; raise ConsistencyError on drift."""
        await self._ensure_initialized()
        with self._guard("Check index") as conn:
            clips = conn.execute("SELECT COUNT(*) FROM clips").fetchone()[0]
            indexed = conn.execute("SELECT COUNT(*) FROM clips_fts_docsize").fetchone()[0]
            missing = conn.execute(
                "SELECT COUNT(*) FROM clips WHERE rowid NOT IN (SELECT id FROM clips_fts_docsize)"
            ).fetchone()[0]
            orphaned = conn.execute(
                "SELECT COUNT(*) FROM clips_fts_docsize WHERE id NOT IN (SELECT rowid FROM clips)"
            ).fetchone()[0]

        if missing or orphaned:
            logger.warning(f"Search index drift: {missing} missing, {orphaned} orphaned")
            raise ConsistencyError(
                f"Search index out of sync ({missing} missing, {orphaned} orphaned); run reindex"
            )
        return {"clips": clips, "indexed": indexed}

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about stored clips."""
        await self._ensure_initialized()

        with self._guard("Stats") as conn:
            rows = conn.execute(
                "SELECT content_type, detected_type, is_pinned, is_favorite, access_count, "
                "LENGTH(content_text) AS text_length, created_at, updated_at FROM clips"
            ).fetchall()
            embedded = conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

        stale = await self.list_stale_embeddings()
        df = pd.DataFrame([dict(row) for row in rows])

        if len(df) == 0:
            return {
                "total_clips": 0,
                "pinned_clips": 0,
                "favorite_clips": 0,
                "embedded_clips": embedded,
                "stale_embeddings": len(stale),
                "avg_text_length": 0,
                "by_content_type": {},
                "by_detected_type": {},
                "storage_path": self.db_path,
            }

        avg_length = df["text_length"].mean()
        return {
            "total_clips": int(len(df)),
            "pinned_clips": int(df["is_pinned"].fillna(0).astype(int).sum()),
            "favorite_clips": int(df["is_favorite"].fillna(0).astype(int).sum()),
            "embedded_clips": embedded,
            "stale_embeddings": len(stale),
            "total_accesses": int(df["access_count"].fillna(0).sum()),
            "avg_text_length": round(float(avg_length), 1) if pd.notna(avg_length) else 0,
            "by_content_type": {k: int(v) for k, v in df["content_type"].value_counts().items()},
            "by_detected_type": {k: int(v) for k, v in df["detected_type"].value_counts().items()},
            "storage_path": self.db_path,
            "oldest_clip": int(df["created_at"].min()),
            "newest_clip": int(df["updated_at"].max()),
        }
