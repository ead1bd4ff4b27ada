"""SQLite schema for clip history: tables, indexes and FTS5 sync triggers."""

# Columns added after the first schema release. Older databases get them via
# ALTER TABLE on open.
CLIP_COLUMN_MIGRATIONS = {
    "svg_path": "TEXT",
    "pdf_path": "TEXT",
    "attachment_path": "TEXT",
    "attachment_type": "TEXT",
    "detected_type": "TEXT NOT NULL DEFAULT 'text'",
}

CLIP_COLUMNS = (
    "id",
    "content_type",
    "content_text",
    "content_html",
    "content_rtf",
    "svg_path",
    "pdf_path",
    "image_path",
    "attachment_path",
    "attachment_type",
    "file_paths",
    "detected_type",
    "metadata",
    "app_name",
    "is_pinned",
    "is_favorite",
    "access_count",
    "content_hash",
    "created_at",
    "updated_at",
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS clips (
    id TEXT PRIMARY KEY NOT NULL,
    content_type TEXT NOT NULL,
    content_text TEXT,
    content_html TEXT,
    content_rtf TEXT,
    svg_path TEXT,
    pdf_path TEXT,
    image_path TEXT,
    attachment_path TEXT,
    attachment_type TEXT,
    file_paths TEXT,
    detected_type TEXT NOT NULL DEFAULT 'text',
    metadata TEXT,
    app_name TEXT,
    is_pinned INTEGER DEFAULT 0,
    is_favorite INTEGER DEFAULT 0,
    access_count INTEGER DEFAULT 0,
    content_hash TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    color TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS clip_tags (
    clip_id TEXT NOT NULL,
    tag_id INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (clip_id, tag_id),
    FOREIGN KEY (clip_id) REFERENCES clips(id) ON DELETE CASCADE,
    FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS collections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    icon TEXT,
    description TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS clip_collections (
    clip_id TEXT NOT NULL,
    collection_id INTEGER NOT NULL,
    added_at INTEGER NOT NULL,
    PRIMARY KEY (clip_id, collection_id),
    FOREIGN KEY (clip_id) REFERENCES clips(id) ON DELETE CASCADE,
    FOREIGN KEY (collection_id) REFERENCES collections(id) ON DELETE CASCADE
);

-- One embedding per clip; stale once clips.updated_at moves past updated_at
CREATE TABLE IF NOT EXISTS embeddings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    clip_id TEXT NOT NULL UNIQUE,
    vector BLOB NOT NULL,
    model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY (clip_id) REFERENCES clips(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_clips_created_at ON clips(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_clips_updated_at ON clips(updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_clips_content_type ON clips(content_type);
CREATE INDEX IF NOT EXISTS idx_clips_pinned ON clips(is_pinned DESC, updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_clips_favorite ON clips(is_favorite DESC, updated_at DESC);

-- Duplicate lookup only, deliberately not UNIQUE
CREATE INDEX IF NOT EXISTS idx_clips_hash ON clips(content_hash);
CREATE INDEX IF NOT EXISTS idx_clips_access ON clips(access_count DESC);

CREATE INDEX IF NOT EXISTS idx_tags_name ON tags(name);
CREATE INDEX IF NOT EXISTS idx_clip_tags_clip ON clip_tags(clip_id);
CREATE INDEX IF NOT EXISTS idx_clip_tags_tag ON clip_tags(tag_id);
CREATE INDEX IF NOT EXISTS idx_clip_collections_clip ON clip_collections(clip_id);
CREATE INDEX IF NOT EXISTS idx_clip_collections_collection ON clip_collections(collection_id);
CREATE INDEX IF NOT EXISTS idx_collections_name ON collections(name);
CREATE INDEX IF NOT EXISTS idx_embeddings_clip ON embeddings(clip_id);
CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model);

CREATE VIRTUAL TABLE IF NOT EXISTS clips_fts USING fts5(
    id UNINDEXED,
    content_text,
    content=clips,
    content_rowid=rowid
);

-- These triggers are the only thing keeping clips_fts in sync with clips.
-- Writes that bypass them need reindex().
CREATE TRIGGER IF NOT EXISTS clips_fts_insert AFTER INSERT ON clips BEGIN
    INSERT INTO clips_fts(rowid, id, content_text)
    VALUES (new.rowid, new.id, new.content_text);
END;

CREATE TRIGGER IF NOT EXISTS clips_fts_delete AFTER DELETE ON clips BEGIN
    INSERT INTO clips_fts(clips_fts, rowid, id, content_text)
    VALUES ('delete', old.rowid, old.id, old.content_text);
END;

CREATE TRIGGER IF NOT EXISTS clips_fts_update AFTER UPDATE ON clips BEGIN
    INSERT INTO clips_fts(clips_fts, rowid, id, content_text)
    VALUES ('delete', old.rowid, old.id, old.content_text);
    INSERT INTO clips_fts(rowid, id, content_text)
    VALUES (new.rowid, new.id, new.content_text);
END;
"""

# Indexes on columns that older databases only gain through migration.
POST_MIGRATION_SQL = """
CREATE INDEX IF NOT EXISTS idx_clips_detected_type ON clips(detected_type);
"""
