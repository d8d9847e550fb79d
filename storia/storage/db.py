# storage/db.py
import sqlite3
import os
from pathlib import Path


_DEFAULT_DB_PATH = Path.home() / ".storia" / "storia.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    title            TEXT    NOT NULL,
    file_hash        TEXT    NOT NULL UNIQUE,
    source_path      TEXT,
    status           TEXT    NOT NULL DEFAULT 'pending'
                     CHECK (status IN ('pending', 'extracting', 'analyzing', 'segmenting',
                                       'generating', 'ready_for_review', 'published', 'failed')),
    total_pages      INTEGER NOT NULL DEFAULT 0,
    processing_error TEXT,
    processing_cost  REAL    NOT NULL DEFAULT 0,
    created_at       TEXT    NOT NULL,
    updated_at       TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS scenes (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id           INTEGER NOT NULL,
    scene_number      INTEGER NOT NULL,
    start_page        INTEGER NOT NULL,
    end_page          INTEGER NOT NULL,
    page_spread_index INTEGER NOT NULL,
    descriptors_json  TEXT    NOT NULL DEFAULT '{}',
    audio_prompt      TEXT    NOT NULL DEFAULT '',
    fingerprint       TEXT    NOT NULL DEFAULT '',
    needs_curation    INTEGER NOT NULL DEFAULT 0,
    curation_reason   TEXT,
    created_at        TEXT    NOT NULL,
    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
    UNIQUE (book_id, scene_number),
    CHECK (start_page <= end_page)
);

CREATE INDEX IF NOT EXISTS idx_scenes_fingerprint ON scenes (fingerprint);

CREATE TABLE IF NOT EXISTS pages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id     INTEGER NOT NULL,
    page_number INTEGER NOT NULL CHECK (page_number >= 1),
    content     TEXT    NOT NULL,
    scene_id    INTEGER,
    FOREIGN KEY (book_id)  REFERENCES books(id)  ON DELETE CASCADE,
    FOREIGN KEY (scene_id) REFERENCES scenes(id) ON DELETE SET NULL,
    UNIQUE (book_id, page_number)
);

CREATE TABLE IF NOT EXISTS soundscapes (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    scene_id          INTEGER NOT NULL UNIQUE,
    audio_url         TEXT    NOT NULL,
    duration_seconds  INTEGER NOT NULL DEFAULT 30
                      CHECK (duration_seconds BETWEEN 30 AND 60),
    source_type       TEXT    NOT NULL CHECK (source_type IN ('curated', 'generated')),
    generation_prompt TEXT,
    confidence        REAL    CHECK (confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
    job_reference     TEXT,
    tags_json         TEXT    NOT NULL DEFAULT '{}',
    created_at        TEXT    NOT NULL,
    FOREIGN KEY (scene_id) REFERENCES scenes(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS reading_progress (
    user_id      TEXT    NOT NULL,
    book_id      INTEGER NOT NULL,
    current_page INTEGER NOT NULL CHECK (current_page >= 1),
    updated_at   TEXT    NOT NULL,
    PRIMARY KEY (user_id, book_id),
    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS quota_usage (
    model       TEXT    NOT NULL,
    date        TEXT    NOT NULL,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (model, date)
);
"""


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """
    Abre y configura la conexión a SQLite.
    Siempre devuelve rows como dicts (row_factory).
    Activa foreign keys: SQLite las tiene desactivadas por defecto
    y los borrados en cascada dependen de ellas.
    La conexión se comparte entre workers; el Repository serializa el acceso.
    """
    path = db_path or os.environ.get("STORIA_DB_PATH") or str(_DEFAULT_DB_PATH)

    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")   # mejor performance en lecturas concurrentes
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Crea las tablas si no existen. Idempotente."""
    with conn:
        conn.executescript(_SCHEMA)
