# storage/repository.py
import json
import logging
import sqlite3
import threading
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from storia.errors import ResourceNotFoundError, ValidationError
from storia.storage.db import get_connection, init_schema
from storia.storage.models import (
    BookStatus,
    ReadingProgress,
    SceneDescriptors,
    SoundscapeTags,
    SourceType,
    StoredBook,
    StoredPage,
    StoredScene,
    StoredSoundscape,
)

logger = logging.getLogger(__name__)

MIN_DURATION = 30
MAX_DURATION = 60


class Repository:
    """
    Única interfaz entre el resto de la aplicación y SQLite.
    Recibe un db_path para facilitar el testing con :memory:.

    Los workers del pipeline comparten la misma conexión; todo acceso
    pasa por un RLock, de modo que una lectura del estado de un libro
    nunca observa una transición a medias.
    """

    def __init__(self, db_path: str | None = None):
        self._conn = get_connection(db_path)
        self._lock = threading.RLock()
        init_schema(self._conn)

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def create_book(
        self,
        title:       str,
        file_hash:   str,
        source_path: str | None = None,
    ) -> int:
        """
        Inserta un libro nuevo en estado pending y devuelve su id.
        Si el hash ya existe lanza IntegrityError: el caller decide qué hacer.
        """
        now = _now()
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO books (title, file_hash, source_path, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (title, file_hash, source_path, BookStatus.PENDING.value, now, now),
            )
        return cursor.lastrowid  # type: ignore[return-value]

    def get_book_by_hash(self, file_hash: str) -> StoredBook | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM books WHERE file_hash = ?", (file_hash,)
            ).fetchone()
        return self._row_to_book(row) if row else None

    def get_book_by_id(self, book_id: int) -> StoredBook | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM books WHERE id = ?", (book_id,)
            ).fetchone()
        return self._row_to_book(row) if row else None

    def require_book(self, book_id: int) -> StoredBook:
        book = self.get_book_by_id(book_id)
        if book is None:
            raise ResourceNotFoundError(f"Libro inexistente: book_id={book_id}")
        return book

    def list_books(self) -> list[StoredBook]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM books ORDER BY id ASC").fetchall()
        return [self._row_to_book(r) for r in rows]

    def transition_status(
        self,
        book_id:  int,
        new:      BookStatus,
        expected: Optional[Iterable[BookStatus]] = None,
        error:    str | None = None,
    ) -> bool:
        """
        Compare-and-set del estado del libro.
        Si expected viene, solo aplica cuando el estado actual está en él.
        Devuelve True si el cambio se aplicó.
        """
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT status FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if row is None:
                raise ResourceNotFoundError(f"Libro inexistente: book_id={book_id}")

            current = BookStatus(row["status"])
            if expected is not None and current not in set(expected):
                logger.debug(
                    "Transición %s → %s rechazada para book_id=%d",
                    current.value, new.value, book_id,
                )
                return False

            self._conn.execute(
                """
                UPDATE books SET status = ?, processing_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (new.value, error, _now(), book_id),
            )
        return True

    def set_total_pages(self, book_id: int, total_pages: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE books SET total_pages = ?, updated_at = ? WHERE id = ?",
                (total_pages, _now(), book_id),
            )

    def add_processing_cost(self, book_id: int, amount: float) -> None:
        if amount <= 0:
            return
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE books SET processing_cost = processing_cost + ?, updated_at = ?
                WHERE id = ?
                """,
                (amount, _now(), book_id),
            )

    def delete_book(self, book_id: int) -> None:
        """Borra el libro; pages, scenes, soundscapes y progreso caen en cascada."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM books WHERE id = ?", (book_id,))

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def save_pages(self, book_id: int, pages: list[tuple[int, str]]) -> None:
        """
        Bulk insert de páginas. Usa INSERT OR IGNORE para ser idempotente:
        si el proceso se interrumpe y se relanza, no explota por el UNIQUE.
        """
        rows = [(book_id, number, content) for number, content in pages]
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT OR IGNORE INTO pages (book_id, page_number, content)
                VALUES (?, ?, ?)
                """,
                rows,
            )

    def get_pages(self, book_id: int) -> list[StoredPage]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pages WHERE book_id = ? ORDER BY page_number ASC",
                (book_id,),
            ).fetchall()
        return [self._row_to_page(r) for r in rows]

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    def sync_scenes(self, book_id: int, drafts: list) -> list[StoredScene]:
        """
        Sustituye la partición del libro por la nueva en una sola transacción.

        Las escenas idénticas a las ya guardadas conservan su fila (y por
        tanto su Soundscape); el resto se borra y se recrea. Al final cada
        página queda apuntando a la escena que la cubre.
        """
        _assert_non_overlapping(drafts)

        with self._lock, self._conn:
            existing = {
                row["scene_number"]: row
                for row in self._conn.execute(
                    "SELECT * FROM scenes WHERE book_id = ?", (book_id,)
                ).fetchall()
            }

            kept_ids = set()
            to_insert = []
            for draft in drafts:
                row = existing.get(draft.scene_number)
                if row is not None and _same_scene(row, draft):
                    kept_ids.add(row["id"])
                else:
                    to_insert.append(draft)

            stale = [row["id"] for row in existing.values() if row["id"] not in kept_ids]
            if stale:
                self._conn.executemany(
                    "DELETE FROM scenes WHERE id = ?", [(scene_id,) for scene_id in stale]
                )
                logger.debug("book_id=%d: %d escenas obsoletas borradas", book_id, len(stale))

            now = _now()
            self._conn.executemany(
                """
                INSERT INTO scenes
                    (book_id, scene_number, start_page, end_page, page_spread_index,
                     descriptors_json, audio_prompt, fingerprint, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        book_id,
                        d.scene_number,
                        d.start_page,
                        d.end_page,
                        d.page_spread_index,
                        _descriptors_json(d.descriptors),
                        d.audio_prompt,
                        d.fingerprint,
                        now,
                    )
                    for d in to_insert
                ],
            )

            self._conn.execute(
                """
                UPDATE pages SET scene_id = (
                    SELECT s.id FROM scenes s
                    WHERE s.book_id = pages.book_id
                      AND pages.page_number BETWEEN s.start_page AND s.end_page
                )
                WHERE book_id = ?
                """,
                (book_id,),
            )

        return self.get_scenes(book_id)

    def get_scenes(self, book_id: int) -> list[StoredScene]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM scenes WHERE book_id = ? ORDER BY scene_number ASC",
                (book_id,),
            ).fetchall()
        return [self._row_to_scene(r) for r in rows]

    def get_scene(self, scene_id: int) -> StoredScene | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM scenes WHERE id = ?", (scene_id,)
            ).fetchone()
        return self._row_to_scene(row) if row else None

    def require_scene(self, scene_id: int) -> StoredScene:
        scene = self.get_scene(scene_id)
        if scene is None:
            raise ResourceNotFoundError(f"Escena inexistente: scene_id={scene_id}")
        return scene

    def flag_scene_for_curation(self, scene_id: int, reason: str) -> None:
        """La escena queda sin audio y visible en la revisión de admin."""
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE scenes SET needs_curation = 1, curation_reason = ? WHERE id = ?",
                (reason, scene_id),
            )

    # ------------------------------------------------------------------
    # Soundscapes
    # ------------------------------------------------------------------

    def replace_soundscape(
        self,
        scene_id:          int,
        audio_url:         str,
        duration_seconds:  int                      = MIN_DURATION,
        source_type:       SourceType               = SourceType.GENERATED,
        generation_prompt: str | None               = None,
        confidence:        float | None             = None,
        job_reference:     str | None               = None,
        tags:              SoundscapeTags | None    = None,
    ) -> StoredSoundscape:
        """
        Asigna el Soundscape de la escena. Nunca se modifica en sitio:
        borra el anterior (si lo hay) e inserta el nuevo en una transacción.
        """
        _validate_soundscape(audio_url, duration_seconds, confidence)
        tags = tags or SoundscapeTags()

        with self._lock, self._conn:
            exists = self._conn.execute(
                "SELECT 1 FROM scenes WHERE id = ?", (scene_id,)
            ).fetchone()
            if not exists:
                raise ResourceNotFoundError(f"Escena inexistente: scene_id={scene_id}")

            self._conn.execute("DELETE FROM soundscapes WHERE scene_id = ?", (scene_id,))
            self._conn.execute(
                """
                INSERT INTO soundscapes
                    (scene_id, audio_url, duration_seconds, source_type, generation_prompt,
                     confidence, job_reference, tags_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scene_id, audio_url, duration_seconds, source_type.value,
                    generation_prompt, confidence, job_reference,
                    json.dumps(tags.to_dict(), sort_keys=True), _now(),
                ),
            )
            self._conn.execute(
                "UPDATE scenes SET needs_curation = 0, curation_reason = NULL WHERE id = ?",
                (scene_id,),
            )

        return self.get_soundscape_for_scene(scene_id)  # type: ignore[return-value]

    def get_soundscape_for_scene(self, scene_id: int) -> StoredSoundscape | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM soundscapes WHERE scene_id = ?", (scene_id,)
            ).fetchone()
        return self._row_to_soundscape(row) if row else None

    def get_soundscapes_for_book(self, book_id: int) -> dict[int, StoredSoundscape]:
        """scene_id → Soundscape, solo escenas que tienen uno."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT ss.* FROM soundscapes ss
                JOIN scenes s ON s.id = ss.scene_id
                WHERE s.book_id = ?
                """,
                (book_id,),
            ).fetchall()
        return {row["scene_id"]: self._row_to_soundscape(row) for row in rows}

    def delete_soundscape(self, scene_id: int) -> StoredSoundscape | None:
        """Borra el Soundscape de la escena y devuelve el que había."""
        with self._lock, self._conn:
            previous = self.get_soundscape_for_scene(scene_id)
            self._conn.execute("DELETE FROM soundscapes WHERE scene_id = ?", (scene_id,))
        return previous

    def count_soundscapes_with_url(self, audio_url: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM soundscapes WHERE audio_url = ?", (audio_url,)
            ).fetchone()
        return row["n"]

    def list_soundscapes(self) -> list[StoredSoundscape]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM soundscapes ORDER BY id ASC").fetchall()
        return [self._row_to_soundscape(r) for r in rows]

    # ------------------------------------------------------------------
    # Cache por fingerprint
    # ------------------------------------------------------------------

    def find_latest_soundscape_by_fingerprint(self, fingerprint: str) -> StoredSoundscape | None:
        """El Soundscape más reciente de cualquier libro con ese fingerprint."""
        if not fingerprint:
            return None
        with self._lock:
            row = self._conn.execute(
                """
                SELECT ss.* FROM soundscapes ss
                JOIN scenes s ON s.id = ss.scene_id
                WHERE s.fingerprint = ?
                ORDER BY ss.id DESC
                LIMIT 1
                """,
                (fingerprint,),
            ).fetchone()
        return self._row_to_soundscape(row) if row else None

    def cache_counts(self) -> dict[str, int]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM soundscapes) AS total_soundscapes,
                    (SELECT COUNT(*) FROM scenes)      AS total_scenes,
                    (SELECT COUNT(DISTINCT s.fingerprint)
                       FROM soundscapes ss JOIN scenes s ON s.id = ss.scene_id
                      WHERE s.fingerprint != '')        AS unique_cache_keys
                """
            ).fetchone()
        return dict(row)

    # ------------------------------------------------------------------
    # Reading progress
    # ------------------------------------------------------------------

    def upsert_reading_progress(self, user_id: str, book_id: int, page: int) -> ReadingProgress:
        book = self.require_book(book_id)
        if page < 1 or (book.total_pages and page > book.total_pages):
            raise ValidationError(
                f"Página {page} fuera de rango para book_id={book_id} (1-{book.total_pages})"
            )

        now = _now()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO reading_progress (user_id, book_id, current_page, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id, book_id)
                DO UPDATE SET current_page = excluded.current_page,
                              updated_at   = excluded.updated_at
                """,
                (user_id, book_id, page, now),
            )
        return ReadingProgress(user_id=user_id, book_id=book_id, current_page=page, updated_at=now)

    def get_reading_progress(self, user_id: str, book_id: int) -> ReadingProgress | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM reading_progress WHERE user_id = ? AND book_id = ?",
                (user_id, book_id),
            ).fetchone()
        if not row:
            return None
        return ReadingProgress(
            user_id      = row["user_id"],
            book_id      = row["book_id"],
            current_page = row["current_page"],
            updated_at   = row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def add_token_usage(self, model: str, tokens: int) -> None:
        """
        Upsert: si ya existe el registro de hoy lo incrementa,
        si no existe lo crea.
        """
        today = date.today().isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO quota_usage (model, date, tokens_used)
                VALUES (?, ?, ?)
                ON CONFLICT (model, date)
                DO UPDATE SET tokens_used = tokens_used + excluded.tokens_used
                """,
                (model, today, tokens),
            )

    def get_token_usage_today(self, model: str) -> int:
        today = date.today().isoformat()
        with self._lock:
            row = self._conn.execute(
                "SELECT tokens_used FROM quota_usage WHERE model = ? AND date = ?",
                (model, today),
            ).fetchone()
        return row["tokens_used"] if row else 0

    # ------------------------------------------------------------------
    # Mapeo de rows a dataclasses
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_book(row: sqlite3.Row) -> StoredBook:
        return StoredBook(
            id=row["id"],
            title=row["title"],
            file_hash=row["file_hash"],
            status=BookStatus(row["status"]),
            created_at=row["created_at"],
            total_pages=row["total_pages"],
            source_path=row["source_path"],
            processing_error=row["processing_error"],
            processing_cost=row["processing_cost"],
        )

    @staticmethod
    def _row_to_page(row: sqlite3.Row) -> StoredPage:
        return StoredPage(
            id=row["id"],
            book_id=row["book_id"],
            page_number=row["page_number"],
            content=row["content"],
            scene_id=row["scene_id"],
        )

    @staticmethod
    def _row_to_scene(row: sqlite3.Row) -> StoredScene:
        return StoredScene(
            id=row["id"],
            book_id=row["book_id"],
            scene_number=row["scene_number"],
            start_page=row["start_page"],
            end_page=row["end_page"],
            page_spread_index=row["page_spread_index"],
            descriptors=SceneDescriptors.from_dict(json.loads(row["descriptors_json"] or "{}")),
            audio_prompt=row["audio_prompt"],
            fingerprint=row["fingerprint"],
            needs_curation=bool(row["needs_curation"]),
            curation_reason=row["curation_reason"],
        )

    @staticmethod
    def _row_to_soundscape(row: sqlite3.Row) -> StoredSoundscape:
        return StoredSoundscape(
            id=row["id"],
            scene_id=row["scene_id"],
            audio_url=row["audio_url"],
            duration_seconds=row["duration_seconds"],
            source_type=SourceType(row["source_type"]),
            created_at=row["created_at"],
            generation_prompt=row["generation_prompt"],
            confidence=row["confidence"],
            job_reference=row["job_reference"],
            tags=SoundscapeTags.from_dict(json.loads(row["tags_json"] or "{}")),
        )

    # ------------------------------------------------------------------
    # Cleanup (para tests)
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._conn.close()


# ------------------------------------------------------------------
# Helpers de módulo
# ------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _descriptors_json(descriptors: SceneDescriptors) -> str:
    return json.dumps(descriptors.to_dict(), sort_keys=True)


def _same_scene(row: sqlite3.Row, draft) -> bool:
    return (
        row["start_page"] == draft.start_page
        and row["end_page"] == draft.end_page
        and row["page_spread_index"] == draft.page_spread_index
        and row["descriptors_json"] == _descriptors_json(draft.descriptors)
        and row["audio_prompt"] == draft.audio_prompt
        and row["fingerprint"] == draft.fingerprint
    )


def _assert_non_overlapping(drafts: list) -> None:
    """Última barrera antes de persistir: rangos válidos y disjuntos."""
    previous_end = 0
    previous_number = 0
    for draft in sorted(drafts, key=lambda d: d.start_page):
        if draft.start_page > draft.end_page:
            raise ValidationError(
                f"Escena {draft.scene_number}: start_page {draft.start_page} > end_page {draft.end_page}"
            )
        if draft.start_page <= previous_end:
            raise ValidationError(
                f"Escena {draft.scene_number} solapa con la anterior (página {draft.start_page})"
            )
        if draft.scene_number <= previous_number:
            raise ValidationError(
                f"scene_number no estrictamente creciente en escena {draft.scene_number}"
            )
        previous_end = draft.end_page
        previous_number = draft.scene_number


def _validate_soundscape(audio_url: str, duration_seconds: int, confidence: float | None) -> None:
    if not audio_url or not audio_url.strip():
        raise ValidationError("El Soundscape necesita una URL de audio")
    if not MIN_DURATION <= duration_seconds <= MAX_DURATION:
        raise ValidationError(
            f"Duración {duration_seconds}s fuera de rango ({MIN_DURATION}-{MAX_DURATION}s)"
        )
    if confidence is not None and not 0.0 <= confidence <= 1.0:
        raise ValidationError(f"confidence {confidence} fuera de [0, 1]")
