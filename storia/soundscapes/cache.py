# soundscapes/cache.py
import logging
import re
from dataclasses import dataclass
from typing import Optional

from storia.soundscapes.assets import AssetStorage
from storia.soundscapes.models import AssetReference
from storia.storage.models import SceneDescriptors, StoredSoundscape
from storia.storage.repository import Repository

logger = logging.getLogger(__name__)

_VALID_URL_PREFIXES = ("http://", "https://", "file://")
_WHITESPACE_RE      = re.compile(r"\s+")


def fingerprint(descriptors: SceneDescriptors) -> str:
    """
    Clave canónica "setting|mood|intensity" en minúsculas.
    weather y time_of_day no discriminan: dos escenas que solo
    difieren en eso comparten audio.
    Sin setting ni mood no hay nada que cachear → "".
    """
    setting = _normalize(descriptors.setting)
    mood    = _normalize(descriptors.mood)
    if not setting and not mood:
        return ""
    return f"{setting}|{mood}|{_normalize(descriptors.activity_level)}"


@dataclass
class CacheStats:
    total_soundscapes: int
    unique_cache_keys: int
    total_scenes:      int
    average_per_key:   float


class SoundscapeCache:
    """
    Lookup direccionado por contenido sobre los Soundscapes persistidos.
    Un hit devuelve el Soundscape más reciente con ese fingerprint,
    sea del libro que sea. Sin expiración: solo se borra por acción de admin.

    No hay lock distribuido: dos escenas iguales procesadas a la vez
    pueden fallar las dos y generar dos veces. Se acepta.
    """

    def __init__(self, repo: Repository, storage: Optional[AssetStorage] = None):
        self._repo    = repo
        self._storage = storage

    def find(self, key: str) -> Optional[AssetReference]:
        soundscape = self._repo.find_latest_soundscape_by_fingerprint(key)
        if soundscape is None:
            logger.info("Cache miss: %r", key)
            return None
        logger.info("Cache hit: %r → %s", key, soundscape.audio_url)
        return to_asset_reference(soundscape)

    def stats(self) -> CacheStats:
        counts = self._repo.cache_counts()
        unique = counts["unique_cache_keys"]
        total  = counts["total_soundscapes"]
        return CacheStats(
            total_soundscapes = total,
            unique_cache_keys = unique,
            total_scenes      = counts["total_scenes"],
            average_per_key   = round(total / unique, 2) if unique else 0.0,
        )

    def clear_book(self, book_id: int) -> int:
        """
        Borra los Soundscapes de un libro. El asset de storage solo se
        borra si ningún otro Soundscape (de este u otro libro) lo usa.
        Devuelve cuántos Soundscapes se borraron.
        """
        soundscapes = self._repo.get_soundscapes_for_book(book_id)
        for scene_id, soundscape in soundscapes.items():
            self._repo.delete_soundscape(scene_id)
            self.release_asset(soundscape.audio_url)

        logger.info("Cache del libro %d limpiada: %d soundscapes", book_id, len(soundscapes))
        return len(soundscapes)

    def release_asset(self, audio_url: str) -> bool:
        """Borra el asset si ya nadie lo referencia y es nuestro."""
        if self._storage is None or self._repo.count_soundscapes_with_url(audio_url) > 0:
            return False
        key = self._storage.key_for_url(audio_url)
        if key is None:
            return False
        self._storage.delete(key)
        return True

    def validate_integrity(self) -> list[int]:
        """Ids de Soundscapes cuya URL está vacía o no es navegable."""
        invalid = [
            s.id for s in self._repo.list_soundscapes()
            if not s.audio_url or not s.audio_url.startswith(_VALID_URL_PREFIXES)
        ]
        if invalid:
            logger.warning("Soundscapes con URL inválida: %s", invalid)
        return invalid


def to_asset_reference(soundscape: StoredSoundscape) -> AssetReference:
    return AssetReference(
        url               = soundscape.audio_url,
        duration_seconds  = soundscape.duration_seconds,
        source_type       = soundscape.source_type,
        generation_prompt = soundscape.generation_prompt,
        confidence        = soundscape.confidence,
        job_reference     = soundscape.job_reference,
        tags              = soundscape.tags,
    )


def _normalize(value: Optional[str]) -> str:
    return _WHITESPACE_RE.sub(" ", (value or "").strip().lower())
