# soundscapes/curation.py
import logging
import uuid
from pathlib import Path
from typing import Optional

from storia.errors import ResourceNotFoundError
from storia.soundscapes.assets import AssetStorage, asset_key
from storia.soundscapes.cache import SoundscapeCache
from storia.storage.models import SoundscapeTags, SourceType, StoredSoundscape
from storia.storage.repository import Repository

logger = logging.getLogger(__name__)


class SoundscapeCurator:
    """
    Overrides manuales de admin. Nunca se edita un Soundscape en sitio:
    se borra el anterior y se crea uno nuevo. El asset anterior se libera
    solo si ya no lo usa nadie.
    """

    def __init__(self, repo: Repository, storage: AssetStorage, cache: SoundscapeCache):
        self._repo    = repo
        self._storage = storage
        self._cache   = cache

    def curate_scene(
        self,
        scene_id:         int,
        audio_path:       str | Path,
        duration_seconds: int            = 30,
        tags:             Optional[dict] = None,
        confidence:       float          = 1.0,
    ) -> StoredSoundscape:
        """Sube un audio local y lo asigna. Nunca pisa un asset que usan otras escenas."""
        self._repo.require_scene(scene_id)
        parsed_tags = SoundscapeTags.from_dict(tags)   # ValidationError con claves desconocidas

        path = Path(audio_path)
        if not path.is_file():
            raise ResourceNotFoundError(f"Archivo de audio no encontrado: {path}")

        extension = path.suffix.lstrip(".") or "mp3"
        url = self._storage.put(path.read_bytes(), self._curated_key(scene_id, extension))

        return self._replace(
            scene_id,
            audio_url         = url,
            duration_seconds  = duration_seconds,
            source_type       = SourceType.CURATED,
            confidence        = confidence,
            tags              = parsed_tags,
        )

    def _curated_key(self, scene_id: int, extension: str) -> str:
        """audio/curated/{scene_id}.{ext}, o una clave nueva si otra escena comparte ese asset."""
        key     = asset_key(SourceType.CURATED, scene_id, extension)
        url     = self._storage.url_for(key)
        current = self._repo.get_soundscape_for_scene(scene_id)
        own     = 1 if current is not None and current.audio_url == url else 0
        if self._repo.count_soundscapes_with_url(url) - own > 0:
            key = asset_key(SourceType.CURATED, f"{scene_id}-{uuid.uuid4().hex[:8]}", extension)
            logger.info("Asset curado de la escena %d compartido; se sube como %s", scene_id, key)
        return key

    def assign_from(self, scene_id: int, source_scene_id: int) -> StoredSoundscape:
        """Reutiliza el Soundscape de otra escena (de cualquier libro)."""
        self._repo.require_scene(scene_id)
        source = self._repo.get_soundscape_for_scene(source_scene_id)
        if source is None:
            raise ResourceNotFoundError(f"La escena {source_scene_id} no tiene Soundscape")

        return self._replace(
            scene_id,
            audio_url         = source.audio_url,
            duration_seconds  = source.duration_seconds,
            source_type       = source.source_type,
            generation_prompt = source.generation_prompt,
            confidence        = source.confidence,
            job_reference     = source.job_reference,
            tags              = source.tags,
        )

    def _replace(self, scene_id: int, **fields) -> StoredSoundscape:
        previous   = self._repo.get_soundscape_for_scene(scene_id)
        soundscape = self._repo.replace_soundscape(scene_id, **fields)

        if previous is not None and previous.audio_url != soundscape.audio_url:
            if self._cache.release_asset(previous.audio_url):
                logger.info("Asset anterior de la escena %d liberado", scene_id)

        logger.info(
            "Escena %d: Soundscape %s asignado (%s)",
            scene_id, soundscape.id, soundscape.source_type.value,
        )
        return soundscape
