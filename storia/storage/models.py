# storage/models.py
from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional

from storia.errors import ValidationError


class BookStatus(Enum):
    PENDING          = "pending"
    EXTRACTING       = "extracting"
    ANALYZING        = "analyzing"
    SEGMENTING       = "segmenting"
    GENERATING       = "generating"
    READY_FOR_REVIEW = "ready_for_review"
    PUBLISHED        = "published"
    FAILED           = "failed"


class SourceType(Enum):
    CURATED   = "curated"
    GENERATED = "generated"


# ------------------------------------------------------------------
# Mapas de descriptores con claves cerradas
# ------------------------------------------------------------------

class _ClosedMap:
    """
    Base para los mapas de claves fijas.
    Las claves desconocidas solo se detectan al ingerir datos externos
    (from_dict); dentro del código los campos son atributos.
    """

    @classmethod
    def from_dict(cls, data: Optional[dict]):
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{cls.__name__}: se esperaba un objeto, llegó {type(data).__name__}")

        allowed = {f.name for f in fields(cls)}
        invalid = sorted(set(data) - allowed)
        if invalid:
            raise ValidationError(
                f"{cls.__name__}: claves no permitidas: {', '.join(invalid)}. "
                f"Válidas: {', '.join(sorted(allowed))}"
            )

        kwargs = {}
        for key, value in data.items():
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValidationError(f"{cls.__name__}.{key} debe ser texto")
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        """Solo las claves con valor, para JSON compacto."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class SceneDescriptors(_ClosedMap):
    setting:           Optional[str] = None
    mood:              Optional[str] = None
    weather:           Optional[str] = None
    time_of_day:       Optional[str] = None
    activity_level:    Optional[str] = None   # low | medium | high
    atmosphere:        Optional[str] = None
    scene_type:        Optional[str] = None
    dominant_elements: Optional[str] = None


@dataclass(frozen=True)
class SoundscapeTags(_ClosedMap):
    mood:        Optional[str] = None
    setting:     Optional[str] = None
    intensity:   Optional[str] = None
    weather:     Optional[str] = None
    time_of_day: Optional[str] = None


# ------------------------------------------------------------------
# Filas persistidas
# ------------------------------------------------------------------

@dataclass
class StoredBook:
    id:               int
    title:            str
    file_hash:        str
    status:           BookStatus
    created_at:       str
    total_pages:      int            = 0
    source_path:      Optional[str]  = None
    processing_error: Optional[str]  = None
    processing_cost:  float          = 0.0


@dataclass
class StoredPage:
    id:          int
    book_id:     int
    page_number: int
    content:     str
    scene_id:    Optional[int] = None


@dataclass
class StoredScene:
    id:                int
    book_id:           int
    scene_number:      int
    start_page:        int
    end_page:          int
    page_spread_index: int
    descriptors:       SceneDescriptors
    audio_prompt:      str             = ""
    fingerprint:       str             = ""
    needs_curation:    bool            = False
    curation_reason:   Optional[str]   = None

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1


@dataclass
class StoredSoundscape:
    id:                int
    scene_id:          int
    audio_url:         str
    duration_seconds:  int
    source_type:       SourceType
    created_at:        str
    generation_prompt: Optional[str]   = None
    confidence:        Optional[float] = None
    job_reference:     Optional[str]   = None
    tags:              SoundscapeTags  = SoundscapeTags()


@dataclass
class ReadingProgress:
    user_id:      str
    book_id:      int
    current_page: int
    updated_at:   str
