# soundscapes/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from storia.storage.models import SoundscapeTags, SourceType


class JobState(Enum):
    PENDING = "pending"
    DONE    = "done"
    FAILED  = "failed"


@dataclass
class JobStatus:
    """Estado de un trabajo de síntesis en el proveedor externo."""
    job_id:     str
    state:      JobState
    output_url: Optional[str] = None    # URL efímera del proveedor
    error:      Optional[str] = None


@dataclass(frozen=True)
class AssetReference:
    """
    Audio ya subido al almacenamiento propio.
    url siempre apunta a nuestro namespace, nunca a la URL del proveedor.
    """
    url:               str
    duration_seconds:  int
    source_type:       SourceType       = SourceType.GENERATED
    generation_prompt: Optional[str]    = None
    confidence:        Optional[float]  = None
    job_reference:     Optional[str]    = None
    tags:              SoundscapeTags   = field(default_factory=SoundscapeTags)


@dataclass
class GenerationOutcome:
    """Resultado por escena que consume el Orchestrator. Nunca lanza."""
    scene_id:   int
    asset:      Optional[AssetReference] = None
    from_cache: bool                     = False
    reason:     Optional[str]            = None   # legible para la revisión de admin
    attempts:   int                      = 0

    @property
    def ok(self) -> bool:
        return self.asset is not None
