# analysis/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Intensity(Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"

    @property
    def level(self) -> int:
        return _INTENSITY_LEVELS[self]

    @classmethod
    def parse(cls, value: str) -> "Intensity":
        """Acepta variantes comunes ('moderate', 'High ')."""
        normalized = (value or "").strip().lower()
        normalized = _INTENSITY_ALIASES.get(normalized, normalized)
        return cls(normalized)


_INTENSITY_LEVELS = {
    Intensity.LOW:    0,
    Intensity.MEDIUM: 1,
    Intensity.HIGH:   2,
}

_INTENSITY_ALIASES = {
    "moderate": "medium",
    "calm":     "low",
    "intense":  "high",
}


@dataclass(frozen=True)
class Descriptor:
    """
    Metadatos narrativos de una página o spread.
    Lo produce el DescriptorExtractor; lo consumen Segmenter y Generator.
    """
    setting:           str                = ""
    mood:              str                = ""
    intensity:         Intensity          = Intensity.MEDIUM
    weather:           Optional[str]      = None
    time_of_day:       Optional[str]      = None
    audio_prompt:      str                = ""
    atmosphere:        Optional[str]      = None
    scene_type:        Optional[str]      = None
    dominant_elements: Optional[str]      = None

    @classmethod
    def neutral(cls) -> "Descriptor":
        """Fallback cuando el análisis no es utilizable."""
        return cls()


@dataclass
class AnalysisResponse:
    descriptor:    Descriptor
    model_used:    str
    tokens_input:  int = 0
    tokens_output: int = 0


@dataclass
class ModelConfig:
    """
    Configuración de un analizador individual.
    Se carga desde ~/.storia/config.yaml.
    """
    name:              str
    priority:          int
    daily_token_limit: int
    api_key:           Optional[str] = None
    timeout_seconds:   int = 60
    temperature:       float = 0.2

    # Control de cooldown temporal (no viene del YAML, es runtime)
    _unavailable_until: Optional[float] = field(
        default=None, compare=False, repr=False
    )
