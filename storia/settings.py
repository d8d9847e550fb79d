# storia/settings.py
from dataclasses import dataclass, field
from typing import Optional

from storia.analysis.models import ModelConfig


_DEFAULT_QUEUES = {
    "pipeline":   2,   # libros completos en paralelo
    "analysis":   5,   # llamadas al analizador de contenido
    "generation": 3,   # llamadas al sintetizador de audio
}


@dataclass
class AudioSettings:
    provider:         str            = "replicate"
    api_token:        Optional[str]  = None
    model:            str            = "meta/musicgen"
    poll_interval:    float          = 3.0
    max_wait_seconds: float          = 300.0
    request_timeout:  float          = 60.0
    default_duration: int            = 30
    cost_per_second:  float          = 0.0023


@dataclass
class StorageSettings:
    backend:          str            = "local"     # local | supabase
    root:             Optional[str]  = None        # solo local
    public_base_url:  Optional[str]  = None        # solo local
    url:              Optional[str]  = None        # solo supabase
    service_role_key: Optional[str]  = None
    bucket:           str            = "storia-storage"
    timeout_seconds:  float          = 60.0


@dataclass
class RetrySettings:
    max_attempts: int   = 3
    base_delay:   float = 1.0
    multiplier:   float = 2.0
    jitter:       float = 0.25


@dataclass
class PipelineSettings:
    cost_per_analysis_call: float = 0.0
    analysis_granularity:   str   = "spread"


@dataclass
class Settings:
    """
    Configuración completa de la aplicación.
    Se carga desde ~/.storia/config.yaml; cada sección tiene defaults.
    """
    models:   list[ModelConfig] = field(default_factory=list)
    audio:    AudioSettings     = field(default_factory=AudioSettings)
    storage:  StorageSettings   = field(default_factory=StorageSettings)
    retry:    RetrySettings     = field(default_factory=RetrySettings)
    pipeline: PipelineSettings  = field(default_factory=PipelineSettings)
    queues:   dict[str, int]    = field(default_factory=lambda: dict(_DEFAULT_QUEUES))
