# storia/factory.py
from pathlib import Path
from typing import Optional

from storia.analysis.claude import ClaudeAnalyzer
from storia.analysis.extractor import DescriptorExtractor
from storia.analysis.gemini import GeminiAnalyzer
from storia.analysis.router import AnalyzerRouter
from storia.config_loader import load_settings
from storia.events import ProgressChannel
from storia.orchestrator import Orchestrator
from storia.queues import QueueSet
from storia.retry import RetryPolicy
from storia.segmentation.segmenter import SceneSegmenter
from storia.settings import AudioSettings, RetrySettings, Settings, StorageSettings
from storia.soundscapes.assets import AssetStorage, LocalAssetStorage, SupabaseAssetStorage
from storia.soundscapes.cache import SoundscapeCache
from storia.soundscapes.curation import SoundscapeCurator
from storia.soundscapes.generator import SoundscapeGenerator
from storia.soundscapes.synthesis import ReplicateSynthesizer
from storia.storage.repository import Repository
from storia.text_source import TextSourceRegistry

_DEFAULT_ASSETS_ROOT = Path.home() / ".storia" / "assets"

_ANALYZERS = {
    "claude": ClaudeAnalyzer,
    "gemini": GeminiAnalyzer,
}


def build_orchestrator(
    db_path:     Optional[str]             = None,
    config_path: Optional[str]             = None,
    repo:        Optional[Repository]      = None,
    settings:    Optional[Settings]        = None,
    channel:     Optional[ProgressChannel] = None,
) -> Orchestrator:
    """
    Ensambla el Orchestrator con todas sus dependencias.
    Punto de entrada único para el CLI y los tests de integración.

    Necesita al menos un analizador con api_key y el token del
    sintetizador de audio; si falta algo lanza RuntimeError.
    """
    settings = settings or load_settings(config_path)
    repo     = repo or Repository(db_path=db_path)
    policy   = build_retry_policy(settings.retry)
    storage  = build_storage(settings.storage)

    router    = AnalyzerRouter(_build_analyzers(repo, settings))
    generator = SoundscapeGenerator(
        synthesizer      = build_synthesizer(settings.audio),
        storage          = storage,
        policy           = policy,
        poll_interval    = settings.audio.poll_interval,
        max_wait         = settings.audio.max_wait_seconds,
        default_duration = settings.audio.default_duration,
    )

    return Orchestrator(
        repo            = repo,
        text_sources    = TextSourceRegistry(),
        extractor       = DescriptorExtractor(
            analyzer    = router,   # failover entre analizadores
            policy      = policy,
            granularity = settings.pipeline.analysis_granularity,
        ),
        segmenter       = SceneSegmenter(),
        cache           = SoundscapeCache(repo, storage),
        generator       = generator,
        queues          = QueueSet(settings.queues),
        channel         = channel,
        settings        = settings.pipeline,
        cost_per_second = settings.audio.cost_per_second,
    )


def build_cache(repo: Repository, settings: Settings) -> SoundscapeCache:
    return SoundscapeCache(repo, build_storage(settings.storage))


def build_curator(repo: Repository, settings: Settings) -> SoundscapeCurator:
    storage = build_storage(settings.storage)
    return SoundscapeCurator(repo, storage, SoundscapeCache(repo, storage))


def build_storage(settings: StorageSettings) -> AssetStorage:
    if settings.backend == "local":
        return LocalAssetStorage(
            root            = settings.root or _DEFAULT_ASSETS_ROOT,
            public_base_url = settings.public_base_url,
        )
    if settings.backend == "supabase":
        return SupabaseAssetStorage(
            url              = settings.url,
            service_role_key = settings.service_role_key,
            bucket           = settings.bucket,
            timeout_seconds  = settings.timeout_seconds,
        )
    raise RuntimeError(
        f"Backend de almacenamiento desconocido: '{settings.backend}'. "
        f"Usa 'local' o 'supabase'."
    )


def build_synthesizer(settings: AudioSettings) -> ReplicateSynthesizer:
    if settings.provider != "replicate":
        raise RuntimeError(f"Proveedor de audio desconocido: '{settings.provider}'")
    if not settings.api_token:
        raise RuntimeError(
            "Sin token para el sintetizador de audio. "
            "Define audio.api_token en ~/.storia/config.yaml (ej: ${REPLICATE_API_TOKEN})."
        )
    return ReplicateSynthesizer(
        api_token       = settings.api_token,
        model           = settings.model,
        request_timeout = settings.request_timeout,
    )


def build_retry_policy(settings: RetrySettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts = settings.max_attempts,
        base_delay   = settings.base_delay,
        multiplier   = settings.multiplier,
        jitter       = settings.jitter,
    )


def _build_analyzers(repo: Repository, settings: Settings) -> list:
    """
    Construye los analizadores disponibles en orden de prioridad.
    Si uno no tiene api_key configurada, lo omite.
    """
    analyzers = []

    for config in settings.models:
        analyzer_class = _ANALYZERS.get(config.name)
        if not analyzer_class:
            continue
        if not config.api_key:
            print(f"[storia] ⚠ {config.name}: sin api_key, omitiendo")
            continue
        analyzers.append(analyzer_class(config, repo))

    if not analyzers:
        raise RuntimeError(
            "Ningún analizador configurado. "
            "Revisa ~/.storia/config.yaml y tus variables de entorno."
        )

    return analyzers
