# soundscapes/generator.py
import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Callable, Optional

from storia.errors import (
    GenerationCancelledError,
    RetryExhaustedError,
    StoriaError,
    TransientUpstreamError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    ValidationError,
)
from storia.retry import RetryPolicy, call_with_retry
from storia.soundscapes.assets import AssetStorage, asset_key
from storia.soundscapes.models import AssetReference, GenerationOutcome, JobState
from storia.soundscapes.synthesis import AudioSynthesizer
from storia.storage.models import SoundscapeTags, SourceType, StoredScene

logger = logging.getLogger(__name__)

MIN_DURATION = 30
MAX_DURATION = 60


class GenerationHandle:
    """
    Trabajo de síntesis en curso (modo submit-then-poll).

    poll() hace una sola consulta y nunca bloquea.
    wait() repite poll() cada poll_interval hasta terminar, agotar el
    plazo (UpstreamTimeoutError) o ser cancelado (GenerationCancelledError).
    """

    def __init__(
        self,
        generator:        "SoundscapeGenerator",
        job_id:           str,
        prompt:           str,
        duration_seconds: int,
        scene_id:         Optional[int],
    ):
        self.job_id           = job_id
        self.prompt           = prompt
        self.duration_seconds = duration_seconds
        self.scene_id         = scene_id
        self._generator       = generator
        self._cancelled       = threading.Event()
        self._result: Optional[AssetReference] = None

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def poll(self) -> Optional[AssetReference]:
        """None mientras el proveedor siga trabajando."""
        if self._result is not None:
            return self._result
        if self.cancelled:
            raise GenerationCancelledError(f"Trabajo {self.job_id} cancelado")

        status = self._generator._synthesizer.poll_status(self.job_id)

        if status.state == JobState.PENDING:
            return None

        if status.state == JobState.FAILED:
            raise UpstreamRejectedError(
                f"La síntesis {self.job_id} falló: {status.error or 'sin detalle'}"
            )

        if not status.output_url:
            raise UpstreamRejectedError(f"La síntesis {self.job_id} terminó sin audio")

        self._result = self._generator._store(self, status.output_url)
        return self._result

    def wait(self, timeout: Optional[float] = None) -> AssetReference:
        generator = self._generator
        max_wait  = generator.max_wait if timeout is None else timeout
        deadline  = generator._clock() + max_wait

        while True:
            try:
                result = self.poll()
            except TransientUpstreamError as e:
                # Un fallo puntual al consultar no invalida el trabajo
                logger.warning("Consulta de %s falló, se reintenta: %s", self.job_id, e)
                result = None

            if result is not None:
                return result

            if generator._clock() >= deadline:
                generator._synthesizer.cancel(self.job_id)
                raise UpstreamTimeoutError(
                    f"La síntesis {self.job_id} superó {max_wait:.0f}s"
                )

            # cancel() despierta al loop al instante
            if self._cancelled.wait(generator.poll_interval):
                raise GenerationCancelledError(f"Trabajo {self.job_id} cancelado")

    def cancel(self) -> None:
        if self._cancelled.is_set() or self._result is not None:
            return
        self._cancelled.set()
        self._generator._synthesizer.cancel(self.job_id)
        logger.info("Trabajo de síntesis %s cancelado", self.job_id)


class SoundscapeGenerator:
    """
    Convierte el audio_prompt de una escena en un loop ambiental
    subido a nuestro almacenamiento.

    Dos modos:
    - generate(): bloquea hasta tener el asset (con reintentos).
    - submit(): devuelve un GenerationHandle para que el caller haga polling.
    """

    def __init__(
        self,
        synthesizer:      AudioSynthesizer,
        storage:          AssetStorage,
        policy:           Optional[RetryPolicy]  = None,
        poll_interval:    float                  = 3.0,
        max_wait:         float                  = 300.0,
        default_duration: int                    = 30,
        clock:            Callable[[], float]    = time.monotonic,
    ):
        self._synthesizer     = synthesizer
        self._storage         = storage
        self._policy          = policy or RetryPolicy()
        self.poll_interval    = poll_interval
        self.max_wait         = max_wait
        self.default_duration = default_duration
        self._clock           = clock

    # ------------------------------------------------------------------
    # Modos de invocación
    # ------------------------------------------------------------------

    def submit(
        self,
        prompt:           str,
        duration_seconds: Optional[int] = None,
        scene_id:         Optional[int] = None,
    ) -> GenerationHandle:
        duration = self._validate(prompt, duration_seconds)
        job_id   = self._synthesizer.submit(prompt.strip(), duration)
        return GenerationHandle(self, job_id, prompt.strip(), duration, scene_id)

    def generate(
        self,
        prompt:           str,
        duration_seconds: Optional[int] = None,
        scene_id:         Optional[int] = None,
        on_attempt:       Optional[Callable[[int], None]] = None,
    ) -> AssetReference:
        """
        Fire-and-wait. Transitorios: hasta policy.max_attempts intentos.
        UpstreamRejectedError no se reintenta.
        Si se agotan los intentos se propaga el último error transitorio.
        """
        duration = self._validate(prompt, duration_seconds)

        try:
            return call_with_retry(
                lambda: self.submit(prompt, duration, scene_id).wait(),
                policy     = self._policy,
                retry_on   = (TransientUpstreamError,),
                label      = f"síntesis de '{prompt[:40]}'",
                on_attempt = on_attempt,
            )
        except RetryExhaustedError as e:
            raise e.last_error from e

    def generate_for_scene(
        self,
        scene:            StoredScene,
        duration_seconds: Optional[int] = None,
    ) -> GenerationOutcome:
        """
        Versión por escena para el Orchestrator: nunca lanza.
        Un fallo devuelve el motivo legible para la revisión de admin.
        """
        attempts = 0

        def _count(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        if not scene.audio_prompt.strip():
            return GenerationOutcome(
                scene_id = scene.id,
                reason   = "La escena no tiene audio_prompt",
            )

        try:
            asset = self.generate(
                scene.audio_prompt,
                duration_seconds,
                scene_id   = scene.id,
                on_attempt = _count,
            )
        except UpstreamRejectedError as e:
            logger.warning("Escena %d: síntesis rechazada: %s", scene.id, e)
            return GenerationOutcome(
                scene_id = scene.id,
                reason   = f"Prompt rechazado por el proveedor: {e}",
                attempts = attempts,
            )
        except StoriaError as e:
            logger.warning("Escena %d: síntesis fallida tras %d intentos: %s", scene.id, attempts, e)
            return GenerationOutcome(
                scene_id = scene.id,
                reason   = f"{type(e).__name__}: {e}",
                attempts = attempts,
            )

        return GenerationOutcome(
            scene_id = scene.id,
            asset    = _with_tags(asset, tags_from_scene(scene)),
            attempts = attempts,
        )

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------

    def _validate(self, prompt: str, duration_seconds: Optional[int]) -> int:
        if not prompt or not prompt.strip():
            raise ValidationError("El prompt de audio está vacío")
        duration = self.default_duration if duration_seconds is None else duration_seconds
        if not MIN_DURATION <= duration <= MAX_DURATION:
            raise ValidationError(
                f"Duración {duration}s fuera de rango ({MIN_DURATION}-{MAX_DURATION}s)"
            )
        return duration

    def _store(self, handle: GenerationHandle, output_url: str) -> AssetReference:
        """Descarga el audio efímero del proveedor y lo re-sube con nuestra clave."""
        data = self._synthesizer.download(output_url)
        if not data:
            raise UpstreamRejectedError(f"La síntesis {handle.job_id} devolvió un audio vacío")

        owner = handle.scene_id if handle.scene_id is not None else f"job-{uuid.uuid4().hex[:12]}"
        key   = asset_key(SourceType.GENERATED, owner, _extension_from_url(output_url))
        url   = self._storage.put(data, key)

        logger.info("Audio de %s guardado en %s", handle.job_id, url)
        return AssetReference(
            url               = url,
            duration_seconds  = handle.duration_seconds,
            source_type       = SourceType.GENERATED,
            generation_prompt = handle.prompt,
            job_reference     = handle.job_id,
        )


def tags_from_scene(scene: StoredScene) -> SoundscapeTags:
    d = scene.descriptors
    return SoundscapeTags(
        mood        = d.mood,
        setting     = d.setting,
        intensity   = d.activity_level,
        weather     = d.weather,
        time_of_day = d.time_of_day,
    )


def _with_tags(asset: AssetReference, tags: SoundscapeTags) -> AssetReference:
    return replace(asset, tags=tags)


def _extension_from_url(url: str, default: str = "mp3") -> str:
    path = url.split("?", 1)[0].rsplit("/", 1)[-1]
    if "." in path:
        extension = path.rsplit(".", 1)[-1].lower()
        if extension.isalnum() and len(extension) <= 4:
            return extension
    return default
