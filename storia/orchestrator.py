# storia/orchestrator.py
import hashlib
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storia.analysis.extractor import DescriptorExtractor, Spread, SpreadAnalysis, SpreadOutcome
from storia.errors import StoriaError, TextSourceError, ValidationError
from storia.events import BookStatusChanged, ProgressChannel, SceneProgress
from storia.queues import QueueSet
from storia.segmentation.segmenter import SceneSegmenter, build_spreads, validate_partition
from storia.settings import PipelineSettings
from storia.soundscapes.cache import SoundscapeCache
from storia.soundscapes.generator import SoundscapeGenerator
from storia.soundscapes.models import GenerationOutcome
from storia.storage.models import BookStatus, StoredScene
from storia.storage.repository import Repository
from storia.text_source import TextSourceRegistry

logger = logging.getLogger(__name__)

# Estados desde los que se puede (re)lanzar el pipeline.
# Los intermedios permiten reanudar un proceso que murió a medias.
_RUNNABLE = {
    BookStatus.PENDING,
    BookStatus.EXTRACTING,
    BookStatus.ANALYZING,
    BookStatus.SEGMENTING,
    BookStatus.GENERATING,
    BookStatus.READY_FOR_REVIEW,
    BookStatus.FAILED,
}


# ------------------------------------------------------------------
# Resultado del pipeline: lo que el CLI consume
# ------------------------------------------------------------------

@dataclass
class PipelineResult:
    book_id:         int
    status:          BookStatus
    total_pages:     int   = 0
    total_spreads:   int   = 0
    failed_spreads:  int   = 0
    total_scenes:    int   = 0
    cache_hits:      int   = 0
    generated:       int   = 0
    needs_curation:  int   = 0
    processing_cost: float = 0.0
    error:           Optional[str] = None


# ------------------------------------------------------------------
# Errores propios del Orchestrator
# ------------------------------------------------------------------

class BookAlreadyPublishedError(StoriaError):
    """El libro ya está publicado. Usar force=True para reprocesarlo."""
    pass


class BookBusyError(StoriaError):
    """El libro ya se está procesando o su estado cambió por debajo."""
    pass


class PublishBlockedError(ValidationError):
    """El libro no cumple las condiciones para publicarse."""
    pass


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------

class Orchestrator:
    """
    Dirige el pipeline de un libro de extremo a extremo.
    No tiene lógica de negocio propia: coordina módulos.

    pending → extracting → analyzing → segmenting → generating → ready_for_review

    - Los fallos por spread o por escena se registran y no detienen el libro.
    - Solo los fallos de extracción de texto (o un error inesperado de
      infraestructura) llevan el libro a failed.
    - published es una acción explícita de admin: publish().
    """

    def __init__(
        self,
        repo:            Repository,
        text_sources:    TextSourceRegistry,
        extractor:       DescriptorExtractor,
        segmenter:       SceneSegmenter,
        cache:           SoundscapeCache,
        generator:       SoundscapeGenerator,
        queues:          QueueSet,
        channel:         Optional[ProgressChannel]  = None,
        settings:        Optional[PipelineSettings] = None,
        cost_per_second: float                      = 0.0023,
    ):
        self._repo            = repo
        self._text_sources    = text_sources
        self._extractor       = extractor
        self._segmenter       = segmenter
        self._cache           = cache
        self._generator       = generator
        self._queues          = queues
        self._channel         = channel or ProgressChannel()
        self._settings        = settings or PipelineSettings()
        self._cost_per_second = cost_per_second
        self._active: set[int] = set()
        self._active_lock     = threading.Lock()

    @property
    def channel(self) -> ProgressChannel:
        return self._channel

    def close(self, wait: bool = True) -> None:
        """Cierra las colas. Los libros ya encolados terminan si wait=True."""
        self._queues.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Entrada: alta del libro y encolado
    # ------------------------------------------------------------------

    def ingest(self, file_path: str, title: Optional[str] = None) -> int:
        """
        Registra el libro (identidad por hash del archivo) y devuelve su id.
        Idempotente: el mismo archivo devuelve el mismo book_id.
        """
        path = Path(file_path).resolve()
        if not path.exists():
            raise FileNotFoundError(f"Archivo no encontrado: {path}")

        file_hash = _compute_hash(path)
        book      = self._repo.get_book_by_hash(file_hash)
        if book:
            self._log(f"'{book.title}' ya registrado (book_id={book.id}, estado={book.status.value})")
            return book.id

        book_id = self._repo.create_book(
            title       = title or path.stem,
            file_hash   = file_hash,
            source_path = str(path),
        )
        self._log(f"Nuevo libro: '{title or path.stem}' (book_id={book_id})")
        return book_id

    def upload(self, file_path: str, title: Optional[str] = None) -> tuple[int, Future]:
        """Alta + encolado. Vuelve enseguida con el book_id y el Future del proceso."""
        book_id = self.ingest(file_path, title=title)
        return book_id, self.submit(book_id)

    def submit(self, book_id: int, force: bool = False) -> Future:
        """
        Encola el procesamiento en la cola 'pipeline' y vuelve enseguida.
        Un fallo al encolar es EnqueueError: nunca se pierde en silencio.
        """
        self._repo.require_book(book_id)
        future = self._queues.submit("pipeline", self.process_book, book_id, force)
        logger.info("book_id=%d encolado", book_id)
        return future

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def process_book(self, book_id: int, force: bool = False) -> PipelineResult:
        book = self._repo.require_book(book_id)

        if book.status == BookStatus.PUBLISHED and not force:
            raise BookAlreadyPublishedError(
                f"'{book.title}' ya está publicado (book_id={book_id}). "
                f"Usa force=True para reprocesarlo."
            )

        with self._active_lock:
            if book_id in self._active:
                raise BookBusyError(f"book_id={book_id} ya se está procesando")
            self._active.add(book_id)

        try:
            return self._run(book_id, force)
        finally:
            with self._active_lock:
                self._active.discard(book_id)

    def _run(self, book_id: int, force: bool) -> PipelineResult:
        runnable = _RUNNABLE | ({BookStatus.PUBLISHED} if force else set())
        self._advance(book_id, BookStatus.EXTRACTING, expected=runnable)
        result = PipelineResult(book_id=book_id, status=BookStatus.EXTRACTING)

        # ── Paso 1: texto paginado (fatal si falla) ───────────────────
        try:
            pages = self._load_pages(book_id)
        except (TextSourceError, ValidationError) as e:
            return self._fail(book_id, result, e)

        result.total_pages = len(pages)

        try:
            # ── Paso 2: descriptores por spread ───────────────────────
            self._advance(book_id, BookStatus.ANALYZING, expected={BookStatus.EXTRACTING})
            spreads  = build_spreads(pages)
            analyses = self._analyze(book_id, spreads)
            result.total_spreads  = len(spreads)
            result.failed_spreads = sum(1 for a in analyses if a.failed)

            # ── Paso 3: partición en escenas ──────────────────────────
            self._advance(book_id, BookStatus.SEGMENTING, expected={BookStatus.ANALYZING})
            drafts = self._segmenter.segment(analyses)
            validate_partition(drafts, len(pages))
            previous = self._repo.get_soundscapes_for_book(book_id)
            scenes   = self._repo.sync_scenes(book_id, drafts)
            self._release_stale_assets(previous, {s.id for s in scenes})
            result.total_scenes = len(scenes)
            self._log(f"book_id={book_id}: {len(scenes)} escenas")

            # ── Paso 4: audio por escena ──────────────────────────────
            self._advance(book_id, BookStatus.GENERATING, expected={BookStatus.SEGMENTING})
            outcomes = self._render_scenes(book_id, scenes)

        except BookBusyError:
            raise
        except Exception as e:
            logger.exception("Error inesperado procesando book_id=%d", book_id)
            self._fail(book_id, result, e)
            raise

        result.cache_hits     = sum(1 for o in outcomes if o.ok and o.from_cache)
        result.generated      = sum(1 for o in outcomes if o.ok and not o.from_cache)
        result.needs_curation = sum(1 for o in outcomes if not o.ok)

        # ── Paso 5: listo para revisión ───────────────────────────────
        self._advance(book_id, BookStatus.READY_FOR_REVIEW, expected={BookStatus.GENERATING})
        result.status          = BookStatus.READY_FOR_REVIEW
        result.processing_cost = self._repo.require_book(book_id).processing_cost

        self._log(
            f"Listo para revisión: {result.total_scenes} escenas, "
            f"{result.cache_hits} desde cache, {result.generated} generadas, "
            f"{result.needs_curation} pendientes de curación"
        )
        return result

    def publish(self, book_id: int) -> None:
        """Acción de admin: exige ready_for_review y un Soundscape en cada escena."""
        book = self._repo.require_book(book_id)
        if book.status != BookStatus.READY_FOR_REVIEW:
            raise PublishBlockedError(
                f"Solo se publica desde ready_for_review (estado actual: {book.status.value})"
            )

        scenes      = self._repo.get_scenes(book_id)
        soundscapes = self._repo.get_soundscapes_for_book(book_id)
        missing     = [s.scene_number for s in scenes if s.id not in soundscapes]
        if not scenes or missing:
            raise PublishBlockedError(
                f"Escenas sin Soundscape: {missing}" if missing else "El libro no tiene escenas"
            )

        self._advance(book_id, BookStatus.PUBLISHED, expected={BookStatus.READY_FOR_REVIEW})
        self._log(f"book_id={book_id} publicado")

    # ------------------------------------------------------------------
    # Etapas
    # ------------------------------------------------------------------

    def _load_pages(self, book_id: int) -> list[tuple[int, str]]:
        """Reutiliza las páginas ya guardadas; si no hay, extrae del archivo."""
        stored = self._repo.get_pages(book_id)
        if stored:
            return [(p.page_number, p.content) for p in stored]

        book = self._repo.require_book(book_id)
        if not book.source_path:
            raise TextSourceError(f"book_id={book_id} no tiene archivo de origen")

        pages = self._text_sources.extract(book.source_path)
        if not pages:
            raise ValidationError("El libro no tiene páginas")

        self._repo.save_pages(book_id, pages)
        self._repo.set_total_pages(book_id, len(pages))
        self._log(f"{len(pages)} páginas extraídas y guardadas")
        return pages

    def _analyze(self, book_id: int, spreads: list[Spread]) -> list[SpreadAnalysis]:
        total    = len(spreads)
        progress = {"done": 0}

        def _on_result(analysis: SpreadAnalysis) -> None:
            progress["done"] += 1
            self._channel.publish(SceneProgress(book_id, "analyzing", progress["done"], total))
            if analysis.failed:
                self._log(
                    f"⚠ Spread {analysis.spread.index} (págs {analysis.spread.start_page}-"
                    f"{analysis.spread.end_page}) sin análisis, continuando"
                )

        analyses = self._queues.map_bounded(
            "analysis", self._analyze_spread, spreads, on_result=_on_result,
        )

        calls = sum(a.attempts for a in analyses if a.outcome != SpreadOutcome.SKIPPED)
        self._repo.add_processing_cost(book_id, calls * self._settings.cost_per_analysis_call)

        failed = sum(1 for a in analyses if a.failed)
        self._log(f"Análisis: {total - failed}/{total} spreads OK")
        return analyses

    def _analyze_spread(self, spread: Spread) -> SpreadAnalysis:
        """Aislamiento por spread: ni un error inesperado detiene el libro."""
        try:
            return self._extractor.extract_spread(spread)
        except Exception as e:
            logger.warning("Error en spread %d: %s", spread.index, e)
            return SpreadAnalysis(
                spread     = spread,
                descriptor = None,
                outcome    = SpreadOutcome.FAILED,
                error      = f"{type(e).__name__}: {e}",
            )

    def _release_stale_assets(self, previous: dict, kept_ids: set[int]) -> None:
        """Borra el audio de las escenas recreadas si ya nadie lo referencia."""
        for scene_id, soundscape in previous.items():
            if scene_id in kept_ids:
                continue
            try:
                if self._cache.release_asset(soundscape.audio_url):
                    logger.debug("Asset huérfano borrado: %s", soundscape.audio_url)
            except StoriaError as e:
                logger.warning("No se pudo borrar %s: %s", soundscape.audio_url, e)

    def _render_scenes(self, book_id: int, scenes: list[StoredScene]) -> list[GenerationOutcome]:
        """
        Escenas en orden ascendente; las que ya tienen Soundscape se conservan.
        Paralelismo acotado por la cola 'generation'.
        """
        existing = self._repo.get_soundscapes_for_book(book_id)
        todo     = [s for s in sorted(scenes, key=lambda s: s.scene_number) if s.id not in existing]
        kept     = len(scenes) - len(todo)
        if kept:
            self._log(f"{kept} escenas conservan su Soundscape")

        total    = len(todo)
        progress = {"done": 0}

        def _on_result(outcome: GenerationOutcome) -> None:
            progress["done"] += 1
            self._channel.publish(SceneProgress(book_id, "generating", progress["done"], total))

        return self._queues.map_bounded(
            "generation",
            lambda scene: self._render_scene(book_id, scene),
            todo,
            on_result=_on_result,
        )

    def _render_scene(self, book_id: int, scene: StoredScene) -> GenerationOutcome:
        """Cache primero, Generator después. Nunca lanza."""
        try:
            cached = self._cache.find(scene.fingerprint)
            if cached is not None:
                outcome = GenerationOutcome(scene_id=scene.id, asset=cached, from_cache=True)
            else:
                outcome = self._generator.generate_for_scene(scene)

            if outcome.ok:
                asset = outcome.asset
                self._repo.replace_soundscape(
                    scene_id          = scene.id,
                    audio_url         = asset.url,
                    duration_seconds  = asset.duration_seconds,
                    source_type       = asset.source_type,
                    generation_prompt = asset.generation_prompt,
                    confidence        = asset.confidence,
                    job_reference     = asset.job_reference,
                    tags              = asset.tags,
                )
                if not outcome.from_cache:
                    self._repo.add_processing_cost(
                        book_id, asset.duration_seconds * self._cost_per_second,
                    )
                self._log(
                    f"Escena {scene.scene_number}: "
                    f"{'cache' if outcome.from_cache else 'generada'} → {asset.url}"
                )
                return outcome

        except Exception as e:
            logger.warning("Error en escena %d: %s", scene.id, e)
            outcome = GenerationOutcome(scene_id=scene.id, reason=f"{type(e).__name__}: {e}")

        self._repo.flag_scene_for_curation(scene.id, outcome.reason or "sin motivo")
        self._log(f"⚠ Escena {scene.scene_number} sin audio ({outcome.reason}), continuando")
        return outcome

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    def _advance(
        self,
        book_id:  int,
        new:      BookStatus,
        expected: set[BookStatus],
        error:    Optional[str] = None,
    ) -> None:
        previous = self._repo.require_book(book_id).status
        if not self._repo.transition_status(book_id, new, expected=expected, error=error):
            raise BookBusyError(
                f"book_id={book_id}: transición {previous.value} → {new.value} no permitida"
            )
        logger.info("book_id=%d: %s → %s", book_id, previous.value, new.value)
        self._channel.publish(BookStatusChanged(book_id, previous, new, error))

    def _fail(self, book_id: int, result: PipelineResult, error: Exception) -> PipelineResult:
        message = f"{type(error).__name__}: {error}"
        previous = self._repo.require_book(book_id).status
        self._repo.transition_status(book_id, BookStatus.FAILED, error=message)
        self._channel.publish(BookStatusChanged(book_id, previous, BookStatus.FAILED, message))

        logger.error("book_id=%d marcado como failed: %s", book_id, message)
        self._log(f"✗ Libro {book_id} fallido: {message}")
        result.status = BookStatus.FAILED
        result.error  = message
        return result

    @staticmethod
    def _log(message: str) -> None:
        print(f"[storia] {message}")


# ------------------------------------------------------------------
# Funciones de módulo (helpers privados)
# ------------------------------------------------------------------

def _compute_hash(path: Path) -> str:
    """SHA-256 del archivo: identifica el libro independientemente del nombre."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()
