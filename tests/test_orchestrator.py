# tests/test_orchestrator.py
from unittest.mock import MagicMock

import pytest

from storia.analysis.extractor import DescriptorExtractor
from storia.analysis.models import AnalysisResponse, Descriptor, Intensity
from storia.errors import EnqueueError, RateLimitedError, ResourceNotFoundError
from storia.events import BookStatusChanged, ProgressChannel, SceneProgress
from storia.orchestrator import (
    BookAlreadyPublishedError,
    Orchestrator,
    PublishBlockedError,
)
from storia.queues import QueueSet
from storia.segmentation.segmenter import SceneSegmenter
from storia.soundscapes.cache import SoundscapeCache
from storia.soundscapes.generator import SoundscapeGenerator
from storia.soundscapes.models import JobState
from storia.storage.models import BookStatus, SourceType
from storia.text_source import TextSourceRegistry

FOREST = Descriptor(setting="forest", mood="calm", intensity=Intensity.LOW, audio_prompt="calm forest ambience")
CITY   = Descriptor(setting="city", mood="tense", intensity=Intensity.HIGH, audio_prompt="busy city street")


def write_book(tmp_path, name="libro.txt", forest_pages=6, city_pages=4, extra=""):
    """Libro con form feeds: primero páginas de bosque, después de ciudad."""
    pages  = [f"El bosque, página {n}. {extra}" for n in range(1, forest_pages + 1)]
    pages += [f"La ciudad, página {n}. {extra}" for n in range(1, city_pages + 1)]
    path = tmp_path / name
    path.write_text("\f".join(pages), encoding="utf-8")
    return str(path)


def fake_analysis(text, granularity="spread"):
    descriptor = FOREST if "bosque" in text else CITY
    return AnalysisResponse(descriptor=descriptor, model_used="fake", tokens_input=10, tokens_output=5)


@pytest.fixture
def analyzer():
    mock = MagicMock()
    mock.analyze.side_effect = fake_analysis
    return mock


@pytest.fixture
def synth(make_synthesizer):
    return make_synthesizer(script=[JobState.DONE])


@pytest.fixture
def channel():
    return ProgressChannel()


@pytest.fixture
def orchestrator(repo, storage, analyzer, synth, channel, no_sleep_policy):
    orch = Orchestrator(
        repo         = repo,
        text_sources = TextSourceRegistry(),
        extractor    = DescriptorExtractor(analyzer, policy=no_sleep_policy),
        segmenter    = SceneSegmenter(),
        cache        = SoundscapeCache(repo, storage),
        generator    = SoundscapeGenerator(synth, storage, policy=no_sleep_policy, poll_interval=0.0),
        queues       = QueueSet({"pipeline": 1, "analysis": 2, "generation": 1}),
        channel      = channel,
    )
    yield orch
    orch.close()


# ------------------------------------------------------------------
# Alta del libro
# ------------------------------------------------------------------

class TestIngest:

    def test_mismo_archivo_mismo_book_id(self, orchestrator, repo, tmp_path):
        path = write_book(tmp_path)

        first  = orchestrator.ingest(path, title="El bosque y la ciudad")
        second = orchestrator.ingest(path)

        assert first == second
        assert repo.require_book(first).title == "El bosque y la ciudad"
        assert repo.require_book(first).status == BookStatus.PENDING

    def test_archivo_inexistente(self, orchestrator, tmp_path):
        with pytest.raises(FileNotFoundError):
            orchestrator.ingest(str(tmp_path / "no-existe.txt"))

    def test_upload_encola_el_proceso(self, orchestrator, tmp_path):
        book_id, future = orchestrator.upload(write_book(tmp_path))

        result = future.result(timeout=10)

        assert result.book_id == book_id
        assert result.status == BookStatus.READY_FOR_REVIEW

    def test_submit_con_colas_cerradas(self, orchestrator, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))
        orchestrator.close()
        with pytest.raises(EnqueueError):
            orchestrator.submit(book_id)


# ------------------------------------------------------------------
# Pipeline completo
# ------------------------------------------------------------------

class TestProcessBook:

    def test_diez_paginas_dos_escenas(self, orchestrator, repo, synth, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))

        result = orchestrator.process_book(book_id)

        assert result.status == BookStatus.READY_FOR_REVIEW
        assert result.total_pages == 10
        assert result.total_spreads == 5
        assert result.total_scenes == 2
        assert result.generated == 2
        assert result.cache_hits == 0
        assert result.needs_curation == 0
        assert result.processing_cost == pytest.approx(2 * 30 * 0.0023)

        scenes = repo.get_scenes(book_id)
        assert [(s.start_page, s.end_page) for s in scenes] == [(1, 6), (7, 10)]
        assert [prompt for prompt, _ in synth.submitted] == ["calm forest ambience", "busy city street"]

        soundscapes = repo.get_soundscapes_for_book(book_id)
        assert all(s.source_type == SourceType.GENERATED for s in soundscapes.values())
        assert soundscapes[scenes[0].id].tags.setting == "forest"

    def test_publica_eventos_de_estado_y_progreso(self, orchestrator, channel, tmp_path):
        events = []
        channel.subscribe(events.append)
        book_id = orchestrator.ingest(write_book(tmp_path))

        orchestrator.process_book(book_id)

        states = [e.current for e in events if isinstance(e, BookStatusChanged)]
        assert states == [
            BookStatus.EXTRACTING,
            BookStatus.ANALYZING,
            BookStatus.SEGMENTING,
            BookStatus.GENERATING,
            BookStatus.READY_FOR_REVIEW,
        ]
        analyzing = [e for e in events if isinstance(e, SceneProgress) and e.stage == "analyzing"]
        assert analyzing[-1].done == analyzing[-1].total == 5

    def test_spreads_fallidos_extienden_la_escena(self, orchestrator, repo, analyzer, tmp_path):
        def flaky(text, granularity="spread"):
            if "ciudad" in text:
                raise RateLimitedError("429")
            return fake_analysis(text)

        analyzer.analyze.side_effect = flaky
        book_id = orchestrator.ingest(write_book(tmp_path))

        result = orchestrator.process_book(book_id)

        assert result.status == BookStatus.READY_FOR_REVIEW
        assert result.failed_spreads == 2
        assert [(s.start_page, s.end_page) for s in repo.get_scenes(book_id)] == [(1, 10)]

    def test_fallo_de_sintesis_marca_curacion_y_sigue(self, make_synthesizer, repo, storage, analyzer, no_sleep_policy, tmp_path):
        synth = make_synthesizer(script=[JobState.FAILED])
        orch  = Orchestrator(
            repo         = repo,
            text_sources = TextSourceRegistry(),
            extractor    = DescriptorExtractor(analyzer, policy=no_sleep_policy),
            segmenter    = SceneSegmenter(),
            cache        = SoundscapeCache(repo, storage),
            generator    = SoundscapeGenerator(synth, storage, policy=no_sleep_policy, poll_interval=0.0),
            queues       = QueueSet({"pipeline": 1, "analysis": 1, "generation": 1}),
        )
        book_id = orch.ingest(write_book(tmp_path))

        result = orch.process_book(book_id)
        orch.close()

        assert result.status == BookStatus.READY_FOR_REVIEW
        assert result.needs_curation == 2
        assert result.processing_cost == 0.0
        assert all(s.needs_curation for s in repo.get_scenes(book_id))
        assert "rechazado" in repo.get_scenes(book_id)[0].curation_reason

    def test_archivo_desaparecido_lleva_a_failed(self, orchestrator, repo, tmp_path):
        path    = write_book(tmp_path)
        book_id = orchestrator.ingest(path)
        (tmp_path / "libro.txt").unlink()

        result = orchestrator.process_book(book_id)

        assert result.status == BookStatus.FAILED
        assert result.error.startswith("TextSourceError")
        book = repo.require_book(book_id)
        assert book.status == BookStatus.FAILED
        assert book.processing_error == result.error

    def test_cache_entre_libros(self, orchestrator, repo, synth, tmp_path):
        first  = orchestrator.ingest(write_book(tmp_path, "uno.txt"))
        second = orchestrator.ingest(write_book(tmp_path, "dos.txt", extra="Otra edición."))
        orchestrator.process_book(first)

        result = orchestrator.process_book(second)

        assert result.cache_hits == 2
        assert result.generated == 0
        assert len(synth.submitted) == 2

        urls_first  = {s.audio_url for s in repo.get_soundscapes_for_book(first).values()}
        urls_second = {s.audio_url for s in repo.get_soundscapes_for_book(second).values()}
        assert urls_first == urls_second

    def test_reprocesar_conserva_escenas_y_audio(self, orchestrator, repo, synth, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))
        orchestrator.process_book(book_id)
        before = [s.id for s in repo.get_scenes(book_id)]

        result = orchestrator.process_book(book_id)

        assert result.status == BookStatus.READY_FOR_REVIEW
        assert [s.id for s in repo.get_scenes(book_id)] == before
        assert result.generated == 0
        assert len(synth.submitted) == 2

    def test_reprocesar_borra_el_audio_de_escenas_recreadas(self, orchestrator, repo, storage, analyzer, tmp_path):
        harbor = Descriptor(setting="harbor", mood="calm", intensity=Intensity.MEDIUM, audio_prompt="quiet harbor")
        book_id = orchestrator.ingest(write_book(tmp_path))
        orchestrator.process_book(book_id)
        forest, city = repo.get_scenes(book_id)
        before = repo.get_soundscapes_for_book(book_id)
        forest_key = storage.key_for_url(before[forest.id].audio_url)
        city_key   = storage.key_for_url(before[city.id].audio_url)

        def with_harbor(text, granularity="spread"):
            descriptor = FOREST if "bosque" in text else harbor
            return AnalysisResponse(descriptor=descriptor, model_used="fake", tokens_input=10, tokens_output=5)

        analyzer.analyze.side_effect = with_harbor
        result = orchestrator.process_book(book_id)

        assert result.generated == 1
        scenes = repo.get_scenes(book_id)
        assert scenes[0].id == forest.id
        assert scenes[1].id != city.id
        with pytest.raises(ResourceNotFoundError):
            storage.get(city_key)
        assert storage.get(forest_key)
        new_url = repo.get_soundscapes_for_book(book_id)[scenes[1].id].audio_url
        assert storage.get(storage.key_for_url(new_url))


# ------------------------------------------------------------------
# Publicación
# ------------------------------------------------------------------

class TestPublish:

    def test_publica_con_todas_las_escenas_con_audio(self, orchestrator, repo, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))
        orchestrator.process_book(book_id)

        orchestrator.publish(book_id)

        assert repo.require_book(book_id).status == BookStatus.PUBLISHED

    def test_no_publica_si_no_esta_revisado(self, orchestrator, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))
        with pytest.raises(PublishBlockedError):
            orchestrator.publish(book_id)

    def test_no_publica_escenas_sin_audio(self, orchestrator, repo, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))
        orchestrator.process_book(book_id)
        scene = repo.get_scenes(book_id)[1]
        repo.delete_soundscape(scene.id)

        with pytest.raises(PublishBlockedError, match="2"):
            orchestrator.publish(book_id)
        assert repo.require_book(book_id).status == BookStatus.READY_FOR_REVIEW

    def test_publicado_exige_force(self, orchestrator, repo, tmp_path):
        book_id = orchestrator.ingest(write_book(tmp_path))
        orchestrator.process_book(book_id)
        orchestrator.publish(book_id)
        ranges = [(s.start_page, s.end_page) for s in repo.get_scenes(book_id)]
        urls   = {s.audio_url for s in repo.get_soundscapes_for_book(book_id).values()}

        with pytest.raises(BookAlreadyPublishedError):
            orchestrator.process_book(book_id)

        result = orchestrator.process_book(book_id, force=True)
        assert result.status == BookStatus.READY_FOR_REVIEW
        assert [(s.start_page, s.end_page) for s in repo.get_scenes(book_id)] == ranges
        assert {s.audio_url for s in repo.get_soundscapes_for_book(book_id).values()} == urls
