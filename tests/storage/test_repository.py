# tests/storage/test_repository.py
import pytest

from storia.errors import ResourceNotFoundError, ValidationError
from storia.segmentation.segmenter import SceneDraft
from storia.storage.models import BookStatus, SceneDescriptors, SoundscapeTags, SourceType
from storia.storage.repository import Repository


@pytest.fixture
def repo():
    """Cada test tiene su propia DB en memoria, aislada, sin cleanup."""
    r = Repository(db_path=":memory:")
    yield r
    r.close()


@pytest.fixture
def book_id(repo):
    book_id = repo.create_book("El bosque", "hash-bosque", "/tmp/bosque.txt")
    repo.save_pages(book_id, [(n, f"Página {n}") for n in range(1, 11)])
    repo.set_total_pages(book_id, 10)
    return book_id


def make_draft(number, start, end, setting="forest", mood="calm", prompt="calm forest ambience"):
    descriptors = SceneDescriptors(setting=setting, mood=mood, activity_level="low")
    return SceneDraft(
        scene_number      = number,
        start_page        = start,
        end_page          = end,
        page_spread_index = (start - 1) // 2,
        descriptors       = descriptors,
        audio_prompt      = prompt,
        fingerprint       = f"{setting}|{mood}|low",
    )


TWO_SCENES = [
    make_draft(1, 1, 6),
    make_draft(2, 7, 10, setting="city", mood="tense", prompt="busy city street"),
]


# ------------------------------------------------------------------
# Books
# ------------------------------------------------------------------

class TestBooks:

    def test_create_book_empieza_en_pending(self, repo):
        book_id = repo.create_book("Título", "hash1")
        book = repo.get_book_by_id(book_id)
        assert book.status == BookStatus.PENDING
        assert book.processing_cost == 0.0

    def test_get_book_by_hash(self, repo):
        book_id = repo.create_book("Título", "hash1")
        assert repo.get_book_by_hash("hash1").id == book_id
        assert repo.get_book_by_hash("otro") is None

    def test_require_book_inexistente_lanza_error(self, repo):
        with pytest.raises(ResourceNotFoundError):
            repo.require_book(999)

    def test_transition_status_aplica_con_estado_esperado(self, repo, book_id):
        applied = repo.transition_status(
            book_id, BookStatus.EXTRACTING, expected={BookStatus.PENDING},
        )
        assert applied is True
        assert repo.require_book(book_id).status == BookStatus.EXTRACTING

    def test_transition_status_rechaza_si_el_estado_cambio(self, repo, book_id):
        applied = repo.transition_status(
            book_id, BookStatus.GENERATING, expected={BookStatus.SEGMENTING},
        )
        assert applied is False
        assert repo.require_book(book_id).status == BookStatus.PENDING

    def test_transition_status_guarda_el_error(self, repo, book_id):
        repo.transition_status(book_id, BookStatus.FAILED, error="TextSourceError: vacío")
        book = repo.require_book(book_id)
        assert book.status == BookStatus.FAILED
        assert book.processing_error == "TextSourceError: vacío"

    def test_processing_cost_se_acumula(self, repo, book_id):
        repo.add_processing_cost(book_id, 0.069)
        repo.add_processing_cost(book_id, 0.069)
        repo.add_processing_cost(book_id, 0)
        assert repo.require_book(book_id).processing_cost == pytest.approx(0.138)

    def test_delete_book_borra_en_cascada(self, repo, book_id):
        scenes = repo.sync_scenes(book_id, TWO_SCENES)
        repo.replace_soundscape(scenes[0].id, "file:///a.mp3")
        repo.upsert_reading_progress("ana", book_id, 3)

        repo.delete_book(book_id)

        assert repo.get_pages(book_id) == []
        assert repo.get_scenes(book_id) == []
        assert repo.list_soundscapes() == []
        assert repo.get_reading_progress("ana", book_id) is None


# ------------------------------------------------------------------
# Pages
# ------------------------------------------------------------------

class TestPages:

    def test_save_pages_es_idempotente(self, repo, book_id):
        repo.save_pages(book_id, [(1, "Otra versión")])
        pages = repo.get_pages(book_id)
        assert len(pages) == 10
        assert pages[0].content == "Página 1"

    def test_sync_scenes_asigna_escena_a_cada_pagina(self, repo, book_id):
        scenes = repo.sync_scenes(book_id, TWO_SCENES)
        by_page = {p.page_number: p.scene_id for p in repo.get_pages(book_id)}
        assert by_page[1] == by_page[6] == scenes[0].id
        assert by_page[7] == by_page[10] == scenes[1].id


# ------------------------------------------------------------------
# Scenes
# ------------------------------------------------------------------

class TestScenes:

    def test_sync_scenes_persiste_descriptores(self, repo, book_id):
        scenes = repo.sync_scenes(book_id, TWO_SCENES)
        assert [(s.start_page, s.end_page) for s in scenes] == [(1, 6), (7, 10)]
        assert scenes[1].descriptors.setting == "city"
        assert scenes[1].fingerprint == "city|tense|low"
        assert scenes[0].page_count == 6

    def test_sync_scenes_conserva_escenas_identicas(self, repo, book_id):
        first = repo.sync_scenes(book_id, TWO_SCENES)
        repo.replace_soundscape(first[0].id, "file:///a.mp3")

        second = repo.sync_scenes(book_id, TWO_SCENES)

        assert [s.id for s in second] == [s.id for s in first]
        assert repo.get_soundscape_for_scene(first[0].id) is not None

    def test_sync_scenes_recrea_escenas_cambiadas(self, repo, book_id):
        first = repo.sync_scenes(book_id, TWO_SCENES)
        repo.replace_soundscape(first[1].id, "file:///b.mp3")

        changed = [make_draft(1, 1, 6), make_draft(2, 7, 10, setting="harbor")]
        second  = repo.sync_scenes(book_id, changed)

        assert second[0].id == first[0].id
        assert second[1].id != first[1].id
        assert repo.get_soundscape_for_scene(second[1].id) is None

    def test_sync_scenes_rechaza_rangos_solapados(self, repo, book_id):
        with pytest.raises(ValidationError):
            repo.sync_scenes(book_id, [make_draft(1, 1, 6), make_draft(2, 6, 10)])
        assert repo.get_scenes(book_id) == []

    def test_flag_scene_for_curation(self, repo, book_id):
        scene = repo.sync_scenes(book_id, TWO_SCENES)[0]
        repo.flag_scene_for_curation(scene.id, "UpstreamRejectedError: prompt filtrado")

        stored = repo.require_scene(scene.id)
        assert stored.needs_curation is True
        assert "filtrado" in stored.curation_reason

    def test_descriptores_con_clave_desconocida_lanzan_validation_error(self):
        with pytest.raises(ValidationError):
            SceneDescriptors.from_dict({"setting": "forest", "colour": "green"})


# ------------------------------------------------------------------
# Soundscapes
# ------------------------------------------------------------------

class TestSoundscapes:

    def test_replace_soundscape_borra_el_anterior(self, repo, book_id):
        scene = repo.sync_scenes(book_id, TWO_SCENES)[0]
        first  = repo.replace_soundscape(scene.id, "file:///a.mp3")
        second = repo.replace_soundscape(
            scene.id, "file:///b.mp3",
            source_type = SourceType.CURATED,
            tags        = SoundscapeTags(mood="calm"),
        )

        assert second.id != first.id
        assert repo.get_soundscape_for_scene(scene.id).audio_url == "file:///b.mp3"
        assert repo.get_soundscape_for_scene(scene.id).tags.mood == "calm"
        assert len(repo.list_soundscapes()) == 1

    def test_replace_soundscape_limpia_la_marca_de_curacion(self, repo, book_id):
        scene = repo.sync_scenes(book_id, TWO_SCENES)[0]
        repo.flag_scene_for_curation(scene.id, "sin audio")
        repo.replace_soundscape(scene.id, "file:///a.mp3")
        assert repo.require_scene(scene.id).needs_curation is False

    @pytest.mark.parametrize("duration", [29, 61])
    def test_duracion_fuera_de_rango(self, repo, book_id, duration):
        scene = repo.sync_scenes(book_id, TWO_SCENES)[0]
        with pytest.raises(ValidationError):
            repo.replace_soundscape(scene.id, "file:///a.mp3", duration_seconds=duration)

    def test_confidence_fuera_de_rango(self, repo, book_id):
        scene = repo.sync_scenes(book_id, TWO_SCENES)[0]
        with pytest.raises(ValidationError):
            repo.replace_soundscape(scene.id, "file:///a.mp3", confidence=1.5)

    def test_escena_inexistente(self, repo):
        with pytest.raises(ResourceNotFoundError):
            repo.replace_soundscape(42, "file:///a.mp3")

    def test_find_latest_por_fingerprint_entre_libros(self, repo, book_id):
        scenes = repo.sync_scenes(book_id, TWO_SCENES)
        repo.replace_soundscape(scenes[0].id, "file:///viejo.mp3")

        other = repo.create_book("Otro", "hash-otro")
        repo.save_pages(other, [(1, "x"), (2, "y")])
        other_scene = repo.sync_scenes(other, [make_draft(1, 1, 2)])[0]
        repo.replace_soundscape(other_scene.id, "file:///nuevo.mp3")

        found = repo.find_latest_soundscape_by_fingerprint("forest|calm|low")
        assert found.audio_url == "file:///nuevo.mp3"
        assert repo.find_latest_soundscape_by_fingerprint("") is None

    def test_cache_counts(self, repo, book_id):
        scenes = repo.sync_scenes(book_id, TWO_SCENES)
        repo.replace_soundscape(scenes[0].id, "file:///a.mp3")

        counts = repo.cache_counts()
        assert counts == {"total_soundscapes": 1, "total_scenes": 2, "unique_cache_keys": 1}


# ------------------------------------------------------------------
# Reading progress y quota
# ------------------------------------------------------------------

class TestReadingProgress:

    def test_upsert_actualiza_la_pagina(self, repo, book_id):
        repo.upsert_reading_progress("ana", book_id, 3)
        repo.upsert_reading_progress("ana", book_id, 8)
        assert repo.get_reading_progress("ana", book_id).current_page == 8

    @pytest.mark.parametrize("page", [0, 11])
    def test_pagina_fuera_de_rango(self, repo, book_id, page):
        with pytest.raises(ValidationError):
            repo.upsert_reading_progress("ana", book_id, page)

    def test_libro_inexistente(self, repo):
        with pytest.raises(ResourceNotFoundError):
            repo.upsert_reading_progress("ana", 999, 1)


class TestQuota:

    def test_token_usage_se_acumula(self, repo):
        repo.add_token_usage("claude", 100)
        repo.add_token_usage("claude", 50)
        assert repo.get_token_usage_today("claude") == 150
        assert repo.get_token_usage_today("gemini") == 0
