# tests/soundscapes/test_curation.py
import pytest

from storia.errors import ResourceNotFoundError, ValidationError
from storia.segmentation.segmenter import SceneDraft
from storia.soundscapes.cache import SoundscapeCache
from storia.soundscapes.curation import SoundscapeCurator
from storia.storage.models import SceneDescriptors, SourceType


@pytest.fixture
def scenes(repo):
    book_id = repo.create_book("Libro", "hash-libro")
    repo.save_pages(book_id, [(n, "texto") for n in range(1, 5)])
    descriptors = SceneDescriptors(setting="forest", mood="calm", activity_level="low")
    return repo.sync_scenes(book_id, [
        SceneDraft(1, 1, 2, 0, descriptors, "forest", "forest|calm|low"),
        SceneDraft(2, 3, 4, 1, descriptors, "forest", "forest|calm|low"),
    ])


@pytest.fixture
def curator(repo, storage):
    return SoundscapeCurator(repo, storage, SoundscapeCache(repo, storage))


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "lluvia.ogg"
    path.write_bytes(b"OggS-audio")
    return path


class TestCurateScene:

    def test_sube_el_audio_con_clave_de_curado(self, repo, curator, storage, scenes, audio_file):
        soundscape = curator.curate_scene(
            scenes[0].id, audio_file, duration_seconds=45, tags={"mood": "calm", "weather": "rain"},
        )

        assert soundscape.source_type == SourceType.CURATED
        assert soundscape.audio_url.endswith(f"audio/curated/{scenes[0].id}.ogg")
        assert soundscape.duration_seconds == 45
        assert soundscape.tags.weather == "rain"
        assert storage.get(f"audio/curated/{scenes[0].id}.ogg") == b"OggS-audio"

    def test_tag_desconocido_se_rechaza(self, curator, scenes, audio_file):
        with pytest.raises(ValidationError):
            curator.curate_scene(scenes[0].id, audio_file, tags={"genre": "ambient"})

    def test_archivo_inexistente(self, curator, scenes, tmp_path):
        with pytest.raises(ResourceNotFoundError):
            curator.curate_scene(scenes[0].id, tmp_path / "no.mp3")

    def test_escena_inexistente(self, curator, audio_file):
        with pytest.raises(ResourceNotFoundError):
            curator.curate_scene(999, audio_file)

    def test_reemplazo_libera_el_asset_anterior(self, repo, curator, storage, scenes, audio_file):
        old_url = storage.put(b"generado", f"audio/generated/{scenes[0].id}.mp3")
        repo.replace_soundscape(scenes[0].id, old_url)

        curator.curate_scene(scenes[0].id, audio_file)

        assert repo.count_soundscapes_with_url(old_url) == 0
        with pytest.raises(ResourceNotFoundError):
            storage.get(f"audio/generated/{scenes[0].id}.mp3")

    def test_recurar_no_pisa_el_audio_compartido(self, repo, curator, storage, scenes, audio_file, tmp_path):
        first = curator.curate_scene(scenes[0].id, audio_file)
        curator.assign_from(scenes[1].id, scenes[0].id)
        other = tmp_path / "viento.ogg"
        other.write_bytes(b"OggS-viento")

        second = curator.curate_scene(scenes[0].id, other)

        assert second.audio_url != first.audio_url
        assert repo.get_soundscape_for_scene(scenes[1].id).audio_url == first.audio_url
        assert storage.get(f"audio/curated/{scenes[0].id}.ogg") == b"OggS-audio"
        assert storage.get(storage.key_for_url(second.audio_url)) == b"OggS-viento"

    def test_recurar_sin_compartir_reutiliza_la_clave(self, curator, storage, scenes, audio_file, tmp_path):
        first = curator.curate_scene(scenes[0].id, audio_file)
        other = tmp_path / "viento.ogg"
        other.write_bytes(b"OggS-viento")

        second = curator.curate_scene(scenes[0].id, other)

        assert second.audio_url == first.audio_url
        assert storage.get(f"audio/curated/{scenes[0].id}.ogg") == b"OggS-viento"


class TestAssignFrom:

    def test_copia_el_soundscape_de_otra_escena(self, repo, curator, scenes):
        repo.replace_soundscape(scenes[0].id, "https://cdn.test/a.mp3", confidence=0.8)

        copied = curator.assign_from(scenes[1].id, scenes[0].id)

        assert copied.audio_url == "https://cdn.test/a.mp3"
        assert copied.scene_id == scenes[1].id
        assert repo.count_soundscapes_with_url("https://cdn.test/a.mp3") == 2

    def test_origen_sin_soundscape(self, curator, scenes):
        with pytest.raises(ResourceNotFoundError):
            curator.assign_from(scenes[1].id, scenes[0].id)
