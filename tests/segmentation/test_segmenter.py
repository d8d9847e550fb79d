# tests/segmentation/test_segmenter.py
import pytest

from storia.analysis.extractor import Spread, SpreadAnalysis, SpreadOutcome
from storia.analysis.models import Descriptor, Intensity
from storia.errors import ValidationError
from storia.segmentation.segmenter import (
    SceneDraft,
    SceneSegmenter,
    build_spreads,
    spread_index_for_page,
    validate_partition,
)
from storia.storage.models import SceneDescriptors

FOREST = Descriptor(setting="forest", mood="calm", intensity=Intensity.LOW, audio_prompt="calm forest ambience")
CITY   = Descriptor(setting="city", mood="tense", intensity=Intensity.HIGH, audio_prompt="busy city street")


def pages(n: int) -> list[tuple[int, str]]:
    return [(number, f"Texto de la página {number}.") for number in range(1, n + 1)]


def analyses_for(total_pages: int, descriptors: list) -> list[SpreadAnalysis]:
    """Un descriptor por spread; None simula un análisis fallido."""
    spreads = build_spreads(pages(total_pages))
    assert len(spreads) == len(descriptors)
    return [
        SpreadAnalysis(
            spread     = spread,
            descriptor = descriptor,
            outcome    = SpreadOutcome.ANALYZED if descriptor else SpreadOutcome.FAILED,
        )
        for spread, descriptor in zip(spreads, descriptors)
    ]


@pytest.fixture
def segmenter():
    return SceneSegmenter()


# ------------------------------------------------------------------
# Spreads
# ------------------------------------------------------------------

class TestBuildSpreads:

    def test_agrupa_paginas_de_dos_en_dos(self):
        spreads = build_spreads(pages(5))
        assert [(s.index, s.start_page, s.end_page) for s in spreads] == [
            (0, 1, 2), (1, 3, 4), (2, 5, 5),
        ]
        assert "página 1" in spreads[0].text and "página 2" in spreads[0].text

    def test_numeracion_con_huecos_es_invalida(self):
        with pytest.raises(ValidationError):
            build_spreads([(1, "a"), (3, "b")])

    def test_libro_sin_paginas(self):
        with pytest.raises(ValidationError):
            build_spreads([])

    @pytest.mark.parametrize("page,expected", [(1, 0), (2, 0), (3, 1), (10, 4)])
    def test_spread_index_for_page(self, page, expected):
        assert spread_index_for_page(page) == expected


# ------------------------------------------------------------------
# Segmentación
# ------------------------------------------------------------------

class TestSceneSegmenter:

    def test_descriptores_constantes_dan_una_sola_escena(self, segmenter):
        drafts = segmenter.segment(analyses_for(10, [FOREST] * 5))

        assert len(drafts) == 1
        assert (drafts[0].start_page, drafts[0].end_page) == (1, 10)

    def test_cambio_de_setting_abre_escena_en_ese_spread(self, segmenter):
        drafts = segmenter.segment(analyses_for(10, [FOREST, FOREST, FOREST, CITY, CITY]))

        assert [(d.start_page, d.end_page) for d in drafts] == [(1, 6), (7, 10)]
        assert [d.scene_number for d in drafts] == [1, 2]
        assert drafts[1].page_spread_index == 3
        assert drafts[1].descriptors.setting == "city"
        assert drafts[1].audio_prompt == "busy city street"

    def test_cambio_de_un_nivel_de_intensidad_es_frontera(self, segmenter):
        louder = Descriptor(setting="forest", mood="calm", intensity=Intensity.MEDIUM, audio_prompt="x")
        drafts = segmenter.segment(analyses_for(4, [FOREST, louder]))
        assert len(drafts) == 2

    def test_normalizacion_evita_fronteras_espurias(self, segmenter):
        variant = Descriptor(setting="The  Forest ", mood="CALM", intensity=Intensity.LOW, audio_prompt="x")
        drafts = segmenter.segment(analyses_for(4, [FOREST, variant]))
        assert len(drafts) == 1

    def test_spread_fallido_extiende_la_escena_actual(self, segmenter):
        drafts = segmenter.segment(analyses_for(6, [FOREST, None, FOREST]))

        assert len(drafts) == 1
        assert drafts[0].end_page == 6

    def test_spread_fallido_no_cuenta_como_anterior(self, segmenter):
        drafts = segmenter.segment(analyses_for(6, [FOREST, None, CITY]))
        assert [(d.start_page, d.end_page) for d in drafts] == [(1, 4), (5, 6)]

    def test_primer_spread_fallido_abre_escena_neutral(self, segmenter):
        drafts = segmenter.segment(analyses_for(4, [None, FOREST]))

        assert drafts[0].start_page == 1
        assert drafts[0].descriptors.setting is None
        assert drafts[0].fingerprint == ""
        assert len(drafts) == 2

    def test_libro_de_una_pagina(self, segmenter):
        drafts = segmenter.segment(analyses_for(1, [FOREST]))
        assert [(d.start_page, d.end_page) for d in drafts] == [(1, 1)]

    def test_descriptores_de_la_escena_vienen_del_primer_spread(self, segmenter):
        rainy = Descriptor(setting="forest", mood="calm", intensity=Intensity.LOW,
                           weather="rain", audio_prompt="rain")
        drafts = segmenter.segment(analyses_for(4, [FOREST, rainy]))

        assert len(drafts) == 1
        assert drafts[0].descriptors.weather is None
        assert drafts[0].descriptors.activity_level == "low"
        assert drafts[0].fingerprint == "forest|calm|low"

    def test_la_particion_cubre_todas_las_paginas(self, segmenter):
        sequence = [FOREST, CITY, None, FOREST, CITY, CITY, FOREST]
        drafts   = segmenter.segment(analyses_for(13, sequence))
        validate_partition(drafts, 13)

    def test_sin_spreads(self, segmenter):
        with pytest.raises(ValidationError):
            segmenter.segment([])


# ------------------------------------------------------------------
# Validación de la partición
# ------------------------------------------------------------------

def draft(number, start, end):
    return SceneDraft(number, start, end, (start - 1) // 2, SceneDescriptors(), "", "")


class TestValidatePartition:

    def test_particion_valida(self):
        validate_partition([draft(1, 1, 6), draft(2, 7, 10)], 10)

    @pytest.mark.parametrize("drafts", [
        [draft(1, 1, 6), draft(2, 6, 10)],    # solape
        [draft(1, 1, 5), draft(2, 7, 10)],    # hueco
        [draft(1, 1, 6), draft(1, 7, 10)],    # numeración repetida
        [draft(1, 1, 6)],                     # no llega al final
        [draft(1, 2, 10)],                    # no empieza en 1
    ])
    def test_particiones_invalidas(self, drafts):
        with pytest.raises(ValidationError):
            validate_partition(drafts, 10)
