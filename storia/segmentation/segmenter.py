# segmentation/segmenter.py
import logging
from dataclasses import dataclass
from typing import Iterable

from storia.analysis.extractor import Spread, SpreadAnalysis
from storia.analysis.models import Descriptor
from storia.errors import ValidationError
from storia.segmentation.similarity import is_scene_change
from storia.soundscapes.cache import fingerprint
from storia.storage.models import SceneDescriptors

logger = logging.getLogger(__name__)

PAGES_PER_SPREAD = 2


@dataclass
class SceneDraft:
    """Escena calculada, todavía sin persistir."""
    scene_number:      int
    start_page:        int
    end_page:          int
    page_spread_index: int
    descriptors:       SceneDescriptors
    audio_prompt:      str
    fingerprint:       str


def spread_index_for_page(page_number: int) -> int:
    return (page_number - 1) // PAGES_PER_SPREAD


def build_spreads(pages: Iterable[tuple[int, str]]) -> list[Spread]:
    """
    Agrupa las páginas de dos en dos: (1,2), (3,4)...
    Exige numeración 1..N sin huecos.
    """
    ordered = sorted(pages, key=lambda p: p[0])
    if not ordered:
        raise ValidationError("El libro no tiene páginas")

    for expected, (number, _) in enumerate(ordered, start=1):
        if number != expected:
            raise ValidationError(
                f"Numeración de páginas no contigua: se esperaba {expected}, llegó {number}"
            )

    spreads = []
    for offset in range(0, len(ordered), PAGES_PER_SPREAD):
        group = ordered[offset:offset + PAGES_PER_SPREAD]
        spreads.append(Spread(
            index      = offset // PAGES_PER_SPREAD,
            start_page = group[0][0],
            end_page   = group[-1][0],
            text       = "\n\n".join(text.strip() for _, text in group if text and text.strip()),
        ))
    return spreads


def scene_descriptors_from(descriptor: Descriptor) -> SceneDescriptors:
    """Descriptor de análisis → mapa cerrado de la escena (intensity va en activity_level)."""
    return SceneDescriptors(
        setting           = descriptor.setting or None,
        mood              = descriptor.mood or None,
        weather           = descriptor.weather,
        time_of_day       = descriptor.time_of_day,
        activity_level    = descriptor.intensity.value,
        atmosphere        = descriptor.atmosphere,
        scene_type        = descriptor.scene_type,
        dominant_elements = descriptor.dominant_elements,
    )


class SceneSegmenter:
    """
    Convierte la secuencia de descriptores por spread en una partición
    del libro en escenas.

    Reglas:
    - El primer spread abre la escena 1.
    - Hay frontera cuando cambia el setting, cambia el mood o la
      intensidad se mueve al menos un nivel respecto al spread anterior.
    - Un spread sin descriptor (análisis fallido) extiende la escena actual.
    - Los descriptores de la escena son los de su primer spread, sin promediar.
    """

    def segment(self, analyses: list[SpreadAnalysis]) -> list[SceneDraft]:
        ordered = sorted(analyses, key=lambda a: a.spread.index)
        if not ordered:
            raise ValidationError("No hay spreads que segmentar")

        drafts:   list[SceneDraft] = []
        previous: Descriptor | None = None

        for analysis in ordered:
            spread  = analysis.spread
            current = analysis.descriptor

            if not drafts:
                opening = current or Descriptor.neutral()
                drafts.append(self._open_scene(1, spread, opening))
                previous = opening
                continue

            if current is None:
                logger.debug("Spread %d sin descriptor, extiende la escena actual", spread.index)
                drafts[-1].end_page = spread.end_page
                continue

            if is_scene_change(previous, current):
                drafts.append(self._open_scene(len(drafts) + 1, spread, current))
            else:
                drafts[-1].end_page = spread.end_page
            previous = current

        logger.info("%d spreads → %d escenas", len(ordered), len(drafts))
        return drafts

    @staticmethod
    def _open_scene(number: int, spread: Spread, descriptor: Descriptor) -> SceneDraft:
        descriptors = scene_descriptors_from(descriptor)
        return SceneDraft(
            scene_number      = number,
            start_page        = spread.start_page,
            end_page          = spread.end_page,
            page_spread_index = spread.index,
            descriptors       = descriptors,
            audio_prompt      = descriptor.audio_prompt,
            fingerprint       = fingerprint(descriptors),
        )


def validate_partition(drafts: list[SceneDraft], total_pages: int) -> None:
    """
    Cobertura exacta de 1..total_pages: sin huecos ni solapes,
    start_page <= end_page y scene_number estrictamente creciente.
    """
    if total_pages < 1:
        raise ValidationError("El libro no tiene páginas")
    if not drafts:
        raise ValidationError("La partición está vacía")

    next_page   = 1
    last_number = 0
    for draft in drafts:
        if draft.scene_number <= last_number:
            raise ValidationError(f"scene_number no creciente: {draft.scene_number}")
        if draft.start_page > draft.end_page:
            raise ValidationError(
                f"Escena {draft.scene_number}: start_page {draft.start_page} > end_page {draft.end_page}"
            )
        if draft.start_page != next_page:
            kind = "hueco" if draft.start_page > next_page else "solape"
            raise ValidationError(
                f"Escena {draft.scene_number}: {kind} en la página {min(draft.start_page, next_page)}"
            )
        next_page   = draft.end_page + 1
        last_number = draft.scene_number

    if next_page != total_pages + 1:
        raise ValidationError(
            f"La partición termina en la página {next_page - 1}, el libro tiene {total_pages}"
        )
