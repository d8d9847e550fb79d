# playback/timeline.py
import bisect
from dataclasses import dataclass
from typing import Optional

from storia.errors import ValidationError
from storia.segmentation.segmenter import PAGES_PER_SPREAD, spread_index_for_page
from storia.storage.repository import Repository


@dataclass(frozen=True)
class SceneCue:
    """Lo que el reproductor necesita saber de una escena."""
    scene_id:         int
    scene_number:     int
    start_page:       int
    end_page:         int
    audio_url:        Optional[str] = None   # None: escena solo texto, en silencio
    duration_seconds: Optional[int] = None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_url)

    @property
    def first_spread(self) -> int:
        return spread_index_for_page(self.start_page)

    @property
    def last_spread(self) -> int:
        return spread_index_for_page(self.end_page)


class SceneTimeline:
    """Resolución página/spread → escena sobre una partición ordenada."""

    def __init__(self, cues: list[SceneCue]):
        self._cues   = sorted(cues, key=lambda c: c.start_page)
        self._starts = [c.start_page for c in self._cues]

        for previous, current in zip(self._cues, self._cues[1:]):
            if current.start_page <= previous.end_page:
                raise ValidationError(
                    f"Escenas {previous.scene_number} y {current.scene_number} se solapan"
                )

    @property
    def cues(self) -> list[SceneCue]:
        return list(self._cues)

    @property
    def total_pages(self) -> int:
        return self._cues[-1].end_page if self._cues else 0

    def scene_for_page(self, page: int) -> Optional[SceneCue]:
        position = bisect.bisect_right(self._starts, page) - 1
        if position < 0:
            return None
        cue = self._cues[position]
        return cue if cue.start_page <= page <= cue.end_page else None

    def scene_for_spread(self, spread_index: int) -> Optional[SceneCue]:
        first_page = spread_index * PAGES_PER_SPREAD + 1
        return self.scene_for_page(first_page) or self.scene_for_page(first_page + 1)

    def scenes_for_spreads(self, first: int, last: int) -> list[SceneCue]:
        """Escenas distintas que cubren los spreads first..last, en orden."""
        seen, result = set(), []
        for spread in range(first, last + 1):
            cue = self.scene_for_spread(spread)
            if cue is not None and cue.scene_id not in seen:
                seen.add(cue.scene_id)
                result.append(cue)
        return result

    def get(self, scene_id: int) -> Optional[SceneCue]:
        return next((c for c in self._cues if c.scene_id == scene_id), None)


def load_timeline(repo: Repository, book_id: int) -> SceneTimeline:
    repo.require_book(book_id)
    soundscapes = repo.get_soundscapes_for_book(book_id)

    cues = []
    for scene in repo.get_scenes(book_id):
        soundscape = soundscapes.get(scene.id)
        cues.append(SceneCue(
            scene_id         = scene.id,
            scene_number     = scene.scene_number,
            start_page       = scene.start_page,
            end_page         = scene.end_page,
            audio_url        = soundscape.audio_url if soundscape else None,
            duration_seconds = soundscape.duration_seconds if soundscape else None,
        ))
    return SceneTimeline(cues)
