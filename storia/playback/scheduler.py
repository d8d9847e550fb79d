# playback/scheduler.py
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from storia.playback.timeline import SceneCue, SceneTimeline
from storia.segmentation.segmenter import spread_index_for_page

logger = logging.getLogger(__name__)

DEFAULT_VOLUME    = 0.7
CROSSFADE_SECONDS = 3.0
PRELOAD_AHEAD     = 3     # spreads por delante del lector
KEEP_BEHIND       = 1     # spreads por detrás antes de liberar el buffer


class PlaybackState(Enum):
    IDLE        = "idle"
    LOADING     = "loading"
    PLAYING     = "playing"
    CROSSFADING = "crossfading"
    PAUSED      = "paused"
    ERROR       = "error"


@dataclass(frozen=True)
class PlayerStatus:
    state:         PlaybackState
    scene_id:      Optional[int] = None   # escena destino / activa
    from_scene_id: Optional[int] = None   # solo en CROSSFADING


class AudioBackend(Protocol):
    """
    Lo mínimo que el scheduler necesita del motor de audio.
    load() es asíncrono: el backend avisa con
    scheduler.asset_loaded(scene_id) o scheduler.asset_failed(scene_id, error).
    Una voz por escena como mucho.
    """

    def load(self, scene_id: int, url: str) -> None: ...

    def start(self, scene_id: int) -> None:
        """Arranca el loop de la escena desde el principio, con gain 0."""
        ...

    def set_gain(self, scene_id: int, gain: float) -> None: ...

    def stop(self, scene_id: int) -> None: ...

    def evict(self, scene_id: int) -> None:
        """Libera el buffer decodificado."""
        ...


@dataclass
class _Ramp:
    started_at: float
    duration:   float
    start:      dict[int, float]
    target:     dict[int, float]

    def levels_at(self, now: float) -> tuple[dict[int, float], bool]:
        progress = 1.0 if self.duration <= 0 else min(1.0, max(0.0, (now - self.started_at) / self.duration))
        levels = {
            scene_id: self.start.get(scene_id, 0.0)
            + (self.target.get(scene_id, 0.0) - self.start.get(scene_id, 0.0)) * progress
            for scene_id in set(self.start) | set(self.target)
        }
        return levels, progress >= 1.0


class PlaybackScheduler:
    """
    Reproductor de una sesión de lectura:

        Idle → Loading(s) → Playing(s) → Crossfading(s, t) → Playing(t)

    más Paused (desde Playing/Crossfading) y Error(s) si el audio de la
    escena activa no carga. Toda entrada (navegación, fin de carga,
    tick del crossfade, pausa, volumen) pasa por una única cola de
    despacho, de modo que dos transiciones nunca compiten por la salida.

    Los niveles de cada voz van de 0 a 1; el gain real es nivel × volumen.
    """

    def __init__(
        self,
        timeline:          SceneTimeline,
        backend:           AudioBackend,
        clock:             Callable[[], float] = time.monotonic,
        volume:            float               = DEFAULT_VOLUME,
        crossfade_seconds: float               = CROSSFADE_SECONDS,
        preload_ahead:     int                 = PRELOAD_AHEAD,
        keep_behind:       int                 = KEEP_BEHIND,
    ):
        self._timeline          = timeline
        self._backend           = backend
        self._clock             = clock
        self._volume            = _clamp(volume)
        self._crossfade_seconds = crossfade_seconds
        self._preload_ahead     = preload_ahead
        self._keep_behind       = keep_behind

        self._state:   PlaybackState  = PlaybackState.IDLE
        self._target:  Optional[int]  = None
        self._from:    Optional[int]  = None
        self._spread:  Optional[int]  = None
        self._ramp:    Optional[_Ramp] = None
        self._levels:  dict[int, float] = {}   # voces sonando
        self._loaded:  set[int] = set()
        self._loading: set[int] = set()
        self._failed:  set[int] = set()

        self._inbox: deque = deque()
        self._lock     = threading.Lock()
        self._draining = False

    # ------------------------------------------------------------------
    # Lectura de estado
    # ------------------------------------------------------------------

    @property
    def status(self) -> PlayerStatus:
        from_id = self._from if self._state == PlaybackState.CROSSFADING else None
        return PlayerStatus(self._state, self._target, from_id)

    @property
    def volume(self) -> float:
        return self._volume

    def gain_of(self, scene_id: int) -> float:
        return self._levels.get(scene_id, 0.0) * self._volume

    @property
    def buffered(self) -> set[int]:
        return set(self._loaded)

    # ------------------------------------------------------------------
    # Entradas: todas pasan por _dispatch
    # ------------------------------------------------------------------

    def navigate(self, page: int) -> None:
        self._dispatch(self._on_navigate, page)

    def asset_loaded(self, scene_id: int) -> None:
        self._dispatch(self._on_loaded, scene_id)

    def asset_failed(self, scene_id: int, error: Exception) -> None:
        self._dispatch(self._on_failed, scene_id, error)

    def tick(self) -> None:
        self._dispatch(self._on_tick)

    def pause(self) -> None:
        self._dispatch(self._on_pause)

    def resume(self) -> None:
        self._dispatch(self._on_resume)

    def set_volume(self, volume: float) -> None:
        self._dispatch(self._on_volume, volume)

    def close(self) -> None:
        self._dispatch(self._on_close)

    def _dispatch(self, handler: Callable, *args) -> None:
        with self._lock:
            self._inbox.append((handler, args))
            if self._draining:
                return   # lo procesa quien ya está drenando
            self._draining = True

        try:
            while True:
                with self._lock:
                    if not self._inbox:
                        self._draining = False
                        return
                    handler, args = self._inbox.popleft()
                handler(*args)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_navigate(self, page: int) -> None:
        spread = spread_index_for_page(page)
        self._spread = spread
        self._refresh_buffers(spread)

        cue       = self._timeline.scene_for_spread(spread)
        target_id = cue.scene_id if cue is not None and cue.has_audio else None

        if target_id == self._target and self._state != PlaybackState.ERROR:
            return   # misma escena: el loop sigue sin interrupción

        logger.debug("Página %d → %s", page, cue_label(cue))
        if self._state == PlaybackState.PAUSED:
            self._target = target_id
            return

        self._transition_to(target_id)

    def _on_loaded(self, scene_id: int) -> None:
        self._loading.discard(scene_id)
        self._failed.discard(scene_id)
        self._loaded.add(scene_id)

        if scene_id == self._target and self._state == PlaybackState.LOADING:
            self._transition_to(scene_id)

    def _on_failed(self, scene_id: int, error: Exception) -> None:
        self._loading.discard(scene_id)
        self._failed.add(scene_id)
        logger.warning("No se pudo cargar el audio de la escena %d: %s", scene_id, error)

        if scene_id == self._target and self._state == PlaybackState.LOADING:
            self._enter_error(scene_id)

    def _on_tick(self) -> None:
        if self._ramp is None:
            return

        levels, finished = self._ramp.levels_at(self._clock())
        self._apply_levels(levels)

        if finished:
            self._ramp = None
            for scene_id in [s for s, level in self._levels.items() if level <= 0.0]:
                self._release_voice(scene_id)
            self._from = None
            if self._state == PlaybackState.CROSSFADING:
                self._state = PlaybackState.PLAYING if self._target is not None else PlaybackState.IDLE

    def _on_pause(self) -> None:
        # En Loading todavía suena la escena anterior
        loading_audible = (
            self._state == PlaybackState.LOADING
            and any(level > 0.0 for level in self._levels.values())
        )
        if self._state not in (PlaybackState.PLAYING, PlaybackState.CROSSFADING) and not loading_audible:
            return
        self._silence()
        self._state = PlaybackState.PAUSED

    def _on_resume(self) -> None:
        if self._state != PlaybackState.PAUSED:
            return
        self._state = PlaybackState.IDLE
        target, self._target = self._target, None
        self._transition_to(target)   # el loop arranca desde el principio

    def _on_volume(self, volume: float) -> None:
        self._volume = _clamp(volume)
        for scene_id, level in self._levels.items():
            self._backend.set_gain(scene_id, level * self._volume)

    def _on_close(self) -> None:
        self._silence()
        for scene_id in list(self._loaded):
            self._backend.evict(scene_id)
        self._loaded.clear()
        self._loading.clear()
        self._target = None
        self._state  = PlaybackState.IDLE

    # ------------------------------------------------------------------
    # Transiciones
    # ------------------------------------------------------------------

    def _transition_to(self, target_id: Optional[int]) -> None:
        self._target = target_id

        if target_id is None:
            if self._levels:
                self._begin_ramp({})      # fade out hacia el silencio
            else:
                self._state = PlaybackState.IDLE
            return

        if target_id not in self._loaded:
            self._state = PlaybackState.LOADING    # el audio actual sigue sonando
            self._request_load(target_id, retry_failed=True)
            return

        if not any(level > 0.0 for level in self._levels.values()):
            # Nada sonando: arranque directo sin crossfade
            self._silence()
            self._backend.start(target_id)
            self._apply_levels({target_id: 1.0})
            self._state = PlaybackState.PLAYING
            return

        if target_id not in self._levels:
            self._backend.start(target_id)
            self._levels[target_id] = 0.0
        self._begin_ramp({target_id: 1.0})

    def _begin_ramp(self, target_levels: dict[int, float]) -> None:
        """
        Cancela la rampa en curso y empieza otra desde los niveles actuales.
        Las rampas nunca se apilan.
        El origen es la voz más alta que no es destino.
        """
        now = self._clock()
        if self._ramp is not None:
            levels, _ = self._ramp.levels_at(now)
            self._apply_levels(levels)

        self._ramp = _Ramp(
            started_at = now,
            duration   = self._crossfade_seconds,
            start      = dict(self._levels),
            target     = {scene_id: target_levels.get(scene_id, 0.0)
                          for scene_id in set(self._levels) | set(target_levels)},
        )
        self._from  = self._loudest_voice(exclude=set(target_levels))
        self._state = PlaybackState.CROSSFADING
        logger.debug("Crossfade %s → %s (%.1fs)", self._from, self._target, self._crossfade_seconds)

    def _enter_error(self, scene_id: int) -> None:
        self._silence()
        self._target = scene_id
        self._state  = PlaybackState.ERROR

    # ------------------------------------------------------------------
    # Buffers y voces
    # ------------------------------------------------------------------

    def _refresh_buffers(self, spread: int) -> None:
        """Precarga los próximos spreads y libera los que quedaron atrás."""
        window = self._timeline.scenes_for_spreads(spread, spread + self._preload_ahead)
        for cue in window:
            if cue.has_audio:
                self._request_load(cue.scene_id, retry_failed=False)

        for scene_id in list(self._loaded):
            cue = self._timeline.get(scene_id)
            if cue is None or scene_id in self._levels or scene_id == self._target:
                continue
            if cue.last_spread < spread - self._keep_behind:
                self._backend.evict(scene_id)
                self._loaded.discard(scene_id)
                logger.debug("Buffer de la escena %d liberado", scene_id)

    def _request_load(self, scene_id: int, retry_failed: bool) -> None:
        if scene_id in self._loaded or scene_id in self._loading:
            return
        if scene_id in self._failed and not retry_failed:
            return

        cue = self._timeline.get(scene_id)
        if cue is None or not cue.has_audio:
            return

        self._failed.discard(scene_id)
        self._loading.add(scene_id)
        try:
            self._backend.load(scene_id, cue.audio_url)
        except Exception as e:
            self._on_failed(scene_id, e)

    def _apply_levels(self, levels: dict[int, float]) -> None:
        for scene_id, level in levels.items():
            self._levels[scene_id] = level
            self._backend.set_gain(scene_id, level * self._volume)

    def _release_voice(self, scene_id: int) -> None:
        self._backend.stop(scene_id)
        self._levels.pop(scene_id, None)

    def _loudest_voice(self, exclude: set[int]) -> Optional[int]:
        audible = [(level, scene_id) for scene_id, level in self._levels.items()
                   if scene_id not in exclude and level > 0.0]
        return max(audible)[1] if audible else None

    def _silence(self) -> None:
        """Corta la salida al instante, sin fade."""
        self._ramp = None
        self._from = None
        for scene_id in list(self._levels):
            self._release_voice(scene_id)


def _clamp(volume: float) -> float:
    return max(0.0, min(1.0, float(volume)))


def cue_label(cue: Optional[SceneCue]) -> str:
    if cue is None:
        return "sin escena"
    return f"escena {cue.scene_number} (págs {cue.start_page}-{cue.end_page})"
