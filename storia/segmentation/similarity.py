# segmentation/similarity.py
import re
from typing import Optional

from storia.analysis.models import Descriptor

_LEADING_ARTICLE_RE = re.compile(r"^(a|an|the)\s+", re.IGNORECASE)
_WHITESPACE_RE      = re.compile(r"\s+")

# Pesos del score de similitud (suman 1.0)
_SETTING_WEIGHT   = 0.4
_MOOD_WEIGHT      = 0.3
_INTENSITY_WEIGHT = 0.2
_WEATHER_WEIGHT   = 0.05
_TIME_WEIGHT      = 0.05

EQUIVALENCE_THRESHOLD = 0.85


def normalize_label(value: Optional[str]) -> str:
    """Minúsculas, sin bordes, espacios colapsados."""
    return _WHITESPACE_RE.sub(" ", (value or "").strip().lower())


def normalize_setting(value: Optional[str]) -> str:
    """Como normalize_label pero sin artículo inicial: 'The forest' == 'forest'."""
    return normalize_label(_LEADING_ARTICLE_RE.sub("", (value or "").strip()))


def is_scene_change(previous: Descriptor, current: Descriptor) -> bool:
    """
    Hay cambio de escena si cambia el setting, cambia el mood
    o la intensidad se mueve al menos un nivel.
    """
    if normalize_setting(previous.setting) != normalize_setting(current.setting):
        return True
    if normalize_label(previous.mood) != normalize_label(current.mood):
        return True
    return abs(previous.intensity.level - current.intensity.level) >= 1


def similarity_score(first: Descriptor, second: Descriptor) -> float:
    """
    Score en [0, 1] entre dos descriptores.
    La intensidad adyacente (un nivel) recibe la mitad del peso;
    weather y time_of_day ausentes en ambos cuentan como coincidencia.
    """
    score = 0.0

    if normalize_setting(first.setting) == normalize_setting(second.setting):
        score += _SETTING_WEIGHT

    if normalize_label(first.mood) == normalize_label(second.mood):
        score += _MOOD_WEIGHT

    diff = abs(first.intensity.level - second.intensity.level)
    if diff == 0:
        score += _INTENSITY_WEIGHT
    elif diff == 1:
        score += _INTENSITY_WEIGHT * 0.5

    score += _WEATHER_WEIGHT * _optional_match(first.weather, second.weather)
    score += _TIME_WEIGHT * _optional_match(first.time_of_day, second.time_of_day)

    return round(score, 4)


def are_equivalent(
    first:     Descriptor,
    second:    Descriptor,
    threshold: float = EQUIVALENCE_THRESHOLD,
) -> bool:
    return similarity_score(first, second) >= threshold


def _optional_match(first: Optional[str], second: Optional[str]) -> float:
    if first and second:
        return 1.0 if normalize_label(first) == normalize_label(second) else 0.0
    if not first and not second:
        return 1.0
    return 0.0
