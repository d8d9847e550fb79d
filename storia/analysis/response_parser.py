# analysis/response_parser.py
import json
import re
import logging
from typing import Optional

from storia.analysis.models import Descriptor, Intensity
from storia.errors import InvalidResponseError

logger = logging.getLogger(__name__)

# Captura JSON dentro de bloques ```json ... ``` o ``` ... ```
_MARKDOWN_JSON_RE = re.compile(
    r"```(?:json)?\s*(\{.*?\})\s*```",
    re.DOTALL,
)

# Captura el primer objeto JSON que aparezca en el texto
_BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)

_REQUIRED_FIELDS = ("setting", "mood", "intensity", "audio_prompt")


def parse_descriptor_response(raw_text: str, model_name: str) -> Descriptor:
    """
    Localiza el JSON con degradación progresiva y luego valida estricto.

    Estrategia de localización:
    1. JSON directo (el camino feliz)
    2. JSON dentro de bloque markdown
    3. Primer objeto JSON en el texto libre

    A diferencia de la localización, la validación no rellena huecos:
    sin campos obligatorios o con intensity desconocida → InvalidResponseError.
    """
    data = _locate_json(raw_text.strip(), model_name)
    if data is None:
        raise InvalidResponseError(f"{model_name} devolvió una respuesta sin JSON parseable")

    return _to_descriptor(data, model_name)


def _locate_json(text: str, model_name: str) -> Optional[dict]:
    result = _try_parse(text)
    if result:
        return result

    match = _MARKDOWN_JSON_RE.search(text)
    if match:
        result = _try_parse(match.group(1))
        if result:
            logger.warning(
                "%s envolvió la respuesta en markdown, considera reforzar el prompt",
                model_name,
            )
            return result

    match = _BARE_JSON_RE.search(text)
    if match:
        result = _try_parse(match.group(0))
        if result:
            logger.warning("%s devolvió JSON con texto extra alrededor", model_name)
            return result

    return None


def _try_parse(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except (json.JSONDecodeError, ValueError):
        pass
    return None


def _to_descriptor(data: dict, model_name: str) -> Descriptor:
    missing = [name for name in _REQUIRED_FIELDS if not _clean(data.get(name))]
    if missing:
        raise InvalidResponseError(
            f"{model_name}: faltan campos obligatorios: {', '.join(missing)}"
        )

    try:
        intensity = Intensity.parse(str(data["intensity"]))
    except ValueError:
        raise InvalidResponseError(
            f"{model_name}: intensity inválida: {data['intensity']!r}"
        )

    return Descriptor(
        setting           = _clean(data.get("setting")),
        mood              = _clean(data.get("mood")),
        intensity         = intensity,
        weather           = _clean(data.get("weather")) or None,
        time_of_day       = _clean(data.get("time_of_day")) or None,
        audio_prompt      = _clean(data.get("audio_prompt")),
        atmosphere        = _clean(data.get("atmosphere")) or None,
        scene_type        = _clean(data.get("scene_type")) or None,
        dominant_elements = _join_elements(data.get("dominant_elements")),
    )


def _clean(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _join_elements(value) -> Optional[str]:
    """Algunos modelos devuelven lista en vez de string."""
    if isinstance(value, list):
        value = ", ".join(str(v).strip() for v in value if v)
    return _clean(value) or None
