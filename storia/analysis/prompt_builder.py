# analysis/prompt_builder.py
from typing import Optional


_ANALYSIS_SYSTEM = """\
    Eres un diseñador de sonido que lee novelas para crear ambientes sonoros.
    Analiza el fragmento y describe el entorno que escucharía el lector.

    --- CONTEXTO ---
    - Unidad de análisis: {granularity_label}
    - Páginas: {page_label}

    --- QUÉ EXTRAER ---
    - setting: lugar físico concreto (ej. "dark forest", "tavern", "ship deck").
    - mood: tono emocional dominante en una o dos palabras (ej. "tense", "peaceful").
    - weather: clima si se menciona, si no null.
    - time_of_day: momento del día si se menciona, si no null.
    - intensity: EXACTAMENTE uno de "low", "medium", "high".
    - atmosphere: textura general del ambiente, si no null.
    - scene_type: "dialogue", "action", "description" o "introspection".
    - dominant_elements: sonidos principales separados por comas.
    - audio_prompt: descripción en inglés de un loop ambiental de 30 segundos,
      sin voces ni música con letra (ej. "gentle rain on leaves, distant thunder").

    --- FORMATO DE SALIDA (ESTRICTO) ---
    Devuelve EXACTAMENTE 1 objeto JSON válido y nada más.
    El primer carácter debe ser "{{" y el último "}}".
    No uses markdown. No uses ```json. No añadas comentarios ni texto extra.

    Estructura exacta:
    {{
      "setting": "",
      "mood": "",
      "weather": null,
      "time_of_day": null,
      "intensity": "medium",
      "atmosphere": null,
      "scene_type": "description",
      "dominant_elements": "",
      "audio_prompt": ""
    }}
    """

_GRANULARITY_LABELS = {
    "page":   "una página",
    "spread": "un spread de dos páginas",
}


def build_analysis_prompt(
    granularity: str           = "spread",
    start_page:  Optional[int] = None,
    end_page:    Optional[int] = None,
) -> str:
    """
    Construye el system prompt para el análisis narrativo.
    El texto de las páginas viaja en el mensaje de usuario.
    """
    return _ANALYSIS_SYSTEM.format(
        granularity_label = _GRANULARITY_LABELS.get(granularity, granularity),
        page_label        = _format_pages(start_page, end_page),
    )


def _format_pages(start_page: Optional[int], end_page: Optional[int]) -> str:
    if start_page is None:
        return "sin especificar"
    if end_page is None or end_page == start_page:
        return str(start_page)
    return f"{start_page}-{end_page}"
