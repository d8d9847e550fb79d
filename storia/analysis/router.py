# analysis/router.py
import logging

from storia.analysis.base import ContentAnalyzer
from storia.analysis.models import AnalysisResponse
from storia.errors import AllAnalyzersExhaustedError, PermanentUpstreamError

logger = logging.getLogger(__name__)


class AnalyzerRouter(ContentAnalyzer):
    """
    Decide qué analizador usar en cada llamada.
    El Extractor llama a AnalyzerRouter.analyze(), nunca a un adaptador directamente.

    - Selecciona el analizador disponible de mayor prioridad
    - Hace failover si el analizador falla por red o rate limit
    - Propaga errores permanentes (la misma petición fallaría en cualquier modelo)
    """

    def __init__(self, analyzers: list[ContentAnalyzer]):
        # La lista ya viene ordenada por prioridad desde el config
        if not analyzers:
            raise ValueError("El AnalyzerRouter necesita al menos un analizador")
        self._analyzers = analyzers

    @property
    def name(self) -> str:
        return "router"

    def is_available(self) -> bool:
        return any(a.is_available() for a in self._analyzers)

    def analyze(self, text: str, granularity: str = "spread") -> AnalysisResponse:
        """
        Lanza AllAnalyzersExhaustedError (transitorio) si ninguno responde,
        de modo que el Extractor lo reintenta con backoff.
        """
        last_error: Exception | None = None

        for analyzer in self._analyzers:
            if not analyzer.is_available():
                logger.info("Analizador %s no disponible (quota), saltando", analyzer.name)
                continue

            try:
                logger.debug("Intentando análisis con %s", analyzer.name)
                response = analyzer.analyze(text, granularity)
                logger.info(
                    "Spread analizado con %s | tokens: %d+%d",
                    analyzer.name,
                    response.tokens_input,
                    response.tokens_output,
                )
                return response

            except PermanentUpstreamError as e:
                logger.error(
                    "Error permanente en %s, no se hace failover: %s",
                    analyzer.name, e,
                )
                raise

            except Exception as e:
                logger.warning(
                    "Analizador %s falló con error retryable: %s. Pasando al siguiente.",
                    analyzer.name, e,
                )
                last_error = e
                continue

        raise AllAnalyzersExhaustedError(
            f"Ningún analizador disponible. Último error: {last_error}"
        )

    def available_analyzers(self) -> list[str]:
        return [a.name for a in self._analyzers if a.is_available()]
