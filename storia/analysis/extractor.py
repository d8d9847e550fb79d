# analysis/extractor.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from storia.analysis.base import ContentAnalyzer
from storia.analysis.models import Descriptor
from storia.errors import (
    InvalidResponseError,
    PermanentUpstreamError,
    RetryExhaustedError,
    TransientUpstreamError,
)
from storia.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Spread:
    """Unidad fija de análisis: dos páginas consecutivas (la última puede ir sola)."""
    index:      int
    start_page: int
    end_page:   int
    text:       str


class SpreadOutcome(Enum):
    ANALYZED = "analyzed"    # descriptor real del analizador
    FALLBACK = "fallback"    # respuesta permanente inválida → neutral
    SKIPPED  = "skipped"     # spread sin texto, no se consulta al analizador
    FAILED   = "failed"      # transitorios agotados → sin descriptor


@dataclass
class SpreadAnalysis:
    spread:     Spread
    descriptor: Optional[Descriptor]
    outcome:    SpreadOutcome
    attempts:   int            = 0
    model_used: Optional[str]  = None
    tokens:     int            = 0
    error:      Optional[str]  = None

    @property
    def failed(self) -> bool:
        return self.outcome == SpreadOutcome.FAILED


class DescriptorExtractor:
    """
    Envuelve al analizador de contenido con la política de reintentos.

    - Transitorios (rate limit, timeout, upstream caído): hasta
      policy.max_attempts intentos con backoff; si se agotan el spread
      queda FAILED y el pipeline sigue con los vecinos.
    - InvalidResponse / rechazo: sin reintento, descriptor neutral.

    extract_spread() nunca lanza errores de upstream hacia el caller.
    """

    def __init__(
        self,
        analyzer:    ContentAnalyzer,
        policy:      Optional[RetryPolicy] = None,
        granularity: str                   = "spread",
    ):
        self._analyzer    = analyzer
        self._policy      = policy or RetryPolicy()
        self._granularity = granularity

    def extract_spread(self, spread: Spread) -> SpreadAnalysis:
        if not spread.text.strip():
            logger.info("Spread %d sin texto, descriptor neutral", spread.index)
            return SpreadAnalysis(
                spread     = spread,
                descriptor = Descriptor.neutral(),
                outcome    = SpreadOutcome.SKIPPED,
            )

        attempts = 0

        def _count(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        try:
            response = call_with_retry(
                lambda: self._analyzer.analyze(spread.text, self._granularity),
                policy     = self._policy,
                retry_on   = (TransientUpstreamError,),
                label      = f"análisis del spread {spread.index}",
                on_attempt = _count,
            )

        except RetryExhaustedError as e:
            logger.warning(
                "Spread %d (págs %d-%d) marcado como fallido tras %d intentos: %s",
                spread.index, spread.start_page, spread.end_page, e.attempts, e.last_error,
            )
            return SpreadAnalysis(
                spread     = spread,
                descriptor = None,
                outcome    = SpreadOutcome.FAILED,
                attempts   = e.attempts,
                error      = f"{type(e.last_error).__name__}: {e.last_error}",
            )

        except PermanentUpstreamError as e:
            kind = "respuesta inválida" if isinstance(e, InvalidResponseError) else "rechazo"
            logger.warning(
                "Spread %d: %s (%s), se usa descriptor neutral", spread.index, kind, e,
            )
            return SpreadAnalysis(
                spread     = spread,
                descriptor = Descriptor.neutral(),
                outcome    = SpreadOutcome.FALLBACK,
                attempts   = attempts,
                error      = f"{type(e).__name__}: {e}",
            )

        return SpreadAnalysis(
            spread     = spread,
            descriptor = response.descriptor,
            outcome    = SpreadOutcome.ANALYZED,
            attempts   = attempts,
            model_used = response.model_used,
            tokens     = response.tokens_input + response.tokens_output,
        )

    def extract_all(
        self,
        spreads:     list[Spread],
        on_progress: Optional[Callable[[SpreadAnalysis], None]] = None,
    ) -> list[SpreadAnalysis]:
        """Versión secuencial; el Orchestrator reparte en paralelo con su cola."""
        results = []
        for spread in spreads:
            analysis = self.extract_spread(spread)
            results.append(analysis)
            if on_progress is not None:
                on_progress(analysis)
        return results
