# storia/retry.py
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from storia.errors import RetryExhaustedError, TransientUpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Backoff exponencial con jitter.
    max_attempts cuenta intentos totales, no reintentos:
    con 3, el cuarto intento nunca ocurre.
    """
    max_attempts: int   = 3
    base_delay:   float = 1.0
    multiplier:   float = 2.0
    jitter:       float = 0.25     # fracción del delay, ±
    sleep:        Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay antes del intento attempt+1 (attempt empieza en 1)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.jitter:
            delay += delay * random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)


def call_with_retry(
    func:     Callable[[], T],
    policy:   RetryPolicy,
    retry_on: tuple = (TransientUpstreamError,),
    label:    str   = "operación",
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """
    Ejecuta func reintentando solo los errores de retry_on.
    Cualquier otro error se propaga en el primer intento.
    Si se agotan los intentos lanza RetryExhaustedError con el último error.
    """
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return func()

        except retry_on as e:
            last_error = e

            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Intento %d/%d de %s falló: %s. Reintentando en %.2fs",
                    attempt, policy.max_attempts, label, e, delay,
                )
                policy.sleep(delay)
            else:
                logger.error(
                    "Los %d intentos de %s fallaron: %s",
                    policy.max_attempts, label, e,
                )

    raise RetryExhaustedError(
        f"{label}: {policy.max_attempts} intentos fallidos. Último error: {last_error}",
        attempts   = policy.max_attempts,
        last_error = last_error,
    )
