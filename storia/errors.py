# storia/errors.py
"""
Taxonomía de errores del pipeline.

Regla general:
- Transitorios (rate limit, timeout, upstream caído) → se reintentan con backoff.
- Permanentes (respuesta inválida, prompt rechazado) → no se reintentan,
  se registran y se saltan.
- El resto se propaga al caller.
"""


class StoriaError(Exception):
    """Raíz de todos los errores propios."""
    pass


# ------------------------------------------------------------------
# Upstream (análisis de contenido / síntesis de audio)
# ------------------------------------------------------------------

class TransientUpstreamError(StoriaError):
    """Fallo temporal del proveedor. Se reintenta."""
    pass


class RateLimitedError(TransientUpstreamError):
    pass


class UpstreamUnavailableError(TransientUpstreamError):
    pass


class UpstreamTimeoutError(TransientUpstreamError):
    pass


class AllAnalyzersExhaustedError(TransientUpstreamError):
    """Ningún analizador tiene quota o todos fallaron por red."""
    pass


class PermanentUpstreamError(StoriaError):
    """El mismo input fallará siempre. No se reintenta."""
    pass


class InvalidResponseError(PermanentUpstreamError):
    """Respuesta malformada o sin los campos obligatorios."""
    pass


class UpstreamRejectedError(PermanentUpstreamError):
    """El proveedor rechazó la petición (ej: prompt filtrado por política)."""
    pass


class GenerationCancelledError(StoriaError):
    """El caller canceló un trabajo de síntesis en curso."""
    pass


class RetryExhaustedError(StoriaError):
    """Se agotaron los intentos. Conserva el último error."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None):
        super().__init__(message)
        self.attempts   = attempts
        self.last_error = last_error


# ------------------------------------------------------------------
# Dominio
# ------------------------------------------------------------------

class ResourceNotFoundError(StoriaError):
    """Book, Scene o asset inexistente."""
    pass


class ValidationError(StoriaError):
    """Violación de invariante detectada antes de persistir."""
    pass


class StorageFailureError(StoriaError):
    """Fallo al leer/escribir un asset en el almacenamiento durable."""
    pass


class TextSourceError(StoriaError):
    """El texto del libro no se pudo extraer. Fatal para el libro."""
    pass


class EnqueueError(StoriaError):
    """No se pudo encolar un trabajo en segundo plano."""
    pass
