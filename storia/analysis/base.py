# analysis/base.py
from abc import ABC, abstractmethod

from storia.analysis.models import AnalysisResponse


class ContentAnalyzer(ABC):
    """
    Contrato que deben cumplir todos los adaptadores de análisis.
    El Extractor y el Router solo hablan con esta interfaz.
    """

    @abstractmethod
    def analyze(self, text: str, granularity: str = "spread") -> AnalysisResponse:
        """
        Envía el texto al modelo y devuelve el Descriptor parseado.
        Puede lanzar:
        - RateLimitedError / UpstreamUnavailableError / UpstreamTimeoutError (transitorios)
        - InvalidResponseError (la respuesta no trae los campos obligatorios)
        - UpstreamRejectedError (el proveedor rechazó el contenido)
        """
        ...

    @abstractmethod
    def is_available(self) -> bool:
        """
        Consulta quota del día en storage antes de hacer cualquier
        llamada de red. Si superó el límite → False sin latencia.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Identificador del modelo. Debe coincidir con quota_usage.model."""
        ...
