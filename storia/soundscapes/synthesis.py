# soundscapes/synthesis.py
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from storia.errors import (
    RateLimitedError,
    TransientUpstreamError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from storia.soundscapes.models import JobState, JobStatus

logger = logging.getLogger(__name__)


class AudioSynthesizer(ABC):
    """
    Contrato del proveedor de síntesis de audio.
    El Generator solo habla con esta interfaz.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def submit(self, prompt: str, duration_seconds: int) -> str:
        """Lanza el trabajo y devuelve su id sin esperar al resultado."""
        ...

    @abstractmethod
    def poll_status(self, job_id: str) -> JobStatus: ...

    @abstractmethod
    def download(self, url: str) -> bytes:
        """Descarga el audio desde la URL efímera del proveedor."""
        ...

    def cancel(self, job_id: str) -> None:
        """Best-effort: no todos los proveedores permiten cancelar."""
        return None


# ------------------------------------------------------------------
# Replicate (API HTTP)
# ------------------------------------------------------------------

_API_BASE = "https://api.replicate.com/v1"

_PENDING_STATES = {"starting", "processing"}
_FAILED_STATES  = {"failed", "canceled"}


def _musicgen_input(prompt: str, duration: int) -> dict:
    return {
        "prompt":                 prompt,
        "duration":               duration,
        "model_version":          "stereo-large",
        "output_format":          "mp3",
        "normalization_strategy": "peak",
    }


def _stable_audio_input(prompt: str, duration: int) -> dict:
    return {
        "prompt":        prompt,
        "seconds_total": duration,
        "steps":         100,
        "cfg_scale":     7,
    }


def _elevenlabs_music_input(prompt: str, duration: int) -> dict:
    return {
        "prompt":             prompt,
        "music_length_ms":    duration * 1000,
        "force_instrumental": True,
        "output_format":      "mp3_standard",
    }


_MODEL_INPUTS = {
    "meta/musicgen":             _musicgen_input,
    "stability-ai/stable-audio": _stable_audio_input,
    "elevenlabs/music":          _elevenlabs_music_input,
}


class ReplicateSynthesizer(AudioSynthesizer):

    def __init__(
        self,
        api_token:       str,
        model:           str   = "meta/musicgen",
        request_timeout: float = 60.0,
        session:         Optional[requests.Session] = None,
    ):
        if not api_token:
            raise ValueError("ReplicateSynthesizer necesita api_token")
        if model not in _MODEL_INPUTS:
            raise ValueError(
                f"Modelo de audio desconocido: {model}. "
                f"Soportados: {', '.join(sorted(_MODEL_INPUTS))}"
            )
        self._model   = model
        self._timeout = request_timeout
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type":  "application/json",
        }

    @property
    def name(self) -> str:
        return f"replicate:{self._model}"

    def submit(self, prompt: str, duration_seconds: int) -> str:
        payload  = {"input": _MODEL_INPUTS[self._model](prompt, duration_seconds)}
        response = self._call(
            "post", f"{_API_BASE}/models/{self._model}/predictions", json=payload,
        )
        job_id = response.json().get("id")
        if not job_id:
            raise UpstreamUnavailableError("Replicate no devolvió id de predicción")
        logger.info("Predicción %s lanzada en %s (%ds)", job_id, self._model, duration_seconds)
        return job_id

    def poll_status(self, job_id: str) -> JobStatus:
        payload = self._call("get", f"{_API_BASE}/predictions/{job_id}").json()
        status  = (payload.get("status") or "").lower()

        if status == "succeeded":
            return JobStatus(job_id=job_id, state=JobState.DONE, output_url=_first_output(payload.get("output")))
        if status in _FAILED_STATES:
            return JobStatus(
                job_id = job_id,
                state  = JobState.FAILED,
                error  = str(payload.get("error") or f"predicción {status}"),
            )
        if status and status not in _PENDING_STATES:
            logger.warning("Estado de Replicate desconocido para %s: %s", job_id, status)
        return JobStatus(job_id=job_id, state=JobState.PENDING)

    def download(self, url: str) -> bytes:
        return self._call("get", url, authenticated=False).content

    def cancel(self, job_id: str) -> None:
        try:
            self._call("post", f"{_API_BASE}/predictions/{job_id}/cancel")
        except (TransientUpstreamError, UpstreamRejectedError) as e:
            logger.warning("No se pudo cancelar la predicción %s: %s", job_id, e)

    def _call(self, method: str, url: str, authenticated: bool = True, **kwargs) -> requests.Response:
        headers = self._headers if authenticated else None
        try:
            response = self._session.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs,
            )
        except requests.Timeout as e:
            raise UpstreamTimeoutError(f"Replicate timeout en {url}: {e}") from e
        except requests.RequestException as e:
            raise UpstreamUnavailableError(f"Replicate inaccesible: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError("Replicate rate limit (429)")
        if response.status_code >= 500:
            raise UpstreamUnavailableError(f"Replicate {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            raise UpstreamRejectedError(f"Replicate rechazó la petición ({response.status_code}): {response.text[:200]}")
        return response


def _first_output(output) -> Optional[str]:
    """Según el modelo, output es una URL o una lista de URLs."""
    if isinstance(output, list):
        return output[0] if output else None
    return output or None
