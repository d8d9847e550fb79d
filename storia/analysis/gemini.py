# analysis/gemini.py
import logging
import time
from typing import TYPE_CHECKING

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from storia.analysis.base import ContentAnalyzer
from storia.analysis.models import AnalysisResponse, ModelConfig
from storia.analysis.prompt_builder import build_analysis_prompt
from storia.analysis.response_parser import parse_descriptor_response
from storia.errors import (
    RateLimitedError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

if TYPE_CHECKING:
    from storia.storage.repository import Repository

logger = logging.getLogger(__name__)

_COOLDOWN_SECONDS = 300


class GeminiAnalyzer(ContentAnalyzer):

    def __init__(self, config: ModelConfig, repo: "Repository"):
        self._config = config
        self._repo   = repo
        genai.configure(api_key=config.api_key)
        self._model = genai.GenerativeModel(
            model_name        = "gemini-2.0-flash",
            generation_config = genai.GenerationConfig(
                temperature        = config.temperature,
                response_mime_type = "application/json",   # JSON nativo
            ),
        )

    @property
    def name(self) -> str:
        return self._config.name   # "gemini"

    def is_available(self) -> bool:
        if self._config._unavailable_until is not None:
            if time.time() < self._config._unavailable_until:
                return False
            self._config._unavailable_until = None

        used = self._repo.get_token_usage_today(self.name)
        return used < self._config.daily_token_limit

    def analyze(self, text: str, granularity: str = "spread") -> AnalysisResponse:
        full_prompt = f"{build_analysis_prompt(granularity)}\n\n{text}"

        try:
            response = self._model.generate_content(
                full_prompt,
                request_options={"timeout": self._config.timeout_seconds},
            )
        except google_exceptions.ResourceExhausted as e:   # 429
            self._start_cooldown()
            raise RateLimitedError(f"Gemini rate limit: {e}") from e

        except google_exceptions.DeadlineExceeded as e:
            self._start_cooldown()
            raise UpstreamTimeoutError(f"Gemini timeout: {e}") from e

        except (google_exceptions.ServiceUnavailable, google_exceptions.InternalServerError) as e:
            self._start_cooldown()
            raise UpstreamUnavailableError(f"Gemini no disponible: {e}") from e

        except google_exceptions.InvalidArgument as e:
            logger.error("Gemini InvalidArgument en análisis: %s", e)
            raise UpstreamRejectedError(f"Gemini rechazó el texto: {e}") from e

        # Gemini devuelve tokens en usage_metadata
        tokens_input  = response.usage_metadata.prompt_token_count
        tokens_output = response.usage_metadata.candidates_token_count
        self._repo.add_token_usage(self.name, tokens_input + tokens_output)

        descriptor = parse_descriptor_response(response.text, self.name)

        return AnalysisResponse(
            descriptor    = descriptor,
            model_used    = self.name,
            tokens_input  = tokens_input,
            tokens_output = tokens_output,
        )

    def _start_cooldown(self) -> None:
        logger.warning("Gemini en cooldown %ds", _COOLDOWN_SECONDS)
        self._config._unavailable_until = time.time() + _COOLDOWN_SECONDS
