# analysis/claude.py
import logging
import time
from typing import TYPE_CHECKING

import anthropic

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

_MODEL_ID = "claude-haiku-4-5-20251001"

# Cooldown antes de volver a intentar Claude tras un error de red
_COOLDOWN_SECONDS = 300


class ClaudeAnalyzer(ContentAnalyzer):

    def __init__(self, config: ModelConfig, repo: "Repository"):
        self._config = config
        self._repo   = repo
        self._client = anthropic.Anthropic(
            api_key     = config.api_key,
            timeout     = config.timeout_seconds,
            max_retries = 0,    # los reintentos los decide el Extractor
        )

    @property
    def name(self) -> str:
        return self._config.name   # "claude", coincide con quota_usage.model

    def is_available(self) -> bool:
        if self._config._unavailable_until is not None:
            if time.time() < self._config._unavailable_until:
                return False
            self._config._unavailable_until = None  # cooldown expirado

        used = self._repo.get_token_usage_today(self.name)
        return used < self._config.daily_token_limit

    def analyze(self, text: str, granularity: str = "spread") -> AnalysisResponse:
        try:
            response = self._client.messages.create(
                model       = _MODEL_ID,
                max_tokens  = 1024,
                temperature = self._config.temperature,
                system      = build_analysis_prompt(granularity),
                messages    = [{"role": "user", "content": text}],
            )
        except anthropic.RateLimitError as e:
            self._start_cooldown()
            raise RateLimitedError(f"Claude rate limit: {e}") from e

        except anthropic.APITimeoutError as e:
            self._start_cooldown()
            raise UpstreamTimeoutError(f"Claude timeout: {e}") from e

        except (anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            self._start_cooldown()
            raise UpstreamUnavailableError(f"Claude no disponible: {e}") from e

        except anthropic.BadRequestError as e:
            # El texto en sí tiene problemas (ej: contenido bloqueado)
            logger.error("Claude BadRequest en análisis: %s", e)
            raise UpstreamRejectedError(f"Claude rechazó el texto: {e}") from e

        tokens_input  = response.usage.input_tokens
        tokens_output = response.usage.output_tokens
        self._repo.add_token_usage(self.name, tokens_input + tokens_output)

        descriptor = parse_descriptor_response(response.content[0].text, self.name)

        return AnalysisResponse(
            descriptor    = descriptor,
            model_used    = self.name,
            tokens_input  = tokens_input,
            tokens_output = tokens_output,
        )

    def _start_cooldown(self) -> None:
        logger.warning("Claude en cooldown %ds", _COOLDOWN_SECONDS)
        self._config._unavailable_until = time.time() + _COOLDOWN_SECONDS
