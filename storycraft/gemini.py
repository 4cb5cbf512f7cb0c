"""
Gemini text generation over the generativelanguage REST API.

Tries the configured model first and walks the fallback list when a model is
missing (404). Transient failures (429, 5xx, timeouts) are retried through
RetryService. The finish reason is returned with the text so callers can
shrink their token budget after a MAX_TOKENS finish.
"""

import os
import time
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import requests

from storycraft.errors import GeminiServiceError
from storycraft.http_client import get_http_session
from storycraft.metrics import MetricsCollector, metrics_collector, with_metrics
from storycraft.resilience import RetryService, RetryExhaustedError

logger = logging.getLogger(__name__)

GEMINI_API_BASE = 'https://generativelanguage.googleapis.com/v1beta/models'
FALLBACK_MODELS = ['gemini-2.5-flash', 'gemini-2.5-pro', 'gemini-1.5-pro-002', 'gemini-1.5-flash-002']
DEFAULT_TIMEOUT_MS = 60000
# Estimated USD per 1k output tokens
COST_PER_1K_TOKENS = 0.0025


@dataclass
class GenerationResult:
    text: str
    finish_reason: str
    model: str
    tokens_used: int = 0
    response_time: float = 0

    @property
    def hit_token_limit(self) -> bool:
        return self.finish_reason == 'MAX_TOKENS'


def token_cost(result: GenerationResult) -> float:
    return result.tokens_used / 1000 * COST_PER_1K_TOKENS


class GeminiService:
    """Text generation with model fallback"""

    def __init__(self, api_key: str = None, model: str = None,
                 retry_service: RetryService = None, collector: MetricsCollector = None):
        self.api_key = api_key if api_key is not None else os.getenv('GEMINI_API_KEY', '')
        self.model = model or os.getenv('GEMINI_MODEL') or FALLBACK_MODELS[0]
        self.retry_service = retry_service or RetryService(max_attempts=3, base_delay=1000, max_delay=10000)
        self.collector = collector or metrics_collector
        self._generate = with_metrics('gemini', collector=self.collector, cost=token_cost)(self._generate_with_retries)

    def is_available(self) -> bool:
        return bool(self.api_key)

    def candidate_models(self) -> List[str]:
        return [self.model] + [m for m in FALLBACK_MODELS if m != self.model]

    def generate_text(self, prompt: str, temperature: float = 1.0, max_tokens: int = 8192,
                      timeout: Optional[int] = None) -> GenerationResult:
        """Generate text; timeout is in ms"""
        if not self.is_available():
            raise GeminiServiceError('Gemini API key not configured', 'INIT_ERROR')

        timeout = timeout or DEFAULT_TIMEOUT_MS
        logger.info(f"Generating text with Gemini (model={self.model}, prompt={len(prompt)} chars, "
                    f"temperature={temperature}, max_tokens={max_tokens}, timeout={timeout}ms)")

        last_error: Optional[Exception] = None
        for model in self.candidate_models():
            try:
                result = self._generate(model, prompt, temperature, max_tokens, timeout)
            except GeminiServiceError as e:
                if e.code == 'MODEL_UNAVAILABLE':
                    logger.warning(f"[WARN] Model {model} unavailable, trying next")
                    last_error = e
                    continue
                raise

            if model != self.model:
                logger.info(f"[OK] Served by fallback model {model} ({self.model} unavailable)")
            return result

        raise GeminiServiceError('No Gemini models are available', 'NO_MODELS_AVAILABLE',
                                 original_error=last_error)

    def _generate_with_retries(self, model: str, prompt: str, temperature: float,
                               max_tokens: int, timeout: int) -> GenerationResult:
        try:
            return self.retry_service.execute(
                lambda: self._call_model(model, prompt, temperature, max_tokens, timeout),
                f"gemini generateContent ({model})",
            )
        except RetryExhaustedError as e:
            raise self._as_service_error(e.original_error, e.attempts) from e.original_error

    def _call_model(self, model: str, prompt: str, temperature: float,
                    max_tokens: int, timeout: int) -> GenerationResult:
        start = time.time()
        response = get_http_session().post(
            f"{GEMINI_API_BASE}/{model}:generateContent",
            params={'key': self.api_key},
            json={
                'contents': [{'role': 'user', 'parts': [{'text': prompt}]}],
                'generationConfig': {'temperature': temperature, 'maxOutputTokens': max_tokens},
            },
            timeout=timeout / 1000,
        )
        self._raise_for_status(response, model)

        data = response.json()
        candidates = data.get('candidates') or []
        candidate = candidates[0] if candidates else {}
        parts = (candidate.get('content') or {}).get('parts') or []
        text = ''.join(part.get('text', '') for part in parts)
        finish_reason = candidate.get('finishReason', 'STOP')

        if not text.strip():
            raise GeminiServiceError('No response generated from Gemini', 'EMPTY_RESPONSE',
                                     is_retryable=finish_reason != 'MAX_TOKENS',
                                     metadata={'finishReason': finish_reason, 'model': model})

        usage = data.get('usageMetadata') or {}
        elapsed = (time.time() - start) * 1000
        logger.info(f"[OK] Gemini {model} responded in {elapsed:.0f}ms "
                    f"({len(text)} chars, finish={finish_reason})")
        return GenerationResult(
            text=text,
            finish_reason=finish_reason,
            model=model,
            tokens_used=usage.get('candidatesTokenCount', 0),
            response_time=elapsed,
        )

    @staticmethod
    def _raise_for_status(response: requests.Response, model: str):
        status = response.status_code
        if status < 400:
            return
        try:
            detail = response.json().get('error', {}).get('message', '')
        except ValueError:
            detail = response.text[:200]
        meta = {'status': status, 'model': model}

        if status in (401, 403):
            raise GeminiServiceError(f"Authentication failed: {detail}", 'AUTH_ERROR', metadata=meta)
        if status == 404:
            raise GeminiServiceError(f"Model {model} not found: {detail}", 'MODEL_UNAVAILABLE', metadata=meta)
        if status == 429:
            raise GeminiServiceError(f"Rate limited: {detail}", 'RATE_LIMITED', is_retryable=True, metadata=meta)
        if status >= 500:
            raise GeminiServiceError(f"Server error {status}: {detail}", 'SERVER_ERROR',
                                     is_retryable=True, metadata=meta)
        raise GeminiServiceError(f"Request rejected ({status}): {detail}", 'REQUEST_FAILED', metadata=meta)

    @staticmethod
    def _as_service_error(error: Exception, attempts: int) -> GeminiServiceError:
        if isinstance(error, GeminiServiceError):
            return error
        if isinstance(error, requests.exceptions.Timeout):
            return GeminiServiceError(f"Request timed out after {attempts} attempt(s)", 'TIMEOUT',
                                      original_error=error)
        return GeminiServiceError(f"Failed to generate text after {attempts} attempt(s): {error}",
                                  'MAX_RETRIES_EXCEEDED', original_error=error)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            'healthy': self.is_available(),
            'model': self.model,
            'fallbackModels': [m for m in FALLBACK_MODELS if m != self.model],
        }
