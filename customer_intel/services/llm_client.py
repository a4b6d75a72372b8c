"""
LLM capability — OpenAI chat completions with temperature clamping and
rate-limit retry.

call() returns a plain dict:
    {content, duration_ms, tokens_used, model, temperature}
"""
import json
import logging
import time
from typing import Any, Dict, Optional

from customer_intel import config

logger = logging.getLogger('services.llm')

# Provider names that map onto an OpenAI chat model
_MODEL_FOR_PROVIDER = {
    'gpt-4': 'gpt-4',
    'gpt-4-turbo': 'gpt-4-turbo',
    'gpt-3.5-turbo': 'gpt-3.5-turbo',
}


def clamp_temperature(requested: Optional[float], cap: Optional[float] = None) -> float:
    """Clamp to [0, cap] so extraction stays near-deterministic."""
    cap = config.LLM_MAX_TEMPERATURE if cap is None else cap
    if requested is None:
        requested = config.LLM_TEMPERATURE
    if requested > cap:
        logger.warning("Requested temperature %.2f above cap %.2f, clamping", requested, cap)
        return cap
    return max(0.0, requested)


def _is_rate_limit(error: Exception) -> bool:
    text = str(error).lower()
    return 'rate_limit' in text or '429' in text or 'rate limit' in text


class LLMClient:
    """OpenAI-backed client. Pass `client` to inject a preconfigured OpenAI()."""

    def __init__(self, provider=None, temperature=None, client=None, timeout=None):
        self.provider = provider or config.LLM_PROVIDER
        self.model = _MODEL_FOR_PROVIDER.get(self.provider, self.provider)
        self.temperature = clamp_temperature(temperature)
        self.timeout = timeout or config.LLM_TIMEOUT_SECONDS
        if client is None:
            from customer_intel.extensions import openai_client
            client = openai_client
        self._client = client

    def call(self, system_prompt: str, user_prompt: str,
             json_schema: Optional[Dict[str, Any]] = None, expect_json: bool = True) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("OpenAI client not configured (set OPENAI_API_KEY or MOCK_LLM)")

        if json_schema is not None:
            system_prompt = (
                f"{system_prompt}\n\nRespond with a single JSON object matching this schema:\n"
                f"{json.dumps(json_schema)}"
            )

        kwargs = dict(
            model=self.model,
            messages=[
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_prompt},
            ],
            temperature=self.temperature,
            timeout=self.timeout,
        )
        if expect_json:
            kwargs['response_format'] = {'type': 'json_object'}

        started = time.monotonic()
        response = self._client.chat.completions.create(**kwargs)
        duration_ms = int((time.monotonic() - started) * 1000)

        usage = getattr(response, 'usage', None)
        return {
            'content': response.choices[0].message.content or '',
            'duration_ms': duration_ms,
            'tokens_used': getattr(usage, 'total_tokens', 0) or 0,
            'model': getattr(response, 'model', self.model),
            'temperature': self.temperature,
        }

    def call_with_retry(self, system_prompt, user_prompt, json_schema=None,
                        expect_json=True, max_retries=3):
        """call() with exponential backoff on rate-limit errors; other errors propagate."""
        for attempt in range(max_retries):
            try:
                return self.call(system_prompt, user_prompt, json_schema, expect_json)
            except Exception as e:
                if not _is_rate_limit(e) or attempt == max_retries - 1:
                    raise
                wait = 2 ** attempt * 5
                logger.warning("Rate limited (attempt %d/%d), waiting %ds", attempt + 1, max_retries, wait)
                time.sleep(wait)


def get_llm_client(provider=None, temperature=None):
    """Mock client when MOCK_LLM is set, real client otherwise."""
    if config.MOCK_LLM:
        from customer_intel.services.mock_llm import MockLLMClient
        logger.info("MOCK_LLM active, using deterministic mock client")
        return MockLLMClient(provider=provider, temperature=temperature)
    return LLMClient(provider=provider, temperature=temperature)
