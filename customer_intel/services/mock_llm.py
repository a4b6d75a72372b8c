"""
Deterministic LLM client for tests and MOCK_LLM runs.

Same call() contract as LLMClient. With a schema it synthesizes a
schema-conformant payload; canned responses can be registered for an exact
(system_prompt, user_prompt) pair.
"""
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

from customer_intel import config
from customer_intel.services.llm_client import clamp_temperature

logger = logging.getLogger('services.llm.mock')


def _prompt_key(system_prompt: str, user_prompt: str) -> str:
    return hashlib.md5((system_prompt + user_prompt).encode('utf-8')).hexdigest()


def count_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return max(1, len(text) // 4)


def generate_from_schema(schema: Dict[str, Any], name: str = 'value'):
    """Deterministic value conforming to schema."""
    schema = schema or {}
    if schema.get('enum'):
        return schema['enum'][0]

    declared = schema.get('type', 'string')
    kind = declared[0] if isinstance(declared, list) else declared

    if kind == 'object':
        return {
            key: generate_from_schema(sub, key)
            for key, sub in schema.get('properties', {}).items()
        }
    if kind == 'array':
        count = max(schema.get('minItems', 0), 1)
        if 'maxItems' in schema:
            count = min(count, schema['maxItems'])
        return [generate_from_schema(schema.get('items', {}), name) for _ in range(count)]
    if kind in ('integer', 'number'):
        low, high = schema.get('minimum'), schema.get('maximum')
        if low is not None and high is not None:
            value = (low + high) / 2
        elif low is not None:
            value = low
        elif high is not None:
            value = min(0, high)
        else:
            value = 1
        return int(value) if kind == 'integer' else float(value)
    if kind == 'boolean':
        return True
    if kind == 'null':
        return None
    return f"Mock {name}"


class MockLLMClient:
    """Deterministic stand-in for LLMClient."""

    def __init__(self, provider=None, temperature=None, responses=None):
        self.provider = provider or config.LLM_PROVIDER
        self.model = f"mock-{self.provider}"
        self.temperature = clamp_temperature(temperature)
        self._responses = dict(responses or {})
        self.calls = []

    def set_mock_response(self, system_prompt: str, user_prompt: str, response) -> None:
        """Register a canned response (dict → JSON-encoded) for an exact prompt pair."""
        self._responses[_prompt_key(system_prompt, user_prompt)] = response

    def call(self, system_prompt: str, user_prompt: str,
             json_schema: Optional[Dict[str, Any]] = None, expect_json: bool = True) -> Dict[str, Any]:
        started = time.monotonic()
        self.calls.append({'system': system_prompt, 'user': user_prompt, 'schema': json_schema})

        canned = self._responses.get(_prompt_key(system_prompt, user_prompt))
        if canned is not None:
            content = canned if isinstance(canned, str) else json.dumps(canned)
        elif json_schema is not None:
            content = json.dumps(generate_from_schema(json_schema))
        elif expect_json:
            content = json.dumps({'summary': 'Mock response', 'key_findings': ['Mock finding']})
        else:
            content = 'Mock response'

        return {
            'content': content,
            'duration_ms': int((time.monotonic() - started) * 1000),
            'tokens_used': count_tokens(system_prompt + user_prompt) + count_tokens(content),
            'model': self.model,
            'temperature': self.temperature,
        }

    def call_with_retry(self, system_prompt, user_prompt, json_schema=None,
                        expect_json=True, max_retries=3):
        return self.call(system_prompt, user_prompt, json_schema, expect_json)
