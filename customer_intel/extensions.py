"""
Process-wide clients: Redis (RQ queue + run locks) and OpenAI (NB steps).

Nothing here touches the network at import time. redis.from_url() connects on
first command; the OpenAI client is skipped entirely under MOCK_LLM or when no
key is configured, and LLMClient raises on use in that case.
"""
import logging
import redis

from customer_intel.config import LLM_TIMEOUT_SECONDS, MOCK_LLM, OPENAI_API_KEY, REDIS_URL

logger = logging.getLogger('customer_intel.extensions')

# ── Redis ─────────────────────────────────────────────────────────────────────
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# ── OpenAI ────────────────────────────────────────────────────────────────────
# max_retries=0: rate-limit backoff is LLMClient.call_with_retry's job, and
# schema-level retries are the orchestrator's.
openai_client = None
if MOCK_LLM:
    logger.info("MOCK_LLM set, OpenAI client not created")
elif OPENAI_API_KEY:
    try:
        from openai import OpenAI
        openai_client = OpenAI(api_key=OPENAI_API_KEY, timeout=LLM_TIMEOUT_SECONDS, max_retries=0)
        logger.info("OpenAI client ready (timeout %ss)", LLM_TIMEOUT_SECONDS)
    except Exception as e:
        logger.error("Error initializing OpenAI client: %s", e)
else:
    logger.warning("OPENAI_API_KEY not set; NB runs need MOCK_LLM")
