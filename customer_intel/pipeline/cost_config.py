"""
Cost configuration loader — provider pricing, per-step token profiles and
spend guardrails.

YAML file with an in-memory cache and a hardcoded fallback if the file is
missing. COST_WARNING_THRESHOLD / COST_HARD_LIMIT env vars override the
YAML thresholds.
"""
import logging
import os
from typing import Optional

import yaml

from customer_intel import config

logger = logging.getLogger('pipeline.cost')


_cost_config = None

_DEFAULT_TOKENS = {'input': 2000, 'output': 1000}


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'pricing': {
            'gpt-4':           {'input': 0.03,    'output': 0.06},
            'gpt-4-turbo':     {'input': 0.01,    'output': 0.03},
            'gpt-3.5-turbo':   {'input': 0.0005,  'output': 0.0015},
            'claude-3-opus':   {'input': 0.015,   'output': 0.075},
            'claude-3-sonnet': {'input': 0.003,   'output': 0.015},
            'claude-3-haiku':  {'input': 0.00025, 'output': 0.00125},
        },
        'fallback_price_per_1k': 0.02,
        'avg_tokens_per_nb': {
            'NB1':  {'input': 1500, 'output': 800},
            'NB2':  {'input': 1800, 'output': 1000},
            'NB3':  {'input': 2000, 'output': 1200},
            'NB4':  {'input': 1600, 'output': 900},
            'NB5':  {'input': 2200, 'output': 1100},
            'NB6':  {'input': 1700, 'output': 850},
            'NB7':  {'input': 1900, 'output': 950},
            'NB8':  {'input': 2100, 'output': 1050},
            'NB9':  {'input': 1800, 'output': 900},
            'NB10': {'input': 2000, 'output': 1000},
            'NB11': {'input': 1600, 'output': 800},
            'NB12': {'input': 1700, 'output': 850},
            'NB13': {'input': 1500, 'output': 750},
            'NB14': {'input': 2500, 'output': 1500},
            'NB15': {'input': 2800, 'output': 1600},
        },
        'source_overhead': 0.10,
        'thresholds': {'warning': 10.00, 'hard_limit': 50.00},
        'calibration': {'lookback_days': 30, 'min_factor': 1.0, 'max_factor': 2.0},
    }


def load_cost_config() -> dict:
    """Load cost config from YAML, with in-memory cache and hardcoded fallback."""
    global _cost_config
    if _cost_config is not None:
        return _cost_config

    config_path = os.path.join(os.path.dirname(__file__), 'cost_config.yaml')
    try:
        with open(config_path, 'r') as f:
            _cost_config = yaml.safe_load(f)
        logger.info("Cost config loaded from YAML (version=%s)", _cost_config.get('version', '?'))
    except Exception as e:
        logger.warning("Cost config YAML not loaded (%s), using defaults", e)
        _cost_config = _default_config()

    return _cost_config


def get_pricing(provider: str) -> dict:
    """Per-1K input/output prices for a provider (fallback price when unknown)."""
    cfg = load_cost_config()
    pricing = cfg.get('pricing', {}).get(provider)
    if pricing:
        return dict(pricing)
    fallback = cfg.get('fallback_price_per_1k', 0.02)
    return {'input': fallback, 'output': fallback}


def get_avg_tokens(nb_code: str) -> dict:
    cfg = load_cost_config()
    return dict(cfg.get('avg_tokens_per_nb', {}).get(nb_code, _DEFAULT_TOKENS))


def get_source_overhead() -> float:
    return float(load_cost_config().get('source_overhead', 0.10))


def get_warning_threshold() -> float:
    if config.COST_WARNING_THRESHOLD:
        return float(config.COST_WARNING_THRESHOLD)
    return float(load_cost_config().get('thresholds', {}).get('warning', 10.00))


def get_hard_limit() -> float:
    if config.COST_HARD_LIMIT:
        return float(config.COST_HARD_LIMIT)
    return float(load_cost_config().get('thresholds', {}).get('hard_limit', 50.00))


def get_calibration_settings() -> dict:
    defaults = {'lookback_days': 30, 'min_factor': 1.0, 'max_factor': 2.0}
    defaults.update(load_cost_config().get('calibration', {}) or {})
    return defaults


def cost_for_tokens(tokens: int, provider: Optional[str] = None, kind: str = 'output') -> float:
    """Dollar cost of a token count at the provider's per-1K rate."""
    pricing = get_pricing(provider or config.LLM_PROVIDER)
    return (tokens / 1000.0) * pricing.get(kind, pricing['output'])


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _cost_config
    _cost_config = None
