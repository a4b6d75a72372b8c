"""
The fixed NB protocol — 15 research steps, each with an objective, a search
focus for source retrieval, and the JSON schema its payload must satisfy.

Every step shares the base schema (summary, key_findings, implications,
citations) and adds one step-specific structured block.
"""
import copy
from typing import Any, Dict

from customer_intel.config import NB_CODES

TREND = {'type': 'string', 'enum': ['growing', 'stable', 'declining', 'unknown']}
LEVEL = {'type': 'string', 'enum': ['low', 'medium', 'high']}
STRINGS = {'type': 'array', 'items': {'type': 'string'}}

CITATION_SCHEMA = {
    'type': 'object',
    'required': ['source_id'],
    'properties': {
        'source_id': {'type': 'integer', 'minimum': 1},
        'quote': {'type': 'string'},
        'page': {'type': 'integer', 'minimum': 1},
        'url': {'type': 'string'},
        'relevance': {'type': 'number', 'minimum': 0, 'maximum': 1},
    },
}

BASE_SCHEMA = {
    'type': 'object',
    'required': ['summary', 'key_findings', 'implications', 'citations'],
    'properties': {
        'summary': {'type': 'string'},
        'key_findings': {'type': 'array', 'minItems': 1, 'items': {'type': 'string'}},
        'implications': STRINGS,
        'confidence': {'type': 'number', 'minimum': 0, 'maximum': 1},
        'citations': {'type': 'array', 'items': CITATION_SCHEMA},
    },
}


def _block(required, properties):
    return {'type': 'object', 'required': list(required), 'properties': properties}


NB_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    'NB1': {
        'title': 'Customer Fundamentals',
        'objective': 'Customer Fundamentals',
        'search_focus': 'company overview, business model, products, headquarters, employees',
        'block_name': 'fundamentals',
        'block': _block(['business_model', 'headquarters'], {
            'business_model': {'type': 'string'},
            'headquarters': {'type': 'string'},
            'employee_count': {'type': 'integer', 'minimum': 0},
            'core_offerings': STRINGS,
        }),
    },
    'NB2': {
        'title': 'Financial Performance & Pressures',
        'objective': 'Financial Performance & Pressures',
        'search_focus': 'revenue, margins, earnings, cost pressures, guidance',
        'block_name': 'financials',
        'block': _block(['revenue_trend', 'pressures'], {
            'revenue_trend': TREND,
            'margin_trend': TREND,
            'pressures': STRINGS,
            'latest_fiscal_year': {'type': 'integer', 'minimum': 1900, 'maximum': 2100},
        }),
    },
    'NB3': {
        'title': 'Leadership & Decision-Makers',
        'objective': 'Leadership & Decision-Makers',
        'search_focus': 'executives, board, leadership changes, decision authority',
        'block_name': 'leadership',
        'block': _block(['executives'], {
            'executives': {'type': 'array', 'items': _block(['name', 'role'], {
                'name': {'type': 'string'},
                'role': {'type': 'string'},
                'tenure_years': {'type': 'number', 'minimum': 0},
            })},
            'recent_changes': STRINGS,
        }),
    },
    'NB4': {
        'title': 'Strategic Initiatives & Expansion',
        'objective': 'Strategic Initiatives & Expansion',
        'search_focus': 'strategy, acquisitions, new markets, expansion plans, investments',
        'block_name': 'initiatives',
        'block': _block(['priorities'], {
            'priorities': STRINGS,
            'expansion_regions': STRINGS,
            'investment_level': LEVEL,
        }),
    },
    'NB5': {
        'title': 'Operational Challenges',
        'objective': 'Operational Challenges',
        'search_focus': 'supply chain, operations, efficiency, workforce, disruption',
        'block_name': 'operations',
        'block': _block(['challenges'], {
            'challenges': STRINGS,
            'severity': LEVEL,
        }),
    },
    'NB6': {
        'title': 'Technology & Systems',
        'objective': 'Technology & Systems',
        'search_focus': 'technology stack, digital transformation, IT vendors, platforms',
        'block_name': 'technology',
        'block': _block(['known_systems'], {
            'known_systems': STRINGS,
            'digital_maturity': LEVEL,
            'modernization_programs': STRINGS,
        }),
    },
    'NB7': {
        'title': 'Competitive Dynamics',
        'objective': 'Competitive Dynamics',
        'search_focus': 'competitors, market share, differentiation, competitive threats',
        'block_name': 'competition',
        'block': _block(['competitors'], {
            'competitors': STRINGS,
            'market_position': {'type': 'string', 'enum': ['leader', 'challenger', 'follower', 'niche', 'unknown']},
        }),
    },
    'NB8': {
        'title': 'Organizational Structure & Culture',
        'objective': 'Organizational Structure & Culture',
        'search_focus': 'org structure, divisions, culture, hiring, employee sentiment',
        'block_name': 'organization',
        'block': _block(['structure'], {
            'structure': {'type': 'string'},
            'business_units': STRINGS,
            'culture_signals': STRINGS,
        }),
    },
    'NB9': {
        'title': 'Stakeholder Influence',
        'objective': 'Stakeholder Influence',
        'search_focus': 'investors, activists, regulators, partners, key stakeholders',
        'block_name': 'stakeholders',
        'block': _block(['groups'], {
            'groups': {'type': 'array', 'items': _block(['name', 'influence'], {
                'name': {'type': 'string'},
                'influence': LEVEL,
            })},
        }),
    },
    'NB10': {
        'title': 'Sustainability & ESG',
        'objective': 'Sustainability & ESG',
        'search_focus': 'ESG commitments, emissions targets, sustainability reporting',
        'block_name': 'esg',
        'block': _block(['commitments'], {
            'commitments': STRINGS,
            'net_zero_target_year': {'type': ['integer', 'null'], 'minimum': 2000, 'maximum': 2100},
        }),
    },
    'NB11': {
        'title': 'Research & Innovation',
        'objective': 'Research & Innovation',
        'search_focus': 'R&D spend, patents, innovation programs, product pipeline',
        'block_name': 'innovation',
        'block': _block(['programs'], {
            'programs': STRINGS,
            'rd_intensity': LEVEL,
        }),
    },
    'NB12': {
        'title': 'Market and Customer Segments',
        'objective': 'Market and Customer Segments',
        'search_focus': 'customer segments, target markets, geographic revenue mix',
        'block_name': 'segments',
        'block': _block(['segments'], {
            'segments': {'type': 'array', 'items': _block(['name'], {
                'name': {'type': 'string'},
                'revenue_share': {'type': 'number', 'minimum': 0, 'maximum': 1},
                'trend': TREND,
            })},
        }),
    },
    'NB13': {
        'title': 'Industry Context',
        'objective': 'Industry Context',
        'search_focus': 'industry trends, regulation, macro factors, sector outlook',
        'block_name': 'industry',
        'block': _block(['trends'], {
            'trends': STRINGS,
            'regulatory_pressure': LEVEL,
        }),
    },
    'NB14': {
        'title': 'Future Outlook',
        'objective': 'Future Outlook',
        'search_focus': 'guidance, forecasts, analyst expectations, long-term plans',
        'block_name': 'outlook',
        'block': _block(['scenarios'], {
            'scenarios': {'type': 'array', 'items': _block(['name', 'likelihood'], {
                'name': {'type': 'string'},
                'likelihood': LEVEL,
            })},
            'horizon_years': {'type': 'integer', 'minimum': 1, 'maximum': 10},
        }),
    },
    'NB15': {
        'title': 'Implications for Engagement',
        'objective': 'Implications for Engagement',
        'search_focus': 'engagement opportunities, entry points, risks, timing',
        'block_name': 'engagement',
        'block': _block(['opportunities', 'recommended_approach'], {
            'opportunities': STRINGS,
            'recommended_approach': {'type': 'string'},
            'risks': STRINGS,
            'urgency': LEVEL,
        }),
    },
}

assert list(NB_DEFINITIONS) == NB_CODES


def get_definition(nb_code: str) -> Dict[str, Any]:
    try:
        return NB_DEFINITIONS[nb_code]
    except KeyError:
        raise ValueError(f"Unknown NB code: {nb_code}") from None


def get_schema(nb_code: str) -> Dict[str, Any]:
    """Full payload schema for a step: base schema plus its structured block."""
    definition = get_definition(nb_code)
    schema = copy.deepcopy(BASE_SCHEMA)
    schema['properties'][definition['block_name']] = copy.deepcopy(definition['block'])
    schema['required'].append(definition['block_name'])
    return schema
