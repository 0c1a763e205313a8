"""
Default team configuration.

Used when a team has no persisted scoring config, no rules, or no SLA
setting. The values mirror the seed data the sales team started from.
"""
from typing import Any, Dict, List

from engine.models import RoutingRule, ScoringConfig, ScoringRule, SLASetting, parse_rules

DEFAULT_COMPETITORS = ["typeform.com", "jotform.com", "wufoo.com", "formstack.com", "cognito.com"]

DEFAULT_SCORING_CONFIG: Dict[str, Any] = {
    "version": 1,
    "weights": {"urgency": 25, "engagement": 30, "jobRole": 45},
    "bands": {"high": 75, "medium": 50, "low": 0},
    "negative": {"competitor": -20, "freeEmail": -10, "invalidDomain": -15, "spam": -30},
    "enrichment": {
        "companySize": {"enterprise": 20, "large": 15, "medium": 10, "small": 5, "startup": 0},
        "industry": {
            "technology": 15,
            "finance": 12,
            "healthcare": 10,
            "manufacturing": 8,
            "retail": 5,
            "other": 0,
        },
        "revenue": {"100M+": 20, "50M-100M": 15, "10M-50M": 10, "1M-10M": 5, "<1M": 0},
    },
    "competitors": DEFAULT_COMPETITORS,
}

DEFAULT_SCORING_RULES: List[Dict[str, Any]] = [
    {
        "id": "free-email-penalty",
        "order": 1,
        "enabled": True,
        "type": "IF_THEN",
        "definition": {
            "if": [
                {"field": "email", "op": "ends_with", "value": "@gmail.com"},
                {"field": "email", "op": "ends_with", "value": "@yahoo.com"},
                {"field": "email", "op": "ends_with", "value": "@hotmail.com"},
            ],
            "then": {"adjust": -10, "reason": "Free email domain"},
        },
    },
    {
        "id": "enterprise-company",
        "order": 2,
        "enabled": True,
        "type": "IF_THEN",
        "definition": {
            "if": [
                {"field": "company", "op": "contains", "value": "enterprise"},
                {"field": "company", "op": "contains", "value": "corp"},
                {"field": "company", "op": "contains", "value": "inc"},
            ],
            "then": {"adjust": 15, "reason": "Enterprise company indicators", "tag": "enterprise"},
        },
    },
    {
        "id": "competitor-domain",
        "order": 3,
        "enabled": True,
        "type": "IF_THEN",
        "definition": {
            "if": [{"field": "domain", "op": "in", "value": ["typeform.com", "jotform.com", "wufoo.com"]}],
            "then": {"adjust": -25, "reason": "Competitor domain"},
        },
    },
    {
        "id": "utm-source-weight",
        "order": 4,
        "enabled": True,
        "type": "WEIGHT",
        "definition": {
            "field": "utm.source",
            "weights": {
                "google-ads": 20,
                "linkedin": 15,
                "organic": 10,
                "referral": 12,
                "direct": 5,
                "social": 8,
            },
        },
    },
    {
        "id": "executive-title",
        "order": 5,
        "enabled": True,
        "type": "IF_THEN",
        "definition": {
            "if": [
                {"field": "fields.title", "op": "contains", "value": "ceo"},
                {"field": "fields.title", "op": "contains", "value": "founder"},
                {"field": "fields.title", "op": "contains", "value": "president"},
            ],
            "then": {"adjust": 25, "reason": "Executive-level contact"},
        },
    },
]

DEFAULT_ROUTING_RULES: List[Dict[str, Any]] = [
    {
        "id": "high-score-fast-track",
        "name": "High score to AE pool",
        "order": 1,
        "enabled": True,
        "definition": {
            "if": [{"field": "scoreBand", "op": "equals", "value": "HIGH"}],
            "then": {"assign": "AE_POOL_A", "priority": 1, "alert": "SLACK", "sla": 5},
        },
    },
    {
        "id": "paid-search-qualified",
        "name": "Qualified paid search",
        "order": 2,
        "enabled": True,
        "definition": {
            "if": [
                {"field": "utm.source", "op": "equals", "value": "google-ads"},
                {"field": "score", "op": "greater_than", "value": 60},
            ],
            "then": {"assign": "AE_POOL_A", "priority": 2, "sla": 10},
        },
    },
    {
        "id": "enterprise-accounts",
        "name": "Enterprise accounts to senior AEs",
        "order": 3,
        "enabled": True,
        "definition": {
            "if": [{"field": "fields.company_size", "op": "in", "value": ["enterprise", "large"]}],
            "then": {"assign": "SENIOR_AE_POOL", "pool": "AE_POOL_A", "priority": 1, "alert": "EMAIL", "sla": 15},
        },
    },
    {
        "id": "medium-score",
        "name": "Medium score",
        "order": 4,
        "enabled": True,
        "definition": {
            "if": [{"field": "scoreBand", "op": "equals", "value": "MEDIUM"}],
            "then": {"assign": "AE_POOL_A", "priority": 3, "sla": 30},
        },
    },
    {
        "id": "low-score",
        "name": "Low score",
        "order": 5,
        "enabled": True,
        "definition": {
            "if": [{"field": "scoreBand", "op": "equals", "value": "LOW"}],
            "then": {"assign": "AE_POOL_A", "priority": 4, "sla": 60},
        },
    },
]


def default_scoring_config() -> ScoringConfig:
    return ScoringConfig.model_validate(DEFAULT_SCORING_CONFIG)


def default_scoring_rules() -> List[ScoringRule]:
    return parse_rules(DEFAULT_SCORING_RULES, ScoringRule)


def default_routing_rules() -> List[RoutingRule]:
    return parse_rules(DEFAULT_ROUTING_RULES, RoutingRule)


def default_sla_setting() -> SLASetting:
    return SLASetting()
