import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger
from pydantic import ValidationError

from engine.domains import (
    company_domain,
    email_domain,
    is_disposable_domain,
    is_free_email_domain,
    is_valid_domain,
    normalize_domain,
    normalize_email,
)
from engine.models import (
    Lead,
    NormalizedLead,
    RuleType,
    ScoreBand,
    ScoringConfig,
    ScoringResult,
    ScoringRule,
    TraceEntry,
    parse_rules,
)
from engine.rules import evaluate_any, flatten_lead

URGENCY_LEVELS = {"critical": 1.0, "high": 1.0, "medium": 0.6, "normal": 0.4, "low": 0.2}
# Ordered (pattern, strength, label); first match wins.
TIMELINE_SIGNALS: List[Tuple[str, float, str]] = [
    (r"\b(asap|immediately|urgent|today|right away)\b", 1.0, "immediate"),
    (r"\bthis week\b", 0.9, "this week"),
    (r"\b(this month|within (a|one|1) month|30 days)\b", 0.7, "this month"),
    (r"\b(this quarter|next month|90 days)\b", 0.5, "this quarter"),
    (r"\b(next quarter|6 months|six months|this year)\b", 0.3, "later this year"),
    (r"\b(just looking|researching|browsing|no timeline)\b", 0.1, "researching"),
]

ENGAGEMENT_LEVELS = {
    "very_interested": 1.0,
    "interested": 0.7,
    "somewhat_interested": 0.5,
    "neutral": 0.4,
    "not_interested": 0.0,
}
HIGH_INTENT_SOURCES = {
    "google-ads": 0.8,
    "linkedin": 0.6,
    "referral": 0.6,
    "webinar": 0.6,
    "organic": 0.4,
    "social": 0.3,
    "direct": 0.3,
}
PAID_MEDIUMS = frozenset({"cpc", "ppc", "paid", "paid_search", "paid-social", "paid_social"})

# First match wins. "President" counts as executive unless it follows "vice".
JOB_ROLE_TIERS: List[Tuple[str, float, str]] = [
    (r"\b(student|intern|internship|trainee)\b", 0.0, "student"),
    (r"\b(ceo|cto|cfo|coo|cmo|cio|cro|chief|founder|co-founder|cofounder|business owner|^owner$|(?<!vice )(?<!vice-)president)\b", 1.0, "executive"),
    (r"\b(vice president|vp|svp|evp|head of|head)\b", 0.8, "vp"),
    (r"\b(director)\b", 0.7, "director"),
    (r"\b(manager|lead|supervisor|principal)\b", 0.5, "manager"),
]
INDIVIDUAL_CONTRIBUTOR = 0.3

SPAM_PATTERNS = re.compile(
    r"(viagra|casino|crypto giveaway|free money|click here|you have won|winner!|https?://|\$\$\$)",
    re.IGNORECASE,
)

LeadInput = Union[NormalizedLead, Lead, Mapping[str, Any], None]


def _first(fields: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return value
    return None


def urgency_signal(fields: Mapping[str, Any]) -> Tuple[float, Optional[str]]:
    level = _first(fields, "urgency")
    if level is not None and str(level).strip().lower() in URGENCY_LEVELS:
        return URGENCY_LEVELS[str(level).strip().lower()], f"urgency={str(level).lower()}"
    timeline = _first(fields, "timeline", "timeframe", "purchase_timeline")
    if timeline is not None:
        text = str(timeline).lower()
        for pattern, strength, label in TIMELINE_SIGNALS:
            if re.search(pattern, text):
                return strength, f"timeline={label}"
    return 0.0, None


def engagement_signal(fields: Mapping[str, Any], utm: Mapping[str, Any]) -> Tuple[float, Optional[str]]:
    level = _first(fields, "engagement", "interest")
    if level is not None and str(level).strip().lower() in ENGAGEMENT_LEVELS:
        return ENGAGEMENT_LEVELS[str(level).strip().lower()], f"engagement={str(level).lower()}"
    if str(_first(fields, "demo_requested", "demoRequested") or "").lower() in ("true", "1", "yes"):
        return 1.0, "demo requested"

    source = str(utm.get("source") or "").strip().lower()
    medium = str(utm.get("medium") or "").strip().lower()
    best, reason = 0.0, None
    if source in HIGH_INTENT_SOURCES:
        best, reason = HIGH_INTENT_SOURCES[source], f"utm.source={source}"
    if medium in PAID_MEDIUMS and best < 0.8:
        best, reason = 0.8, f"utm.medium={medium}"
    return best, reason


def job_role_signal(fields: Mapping[str, Any]) -> Tuple[float, Optional[str]]:
    title = _first(fields, "title", "job_title", "jobTitle", "role")
    if title is None:
        return 0.0, None
    text = str(title).lower()
    for pattern, strength, label in JOB_ROLE_TIERS:
        if re.search(pattern, text):
            return strength, f"title tier {label}"
    return INDIVIDUAL_CONTRIBUTOR, "title tier individual_contributor"


def _round_half_up(value: float) -> int:
    # Float noise (0.7 * 45 == 31.499999...) must not flip the rounding direction.
    return int(math.floor(round(value, 6) + 0.5))


def _coerce_lead(lead: LeadInput) -> Optional[Union[NormalizedLead, Lead]]:
    if lead is None:
        return None
    if isinstance(lead, (NormalizedLead, Lead)):
        return lead
    try:
        return NormalizedLead.model_validate(lead)
    except ValidationError as e:
        logger.warning(f"Cannot score malformed lead payload: {e.errors()[0].get('msg')}")
        return None


class ScoringEngine:
    """
    Pure scoring: `score(lead, config, rules)` depends on nothing else.

    Steps run in a fixed order (category weights, negative penalties,
    enrichment bonuses, scoring rules, clamp, band) and each one that moves
    the total leaves a trace entry, so the final score can be replayed.
    """

    def score(
        self,
        lead: LeadInput,
        config: Optional[ScoringConfig],
        rules: Optional[Iterable[Union[ScoringRule, Dict[str, Any]]]] = None,
    ) -> ScoringResult:
        if config is None:
            return ScoringResult(
                score=0,
                band=ScoreBand.LOW,
                tags=["no_config"],
                trace=[TraceEntry(step="final", reason="no_config", total=0, result=ScoreBand.LOW.value)],
            )

        subject = _coerce_lead(lead)
        if subject is None:
            return ScoringResult(
                score=0,
                band=ScoreBand.LOW,
                tags=["invalid_data"],
                trace=[TraceEntry(step="final", reason="invalid_data", total=0, result=ScoreBand.LOW.value)],
            )

        run = _ScoreRun()
        fields = subject.fields or {}
        utm = subject.utm or {}

        self._apply_weights(run, config, fields, utm)
        self._apply_negatives(run, config, subject)
        self._apply_enrichment(run, config, fields)
        self._apply_rules(run, rules, subject)

        final = _round_half_up(min(max(run.total, 0.0), 100.0))
        band, band_reason = self.determine_band(final, config)
        run.trace.append(TraceEntry(step="final", reason=band_reason, total=final, result=band.value))

        return ScoringResult(score=final, band=band, tags=run.tags, trace=run.trace)

    @staticmethod
    def determine_band(score: float, config: ScoringConfig) -> Tuple[ScoreBand, Optional[str]]:
        bands = config.bands
        if not bands.is_partition():
            logger.warning(
                f"Scoring bands do not partition 0-100 (high={bands.high}, medium={bands.medium}, "
                f"low={bands.low}); defaulting to LOW"
            )
            return ScoreBand.LOW, "band_config_invalid"
        if score >= bands.high:
            return ScoreBand.HIGH, None
        if score >= bands.medium:
            return ScoreBand.MEDIUM, None
        return ScoreBand.LOW, None

    def _apply_weights(self, run: "_ScoreRun", config: ScoringConfig, fields, utm) -> None:
        signals = [
            ("urgency", config.weights.urgency, urgency_signal(fields)),
            ("engagement", config.weights.engagement, engagement_signal(fields, utm)),
            ("jobRole", config.weights.job_role, job_role_signal(fields)),
        ]
        for category, weight, (strength, reason) in signals:
            delta = weight * strength
            if delta:
                run.add(TraceEntry(step="category", rule=category, delta=round(delta, 2), reason=reason), delta)

    def _apply_negatives(self, run: "_ScoreRun", config: ScoringConfig, lead) -> None:
        penalties = config.negative
        mail_domain = email_domain(lead.email)
        business_domain = company_domain(lead.domain, lead.email)
        domains = {d for d in (normalize_domain(lead.domain), mail_domain, business_domain) if d}

        if config.competitors and domains & set(config.competitors):
            run.penalize("competitor", penalties.competitor, f"competitor domain {sorted(domains & set(config.competitors))[0]}")

        if is_free_email_domain(mail_domain):
            run.penalize("free_email", penalties.free_email, f"free mailbox {mail_domain}")

        invalid = None
        if lead.email and normalize_email(lead.email) is None:
            invalid = "malformed email"
        elif lead.domain and not is_valid_domain(normalize_domain(lead.domain)):
            invalid = f"invalid domain {lead.domain}"
        elif is_disposable_domain(mail_domain):
            invalid = f"disposable mailbox {mail_domain}"
        if invalid:
            run.penalize("invalid_domain", penalties.invalid_domain, invalid)

        fields = lead.fields or {}
        spam_flag = str(fields.get("spam", "")).lower() in ("true", "1", "yes")
        text = " ".join(str(part) for part in (lead.name, lead.company) if part)
        messages = getattr(lead, "messages", None) or []
        if spam_flag or SPAM_PATTERNS.search(text) or any(SPAM_PATTERNS.search(m) for m in messages):
            run.penalize("spam", penalties.spam, "spam indicators")

    def _apply_enrichment(self, run: "_ScoreRun", config: ScoringConfig, fields) -> None:
        enrichment = fields.get("enrichment") if isinstance(fields.get("enrichment"), Mapping) else {}
        sources = {
            "company_size": _first(enrichment, "companySize", "company_size") or _first(fields, "company_size", "companySize"),
            "industry": _first(enrichment, "industry") or _first(fields, "industry"),
            "revenue": _first(enrichment, "revenue") or _first(fields, "revenue"),
        }
        matched = False
        for table, tag in sources.items():
            points = config.enrichment.lookup(table, tag)
            if points is None:
                continue
            matched = True
            run.tag(str(tag).strip().lower())
            if points:
                run.add(TraceEntry(step="enrichment", rule=table, delta=points, reason=f"{table}={tag}"), points)
        if matched:
            run.tag("enriched")

    def _apply_rules(self, run: "_ScoreRun", rules, lead) -> None:
        if not rules:
            return
        parsed = parse_rules(rules, ScoringRule)
        record = flatten_lead(lead.to_record())
        for rule in parsed:
            if not rule.enabled:
                continue
            if rule.type is RuleType.IF_THEN:
                if not evaluate_any(rule.definition.if_, record):
                    continue
                outcome = rule.definition.then
                run.add(TraceEntry(step="rule", rule=rule.id, delta=outcome.adjust, reason=outcome.reason), outcome.adjust)
                if outcome.reason:
                    run.tag(outcome.reason)
                if outcome.tag:
                    run.tag(outcome.tag)
            else:
                points = _weight_lookup(rule.definition.weights, record.get(rule.definition.field))
                if points:
                    run.add(
                        TraceEntry(
                            step="rule",
                            rule=rule.id,
                            delta=points,
                            reason=f"{rule.definition.field}={record.get(rule.definition.field)}",
                        ),
                        points,
                    )


def _weight_lookup(weights: Mapping[str, float], value: Any) -> float:
    if value is None:
        return 0
    key = str(value)
    if key in weights:
        return weights[key]
    wanted = key.strip().lower()
    for candidate, points in weights.items():
        if candidate.lower() == wanted:
            return points
    return 0


class _ScoreRun:
    """Running total, tags and trace for a single scoring pass."""

    def __init__(self):
        self.total = 0.0
        self.tags: List[str] = []
        self.trace: List[TraceEntry] = []

    def add(self, entry: TraceEntry, delta: float) -> None:
        self.total += delta
        entry.total = round(self.total, 2)
        self.trace.append(entry)

    def tag(self, tag: str) -> None:
        if tag and tag not in self.tags:
            self.tags.append(tag)

    def penalize(self, tag: str, points: float, reason: str) -> None:
        self.tag(tag)
        if points:
            self.add(TraceEntry(step="negative", rule=tag, delta=-points, reason=reason), -points)
