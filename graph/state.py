from typing import TypedDict, Optional, List, Dict, Any

from engine.models import (
    AlertInstruction,
    DedupeResult,
    NormalizedLead,
    RoutingResult,
    ScoringResult,
    SLAClock,
)


class LeadState(TypedDict, total=False):
    """State shape for the lead decision workflow."""
    event_id: str
    team_id: str
    raw: Dict[str, Any]              # original webhook payload
    policy: str                      # "merge" | "skip" | "create_new"
    conflict: str                    # "fill_gaps" | "crm_wins" | "newest_wins"
    lead: NormalizedLead
    lead_id: Optional[str]           # persisted lead id, set by dedupe
    scoring: ScoringResult
    dedupe: DedupeResult
    routing: Optional[RoutingResult]
    sla_clock: Optional[SLAClock]
    alerts: List[AlertInstruction]   # delivered after commit
    errors: List[str]
