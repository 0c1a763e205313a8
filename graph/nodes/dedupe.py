from loguru import logger

from engine.models import DedupeAction
from graph.state import LeadState


def dedupe(state: LeadState, services) -> LeadState:
    """Create the lead, merge it into an existing one, or skip it."""
    logger.info(f"Starting dedupe for event: {state.get('event_id', 'unknown')}")

    scoring = state["scoring"]
    result = services.dedupe.deduplicate(
        state["lead"],
        state["team_id"],
        policy=state.get("policy") or "merge",
        conflict=state.get("conflict") or "fill_gaps",
        scoring=scoring,
    )
    state["dedupe"] = result
    state["lead_id"] = result.lead_id

    if result.action is not DedupeAction.SKIPPED:
        services.store.append_event(result.lead_id, "lead_scored", {
            "eventId": state.get("event_id"),
            **scoring.to_dict(),
        })

    logger.info(f"Dedupe {result.action.value} for lead {result.lead_id}")
    return state
