from typing import List

from loguru import logger

from engine.models import RoutingResult, TraceEntry
from engine.routing import OwnerDirectory
from graph.state import LeadState


def route(state: LeadState, services) -> LeadState:
    """
    Route a newly created lead and start its SLA clock.

    The owner write is a compare-and-swap against the store; when another
    assignment took the owner's last slot first, routing re-runs against a
    fresh owner snapshot. The trace keeps every attempt.
    """
    lead_id = state["lead_id"]
    logger.info(f"Starting routing for lead: {lead_id}")

    team = services.teams.get(state.get("team_id"))
    store = services.store
    history: List[TraceEntry] = []
    result = None

    for attempt in range(services.route_retries):
        lead = store.get_lead(lead_id)
        directory = OwnerDirectory.from_store(store, team.team_id, team.pools)
        result = services.routing.route(lead, team.routing_rules, directory, team.sla_setting)
        if result.owner_id is None:
            break
        if store.assign_owner(lead_id, result.owner_id, result.pool):
            break
        logger.warning(f"Owner {result.owner_id} filled up before assignment of {lead_id}, re-routing")
        history.extend(result.trace)
        history.append(TraceEntry(step="assign", reason="capacity_race", result=result.owner_id))
    else:
        result = RoutingResult(
            reason="no_capacity",
            pool=result.pool,
            priority=result.priority,
            sla=result.sla,
            alerts=result.alerts,
            trace=[],
            rule_id=result.rule_id,
        )
        for alert in result.alerts:
            alert.owner_id = None
    result.trace = history + result.trace

    if result.owner_id is None and result.pool:
        lead = store.get_lead(lead_id)
        lead.pool = result.pool
        store.update_lead(lead)

    store.append_event(lead_id, "lead_routed", result.to_dict())
    state["routing"] = result
    state["alerts"] = list(result.alerts)

    if result.sla:
        state["sla_clock"] = services.sla.create(
            lead_id,
            result.sla,
            setting=team.sla_setting,
            priority=result.priority,
        )

    logger.info(f"Routing completed for {lead_id}: {result.reason}")
    return state
