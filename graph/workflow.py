from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from langgraph.graph import END, START, StateGraph
from loguru import logger

from engine.dedupe import DedupeEngine
from engine.errors import LeadPipelineError, LeadRejectedError, PipelineError
from engine.models import ConflictStrategy, DedupeAction, DedupePolicy, new_id
from engine.routing import RoutingEngine
from engine.scoring import ScoringEngine
from engine.sla import SLAClockManager
from engine.store import LeadStore
from graph.nodes.capture import capture
from graph.nodes.dedupe import dedupe
from graph.nodes.route import route
from graph.nodes.score import score
from graph.state import LeadState
from tools.team_config import TeamConfigRepository


@dataclass
class PipelineServices:
    """Collaborators shared by the workflow nodes. Nothing here is a module global."""
    store: LeadStore
    teams: TeamConfigRepository
    locks: Any = None
    scoring: ScoringEngine = field(default_factory=ScoringEngine)
    routing: RoutingEngine = field(default_factory=RoutingEngine)
    dedupe: Optional[DedupeEngine] = None
    sla: Optional[SLAClockManager] = None
    route_retries: int = 3

    def __post_init__(self):
        if self.dedupe is None:
            self.dedupe = DedupeEngine(self.store, self.locks)
        if self.sla is None:
            self.sla = SLAClockManager(self.store)


def build_workflow(services: PipelineServices):
    """Build the lead decision workflow: capture -> score -> dedupe -> route."""
    workflow = StateGraph(LeadState)

    def score_node(state: LeadState) -> LeadState:
        return score(state, services)

    def dedupe_node(state: LeadState) -> LeadState:
        return dedupe(state, services)

    def route_node(state: LeadState) -> LeadState:
        return route(state, services)

    # Add nodes
    workflow.add_node("capture", capture)
    workflow.add_node("score", score_node)
    workflow.add_node("dedupe", dedupe_node)
    workflow.add_node("route", route_node)

    # Add edges
    workflow.add_edge(START, "capture")
    workflow.add_edge("capture", "score")
    workflow.add_edge("score", "dedupe")

    # Only newly created leads are routed; merged and skipped leads keep their owner
    def branch_decision(state: LeadState) -> str:
        if state["dedupe"].action is DedupeAction.CREATED:
            return "route"
        logger.info(f"Lead {state.get('lead_id')} was {state['dedupe'].action.value}, routing skipped")
        return "end"

    workflow.add_conditional_edges("dedupe", branch_decision, {"route": "route", "end": END})
    workflow.add_edge("route", END)

    return workflow.compile()


class LeadPipeline:
    """Runs one lead event through the workflow inside a single store transaction."""

    def __init__(self, services: PipelineServices):
        self.services = services
        self.graph = build_workflow(services)

    def process(
        self,
        raw: Dict[str, Any],
        team_id: Optional[str] = None,
        event_id: Optional[str] = None,
        policy: str = DedupePolicy.MERGE.value,
        conflict: str = ConflictStrategy.FILL_GAPS.value,
    ) -> LeadState:
        event_id = event_id or new_id("evt")
        team_id = team_id or self.services.teams.default_team_id
        try:
            policy = DedupePolicy(policy).value
            conflict = ConflictStrategy(conflict).value
        except ValueError as e:
            logger.error(f"Lead event {event_id} rejected: {e}; payload={raw}")
            raise LeadRejectedError(str(e)) from e

        initial_state: LeadState = {
            "event_id": event_id,
            "team_id": team_id,
            "raw": raw,
            "policy": policy,
            "conflict": conflict,
            "alerts": [],
            "errors": [],
        }

        logger.info(f"Starting workflow execution for event: {event_id} (team {team_id})")
        try:
            with self.services.store.transaction():
                result = self.graph.invoke(initial_state)
        except LeadRejectedError as e:
            logger.error(f"Lead event {event_id} rejected: {e}; payload={raw}")
            raise
        except PipelineError as e:
            logger.error(f"Lead event {event_id} failed: {e}; payload={raw}")
            raise
        except LeadPipelineError as e:
            logger.error(f"Lead event {event_id} failed: {e}; payload={raw}")
            raise PipelineError(str(e)) from e
        except Exception as e:
            logger.exception(f"Lead event {event_id} failed unexpectedly; payload={raw}")
            raise PipelineError(f"Pipeline failed for event {event_id}: {e}") from e

        logger.info(f"Workflow completed for event {event_id}: lead {result.get('lead_id')}")
        return result

    @staticmethod
    def to_response(state: LeadState) -> Dict[str, Any]:
        scoring = state.get("scoring")
        dedupe_result = state.get("dedupe")
        routing = state.get("routing")
        clock = state.get("sla_clock")
        return {
            "status": "success",
            "event_id": state.get("event_id"),
            "lead_id": state.get("lead_id"),
            "dedupe": dedupe_result.to_dict() if dedupe_result else None,
            "scoring": scoring.to_dict() if scoring else None,
            "routing": routing.to_dict() if routing else None,
            "sla": clock.to_dict() if clock else None,
            "errors": list(state.get("errors") or []),
        }
