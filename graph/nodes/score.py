from loguru import logger

from graph.state import LeadState


def score(state: LeadState, services) -> LeadState:
    """Score the captured lead with the team's active config and rules."""
    logger.info(f"Starting scoring for event: {state.get('event_id', 'unknown')}")

    team = services.teams.get(state.get("team_id"))
    if team.scoring_config is None:
        state.setdefault("errors", []).append(f"no scoring config for team {team.team_id}")

    result = services.scoring.score(state["lead"], team.scoring_config, team.scoring_rules)
    state["scoring"] = result

    logger.info(f"Final score: {result.score} ({result.band.value}) tags={result.tags}")
    return state
