import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from engine.defaults import (
    default_routing_rules,
    default_scoring_config,
    default_scoring_rules,
    default_sla_setting,
)
from engine.errors import ConfigError
from engine.models import (
    Owner,
    RoutingRule,
    ScoringConfig,
    ScoringRule,
    SLASetting,
    parse_rules,
    validate_rule,
)

TEAM_CONFIG_PATH = os.getenv("TEAM_CONFIG_JSON", "./infra/teams.json")


class OwnerSpec(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None
    capacity: int = Field(ge=0)
    active: bool = True
    pools: List[str] = Field(default_factory=list)

    def to_owner(self, team_id: str) -> Owner:
        return Owner(
            id=self.id,
            team_id=team_id,
            capacity=self.capacity,
            active=self.active,
            name=self.name,
            email=self.email,
            pools=list(self.pools),
        )


@dataclass
class TeamConfig:
    team_id: str
    scoring_config: Optional[ScoringConfig]
    scoring_rules: List[ScoringRule] = field(default_factory=list)
    routing_rules: List[RoutingRule] = field(default_factory=list)
    sla_setting: SLASetting = field(default_factory=SLASetting)
    owners: List[Owner] = field(default_factory=list)
    pools: Dict[str, List[str]] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "teamId": self.team_id,
            "scoringConfigVersion": self.scoring_config.version if self.scoring_config else None,
            "scoringRules": [rule.id for rule in self.scoring_rules],
            "routingRules": [rule.id for rule in self.routing_rules],
            "owners": [owner.id for owner in self.owners],
            "pools": sorted(self.pools),
        }


def default_team(team_id: str) -> TeamConfig:
    return TeamConfig(
        team_id=team_id,
        scoring_config=default_scoring_config(),
        scoring_rules=default_scoring_rules(),
        routing_rules=default_routing_rules(),
        sla_setting=default_sla_setting(),
    )


def _load_team(team_id: str, raw: Dict[str, Any]) -> TeamConfig:
    """Lenient load of persisted team config: bad pieces are logged and skipped."""
    if "scoring_config" not in raw:
        scoring_config = default_scoring_config()
    else:
        try:
            scoring_config = ScoringConfig.model_validate(raw["scoring_config"])
        except ValidationError as e:
            logger.error(f"Invalid scoring config for team {team_id}, scoring disabled: {e.errors()[0].get('msg')}")
            scoring_config = None

    raw_scoring_rules = raw.get("scoring_rules") or []
    raw_routing_rules = raw.get("routing_rules") or []
    scoring_rules = parse_rules(raw_scoring_rules, ScoringRule) if raw_scoring_rules else default_scoring_rules()
    routing_rules = parse_rules(raw_routing_rules, RoutingRule) if raw_routing_rules else default_routing_rules()
    if raw_scoring_rules and not scoring_rules:
        logger.warning(f"Team {team_id} has no valid scoring rules left after validation")
    if raw_routing_rules and not routing_rules:
        logger.warning(f"Team {team_id} has no valid routing rules left after validation")

    try:
        sla_setting = SLASetting.model_validate(raw.get("sla_setting") or {})
    except ValidationError as e:
        logger.error(f"Invalid SLA setting for team {team_id}, using defaults: {e.errors()[0].get('msg')}")
        sla_setting = default_sla_setting()

    owners = []
    for item in raw.get("owners") or []:
        try:
            owners.append(OwnerSpec.model_validate(item).to_owner(team_id))
        except ValidationError as e:
            logger.warning(f"Skipping invalid owner {item!r} for team {team_id}: {e.errors()[0].get('msg')}")

    return TeamConfig(
        team_id=team_id,
        scoring_config=scoring_config,
        scoring_rules=scoring_rules,
        routing_rules=routing_rules,
        sla_setting=sla_setting,
        owners=owners,
        pools={name: list(members) for name, members in (raw.get("pools") or {}).items()},
    )


def _validate_team(team_id: str, raw: Dict[str, Any]) -> TeamConfig:
    """Strict write-time validation: the first problem raises."""
    try:
        if "scoring_config" in raw:
            scoring_config = ScoringConfig.model_validate(raw["scoring_config"])
        else:
            scoring_config = default_scoring_config()
        sla_setting = SLASetting.model_validate(raw.get("sla_setting") or {})
        owners = [OwnerSpec.model_validate(item).to_owner(team_id) for item in raw.get("owners") or []]
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration for team {team_id}: {e.errors()[0].get('msg')}") from e
    if not scoring_config.bands.is_partition():
        raise ConfigError(f"Scoring bands for team {team_id} must satisfy low == 0 < medium < high <= 100")

    scoring_rules = sorted((validate_rule(r, ScoringRule) for r in raw.get("scoring_rules") or []), key=lambda r: r.order)
    routing_rules = sorted((validate_rule(r, RoutingRule) for r in raw.get("routing_rules") or []), key=lambda r: r.order)

    return TeamConfig(
        team_id=team_id,
        scoring_config=scoring_config,
        scoring_rules=scoring_rules or default_scoring_rules(),
        routing_rules=routing_rules or default_routing_rules(),
        sla_setting=sla_setting,
        owners=owners,
        pools={name: list(members) for name, members in (raw.get("pools") or {}).items()},
    )


class TeamConfigRepository:
    """Team-scoped scoring, routing, SLA and owner configuration."""

    def __init__(self, path: Optional[str] = None, default_team_id: Optional[str] = None):
        self.path = path or os.getenv("TEAM_CONFIG_JSON", TEAM_CONFIG_PATH)
        self.default_team_id = default_team_id or os.getenv("DEFAULT_TEAM_ID", "default")
        self._teams: Dict[str, TeamConfig] = {}
        self._lock = threading.Lock()

    def load(self) -> Dict[str, TeamConfig]:
        """Load team configuration from the JSON file."""
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Team config not found at {self.path}, using defaults")
            data = {}
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON in team config {self.path}, using defaults")
            data = {}

        teams = {team_id: _load_team(team_id, raw or {}) for team_id, raw in (data.get("teams") or {}).items()}
        with self._lock:
            self._teams = teams
        logger.info(f"Loaded configuration for {len(teams)} teams from {self.path}")
        return teams

    def get(self, team_id: Optional[str] = None) -> TeamConfig:
        team_id = team_id or self.default_team_id
        with self._lock:
            team = self._teams.get(team_id)
        if team is None:
            # Unknown teams are not remembered; only loaded or stored teams are kept.
            logger.warning(f"No configuration for team {team_id}, using defaults")
            team = default_team(team_id)
        return team

    def put_team(self, team_id: str, raw: Dict[str, Any]) -> TeamConfig:
        team = _validate_team(team_id, raw)
        with self._lock:
            self._teams[team_id] = team
        logger.info(f"Stored configuration for team {team_id}")
        return team

    def teams(self) -> List[str]:
        with self._lock:
            return sorted(self._teams)

    def sync_owners(self, store) -> int:
        """Copy every configured owner into the lead store."""
        count = 0
        with self._lock:
            teams = list(self._teams.values())
        for team in teams:
            for owner in team.owners:
                store.upsert_owner(owner)
                count += 1
        return count
