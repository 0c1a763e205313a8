from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from loguru import logger

from engine.models import (
    AlertInstruction,
    Owner,
    RoutingResult,
    RoutingRule,
    SLASetting,
    TraceEntry,
    parse_rules,
)
from engine.rules import evaluate_all, flatten_lead

# Pool membership by capacity band, used when a pool has no explicit members.
CAPACITY_POOLS: Dict[str, Callable[[int], bool]] = {
    "SENIOR_AE_POOL": lambda capacity: capacity >= 100,
    "AE_POOL_A": lambda capacity: capacity >= 50,
    "AE_POOL_B": lambda capacity: 20 <= capacity < 50,
    "SDR_POOL": lambda capacity: capacity < 20,
    "FAST_TRACK_POOL": lambda capacity: capacity >= 30,
    "DEFAULT": lambda capacity: True,
}


class OwnerDirectory:
    """
    Snapshot of a team's owners, pools and rotation cursors taken at the
    start of a routing decision.
    """

    def __init__(
        self,
        owners: Iterable[Owner],
        pools: Optional[Mapping[str, List[str]]] = None,
        rotation: Optional[Mapping[str, int]] = None,
    ):
        self._owners = {owner.id: owner for owner in owners}
        self._pools = {name: list(members) for name, members in (pools or {}).items()}
        self._rotation = dict(rotation or {})

    @classmethod
    def from_store(cls, store, team_id: str, pools: Optional[Mapping[str, List[str]]] = None) -> "OwnerDirectory":
        return cls(store.owners(team_id), pools, store.rotation_cursors(team_id))

    def owner(self, owner_id: str) -> Optional[Owner]:
        return self._owners.get(owner_id)

    def is_pool(self, name: str) -> bool:
        return (
            name in self._pools
            or name in CAPACITY_POOLS
            or any(name in owner.pools for owner in self._owners.values())
        )

    def members(self, pool: str) -> List[Owner]:
        """Explicit members first; owner-declared pools next; capacity bands last."""
        if pool in self._pools:
            return [self._owners[oid] for oid in self._pools[pool] if oid in self._owners]
        tagged = [owner for owner in self._owners.values() if pool in owner.pools]
        if tagged:
            return tagged
        band = CAPACITY_POOLS.get(pool)
        if band is None:
            return []
        return [owner for owner in self._owners.values() if band(owner.capacity)]

    def cursor(self, pool: str) -> int:
        return self._rotation.get(pool, 0)


def select_least_loaded(members: Iterable[Owner], cursor: int = 0) -> Optional[Owner]:
    """
    Pick the member with the lowest load/capacity ratio.

    Members at or over capacity are never eligible. Ties are ordered by id and
    broken by the pool's rotation cursor, so consecutive assignments fan out.
    """
    eligible = [owner for owner in members if owner.has_capacity]
    if not eligible:
        return None
    lowest = min(owner.utilization for owner in eligible)
    tied = sorted((owner for owner in eligible if owner.utilization == lowest), key=lambda o: o.id)
    return tied[cursor % len(tied)]


class RoutingEngine:
    """First-match-wins routing over AND-combined rule conditions."""

    def route(
        self,
        lead: Union[Any, Mapping[str, Any]],
        rules: Iterable[Union[RoutingRule, Dict[str, Any]]],
        directory: OwnerDirectory,
        sla_setting: Optional[SLASetting] = None,
    ) -> RoutingResult:
        record = flatten_lead(lead if isinstance(lead, Mapping) else lead.to_record())
        lead_id = record.get("id") or "unknown"
        trace: List[TraceEntry] = []

        for rule in parse_rules(rules, RoutingRule):
            if not rule.enabled:
                continue
            if not evaluate_all(rule.definition.if_, record):
                trace.append(TraceEntry(step="rule", rule=rule.id, result="no_match"))
                continue
            trace.append(TraceEntry(step="rule", rule=rule.id, result="matched", reason=rule.name or None))
            return self._apply(rule, lead_id, directory, sla_setting, trace)

        logger.info(f"No routing rule matched lead {lead_id}")
        return RoutingResult(reason="no_matching_rule", trace=trace)

    def _apply(
        self,
        rule: RoutingRule,
        lead_id: str,
        directory: OwnerDirectory,
        sla_setting: Optional[SLASetting],
        trace: List[TraceEntry],
    ) -> RoutingResult:
        action = rule.definition.then
        sla = action.sla
        if sla is None and sla_setting is not None:
            sla = sla_setting.minutes_for_priority(action.priority)

        owner_id, pool, reason = self._resolve(action.assign, action.pool, directory)
        trace.append(TraceEntry(step="assign", rule=rule.id, reason=reason, result=owner_id or pool))

        alerts = []
        if action.alert is not None:
            alerts.append(AlertInstruction(
                channel=action.alert,
                lead_id=lead_id,
                owner_id=owner_id,
                pool=pool,
                priority=action.priority,
                webhook=action.webhook,
                rule_id=rule.id,
            ))

        logger.info(f"Rule {rule.id} routed lead {lead_id}: owner={owner_id} pool={pool} reason={reason}")
        return RoutingResult(
            reason=reason,
            owner_id=owner_id,
            pool=pool,
            priority=action.priority,
            sla=sla,
            alerts=alerts,
            trace=trace,
            rule_id=rule.id,
        )

    def _resolve(self, target: str, fallback_pool: Optional[str], directory: OwnerDirectory):
        owner = directory.owner(target)
        if owner is not None:
            if owner.has_capacity:
                return owner.id, None, "direct_owner"
            blocked = "owner_at_capacity" if owner.active else "owner_unavailable"
            if fallback_pool:
                picked = self._from_pool(fallback_pool, directory)
                if picked:
                    return picked.id, fallback_pool, "fallback_pool"
                return None, fallback_pool, "no_capacity"
            return None, None, blocked

        if directory.is_pool(target):
            picked = self._from_pool(target, directory)
            if picked:
                return picked.id, target, "pool_least_loaded"
            if fallback_pool and fallback_pool != target:
                picked = self._from_pool(fallback_pool, directory)
                if picked:
                    return picked.id, fallback_pool, "fallback_pool"
            return None, target, "no_capacity"

        logger.warning(f"Routing target {target!r} is neither an owner nor a pool")
        return None, None, "unknown_target"

    @staticmethod
    def _from_pool(pool: str, directory: OwnerDirectory) -> Optional[Owner]:
        return select_least_loaded(directory.members(pool), directory.cursor(pool))
