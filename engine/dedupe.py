from contextlib import nullcontext
from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger

from engine.domains import (
    company_domain,
    normalize_company,
    normalize_domain,
    normalize_email,
    normalize_phone,
)
from engine.errors import DuplicateKeyError, LeadRejectedError, LeadNotFoundError, PipelineError
from engine.models import (
    ConflictStrategy,
    DedupeAction,
    DedupeKey,
    DedupePolicy,
    DedupeResult,
    Direction,
    Lead,
    MergeResult,
    Message,
    NormalizedLead,
    ScoringResult,
    new_id,
    utc_now,
)
from engine.store import LeadStore

MATCH_ORDER = ("email", "phone", "company")
IDENTITY_ATTRS = ("email", "name", "phone", "company", "domain")
KEY_KIND_FOR_ATTR = {"email": "email", "phone": "phone", "company": "company", "domain": "company"}
CRM_SOURCES = frozenset({"crm", "hubspot", "salesforce", "pipedrive", "zoho_crm"})


def build_keys(lead: Union[NormalizedLead, Lead], team_id: str) -> List[DedupeKey]:
    """Identity keys for a lead, in match order. Leads without usable identity get none."""
    keys = []
    email = normalize_email(lead.email)
    if email:
        keys.append(DedupeKey(team_id, "email", email))
    phone = normalize_phone(lead.phone)
    if phone:
        keys.append(DedupeKey(team_id, "phone", phone))
    domain = company_domain(lead.domain, lead.email)
    company = normalize_company(lead.company)
    if domain and company:
        keys.append(DedupeKey(team_id, "company", f"{domain}|{company}"))
    return keys


def _normalized_attrs(lead: Union[NormalizedLead, Lead]) -> Dict[str, Any]:
    return {
        "email": normalize_email(lead.email) or lead.email,
        "name": lead.name,
        "phone": lead.phone,
        "company": lead.company,
        "domain": company_domain(lead.domain, lead.email) or normalize_domain(lead.domain),
    }


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == {} or value == []


class DedupeEngine:
    """
    Decides whether an incoming lead is new, a duplicate to merge, or a
    duplicate to skip.

    The match-then-write sequence runs inside a store transaction while the
    identity locks for every key of the lead are held. The store's unique
    key constraint is the backstop: a DuplicateKeyError on create sends the
    lead back through matching, where it merges.
    """

    def __init__(self, store: LeadStore, locks=None, max_retries: int = 3):
        self.store = store
        self.locks = locks
        self.max_retries = max_retries

    build_keys = staticmethod(build_keys)

    def find_match(self, keys: List[DedupeKey]) -> Optional[Tuple[str, DedupeKey]]:
        """First match wins: email, then phone, then domain+company."""
        for kind in MATCH_ORDER:
            for key in keys:
                if key.kind != kind:
                    continue
                lead_id = self.store.find_lead_by_key(key)
                if lead_id:
                    return lead_id, key
        return None

    def deduplicate(
        self,
        lead: NormalizedLead,
        team_id: str,
        policy: Union[DedupePolicy, str] = DedupePolicy.MERGE,
        conflict: Union[ConflictStrategy, str] = ConflictStrategy.FILL_GAPS,
        scoring: Optional[ScoringResult] = None,
    ) -> DedupeResult:
        policy = DedupePolicy(policy)
        conflict = ConflictStrategy(conflict)
        keys = build_keys(lead, team_id)

        with self.store.transaction(), self._hold(keys):
            for attempt in range(self.max_retries + 1):
                if policy is DedupePolicy.CREATE_NEW:
                    try:
                        return self._create(lead, team_id, self._unowned(keys), scoring, policy)
                    except DuplicateKeyError as e:
                        logger.warning(f"Key {e.key.kind} claimed concurrently for team {team_id}, retrying")
                        continue

                match = self.find_match(keys)
                if match is None:
                    try:
                        return self._create(lead, team_id, keys, scoring, policy)
                    except DuplicateKeyError as e:
                        logger.warning(
                            f"Identity race on {e.key.kind} for team {team_id}; "
                            f"retrying as merge (attempt {attempt + 1})"
                        )
                        continue

                existing_id, key = match
                if policy is DedupePolicy.SKIP:
                    logger.info(f"Duplicate of {existing_id} on {key.kind}, skipped")
                    return DedupeResult(
                        action=DedupeAction.SKIPPED,
                        lead_id=existing_id,
                        duplicate_id=existing_id,
                        match_type=key.kind,
                    )
                return self._merge_into(existing_id, key, lead, keys, conflict, scoring)

        raise PipelineError(f"Identity for team {team_id} did not settle after {self.max_retries} retries")

    def analyze(self, lead: NormalizedLead, team_id: str) -> Dict[str, Any]:
        """Read-only view of the keys, every candidate match and the recommended action."""
        keys = build_keys(lead, team_id)
        candidates: Dict[str, Dict[str, Any]] = {}
        for kind in MATCH_ORDER:
            for key in keys:
                if key.kind != kind:
                    continue
                lead_id = self.store.find_lead_by_key(key)
                if not lead_id:
                    continue
                entry = candidates.setdefault(lead_id, {"leadId": lead_id, "matchType": kind, "matchedKeys": []})
                entry["matchedKeys"].append(kind)

        if not candidates:
            recommendation = "create"
        elif len(candidates) == 1:
            recommendation = "merge"
        else:
            recommendation = "review"

        return {
            "teamId": team_id,
            "keys": [key.to_dict() for key in keys],
            "candidates": list(candidates.values()),
            "recommendation": recommendation,
            "primaryId": next(iter(candidates), None),
        }

    def merge_leads(self, team_id: str, primary_id: str, duplicate_id: str) -> DedupeResult:
        """Fold an existing duplicate lead into `primary_id` and delete the duplicate."""
        if primary_id == duplicate_id:
            raise LeadRejectedError("A lead cannot be merged into itself")

        with self.store.transaction():
            primary = self.store.get_lead(primary_id)
            duplicate = self.store.get_lead(duplicate_id)
            for lead in (primary, duplicate):
                if lead.team_id != team_id:
                    raise LeadNotFoundError(f"Lead {lead.id} not found in team {team_id}")

            updated = self._fill(primary, _normalized_attrs(duplicate), duplicate.fields, duplicate.utm, False, set())
            if duplicate.score > primary.score:
                primary.score, primary.score_band = duplicate.score, duplicate.score_band
                updated.append("score")
            primary.tags = list(dict.fromkeys(primary.tags + duplicate.tags))
            if primary.owner_id is None and duplicate.owner_id:
                primary.owner_id, primary.pool, primary.status = duplicate.owner_id, duplicate.pool, duplicate.status
                updated.append("ownerId")
            primary.updated_at = utc_now()

            moved_messages = self.store.move_messages(duplicate_id, primary_id)
            moved_events = self.store.move_events(duplicate_id, primary_id)
            moved_clocks = self.store.move_clocks(duplicate_id, primary_id)
            attached = []
            for key in self.store.release_keys(duplicate_id):
                if self.store.claim_key(key, primary_id):
                    attached.append(f"{key.kind}:{key.value}")

            self.store.delete_lead(duplicate_id)
            self.store.update_lead(primary)
            self.store.append_event(primary_id, "lead_merged", {
                "duplicateId": duplicate_id,
                "updatedFields": updated,
                "movedMessages": moved_messages,
                "movedEvents": moved_events,
                "movedClocks": moved_clocks,
                "attachedKeys": attached,
            })

        logger.info(f"Merged lead {duplicate_id} into {primary_id}")
        return DedupeResult(
            action=DedupeAction.MERGED,
            lead_id=primary_id,
            duplicate_id=duplicate_id,
            merge_result=MergeResult(
                consolidated_messages=moved_messages,
                consolidated_events=moved_events + 1,
                updated_fields=updated,
                attached_keys=attached,
            ),
        )

    def _hold(self, keys: List[DedupeKey]):
        if self.locks is None or not keys:
            return nullcontext()
        return self.locks.hold(keys)

    def _unowned(self, keys: List[DedupeKey]) -> List[DedupeKey]:
        return [key for key in keys if self.store.find_lead_by_key(key) is None]

    def _create(
        self,
        incoming: NormalizedLead,
        team_id: str,
        keys: List[DedupeKey],
        scoring: Optional[ScoringResult],
        policy: DedupePolicy,
    ) -> DedupeResult:
        attrs = _normalized_attrs(incoming)
        lead = Lead(
            id=new_id("lead"),
            team_id=team_id,
            source=incoming.source,
            source_ref=incoming.source_ref,
            fields=dict(incoming.fields),
            utm=dict(incoming.utm),
            **attrs,
        )
        if scoring is not None:
            lead.score, lead.score_band, lead.tags = scoring.score, scoring.band, list(scoring.tags)

        self.store.create_lead(lead, keys)
        for body in incoming.messages:
            self.store.add_message(
                Message(id=new_id("msg"), lead_id=lead.id, direction=Direction.IN, channel=incoming.source, body=body)
            )
        self.store.append_event(lead.id, "lead_created", {
            "source": incoming.source,
            "sourceRef": incoming.source_ref,
            "policy": policy.value,
            "keys": [key.to_dict() for key in keys],
        })
        logger.info(f"Created lead {lead.id} for team {team_id} with {len(keys)} identity keys")
        return DedupeResult(action=DedupeAction.CREATED, lead_id=lead.id)

    def _merge_into(
        self,
        existing_id: str,
        match: DedupeKey,
        incoming: NormalizedLead,
        keys: List[DedupeKey],
        conflict: ConflictStrategy,
        scoring: Optional[ScoringResult],
    ) -> DedupeResult:
        existing = self.store.get_lead(existing_id)
        prefer_incoming = conflict is ConflictStrategy.NEWEST_WINS or (
            conflict is ConflictStrategy.CRM_WINS and self._is_crm(incoming.source)
        )
        foreign = {
            key.kind
            for key in keys
            if self.store.find_lead_by_key(key) not in (None, existing_id)
        }

        updated = self._fill(existing, _normalized_attrs(incoming), incoming.fields, incoming.utm, prefer_incoming, foreign)
        if scoring is not None:
            if scoring.score > existing.score:
                existing.score, existing.score_band = scoring.score, scoring.band
                updated.append("score")
            existing.tags = list(dict.fromkeys(existing.tags + scoring.tags))
        existing.updated_at = max(utc_now(), existing.updated_at)
        self.store.update_lead(existing)

        attached = []
        for key in keys:
            holder = self.store.find_lead_by_key(key)
            if holder is None and self.store.claim_key(key, existing_id):
                attached.append(f"{key.kind}:{key.value}")

        for body in incoming.messages:
            self.store.add_message(
                Message(id=new_id("msg"), lead_id=existing_id, direction=Direction.IN, channel=incoming.source, body=body)
            )
        self.store.append_event(existing_id, "lead_merged", {
            "matchType": match.kind,
            "source": incoming.source,
            "sourceRef": incoming.source_ref,
            "conflict": conflict.value,
            "updatedFields": updated,
            "attachedKeys": attached,
            "consolidatedMessages": len(incoming.messages),
        })
        logger.info(f"Merged submission into lead {existing_id} on {match.kind} ({len(updated)} fields updated)")

        return DedupeResult(
            action=DedupeAction.MERGED,
            lead_id=existing_id,
            duplicate_id=existing_id,
            match_type=match.kind,
            merge_result=MergeResult(
                consolidated_messages=len(incoming.messages),
                consolidated_events=1,
                updated_fields=updated,
                attached_keys=attached,
            ),
        )

    @staticmethod
    def _fill(
        lead: Lead,
        attrs: Dict[str, Any],
        fields: Dict[str, Any],
        utm: Dict[str, Any],
        prefer_incoming: bool,
        foreign_kinds: set,
    ) -> List[str]:
        """Apply incoming values onto `lead`; returns the dotted names that changed."""
        updated = []
        for attr in IDENTITY_ATTRS:
            incoming = attrs.get(attr)
            if _is_empty(incoming) or KEY_KIND_FOR_ATTR.get(attr) in foreign_kinds:
                continue
            current = getattr(lead, attr)
            if _is_empty(current) or (prefer_incoming and current != incoming):
                setattr(lead, attr, incoming)
                updated.append(attr)

        for name, incoming_map, target in (("fields", fields, lead.fields), ("utm", utm, lead.utm)):
            for key, value in (incoming_map or {}).items():
                if _is_empty(value):
                    continue
                current = target.get(key)
                if _is_empty(current) or (prefer_incoming and current != value):
                    target[key] = value
                    updated.append(f"{name}.{key}")
        return updated

    @staticmethod
    def _is_crm(source: Optional[str]) -> bool:
        text = (source or "").strip().lower()
        return text in CRM_SOURCES or text.startswith("crm")
