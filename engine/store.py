import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from loguru import logger

from engine.errors import DuplicateKeyError, LeadNotFoundError
from engine.models import (
    OPEN_STATUSES,
    DedupeKey,
    Lead,
    LeadStatus,
    Message,
    Owner,
    SLAClock,
    TimelineEvent,
    new_id,
    utc_now,
)

_MISSING = object()


@dataclass
class _Tables:
    leads: Dict[str, Lead] = field(default_factory=dict)
    keys: Dict[DedupeKey, str] = field(default_factory=dict)
    owners: Dict[Tuple[str, str], Owner] = field(default_factory=dict)
    messages: Dict[str, List[Message]] = field(default_factory=dict)
    events: Dict[str, List[TimelineEvent]] = field(default_factory=dict)
    clocks: Dict[str, SLAClock] = field(default_factory=dict)
    rotation: Dict[Tuple[str, str], int] = field(default_factory=dict)


class LeadStore:
    """
    In-process lead repository.

    Identity keys are unique per team: `create_lead` and `claim_key` refuse a
    key another lead already owns. Reads hand out copies, so callers write
    back through `update_lead`/`update_clock`. `transaction()` takes the store
    lock for its whole body and restores the pre-transaction tables if the
    body raises. Rollback replays an undo log of the previous value of each
    row the transaction touched; untouched rows are never copied.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tables = _Tables()
        self._owned: Dict[Tuple[str, str], Set[str]] = {}
        self._undo: Optional[Dict[Tuple[str, Any], Any]] = None
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["LeadStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._undo = {}
            self._depth = 1
            try:
                yield self
            except BaseException:
                restored = self._rollback()
                logger.warning(f"Store transaction rolled back ({restored} rows restored)")
                raise
            finally:
                self._depth = 0
                self._undo = None

    def _remember(self, table: str, key: Any) -> None:
        """Record the pre-transaction value of one row, the first time it is touched."""
        if self._undo is None or (table, key) in self._undo:
            return
        row = getattr(self._tables, table).get(key, _MISSING)
        self._undo[(table, key)] = row if row is _MISSING else copy.deepcopy(row)

    def _rollback(self) -> int:
        undo, self._undo = self._undo or {}, None
        for (table, key), row in undo.items():
            if table == "leads":
                self._put_lead(key, None if row is _MISSING else row)
                continue
            rows = getattr(self._tables, table)
            if row is _MISSING:
                rows.pop(key, None)
            else:
                rows[key] = row
        return len(undo)

    def _put_lead(self, lead_id: str, lead: Optional[Lead]) -> None:
        """Write or remove a lead row, keeping the owner index in step."""
        previous = self._tables.leads.get(lead_id)
        if previous is not None and previous.owner_id:
            self._owned.get((previous.team_id, previous.owner_id), set()).discard(lead_id)
        if lead is None:
            self._tables.leads.pop(lead_id, None)
            return
        self._tables.leads[lead_id] = lead
        if lead.owner_id:
            self._owned.setdefault((lead.team_id, lead.owner_id), set()).add(lead_id)

    # -- owners ------------------------------------------------------------

    def upsert_owner(self, owner: Owner) -> Owner:
        with self._lock:
            self._remember("owners", (owner.team_id, owner.id))
            self._tables.owners[(owner.team_id, owner.id)] = copy.deepcopy(owner)
            return self._with_load(self._tables.owners[(owner.team_id, owner.id)])

    def get_owner(self, team_id: str, owner_id: str) -> Optional[Owner]:
        with self._lock:
            owner = self._tables.owners.get((team_id, owner_id))
            return self._with_load(owner) if owner else None

    def owners(self, team_id: str) -> List[Owner]:
        """Team owners with `current_load` derived from their open leads."""
        with self._lock:
            return [
                self._with_load(owner)
                for (team, _), owner in sorted(self._tables.owners.items())
                if team == team_id
            ]

    def _load_for(self, team_id: str, owner_id: str) -> int:
        return sum(
            1
            for lead_id in self._owned.get((team_id, owner_id), ())
            if self._tables.leads[lead_id].status in OPEN_STATUSES
        )

    def _with_load(self, owner: Owner) -> Owner:
        snapshot = copy.deepcopy(owner)
        snapshot.current_load = self._load_for(owner.team_id, owner.id)
        return snapshot

    def assign_owner(self, lead_id: str, owner_id: str, pool: Optional[str] = None) -> bool:
        """
        Compare-and-swap assignment.

        Succeeds only if the owner is active and still below capacity at the
        moment of the write. A successful pool assignment also advances that
        pool's rotation cursor.
        """
        with self._lock:
            lead = copy.deepcopy(self._require(lead_id))
            owner = self._tables.owners.get((lead.team_id, owner_id))
            if owner is None or not owner.active:
                return False
            if self._load_for(lead.team_id, owner_id) >= owner.capacity:
                return False
            lead.owner_id = owner_id
            lead.pool = pool
            if lead.status is LeadStatus.NEW:
                lead.status = LeadStatus.ASSIGNED
            lead.updated_at = utc_now()
            self._remember("leads", lead_id)
            self._put_lead(lead_id, lead)
            if pool:
                cursor = (lead.team_id, pool)
                self._remember("rotation", cursor)
                self._tables.rotation[cursor] = self._tables.rotation.get(cursor, 0) + 1
            return True

    def rotation_cursor(self, team_id: str, pool: str) -> int:
        with self._lock:
            return self._tables.rotation.get((team_id, pool), 0)

    def rotation_cursors(self, team_id: str) -> Dict[str, int]:
        with self._lock:
            return {pool: value for (team, pool), value in self._tables.rotation.items() if team == team_id}

    # -- leads and identity keys ------------------------------------------

    def create_lead(self, lead: Lead, keys: Iterable[DedupeKey]) -> Lead:
        """Insert a lead with all of its identity keys, or nothing at all."""
        keys = list(keys)
        with self._lock:
            if lead.id in self._tables.leads:
                raise DuplicateKeyError(DedupeKey(lead.team_id, "id", lead.id), lead.id)
            for key in keys:
                holder = self._tables.keys.get(key)
                if holder is not None and holder != lead.id:
                    raise DuplicateKeyError(key, holder)
            self._remember("leads", lead.id)
            self._put_lead(lead.id, copy.deepcopy(lead))
            for key in keys:
                self._remember("keys", key)
                self._tables.keys[key] = lead.id
            return copy.deepcopy(lead)

    def find_lead_by_key(self, key: DedupeKey) -> Optional[str]:
        with self._lock:
            return self._tables.keys.get(key)

    def claim_key(self, key: DedupeKey, lead_id: str) -> bool:
        """Attach `key` to `lead_id` unless another lead already owns it."""
        with self._lock:
            self._require(lead_id)
            holder = self._tables.keys.get(key)
            if holder is not None:
                return holder == lead_id
            self._remember("keys", key)
            self._tables.keys[key] = lead_id
            return True

    def keys_for(self, lead_id: str) -> List[DedupeKey]:
        with self._lock:
            return sorted(
                (key for key, holder in self._tables.keys.items() if holder == lead_id),
                key=lambda k: (k.kind, k.value),
            )

    def release_keys(self, lead_id: str) -> List[DedupeKey]:
        with self._lock:
            released = [key for key, holder in self._tables.keys.items() if holder == lead_id]
            for key in released:
                self._remember("keys", key)
                del self._tables.keys[key]
            return released

    def find_lead(self, lead_id: str) -> Optional[Lead]:
        with self._lock:
            lead = self._tables.leads.get(lead_id)
            return copy.deepcopy(lead) if lead else None

    def get_lead(self, lead_id: str) -> Lead:
        with self._lock:
            return copy.deepcopy(self._require(lead_id))

    def leads(self, team_id: Optional[str] = None) -> List[Lead]:
        with self._lock:
            return [
                copy.deepcopy(lead)
                for lead in self._tables.leads.values()
                if team_id is None or lead.team_id == team_id
            ]

    def update_lead(self, lead: Lead) -> Lead:
        with self._lock:
            self._require(lead.id)
            self._remember("leads", lead.id)
            self._put_lead(lead.id, copy.deepcopy(lead))
            return copy.deepcopy(lead)

    def delete_lead(self, lead_id: str) -> None:
        """Remove a lead together with its keys, messages, events and clocks."""
        with self._lock:
            self._require(lead_id)
            for table in ("leads", "messages", "events"):
                self._remember(table, lead_id)
            self._put_lead(lead_id, None)
            self.release_keys(lead_id)
            self._tables.messages.pop(lead_id, None)
            self._tables.events.pop(lead_id, None)
            for clock_id in [c.id for c in self._tables.clocks.values() if c.lead_id == lead_id]:
                self._remember("clocks", clock_id)
                del self._tables.clocks[clock_id]

    def _require(self, lead_id: str) -> Lead:
        lead = self._tables.leads.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")
        return lead

    # -- messages and timeline --------------------------------------------

    def add_message(self, message: Message) -> Message:
        with self._lock:
            self._require(message.lead_id)
            self._remember("messages", message.lead_id)
            self._tables.messages.setdefault(message.lead_id, []).append(copy.deepcopy(message))
            return copy.deepcopy(message)

    def messages_for(self, lead_id: str) -> List[Message]:
        with self._lock:
            return copy.deepcopy(self._tables.messages.get(lead_id, []))

    def move_messages(self, from_id: str, to_id: str) -> int:
        with self._lock:
            self._remember("messages", from_id)
            self._remember("messages", to_id)
            moved = self._tables.messages.pop(from_id, [])
            for message in moved:
                message.lead_id = to_id
            self._tables.messages.setdefault(to_id, []).extend(moved)
            self._tables.messages[to_id].sort(key=lambda m: m.created_at)
            return len(moved)

    def append_event(self, lead_id: str, type: str, payload: Optional[Dict[str, Any]] = None) -> TimelineEvent:
        with self._lock:
            self._require(lead_id)
            self._remember("events", lead_id)
            event = TimelineEvent(id=new_id("evt"), lead_id=lead_id, type=type, payload=payload or {})
            self._tables.events.setdefault(lead_id, []).append(event)
            return copy.deepcopy(event)

    def events_for(self, lead_id: str) -> List[TimelineEvent]:
        with self._lock:
            return copy.deepcopy(self._tables.events.get(lead_id, []))

    def move_events(self, from_id: str, to_id: str) -> int:
        with self._lock:
            self._remember("events", from_id)
            self._remember("events", to_id)
            moved = self._tables.events.pop(from_id, [])
            for event in moved:
                event.lead_id = to_id
            self._tables.events.setdefault(to_id, []).extend(moved)
            self._tables.events[to_id].sort(key=lambda e: e.created_at)
            return len(moved)

    # -- SLA clocks ---------------------------------------------------------

    def add_clock(self, clock: SLAClock) -> SLAClock:
        with self._lock:
            self._require(clock.lead_id)
            self._remember("clocks", clock.id)
            self._tables.clocks[clock.id] = copy.deepcopy(clock)
            return copy.deepcopy(clock)

    def get_clock(self, clock_id: str) -> Optional[SLAClock]:
        with self._lock:
            clock = self._tables.clocks.get(clock_id)
            return copy.deepcopy(clock) if clock else None

    def update_clock(self, clock: SLAClock) -> SLAClock:
        with self._lock:
            self._remember("clocks", clock.id)
            self._tables.clocks[clock.id] = copy.deepcopy(clock)
            return copy.deepcopy(clock)

    def clocks_for(self, lead_id: str) -> List[SLAClock]:
        """Clocks for a lead, earliest target first."""
        with self._lock:
            clocks = [c for c in self._tables.clocks.values() if c.lead_id == lead_id]
            return copy.deepcopy(sorted(clocks, key=lambda c: (c.target_at, c.created_at)))

    def unresolved_clocks(self, team_id: Optional[str] = None) -> List[SLAClock]:
        with self._lock:
            clocks = [
                c
                for c in self._tables.clocks.values()
                if c.satisfied_at is None and (team_id is None or c.team_id == team_id)
            ]
            return copy.deepcopy(sorted(clocks, key=lambda c: (c.target_at, c.created_at)))

    def move_clocks(self, from_id: str, to_id: str) -> int:
        with self._lock:
            moved = [c for c in self._tables.clocks.values() if c.lead_id == from_id]
            for clock in moved:
                self._remember("clocks", clock.id)
                clock.lead_id = to_id
            return len(moved)
