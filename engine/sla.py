from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from loguru import logger

from engine.errors import ConfigError
from engine.models import (
    BusinessHours,
    Direction,
    EscalationInstruction,
    LeadStatus,
    Message,
    SLAClock,
    SLASetting,
    new_id,
    utc_now,
)
from engine.store import LeadStore

DUE_SOON = timedelta(minutes=5)
MAX_SCAN_DAYS = 370


def add_business_minutes(start: datetime, minutes: float, hours: BusinessHours) -> datetime:
    """Advance `start` by `minutes` of open time in the team's business calendar."""
    tz = ZoneInfo(hours.timezone)
    local = start.astimezone(tz)
    remaining = float(minutes)

    for _ in range(MAX_SCAN_DAYS):
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        window = hours.window_for(local.weekday())
        if window is not None:
            opens = midnight + timedelta(minutes=window.start_minute)
            closes = midnight + timedelta(minutes=window.end_minute)
            if local < opens:
                local = opens
            if local < closes:
                available = (closes - local).total_seconds() / 60
                if remaining <= available:
                    return (local + timedelta(minutes=remaining)).astimezone(timezone.utc)
                remaining -= available
        local = midnight + timedelta(days=1)

    raise ConfigError(f"No business hours found within {MAX_SCAN_DAYS} days for {hours.timezone}")


class SLAClockManager:
    """
    Creates, satisfies and escalates per-lead response deadlines.

    Satisfaction and escalation are independent: an escalated clock stays
    active until an outbound message satisfies it.
    """

    def __init__(self, store: LeadStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.now = clock

    def target_for(self, start: datetime, minutes: int, setting: Optional[SLASetting] = None) -> Tuple[datetime, bool]:
        if setting is not None and setting.business_hours.enabled:
            return add_business_minutes(start, minutes, setting.business_hours), True
        return start + timedelta(minutes=minutes), False

    def create(
        self,
        lead_id: str,
        sla_minutes: int,
        assigned_at: Optional[datetime] = None,
        setting: Optional[SLASetting] = None,
        priority: Optional[int] = None,
    ) -> SLAClock:
        if not sla_minutes or sla_minutes < 1:
            raise ConfigError(f"SLA minutes must be a positive integer, got {sla_minutes!r}")

        assigned_at = assigned_at or self.now()
        lead = self.store.get_lead(lead_id)
        target_at, adjusted = self.target_for(assigned_at, sla_minutes, setting)

        clock = SLAClock(
            id=new_id("sla"),
            lead_id=lead_id,
            team_id=lead.team_id,
            target_at=target_at,
            created_at=assigned_at,
            sla_minutes=sla_minutes,
            priority=priority,
        )
        self.store.add_clock(clock)
        self.store.append_event(lead_id, "sla_created", {
            "clockId": clock.id,
            "slaMinutes": sla_minutes,
            "priority": priority,
            "targetAt": target_at.isoformat(),
            "businessHoursAdjusted": adjusted,
        })
        logger.info(f"SLA clock {clock.id} for lead {lead_id} due at {target_at.isoformat()}")
        return clock

    def satisfy(self, lead_id: str, message: Optional[Message] = None, at: Optional[datetime] = None) -> Optional[SLAClock]:
        """
        Satisfy the earliest unresolved clock for a lead.

        Returns None without writing anything when no clock is open, so
        repeated calls are harmless.
        """
        at = at or (message.created_at if message else self.now())
        with self.store.transaction():
            open_clocks = [clock for clock in self.store.clocks_for(lead_id) if not clock.is_satisfied]
            if not open_clocks:
                logger.debug(f"No open SLA clock for lead {lead_id}")
                return None

            clock = open_clocks[0]
            clock.satisfied_at = at
            self.store.update_clock(clock)
            self._mark_in_progress(lead_id)
            self.store.append_event(lead_id, "sla_satisfied", {
                "clockId": clock.id,
                "messageId": message.id if message else None,
                "satisfiedAt": at.isoformat(),
                "onTime": at <= clock.target_at,
            })

        logger.info(f"SLA clock {clock.id} satisfied for lead {lead_id}")
        return clock

    def record_message(
        self,
        lead_id: str,
        direction: Direction,
        channel: str,
        body: str,
        at: Optional[datetime] = None,
    ) -> Tuple[Message, Optional[SLAClock]]:
        """Store a message; an outbound one satisfies the active clock."""
        direction = Direction(direction)
        with self.store.transaction():
            message = self.store.add_message(Message(
                id=new_id("msg"),
                lead_id=lead_id,
                direction=direction,
                channel=channel,
                body=body,
                created_at=at or self.now(),
            ))
            clock = None
            if direction is Direction.OUT:
                clock = self.satisfy(lead_id, message)
                if clock is None:
                    self._mark_in_progress(lead_id)
        return message, clock

    def _mark_in_progress(self, lead_id: str) -> None:
        lead = self.store.get_lead(lead_id)
        if lead.status in (LeadStatus.NEW, LeadStatus.ASSIGNED):
            lead.status = LeadStatus.IN_PROGRESS
            lead.updated_at = utc_now()
            self.store.update_lead(lead)

    def check_escalations(
        self,
        setting: SLASetting,
        now: Optional[datetime] = None,
        team_id: Optional[str] = None,
    ) -> List[EscalationInstruction]:
        """
        Fire every escalation level an open clock has reached, in order and
        once each. Elapsed time runs from clock creation. The first firing
        stamps `escalated_at`; the clock stays open.
        """
        policy = setting.escalation
        if not policy.enabled or not policy.levels:
            return []

        now = now or self.now()
        fired: List[EscalationInstruction] = []
        with self.store.transaction():
            for clock in self.store.unresolved_clocks(team_id):
                elapsed = (now - clock.created_at).total_seconds() / 60
                changed = False
                while clock.escalation_level < len(policy.levels):
                    level = policy.levels[clock.escalation_level]
                    if elapsed < level.minutes:
                        break
                    clock.escalation_level += 1
                    if clock.escalated_at is None:
                        clock.escalated_at = now
                    lead = self.store.find_lead(clock.lead_id)
                    instruction = EscalationInstruction(
                        clock_id=clock.id,
                        lead_id=clock.lead_id,
                        team_id=clock.team_id,
                        level=clock.escalation_level,
                        minutes=level.minutes,
                        action=level.action,
                        owner_id=lead.owner_id if lead else None,
                        fired_at=now,
                    )
                    self.store.append_event(clock.lead_id, "sla_escalated", instruction.to_dict())
                    fired.append(instruction)
                    changed = True
                if changed:
                    self.store.update_clock(clock)

        if fired:
            logger.warning(f"Fired {len(fired)} SLA escalations")
        return fired

    def status(self, clock: SLAClock, now: Optional[datetime] = None) -> str:
        if clock.is_satisfied:
            return "satisfied"
        now = now or self.now()
        if now > clock.target_at:
            return "overdue"
        if clock.target_at - now <= DUE_SOON:
            return "due_soon"
        return "on_track"

    def preview(self, priority: int, setting: SLASetting, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Target and escalation schedule a lead of `priority` would get if assigned now."""
        now = now or self.now()
        minutes = setting.minutes_for_priority(priority)
        target_at, adjusted = self.target_for(now, minutes, setting)
        escalations = []
        if setting.escalation.enabled:
            for index, level in enumerate(setting.escalation.levels, start=1):
                escalations.append({
                    "level": index,
                    "minutes": level.minutes,
                    "action": level.action,
                    "at": (now + timedelta(minutes=level.minutes)).isoformat(),
                })
        return {
            "priority": priority,
            "slaMinutes": minutes,
            "assignedAt": now.isoformat(),
            "targetAt": target_at.isoformat(),
            "businessHoursAdjusted": adjusted,
            "escalations": escalations,
        }
