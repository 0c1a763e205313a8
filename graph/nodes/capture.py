from typing import Any, Dict

from loguru import logger
from pydantic import ValidationError

from engine.errors import LeadRejectedError
from engine.models import NormalizedLead
from graph.state import LeadState

TOP_LEVEL = {"email", "name", "phone", "company", "domain", "source", "sourceRef", "source_ref",
             "fields", "utm", "messages"}
ALIASES = {
    "full_name": "name",
    "company_name": "company",
    "website": "domain",
    "phone_number": "phone",
}
UTM_PREFIX = "utm_"
IGNORED = {"event_id", "team_id", "policy", "conflict", "lead"}


def normalize_payload(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Fold a loose webhook payload into the NormalizedLead shape."""
    fields, utm, messages = raw.get("fields") or {}, raw.get("utm") or {}, raw.get("messages") or []
    if not isinstance(fields, dict) or not isinstance(utm, dict) or not isinstance(messages, list):
        raise LeadRejectedError("fields and utm must be objects and messages must be a list")

    payload: Dict[str, Any] = {"fields": dict(fields), "utm": dict(utm), "messages": list(messages)}
    for key, value in raw.items():
        if key in IGNORED or key in ("fields", "utm", "messages"):
            continue
        if key in TOP_LEVEL:
            payload[key] = value
        elif key in ALIASES:
            payload.setdefault(ALIASES[key], value)
        elif key.startswith(UTM_PREFIX):
            payload["utm"].setdefault(key[len(UTM_PREFIX):], value)
        elif key not in ("first_name", "last_name"):
            payload["fields"].setdefault(key, value)

    if not payload.get("name") and (raw.get("first_name") or raw.get("last_name")):
        payload["name"] = f"{raw.get('first_name', '')} {raw.get('last_name', '')}".strip()
    if isinstance(raw.get("message"), str) and raw["message"].strip():
        payload["messages"].append(raw["message"])
        payload["fields"].pop("message", None)
    return payload


def capture(state: LeadState) -> LeadState:
    """Normalize and validate the incoming lead payload."""
    raw = state.get("raw") or {}
    logger.info(f"Starting capture for event: {state.get('event_id', 'unknown')}")
    if not isinstance(raw, dict):
        raise LeadRejectedError("Lead payload must be a JSON object")

    try:
        lead = NormalizedLead.model_validate(normalize_payload(raw))
    except ValidationError as e:
        raise LeadRejectedError(f"Invalid lead payload: {e.errors()[0].get('msg')}") from e

    if not lead.has_identity():
        raise LeadRejectedError("Lead needs at least one of email, phone or company")

    state["lead"] = lead
    logger.info(f"Capture completed for {lead.email or lead.phone or lead.company}")
    return state
