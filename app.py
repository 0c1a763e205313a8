import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from engine.errors import LeadNotFoundError, LeadPipelineError, LeadRejectedError, PipelineError
from engine.models import AlertInstruction, Direction, EscalationInstruction, NormalizedLead
from engine.store import LeadStore
from graph.nodes.capture import normalize_payload
from graph.workflow import LeadPipeline, PipelineServices
from tools.alerts import AlertDispatcher
from tools.idempotency import Idem, IdentityLock
from tools.team_config import TeamConfigRepository

# Load environment variables
load_dotenv()

VERSION = "1.0.0"


class MessageIn(BaseModel):
    lead_id: str
    direction: Direction = Direction.OUT
    channel: str = "email"
    body: str = ""


class EscalationSweep(BaseModel):
    team_id: Optional[str] = None


class SLAPreviewIn(BaseModel):
    priority: int = Field(default=1, ge=1)
    team_id: Optional[str] = None


class DedupeAnalyzeIn(BaseModel):
    team_id: Optional[str] = None
    lead: Dict[str, Any]


class DedupeMergeIn(BaseModel):
    team_id: Optional[str] = None
    primary_id: str
    duplicate_id: str


def deliver_alerts(dispatcher: AlertDispatcher, alerts: List[AlertInstruction], lead: Dict[str, Any]) -> None:
    """Background task: routing alerts go out only after the lead is committed."""
    for alert in alerts:
        if not dispatcher.dispatch(alert, lead):
            logger.warning(f"Alert {alert.channel.value} for lead {alert.lead_id} was not delivered")


def deliver_escalations(dispatcher: AlertDispatcher, store: LeadStore,
                        escalations: List[EscalationInstruction]) -> None:
    for instruction in escalations:
        lead = store.find_lead(instruction.lead_id)
        dispatcher.dispatch_escalation(instruction, lead.to_dict() if lead else None)


def create_app(
    store: Optional[LeadStore] = None,
    teams: Optional[TeamConfigRepository] = None,
    idem: Optional[Idem] = None,
    dispatcher: Optional[AlertDispatcher] = None,
    locks: Optional[IdentityLock] = None,
) -> FastAPI:
    """Wire the decision pipeline and its collaborators into a FastAPI app."""
    store = store or LeadStore()
    teams = teams or TeamConfigRepository()
    idem = idem or Idem()
    dispatcher = dispatcher or AlertDispatcher()
    locks = locks or IdentityLock(idem.r)
    services = PipelineServices(store=store, teams=teams, locks=locks)
    pipeline = LeadPipeline(services)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not teams.teams():
            teams.load()
        synced = teams.sync_owners(store)
        dispatcher.start()
        logger.info(f"Lead decision service ready ({len(teams.teams())} teams, {synced} owners)")
        yield
        dispatcher.stop()
        locks.close()
        idem.close()
        logger.info("Lead decision service stopped")

    app = FastAPI(
        title="Revenue Ops Lead Decision Pipeline",
        description="Lead scoring, deduplication, routing and SLA tracking",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.pipeline = pipeline

    @app.post("/webhooks/lead")
    async def ingest_lead(req: Request, background_tasks: BackgroundTasks):
        """
        Main webhook endpoint for lead ingestion.

        Expected payload (a flat lead payload is accepted too):
        {
            "event_id": "evt-123",
            "team_id": "team_demo",
            "policy": "merge",
            "lead": {"email": "jane@acme.io", "company": "Acme", "fields": {"title": "CEO"},
                     "utm": {"source": "google-ads"}}
        }
        """
        start_time = time.time()
        try:
            payload = await req.json()
        except ValueError:
            return JSONResponse(status_code=422, content={"status": "rejected", "message": "Body must be JSON"})
        if not isinstance(payload, dict):
            return JSONResponse(status_code=422, content={"status": "rejected", "message": "Body must be an object"})

        lead_payload = payload["lead"] if isinstance(payload.get("lead"), dict) else payload
        team_id = payload.get("team_id") or teams.default_team_id
        event_id = payload.get("event_id")
        logger.info(f"Received lead webhook: {lead_payload.get('email', 'unknown')} (event {event_id})")

        # Check idempotency
        idem_key = f"{team_id}:{event_id}" if event_id else None
        if idem_key and not idem.check_and_set(idem_key):
            logger.warning(f"Duplicate event ignored: {idem_key}")
            return JSONResponse(
                status_code=200,
                content={"status": "duplicate_ignored", "message": "Event already processed"},
            )

        try:
            result = await run_in_threadpool(
                pipeline.process,
                lead_payload,
                team_id,
                event_id,
                payload.get("policy") or "merge",
                payload.get("conflict") or "fill_gaps",
            )
        except LeadRejectedError as e:
            if idem_key:
                idem.clear_key(idem_key)
            return JSONResponse(status_code=422, content={"status": "rejected", "message": str(e)})
        except PipelineError as e:
            if idem_key:
                idem.clear_key(idem_key)
            return JSONResponse(
                status_code=503,
                content={"status": "error", "retryable": True, "message": str(e)},
            )

        alerts = result.get("alerts") or []
        if alerts:
            lead = store.get_lead(result["lead_id"])
            background_tasks.add_task(deliver_alerts, dispatcher, alerts, lead.to_dict())

        response = LeadPipeline.to_response(result)
        response["processing_time"] = time.time() - start_time
        logger.info(f"Lead processing completed in {response['processing_time']:.2f}s: {result.get('lead_id')}")
        return JSONResponse(status_code=200, content=response)

    @app.post("/messages")
    def record_message(body: MessageIn):
        """Record a message; the first outbound one satisfies the lead's SLA clock."""
        try:
            message, clock = services.sla.record_message(body.lead_id, body.direction, body.channel, body.body)
        except LeadNotFoundError:
            raise HTTPException(status_code=404, detail=f"Lead {body.lead_id} not found")
        lead = store.get_lead(body.lead_id)
        return {
            "message": message.to_dict(),
            "satisfied_clock": clock.to_dict() if clock else None,
            "lead_status": lead.status.value,
        }

    @app.post("/sla/escalations")
    def run_escalations(background_tasks: BackgroundTasks, body: Optional[EscalationSweep] = None):
        """Run an escalation sweep now and dispatch the resulting notices."""
        if body and body.team_id:
            team_ids = [body.team_id]
        else:
            team_ids = sorted({clock.team_id for clock in store.unresolved_clocks()})

        fired: List[EscalationInstruction] = []
        for team_id in team_ids:
            setting = teams.get(team_id).sla_setting
            fired.extend(services.sla.check_escalations(setting, team_id=team_id))

        if fired:
            background_tasks.add_task(deliver_escalations, dispatcher, store, fired)
        return {"fired": len(fired), "escalations": [item.to_dict() for item in fired]}

    @app.post("/sla/test")
    def sla_preview(body: SLAPreviewIn):
        """Preview the SLA target and escalation schedule for a priority."""
        setting = teams.get(body.team_id).sla_setting
        return services.sla.preview(body.priority, setting)

    @app.get("/admin/leads/{lead_id}")
    def get_lead_status(lead_id: str):
        """Lead record, identity keys, SLA clocks and timeline (for debugging)."""
        try:
            lead = store.get_lead(lead_id)
        except LeadNotFoundError:
            raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
        clocks = []
        for clock in store.clocks_for(lead_id):
            entry = clock.to_dict()
            entry["status"] = services.sla.status(clock)
            clocks.append(entry)
        return {
            "lead": lead.to_dict(),
            "keys": [key.to_dict() for key in store.keys_for(lead_id)],
            "clocks": clocks,
            "messages": [message.to_dict() for message in store.messages_for(lead_id)],
            "timeline": [event.to_dict() for event in store.events_for(lead_id)],
        }

    @app.post("/admin/dedupe/analyze")
    def analyze_duplicates(body: DedupeAnalyzeIn):
        """Show which existing leads an incoming lead would match, without writing."""
        try:
            lead = NormalizedLead.model_validate(normalize_payload(body.lead))
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors()[0].get("msg"))
        except LeadRejectedError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return services.dedupe.analyze(lead, body.team_id or teams.default_team_id)

    @app.post("/admin/dedupe/merge")
    def merge_duplicates(body: DedupeMergeIn):
        """Fold one existing lead into another."""
        try:
            result = services.dedupe.merge_leads(body.team_id or teams.default_team_id,
                                                 body.primary_id, body.duplicate_id)
        except LeadNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except LeadRejectedError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return result.to_dict()

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": VERSION,
            "services": {
                "redis": "connected" if idem.r else "disconnected",
                "workflow": "ready",
                "teams": teams.teams(),
            },
        }

    # Error handlers
    @app.exception_handler(LeadPipelineError)
    async def pipeline_exception_handler(request: Request, exc: LeadPipelineError):
        logger.error(f"Pipeline error on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"status": "error", "retryable": True, "message": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    return app


# Configure logging
os.makedirs("logs", exist_ok=True)
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")

app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Revenue Ops Lead Decision Pipeline")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
