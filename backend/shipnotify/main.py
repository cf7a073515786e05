"""Shipment Notifications - FastAPI Application.

Receives carrier tracking updates, turns shipment changes into domain
events, and delivers the resulting notifications through pluggable
channel adapters. Dispatch runs on an APScheduler interval and can be
triggered manually.
"""

import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import get_settings
from .dispatcher import DispatchResult, dispatch_all_channels, dispatch_all_topics
from .events import EventMessage
from .models import SessionLocal, TaskStatus, init_db, utcnow
from .notification_config import load_rules_config, seed_rules
from .reconciliation import parse_datetime
from .services import Services, build_services

# Configure logging
settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Scheduler for periodic dispatch
scheduler = AsyncIOScheduler()


# =============================================================================
# Scheduled Jobs
# =============================================================================


async def dispatch_events_job(services: Services) -> list[DispatchResult]:
    """Dispatch one batch per event topic."""
    results = await dispatch_all_topics(
        services.event_queue, services.handlers, services.event_options
    )
    _log_results("events", results)
    return results


async def dispatch_notifications_job(services: Services) -> list[DispatchResult]:
    """Dispatch one batch per notification channel."""
    results = await dispatch_all_channels(
        services.notification_queue, services.channels, services.notification_options
    )
    _log_results("notifications", results)
    return results


def _log_results(kind: str, results: list[DispatchResult]):
    processed = sum(r.processed for r in results)
    errors = sum(r.errors for r in results)
    if processed or errors:
        logger.info(f"Dispatch {kind}: {processed} processed, {errors} errors")


# =============================================================================
# App Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting shipment notifications...")
    init_db()

    services = build_services(settings, SessionLocal)
    seed_rules(SessionLocal, load_rules_config(settings.rules_config_path))
    app.state.services = services

    if settings.scheduler_enabled:
        scheduler.add_job(
            dispatch_events_job,
            "interval",
            minutes=settings.dispatch_interval_minutes,
            args=[services],
            max_instances=1,
        )
        scheduler.add_job(
            dispatch_notifications_job,
            "interval",
            minutes=settings.dispatch_interval_minutes,
            args=[services],
            max_instances=1,
        )
        scheduler.start()
        logger.info("Scheduler started")

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()
    await services.channels.close()
    logger.info("Shipment notifications stopped")


app = FastAPI(
    title="Shipment Notifications",
    description="Durable shipment event and notification dispatch",
    version="0.1.0",
    lifespan=lifespan,
)


def get_services(request: Request) -> Services:
    """Services built during startup."""
    return request.app.state.services


def require_dispatch_token(
    x_dispatch_token: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Guard manual dispatch when a token is configured."""
    expected = services.settings.dispatch_token
    if expected and not hmac.compare_digest(expected, x_dispatch_token or ""):
        raise HTTPException(status_code=401, detail="Invalid dispatch token")


def get_queue(queue: str, services: Services = Depends(get_services)):
    if queue == "events":
        return services.event_queue
    if queue == "notifications":
        return services.notification_queue
    raise HTTPException(status_code=404, detail=f"Unknown queue '{queue}'")


# =============================================================================
# Pydantic Models
# =============================================================================


class EnqueueRequest(BaseModel):
    topic: str = Field(min_length=1)
    payload: dict = Field(default_factory=dict)
    dedupe_key: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    metadata: Optional[dict] = None


class EnqueueResponse(BaseModel):
    enqueued: int
    duplicate: bool


class DispatchResultResponse(BaseModel):
    key: str
    processed: int
    errors: int


class DispatchResponse(BaseModel):
    processed: int
    errors: int
    results: list[DispatchResultResponse]


class StatsResponse(BaseModel):
    queue: str
    key: Optional[str]
    counts: dict[str, int]


class TaskResponse(BaseModel):
    id: str
    key: str
    status: str
    attempts: int
    max_attempts: int
    available_at: datetime
    dedupe_key: Optional[str]
    last_error: Optional[str]
    updated_at: Optional[datetime]


class ActionResponse(BaseModel):
    success: bool
    message: str


class ReconcileResponse(BaseModel):
    tracking_number: Optional[str]
    found: bool
    status_changed: bool
    old_status: Optional[str]
    new_status: Optional[str]
    events_recorded: int
    events_enqueued: int


def _dispatch_response(results: list[DispatchResult]) -> DispatchResponse:
    return DispatchResponse(
        processed=sum(r.processed for r in results),
        errors=sum(r.errors for r in results),
        results=[
            DispatchResultResponse(key=r.key, processed=r.processed, errors=r.errors)
            for r in results
        ],
    )


def _task_response(task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        key=getattr(task, "topic", None) or task.channel,
        status=task.status,
        attempts=task.attempts,
        max_attempts=task.max_attempts,
        available_at=task.available_at,
        dedupe_key=task.dedupe_key,
        last_error=task.last_error,
        updated_at=task.updated_at,
    )


# =============================================================================
# API Routes
# =============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": utcnow().isoformat()}


@app.post("/events", response_model=EnqueueResponse)
async def enqueue_event(
    request: EnqueueRequest, services: Services = Depends(get_services)
):
    """Enqueue a domain event. A repeated dedupe_key is absorbed."""
    message = EventMessage(
        topic=request.topic,
        payload=request.payload,
        dedupe_key=request.dedupe_key,
        scheduled_for=parse_datetime(request.scheduled_for),
        max_attempts=request.max_attempts,
        metadata=request.metadata,
    )
    enqueued = services.event_queue.enqueue([message])
    return EnqueueResponse(enqueued=enqueued, duplicate=enqueued == 0)


@app.post(
    "/dispatch/events",
    response_model=DispatchResponse,
    dependencies=[Depends(require_dispatch_token)],
)
async def dispatch_events_now(services: Services = Depends(get_services)):
    """Run one event dispatch cycle now."""
    return _dispatch_response(await dispatch_events_job(services))


@app.post(
    "/dispatch/notifications",
    response_model=DispatchResponse,
    dependencies=[Depends(require_dispatch_token)],
)
async def dispatch_notifications_now(services: Services = Depends(get_services)):
    """Run one notification dispatch cycle now."""
    return _dispatch_response(await dispatch_notifications_job(services))


@app.get("/queues/{queue}/stats", response_model=StatsResponse)
async def queue_stats(
    queue: str,
    key: Optional[str] = None,
    task_queue=Depends(get_queue),
):
    """Task counts per status."""
    return StatsResponse(queue=queue, key=key, counts=task_queue.stats(key))


@app.get("/queues/{queue}/tasks", response_model=list[TaskResponse])
async def list_queue_tasks(
    queue: str,
    status: Optional[str] = None,
    key: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    task_queue=Depends(get_queue),
):
    """Recent tasks, e.g. ?status=FAILED for triage."""
    task_status = None
    if status:
        try:
            task_status = TaskStatus(status.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    tasks = task_queue.list_tasks(status=task_status, key=key, limit=limit)
    return [_task_response(t) for t in tasks]


@app.post("/queues/{queue}/tasks/{task_id}/requeue", response_model=ActionResponse)
async def requeue_task(queue: str, task_id: str, task_queue=Depends(get_queue)):
    """Re-drive a FAILED task with a fresh attempt budget."""
    task = task_queue.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")
    if not task_queue.requeue(task_id):
        raise HTTPException(
            status_code=409, detail=f"Task '{task_id}' is {task.status}, not FAILED"
        )
    return ActionResponse(success=True, message=f"Requeued {task_id}")


# =============================================================================
# Webhook Receivers
# =============================================================================


def verify_carrier_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify carrier webhook signature."""
    if not secret:
        return True  # Skip verification if no secret configured
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _validate_trackings(payload: dict) -> list[tuple[str, str, dict]]:
    """Check every tracking in a carrier payload before any is applied.

    Raises:
        HTTPException: 400 naming the first malformed tracking
    """
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="data must be an object")
    trackings = data.get("trackings") or []
    if not isinstance(trackings, list):
        raise HTTPException(status_code=400, detail="data.trackings must be a list")

    valid = []
    for index, tracking in enumerate(trackings):
        if not isinstance(tracking, dict):
            raise HTTPException(
                status_code=400, detail=f"trackings[{index}] must be an object"
            )
        tracker = tracking.get("tracker") or {}
        shipment = tracking.get("shipment") or {}
        events = tracking.get("events") or []
        delivery = (shipment.get("delivery") or {}) if isinstance(shipment, dict) else None
        if not all(isinstance(part, dict) for part in (tracker, shipment, delivery)):
            raise HTTPException(
                status_code=400,
                detail=f"trackings[{index}] tracker and shipment must be objects",
            )
        if not isinstance(events, list) or not all(isinstance(e, dict) for e in events):
            raise HTTPException(
                status_code=400,
                detail=f"trackings[{index}].events must be a list of objects",
            )
        tracker_id = tracker.get("trackerId")
        tracking_number = tracker.get("trackingNumber")
        if not tracker_id or not tracking_number:
            raise HTTPException(
                status_code=400,
                detail=f"trackings[{index}] missing trackerId or trackingNumber",
            )
        valid.append((str(tracker_id), str(tracking_number), tracking))
    return valid


@app.post("/webhooks/carrier", response_model=list[ReconcileResponse])
async def carrier_webhook(request: Request, services: Services = Depends(get_services)):
    """Handle carrier tracking updates."""
    # Read body before parsing (for signature verification)
    body = await request.body()

    signature = request.headers.get("X-Carrier-Signature", "")
    if not verify_carrier_signature(
        body, signature, services.settings.carrier_webhook_secret
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")

    responses = []
    for tracker_id, tracking_number, tracking in _validate_trackings(payload):
        result = services.reconciler.reconcile(tracker_id, tracking_number, tracking)
        responses.append(
            ReconcileResponse(
                tracking_number=tracking_number,
                found=result.found,
                status_changed=result.status_changed,
                old_status=result.old_status,
                new_status=result.new_status,
                events_recorded=result.events_recorded,
                events_enqueued=result.events_enqueued,
            )
        )

    logger.info(f"Carrier webhook: reconciled {len(responses)} trackings")
    return responses
