"""Celery entry points for the event applier.

`schedule_event_applier` is the self-rescheduling loop: each run performs one
tick and enqueues exactly one follow-up (immediately after a full batch,
otherwise after the idle delay). It stops re-enqueueing once the watermark is
no longer `running` (how `control.stop_engine` shuts it down) or carries the
`run_id` of a newer `initialize_engine`, so a follow-up still queued from a
stopped run dies out instead of forming a second chain.
"""
from __future__ import annotations
import logging
from celery import shared_task
from prometheus_client import Gauge
from signal_engine.config import get_settings
from signal_engine.infrastructure import db
from signal_engine.engine.applier import apply_events as _apply_events, run_scheduler_tick, is_loop_active
from signal_engine.engine.queries import get_engine_health

logger = logging.getLogger(__name__)

ENGINE_PENDING_EVENTS = Gauge('engine_pending_events', 'Enrichment events not yet applied', ['processor'])


@shared_task(name="signal_engine.tasks.engine.apply_events")
def apply_events(processor_id: str | None = None):
    """Single tick without rescheduling."""
    return _apply_events(processor_id=processor_id).as_dict()


@shared_task(name="signal_engine.tasks.engine.schedule_event_applier")
def schedule_event_applier(processor_id: str | None = None, run_id: str | None = None):
    processor_id = processor_id or get_settings().engine_processor_id
    if not is_loop_active(processor_id=processor_id, run_id=run_id):
        logger.info(f"[Engine] {processor_id} run {run_id} is not current; applier loop not rescheduled")
        return {"status": "stopped", "processor_id": processor_id}
    result, delay = run_scheduler_tick(processor_id=processor_id)
    schedule_event_applier.apply_async(kwargs={"processor_id": processor_id, "run_id": run_id}, countdown=delay)
    return {
        "status": "ok" if result is not None else "error",
        "processor_id": processor_id,
        "result": result.as_dict() if result is not None else None,
        "next_run_in": delay,
    }


@shared_task(name="signal_engine.tasks.engine.observe_engine_health")
def observe_engine_health(processor_id: str | None = None):
    processor_id = processor_id or get_settings().engine_processor_id
    session = db.get_session_factory()()
    try:
        health = get_engine_health(session, processor_id)
    finally:
        session.close()
    ENGINE_PENDING_EVENTS.labels(processor=processor_id).set(health["events_pending"])
    if health["status"] != "healthy":
        logger.warning(f"[Engine] {processor_id} health {health['status']}: lag {health['lag_ms']}ms, pending {health['events_pending']}")
    return health
