"""Admin operations for the event applier: initialize, stop, reset, trigger, snapshot."""
from __future__ import annotations
import logging
import secrets
from typing import Callable
from sqlalchemy import select, update
from signal_engine.config import get_settings
from signal_engine.infrastructure import db
from signal_engine.models.tables import StatBucket, StatsSnapshot
from signal_engine.engine import store
from signal_engine.engine.applier import apply_events, EventApplierLoop
from signal_engine.engine.errors import EngineAlreadyRunningError
from signal_engine.engine.queries import bucket_metrics, snapshot_to_dict

logger = logging.getLogger(__name__)

# In-process loops, used when ENGINE_RUNNER=thread
_loops: dict[str, EventApplierLoop] = {}


def get_loop(processor_id: str, run_id: str | None = None) -> EventApplierLoop:
    loop = _loops.get(processor_id)
    if loop is None or loop.run_id != run_id:
        # a loop left over from an older run exits on its own at its next check
        loop = EventApplierLoop(processor_id=processor_id, run_id=run_id)
        _loops[processor_id] = loop
    return loop


def _kick_loop(processor_id: str, run_id: str) -> str:
    settings = get_settings()
    if settings.engine_runner == "thread":
        get_loop(processor_id, run_id).start()
        return "thread"
    if settings.app_env == "test":
        # no broker in tests: run one tick inline
        apply_events(processor_id=processor_id)
        return "inline"
    from signal_engine.infrastructure.celery_app import celery_app  # noqa: F401  binds shared tasks
    from signal_engine.tasks.engine import schedule_event_applier
    schedule_event_applier.delay(processor_id=processor_id, run_id=run_id)
    return "celery"


def initialize_engine(processor_id: str | None = None, kick: Callable[[str, str], object] | None = None) -> dict:
    """Create or rewind the watermark to 0, mark it running and start the loop once.

    Raises EngineAlreadyRunningError without changing anything when the
    processor is already running. Rewinding does not re-apply anything since
    the fetch skips processed events, and it picks up late events that landed
    behind the old cursor. Each call issues a fresh `run_id`; scheduler chains
    of earlier runs stop when they see it.
    """
    processor_id = processor_id or get_settings().engine_processor_id
    session = db.get_session_factory()()
    try:
        wm = store.get_watermark(session, processor_id)
        if wm is not None and wm.status == "running":
            logger.warning(f"[Engine] initialize refused: {processor_id} already running")
            raise EngineAlreadyRunningError(f"Event applier {processor_id} is already running")
        run_id = secrets.token_hex(8)
        wm = store.start_run(session, processor_id, run_id)
        last_processed_at = wm.last_processed_at
        session.commit()
    finally:
        session.close()
    runner = (kick or _kick_loop)(processor_id, run_id)
    logger.info(f"[Engine] Initialized {processor_id} run {run_id} at watermark {last_processed_at}")
    return {
        "status": "started",
        "processor_id": processor_id,
        "run_id": run_id,
        "last_processed_at": last_processed_at,
        "runner": runner,
    }


def stop_engine(processor_id: str | None = None) -> dict:
    """Stop rescheduling. A tick already in flight completes normally."""
    processor_id = processor_id or get_settings().engine_processor_id
    session = db.get_session_factory()()
    try:
        wm = store.get_watermark(session, processor_id)
        if wm is None:
            return {"status": "not_initialized", "processor_id": processor_id}
        wm = store.set_watermark_status(session, processor_id, "idle", wm.error_message)
        wm.run_id = None
        session.commit()
    finally:
        session.close()
    loop = _loops.pop(processor_id, None)
    if loop is not None:
        loop.stop(timeout=5)
    logger.info(f"[Engine] Stopped {processor_id}")
    return {"status": "stopped", "processor_id": processor_id}


def reset_engine(processor_id: str | None = None, clear_buckets: bool = False) -> dict:
    """DANGEROUS: rewind the watermark to 0 and mark every event unprocessed.

    Buckets are left alone unless `clear_buckets` is set; replaying into
    existing buckets double-counts every event.
    """
    processor_id = processor_id or get_settings().engine_processor_id
    session = db.get_session_factory()()
    try:
        store.reset_watermark(session, processor_id)
        events = store.get_all_events(session)
        store.mark_events_unprocessed(session, [e.id for e in events])
        cleared = store.clear_buckets(session) if clear_buckets else 0
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    logger.warning(f"[Engine] Reset {processor_id}: {len(events)} events marked unprocessed, {cleared} buckets cleared")
    return {"status": "reset", "processor_id": processor_id, "events_reset": len(events), "buckets_cleared": cleared}


def trigger_processing(processor_id: str | None = None) -> dict:
    """Run one tick synchronously, without scheduling another.

    Refused with EngineAlreadyRunningError while the scheduler loop is
    running: its ticks and this one must not overlap.
    """
    processor_id = processor_id or get_settings().engine_processor_id
    session = db.get_session_factory()()
    try:
        wm = store.get_watermark(session, processor_id)
        if wm is not None and wm.status == "running":
            logger.warning(f"[Engine] trigger refused: {processor_id} is running")
            raise EngineAlreadyRunningError(f"Event applier {processor_id} is running; stop it before triggering")
    finally:
        session.close()
    return apply_events(processor_id=processor_id).as_dict()


def _latest_bucket(session, window: str, dim_kind: str, dim_value: str | None = None) -> StatBucket | None:
    return session.execute(
        select(StatBucket)
        .where(StatBucket.window == window, StatBucket.dim_kind == dim_kind, StatBucket.dim_value == (dim_value or ""))
        .order_by(StatBucket.bucket_start.desc())
        .limit(1)
    ).scalar_one_or_none()


def _top_buckets(session, window: str, dim_kind: str, top_n: int) -> list[StatBucket]:
    """Busiest buckets of the most recent slot for a dimension kind."""
    latest_start = session.execute(
        select(StatBucket.bucket_start)
        .where(StatBucket.window == window, StatBucket.dim_kind == dim_kind)
        .order_by(StatBucket.bucket_start.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest_start is None:
        return []
    return list(session.execute(
        select(StatBucket)
        .where(StatBucket.window == window, StatBucket.dim_kind == dim_kind, StatBucket.bucket_start == latest_start)
        .order_by(StatBucket.event_count.desc(), StatBucket.stories_total.desc(), StatBucket.dim_value.asc())
        .limit(top_n)
    ).scalars())


def create_broadcast_snapshot(session_id: str | None = None, top_n: int | None = None, created_at: int | None = None) -> dict:
    """Freeze current bucket metrics when a session's broadcast stops.

    Uses the latest bucket of the snapshot window for the session (or the
    global dimension when no session is given) plus the top-N subreddit and
    entity buckets. Earlier snapshots in the same scope are deactivated.
    """
    settings = get_settings()
    window = settings.engine_snapshot_window
    top_n = top_n or settings.engine_snapshot_top_n
    session = db.get_session_factory()()
    try:
        if session_id:
            primary = _latest_bucket(session, window, "session", session_id)
        else:
            primary = _latest_bucket(session, window, "global")
        by_dimension = []
        for kind in ("subreddit", "entity"):
            for b in _top_buckets(session, window, kind, top_n):
                by_dimension.append({"dim_kind": b.dim_kind, "dim_value": b.dim_value, "metrics": bucket_metrics(b)})

        scope = update(StatsSnapshot).where(StatsSnapshot.is_active.is_(True))
        if session_id:
            scope = scope.where(StatsSnapshot.session_id == session_id)
        session.execute(scope.values(is_active=False).execution_options(synchronize_session=False))

        ts = created_at if created_at is not None else store.now_ms()
        snap = StatsSnapshot(
            snapshot_id=f"snapshot_{ts}_{secrets.token_hex(5)}",
            session_id=session_id,
            created_at=ts,
            window=window,
            metrics=bucket_metrics(primary),
            by_dimension=by_dimension,
            is_active=True,
        )
        session.add(snap)
        session.commit()
        logger.info(f"[Engine] Snapshot {snap.snapshot_id} created ({len(by_dimension)} dimension rows)")
        return snapshot_to_dict(snap)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
