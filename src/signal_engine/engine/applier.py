"""Event applier: consume the event log past the watermark into stat buckets.

One tick = read watermark -> fetch next batch -> partition -> reduce ->
upsert buckets -> mark events processed -> advance watermark. The tick runs
in a single transaction, so a failure anywhere rolls back every bucket merge
together with the watermark and the batch is retried whole on the next tick.

Ticks must never overlap for one processor. Celery gets this from the
self-rescheduling task (exactly one pending task at a time); the in-process
`EventApplierLoop` holds a lock, and the watermark update is a
compare-and-swap so a stray concurrent tick fails instead of double-counting.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable
from prometheus_client import Counter, Histogram, Gauge
from signal_engine.config import get_settings
from signal_engine.infrastructure import db
from signal_engine.engine import store
from signal_engine.engine.aggregation import group_events_by_buckets, compute_deltas, Credibility

logger = logging.getLogger(__name__)

ENGINE_EVENTS_APPLIED = Counter('engine_events_applied_total', 'Enrichment events applied to stat buckets', ['processor'])
ENGINE_BUCKETS_UPSERTED = Counter('engine_buckets_upserted_total', 'Stat bucket merges', ['processor'])
ENGINE_TICK_DURATION = Histogram('engine_tick_duration_seconds', 'Event applier tick runtime', ['processor'], buckets=(0.01,0.05,0.1,0.25,0.5,1,2,5,10,30))
ENGINE_TICK_FAILURES = Counter('engine_tick_failures_total', 'Event applier ticks that raised', ['processor'])
ENGINE_WATERMARK_LAG = Gauge('engine_watermark_lag_ms', 'Wall clock minus watermark last_processed_at', ['processor'])


@dataclass
class ApplyResult:
    processed: int
    buckets_updated: int
    last_event_at: int
    duration_ms: int

    def as_dict(self) -> dict:
        return asdict(self)


def apply_events(
    session_factory: Callable | None = None,
    processor_id: str | None = None,
    batch_size: int | None = None,
    credibility: Credibility | None = None,
    dedupe_entities: bool | None = None,
) -> ApplyResult:
    """Run one applier tick and return what it did.

    An empty batch returns immediately without touching buckets, events or
    the watermark. Any exception propagates after the transaction is rolled
    back.
    """
    settings = get_settings()
    factory = session_factory or db.get_session_factory()
    processor_id = processor_id or settings.engine_processor_id
    batch_size = batch_size or settings.engine_batch_size
    credibility = settings.engine_credibility if credibility is None else credibility
    dedupe_entities = settings.engine_dedupe_entities if dedupe_entities is None else dedupe_entities

    start = time.perf_counter()
    session = factory()
    try:
        watermark = store.get_watermark(session, processor_id)
        last_processed_at = watermark.last_processed_at if watermark else 0
        last_event_id = watermark.last_event_id if watermark else None

        events = store.get_unprocessed_events(session, last_processed_at, batch_size, after_id=last_event_id)
        if not events:
            session.rollback()
            return ApplyResult(0, 0, last_processed_at, int((time.perf_counter() - start) * 1000))

        groups = group_events_by_buckets(events, dedupe_entities=dedupe_entities)
        buckets_updated = 0
        for group in groups:
            deltas = compute_deltas(group.events, credibility=credibility)
            store.upsert_bucket(
                session,
                group.window,
                group.bucket_start,
                group.dim_kind,
                group.dim_value,
                group.dim_hash,
                deltas,
                group.events[-1].id,
            )
            buckets_updated += 1

        last_event = events[-1]
        store.mark_events_processed(session, [e.id for e in events])
        store.update_watermark(
            session,
            processor_id,
            last_processed_at=last_event.at,
            last_event_id=last_event.id,
            processed_count=len(events),
            expected_cursor=(last_processed_at, last_event_id) if watermark else None,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    elapsed = time.perf_counter() - start
    ENGINE_EVENTS_APPLIED.labels(processor=processor_id).inc(len(events))
    ENGINE_BUCKETS_UPSERTED.labels(processor=processor_id).inc(buckets_updated)
    ENGINE_TICK_DURATION.labels(processor=processor_id).observe(elapsed)
    ENGINE_WATERMARK_LAG.labels(processor=processor_id).set(store.now_ms() - last_event.at)
    return ApplyResult(len(events), buckets_updated, last_event.at, int(elapsed * 1000))


def next_delay_seconds(result: ApplyResult | None, batch_size: int, idle_delay: float) -> float:
    """Full batch -> run again immediately (catch-up); otherwise poll after idle_delay."""
    if result is not None and result.processed >= batch_size:
        return 0.0
    return idle_delay


def _record_failure(factory: Callable, processor_id: str, exc: Exception) -> None:
    session = factory()
    try:
        store.record_tick_error(session, processor_id, f"{exc.__class__.__name__}: {exc}")
        session.commit()
    except Exception:
        session.rollback()
        logger.exception(f"Could not record tick failure for {processor_id}")
    finally:
        session.close()


def run_scheduler_tick(
    session_factory: Callable | None = None,
    processor_id: str | None = None,
    batch_size: int | None = None,
    idle_delay: float | None = None,
) -> tuple[ApplyResult | None, float]:
    """One scheduled tick: apply, log, and decide the delay before the next one.

    A failed tick is logged and recorded on the watermark, and the next tick
    is scheduled after the idle delay (the batch is retried whole).
    """
    settings = get_settings()
    factory = session_factory or db.get_session_factory()
    processor_id = processor_id or settings.engine_processor_id
    batch_size = batch_size or settings.engine_batch_size
    idle_delay = settings.engine_idle_delay_seconds if idle_delay is None else idle_delay
    try:
        result = apply_events(factory, processor_id=processor_id, batch_size=batch_size)
    except Exception as exc:
        ENGINE_TICK_FAILURES.labels(processor=processor_id).inc()
        logger.exception(f"[Engine] Tick failed for {processor_id}; retrying in {idle_delay}s")
        _record_failure(factory, processor_id, exc)
        return None, idle_delay
    logger.info(
        f"[Engine] Processed {result.processed} events, updated {result.buckets_updated} buckets in {result.duration_ms}ms"
    )
    return result, next_delay_seconds(result, batch_size, idle_delay)


def is_loop_active(session_factory: Callable | None = None, processor_id: str | None = None, run_id: str | None = None) -> bool:
    """The loop keeps rescheduling only while the watermark says `running`
    and still carries this loop's `run_id` (a re-initialize issues a new one).
    """
    factory = session_factory or db.get_session_factory()
    processor_id = processor_id or get_settings().engine_processor_id
    session = factory()
    try:
        wm = store.get_watermark(session, processor_id)
        return wm is not None and wm.status == "running" and wm.run_id == run_id
    finally:
        session.close()


class EventApplierLoop:
    """In-process ticker for deployments without a Celery worker.

    `stop()` sets the cancellation event; a sleeping loop wakes up and exits
    and a tick in progress finishes first. The loop also exits on its own when
    the watermark leaves the `running` state (see `control.stop_engine`)
    or is handed to a newer run.
    """

    def __init__(
        self,
        session_factory: Callable | None = None,
        processor_id: str | None = None,
        batch_size: int | None = None,
        idle_delay: float | None = None,
        run_id: str | None = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.processor_id = processor_id or settings.engine_processor_id
        self.run_id = run_id
        self.batch_size = batch_size or settings.engine_batch_size
        self.idle_delay = settings.engine_idle_delay_seconds if idle_delay is None else idle_delay
        self._stop = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> tuple[ApplyResult | None, float]:
        with self._tick_lock:
            self.ticks += 1
            return run_scheduler_tick(
                self.session_factory,
                processor_id=self.processor_id,
                batch_size=self.batch_size,
                idle_delay=self.idle_delay,
            )

    def _should_continue(self) -> bool:
        if self._stop.is_set():
            return False
        try:
            return is_loop_active(self.session_factory, self.processor_id, self.run_id)
        except Exception:
            # store unreachable: keep polling, the next tick will fail and be recorded
            logger.exception(f"[Engine] Could not read watermark status for {self.processor_id}")
            return True

    def run_forever(self) -> None:
        logger.info(f"[Engine] Applier loop started for {self.processor_id}")
        while self._should_continue():
            _, delay = self.tick()
            if delay > 0 and self._stop.wait(delay):
                break
        logger.info(f"[Engine] Applier loop stopped for {self.processor_id}")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name=f"event-applier-{self.processor_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
