"""Event log, watermark and bucket persistence used by the event applier.

Every function takes the caller's Session and only flushes; committing is
left to the caller so a whole applier tick lands in one transaction.
"""
from __future__ import annotations
import logging
import time
from typing import Sequence
from sqlalchemy import select, update, delete, func, or_, and_
from sqlalchemy.orm import Session
from signal_engine.models.tables import EnrichmentEvent, ProcessingWatermark, StatBucket
from signal_engine.engine.aggregation import WINDOW_MS, BucketDeltas, derive_bucket_metrics, conversion_momentum
from signal_engine.engine.errors import WatermarkConflictError, EventValidationError
from signal_engine.validation.events import parse_event
from pydantic import ValidationError

logger = logging.getLogger(__name__)

ID_CHUNK = 500


def now_ms() -> int:
    return int(time.time() * 1000)


def _chunks(ids: Sequence[int], size: int = ID_CHUNK):
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


# ---------------------------------------------------------------------------
# Watermark
# ---------------------------------------------------------------------------

def get_watermark(session: Session, processor_id: str) -> ProcessingWatermark | None:
    return session.execute(
        select(ProcessingWatermark).where(ProcessingWatermark.processor_id == processor_id)
    ).scalar_one_or_none()


def update_watermark(
    session: Session,
    processor_id: str,
    last_processed_at: int,
    last_event_id: int | None = None,
    processed_count: int = 0,
    expected_cursor: tuple[int, int | None] | None = None,
) -> None:
    """Advance the cursor and add `processed_count` to the running total.

    With `expected_cursor` (the `(last_processed_at, last_event_id)` pair the
    caller read) the update is a compare-and-swap on both columns: if the
    stored cursor no longer matches, WatermarkConflictError is raised and the
    caller's transaction should be rolled back. Both columns are needed since
    a batch that ends inside a millisecond only moves `last_event_id`.
    """
    ts = now_ms()
    existing = get_watermark(session, processor_id)
    if existing is None:
        session.add(ProcessingWatermark(
            processor_id=processor_id,
            last_processed_at=last_processed_at,
            last_event_id=last_event_id,
            processed_count=processed_count,
            last_run_at=ts,
            status="idle",
        ))
        session.flush()
        return
    stmt = update(ProcessingWatermark).where(ProcessingWatermark.id == existing.id)
    if expected_cursor is not None:
        expected_at, expected_id = expected_cursor
        stmt = stmt.where(ProcessingWatermark.last_processed_at == expected_at)
        if expected_id is None:
            stmt = stmt.where(ProcessingWatermark.last_event_id.is_(None))
        else:
            stmt = stmt.where(ProcessingWatermark.last_event_id == expected_id)
    values = {
        "last_processed_at": last_processed_at,
        "last_event_id": last_event_id,
        "processed_count": ProcessingWatermark.processed_count + processed_count,
        "last_run_at": ts,
        "error_message": None,
    }
    if existing.status == "error":
        values["status"] = "idle"
    result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount == 0:
        raise WatermarkConflictError(
            f"watermark for {processor_id} moved past {expected_cursor}"
        )
    session.expire(existing)


def reset_watermark(session: Session, processor_id: str) -> ProcessingWatermark:
    wm = get_watermark(session, processor_id)
    if wm is None:
        wm = ProcessingWatermark(processor_id=processor_id, status="idle")
        session.add(wm)
    wm.last_processed_at = 0
    wm.last_event_id = None
    wm.processed_count = 0
    wm.error_message = None
    wm.last_run_at = now_ms()
    session.flush()
    return wm


def set_watermark_status(session: Session, processor_id: str, status: str, error_message: str | None = None) -> ProcessingWatermark:
    wm = get_watermark(session, processor_id)
    if wm is None:
        wm = ProcessingWatermark(processor_id=processor_id, last_processed_at=0, processed_count=0, last_run_at=0)
        session.add(wm)
    wm.status = status
    wm.error_message = error_message
    session.flush()
    return wm


def start_run(session: Session, processor_id: str, run_id: str) -> ProcessingWatermark:
    """Mark the processor running under `run_id` with the cursor rewound to 0.

    `processed_count` keeps accumulating across runs.
    """
    wm = set_watermark_status(session, processor_id, "running")
    wm.last_processed_at = 0
    wm.last_event_id = None
    wm.run_id = run_id
    wm.last_run_at = now_ms()
    session.flush()
    return wm


def record_tick_error(session: Session, processor_id: str, message: str) -> None:
    """Keep the last failure on the watermark; a running loop stays running."""
    wm = get_watermark(session, processor_id)
    if wm is None:
        return
    wm.error_message = message[:1024]
    wm.last_run_at = now_ms()
    if wm.status != "running":
        wm.status = "error"
    session.flush()


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------

def get_unprocessed_events(session: Session, after: int, limit: int, after_id: int | None = None) -> list[EnrichmentEvent]:
    """Unprocessed events past the cursor, ascending by (at, id).

    With `after_id` the fetch continues strictly after (after, after_id), so
    equal timestamps split across two batches are still picked up. Without it
    (fresh or rewound watermark) the `after` millisecond itself is included;
    already-applied events there are excluded by `processed`.
    """
    q = select(EnrichmentEvent).where(EnrichmentEvent.processed.is_(False))
    if after_id is None:
        q = q.where(EnrichmentEvent.at >= after)
    else:
        q = q.where(or_(
            EnrichmentEvent.at > after,
            and_(EnrichmentEvent.at == after, EnrichmentEvent.id > after_id),
        ))
    q = q.order_by(EnrichmentEvent.at.asc(), EnrichmentEvent.id.asc()).limit(limit)
    return list(session.execute(q).scalars())


def get_all_events(session: Session) -> list[EnrichmentEvent]:
    return list(session.execute(select(EnrichmentEvent).order_by(EnrichmentEvent.at, EnrichmentEvent.id)).scalars())


def count_pending_events(session: Session) -> int:
    return session.execute(
        select(func.count(EnrichmentEvent.id)).where(EnrichmentEvent.processed.is_(False))
    ).scalar() or 0


def mark_events_processed(session: Session, event_ids: Sequence[int], applied_at: int | None = None) -> None:
    ts = applied_at or now_ms()
    for chunk in _chunks(list(event_ids)):
        session.execute(
            update(EnrichmentEvent)
            .where(EnrichmentEvent.id.in_(chunk))
            .values(processed=True, applied_at=ts)
            .execution_options(synchronize_session=False)
        )
    session.flush()


def mark_events_unprocessed(session: Session, event_ids: Sequence[int]) -> None:
    for chunk in _chunks(list(event_ids)):
        session.execute(
            update(EnrichmentEvent)
            .where(EnrichmentEvent.id.in_(chunk))
            .values(processed=False, applied_at=None)
            .execution_options(synchronize_session=False)
        )
    session.flush()


def append_event(session: Session, payload: dict) -> EnrichmentEvent:
    """Validate a producer payload and append it to the log."""
    try:
        evt = parse_event(payload)
    except ValidationError as ve:
        err = ve.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        raise EventValidationError(f"{loc}: {err.get('msg', 'invalid')}") from ve
    except ValueError as e:
        raise EventValidationError(str(e)) from e
    row = EnrichmentEvent(**evt.model_dump(exclude_none=True), processed=False)
    session.add(row)
    session.flush()
    return row


def emit_post_enriched(session: Session, *, session_id: str, at: int | None = None, **fields) -> EnrichmentEvent:
    payload = {**fields, "kind": "post_enriched", "session_id": session_id, "at": at if at is not None else now_ms()}
    return append_event(session, payload)


def emit_story_created(session: Session, *, session_id: str, at: int | None = None, **fields) -> EnrichmentEvent:
    payload = {**fields, "kind": "story_created", "session_id": session_id, "at": at if at is not None else now_ms()}
    return append_event(session, payload)


# ---------------------------------------------------------------------------
# Buckets
# ---------------------------------------------------------------------------

def get_bucket(session: Session, window: str, bucket_start: int, dim_hash: str) -> StatBucket | None:
    return session.execute(
        select(StatBucket).where(
            StatBucket.window == window,
            StatBucket.bucket_start == bucket_start,
            StatBucket.dim_hash == dim_hash,
        )
    ).scalar_one_or_none()


def _refresh_momentum(bucket: StatBucket, previous: StatBucket | None) -> None:
    bucket.story_yield_delta, bucket.cm_percent = conversion_momentum(
        bucket.story_yield, previous.story_yield if previous is not None else None
    )


def upsert_bucket(
    session: Session,
    window: str,
    bucket_start: int,
    dim_kind: str,
    dim_value: str | None,
    dim_hash: str,
    deltas: BucketDeltas,
    last_event_id: int | None = None,
) -> StatBucket:
    """Find-or-create the bucket and add `deltas` into it.

    Counters are only ever added to. Applying the same deltas twice counts
    them twice; the applier's watermark is what keeps this exactly-once.
    """
    bucket = get_bucket(session, window, bucket_start, dim_hash)
    if bucket is None:
        bucket = StatBucket(
            window=window,
            bucket_start=bucket_start,
            dim_kind=dim_kind,
            dim_value=dim_value or "",
            dim_hash=dim_hash,
            stories_total=0, stories_aligned=0, stories_cross_post=0, posts_total=0,
            unique_concepts=[], ni_count=0,
            sum_sentiment=0.0, sum_weighted_sentiment=0.0, sum_weights=0.0, sum_engagement=0.0,
            var_sum_x=0.0, var_sum_x2=0.0, var_n=0, event_count=0,
        )
        session.add(bucket)

    bucket.stories_total += deltas.stories_total
    bucket.stories_aligned += deltas.stories_aligned
    bucket.stories_cross_post += deltas.stories_cross_post
    bucket.posts_total += deltas.posts_total
    concepts = sorted(set(bucket.unique_concepts or []) | set(deltas.unique_concepts))
    bucket.unique_concepts = concepts
    bucket.ni_count = len(concepts)
    bucket.sum_sentiment += deltas.sum_sentiment
    bucket.sum_weighted_sentiment += deltas.sum_weighted_sentiment
    bucket.sum_weights += deltas.sum_weights
    bucket.sum_engagement += deltas.sum_engagement
    bucket.var_sum_x += deltas.sum_x
    bucket.var_sum_x2 += deltas.sum_x2
    bucket.var_n += deltas.n
    bucket.event_count += deltas.event_count
    bucket.last_event_id = last_event_id
    bucket.last_updated_at = now_ms()

    derived = derive_bucket_metrics(bucket.stories_total, bucket.stories_aligned, bucket.stories_cross_post, bucket.posts_total)
    bucket.rc_percent = derived["rc_percent"]
    bucket.tp_percent = derived["tp_percent"]
    bucket.story_yield = derived["story_yield"]

    # CM compares against the neighbouring buckets of the same window/dimension
    step = WINDOW_MS[window]
    _refresh_momentum(bucket, get_bucket(session, window, bucket_start - step, dim_hash))
    following = get_bucket(session, window, bucket_start + step, dim_hash)
    if following is not None:
        _refresh_momentum(following, bucket)
    session.flush()
    return bucket


def clear_buckets(session: Session) -> int:
    result = session.execute(delete(StatBucket))
    session.flush()
    logger.warning(f"Cleared {result.rowcount or 0} stat buckets")
    return result.rowcount or 0
