"""Dashboard read path over stat buckets, snapshots and the watermark."""
from __future__ import annotations
from sqlalchemy import select
from sqlalchemy.orm import Session
from signal_engine.config import get_settings
from signal_engine.models.tables import StatBucket, StatsSnapshot
from signal_engine.engine.aggregation import WINDOW_MS, round_to_window, sentiment_stats
from signal_engine.engine import store

EMPTY_METRICS = {
    "rc_percent": 0.0,
    "ni_count": 0,
    "tp_percent": 0.0,
    "cm_percent": 0.0,
    "story_yield": 0.0,
    "avg_sentiment": 0.0,
    "sentiment_stddev": 0.0,
}


def bucket_metrics(bucket: StatBucket | None) -> dict:
    if bucket is None:
        return dict(EMPTY_METRICS)
    stats = sentiment_stats(bucket.sum_weighted_sentiment, bucket.sum_weights, bucket.var_sum_x, bucket.var_sum_x2, bucket.var_n)
    return {
        "rc_percent": bucket.rc_percent,
        "ni_count": bucket.ni_count,
        "tp_percent": bucket.tp_percent,
        "cm_percent": bucket.cm_percent or 0.0,
        "story_yield": bucket.story_yield,
        "avg_sentiment": stats["avg_sentiment"],
        "sentiment_stddev": stats["sentiment_stddev"],
    }


def get_metrics(
    session: Session,
    dim_kind: str,
    dim_value: str | None,
    window: str,
    bucket_count: int | None = None,
    now_ms: int | None = None,
) -> dict:
    """Latest metrics plus a timeseries of the last `bucket_count` buckets."""
    if window not in WINDOW_MS:
        raise ValueError(f"unknown window: {window}")
    bucket_count = bucket_count or get_settings().engine_metrics_bucket_count
    now = now_ms if now_ms is not None else store.now_ms()
    now_bucket = round_to_window(now, window)
    start_bucket = now_bucket - bucket_count * WINDOW_MS[window]
    buckets = list(session.execute(
        select(StatBucket)
        .where(
            StatBucket.dim_kind == dim_kind,
            StatBucket.dim_value == (dim_value or ""),
            StatBucket.window == window,
            StatBucket.bucket_start >= start_bucket,
            StatBucket.bucket_start <= now_bucket,
        )
        .order_by(StatBucket.bucket_start.asc())
    ).scalars())
    timeseries = [{"t": b.bucket_start, **bucket_metrics(b)} for b in buckets]
    return {
        "metrics": bucket_metrics(buckets[-1] if buckets else None),
        "timeseries": timeseries,
    }


def snapshot_to_dict(snap: StatsSnapshot) -> dict:
    return {
        "snapshot_id": snap.snapshot_id,
        "session_id": snap.session_id,
        "created_at": snap.created_at,
        "window": snap.window,
        "metrics": snap.metrics,
        "by_dimension": snap.by_dimension,
        "is_active": snap.is_active,
    }


def get_snapshot(session: Session, session_id: str | None = None) -> dict | None:
    q = select(StatsSnapshot)
    if session_id:
        q = q.where(StatsSnapshot.session_id == session_id)
    else:
        q = q.where(StatsSnapshot.is_active.is_(True))
    snap = session.execute(q.order_by(StatsSnapshot.created_at.desc(), StatsSnapshot.id.desc()).limit(1)).scalar_one_or_none()
    return snapshot_to_dict(snap) if snap else None


def get_engine_health(session: Session, processor_id: str | None = None, now_ms: int | None = None) -> dict:
    settings = get_settings()
    processor_id = processor_id or settings.engine_processor_id
    wm = store.get_watermark(session, processor_id)
    if wm is None:
        return {
            "status": "error",
            "lag_ms": 0,
            "processed_count": 0,
            "last_run_at": 0,
            "events_pending": 0,
            "processor_status": None,
            "error_message": "Event applier not initialized",
        }
    now = now_ms if now_ms is not None else store.now_ms()
    lag_ms = now - wm.last_processed_at
    status = "healthy"
    if lag_ms > settings.engine_health_error_ms:
        status = "error"
    elif lag_ms > settings.engine_health_degraded_ms:
        status = "degraded"
    if wm.status == "error" or wm.error_message:
        status = "error"
    return {
        "status": status,
        "lag_ms": lag_ms,
        "processed_count": wm.processed_count,
        "last_run_at": wm.last_run_at,
        "events_pending": store.count_pending_events(session),
        "processor_status": wm.status,
        "error_message": wm.error_message,
    }
