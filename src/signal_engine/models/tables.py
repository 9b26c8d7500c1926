from __future__ import annotations
from sqlalchemy import String, Integer, BigInteger, Boolean, JSON, Float, Index
from sqlalchemy.orm import Mapped, mapped_column
from signal_engine.infrastructure.db import Base


# Time columns (at, bucket_start, last_processed_at, ...) are epoch milliseconds.


class EnrichmentEvent(Base):
    """Append-only enrichment event log. Only `processed`/`applied_at` ever change."""
    __tablename__ = "enrichment_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)  # post_enriched|story_created
    at: Mapped[int] = mapped_column(BigInteger, index=True)
    session_id: Mapped[str] = mapped_column(String(128), index=True)
    post_id: Mapped[str | None] = mapped_column(String(128), default=None, index=True)
    story_id: Mapped[str | None] = mapped_column(String(128), default=None)
    subreddit: Mapped[str | None] = mapped_column(String(128), default=None)
    thread_id: Mapped[str | None] = mapped_column(String(128), default=None)
    entities: Mapped[list | None] = mapped_column(JSON, default=None)
    categories: Mapped[list | None] = mapped_column(JSON, default=None)
    sentiment: Mapped[float | None] = mapped_column(Float, default=None)
    quality: Mapped[float | None] = mapped_column(Float, default=None)
    engagement: Mapped[dict | None] = mapped_column(JSON, default=None)  # {upvotes, comments, shares}
    # story_created only
    story_themes: Mapped[list | None] = mapped_column(JSON, default=None)
    story_concepts: Mapped[list | None] = mapped_column(JSON, default=None)
    is_cross_post: Mapped[bool | None] = mapped_column(Boolean, default=None)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    applied_at: Mapped[int | None] = mapped_column(BigInteger, default=None)

    __table_args__ = (
        Index("ix_enrichment_processed_at", "processed", "at", "id"),
    )


class ProcessingWatermark(Base):
    """Cursor state, one row per processor."""
    __tablename__ = "processing_watermarks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    processor_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    last_processed_at: Mapped[int] = mapped_column(BigInteger, default=0)
    last_event_id: Mapped[int | None] = mapped_column(Integer, default=None)  # weak reference, lookup only
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    last_run_at: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default="idle", index=True)  # idle|running|error
    error_message: Mapped[str | None] = mapped_column(String(1024), default=None)
    run_id: Mapped[str | None] = mapped_column(String(32), default=None)  # token of the scheduler chain allowed to tick


class StatBucket(Base):
    """Accumulator row for one (window, bucket_start, dimension)."""
    __tablename__ = "stat_buckets"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    window: Mapped[str] = mapped_column(String(8))  # 1m|5m|15m|60m
    bucket_start: Mapped[int] = mapped_column(BigInteger)
    dim_kind: Mapped[str] = mapped_column(String(16))  # global|subreddit|session|entity|thread
    dim_value: Mapped[str] = mapped_column(String(256), default="")
    dim_hash: Mapped[str] = mapped_column(String(300))
    # RC
    stories_total: Mapped[int] = mapped_column(Integer, default=0)
    stories_aligned: Mapped[int] = mapped_column(Integer, default=0)
    rc_percent: Mapped[float] = mapped_column(Float, default=0.0)
    # NI
    unique_concepts: Mapped[list] = mapped_column(JSON, default=list)
    ni_count: Mapped[int] = mapped_column(Integer, default=0)
    # TP
    stories_cross_post: Mapped[int] = mapped_column(Integer, default=0)
    tp_percent: Mapped[float] = mapped_column(Float, default=0.0)
    # CM
    posts_total: Mapped[int] = mapped_column(Integer, default=0)
    story_yield: Mapped[float] = mapped_column(Float, default=0.0)
    story_yield_delta: Mapped[float] = mapped_column(Float, default=0.0)
    cm_percent: Mapped[float] = mapped_column(Float, default=0.0)
    # Sentiment
    sum_sentiment: Mapped[float] = mapped_column(Float, default=0.0)
    sum_weighted_sentiment: Mapped[float] = mapped_column(Float, default=0.0)
    sum_weights: Mapped[float] = mapped_column(Float, default=0.0)
    sum_engagement: Mapped[float] = mapped_column(Float, default=0.0)
    var_sum_x: Mapped[float] = mapped_column(Float, default=0.0)
    var_sum_x2: Mapped[float] = mapped_column(Float, default=0.0)
    var_n: Mapped[int] = mapped_column(Integer, default=0)
    # Bookkeeping
    event_count: Mapped[int] = mapped_column(Integer, default=0)
    last_event_id: Mapped[int | None] = mapped_column(Integer, default=None)
    last_updated_at: Mapped[int] = mapped_column(BigInteger, default=0)

    __table_args__ = (
        Index("ux_stat_bucket_key", "window", "bucket_start", "dim_hash", unique=True),
        Index("ix_stat_bucket_dim_window", "dim_kind", "dim_value", "window", "bucket_start"),
    )

    @property
    def variance_helper(self) -> dict:
        return {"sum_x": self.var_sum_x, "sum_x2": self.var_sum_x2, "n": self.var_n}


class StatsSnapshot(Base):
    """Write-once export of bucket metrics taken when a broadcast stops."""
    __tablename__ = "stats_snapshots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    snapshot_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    session_id: Mapped[str | None] = mapped_column(String(128), default=None, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)
    window: Mapped[str] = mapped_column(String(8), default="15m")
    metrics: Mapped[dict] = mapped_column(JSON)
    by_dimension: Mapped[list] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
