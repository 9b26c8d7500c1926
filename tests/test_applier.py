from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from signal_engine.engine import applier, store
from signal_engine.engine.applier import (
    ApplyResult,
    EventApplierLoop,
    apply_events,
    next_delay_seconds,
    run_scheduler_tick,
)
from signal_engine.engine.errors import WatermarkConflictError
from signal_engine.infrastructure import db
from signal_engine.models.tables import StatBucket
from conftest import T0, new_engine

INT_FIELDS = ("stories_total", "stories_aligned", "stories_cross_post", "posts_total", "ni_count",
              "var_n", "event_count", "last_event_id")
FLOAT_FIELDS = ("rc_percent", "tp_percent", "story_yield", "story_yield_delta", "cm_percent", "sum_sentiment",
                "sum_weighted_sentiment", "sum_weights", "sum_engagement", "var_sum_x", "var_sum_x2")


def seed_events(factory, count=24):
    """Pairs of events share a timestamp; the log spans five minutes."""
    with factory() as s:
        for i in range(count):
            fields = dict(
                session_id="S1" if i % 4 else "S2",
                at=T0 + (i // 2) * 25_000,
                subreddit=("stocks", "investing")[i % 2],
                entities=["AAPL", "TSLA"][: 1 + i % 2],
                thread_id=f"t{i % 3}",
                sentiment=((i % 7) - 3) / 4,
                quality=(i * 13) % 100,
                engagement={"upvotes": i * 3, "comments": i % 5, "shares": i % 2},
            )
            if i % 3 == 0:
                store.emit_story_created(s, story_themes=["focus"] if i % 2 else [],
                                         story_concepts=[f"c{i % 4}"], is_cross_post=i % 6 == 0, **fields)
            else:
                store.emit_post_enriched(s, **fields)
        s.commit()


def drain(factory, batch_size):
    ticks = 0
    while apply_events(factory, batch_size=batch_size).processed:
        ticks += 1
    return ticks


def bucket_state(factory):
    with factory() as s:
        state = {}
        for b in s.execute(select(StatBucket)).scalars():
            row = {f: getattr(b, f) for f in INT_FIELDS + FLOAT_FIELDS}
            row["unique_concepts"] = list(b.unique_concepts)
            state[(b.window, b.bucket_start, b.dim_hash)] = row
        return state


def global_bucket(factory, window="60m"):
    with factory() as s:
        return store.get_bucket(s, window, T0, "global:")


def test_empty_tick_touches_nothing(monkeypatch):
    upsert = MagicMock()
    mark = MagicMock()
    advance = MagicMock()
    monkeypatch.setattr(store, "upsert_bucket", upsert)
    monkeypatch.setattr(store, "mark_events_processed", mark)
    monkeypatch.setattr(store, "update_watermark", advance)

    result = apply_events()

    assert (result.processed, result.buckets_updated, result.last_event_at) == (0, 0, 0)
    upsert.assert_not_called()
    mark.assert_not_called()
    advance.assert_not_called()


def test_single_tick_applies_batch_and_advances_watermark():
    factory = db.get_session_factory()
    seed_events(factory, count=4)

    result = apply_events()

    assert result.processed == 4
    assert result.last_event_at == T0 + 25_000
    assert result.buckets_updated > 0
    with factory() as s:
        wm = store.get_watermark(s, "event_applier")
        assert wm.last_processed_at == T0 + 25_000
        assert wm.processed_count == 4
        assert store.count_pending_events(s) == 0
    hour = global_bucket(factory)
    assert hour.event_count == 4
    assert hour.stories_total == 2
    assert hour.posts_total == 2
    assert apply_events().processed == 0


def test_results_do_not_depend_on_batch_size():
    states = []
    for batch_size in (1, 3, 7, 1000):
        engine = new_engine()
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        seed_events(factory)
        drain(factory, batch_size)
        states.append(bucket_state(factory))
        engine.dispose()

    reference = states[-1]
    hour = reference[("60m", T0, "global:")]
    assert hour["event_count"] == 24
    assert hour["stories_total"] == 8
    assert hour["posts_total"] == 16
    for state in states[:-1]:
        assert state.keys() == reference.keys()
        for key, row in state.items():
            expected = reference[key]
            for f in INT_FIELDS:
                assert row[f] == expected[f], (key, f)
            for f in FLOAT_FIELDS:
                assert row[f] == pytest.approx(expected[f], abs=1e-9), (key, f)
            assert row["unique_concepts"] == expected["unique_concepts"]


def test_failed_tick_rolls_back_everything(monkeypatch):
    factory = db.get_session_factory()
    seed_events(factory, count=6)

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "update_watermark", boom)
    with pytest.raises(RuntimeError):
        apply_events()

    with factory() as s:
        assert s.query(StatBucket).count() == 0
        assert store.count_pending_events(s) == 6
        assert store.get_watermark(s, "event_applier") is None

    monkeypatch.undo()
    assert apply_events().processed == 6
    assert global_bucket(factory).event_count == 6


def test_next_delay():
    full = ApplyResult(processed=10, buckets_updated=4, last_event_at=1, duration_ms=1)
    partial = ApplyResult(processed=3, buckets_updated=4, last_event_at=1, duration_ms=1)
    assert next_delay_seconds(full, batch_size=10, idle_delay=5.0) == 0.0
    assert next_delay_seconds(partial, batch_size=10, idle_delay=5.0) == 5.0
    assert next_delay_seconds(None, batch_size=10, idle_delay=5.0) == 5.0


def test_scheduler_tick_records_failure_and_recovers(monkeypatch):
    factory = db.get_session_factory()
    seed_events(factory, count=3)
    with factory() as s:
        store.set_watermark_status(s, "event_applier", "running")
        s.commit()

    monkeypatch.setattr(store, "mark_events_processed", MagicMock(side_effect=RuntimeError("boom")))
    result, delay = run_scheduler_tick(batch_size=3, idle_delay=2.5)
    assert result is None
    assert delay == 2.5
    with factory() as s:
        wm = store.get_watermark(s, "event_applier")
        assert wm.status == "running"
        assert wm.error_message == "RuntimeError: boom"

    monkeypatch.undo()
    result, delay = run_scheduler_tick(batch_size=3, idle_delay=2.5)
    assert result.processed == 3
    assert delay == 0.0
    with factory() as s:
        assert store.get_watermark(s, "event_applier").error_message is None


def test_loop_exits_when_not_running():
    loop = EventApplierLoop(idle_delay=0)
    loop.run_forever()
    assert loop.ticks == 0


def test_loop_ticks_until_stopped(monkeypatch):
    with db.get_session_factory()() as s:
        store.set_watermark_status(s, "event_applier", "running")
        s.commit()
    loop = EventApplierLoop(idle_delay=0)
    calls = []

    def fake_tick(*args, **kwargs):
        calls.append(kwargs["processor_id"])
        if len(calls) == 3:
            loop.stop()
        return None, 0.0

    monkeypatch.setattr(applier, "run_scheduler_tick", fake_tick)
    loop.run_forever()
    assert loop.ticks == 3
    assert calls == ["event_applier"] * 3


def test_loop_exits_after_engine_stopped(monkeypatch):
    factory = db.get_session_factory()
    with factory() as s:
        store.set_watermark_status(s, "event_applier", "running")
        s.commit()
    loop = EventApplierLoop(idle_delay=0)

    def fake_tick(*args, **kwargs):
        with factory() as s:
            store.set_watermark_status(s, "event_applier", "idle")
            s.commit()
        return None, 0.0

    monkeypatch.setattr(applier, "run_scheduler_tick", fake_tick)
    loop.run_forever()
    assert loop.ticks == 1


def test_overlapping_tick_inside_a_millisecond_conflicts(monkeypatch):
    factory = db.get_session_factory()
    with factory() as s:
        for _ in range(4):
            store.emit_post_enriched(s, session_id="S", at=T0)
        s.commit()
    apply_events(batch_size=2)

    fetch = store.get_unprocessed_events

    def fetch_then_race(*args, **kwargs):
        events = fetch(*args, **kwargs)
        # another tick reads the same cursor and commits first
        monkeypatch.setattr(store, "get_unprocessed_events", fetch)
        assert apply_events(batch_size=2).processed == 2
        return events

    monkeypatch.setattr(store, "get_unprocessed_events", fetch_then_race)
    with pytest.raises(WatermarkConflictError):
        apply_events(batch_size=2)

    hour = global_bucket(factory)
    assert hour.event_count == 4
    assert hour.posts_total == 4
    with factory() as s:
        wm = store.get_watermark(s, "event_applier")
        assert wm.processed_count == 4
        assert store.count_pending_events(s) == 0


def test_event_at_epoch_zero_is_applied():
    factory = db.get_session_factory()
    with factory() as s:
        store.emit_post_enriched(s, session_id="S", at=0)
        s.commit()
    assert apply_events().processed == 1
    with factory() as s:
        assert store.get_bucket(s, "60m", 0, "global:").event_count == 1


def test_loop_exits_when_run_superseded(monkeypatch):
    with db.get_session_factory()() as s:
        store.start_run(s, "event_applier", "newer")
        s.commit()
    monkeypatch.setattr(applier, "run_scheduler_tick", MagicMock(return_value=(None, 0.0)))
    stale = EventApplierLoop(idle_delay=0, run_id="older")
    stale.run_forever()
    assert stale.ticks == 0
