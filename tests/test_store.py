import pytest

from signal_engine.engine import store
from signal_engine.engine.aggregation import BucketDeltas
from signal_engine.engine.errors import WatermarkConflictError, EventValidationError
from signal_engine.models.tables import EnrichmentEvent
from conftest import T0


def test_unprocessed_events_keyset_cursor_handles_equal_timestamps(session):
    a = store.emit_post_enriched(session, session_id="S", at=T0)
    b = store.emit_post_enriched(session, session_id="S", at=T0)
    c = store.emit_story_created(session, session_id="S", at=T0)
    d = store.emit_post_enriched(session, session_id="S", at=T0 + 1)
    session.commit()

    first = store.get_unprocessed_events(session, 0, 2)
    assert [e.id for e in first] == [a.id, b.id]
    rest = store.get_unprocessed_events(session, T0, 10, after_id=b.id)
    assert [e.id for e in rest] == [c.id, d.id]
    # a cursor without an id includes its own millisecond
    assert [e.id for e in store.get_unprocessed_events(session, T0, 10)] == [a.id, b.id, c.id, d.id]


def test_rewound_cursor_includes_epoch_zero(session):
    first = store.emit_post_enriched(session, session_id="S", at=0)
    session.commit()
    assert [e.id for e in store.get_unprocessed_events(session, 0, 10)] == [first.id]


def test_processed_events_are_not_returned(session):
    a = store.emit_post_enriched(session, session_id="S", at=T0)
    b = store.emit_post_enriched(session, session_id="S", at=T0 + 5)
    store.mark_events_processed(session, [a.id])
    session.commit()
    assert [e.id for e in store.get_unprocessed_events(session, 0, 10)] == [b.id]
    assert store.count_pending_events(session) == 1

    store.mark_events_unprocessed(session, [a.id])
    session.commit()
    assert store.count_pending_events(session) == 2


def test_emit_rejects_invalid_payloads(session):
    with pytest.raises(EventValidationError) as exc:
        store.emit_post_enriched(session, session_id="", at=T0)
    assert "session_id" in exc.value.reason
    with pytest.raises(EventValidationError):
        store.emit_post_enriched(session, session_id="S", at=T0, sentiment=1.5)
    with pytest.raises(EventValidationError) as exc:
        store.append_event(session, {"kind": "comment_added", "session_id": "S", "at": T0})
    assert exc.value.reason == "unknown_event_kind:comment_added"
    assert session.query(EnrichmentEvent).count() == 0


def test_emit_story_created_persists_story_fields(session):
    row = store.emit_story_created(
        session, session_id="S", at=T0, story_id="st1", story_themes=["focus"],
        story_concepts=["deep work"], is_cross_post=True, engagement={"upvotes": 4},
    )
    session.commit()
    assert row.kind == "story_created"
    assert row.processed is False
    assert row.story_concepts == ["deep work"]
    assert row.engagement == {"upvotes": 4, "comments": 0, "shares": 0}


def test_upsert_bucket_accumulates(session):
    first = BucketDeltas(stories_total=2, stories_aligned=1, unique_concepts=["a", "b"], posts_total=4,
                         sum_sentiment=0.5, sum_weighted_sentiment=0.25, sum_weights=0.5,
                         sum_x=0.5, sum_x2=0.25, n=1, event_count=6)
    second = BucketDeltas(stories_total=2, stories_aligned=2, unique_concepts=["b", "c"], stories_cross_post=1,
                          posts_total=4, sum_engagement=12, event_count=6)
    store.upsert_bucket(session, "5m", T0, "global", None, "global:", first, last_event_id=6)
    bucket = store.upsert_bucket(session, "5m", T0, "global", None, "global:", second, last_event_id=12)
    session.commit()

    assert bucket.stories_total == 4
    assert bucket.stories_aligned == 3
    assert bucket.posts_total == 8
    assert bucket.unique_concepts == ["a", "b", "c"]
    assert bucket.ni_count == 3
    assert bucket.rc_percent == pytest.approx(75.0)
    assert bucket.tp_percent == pytest.approx(25.0)
    assert bucket.story_yield == pytest.approx(0.5)
    assert bucket.sum_engagement == 12
    assert bucket.variance_helper == {"sum_x": 0.5, "sum_x2": 0.25, "n": 1}
    assert bucket.event_count == 12
    assert bucket.last_event_id == 12
    assert bucket.dim_value == ""
    assert session.query(type(bucket)).count() == 1


def test_upsert_bucket_refreshes_momentum_on_both_neighbours(session):
    later = store.upsert_bucket(session, "1m", T0 + 60_000, "global", None, "global:",
                                BucketDeltas(stories_total=3, posts_total=4))
    assert later.cm_percent == 0.0
    store.upsert_bucket(session, "1m", T0, "global", None, "global:", BucketDeltas(stories_total=1, posts_total=2))
    session.commit()

    later = store.get_bucket(session, "1m", T0 + 60_000, "global:")
    assert later.story_yield_delta == pytest.approx(0.25)
    assert later.cm_percent == pytest.approx(50.0)


def test_watermark_insert_then_compare_and_swap(session):
    store.update_watermark(session, "p", 100, last_event_id=3, processed_count=3)
    session.commit()
    store.update_watermark(session, "p", 200, last_event_id=7, processed_count=4, expected_cursor=(100, 3))
    session.commit()
    wm = store.get_watermark(session, "p")
    assert (wm.last_processed_at, wm.last_event_id, wm.processed_count) == (200, 7, 7)

    with pytest.raises(WatermarkConflictError):
        store.update_watermark(session, "p", 300, processed_count=1, expected_cursor=(100, 3))
    session.rollback()
    assert store.get_watermark(session, "p").last_processed_at == 200


def test_compare_and_swap_checks_event_id_within_a_millisecond(session):
    store.update_watermark(session, "p", T0, last_event_id=2, processed_count=2)
    session.commit()
    store.update_watermark(session, "p", T0, last_event_id=4, processed_count=2, expected_cursor=(T0, 2))
    session.commit()

    # same timestamp, stale id: another writer already took events 3-4
    with pytest.raises(WatermarkConflictError):
        store.update_watermark(session, "p", T0, last_event_id=4, processed_count=2, expected_cursor=(T0, 2))
    session.rollback()
    wm = store.get_watermark(session, "p")
    assert (wm.last_processed_at, wm.last_event_id, wm.processed_count) == (T0, 4, 4)


def test_start_run_rewinds_cursor_and_sets_token(session):
    store.update_watermark(session, "p", 500, last_event_id=9, processed_count=9)
    store.record_tick_error(session, "p", "RuntimeError: boom")
    wm = store.start_run(session, "p", "abc")
    session.commit()
    assert (wm.status, wm.run_id, wm.last_processed_at, wm.last_event_id) == ("running", "abc", 0, None)
    assert wm.processed_count == 9
    assert wm.error_message is None


def test_successful_update_clears_recorded_error(session):
    store.update_watermark(session, "p", 100)
    store.record_tick_error(session, "p", "RuntimeError: boom")
    session.commit()
    wm = store.get_watermark(session, "p")
    assert wm.status == "error"
    assert wm.error_message == "RuntimeError: boom"

    store.update_watermark(session, "p", 150, expected_cursor=(100, None))
    session.commit()
    wm = store.get_watermark(session, "p")
    assert wm.status == "idle"
    assert wm.error_message is None


def test_reset_watermark_rewinds_cursor(session):
    store.update_watermark(session, "p", 500, last_event_id=9, processed_count=9)
    store.set_watermark_status(session, "p", "running")
    wm = store.reset_watermark(session, "p")
    session.commit()
    assert (wm.last_processed_at, wm.last_event_id, wm.processed_count, wm.status) == (0, None, 0, "running")


def test_clear_buckets(session):
    store.upsert_bucket(session, "1m", T0, "global", None, "global:", BucketDeltas(posts_total=1, event_count=1))
    store.upsert_bucket(session, "5m", T0, "global", None, "global:", BucketDeltas(posts_total=1, event_count=1))
    assert store.clear_buckets(session) == 2
    session.commit()
    assert store.get_bucket(session, "1m", T0, "global:") is None
