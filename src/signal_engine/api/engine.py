from __future__ import annotations
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session
from signal_engine.infrastructure import db
from signal_engine.engine import control, queries, store
from signal_engine.engine.aggregation import DIM_KINDS, WINDOWS
from signal_engine.engine.errors import EngineAlreadyRunningError, EventValidationError

router = APIRouter(prefix="/engine", tags=["engine"])


def get_db():
    session = db.get_session_factory()()
    try:
        yield session
    finally:
        session.close()


class ResetIn(BaseModel):
    confirm: bool = False
    clear_buckets: bool = False


class SnapshotIn(BaseModel):
    session_id: Optional[str] = None
    top_n: Optional[int] = None


@router.post("/initialize")
def initialize(processor_id: Optional[str] = Query(None)):
    try:
        return control.initialize_engine(processor_id)
    except EngineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/stop")
def stop(processor_id: Optional[str] = Query(None)):
    return control.stop_engine(processor_id)


@router.post("/reset")
def reset(body: ResetIn = Body(...), processor_id: Optional[str] = Query(None)):
    if not body.confirm:
        raise HTTPException(status_code=400, detail="reset is destructive; pass confirm=true")
    return control.reset_engine(processor_id, clear_buckets=body.clear_buckets)


@router.post("/trigger")
def trigger(processor_id: Optional[str] = Query(None)):
    try:
        return control.trigger_processing(processor_id)
    except EngineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/snapshots")
def create_snapshot(body: Optional[SnapshotIn] = Body(None)):
    body = body or SnapshotIn()
    return control.create_broadcast_snapshot(body.session_id, top_n=body.top_n)


@router.get("/snapshots")
def latest_snapshot(session_id: Optional[str] = Query(None), session: Session = Depends(get_db)):
    snap = queries.get_snapshot(session, session_id)
    if snap is None:
        raise HTTPException(status_code=404, detail="no snapshot")
    return snap


@router.get("/metrics")
def metrics(
    dim_kind: str = Query("global"),
    dim_value: Optional[str] = Query(None),
    window: str = Query("15m"),
    bucket_count: Optional[int] = Query(None, ge=1, le=1000),
    session: Session = Depends(get_db),
):
    if dim_kind not in DIM_KINDS:
        raise HTTPException(status_code=422, detail=f"unknown dim_kind: {dim_kind}")
    if window not in WINDOWS:
        raise HTTPException(status_code=422, detail=f"unknown window: {window}")
    return queries.get_metrics(session, dim_kind, dim_value, window, bucket_count)


@router.get("/health")
def health(processor_id: Optional[str] = Query(None), session: Session = Depends(get_db)):
    return queries.get_engine_health(session, processor_id)


def _emit(session: Session, payload: dict) -> dict:
    try:
        row = store.append_event(session, payload)
        session.commit()
    except EventValidationError as e:
        session.rollback()
        raise HTTPException(status_code=422, detail=e.reason)
    return {"id": row.id, "kind": row.kind, "at": row.at}


@router.post("/events/post-enriched")
def post_enriched(payload: dict = Body(...), session: Session = Depends(get_db)):
    return _emit(session, {**payload, "kind": "post_enriched"})


@router.post("/events/story-created")
def story_created(payload: dict = Body(...), session: Session = Depends(get_db)):
    return _emit(session, {**payload, "kind": "story_created"})
