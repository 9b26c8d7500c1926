from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import json
import logging
import uuid
from signal_engine.config import get_settings
from signal_engine.infrastructure.db import healthcheck
from signal_engine.api.engine import router as engine_router

logging.basicConfig(level=get_settings().log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(title="Signal Stats Engine API", version="0.1.0")
app.include_router(engine_router)


@app.middleware("http")
async def correlation_id(request: Request, call_next):
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


@app.get("/health")
def health():
    return {"status": "ok", "db": healthcheck()}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
