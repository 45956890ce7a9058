import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError


HERE = os.path.abspath(os.path.dirname(__file__))
ADAPTER_CANDIDATES = [
    os.path.join(HERE, "engine-adapters"),
    os.path.join(os.path.dirname(HERE), "engine-adapters"),
]
for candidate in ADAPTER_CANDIDATES:
    if os.path.isdir(candidate) and candidate not in sys.path:
        sys.path.append(candidate)
        break

from engine_adapters.argocd import ArgoCDAdapter
from engine_adapters.cache import ByteCache
from engine_adapters.octopus import OctopusAdapter

from config import SETTINGS
from models import ApplicationUpdate, StatusResponse
from observability import configure_logging, get_request_id, log_event, request_id_ctx
from reconcile import ReleaseReconciler
from versioning import build_versioner


configure_logging(SETTINGS.app_env)
logger = logging.getLogger("octoargosync.api")

cache = ByteCache(SETTINGS.cache_ttl_seconds, SETTINGS.cache_max_entries)
octopus = OctopusAdapter(
    SETTINGS.octopus_server,
    SETTINGS.octopus_api_key,
    SETTINGS.octopus_space_id,
    cache=cache,
    request_timeout_seconds=SETTINGS.request_timeout_seconds,
    request_id_provider=get_request_id,
)
argocd = ArgoCDAdapter(
    SETTINGS.argocd_server,
    SETTINGS.argocd_token,
    insecure=SETTINGS.argocd_insecure,
    request_timeout_seconds=SETTINGS.request_timeout_seconds,
    request_id_provider=get_request_id,
)
reconciler = ReleaseReconciler(octopus, argocd, build_versioner(SETTINGS.versioner, octopus))

logger.info(
    "config.engine loaded octopus_server=%s octopus_api_key=%s argocd_server=%s argocd_token=%s versioner=%s",
    "set" if SETTINGS.octopus_server else "missing",
    "set" if SETTINGS.octopus_api_key else "missing",
    "set" if SETTINGS.argocd_server else "missing",
    "set" if SETTINGS.argocd_token else "missing",
    SETTINGS.versioner,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await octopus.aclose()
    await argocd.aclose()


app = FastAPI(title="Octopus Argo CD Sync", version="1.0.0", lifespan=lifespan)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def status_response(status_code: int, status: str, message: Optional[str] = None) -> JSONResponse:
    payload = StatusResponse(status=status, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


def validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc") or ())
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request body"


@app.post("/api/octopusrelease")
async def octopus_release(request: Request):
    body = await request.body()
    try:
        update = ApplicationUpdate.model_validate_json(body)
    except ValidationError as exc:
        message = validation_message(exc)
        log_event("octoargosync-init-requestbodyerror", level="error", logger=logger, error=message)
        return status_response(200, "Error", message)

    log_event(
        "notification_received",
        logger=logger,
        application=update.application_key,
        state=update.state,
        target_revision=update.target_revision,
        commit_sha=update.commit_sha,
    )
    await reconciler.reconcile(update)
    return status_response(202, "OK")


@app.get("/api/health")
def health():
    return {"status": "ok"}
