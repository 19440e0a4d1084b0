import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from upload_service.config import settings
from upload_service.db import SessionLocal, get_db, init_db
from upload_service.errors import UploadError, ValidationError
from upload_service.ledger import SessionLedger
from upload_service.logs import log_event, trace_id
from upload_service.metrics import http_request_duration_seconds, metrics_response
from upload_service.orchestrator import SessionOrchestrator
from upload_service.pipeline import build_pipeline
from upload_service.schemas import (
    ChunkUploadResponse,
    ErrorResponse,
    FinalizeResponse,
    HandshakeRequest,
    HandshakeResponse,
    SessionStatusResponse,
    SweepResponse,
)
from upload_service.tracing import setup_tracing
from upload_service.writer import build_writer

writer = build_writer()
pipeline = build_pipeline()


def _run_sweep_once() -> dict:
    with SessionLocal() as db:
        return SessionOrchestrator(SessionLedger(db), writer, pipeline).sweep().as_dict()


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_sweep_loop() -> None:
        # One loop per process, and each pass finishes before the next wait starts.
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(_run_sweep_once)
                if stats["sessions_deleted"] or stats["orphan_temp_files_deleted"]:
                    log_event({"event": "sweep_completed", **stats})
            except Exception as exc:
                log_event({"event": "sweep_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.sweep_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.auto_create_db:
        init_db()
    if settings.sweep_enabled:
        tasks.append(asyncio.create_task(_periodic_sweep_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def get_orchestrator(db: Session = Depends(get_db)) -> SessionOrchestrator:
    return SessionOrchestrator(SessionLedger(db), writer, pipeline)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _session_id(request: Request) -> str | None:
    return request.path_params.get("session_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "validation_error",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(request: Request, status_code: int, body: dict, headers: dict | None = None) -> JSONResponse:
    content = {
        "request_id": _request_id(request),
        "session_id": _session_id(request),
        "trace_id": trace_id(),
        **body,
    }
    return JSONResponse(status_code=status_code, content=content, headers=headers or {})


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    500: {"model": ErrorResponse, "description": "Internal or storage error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Upload-Service-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    error_class = "client_error" if exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, exc.detail)
    return _error_response(request, exc.status_code, exc.payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}" for error in exc.errors()
    )
    _log_request_error(request, 400, "client_error", detail)
    return _error_response(request, 400, {"detail": detail, "error_code": ValidationError.error_code})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail))
    return _error_response(
        request,
        exc.status_code,
        {"detail": str(exc.detail), "error_code": _error_code_for_status(exc.status_code)},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return _error_response(request, 500, {"detail": "internal server error", "error_code": "internal_error"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {"app_name": settings.app_name, "app_version": settings.app_version}


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/v1/admin/sweep", response_model=SweepResponse, responses={**COMMON_ERROR_RESPONSES})
def run_sweep(orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> SweepResponse:
    stats = orchestrator.sweep()
    return SweepResponse(status="ok", **stats.as_dict())


@app.post(
    "/v1/uploads/handshake",
    response_model=HandshakeResponse,
    responses={**COMMON_ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Session parameter conflict"}},
)
def handshake(
    payload: HandshakeRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> HandshakeResponse:
    result = orchestrator.handshake(
        payload.session_id,
        payload.filename,
        payload.total_size,
        payload.total_chunks,
        chunk_size=payload.chunk_size,
    )
    return HandshakeResponse(
        session_id=result.session.id,
        status=result.session.status,
        chunk_size=result.session.chunk_size,
        total_chunks=result.session.total_chunks,
        received_indices=result.received_indices,
    )


@app.put(
    "/v1/uploads/{session_id}/chunks/{index}",
    response_model=ChunkUploadResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Session not found"},
        409: {"model": ErrorResponse, "description": "Session not accepting chunks"},
    },
)
async def upload_chunk(
    session_id: str,
    index: int,
    request: Request,
    content_length: int = Header(default=0),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ChunkUploadResponse:
    body = await request.body()
    if not body:
        raise ValidationError("chunk payload is empty")
    if content_length and content_length != len(body):
        raise ValidationError("content-length mismatch")
    outcome = await run_in_threadpool(orchestrator.upload_chunk, session_id, index, body)
    return ChunkUploadResponse(success=True, index=outcome.index, duplicate=outcome.duplicate)


@app.get(
    "/v1/uploads/{session_id}",
    response_model=SessionStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Session not found"}},
)
def session_status(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SessionStatusResponse:
    view = orchestrator.status(session_id)
    upload = view.session
    return SessionStatusResponse(
        session_id=upload.id,
        filename=upload.filename,
        total_size=upload.total_size,
        total_chunks=upload.total_chunks,
        status=upload.status,
        received_indices=view.received_indices,
        final_hash=upload.final_hash,
        content_listing=upload.content_listing,
    )


@app.post(
    "/v1/uploads/{session_id}/finalize",
    response_model=FinalizeResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Session not found"},
        409: {"model": ErrorResponse, "description": "Finalize in progress or chunks pending"},
    },
)
def finalize(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> FinalizeResponse:
    result = orchestrator.finalize(session_id)
    return FinalizeResponse(status=result.status, hash=result.hash, content_listing=result.content_listing)
