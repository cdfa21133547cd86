"""FastAPI API routes for the CutIntake pipeline.

Thin HTTP layer over :class:`IntakePipeline`.  Service dependencies are
resolved from ``app.state`` via FastAPI's ``Depends`` using the
``Annotated`` pattern.

# ─── API ROUTE MAP ────────────────────────────────────────────────────
#
# Endpoint                              Method  Description
# ─────────────────────────────────────────────────────────────────────
# /api/v1/parse/text                    POST    Parse pasted text / transcript
# /api/v1/parse/file                    POST    Parse uploaded files (multipart)
# /api/v1/parse/url                     POST    Parse a file behind a signed URL
# /api/v1/sessions/{sid}/progress       GET     Poll per-file progress
# /api/v1/sessions/{sid}/cancel         POST    Request cooperative cancellation
# /api/v1/sessions/{sid}/result         GET     Result of a background job
# /api/v1/metrics                       GET     Cache + performance metrics
# /api/v1/health                        GET     Health check + provider status
#
# Errors: CutIntakeError subclasses raised by the pipeline are turned
# into JSON by ErrorHandlingMiddleware (FatalJobError/InputError → 422,
# SessionNotFoundError → 404).
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from typing import Annotated, Any

import structlog
from cachetools import TTLCache
from fastapi import APIRouter, BackgroundTasks, Depends, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.api.schemas import (
    CancelResponse,
    ErrorResponse,
    HealthResponse,
    MetricsResponse,
    ParseAcceptedResponse,
    ParseOptionsInput,
    ParseResponse,
    ParseTextRequest,
    ParseUrlRequest,
    SessionProgressResponse,
)
from src.config.settings import Settings
from src.models.inputs import InputKind, RawInput
from src.models.parts import ParseOptions, ParseOutcome
from src.pipeline.intake_pipeline import IntakePipeline
from src.utils.errors import CutIntakeError
from src.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_MAX_FILE_SIZE = 20 * 1024 * 1024  # 20 MB per file
_MAX_FILES = 20
_UPLOAD_CHUNK_SIZE = 64 * 1024

# ---------------------------------------------------------------------------
# Dependency injection helpers - resolve singletons from app.state
# ---------------------------------------------------------------------------


def _get_pipeline(request: Request) -> IntakePipeline:
    """Return the intake pipeline from application state."""
    return request.app.state.pipeline


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_results(request: Request) -> TTLCache:
    """Return the store of finished background job outcomes."""
    return request.app.state.job_results


PipelineDep = Annotated[IntakePipeline, Depends(_get_pipeline)]
SettingsDep = Annotated[Settings, Depends(_get_settings)]
ResultsDep = Annotated[TTLCache, Depends(_get_results)]


def _to_response(outcome: ParseOutcome) -> ParseResponse:
    return ParseResponse(
        session_id=outcome.session_id,
        parts=outcome.parts,
        stats=outcome.stats,
        row_errors=outcome.row_errors,
    )


def _options(raw: ParseOptionsInput, settings: Settings) -> ParseOptions:
    return raw.to_options(settings.default_material_id, settings.default_thickness_mm)


async def _run_in_background(
    pipeline: IntakePipeline,
    results: TTLCache,
    inputs: list[RawInput],
    options: ParseOptions,
    session_id: str,
    organization_id: str | None,
    user_id: str | None,
) -> None:
    """Run a queued job; failures end up in the session, not in a response."""
    try:
        outcome = await pipeline.parse(
            inputs,
            options,
            organization_id=organization_id,
            user_id=user_id,
            session_id=session_id,
        )
    except CutIntakeError as exc:
        _logger.warning("background_job_failed", session_id=session_id, error=str(exc))
        return
    results[session_id] = outcome


# ---------------------------------------------------------------------------
# Parse endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/parse/text",
    response_model=ParseResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Parse a pasted cut list or a dictation transcript",
)
async def parse_text(body: ParseTextRequest, pipeline: PipelineDep, settings: SettingsDep) -> ParseResponse:
    raw = RawInput(
        content=body.text,
        filename="dictation.txt" if body.voice else None,
        kind_hint=InputKind.VOICE if body.voice else None,
    )
    outcome = await pipeline.parse(
        [raw],
        _options(body.options, settings),
        organization_id=body.organization_id,
        user_id=body.user_id,
    )
    return _to_response(outcome)


@router.post(
    "/parse/file",
    response_model=None,
    responses={
        202: {"model": ParseAcceptedResponse},
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
    summary="Parse uploaded spreadsheets, PDFs, images or text files",
)
async def parse_file(
    files: list[UploadFile],
    pipeline: PipelineDep,
    settings: SettingsDep,
    results: ResultsDep,
    background_tasks: BackgroundTasks,
    options: Annotated[str | None, Form()] = None,
    organization_id: Annotated[str | None, Form()] = None,
    user_id: Annotated[str | None, Form()] = None,
    background: Annotated[bool, Query(description="Queue the job and return its session id")] = False,
) -> ParseResponse | JSONResponse:
    """Accept one or more files as multipart form data.

    ``options`` is an optional JSON object with the parse options.  With
    ``background=true`` the job is queued, the response is 202 with the
    session id, and the result is fetched from ``/sessions/{id}/result``.
    """
    if not files:
        raise HTTPException(status_code=422, detail="No files uploaded")
    if len(files) > _MAX_FILES:
        raise HTTPException(status_code=422, detail=f"Too many files: at most {_MAX_FILES} per request")

    try:
        option_input = ParseOptionsInput.model_validate_json(options) if options else ParseOptionsInput()
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid options: {exc.errors()[0]['msg']}") from exc
    parse_options = _options(option_input, settings)

    inputs = [
        RawInput(content=await _read_upload(upload), filename=upload.filename, mime_type=upload.content_type)
        for upload in files
    ]

    if background:
        if not parse_options.track_progress:
            parse_options = parse_options.model_copy(update={"track_progress": True})
        session_id = await pipeline.open_session(inputs, organization_id=organization_id, user_id=user_id)
        background_tasks.add_task(
            _run_in_background, pipeline, results, inputs, parse_options, session_id, organization_id, user_id
        )
        accepted = ParseAcceptedResponse(session_id=session_id)
        return JSONResponse(status_code=202, content=accepted.model_dump(mode="json"))

    outcome = await pipeline.parse(
        inputs, parse_options, organization_id=organization_id, user_id=user_id
    )
    return _to_response(outcome)


@router.post(
    "/parse/url",
    response_model=ParseResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Fetch a file from a signed URL and parse it",
)
async def parse_url(body: ParseUrlRequest, pipeline: PipelineDep, settings: SettingsDep) -> ParseResponse:
    raw = await pipeline.fetch_signed_url(body.url, filename=body.filename)
    outcome = await pipeline.parse(
        [raw],
        _options(body.options, settings),
        organization_id=body.organization_id,
        user_id=body.user_id,
    )
    return _to_response(outcome)


async def _read_upload(upload: UploadFile) -> bytes:
    """Read an upload in chunks, rejecting oversized files early."""
    chunks: list[bytes] = []
    total_size = 0
    while True:
        chunk = await upload.read(_UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total_size += len(chunk)
        if total_size > _MAX_FILE_SIZE:
            raise HTTPException(
                status_code=413,
                detail=f"File too large: {upload.filename} exceeds {_MAX_FILE_SIZE // (1024 * 1024)} MB",
            )
        chunks.append(chunk)
    return b"".join(chunks)


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/sessions/{session_id}/progress",
    response_model=SessionProgressResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Poll the progress of a parse session",
)
async def session_progress(session_id: str, pipeline: PipelineDep) -> SessionProgressResponse:
    session = await pipeline.session(session_id)
    return SessionProgressResponse(
        session_id=session.id,
        status=session.status,
        overall_percent=session.overall_percent,
        eta_seconds=session.eta_seconds,
        cancellation_requested=session.cancellation_requested,
        files=session.files,
        updated_at=session.updated_at,
    )


@router.post(
    "/sessions/{session_id}/cancel",
    response_model=CancelResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Request cancellation of a running parse session",
)
async def cancel_session(session_id: str, pipeline: PipelineDep) -> CancelResponse:
    # Unknown ids raise SessionNotFoundError (404) rather than returning False.
    await pipeline.session(session_id)
    accepted = await pipeline.request_cancellation(session_id)
    return CancelResponse(session_id=session_id, accepted=accepted)


@router.get(
    "/sessions/{session_id}/result",
    response_model=ParseResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Fetch the result of a background parse job",
)
async def session_result(session_id: str, pipeline: PipelineDep, results: ResultsDep) -> ParseResponse:
    outcome = results.get(session_id)
    if outcome is not None:
        return _to_response(outcome)
    session = await pipeline.session(session_id)
    if not session.status.is_terminal:
        raise HTTPException(status_code=409, detail=f"Session is still {session.status.value}")
    raise HTTPException(status_code=404, detail=f"No result for session ({session.status.value})")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.get("/metrics", response_model=MetricsResponse, summary="Cache and performance metrics")
async def metrics(pipeline: PipelineDep) -> MetricsResponse:
    return MetricsResponse(**pipeline.metrics())


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(request: Request) -> HealthResponse:
    """Return application health, version, and extraction provider availability.

    Deterministic parsing always works, so missing providers only degrade
    the service.
    """
    providers: dict[str, Any] = {}
    if hasattr(request.app.state, "provider_registry"):
        providers = dict(request.app.state.provider_registry)

    status = "healthy" if any(providers.values()) else "degraded"
    return HealthResponse(
        status=status,
        version=getattr(request.app.state, "version", "0.1.0"),
        providers=providers,
    )
