# api.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import Body, FastAPI, File, Header, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from functions.extraction_pipeline import CVExtractionEngine
from functions.response_packaging import build_error_response, error_response_for_exception, package_cv_record
from functions.session_service import CVSessionService
from functions.utils.common import load_session_params
from functions.utils.errors import CVSessionError
from functions.utils.file_text_extraction import extract_text_from_bytes, guess_mime_type
from main import build_extraction_engine, build_session_service
from schemas.output_schema import (
    CreateSessionRequest,
    CreateSessionResponse,
    HealthCheckResponse,
    ProcessCVRequest,
    StoreStepRequest,
    StoreStepResponse,
)

logger = structlog.get_logger().bind(module="api")

DEFAULT_USER_ID = "anonymous"


def _error_json(err, status: int) -> JSONResponse:
    return JSONResponse(status_code=status, content=err.model_dump(mode="json"))


def _plain_errors(errors: Any) -> list[Dict[str, Any]]:
    # `ctx` may hold the raised exception object, which is not JSON-serializable
    return jsonable_encoder([{k: v for k, v in e.items() if k != "ctx"} for e in errors])


async def _sweep_expired_sessions(service: CVSessionService, interval_seconds: float) -> None:
    """Periodically drop expired sessions until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(service.cleanup_expired_sessions)
        except Exception as e:  # keep the sweeper alive; next tick retries
            logger.error("session_sweep_failed", error=str(e))


def create_app(
    service: Optional[CVSessionService] = None,
    engine: Optional[CVExtractionEngine] = None,
    *,
    cleanup_interval_seconds: Optional[float] = None,
) -> FastAPI:
    """
    Build the FastAPI app around one session service and extraction engine.

    Both are created from parameters.yaml when not injected, and are
    reachable from handlers through `app.state`.
    """
    session_cfg = load_session_params()
    service = service or build_session_service(session_cfg)
    engine = engine or build_extraction_engine(service)
    interval = float(cleanup_interval_seconds or session_cfg.get("cleanup_interval_seconds", 600))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_sweep_expired_sessions(service, interval))
        logger.info("api_started", cleanup_interval_seconds=interval)
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            engine.close()
            logger.info("api_stopped")

    app = FastAPI(
        title="CV Extraction Service",
        version="1.0.0",
        description="Multi-step CV extraction (basic info → professional → additional) with session memory.",
        lifespan=lifespan,
    )
    app.state.session_service = service
    app.state.extraction_engine = engine
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @app.exception_handler(CVSessionError)
    async def handle_domain_error(request: Request, exc: CVSessionError) -> JSONResponse:
        err, status = error_response_for_exception(exc, request.headers.get("X-Request-ID"))
        return _error_json(err, status)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        err, status = build_error_response(
            error_code="VALIDATION_ERROR",
            message="Request validation failed",
            details={"errors": _plain_errors(exc.errors())},
            request_id=request.headers.get("X-Request-ID"),
        )
        return _error_json(err, status)

    @app.exception_handler(ValidationError)
    async def handle_model_validation(request: Request, exc: ValidationError) -> JSONResponse:
        err, status = build_error_response(
            error_code="VALIDATION_ERROR",
            message="Invalid data",
            details={"errors": _plain_errors(exc.errors(include_url=False))},
            request_id=request.headers.get("X-Request-ID"),
        )
        return _error_json(err, status)

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        err, status = build_error_response(
            error_code="INVALID_INPUT",
            message=str(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return _error_json(err, status)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.get("/health", response_model=HealthCheckResponse)
    async def health() -> HealthCheckResponse:
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        return HealthCheckResponse(
            status="healthy",
            checks={"session_store": type(service.store).__name__},
            uptime_seconds=int(uptime),
        )

    @app.post("/sessions", response_model=CreateSessionResponse, status_code=201)
    def create_session(
        payload: CreateSessionRequest,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    ) -> CreateSessionResponse:
        user_id = x_user_id or DEFAULT_USER_ID
        session_id = service.create_session(user_id, payload.raw_text, payload.metadata)
        session = service.store.get(session_id)
        return CreateSessionResponse(
            session_id=session_id,
            expires_at=session.expires_at if session is not None else None,
        )

    @app.get("/sessions/{session_id}/context")
    def get_context(session_id: str) -> Dict[str, Any]:
        return service.get_session_context(session_id).model_dump(mode="json")

    @app.post("/sessions/{session_id}/steps/{step_name}", response_model=StoreStepResponse, status_code=201)
    def store_step(
        session_id: str,
        step_name: str,
        payload: StoreStepRequest = Body(...),
    ) -> StoreStepResponse:
        result = service.store_step_result(
            session_id,
            step_name,
            payload.data,
            confidence=payload.confidence,
            extraction_meta=payload.extraction_meta,
        )
        return StoreStepResponse(
            session_id=session_id,
            step_name=result.step_name.value,
            confidence=result.confidence,
            recorded_at=result.recorded_at,
        )

    @app.get("/sessions/{session_id}/result")
    def get_result(session_id: str) -> Dict[str, Any]:
        return package_cv_record(service.get_final_result(session_id))

    @app.get("/sessions/{session_id}/stats")
    def get_stats(session_id: str) -> Dict[str, Any]:
        return service.get_session_stats(session_id).model_dump(mode="json")

    @app.delete("/sessions/{session_id}", status_code=204)
    def delete_session(session_id: str) -> Response:
        service.cleanup_session(session_id)
        return Response(status_code=204)

    @app.post("/cv/process")
    def process_cv(
        payload: ProcessCVRequest,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    ) -> Dict[str, Any]:
        """Run the full three-step extraction on raw CV text."""
        user_id = x_user_id or DEFAULT_USER_ID
        record = engine.process_cv(payload.raw_text, user_id, payload.metadata)
        logger.info("api_process_cv_success", user_id=user_id, session_id=record.processing_info.session_id)
        return package_cv_record(record)

    @app.post("/cv/upload")
    def upload_cv(
        file: UploadFile = File(...),
        x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    ) -> Dict[str, Any]:
        """
        Extract text from an uploaded PDF / DOCX / TXT file, then run the
        full extraction on it.
        """
        user_id = x_user_id or DEFAULT_USER_ID
        mime_type = guess_mime_type(file.filename, file.content_type)
        content = file.file.read()
        text = extract_text_from_bytes(content, mime_type)

        metadata = {
            "file_name": file.filename,
            "mime_type": mime_type,
            "file_size": len(content),
        }
        record = engine.process_cv(text, user_id, metadata)
        logger.info(
            "api_upload_cv_success",
            user_id=user_id,
            file_name=file.filename,
            session_id=record.processing_info.session_id,
        )
        return package_cv_record(record)

    return app


app = create_app()
