# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from . import __version__
from .admission import AdmissionController
from .backends import EmbeddingBackend, create_backend
from .config import Settings
from .errors import BusyError, InvalidInputError, VectorizeError
from .logging_config import get_logger, setup_logging
from .memory import check_memory_health, force_cleanup, memory_usage, release_memory
from .model_manager import list_models
from .models import (
    AdmissionInfo, CleanupResponse, ErrorResponse, HealthResponse, MemoryInfo,
    ModelInfo, ReadyResponse, SmokeTestResponse, VectorizeRequest, VectorizeResponse,
)
from .normalizer import ImageNormalizer
from .vectorizer import Vectorizer

PREVIEW_LENGTH = 5
EXPOSED_HEADERS = [
    "X-Embedding-Dims",
    "X-Vectorizer-Backend",
    "X-Vectorizer-Model",
    "X-Admission-Capacity",
    "X-Admission-In-Flight",
    "Retry-After",
]


def _admission_headers(admission: AdmissionController, *, retry_after_seconds: Optional[int] = None) -> dict[str, str]:
    stats = admission.stats()
    headers = {
        "X-Admission-Capacity": str(stats.capacity),
        "X-Admission-In-Flight": str(stats.in_flight),
    }
    if retry_after_seconds is not None:
        headers["Retry-After"] = str(max(1, int(retry_after_seconds)))
    return headers


def _error_response(exc: VectorizeError, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    body = ErrorResponse(error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)


def create_app(
    backend: Optional[EmbeddingBackend] = None,
    normalizer: Optional[ImageNormalizer] = None,
) -> FastAPI:
    settings = Settings()

    logger = setup_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
        json_format=settings.log_json_format,
    )
    logger.info(f"Starting Image Vectorizer Service v{__version__}")

    backend_instance = backend or create_backend(settings)
    admission = AdmissionController()
    vectorizer = Vectorizer(
        backend=backend_instance,
        settings=settings,
        normalizer=normalizer,
        admission=admission,
    )
    logger.info(
        f"Backend: {backend_instance.name}, model: {backend_instance.spec.name} "
        f"({backend_instance.dims} dims)"
    )

    shutdown_event = asyncio.Event()
    memory_cleanup_task: Optional[asyncio.Task] = None

    async def memory_cleanup_loop():
        while not shutdown_event.is_set():
            try:
                await asyncio.sleep(settings.memory_cleanup_interval_seconds)
                if not shutdown_event.is_set():
                    is_healthy, issues = check_memory_health(
                        max_process_mb=settings.max_process_memory_mb,
                        max_gpu_mb=settings.max_gpu_memory_mb,
                    )
                    if not is_healthy:
                        logger.warning(f"Memory health check failed: {issues}")
                        result = release_memory()
                        logger.info(f"Periodic cleanup: {result}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in memory cleanup loop: {e}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal memory_cleanup_task

        if settings.warmup_on_startup:
            logger.info(f"Warming up {backend_instance.name} backend...")
            try:
                await backend_instance.ensure_loaded()
                logger.info("Warmup complete")
            except VectorizeError as e:
                # Not fatal: the first request retries the load.
                logger.error(f"Warmup failed: {e}")

        if settings.memory_cleanup_interval_seconds > 0:
            memory_cleanup_task = asyncio.create_task(memory_cleanup_loop())
            logger.info("Started memory cleanup background task")

        yield

        logger.info("Shutdown initiated")
        shutdown_event.set()

        if memory_cleanup_task:
            memory_cleanup_task.cancel()
            try:
                await asyncio.wait_for(memory_cleanup_task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        try:
            await backend_instance.aclose()
        except Exception as e:
            logger.error(f"Error closing backend: {e}")

        if settings.cleanup_on_shutdown:
            result = force_cleanup()
            logger.info(f"Shutdown cleanup complete: {result}")

        logger.info("Shutdown complete")

    app = FastAPI(
        title="Image Vectorizer Service",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    app.state.backend = backend_instance
    app.state.admission = admission
    app.state.vectorizer = vectorizer
    app.state.settings = settings
    app.state.logger = logger

    @app.exception_handler(VectorizeError)
    async def vectorize_error_handler(request: Request, exc: VectorizeError):
        headers = None
        if isinstance(exc, BusyError):
            headers = _admission_headers(app.state.admission, retry_after_seconds=1)
        return _error_response(exc, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request body")
        if location:
            message = f"{location}: {message}"
        return _error_response(InvalidInputError(message))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        get_logger("image_vectorizer.errors").exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "internal_error"},
        )

    @app.get("/", response_class=PlainTextResponse)
    def root() -> str:
        return "Image Vectorizer Service is running"

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        backend: EmbeddingBackend = app.state.backend
        admission: AdmissionController = app.state.admission
        return HealthResponse(
            status="ok",
            version=__version__,
            backend=backend.describe(),
            memory=MemoryInfo(**memory_usage()),
            admission=AdmissionInfo(**admission.stats().__dict__),
        )

    @app.get("/ready", response_model=ReadyResponse)
    def ready() -> ReadyResponse:
        backend: EmbeddingBackend = app.state.backend
        loaded = backend.is_loaded()
        return ReadyResponse(ready=loaded, model_loaded=loaded, backend=backend.name)

    @app.get("/models", response_model=list[ModelInfo])
    def models():
        return [
            ModelInfo(
                id=spec.name,
                hf_id=spec.hf_id,
                dims=spec.dims,
                image_size=spec.image_size,
                browser=spec.browser_id is not None,
            )
            for spec in list_models()
        ]

    @app.post("/admin/cleanup", response_model=CleanupResponse)
    async def trigger_cleanup():
        logger.info("Manual cleanup triggered")
        result = force_cleanup()
        usage = memory_usage()
        return CleanupResponse(
            gc_collected=result["gc_collected"],
            gpu_freed_mb=result["gpu_freed_mb"],
            process_rss_mb=usage["process_rss_mb"],
            gpu_allocated_mb=usage["gpu_allocated_mb"],
            gpu_reserved_mb=usage["gpu_reserved_mb"],
        )

    @app.get("/test-hf", response_model=SmokeTestResponse)
    async def smoke_test(response: Response) -> SmokeTestResponse:
        vectorizer: Vectorizer = app.state.vectorizer
        image_url = app.state.settings.test_image_url
        logger.info("Running pipeline smoke test")
        try:
            result = await vectorizer.smoke_test()
        except VectorizeError as exc:
            response.status_code = exc.status_code
            return SmokeTestResponse(
                status="error",
                status_code=exc.status_code,
                image_url=image_url,
                error=exc.message,
            )
        return SmokeTestResponse(
            status="ok",
            status_code=200,
            image_url=image_url,
            dims=result.dims,
            preview=result.embedding[:PREVIEW_LENGTH],
            elapsed_ms=round(result.elapsed_ms, 1),
        )

    @app.post(
        "/vectorize",
        response_model=VectorizeResponse,
        responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def vectorize(payload: VectorizeRequest, response: Response):
        vectorizer: Vectorizer = app.state.vectorizer
        try:
            result = await vectorizer.vectorize(
                image_url=payload.image_url,
                image_base64=payload.image_base64,
            )
        except VectorizeError:
            raise
        except Exception as exc:
            logger.exception(f"Vectorize error: {exc}")
            raise VectorizeError("Internal server error") from exc

        response.headers["X-Embedding-Dims"] = str(result.dims)
        response.headers["X-Vectorizer-Backend"] = result.backend
        response.headers["X-Vectorizer-Model"] = result.model
        for k, v in _admission_headers(app.state.admission).items():
            response.headers[k] = v
        return VectorizeResponse(embedding=result.embedding)

    return app


app = create_app()
