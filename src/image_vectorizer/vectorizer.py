# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import time
import uuid
from dataclasses import dataclass
from typing import List, Optional

import anyio

from .admission import AdmissionController
from .backends import EmbeddingBackend
from .config import Settings
from .errors import InferenceTimeoutError, VectorizeError
from .logging_config import get_logger
from .memory import release_memory
from .normalizer import ImageNormalizer
from .sources import ImageSource, RemoteURL, source_from_request

logger = get_logger(__name__)


@dataclass(frozen=True)
class VectorizeResult:
    embedding: List[float]
    dims: int
    backend: str
    model: str
    elapsed_ms: float


def new_request_id() -> str:
    return uuid.uuid4().hex[:6]


class Vectorizer:
    """
    Runs one /vectorize request end to end.

    validate source -> acquire slot -> ensure backend loaded -> normalize
    -> extract -> release slot. The slot is scoped, so it is released on
    every path out of the locked phase. The locked phase is bounded by
    Settings.inference_timeout_seconds.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        settings: Optional[Settings] = None,
        normalizer: Optional[ImageNormalizer] = None,
        admission: Optional[AdmissionController] = None,
    ):
        self.settings = settings or Settings()
        self.backend = backend
        self.normalizer = normalizer or ImageNormalizer(settings=self.settings)
        self.admission = admission or AdmissionController()

    async def vectorize(
        self,
        image_url: Optional[str] = None,
        image_base64: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> VectorizeResult:
        request_id = request_id or new_request_id()
        source = source_from_request(image_url, image_base64, max_bytes=self.settings.max_image_bytes)
        kind = "image URL" if isinstance(source, RemoteURL) else "base64 image"

        with self.admission.slot():
            logger.info(f"[{request_id}] Vectorizing {kind} with {self.backend.name} backend")
            started = time.perf_counter()
            try:
                embedding = await self._run_pipeline(source)
            except VectorizeError as exc:
                logger.warning(f"[{request_id}] {exc.code}: {exc.message}")
                raise
            finally:
                if self.settings.cleanup_after_request:
                    release_memory()

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"[{request_id}] Vector created ({len(embedding)} dims, {elapsed_ms:.0f} ms)")
        return VectorizeResult(
            embedding=embedding,
            dims=len(embedding),
            backend=self.backend.name,
            model=self.backend.spec.name,
            elapsed_ms=elapsed_ms,
        )

    async def _run_pipeline(self, source: ImageSource) -> List[float]:
        timeout = self.settings.inference_timeout_seconds
        try:
            with anyio.fail_after(timeout):
                await self.backend.ensure_loaded()
                normalized = await anyio.to_thread.run_sync(
                    self.normalizer.normalize, source, abandon_on_cancel=True
                )
                return await self.backend.extract(normalized)
        except TimeoutError as exc:
            if timeout is None:
                raise
            raise InferenceTimeoutError(f"Inference did not finish within {timeout:g}s") from exc

    async def smoke_test(self) -> VectorizeResult:
        """Run the full pipeline against the configured known-good image."""
        return await self.vectorize(image_url=self.settings.test_image_url, request_id="smoke")
