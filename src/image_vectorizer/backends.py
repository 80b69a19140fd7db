# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Embedding backends.

All backends take a NormalizedImage and return a flat embedding whose length
is fixed by the configured model. The orchestrator only talks to the
EmbeddingBackend interface; which variant runs is chosen at startup from
Settings.backend.

- local:   in-process quantized transformers model.
- browser: headless Chromium page running transformers.js.
- hosted:  remote feature-extraction HTTP API.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import anyio
import requests

from .config import Settings
from .errors import InferenceError, ModelLoadError
from .extractor import extract, select_embedding
from .logging_config import get_logger
from .model_manager import ModelManager, ModelSpec, resolve_model
from .normalizer import NormalizedImage

logger = get_logger(__name__)

BUNDLED_PAGE = Path(__file__).resolve().parent / "assets" / "extractor.html"
PAGE_FUNCTION = "extractEmbedding"
PAGE_LOADER = "loadExtractor"


class EmbeddingBackend(ABC):
    name: str = "abstract"

    @property
    @abstractmethod
    def spec(self) -> ModelSpec:
        ...

    @property
    def dims(self) -> int:
        return self.spec.dims

    @abstractmethod
    async def ensure_loaded(self) -> None:
        """Make the backend ready to extract; raises ModelLoadError."""

    @abstractmethod
    async def extract(self, image: NormalizedImage) -> List[float]:
        """Embed one normalized image; raises InferenceError."""

    @abstractmethod
    def is_loaded(self) -> bool:
        ...

    def describe(self) -> dict:
        return {
            "backend": self.name,
            "model": self.spec.name,
            "dims": self.dims,
            "loaded": self.is_loaded(),
        }

    async def aclose(self) -> None:
        return None


class LocalModelBackend(EmbeddingBackend):
    name = "local"

    def __init__(self, settings: Optional[Settings] = None, manager: Optional[ModelManager] = None):
        self.settings = settings or Settings()
        self.manager = manager or ModelManager(settings=self.settings)
        # A forward pass abandoned by a timeout keeps running in its worker
        # thread; the next one waits for it instead of doubling memory.
        self._forward_lock = threading.Lock()

    @property
    def spec(self) -> ModelSpec:
        return self.manager.spec

    def is_loaded(self) -> bool:
        return self.manager.is_loaded()

    async def ensure_loaded(self) -> None:
        await anyio.to_thread.run_sync(self.manager.ensure_loaded, abandon_on_cancel=True)

    async def extract(self, image: NormalizedImage) -> List[float]:
        return await anyio.to_thread.run_sync(self._extract_blocking, image, abandon_on_cancel=True)

    def _extract_blocking(self, image: NormalizedImage) -> List[float]:
        handle = self.manager.ensure_loaded()
        with self._forward_lock:
            return extract(handle, image, l2_normalize=self.settings.l2_normalize)

    def describe(self) -> dict:
        info = super().describe()
        info["hf_id"] = self.spec.hf_id
        handle = self.manager.handle
        if handle is not None:
            info["device"] = handle.device
            info["quantized"] = handle.quantized
        return info


@dataclass
class BrowserSession:
    page: Any
    close: Callable[[], Awaitable[None]]


Launcher = Callable[[], Awaitable[BrowserSession]]


class BrowserBackend(EmbeddingBackend):
    """
    Delegates extraction to a persistent headless-browser page.

    The page exposes window.loadExtractor(model) and
    window.extractEmbedding(src, model). If the page is absent (never
    started, closed or crashed) ensure_loaded() makes exactly one
    initialization attempt and fails with ModelLoadError otherwise; it never
    retries on its own.
    """

    name = "browser"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        spec: Optional[ModelSpec] = None,
        launcher: Optional[Launcher] = None,
    ):
        self.settings = settings or Settings()
        self._spec = spec or resolve_model(self.settings.default_model)
        if self._spec.browser_id is None:
            raise ValueError(f"Model {self._spec.name} is not available in the browser backend")
        self._launcher = launcher or self._launch_chromium
        self._session: Optional[BrowserSession] = None
        self._crashed = False
        self._init_lock = asyncio.Lock()
        self.init_count = 0

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    def page_url(self) -> str:
        return self.settings.browser_page_url or BUNDLED_PAGE.as_uri()

    def _page_alive(self) -> bool:
        return self._session is not None and not self._crashed and not self._session.page.is_closed()

    def is_loaded(self) -> bool:
        return self._page_alive()

    def _on_crash(self, *_args: Any) -> None:
        logger.error("Browser page crashed; it will be re-initialized on the next request")
        self._crashed = True

    async def _discard_session(self) -> None:
        session, self._session = self._session, None
        self._crashed = False
        if session is None:
            return
        try:
            await session.close()
        except Exception as exc:
            logger.warning(f"Error closing browser session: {exc}")

    async def _launch_chromium(self) -> BrowserSession:
        from playwright.async_api import async_playwright

        timeout_ms = self.settings.browser_ready_timeout_seconds * 1000
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=self.settings.browser_headless)
            page = await browser.new_page()
            await page.goto(self.page_url())
            await page.wait_for_function(f"typeof window.{PAGE_FUNCTION} === 'function'", timeout=timeout_ms)
            await page.evaluate(f"(model) => window.{PAGE_LOADER}(model)", self._spec.browser_id)
        except BaseException:
            await playwright.stop()
            raise

        async def close() -> None:
            await browser.close()
            await playwright.stop()

        return BrowserSession(page=page, close=close)

    async def ensure_loaded(self) -> None:
        if self._page_alive():
            return
        async with self._init_lock:
            if self._page_alive():
                return
            await self._discard_session()
            self.init_count += 1
            logger.info(f"Initializing browser page for {self._spec.browser_id} (init #{self.init_count})")
            try:
                session = await self._launcher()
            except Exception as exc:
                logger.error(f"Browser page initialization failed: {exc}")
                raise ModelLoadError(f"Browser page initialization failed: {exc}") from exc
            session.page.on("crash", self._on_crash)
            self._session = session

    async def extract(self, image: NormalizedImage) -> List[float]:
        if not self._page_alive():
            await self._discard_session()
            raise InferenceError("Browser page is not available")

        page = self._session.page  # type: ignore[union-attr]
        try:
            result = await page.evaluate(
                "([fn, src, model]) => window[fn](src, model)",
                [PAGE_FUNCTION, image.to_data_url(), self._spec.browser_id],
            )
        except Exception as exc:
            if not self._page_alive():
                await self._discard_session()
            raise InferenceError(f"In-page extraction failed: {exc}") from exc

        return select_embedding(result, 1, self._spec.dims)

    def describe(self) -> dict:
        info = super().describe()
        info["browser_model"] = self._spec.browser_id
        info["page_url"] = self.page_url()
        info["initializations"] = self.init_count
        return info

    async def aclose(self) -> None:
        await self._discard_session()


class HostedBackend(EmbeddingBackend):
    """Remote feature-extraction API (Hugging Face router by default)."""

    name = "hosted"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        spec: Optional[ModelSpec] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings or Settings()
        self._spec = spec or resolve_model(self.settings.default_model)
        self._http = session or requests.Session()

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    def is_loaded(self) -> bool:
        return bool(self.settings.hf_token)

    async def ensure_loaded(self) -> None:
        if not self.settings.hf_token:
            raise ModelLoadError("HF_TOKEN is not configured for the hosted backend")

    async def extract(self, image: NormalizedImage) -> List[float]:
        return await anyio.to_thread.run_sync(self._extract_blocking, image, abandon_on_cancel=True)

    def _extract_blocking(self, image: NormalizedImage) -> List[float]:
        payload = {"model": self._spec.hf_id, "inputs": {"image": image.to_data_url()}}
        try:
            response = self._http.post(
                self.settings.hosted_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.hf_token}"},
                timeout=self.settings.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise InferenceError(f"Hosted inference request failed: {exc}") from exc

        with closing(response):
            if not response.ok:
                raise InferenceError(
                    f"Hosted inference returned HTTP {response.status_code}: {response.text[:200]}"
                )
            try:
                data = response.json()
            except ValueError as exc:
                raise InferenceError("Hosted inference returned a non-JSON body") from exc

        return select_embedding(data, self._spec.hosted_output_rank, self._spec.dims)

    def describe(self) -> dict:
        info = super().describe()
        info["api_url"] = self.settings.hosted_api_url
        return info


BACKENDS = {
    LocalModelBackend.name: LocalModelBackend,
    BrowserBackend.name: BrowserBackend,
    HostedBackend.name: HostedBackend,
}


def create_backend(settings: Settings) -> EmbeddingBackend:
    key = (settings.backend or "local").strip().lower()
    backend_cls = BACKENDS.get(key)
    if backend_cls is None:
        raise ValueError(f"Unsupported IMAGE_VECTORIZER_BACKEND value: {settings.backend}")
    return backend_cls(settings=settings)
