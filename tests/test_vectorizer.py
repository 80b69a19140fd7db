# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import base64
import io

import anyio
import pytest
from PIL import Image

from image_vectorizer.admission import AdmissionController
from image_vectorizer.backends import EmbeddingBackend
from image_vectorizer.config import Settings
from image_vectorizer.errors import (
    BusyError, DecodeError, InferenceError, InferenceTimeoutError, InvalidInputError, ModelLoadError,
)
from image_vectorizer.model_manager import ModelSpec
from image_vectorizer.normalizer import ImageNormalizer
from image_vectorizer.vectorizer import Vectorizer

STUB_SPEC = ModelSpec(
    name="stub",
    hf_id="test/stub",
    model_class="Stub",
    processor_class="Stub",
    output_key="embeds",
    output_rank=1,
    dims=4,
)


def _png_base64(size=(1000, 500)) -> str:
    buf = io.BytesIO()
    Image.new("RGB", size, (10, 20, 30)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class StubBackend(EmbeddingBackend):
    name = "stub"

    def __init__(self, vector=(0.1, 0.2, 0.3, 0.4), load_error=None, extract_error=None, delay=0.0):
        self.vector = list(vector)
        self.load_error = load_error
        self.extract_error = extract_error
        self.delay = delay
        self.events = []
        self.images = []
        self._loaded = False

    @property
    def spec(self):
        return STUB_SPEC

    def is_loaded(self):
        return self._loaded

    async def ensure_loaded(self):
        self.events.append("ensure_loaded")
        if self.load_error is not None:
            raise self.load_error
        self._loaded = True

    async def extract(self, image):
        self.events.append("extract")
        self.images.append(image)
        if self.delay:
            await anyio.sleep(self.delay)
        if self.extract_error is not None:
            raise self.extract_error
        return list(self.vector)


class RecordingNormalizer(ImageNormalizer):
    def __init__(self, backend, **kwargs):
        super().__init__(**kwargs)
        self._backend = backend

    def normalize(self, source):
        self._backend.events.append("normalize")
        return super().normalize(source)


def _vectorizer(backend, **settings_overrides):
    settings = Settings(cleanup_after_request=False, **settings_overrides)
    return Vectorizer(
        backend=backend,
        settings=settings,
        normalizer=RecordingNormalizer(backend, settings=settings),
        admission=AdmissionController(),
    )


@pytest.mark.anyio
async def test_vectorize_runs_steps_in_order():
    backend = StubBackend()
    vectorizer = _vectorizer(backend)

    result = await vectorizer.vectorize(image_base64=_png_base64())

    assert result.embedding == [0.1, 0.2, 0.3, 0.4]
    assert result.dims == 4
    assert result.backend == "stub"
    assert result.model == "stub"
    assert backend.events == ["ensure_loaded", "normalize", "extract"]
    assert backend.images[0].shape == (224, 224, 3)
    assert vectorizer.admission.busy is False


@pytest.mark.anyio
async def test_invalid_input_is_rejected_before_admission():
    backend = StubBackend()
    vectorizer = _vectorizer(backend)

    with pytest.raises(InvalidInputError):
        await vectorizer.vectorize()

    assert vectorizer.admission.stats().accepted == 0
    assert backend.events == []


@pytest.mark.anyio
async def test_busy_slot_rejects_immediately():
    backend = StubBackend()
    vectorizer = _vectorizer(backend)
    assert vectorizer.admission.try_acquire()

    with pytest.raises(BusyError):
        await vectorizer.vectorize(image_base64=_png_base64())

    assert backend.events == []
    vectorizer.admission.release()


@pytest.mark.anyio
async def test_slot_released_after_extract_failure():
    backend = StubBackend(extract_error=InferenceError("forward pass exploded"))
    vectorizer = _vectorizer(backend)

    with pytest.raises(InferenceError):
        await vectorizer.vectorize(image_base64=_png_base64())
    assert vectorizer.admission.busy is False

    backend.extract_error = None
    result = await vectorizer.vectorize(image_base64=_png_base64())
    assert result.embedding == [0.1, 0.2, 0.3, 0.4]


@pytest.mark.anyio
async def test_slot_released_after_unexpected_exception():
    backend = StubBackend(extract_error=RuntimeError("segfault-ish"))
    vectorizer = _vectorizer(backend)

    with pytest.raises(RuntimeError):
        await vectorizer.vectorize(image_base64=_png_base64())
    assert vectorizer.admission.busy is False


@pytest.mark.anyio
async def test_slot_released_after_load_failure():
    backend = StubBackend(load_error=ModelLoadError("download failed"))
    vectorizer = _vectorizer(backend)

    with pytest.raises(ModelLoadError):
        await vectorizer.vectorize(image_base64=_png_base64())
    assert vectorizer.admission.busy is False
    assert backend.events == ["ensure_loaded"]


@pytest.mark.anyio
async def test_slot_released_after_decode_failure():
    backend = StubBackend()
    vectorizer = _vectorizer(backend)
    payload = base64.b64encode(b"definitely not an image").decode("ascii")

    with pytest.raises(DecodeError):
        await vectorizer.vectorize(image_base64=payload)
    assert vectorizer.admission.busy is False


@pytest.mark.anyio
async def test_timeout_releases_slot():
    backend = StubBackend(delay=2.0)
    vectorizer = _vectorizer(backend, inference_timeout_seconds=0.1)

    with pytest.raises(InferenceTimeoutError, match="0.1s"):
        await vectorizer.vectorize(image_base64=_png_base64())
    assert vectorizer.admission.busy is False


@pytest.mark.anyio
async def test_concurrent_calls_admit_exactly_one():
    backend = StubBackend(delay=0.3)
    vectorizer = _vectorizer(backend)
    payload = _png_base64()

    results = await asyncio.gather(
        vectorizer.vectorize(image_base64=payload),
        vectorizer.vectorize(image_base64=payload),
        return_exceptions=True,
    )

    busy = [r for r in results if isinstance(r, BusyError)]
    ok = [r for r in results if not isinstance(r, Exception)]
    assert len(busy) == 1
    assert len(ok) == 1
    assert ok[0].embedding == [0.1, 0.2, 0.3, 0.4]


@pytest.mark.anyio
async def test_smoke_test_uses_configured_image(monkeypatch):
    backend = StubBackend()
    vectorizer = _vectorizer(backend, test_image_url="https://example.com/known-good.png")
    fetched = []

    def _fetch(url):
        fetched.append(url)
        return base64.b64decode(_png_base64((64, 64)))

    monkeypatch.setattr(vectorizer.normalizer, "_fetch_image_bytes", _fetch)

    result = await vectorizer.smoke_test()
    assert fetched == ["https://example.com/known-good.png"]
    assert result.dims == 4


@pytest.mark.anyio
async def test_cleanup_runs_after_each_request(monkeypatch):
    from image_vectorizer import vectorizer as vectorizer_module

    calls = []
    monkeypatch.setattr(vectorizer_module, "release_memory", lambda: calls.append(1) or {})

    backend = StubBackend(extract_error=InferenceError("boom"))
    settings = Settings(cleanup_after_request=True)
    vectorizer = Vectorizer(backend=backend, settings=settings)

    with pytest.raises(InferenceError):
        await vectorizer.vectorize(image_base64=_png_base64())
    backend.extract_error = None
    await vectorizer.vectorize(image_base64=_png_base64())

    assert len(calls) == 2
