# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import base64
import io
import json
import logging

import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient
from PIL import Image

from image_vectorizer.backends import EmbeddingBackend
from image_vectorizer.config import Settings, _get_bool, _get_csv_list, _get_optional_float
from image_vectorizer.errors import ModelLoadError
from image_vectorizer.logging_config import JsonFormatter, get_logger, setup_logging
from image_vectorizer.main import create_app
from image_vectorizer.memory import check_memory_health, force_cleanup, memory_usage, release_memory
from image_vectorizer.model_manager import ModelSpec

SPEC = ModelSpec(
    name="stub",
    hf_id="test/stub",
    model_class="Stub",
    processor_class="Stub",
    output_key="image_embeds",
    output_rank=1,
    dims=3,
)


class LifecycleBackend(EmbeddingBackend):
    name = "lifecycle"

    def __init__(self, load_error=None):
        self.load_error = load_error
        self.load_calls = 0
        self.loaded = False
        self.closed = False

    @property
    def spec(self):
        return SPEC

    def is_loaded(self):
        return self.loaded

    async def ensure_loaded(self):
        self.load_calls += 1
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True

    async def extract(self, image):
        return [0.1, 0.2, 0.3]

    async def aclose(self):
        self.closed = True


def test_setup_logging_creates_logger():
    logger = setup_logging(level="DEBUG")
    assert logger is not None
    assert logger.name == "image_vectorizer"
    assert logger.level == logging.DEBUG


def test_setup_logging_does_not_stack_handlers():
    setup_logging(level="INFO")
    logger = setup_logging(level="INFO")
    assert len(logger.handlers) == 1


def test_setup_logging_with_file(tmp_path):
    log_file = tmp_path / "test.log"
    logger = setup_logging(level="INFO", log_file=str(log_file))
    logger.info("Test message")
    for handler in logger.handlers:
        handler.flush()

    assert log_file.exists()
    assert "Test message" in log_file.read_text()


def test_json_formatter():
    formatter = JsonFormatter()
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg="Vector created (%d dims)",
        args=(512,),
        exc_info=None,
    )
    record.request_id = "abc123"
    data = json.loads(formatter.format(record))
    assert data["level"] == "INFO"
    assert data["logger"] == "test"
    assert data["message"] == "Vector created (512 dims)"
    assert data["request_id"] == "abc123"
    assert "timestamp" in data


def test_get_logger():
    logger = get_logger("image_vectorizer.test")
    assert logger.name == "image_vectorizer.test"


def test_release_memory():
    result = release_memory()
    assert isinstance(result["gc_collected"], int)
    assert "gpu_freed_mb" in result


def test_memory_usage():
    usage = memory_usage()
    assert "process_rss_mb" in usage
    assert "gpu_allocated_mb" in usage
    assert "gpu_reserved_mb" in usage


def test_check_memory_health_no_limits():
    is_healthy, issues = check_memory_health()
    assert is_healthy is True
    assert issues == []


def test_check_memory_health_with_limits():
    is_healthy, issues = check_memory_health(max_process_mb=1)
    usage = memory_usage()
    if usage["process_rss_mb"] and usage["process_rss_mb"] > 1:
        assert is_healthy is False
        assert len(issues) > 0


def test_force_cleanup():
    result = force_cleanup()
    assert "gc_collected" in result
    assert "gpu_freed_mb" in result


@pytest.mark.parametrize(
    "raw,expected",
    [(None, True), ("1", True), ("yes", True), ("ON", True), ("0", False), ("false", False), ("", False)],
)
def test_get_bool(raw, expected):
    assert _get_bool(raw, True) is expected


def test_get_csv_list():
    assert _get_csv_list("") == []
    assert _get_csv_list(" a.com, ,b.com ") == ["a.com", "b.com"]


def test_get_optional_float():
    assert _get_optional_float(None) is None
    assert _get_optional_float("  ") is None
    assert _get_optional_float("0") is None
    assert _get_optional_float("-5") is None
    assert _get_optional_float("2.5") == 2.5


def test_port_falls_back_to_platform_port(monkeypatch):
    monkeypatch.delenv("IMAGE_VECTORIZER_PORT", raising=False)
    monkeypatch.setenv("PORT", "7860")
    assert Settings().port == 7860

    monkeypatch.setenv("IMAGE_VECTORIZER_PORT", "9000")
    assert Settings().port == 9000


def test_settings_read_env_at_instantiation(monkeypatch):
    monkeypatch.setenv("IMAGE_VECTORIZER_BACKEND", "hosted")
    monkeypatch.setenv("ALLOWED_REMOTE_IMAGE_HOSTS", "cdn.example.com")
    monkeypatch.setenv("INFERENCE_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    settings = Settings()
    assert settings.backend == "hosted"
    assert settings.allowed_remote_hosts == ["cdn.example.com"]
    assert settings.inference_timeout_seconds is None
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_config_memory_settings():
    settings = Settings(
        memory_cleanup_interval_seconds=60,
        max_process_memory_mb=1024,
        max_gpu_memory_mb=512,
        cleanup_on_shutdown=False,
    )
    assert settings.memory_cleanup_interval_seconds == 60
    assert settings.max_process_memory_mb == 1024
    assert settings.max_gpu_memory_mb == 512
    assert settings.cleanup_on_shutdown is False


def test_warmup_on_startup_loads_backend():
    backend = LifecycleBackend()
    settings = Settings(warmup_on_startup=True, memory_cleanup_interval_seconds=0)

    with patch("image_vectorizer.main.Settings", return_value=settings):
        app = create_app(backend=backend)

    with TestClient(app) as client:
        assert backend.load_calls == 1
        assert client.get("/ready").json()["ready"] is True

    assert backend.closed is True


def test_no_warmup_by_default():
    backend = LifecycleBackend()
    settings = Settings(warmup_on_startup=False, memory_cleanup_interval_seconds=0)

    with patch("image_vectorizer.main.Settings", return_value=settings):
        app = create_app(backend=backend)

    with TestClient(app) as client:
        assert backend.load_calls == 0
        assert client.get("/ready").json()["ready"] is False


def test_warmup_failure_is_not_fatal():
    backend = LifecycleBackend(load_error=ModelLoadError("weights missing"))
    settings = Settings(warmup_on_startup=True, memory_cleanup_interval_seconds=0)

    with patch("image_vectorizer.main.Settings", return_value=settings):
        app = create_app(backend=backend)

    with TestClient(app) as client:
        assert client.get("/").status_code == 200
        assert client.get("/ready").json()["ready"] is False

        backend.load_error = None
        response = client.post("/vectorize", json={"image_base64": _tiny_png_base64()})
        assert response.status_code == 200
        assert backend.load_calls == 2


def test_lifespan_runs_memory_cleanup_task():
    backend = LifecycleBackend()
    settings = Settings(warmup_on_startup=False, memory_cleanup_interval_seconds=3600)

    with patch("image_vectorizer.main.Settings", return_value=settings):
        app = create_app(backend=backend)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200

    assert backend.closed is True


def _tiny_png_base64() -> str:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (255, 0, 0)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")
