# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import os
from dataclasses import dataclass, field
from typing import Optional


def _get_bool(value: str, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}

def _get_csv_list(value: str) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]

def _get_optional_float(value: str) -> Optional[float]:
    if value is None or not value.strip():
        return None
    parsed = float(value)
    return parsed if parsed > 0 else None


DEFAULT_TEST_IMAGE_URL = "https://www.kisasacraft.co.ke/cdn/shop/files/IMG_3491.jpg?v=1761125454&width=360"
DEFAULT_HOSTED_API_URL = "https://router.huggingface.co/feature_extraction"


@dataclass
class Settings:
    # NOTE: use default_factory so env vars are read when Settings() is instantiated,
    # not at import time (important for tests and predictable runtime behavior).
    host: str = field(default_factory=lambda: os.getenv("IMAGE_VECTORIZER_HOST", "0.0.0.0"))
    # Hosting platforms inject PORT; the service-specific variable wins when both are set.
    port: int = field(
        default_factory=lambda: int(os.getenv("IMAGE_VECTORIZER_PORT", os.getenv("PORT", "8000")))
    )
    # Browser origins allowed to call the API; "*" allows any origin.
    cors_allow_origins: list[str] = field(
        default_factory=lambda: _get_csv_list(os.getenv("CORS_ALLOW_ORIGINS", "*"))
    )

    # Which embedding backend serves /vectorize: local | browser | hosted.
    backend: str = field(default_factory=lambda: os.getenv("IMAGE_VECTORIZER_BACKEND", "local"))
    default_model: str = field(default_factory=lambda: os.getenv("DEFAULT_MODEL", "clip-vit-base-patch32"))
    device: str = field(default_factory=lambda: os.getenv("DEVICE", "auto"))
    quantize: bool = field(default_factory=lambda: _get_bool(os.getenv("QUANTIZE_MODEL"), True))
    l2_normalize: bool = field(default_factory=lambda: _get_bool(os.getenv("L2_NORMALIZE"), False))

    allow_remote_urls: bool = field(default_factory=lambda: _get_bool(os.getenv("ALLOW_REMOTE_IMAGE_URLS"), True))
    allowed_remote_hosts: list[str] = field(
        default_factory=lambda: _get_csv_list(os.getenv("ALLOWED_REMOTE_IMAGE_HOSTS", ""))
    )
    # Refuse URLs resolving to loopback/private ranges (SSRF guard).
    block_private_hosts: bool = field(
        default_factory=lambda: _get_bool(os.getenv("BLOCK_PRIVATE_IMAGE_HOSTS"), True)
    )
    max_image_bytes: int = field(default_factory=lambda: int(os.getenv("MAX_IMAGE_BYTES", "15728640")))
    request_timeout_seconds: int = field(default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT_SECONDS", "15")))

    # Upper bound on model load + preprocessing + forward pass while holding the
    # admission slot. Unset or <= 0 disables the bound.
    inference_timeout_seconds: Optional[float] = field(
        default_factory=lambda: _get_optional_float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "120"))
    )
    # Lazy loading is the default; warmup moves the first load to startup.
    warmup_on_startup: bool = field(default_factory=lambda: _get_bool(os.getenv("WARMUP_ON_STARTUP"), False))

    cleanup_after_request: bool = field(
        default_factory=lambda: _get_bool(os.getenv("CLEANUP_AFTER_REQUEST"), True)
    )
    memory_cleanup_interval_seconds: int = field(
        default_factory=lambda: int(os.getenv("MEMORY_CLEANUP_INTERVAL_SECONDS", "300"))
    )
    max_process_memory_mb: Optional[float] = field(
        default_factory=lambda: _get_optional_float(os.getenv("MAX_PROCESS_MEMORY_MB"))
    )
    max_gpu_memory_mb: Optional[float] = field(
        default_factory=lambda: _get_optional_float(os.getenv("MAX_GPU_MEMORY_MB"))
    )
    cleanup_on_shutdown: bool = field(default_factory=lambda: _get_bool(os.getenv("CLEANUP_ON_SHUTDOWN"), True))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: os.getenv("LOG_FILE") or None)
    log_max_bytes: int = field(default_factory=lambda: int(os.getenv("LOG_MAX_BYTES", "10485760")))
    log_backup_count: int = field(default_factory=lambda: int(os.getenv("LOG_BACKUP_COUNT", "5")))
    log_json_format: bool = field(default_factory=lambda: _get_bool(os.getenv("LOG_JSON_FORMAT"), False))

    # Known-good image used by the /test-hf diagnostic endpoint.
    test_image_url: str = field(default_factory=lambda: os.getenv("TEST_IMAGE_URL", DEFAULT_TEST_IMAGE_URL))

    # Browser backend. An empty page URL means the bundled extractor page.
    browser_page_url: Optional[str] = field(default_factory=lambda: os.getenv("BROWSER_PAGE_URL") or None)
    browser_headless: bool = field(default_factory=lambda: _get_bool(os.getenv("BROWSER_HEADLESS"), True))
    browser_ready_timeout_seconds: int = field(
        default_factory=lambda: int(os.getenv("BROWSER_READY_TIMEOUT_SECONDS", "60"))
    )

    # Hosted backend.
    hf_token: Optional[str] = field(default_factory=lambda: os.getenv("HF_TOKEN") or None)
    hosted_api_url: str = field(default_factory=lambda: os.getenv("HOSTED_API_URL", DEFAULT_HOSTED_API_URL))
