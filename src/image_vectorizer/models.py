# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

from typing import List, Optional
from pydantic import BaseModel, Field


class VectorizeRequest(BaseModel):
    image_url: Optional[str] = Field(default=None, description="Remote http(s) image URL")
    image_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded image bytes, optionally prefixed with data:<mime>;base64,",
    )


class VectorizeResponse(BaseModel):
    embedding: List[float]


class ErrorResponse(BaseModel):
    error: str
    code: str


class ModelInfo(BaseModel):
    id: str
    hf_id: str
    dims: int
    image_size: int
    browser: bool


class MemoryInfo(BaseModel):
    process_rss_mb: Optional[float] = None
    gpu_allocated_mb: Optional[float] = None
    gpu_reserved_mb: Optional[float] = None


class AdmissionInfo(BaseModel):
    capacity: int
    in_flight: int
    accepted: int
    rejected: int


class HealthResponse(BaseModel):
    status: str
    version: str
    backend: dict = Field(default_factory=dict, description="Backend and model status")
    memory: Optional[MemoryInfo] = None
    admission: AdmissionInfo


class ReadyResponse(BaseModel):
    ready: bool
    model_loaded: bool
    backend: str


class SmokeTestResponse(BaseModel):
    status: str
    status_code: int
    image_url: str
    dims: Optional[int] = None
    preview: List[float] = Field(default_factory=list, description="First values of the embedding")
    elapsed_ms: Optional[float] = None
    error: Optional[str] = None


class CleanupResponse(BaseModel):
    gc_collected: int
    gpu_freed_mb: float
    process_rss_mb: Optional[float] = None
    gpu_allocated_mb: Optional[float] = None
    gpu_reserved_mb: Optional[float] = None
