# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .config import Settings
from .errors import ModelLoadError
from .extractor import validate_output_contract
from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """
    Catalog entry for one model family.

    output_key and output_rank are the explicit output contract: the named
    model output must have exactly output_rank dimensions, and every leading
    axis is reduced by taking its first element (batch row, CLS token).
    """

    name: str
    hf_id: str
    model_class: str
    processor_class: str
    output_key: str
    output_rank: int
    dims: int
    image_size: int = 224
    # transformers.js id served by the browser backend; None if unsupported there.
    browser_id: Optional[str] = None
    # Rank of the vector returned by the hosted feature-extraction API.
    hosted_output_rank: int = 1


MODEL_CATALOG: Dict[str, ModelSpec] = {
    "clip-vit-base-patch32": ModelSpec(
        name="clip-vit-base-patch32",
        hf_id="openai/clip-vit-base-patch32",
        model_class="CLIPVisionModelWithProjection",
        processor_class="CLIPImageProcessor",
        output_key="image_embeds",
        output_rank=2,
        dims=512,
        browser_id="Xenova/clip-vit-base-patch32",
    ),
    "clip-vit-base-patch16": ModelSpec(
        name="clip-vit-base-patch16",
        hf_id="openai/clip-vit-base-patch16",
        model_class="CLIPVisionModelWithProjection",
        processor_class="CLIPImageProcessor",
        output_key="image_embeds",
        output_rank=2,
        dims=512,
        browser_id="Xenova/clip-vit-base-patch16",
    ),
    "dinov2-small": ModelSpec(
        name="dinov2-small",
        hf_id="facebook/dinov2-small",
        model_class="AutoModel",
        processor_class="AutoImageProcessor",
        output_key="pooler_output",
        output_rank=2,
        dims=384,
    ),
}


def resolve_model(model_name: Optional[str]) -> ModelSpec:
    if model_name and model_name in MODEL_CATALOG:
        return MODEL_CATALOG[model_name]
    fallback = next(iter(MODEL_CATALOG.values()))
    if model_name:
        logger.warning(f"Unknown model {model_name!r}, falling back to {fallback.name}")
    return fallback


def list_models() -> List[ModelSpec]:
    return list(MODEL_CATALOG.values())


@dataclass(frozen=True)
class ModelHandle:
    model: Any
    processor: Any
    device: str
    spec: ModelSpec
    quantized: bool = False


def resolve_device(device_setting: Optional[str]):
    import torch

    setting = (device_setting or "auto").strip().lower()
    if setting == "cpu":
        return torch.device("cpu")
    if setting == "cuda":
        if not torch.cuda.is_available():
            raise ValueError("CUDA requested but not available")
        return torch.device("cuda")
    if setting != "auto":
        raise ValueError(f"Unsupported DEVICE value: {device_setting}")

    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def quantize_dynamic_int8(model: Any) -> Any:
    """Dynamic INT8 quantization of Linear layers (CPU only)."""
    import torch
    import torch.ao.quantization as quant

    model.eval()
    return quant.quantize_dynamic(model, {torch.nn.Linear}, dtype=torch.qint8)


def load_transformers_model(spec: ModelSpec, settings: Settings) -> ModelHandle:
    device = resolve_device(settings.device)

    import transformers

    model_cls = getattr(transformers, spec.model_class)
    processor_cls = getattr(transformers, spec.processor_class)

    processor = processor_cls.from_pretrained(spec.hf_id)
    model = model_cls.from_pretrained(spec.hf_id)
    model.eval()

    quantized = False
    if settings.quantize:
        if str(device).startswith("cpu"):
            model = quantize_dynamic_int8(model)
            quantized = True
        else:
            logger.info(f"Dynamic INT8 quantization is CPU-only; keeping full precision on {device}")

    model.to(device)
    return ModelHandle(model=model, processor=processor, device=str(device), spec=spec, quantized=quantized)


Loader = Callable[[ModelSpec, Settings], ModelHandle]
Validator = Callable[[ModelHandle], None]


class ModelManager:
    """
    Owns the single model instance of the process.

    The model is loaded on the first ensure_loaded() call and cached for the
    process lifetime. A failed load caches nothing, so the next call starts
    over from scratch.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        spec: Optional[ModelSpec] = None,
        loader: Optional[Loader] = None,
        validator: Optional[Validator] = None,
    ):
        self.settings = settings or Settings()
        self.spec = spec or resolve_model(self.settings.default_model)
        self._loader = loader or load_transformers_model
        self._validator = validator or validate_output_contract
        self._handle: Optional[ModelHandle] = None
        self._lock = threading.Lock()
        self.load_count = 0

    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    def ensure_loaded(self) -> ModelHandle:
        handle = self._handle
        if handle is not None:
            return handle

        with self._lock:
            if self._handle is not None:
                return self._handle

            self.load_count += 1
            logger.info(f"Loading model {self.spec.name} ({self.spec.hf_id}), quantize={self.settings.quantize}")
            started = time.perf_counter()
            try:
                handle = self._loader(self.spec, self.settings)
                self._validator(handle)
            except ModelLoadError:
                logger.error(f"Model {self.spec.name} failed validation")
                raise
            except Exception as exc:
                logger.error(f"Model {self.spec.name} failed to load: {exc}")
                raise ModelLoadError(f"Failed to load model {self.spec.name}: {exc}") from exc

            self._handle = handle
            logger.info(
                f"Model {self.spec.name} ready on {handle.device} "
                f"(quantized={handle.quantized}) in {time.perf_counter() - started:.1f}s"
            )
            return handle
