# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

from typing import TYPE_CHECKING, Any, List, Optional

import numpy as np

from .errors import InferenceError, ModelLoadError
from .normalizer import NormalizedImage, blank_image

if TYPE_CHECKING:
    from .model_manager import ModelHandle


def select_embedding(raw: Any, output_rank: int, dims: Optional[int] = None) -> List[float]:
    """
    Reduce a raw model output to the flat embedding vector.

    The output must have exactly the declared rank. Each leading axis is
    reduced by taking its first element, so a batch of vectors yields its
    first vector and a flat vector comes back unchanged.
    """
    try:
        values = np.asarray(raw, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InferenceError("Model output is not a numeric array") from exc

    if values.ndim != output_rank:
        raise InferenceError(f"Model output has rank {values.ndim}, expected {output_rank}")

    while values.ndim > 1:
        if values.shape[0] == 0:
            raise InferenceError("Model output is empty")
        values = values[0]

    if values.size == 0:
        raise InferenceError("Model output is empty")
    if dims is not None and values.shape[0] != dims:
        raise InferenceError(f"Embedding has {values.shape[0]} dimensions, expected {dims}")
    if not np.all(np.isfinite(values)):
        raise InferenceError("Embedding contains non-finite values")

    return values.tolist()


def _output_tensor(outputs: Any, key: str) -> Any:
    if isinstance(outputs, dict) or hasattr(outputs, "keys"):
        if key in outputs:
            return outputs[key]
    value = getattr(outputs, key, None)
    if value is None:
        raise KeyError(f"model output has no {key!r}")
    return value


def extract(handle: "ModelHandle", image: NormalizedImage, l2_normalize: bool = False) -> List[float]:
    spec = handle.spec
    try:
        import torch

        inputs = handle.processor(images=image.to_pil(), return_tensors="pt")
        inputs = {k: v.to(handle.device) for k, v in inputs.items()}

        with torch.no_grad():
            outputs = handle.model(**inputs)
            features = _output_tensor(outputs, spec.output_key)
            if l2_normalize:
                features = torch.nn.functional.normalize(features, p=2, dim=-1)

        raw = features.detach().cpu().numpy()
    except Exception as exc:
        raise InferenceError(f"Forward pass failed: {exc}") from exc

    return select_embedding(raw, spec.output_rank, spec.dims)


def validate_output_contract(handle: "ModelHandle") -> None:
    """Probe the freshly loaded model once and check its output contract."""
    try:
        extract(handle, blank_image())
    except InferenceError as exc:
        raise ModelLoadError(
            f"Model {handle.spec.name} does not match its declared output contract: {exc.message}"
        ) from exc
