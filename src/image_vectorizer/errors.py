# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later


class VectorizeError(Exception):
    """
    Base class for failures surfaced to /vectorize callers.

    status_code is the HTTP status the API layer answers with; code is a
    stable machine-readable identifier for clients.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(VectorizeError):
    status_code = 400
    code = "invalid_input"


class BusyError(VectorizeError):
    # Retryable: the caller owns backoff, nothing is queued server-side.
    status_code = 429
    code = "busy"


class FetchError(VectorizeError):
    code = "fetch_failed"


class DecodeError(VectorizeError):
    code = "decode_failed"


class ModelLoadError(VectorizeError):
    code = "model_load_failed"


class InferenceError(VectorizeError):
    code = "inference_failed"


class InferenceTimeoutError(VectorizeError):
    status_code = 504
    code = "inference_timeout"
