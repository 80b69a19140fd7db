# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

import gc
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__)

_MB = 1024 * 1024


def _cuda():
    """Return torch.cuda when torch is importable and a GPU is present."""
    try:
        import torch
    except ImportError:
        return None
    try:
        return torch.cuda if torch.cuda.is_available() else None
    except Exception as e:
        logger.debug(f"CUDA probe failed: {e}")
        return None


def release_memory() -> dict:
    """Cheap per-request cleanup: collect garbage and drop cached GPU blocks."""
    result = {"gc_collected": gc.collect(), "gpu_freed_mb": 0.0}

    cuda = _cuda()
    if cuda is not None:
        try:
            before = cuda.memory_allocated() / _MB
            cuda.empty_cache()
            after = cuda.memory_allocated() / _MB
            result["gpu_freed_mb"] = max(0.0, before - after)
        except Exception as e:
            logger.warning(f"Failed to release GPU memory: {e}")

    return result


def memory_usage() -> dict:
    usage = {
        "process_rss_mb": None,
        "gpu_allocated_mb": None,
        "gpu_reserved_mb": None,
    }

    try:
        import psutil
        usage["process_rss_mb"] = psutil.Process().memory_info().rss / _MB
    except Exception as e:
        logger.debug(f"Failed to read process memory: {e}")

    cuda = _cuda()
    if cuda is not None:
        try:
            usage["gpu_allocated_mb"] = cuda.memory_allocated() / _MB
            usage["gpu_reserved_mb"] = cuda.memory_reserved() / _MB
        except Exception as e:
            logger.debug(f"Failed to read GPU memory: {e}")

    return usage


def check_memory_health(
    max_process_mb: Optional[float] = None,
    max_gpu_mb: Optional[float] = None,
) -> tuple[bool, list[str]]:
    issues = []
    usage = memory_usage()

    rss = usage["process_rss_mb"]
    if max_process_mb and rss and rss > max_process_mb:
        issues.append(f"Process memory ({rss:.1f} MB) exceeds limit ({max_process_mb} MB)")

    gpu = usage["gpu_allocated_mb"]
    if max_gpu_mb and gpu and gpu > max_gpu_mb:
        issues.append(f"GPU memory ({gpu:.1f} MB) exceeds limit ({max_gpu_mb} MB)")

    return len(issues) == 0, issues


def force_cleanup() -> dict:
    logger.info("Performing forced memory cleanup")
    result = release_memory()
    gc.collect(2)

    cuda = _cuda()
    if cuda is not None:
        try:
            cuda.ipc_collect()
        except Exception as e:
            logger.warning(f"Failed IPC collection: {e}")

    logger.info(f"Forced cleanup complete: {result}")
    return result
