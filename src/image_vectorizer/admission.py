# Image Vectorizer Service - image embedding service
# Copyright (C) 2024-2026 Image Vectorizer Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from .errors import BusyError


@dataclass(frozen=True)
class AdmissionStats:
    capacity: int
    in_flight: int
    accepted: int
    rejected: int


class AdmissionController:
    """
    Single-flight admission for inference work.

    Semantics:
    - at most one request holds the slot at any instant;
    - try_acquire() never blocks and never queues: a held slot means "busy";
    - release() clears the slot unconditionally.

    slot() is the scoped form used by the orchestrator so the slot is
    released on every exit path, exceptions included.
    """

    capacity = 1

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats_guard = threading.Lock()
        self._accepted = 0
        self._rejected = 0

    def try_acquire(self) -> bool:
        acquired = self._lock.acquire(blocking=False)
        with self._stats_guard:
            if acquired:
                self._accepted += 1
            else:
                self._rejected += 1
        return acquired

    def release(self) -> None:
        # Releasing an already free slot is a no-op.
        if self._lock.locked():
            self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def slot(self) -> Iterator[None]:
        if not self.try_acquire():
            raise BusyError("Server busy, try again in a moment")
        try:
            yield
        finally:
            self.release()

    def stats(self) -> AdmissionStats:
        with self._stats_guard:
            return AdmissionStats(
                capacity=self.capacity,
                in_flight=1 if self._lock.locked() else 0,
                accepted=self._accepted,
                rejected=self._rejected,
            )
