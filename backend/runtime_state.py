"""
Runtime state helpers for the memory store.

This module provides write-lane coordination: every mutating store
operation runs through one FIFO lane owned by the store instance, so
read-modify-write cycles never interleave.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict

from loguru import logger


class WriteLane:
    """
    Single serial write lane.

    One lane per store instance; two stores in one process never contend.
    ``asyncio.Lock`` wakes waiters in arrival order, which gives FIFO
    application of queued writes.
    """

    def __init__(self, *, name: str = "default", warn_wait_ms: int = 2000) -> None:
        self._name = name
        self._wait_warn_ms = max(1, int(warn_wait_ms))
        self._lane = asyncio.Lock()
        self._guard = asyncio.Lock()
        self._waiting = 0
        self._active = 0
        self._completed = 0
        self._failed = 0

    async def run_write(
        self,
        *,
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        wait_start = time.monotonic()
        async with self._guard:
            self._waiting += 1

        async with self._lane:
            waited_ms = int((time.monotonic() - wait_start) * 1000)
            async with self._guard:
                self._waiting = max(0, self._waiting - 1)
                self._active += 1
            if waited_ms >= self._wait_warn_ms:
                logger.warning(
                    f"epro-memory: write lane '{self._name}' waited {waited_ms}ms for {operation}"
                )

            try:
                result = await task()
            except Exception:
                async with self._guard:
                    self._failed += 1
                raise
            else:
                async with self._guard:
                    self._completed += 1
                return result
            finally:
                async with self._guard:
                    self._active = max(0, self._active - 1)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "lane": self._name,
                "active": self._active,
                "waiting": self._waiting,
                "completed": self._completed,
                "failed": self._failed,
                "wait_warn_ms": self._wait_warn_ms,
            }
