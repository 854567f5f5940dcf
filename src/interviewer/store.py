"""
Activity persistence.

The orchestrator only needs two calls: save a finished session's summary
and read it back. `InMemoryActivityStore` backs a single-process server;
anything with the same two coroutines can replace it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol

import structlog

from src.interviewer.session import SessionSummary

logger = structlog.get_logger(__name__)


class ActivityStore(Protocol):
    async def save_activity(self, summary: SessionSummary) -> None: ...

    async def get_activity(self, activity_id: str) -> Optional[Dict[str, Any]]: ...


class InMemoryActivityStore:
    """Process-local activity store, newest entries kept up to `max_entries`."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._activities: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save_activity(self, summary: SessionSummary) -> None:
        async with self._lock:
            self._activities[summary.id] = summary.to_dict()
            while len(self._activities) > self.max_entries:
                oldest = next(iter(self._activities))
                del self._activities[oldest]
        logger.info(
            "Activity saved",
            session_id=summary.id,
            turns=len(summary.transcript),
            completed=summary.completed,
        )

    async def get_activity(self, activity_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return self._activities.get(activity_id)

    def __len__(self) -> int:
        return len(self._activities)
