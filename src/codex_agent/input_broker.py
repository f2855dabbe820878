"""Correlation-id keyed rendezvous between paused tool calls and their answers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class InputBroker:
    """Hold one future per outstanding ``awaiting-input`` tool outcome.

    A resolution may arrive before the loop starts waiting on it; the value is
    kept until :meth:`wait` collects it.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[Any]] = {}

    def _future(self, correlation_id: str) -> asyncio.Future[Any]:
        future = self._pending.get(correlation_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[correlation_id] = future
        return future

    @property
    def pending_ids(self) -> list[str]:
        return [cid for cid, fut in self._pending.items() if not fut.done()]

    def open(self, correlation_id: str) -> None:
        """Register an outstanding request so that it shows up in ``pending_ids``."""
        self._future(correlation_id)

    def resolve(self, correlation_id: str, value: Any) -> bool:
        """Deliver the answer for ``correlation_id``; False if already answered."""
        future = self._future(correlation_id)
        if future.done():
            return False
        future.set_result(value)
        LOGGER.info(
            "input.resolved",
            extra={"event": "input.resolved", "correlation_id": correlation_id},
        )
        return True

    async def wait(self, correlation_id: str) -> Any:
        future = self._future(correlation_id)
        try:
            return await future
        finally:
            self._pending.pop(correlation_id, None)
