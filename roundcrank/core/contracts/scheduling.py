from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class JobScheduler(ABC):
    """
    Contract for the host's durable timer.

    `schedule_after` must survive process restarts and invoke the named handler
    exactly once per enqueue. There is no cancellation: stale jobs re-check state and no-op.
    """

    @abstractmethod
    async def schedule_after(
        self, delay_ms: int, handler: str, payload: Dict[str, Any], *, task_id: Optional[str] = None
    ) -> str:
        """Enqueue `handler(payload)` to run after `delay_ms`. Returns the job id (`task_id` when given)."""
