"""Priority Request Queue — pending AI requests ordered by priority.

URGENT > HIGH > MEDIUM > LOW, FIFO within the same priority. Single
consumer (the orchestrator pump), mutated only on the event loop.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from heapq import heappop, heappush

from smartcrm.ai.types import AIRequest

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _PriorityItem:
    """Wrapper for heap queue ordering."""

    priority: int
    sequence: int  # Tie-breaker for FIFO within same priority
    request: AIRequest = field(compare=False)


class RequestQueue:
    """Priority queue of AI requests.

    Usage:
        queue = RequestQueue()
        queue.enqueue(request)

        request = queue.dequeue()  # None when empty
    """

    def __init__(self):
        self._heap: list[_PriorityItem] = []
        self._sequence: int = 0

    def enqueue(self, request: AIRequest) -> None:
        self._sequence += 1
        heappush(self._heap, _PriorityItem(request.priority.rank, self._sequence, request))
        logger.debug(
            "Enqueued request %s (%s, priority=%s)",
            request.request_id,
            request.operation.value,
            request.priority.value,
        )

    def dequeue(self) -> AIRequest | None:
        """Pop the next highest-priority request, or None if the queue is empty."""
        if not self._heap:
            return None
        return heappop(self._heap).request

    def peek(self) -> AIRequest | None:
        return self._heap[0].request if self._heap else None

    def __len__(self) -> int:
        return len(self._heap)

    def get_stats(self) -> dict:
        by_priority = Counter(item.request.priority.value for item in self._heap)
        by_operation = Counter(item.request.operation.value for item in self._heap)
        return {
            "total": len(self._heap),
            "by_priority": dict(by_priority),
            "by_operation": dict(by_operation),
        }
