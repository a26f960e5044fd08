import logging
from typing import Callable

import psutil

from config import ITEM_MEMORY_BYTES, MAX_CONCURRENCY, MEMORY_RESERVE_BYTES, MIN_CONCURRENCY

logger = logging.getLogger(__name__)


def available_memory() -> int:
    return psutil.virtual_memory().available


class ConcurrencyController:
    """Chooses how many items may be in flight, from currently free memory.

    level = clamp((available - reserve) // per_item_cost, minimum, maximum)

    Queried once per chunk, so the pool grows or shrinks as memory pressure
    changes during a long run.
    """

    def __init__(
        self,
        minimum: int = MIN_CONCURRENCY,
        maximum: int = MAX_CONCURRENCY,
        reserve_bytes: int = MEMORY_RESERVE_BYTES,
        per_item_bytes: int = ITEM_MEMORY_BYTES,
        read_memory: Callable[[], int] = available_memory,
    ):
        if minimum < 1 or maximum < minimum:
            raise ValueError(f"Invalid concurrency bounds: {minimum}..{maximum}")
        if per_item_bytes <= 0:
            raise ValueError("per_item_bytes must be positive")
        self.minimum = minimum
        self.maximum = maximum
        self.reserve_bytes = reserve_bytes
        self.per_item_bytes = per_item_bytes
        self._read_memory = read_memory

    def concurrency_level(self) -> int:
        try:
            available = int(self._read_memory())
        except Exception:
            logger.warning("Reading available memory failed, using minimum concurrency", exc_info=True)
            return self.minimum
        level = (available - self.reserve_bytes) // self.per_item_bytes
        level = max(self.minimum, min(self.maximum, level))
        logger.debug("Concurrency level %d (%d MiB free)", level, available // (1024 * 1024))
        return level
