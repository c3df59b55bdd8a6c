"""Prioritized replay buffer for agent experiences."""
from __future__ import annotations

import abc
import bisect
import itertools
import logging
import math
import random
from typing import List, Optional, Tuple

from mcp_core.config import ReplayBufferConfig
from mcp_core.core.models import Experience

logger = logging.getLogger(__name__)


class ReplayBuffer(abc.ABC):
    """Storage contract for experiences; durable backends implement the same methods."""

    @abc.abstractmethod
    def add(self, experience: Experience) -> None:
        """Store an experience, evicting the lowest-priority entry when full."""

    @abc.abstractmethod
    def sample(self, count: int = 10, min_priority: Optional[float] = None) -> List[Experience]:
        """Return up to ``count`` experiences biased towards high priority."""

    @abc.abstractmethod
    def get_all(self) -> List[Experience]:
        ...

    @abc.abstractmethod
    def get_by_agent_id(self, agent_id: str) -> List[Experience]:
        ...

    @abc.abstractmethod
    def get_high_priority_experiences(self, threshold: Optional[float] = None) -> List[Experience]:
        ...

    @abc.abstractmethod
    def size(self) -> int:
        ...

    @abc.abstractmethod
    def clear(self) -> None:
        ...

    def __len__(self) -> int:
        return self.size()


class MemoryReplayBuffer(ReplayBuffer):
    """In-memory buffer kept sorted by descending priority.

    Entries with equal priority stay in insertion order. When the buffer
    overflows, the earliest-inserted entry among those tied for the lowest
    priority is evicted.
    """

    def __init__(
        self,
        max_size: int = 1000,
        priority_threshold: float = 0.7,
        *,
        exploitation_ratio: float = 0.7,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if not 0.0 <= exploitation_ratio <= 1.0:
            raise ValueError("exploitation_ratio must be within [0, 1]")
        self.max_size = max_size
        self.priority_threshold = priority_threshold
        self.exploitation_ratio = exploitation_ratio
        self._rng = rng or random.Random()
        self._sequence = itertools.count()
        # (-priority, insertion sequence, experience), ascending.
        self._entries: List[Tuple[float, int, Experience]] = []

    def add(self, experience: Experience) -> None:
        bisect.insort(self._entries, (-experience.priority, next(self._sequence), experience))
        if len(self._entries) > self.max_size:
            evicted = self._evict_lowest()
            logger.debug(
                "Replay buffer full, evicted %s (priority %.2f)",
                evicted.experience_id,
                evicted.priority,
            )

    def _evict_lowest(self) -> Experience:
        lowest_key = self._entries[-1][0]
        index = bisect.bisect_left(self._entries, (lowest_key, -1))
        return self._entries.pop(index)[2]

    def sample(self, count: int = 10, min_priority: Optional[float] = None) -> List[Experience]:
        if count <= 0 or not self._entries:
            return []

        eligible = [entry[2] for entry in self._entries]
        if min_priority is not None:
            eligible = [exp for exp in eligible if exp.priority >= min_priority]
        if len(eligible) <= count:
            return eligible

        top_count = min(count, math.ceil(self.exploitation_ratio * count))
        result = eligible[:top_count]
        result.extend(self._rng.sample(eligible[top_count:], count - top_count))
        return result

    def get_all(self) -> List[Experience]:
        return [entry[2] for entry in self._entries]

    def get_by_agent_id(self, agent_id: str) -> List[Experience]:
        return [entry[2] for entry in self._entries if entry[2].agent_id == agent_id]

    def get_high_priority_experiences(self, threshold: Optional[float] = None) -> List[Experience]:
        if threshold is None:
            threshold = self.priority_threshold
        return [entry[2] for entry in self._entries if entry[2].priority >= threshold]

    def size(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> dict:
        priorities = [-entry[0] for entry in self._entries]
        return {
            "size": len(priorities),
            "maxSize": self.max_size,
            "highPriorityCount": sum(1 for p in priorities if p >= self.priority_threshold),
            "meanPriority": sum(priorities) / len(priorities) if priorities else 0.0,
        }


def create_replay_buffer(
    config: ReplayBufferConfig, *, rng: Optional[random.Random] = None
) -> ReplayBuffer:
    """Build the buffer named by ``config.type``.

    Only the in-memory backend ships with the core; other types log a warning
    and fall back to memory.
    """
    if config.type != "memory":
        logger.warning(
            "Replay buffer type %r is not available in the core, using in-memory buffer",
            config.type,
        )
    return MemoryReplayBuffer(
        max_size=config.max_size,
        priority_threshold=config.priority_threshold,
        exploitation_ratio=config.exploitation_ratio,
        rng=rng,
    )
