"""Per-IP lifecycle state machine.

    unknown, allowed, monitored,
    under_review, released        -> allowed | monitored | under_review | blocked
    blocked                       -> released

Re-entering the current state is a no-op. Any other transition out of
``blocked`` raises ``InvalidStateTransition``.
"""

import logging
from typing import Dict, List, Optional

from ip_risk_shield.concurrency import StripedLock
from ip_risk_shield.exceptions import InvalidStateTransition
from ip_risk_shield.models import IPState

logger = logging.getLogger(__name__)

_OPEN_TARGETS = frozenset({IPState.ALLOWED, IPState.MONITORED, IPState.UNDER_REVIEW, IPState.BLOCKED})

TRANSITIONS = {
    IPState.UNKNOWN: _OPEN_TARGETS,
    IPState.ALLOWED: _OPEN_TARGETS,
    IPState.MONITORED: _OPEN_TARGETS,
    IPState.UNDER_REVIEW: _OPEN_TARGETS,
    IPState.RELEASED: _OPEN_TARGETS,
    IPState.BLOCKED: frozenset({IPState.RELEASED}),
}


class IPStateMachine:
    """Thread-safe store of the lifecycle state of every known IP."""

    def __init__(self, stripes: int = 64):
        self._locks = StripedLock(stripes)
        self._shards: List[Dict[str, IPState]] = [{} for _ in range(stripes)]

    def get(self, ip: str) -> IPState:
        index = self._locks.index(ip)
        with self._locks.at(index):
            return self._shards[index].get(ip, IPState.UNKNOWN)

    def can_transition(self, current: IPState, target: IPState) -> bool:
        return current == target or target in TRANSITIONS[current]

    def transition(self, ip: str, target: IPState) -> IPState:
        """Move an IP to ``target``; returns the previous state."""
        index = self._locks.index(ip)
        with self._locks.at(index):
            current = self._shards[index].get(ip, IPState.UNKNOWN)
            if not self.can_transition(current, target):
                raise InvalidStateTransition(ip, current.value, target.value)
            self._shards[index][ip] = target
        if current != target:
            logger.debug(f"{ip}: {current.value} -> {target.value}")
        return current

    def count(self, state: IPState) -> int:
        total = 0
        for index, shard in enumerate(self._shards):
            with self._locks.at(index):
                total += sum(1 for value in shard.values() if value == state)
        return total

    def forget(self, ip: str) -> Optional[IPState]:
        """Drop a non-blocked IP from tracking."""
        index = self._locks.index(ip)
        with self._locks.at(index):
            if self._shards[index].get(ip) == IPState.BLOCKED:
                return None
            return self._shards[index].pop(ip, None)

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)
