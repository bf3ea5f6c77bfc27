"""
orchestration/service_mesh_hooks.py

Resilience utilities for calls to remote collaborators (ledger RPC, redis):
- Health tracking with an unhealthy -> healthy transition signal
- Fixed-budget async polling (never blocks indefinitely)

These primitives are framework-agnostic; the ledger gateway and the session
terminator wire them in.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

R = TypeVar("R")

log = logging.getLogger("tutorlink.orchestration.hooks")


@dataclass
class HealthTracker:
    """Last-known health of one read path.

    Unlike a circuit breaker this never blocks calls; it only reports when a
    path that was failing starts succeeding again, so callers can discard
    anything they cached while it was down.

    Attributes:
        name: Read path label used in logs.
    """
    name: str = "default"
    _healthy: bool = field(default=True, init=False)
    _failures: int = field(default=0, init=False)
    _last_change: float = field(default_factory=time.time, init=False)

    @property
    def healthy(self) -> bool:
        return self._healthy

    def record_success(self) -> bool:
        """Record a successful call.

        Returns:
            True if this success ends a failure streak (unhealthy -> healthy).
        """
        recovered = not self._healthy
        self._failures = 0
        if recovered:
            self._healthy = True
            self._last_change = time.time()
            log.info("%s recovered after outage", self.name)
        return recovered

    def record_failure(self) -> None:
        """Record a failed call and mark the path unhealthy."""
        self._failures += 1
        if self._healthy:
            self._healthy = False
            self._last_change = time.time()
            log.warning("%s marked unhealthy", self.name)

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "healthy": self._healthy,
            "consecutive_failures": self._failures,
            "since": round(self._last_change, 3),
        }


@dataclass
class PollConfig:
    """Fixed attempt budget for `poll_until`.

    Attributes:
        attempts: Maximum number of checks (including the first).
        interval: Delay between checks (seconds).
    """
    attempts: int = 5
    interval: float = 1.0


async def poll_until(
    check: Callable[[], Awaitable[R]],
    done: Callable[[R], bool],
    config: PollConfig,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[R]:
    """Call `check` until `done(result)` or the attempt budget runs out.

    Exceptions from `check` count as a failed attempt and polling continues.

    Args:
        check: Zero-arg coroutine function returning the observed state.
        done: Predicate deciding whether the observed state is final.
        config: Attempt budget and spacing.
        sleep: Awaitable sleep (injectable for tests).

    Returns:
        The first result accepted by `done`, or None if the budget was exhausted.
    """
    for attempt in range(1, config.attempts + 1):
        try:
            result = await check()
        except Exception as e:
            log.warning("poll attempt %s/%s failed: %s", attempt, config.attempts, e)
        else:
            if done(result):
                return result
        if attempt < config.attempts:
            await sleep(config.interval)
    return None
