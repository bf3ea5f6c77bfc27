"""Participant presence tracking and automatic termination triggers.

The monitor only decides *when* a session should end; ending it is delegated
to the `terminate` callable it is given (the session lifecycle). Two triggers:

- the last participant disconnects and nobody returns within the grace period;
- no liveness signal arrives for longer than the staleness threshold.

Both re-check their condition when they fire, since the session may have
recovered while the timer was pending.

The table is process-local and rebuilt from events after a restart; only the
timers depend on it, settlement correctness does not.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set

from . import metrics

log = logging.getLogger("tutorlink.settlement.liveness")

REASON_ALL_DISCONNECTED = "all-users-disconnected"
REASON_HEARTBEAT_TIMEOUT = "heartbeat-timeout"

TerminateFn = Callable[[str, str, Dict[str, Any]], Awaitable[bool]]


@dataclass
class LivenessEntry:
    start_time: float
    last_signal_time: float
    roles: Set[str] = field(default_factory=set)
    terminating: bool = False


class LivenessTable:
    """sessionId -> LivenessEntry. Swap for a shared store when running multiple processes."""

    def __init__(self) -> None:
        self._entries: Dict[str, LivenessEntry] = {}

    def get(self, session_id: str) -> Optional[LivenessEntry]:
        return self._entries.get(session_id)

    def ensure(self, session_id: str, now: float) -> LivenessEntry:
        entry = self._entries.get(session_id)
        if entry is None:
            entry = LivenessEntry(start_time=now, last_signal_time=now)
            self._entries[session_id] = entry
        return entry

    def remove(self, session_id: str) -> Optional[LivenessEntry]:
        return self._entries.pop(session_id, None)

    def items(self) -> Iterator[tuple[str, LivenessEntry]]:
        return iter(list(self._entries.items()))

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class LivenessMonitor:
    """Grace-period and heartbeat-staleness triggers over a `LivenessTable`."""

    def __init__(
        self,
        table: LivenessTable,
        terminate: TerminateFn,
        *,
        grace_period: float = 30.0,
        sweep_interval: float = 60.0,
        stale_after: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            table: Presence state (injected so it can be replaced).
            terminate: `(session_id, reason, context) -> bool`; True when the
                session was ended (the entry is then forgotten).
            grace_period: Seconds to wait after the last participant leaves.
            sweep_interval: Seconds between staleness sweeps.
            stale_after: Seconds without a signal before a session is stale.
            clock: Wall clock in epoch seconds.
        """
        self.table = table
        self._terminate = terminate
        self.grace_period = grace_period
        self.sweep_interval = sweep_interval
        self.stale_after = stale_after
        self._clock = clock
        self._grace_timers: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # --------------------------------------------------------------- events

    def participant_connected(self, session_id: str, role: str) -> None:
        entry = self.table.ensure(session_id, self._clock())
        entry.roles.add(role)
        entry.last_signal_time = self._clock()
        if self._cancel_grace(session_id):
            log.info("%s reconnected to %s; grace timer cancelled", role, session_id)
        metrics.set_live_sessions(len(self.table))
        log.info("%s connected to %s (%d present)", role, session_id, len(entry.roles))

    def liveness_signal(self, session_id: str) -> None:
        entry = self.table.get(session_id)
        if entry is None:
            log.debug("signal for untracked session %s", session_id)
            return
        entry.last_signal_time = self._clock()

    def participant_disconnected(self, session_id: str, role: str, reason: Optional[str] = None) -> None:
        entry = self.table.get(session_id)
        if entry is None:
            log.info("disconnect for untracked session %s", session_id)
            return
        entry.roles.discard(role)
        log.info("%s left %s (reason=%s, %d present)", role, session_id, reason, len(entry.roles))
        if not entry.roles:
            self._start_grace(session_id, reason)

    def forget(self, session_id: str) -> None:
        """Drop all state for a session that has been terminated."""
        self._cancel_grace(session_id)
        if self.table.remove(session_id) is not None:
            metrics.set_live_sessions(len(self.table))

    # ---------------------------------------------------------- grace timer

    def _cancel_grace(self, session_id: str) -> bool:
        task = self._grace_timers.pop(session_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def _start_grace(self, session_id: str, reason: Optional[str]) -> None:
        self._cancel_grace(session_id)
        log.info("all participants left %s; ending in %.0fs unless someone returns", session_id, self.grace_period)
        self._grace_timers[session_id] = asyncio.create_task(
            self._grace_expired(session_id, reason), name=f"grace:{session_id}"
        )

    async def _grace_expired(self, session_id: str, reason: Optional[str]) -> None:
        await asyncio.sleep(self.grace_period)
        if self._grace_timers.get(session_id) is asyncio.current_task():
            del self._grace_timers[session_id]
        entry = self.table.get(session_id)
        # Someone may have reconnected, or another path may have ended it.
        if entry is None or entry.roles or entry.terminating:
            return
        log.info("grace period expired for %s; terminating", session_id)
        await self._fire(session_id, entry, REASON_ALL_DISCONNECTED, {
            "trigger": "disconnect-grace-period",
            "disconnectReason": reason,
        })

    # ---------------------------------------------------------------- sweep

    def stale_sessions(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        return [
            sid for sid, entry in self.table.items()
            if not entry.terminating and now - entry.last_signal_time > self.stale_after
        ]

    async def sweep_once(self) -> List[str]:
        """Hand every stale session to `terminate`. Returns the ids fired."""
        fired = []
        for sid in self.stale_sessions():
            entry = self.table.get(sid)
            now = self._clock()
            # Re-check: a signal may have landed since the scan.
            if entry is None or entry.terminating or now - entry.last_signal_time <= self.stale_after:
                continue
            stale_for = now - entry.last_signal_time
            log.warning("session %s has stale liveness (%.0fs); terminating", sid, stale_for)
            self._spawn(self._fire(sid, entry, REASON_HEARTBEAT_TIMEOUT, {
                "trigger": "heartbeat-monitor",
                "lastSignalTime": entry.last_signal_time,
                "staleForSeconds": round(stale_for, 3),
            }))
            fired.append(sid)
        return fired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_once()
            except Exception:
                log.exception("liveness sweep failed")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _fire(self, session_id: str, entry: LivenessEntry, reason: str, context: Dict[str, Any]) -> None:
        entry.terminating = True
        try:
            ended = await self._terminate(session_id, reason, context)
        except Exception:
            log.exception("automatic termination of %s failed", session_id)
            ended = False
        if ended:
            self.forget(session_id)
        else:
            # Left in the table so the next sweep can retry.
            entry.terminating = False

    # ------------------------------------------------------------ lifecycle

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="liveness-sweep")

    async def stop(self) -> None:
        tasks = list(self._grace_timers.values()) + list(self._inflight)
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        self._grace_timers.clear()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            sid: {
                "startTime": e.start_time,
                "lastSignalTime": e.last_signal_time,
                "roles": sorted(e.roles),
                "terminating": e.terminating,
                "graceTimer": sid in self._grace_timers,
            }
            for sid, e in self.table.items()
        }
