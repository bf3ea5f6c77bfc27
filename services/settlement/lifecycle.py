"""Convergence point for every way a session can end.

Explicit API calls, media-server `session-ended` events, the disconnect grace
timer, the heartbeat sweep and the client "already ended on ledger" notice all
go through `SessionLifecycle.end_session`: terminate, notify, forget.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from packages.schemas.session import TerminationContext, TerminationResult

from .errors import SessionNotFound, SettlementError
from .liveness import LivenessMonitor, LivenessTable
from .notifier import NotificationFanout
from .terminator import SessionTerminator

log = logging.getLogger("tutorlink.settlement.lifecycle")

SYSTEM_ACTOR = "system"


class SessionLifecycle:
    def __init__(
        self,
        terminator: SessionTerminator,
        notifier: NotificationFanout,
        *,
        table: Optional[LivenessTable] = None,
        grace_period: float = 30.0,
        sweep_interval: float = 60.0,
        stale_after: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.terminator = terminator
        self.notifier = notifier
        self.monitor = LivenessMonitor(
            table or LivenessTable(),
            self._auto_terminate,
            grace_period=grace_period,
            sweep_interval=sweep_interval,
            stale_after=stale_after,
            clock=clock,
        )

    async def end_session(
        self,
        session_id: str,
        initiated_by: Optional[str] = None,
        context: Optional[TerminationContext] = None,
    ) -> TerminationResult:
        """Terminate, notify both participants, and drop liveness state.

        Raises:
            SessionNotFound: the session was never registered or already ended.
            LedgerTerminationFailed: the ledger write failed; retry later.
        """
        result = await self.terminator.terminate(session_id, initiated_by, context)
        report = await self.notifier.notify(result.summary)
        if report.failed:
            log.info(
                "session %s: direct delivery missed %s; broadcast reached %d channel(s)",
                session_id, ",".join(report.failed), report.broadcast_count,
            )
        self.monitor.forget(session_id)
        return result

    async def ledger_already_ended(self, session_id: str, initiated_by: Optional[str] = None) -> Optional[TerminationResult]:
        """A client observed the ledger session ending; settle our side.

        Returns None when the session was already settled here.
        """
        ctx = TerminationContext(
            source="client",
            trigger="ledger-notice",
            reason="ended-on-ledger",
            ledger_already_ended=True,
        )
        try:
            return await self.end_session(session_id, initiated_by or SYSTEM_ACTOR, ctx)
        except SessionNotFound:
            log.info("ledger notice for %s: already settled", session_id)
            self.monitor.forget(session_id)
            return None

    async def _auto_terminate(self, session_id: str, reason: str, context: Dict[str, Any]) -> bool:
        """Termination callback for the liveness monitor.

        True means there is nothing left to retry (ended now or earlier).
        """
        ctx = TerminationContext.model_validate({**context, "source": "liveness-monitor", "reason": reason})
        try:
            await self.end_session(session_id, SYSTEM_ACTOR, ctx)
        except SessionNotFound:
            log.info("auto-termination of %s skipped: no longer registered", session_id)
            return True
        except SettlementError as e:
            log.error("auto-termination of %s (%s) failed: %s (%s)", session_id, reason, e.message, e.details)
            return False
        return True

    def start(self) -> None:
        self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()
