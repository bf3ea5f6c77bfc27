"""Session termination: the single writer of "session ended" state.

`SessionTerminator.terminate` reconciles the registry mapping with the ledger,
ends the ledger session, works out the final duration and cost from the best
source available, clears the mapping, and returns the settlement summary.

Only the ledger write (step 4) may fail the call. Every other read is
best-effort and degrades the summary (estimated cost, unknown ledger id)
instead of blocking settlement.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from core.utils.time_utils import now_s, to_iso_utc
from core.utils.units import format_units
from orchestration.service_mesh_hooks import PollConfig, poll_until
from packages.common.logging import set_session_id
from packages.schemas.session import (
    LedgerReceipt,
    LedgerSessionRecord,
    SessionMapping,
    SettlementSummary,
    TerminationContext,
    TerminationResult,
)
from storage.session_registry import SessionRegistry

from . import metrics
from .errors import EnrichmentUnavailable, LedgerTerminationFailed, SessionNotFound
from .gateway import LedgerGateway

log = logging.getLogger("tutorlink.settlement.terminator")


def compute_duration(
    ledger_duration: Optional[int],
    reported_duration: Optional[int],
    start_time: Optional[float],
    now: float,
) -> int:
    """Ledger duration, else the caller's, else elapsed since start; at least 1 s."""
    candidates = (ledger_duration, reported_duration)
    for value in candidates:
        if value:
            return max(1, int(value))
    started = start_time or now
    return max(1, int(now - started))


def compute_cost(duration_seconds: int, *rates: Optional[int]) -> int:
    """`duration * rate` using the first positive rate (0 when none is known)."""
    rate = next((int(r) for r in rates if r), 0)
    return max(0, int(duration_seconds)) * rate


class SessionTerminator:
    """Ends a tutoring session exactly as far as the ledger allows."""

    def __init__(
        self,
        registry: SessionRegistry,
        gateway: LedgerGateway,
        *,
        currency_code: str = "PYUSD",
        verify: Optional[PollConfig] = None,
        clock: Callable[[], float] = now_s,
    ) -> None:
        self._registry = registry
        self._gateway = gateway
        self._currency = currency_code
        self._verify = verify or PollConfig()
        self._clock = clock

    async def verify_ledger_ended(self, tutor_address: str) -> bool:
        """Poll the tutor's active slot until it reads inactive.

        Read errors count as "not yet" and use up an attempt. Returns False
        when the attempt budget is exhausted; callers proceed anyway rather
        than block on the chain.
        """
        async def _slot_inactive() -> bool:
            record = await self._gateway.get_active_session(tutor_address, strict=True)
            return record is None or not record.is_active

        confirmed = await poll_until(_slot_inactive, bool, self._verify)
        return bool(confirmed)

    async def _read_active(self, mapping: SessionMapping) -> Optional[LedgerSessionRecord]:
        try:
            return await self._gateway.get_active_session(mapping.tutor_address)
        except Exception as e:
            err = EnrichmentUnavailable("active session read failed", details=str(e))
            log.warning("%s for %s: %s", err.message, mapping.session_id, err.details)
            return None

    async def _read_history(self, session_id: str, ledger_session_id: int) -> Optional[LedgerSessionRecord]:
        try:
            return await self._gateway.get_historical_session(ledger_session_id)
        except Exception as e:
            err = EnrichmentUnavailable("session history read failed", details=str(e))
            log.warning("%s for %s (ledger id %s): %s", err.message, session_id, ledger_session_id, err.details)
            return None

    async def terminate(
        self,
        session_id: str,
        initiated_by: Optional[str] = None,
        context: Optional[TerminationContext] = None,
    ) -> TerminationResult:
        """End `session_id` and return its settlement.

        Args:
            session_id: Registry session id.
            initiated_by: Address or actor ("system") that asked for the end.
            context: What the initiating surface knows (duration, rate, ...).

        Returns:
            TerminationResult with the immutable SettlementSummary and receipt.

        Raises:
            SessionNotFound: no mapping; nothing was touched.
            LedgerTerminationFailed: endSession failed; the mapping is kept.
        """
        ctx = context or TerminationContext()
        trigger = ctx.trigger or ctx.source or "unknown"
        started = time.perf_counter()
        set_session_id(session_id)
        try:
            result = await self._terminate(session_id, initiated_by, ctx)
        except SessionNotFound:
            metrics.mark_termination(trigger, "not_found")
            raise
        except LedgerTerminationFailed:
            metrics.mark_termination(trigger, "ledger_failed")
            raise
        finally:
            set_session_id(None)
        metrics.termination_seconds.observe(time.perf_counter() - started)
        metrics.mark_termination(trigger, "noop" if result.transaction.noop else "ended")
        return result

    async def _terminate(
        self,
        session_id: str,
        initiated_by: Optional[str],
        ctx: TerminationContext,
    ) -> TerminationResult:
        # 1. registry lookup
        mapping = await self._registry.get(session_id)
        if mapping is None:
            raise SessionNotFound(session_id)
        tutor = mapping.tutor_address

        # 2-3. best-effort: learn the ledger-assigned id while the slot is still active
        active = await self._read_active(mapping)
        ledger_session_id: Optional[int] = None
        if active is not None and active.is_active:
            ledger_session_id = active.ledger_session_id

        if ctx.ledger_already_ended and not ctx.ledger_verified:
            if not await self.verify_ledger_ended(tutor):
                log.warning(
                    "ledger still reports %s active after %d checks; likely a pending tx, proceeding",
                    session_id, self._verify.attempts,
                )

        # 4. authoritative state change
        try:
            receipt = await self._gateway.end_session(tutor)
        except Exception as e:
            log.error("endSession failed for %s (tutor=%s): %s", session_id, tutor, e)
            raise LedgerTerminationFailed(session_id, details=str(e)) from e

        # 5. best-effort: authoritative totals
        history: Optional[LedgerSessionRecord] = None
        if ledger_session_id is not None:
            history = await self._read_history(session_id, ledger_session_id)

        # 6-7. duration and cost
        now = self._clock()
        duration = compute_duration(
            history.duration_seconds if history else None,
            ctx.duration_seconds,
            mapping.start_time,
            now,
        )
        if history is not None and history.total_paid_wei > 0:
            cost = history.total_paid_wei
            cost_source = "ledger"
        else:
            cost = compute_cost(
                duration,
                ctx.rate_per_second_wei,
                ctx.estimated_rate_per_second_wei,
                active.rate_per_second_wei if active else None,
            )
            cost_source = "estimated"
        metrics.mark_cost_source(cost_source)

        # 8. cleanup; the ledger already moved, so a failure here is only logged
        try:
            await self._registry.delete(session_id)
        except Exception as e:
            log.error("failed to remove mapping %s after termination: %s", session_id, e)

        # 9-10. summary
        summary = SettlementSummary(
            session_id=session_id,
            ledger_session_id=history.ledger_session_id if history else ledger_session_id,
            tutor_address=tutor,
            student_address=mapping.student_address,
            language_id=mapping.language_id,
            duration_seconds=duration,
            cost_minor_units=cost,
            cost_formatted=format_units(cost, self._gateway.token_decimals),
            currency_code=self._currency,
            ended_at_iso=to_iso_utc(now),
            initiated_by=initiated_by,
            metadata=self._metadata(ctx, receipt, cost_source),
        )
        log.info(
            "session %s settled: duration=%ss cost=%s %s (%s, tx=%s)",
            session_id, duration, summary.cost_formatted, self._currency, cost_source,
            receipt.tx_hash or ("noop" if receipt.noop else "mock"),
        )
        return TerminationResult(success=True, summary=summary, transaction=receipt)

    @staticmethod
    def _metadata(ctx: TerminationContext, receipt: LedgerReceipt, cost_source: str) -> Dict[str, Any]:
        meta = ctx.metadata()
        meta["onChain"] = not receipt.mock
        meta["noop"] = receipt.noop
        meta["costSource"] = cost_source
        return meta
