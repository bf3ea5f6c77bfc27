"""Ledger gateway: fallback policy, idempotent endSession, cached registrations.

The gateway is the only component that talks to the `LedgerClient`. Reads
fail soft (None / placeholder) when fallback is allowed and raise
`LedgerUnavailable` otherwise. Placeholder registrations are flagged with
`mock_data` and never cached; the registration cache is flushed the first
time a ledger read succeeds after a failure.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from adapters.base import LedgerClient
from core.utils.units import parse_units
from orchestration.service_mesh_hooks import HealthTracker
from packages.schemas.session import LedgerReceipt, LedgerSessionRecord, StudentInfo, TutorInfo
from storage.redis_cache import ReadThroughCache

from . import metrics
from .errors import LedgerUnavailable

log = logging.getLogger("tutorlink.settlement.gateway")

REGISTRATION_NS = "registration"
# Placeholder rate shown for tutors while the ledger is unreachable.
FALLBACK_RATE = "0.001"


def _not_fallback(data: Dict[str, Any]) -> bool:
    return not data.get("mockData", False)


class LedgerGateway:
    """Policy layer in front of the escrow ledger."""

    def __init__(
        self,
        client: Optional[LedgerClient],
        cache: Optional[ReadThroughCache] = None,
        *,
        allow_fallback: bool = True,
        token_decimals: int = 6,
        registration_ttl: Optional[int] = None,
    ) -> None:
        """
        Args:
            client: Remote ledger adapter; None when no contract is configured.
            cache: Registration read-through cache; None disables caching.
            allow_fallback: Serve placeholders instead of raising on ledger failure.
            token_decimals: Decimal precision of the settlement token.
            registration_ttl: Optional TTL override for cached registrations.
        """
        self._client = client
        self._cache = cache
        self.allow_fallback = allow_fallback
        self.token_decimals = token_decimals
        self._registration_ttl = registration_ttl
        self.health = HealthTracker(name="ledger-reads")

    # ------------------------------------------------------------------ status

    def status(self) -> Dict[str, Any]:
        if self._client is not None:
            mode = "ledger"
        else:
            mode = "fallback-only" if self.allow_fallback else "unavailable"
        return {
            "contract": self._client is not None,
            "signer": bool(self._client and self._client.can_write),
            "fallback": self.allow_fallback,
            "healthy": self.health.healthy,
            "mode": mode,
        }

    # ----------------------------------------------------------------- health

    async def _read_succeeded(self) -> None:
        if self.health.record_success() and self._cache is not None:
            removed = await self._cache.flush(REGISTRATION_NS)
            metrics.cache_flushes_total.inc()
            log.info("ledger reads recovered; flushed %d cached registrations", removed)

    def _read_failed(self, operation: str, exc: BaseException) -> None:
        self.health.record_failure()
        metrics.mark_read_failure(operation)
        log.warning("ledger %s failed: %s", operation, exc)

    def _no_contract(self, operation: str) -> None:
        if not self.allow_fallback:
            raise LedgerUnavailable(f"ledger contract not configured ({operation})")

    # ------------------------------------------------------------ session reads

    async def get_active_session(self, tutor_address: str, *, strict: bool = False) -> Optional[LedgerSessionRecord]:
        """Read the tutor's active-session slot. None when unknown under fallback.

        Args:
            tutor_address: Tutor wallet address.
            strict: Raise `LedgerUnavailable` on a failed read even when
                fallback is allowed, so callers can tell "read failed" from
                "no slot". Without a contract there is nothing to read and
                None is returned as usual.
        """
        if self._client is None:
            self._no_contract("active_session")
            metrics.mark_fallback("active_session")
            return None
        try:
            record = await self._client.active_session(tutor_address.lower())
        except Exception as e:
            self._read_failed("active_session", e)
            if strict or not self.allow_fallback:
                raise LedgerUnavailable("failed to read active session", details=str(e)) from e
            metrics.mark_fallback("active_session")
            return None
        await self._read_succeeded()
        return record

    async def get_historical_session(self, ledger_session_id: int) -> Optional[LedgerSessionRecord]:
        """Read a finished session and attach `duration_seconds`."""
        if self._client is None:
            self._no_contract("session_history")
            metrics.mark_fallback("session_history")
            return None
        try:
            record = await self._client.session_history(int(ledger_session_id))
        except Exception as e:
            self._read_failed("session_history", e)
            if not self.allow_fallback:
                raise LedgerUnavailable("failed to read session history", details=str(e)) from e
            metrics.mark_fallback("session_history")
            return None
        await self._read_succeeded()
        return record.with_duration() if record is not None else None

    # ------------------------------------------------------------------ write

    async def _is_inactive(self, tutor_address: str) -> Optional[bool]:
        """True/False from a fresh read; None when the read itself failed."""
        try:
            record = await self._client.active_session(tutor_address)
        except Exception as e:
            self._read_failed("active_session", e)
            return None
        await self._read_succeeded()
        return record is None or not record.is_active

    async def end_session(self, tutor_address: str) -> LedgerReceipt:
        """End the tutor's active ledger session.

        Ending an already-inactive session is a successful no-op. Without a
        writable client a mock receipt is returned when fallback is allowed.

        Raises:
            LedgerUnavailable: no writable client and fallback disabled.
            Exception: whatever the client raised when the submission failed
                and the ledger still reports the session active.
        """
        tutor = tutor_address.lower()
        if self._client is None or not self._client.can_write:
            if not self.allow_fallback:
                raise LedgerUnavailable("ledger signer not configured; cannot end session")
            metrics.mark_fallback("end_session")
            log.warning("mock endSession for tutor=%s (no signer/contract)", tutor)
            return LedgerReceipt(mock=True, confirmed=False)

        if await self._is_inactive(tutor):
            log.info("endSession skipped: tutor=%s has no active ledger session", tutor)
            return LedgerReceipt(noop=True, confirmed=True)

        try:
            receipt = await self._client.end_session(tutor)
        except Exception as e:
            # A racing termination may have ended it between our read and the submit.
            if await self._is_inactive(tutor):
                log.info("endSession for tutor=%s failed (%s) but ledger shows it ended", tutor, e)
                return LedgerReceipt(noop=True, confirmed=True)
            raise
        log.info("endSession confirmed tutor=%s tx=%s", tutor, receipt.tx_hash)
        return receipt

    # ----------------------------------------------------------- registrations

    async def _fetch_tutor(self, address: str) -> Dict[str, Any]:
        if self._client is not None:
            try:
                info = await self._client.tutor_info(address)
            except Exception as e:
                self._read_failed("tutor_info", e)
                if not self.allow_fallback:
                    raise LedgerUnavailable("failed to fetch tutor information", details=str(e)) from e
            else:
                await self._read_succeeded()
                return info.to_wire()
        else:
            self._no_contract("tutor_info")
        metrics.mark_fallback("tutor_info")
        return TutorInfo(
            address=address,
            name=f"MockTutor_{address[-4:] or '0000'}",
            languages=["english", "spanish"],
            rate_per_second_wei=parse_units(FALLBACK_RATE, self.token_decimals),
            is_registered=True,
            mock_data=True,
        ).to_wire()

    async def _fetch_student(self, address: str) -> Dict[str, Any]:
        if self._client is not None:
            try:
                info = await self._client.student_info(address)
            except Exception as e:
                self._read_failed("student_info", e)
                if not self.allow_fallback:
                    raise LedgerUnavailable("failed to fetch student information", details=str(e)) from e
            else:
                await self._read_succeeded()
                return info.to_wire()
        else:
            self._no_contract("student_info")
        metrics.mark_fallback("student_info")
        return StudentInfo(
            address=address,
            name=f"MockStudent_{address[-4:] or '0000'}",
            is_registered=True,
            mock_data=True,
        ).to_wire()

    async def get_tutor_info(self, address: str) -> TutorInfo:
        addr = address.strip().lower()
        if self._cache is None:
            return TutorInfo.model_validate(await self._fetch_tutor(addr))
        data = await self._cache.get_or_fetch(
            REGISTRATION_NS, f"tutor:{addr}", lambda: self._fetch_tutor(addr),
            should_cache=_not_fallback, ttl_sec=self._registration_ttl,
        )
        return TutorInfo.model_validate(data)

    async def get_student_info(self, address: str) -> StudentInfo:
        addr = address.strip().lower()
        if self._cache is None:
            return StudentInfo.model_validate(await self._fetch_student(addr))
        data = await self._cache.get_or_fetch(
            REGISTRATION_NS, f"student:{addr}", lambda: self._fetch_student(addr),
            should_cache=_not_fallback, ttl_sec=self._registration_ttl,
        )
        return StudentInfo.model_validate(data)

    async def invalidate_registration(self, address: str) -> None:
        """Forget cached tutor and student registration for an address."""
        if self._cache is None:
            return
        addr = address.strip().lower()
        await self._cache.invalidate(REGISTRATION_NS, f"tutor:{addr}")
        await self._cache.invalidate(REGISTRATION_NS, f"student:{addr}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
