from __future__ import annotations

from typing import Optional

from packages.schemas.session import LedgerReceipt, LedgerSessionRecord, StudentInfo, TutorInfo


class LedgerClient:
    """Base adapter interface for the escrow ledger.

    Every call is a remote round-trip and may raise; policy (fallback,
    caching, idempotence) lives in the gateway, not here.
    """

    @property
    def can_write(self) -> bool:
        """True when a signer is attached and `end_session` may be called."""
        return False

    async def active_session(self, tutor_address: str) -> Optional[LedgerSessionRecord]:
        """Return the tutor's active-session slot (possibly inactive), or None."""
        raise NotImplementedError

    async def session_history(self, ledger_session_id: int) -> Optional[LedgerSessionRecord]:
        """Return a finished session by its ledger-assigned id, or None."""
        raise NotImplementedError

    async def end_session(self, tutor_address: str) -> LedgerReceipt:
        """Submit endSession for the tutor and wait for confirmation."""
        raise NotImplementedError

    async def tutor_info(self, address: str) -> TutorInfo:
        """Read the tutor's registration."""
        raise NotImplementedError

    async def student_info(self, address: str) -> StudentInfo:
        """Read the student's registration."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
