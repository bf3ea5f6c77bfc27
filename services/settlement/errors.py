"""Error taxonomy for session settlement.

Only `SessionNotFound`, `LedgerTerminationFailed` and `LedgerUnavailable` are
ever surfaced to callers; the rest are absorbed where they occur and logged.
"""

from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base class; `status_code` is the HTTP status the API answers with."""

    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        payload = {"success": False, "error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class SessionNotFound(SettlementError):
    """No registry mapping for the session id. Terminal, never retried."""

    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is not active")
        self.session_id = session_id


class LedgerTerminationFailed(SettlementError):
    """The endSession write failed; the mapping is kept so a retry can find it."""

    status_code = 502

    def __init__(self, session_id: str, details: Optional[str] = None) -> None:
        super().__init__(
            "Failed to end ledger session; it may still be chargeable, retry termination",
            details=details,
        )
        self.session_id = session_id


class LedgerUnavailable(SettlementError):
    """A ledger call failed while placeholder fallback is disabled."""

    status_code = 503


class EnrichmentUnavailable(SettlementError):
    """Best-effort ledger read failed; callers fall back to estimates."""


class NotificationDeliveryFailed(SettlementError):
    """A participant could not be reached over its real-time channel."""
