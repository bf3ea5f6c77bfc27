"""Fan-out of `session-ended` events to both participants.

Three layers, each best-effort: direct address lookup, a scan of all open
channels, and an unconditional broadcast tagged with both addresses so that
clients can filter (and deduplicate by session id) themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from orchestration.ws_hub import ChannelHub
from packages.schemas.session import SettlementSummary

from . import metrics
from .errors import NotificationDeliveryFailed

log = logging.getLogger("tutorlink.settlement.notifier")

EVENT_SESSION_ENDED = "session-ended"


@dataclass
class DeliveryReport:
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    broadcast_count: int = 0


def build_event(summary: SettlementSummary, role: str) -> Dict[str, Any]:
    """Per-recipient payload: tutors see `earnings`, students see `cost` (same value)."""
    data = summary.to_wire()
    data["role"] = role
    if role == "tutor":
        data["earnings"] = summary.cost_formatted
    elif role == "student":
        data["cost"] = summary.cost_formatted
    return {"type": EVENT_SESSION_ENDED, "data": data}


class NotificationFanout:
    def __init__(self, hub: ChannelHub) -> None:
        self._hub = hub

    async def _deliver(self, summary: SettlementSummary, role: str, address: str) -> None:
        event = build_event(summary, role)
        channel, path = self._hub.resolve(address)
        if channel is None:
            metrics.mark_notification(path, "unresolved")
            raise NotificationDeliveryFailed(f"no open channel for {role} {address}")
        try:
            await self._hub.send(channel, event)
        except Exception as e:
            metrics.mark_notification(path, "error")
            raise NotificationDeliveryFailed(f"send to {role} {address} failed", details=str(e)) from e
        metrics.mark_notification(path, "ok")

    async def notify(self, summary: SettlementSummary) -> DeliveryReport:
        """Deliver the settlement to tutor and student, then broadcast it.

        Never raises; failures are logged and reported.
        """
        report = DeliveryReport()
        for role, address in (("tutor", summary.tutor_address), ("student", summary.student_address)):
            try:
                await self._deliver(summary, role, address)
                report.delivered.append(role)
            except NotificationDeliveryFailed as e:
                report.failed.append(role)
                log.warning("session %s: %s (%s)", summary.session_id, e.message, e.details or "no channel")

        broadcast = build_event(summary, "broadcast")
        broadcast["data"]["targets"] = [summary.tutor_address, summary.student_address]
        try:
            report.broadcast_count = await self._hub.broadcast(broadcast)
            metrics.mark_notification("broadcast", "ok")
        except Exception as e:
            metrics.mark_notification("broadcast", "error")
            log.error("session %s: broadcast failed: %s", summary.session_id, e)
        return report
