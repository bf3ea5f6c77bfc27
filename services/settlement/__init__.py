# services/settlement/__init__.py
"""Session settlement service: lifecycle, ledger settlement, liveness, and notifications."""

__all__ = ["app", "errors", "gateway", "lifecycle", "liveness", "metrics", "notifier", "routes", "terminator"]
