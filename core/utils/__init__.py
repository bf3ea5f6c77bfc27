"""
Utility helpers for Tutorlink.

Small, reusable helpers (time, fixed-point amounts) shared by the registry,
the ledger gateway, and the settlement service.
"""
