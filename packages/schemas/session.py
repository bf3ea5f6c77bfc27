"""Schemas for tutoring sessions: registry mappings, ledger records, and settlement output.

Wire format is camelCase (JavaScript clients); attributes are snake_case.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model accepting and emitting camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _lower(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if isinstance(value, str) else value


class SessionMapping(WireModel):
    """Registry record linking a session id to its participants."""

    session_id: str = Field(min_length=1)
    student_address: str = Field(min_length=1)
    tutor_address: str = Field(min_length=1)
    language_id: int = 0
    start_time: int = Field(description="Epoch seconds")
    student_endpoint: Optional[str] = None
    tutor_endpoint: Optional[str] = None

    @field_validator("student_address", "tutor_address")
    @classmethod
    def _normalize_address(cls, v: str) -> str:
        return _lower(v)


class LedgerSessionRecord(WireModel):
    """Active or historical session as reported by the escrow ledger.

    Amounts are integer minor units of the settlement token.
    """

    student_address: str = ""
    tutor_address: str = ""
    token_address: str = ""
    start_time: int = 0
    end_time: int = 0
    rate_per_second_wei: int = 0
    total_paid_wei: int = 0
    language_id: int = 0
    ledger_session_id: int = 0
    is_active: bool = False
    duration_seconds: Optional[int] = None

    @field_validator("student_address", "tutor_address", "token_address")
    @classmethod
    def _normalize_address(cls, v: str) -> str:
        return _lower(v)

    @field_serializer("rate_per_second_wei", "total_paid_wei")
    def _wei_as_str(self, v: int) -> str:
        return str(v)

    def with_duration(self) -> "LedgerSessionRecord":
        """Return a copy carrying `duration_seconds = max(0, end - start)`."""
        return self.model_copy(update={"duration_seconds": max(0, self.end_time - self.start_time)})


class LedgerReceipt(WireModel):
    """Outcome of an endSession submission."""

    tx_hash: Optional[str] = None
    confirmed: bool = False
    block_number: Optional[int] = None
    mock: bool = False
    noop: bool = False


class TutorInfo(WireModel):
    address: str
    name: str = ""
    languages: list[str] = []
    rate_per_second_wei: int = 0
    total_sessions: int = 0
    rating: float = 0.0
    is_registered: bool = False
    mock_data: bool = False

    @field_serializer("rate_per_second_wei")
    def _wei_as_str(self, v: int) -> str:
        return str(v)


class StudentInfo(WireModel):
    address: str
    name: str = ""
    total_sessions: int = 0
    average_rating: float = 0.0
    is_registered: bool = False
    mock_data: bool = False


class TerminationContext(WireModel):
    """Facts the initiating surface knows about the session being ended."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    source: Optional[str] = None
    user_address: Optional[str] = None
    user_role: Optional[str] = None
    reason: Optional[str] = None
    trigger: Optional[str] = None
    duration_seconds: Optional[int] = None
    rate_per_second_wei: Optional[int] = None
    estimated_rate_per_second_wei: Optional[int] = None
    ledger_verified: bool = False
    ledger_already_ended: bool = False

    @field_validator("duration_seconds", mode="before")
    @classmethod
    def _coerce_duration(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError):
            return None

    @field_validator("rate_per_second_wei", "estimated_rate_per_second_wei", mode="before")
    @classmethod
    def _coerce_wei(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    def metadata(self) -> Dict[str, Any]:
        """Context as wire-format metadata, dropping unset fields."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SettlementSummary(WireModel):
    """Final duration and cost of a terminated session. Immutable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    session_id: str
    ledger_session_id: Optional[int] = None
    tutor_address: str
    student_address: str
    language_id: int
    duration_seconds: int = Field(ge=1)
    cost_minor_units: int = Field(ge=0)
    cost_formatted: str
    currency_code: str
    ended_at_iso: str
    initiated_by: Optional[str] = None
    metadata: Dict[str, Any] = {}

    @field_serializer("cost_minor_units")
    def _cost_as_str(self, v: int) -> str:
        return str(v)


class TerminationResult(WireModel):
    success: bool = True
    summary: SettlementSummary
    transaction: LedgerReceipt


class SessionEndRequest(WireModel):
    """Body of `POST /sessions/{id}/end`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    user_address: Optional[str] = None
    user_role: Optional[str] = None
    ended_by: Optional[str] = None
    reason: Optional[str] = None
    duration_seconds: Optional[Any] = None
    rate_per_second_wei: Optional[Any] = None
    estimated_rate_per_second_wei: Optional[Any] = None


class SessionCreateRequest(WireModel):
    session_id: str = Field(min_length=1)
    student_address: str = Field(min_length=1)
    tutor_address: str = Field(min_length=1)
    language_id: int = 0
    student_endpoint: Optional[str] = None
    tutor_endpoint: Optional[str] = None


class MediaEvent(WireModel):
    """Event posted by the WebRTC collaborator to `/webrtc-events`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str
    session_id: Optional[str] = None
    user_role: Optional[str] = None
    user_address: Optional[str] = None
    timestamp: Optional[float] = None
    ended_by: Optional[str] = None
    reason: Optional[str] = None
    session: Dict[str, Any] = {}
