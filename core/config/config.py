"""
Tutorlink core.config.config: typed, fail-fast settings

- Reads from environment/.env, one sub-config per concern (own env prefix).
- No secrets shipped as defaults; the signer key is optional and validated.
- Rejects known-bad placeholders (e.g., 'your_private_key_here').
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PK_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_PLACEHOLDER_KEYS = {"your_private_key_here", "changeme", "CHANGE_ME"}

# ---------- Sub-configs ----------

class RedisCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="REDIS_")
    url: str = Field(default="redis://localhost:6379/0", description="Redis URL, e.g. redis://redis:6379/0")
    session_ttl_seconds: int = Field(default=86_400, gt=0, description="Backstop TTL for session mappings")
    registration_ttl_seconds: int = Field(default=300, gt=0, description="TTL for cached registration reads")


class LedgerCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="LEDGER_")

    rpc_url: Optional[str] = Field(default=None, description="JSON-RPC endpoint of the escrow chain")
    contract_address: Optional[str] = Field(default=None, description="Escrow contract address")
    abi_path: Optional[str] = Field(default=None, description="Deployment artifact holding the contract ABI")
    private_key: Optional[SecretStr] = Field(default=None, description="Signer key for endSession transactions")

    allow_fallback: bool = Field(default=True, description="Serve placeholder data when the ledger is unreachable")
    token_decimals: int = Field(default=6, ge=0, le=36)
    currency_code: str = Field(default="PYUSD")

    confirmation_timeout_seconds: float = Field(default=120.0, gt=0)
    verify_attempts: int = Field(default=5, ge=1)
    verify_interval_seconds: float = Field(default=1.0, ge=0)

    @model_validator(mode="after")
    def _check_signer_and_contract(self) -> "LedgerCfg":
        if self.private_key is not None:
            raw = self.private_key.get_secret_value().strip()
            if raw in _PLACEHOLDER_KEYS:
                raise ValueError("LEDGER_PRIVATE_KEY is a placeholder; set a real key or leave it unset.")
            if not raw:
                self.private_key = None
            elif not _PK_RE.match(raw):
                raise ValueError("LEDGER_PRIVATE_KEY must be a 32-byte hex string.")
        if self.rpc_url and not self.contract_address and not self.allow_fallback:
            raise ValueError("LEDGER_CONTRACT_ADDRESS is required when fallback is disabled.")
        return self

    @property
    def configured(self) -> bool:
        return bool(self.rpc_url and self.contract_address)


class LivenessCfg(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_prefix="LIVENESS_")
    grace_period_seconds: float = Field(default=30.0, ge=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    stale_after_seconds: float = Field(default=120.0, gt=0)


# ---------- Top-level settings ----------

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", protected_namespaces=())

    env: Literal["dev", "staging", "prod"] = Field(default="dev", description="Deployment env")
    service_name: str = Field(default="tutorlink-settlement")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    frontend_origins: str = Field(default="", description="Comma-separated CORS origins")

    redis: RedisCfg = Field(default_factory=RedisCfg)
    ledger: LedgerCfg = Field(default_factory=LedgerCfg)
    liveness: LivenessCfg = Field(default_factory=LivenessCfg)

    @model_validator(mode="after")
    def _require_origins_outside_dev(self) -> "Settings":
        if self.env != "dev" and not self.allow_origins:
            raise ValueError("FRONTEND_ORIGINS must be set outside dev (comma-separated).")
        return self

    @property
    def allow_origins(self) -> List[str]:
        raw = self.frontend_origins
        if not raw.strip() and self.env == "dev":
            raw = "http://localhost:3000"
        return [o.strip() for o in raw.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
