"""EVM escrow contract adapter (web3.py, async).

Reads the per-tutor active-session slot and the session history, submits
`endSession(tutor)` signed with the service key, and reads tutor/student
registrations. The ABI comes from a deployment artifact when one is
configured, otherwise from the minimal fragment below.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3

from adapters.base import LedgerClient
from packages.schemas.session import LedgerReceipt, LedgerSessionRecord, StudentInfo, TutorInfo

log = logging.getLogger("tutorlink.adapters.evm_ledger")

_SESSION_OUTPUTS = [
    {"name": "student", "type": "address"},
    {"name": "tutor", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "startTime", "type": "uint256"},
    {"name": "endTime", "type": "uint256"},
    {"name": "ratePerSecond", "type": "uint256"},
    {"name": "totalPaid", "type": "uint256"},
    {"name": "language", "type": "uint256"},
    {"name": "id", "type": "uint256"},
    {"name": "isActive", "type": "bool"},
]

DEFAULT_ABI: List[Dict[str, Any]] = [
    {
        "type": "function", "name": "activeSessions", "stateMutability": "view",
        "inputs": [{"name": "tutor", "type": "address"}],
        "outputs": _SESSION_OUTPUTS,
    },
    {
        "type": "function", "name": "sessionHistory", "stateMutability": "view",
        "inputs": [{"name": "id", "type": "uint256"}],
        "outputs": _SESSION_OUTPUTS,
    },
    {
        "type": "function", "name": "endSession", "stateMutability": "nonpayable",
        "inputs": [{"name": "tutor", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function", "name": "getTutor", "stateMutability": "view",
        "inputs": [{"name": "tutor", "type": "address"}],
        "outputs": [
            {"name": "name", "type": "string"},
            {"name": "languages", "type": "string[]"},
            {"name": "ratePerSecond", "type": "uint256"},
            {"name": "totalSessions", "type": "uint256"},
            {"name": "rating", "type": "uint256"},
            {"name": "isRegistered", "type": "bool"},
        ],
    },
    {
        "type": "function", "name": "getStudent", "stateMutability": "view",
        "inputs": [{"name": "student", "type": "address"}],
        "outputs": [
            {"name": "name", "type": "string"},
            {"name": "totalSessions", "type": "uint256"},
            {"name": "averageRating", "type": "uint256"},
            {"name": "isRegistered", "type": "bool"},
        ],
    },
]


class LedgerWriteError(RuntimeError):
    """A submitted transaction reverted or could not be sent."""


def load_abi(path: Optional[str]) -> List[Dict[str, Any]]:
    """Load an ABI from a deployment artifact (`{"abi": [...]}`) or a bare ABI list.

    Falls back to `DEFAULT_ABI` when no path is given.
    """
    if not path:
        return DEFAULT_ABI
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    abi = raw.get("abi") if isinstance(raw, dict) else raw
    if not isinstance(abi, list):
        raise ValueError(f"no ABI found in {path}")
    return abi


def _unwrap(result: Any) -> Sequence[Any]:
    # Struct-returning functions decode to a single tuple; public getters to a flat list.
    if isinstance(result, (list, tuple)) and len(result) == 1 and isinstance(result[0], (list, tuple)):
        return result[0]
    return result


def normalize_session_struct(result: Any) -> Optional[LedgerSessionRecord]:
    """Map the decoded session struct (positional) to a `LedgerSessionRecord`."""
    if result is None:
        return None
    fields = _unwrap(result)
    if len(fields) < len(_SESSION_OUTPUTS):
        raise ValueError(f"unexpected session struct length {len(fields)}")
    student, tutor, token, start, end, rate, paid, language, sid, active = fields[:10]
    return LedgerSessionRecord(
        student_address=str(student),
        tutor_address=str(tutor),
        token_address=str(token),
        start_time=int(start),
        end_time=int(end),
        rate_per_second_wei=int(rate),
        total_paid_wei=int(paid),
        language_id=int(language),
        ledger_session_id=int(sid),
        is_active=bool(active),
    )


class EvmLedgerClient(LedgerClient):
    """`LedgerClient` backed by an escrow contract on an EVM chain."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        abi: Optional[List[Dict[str, Any]]] = None,
        private_key: Optional[str] = None,
        confirmation_timeout: float = 120.0,
    ) -> None:
        """Create the web3 provider and contract handle.

        Args:
            rpc_url: JSON-RPC HTTP endpoint.
            contract_address: Escrow contract address (any case).
            abi: Contract ABI; defaults to `DEFAULT_ABI`.
            private_key: Optional signer key; without it the client is read-only.
            confirmation_timeout: Seconds to wait for a transaction receipt.
        """
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=abi or DEFAULT_ABI,
        )
        self._account = self._w3.eth.account.from_key(private_key) if private_key else None
        self._timeout = confirmation_timeout
        self._write_lock = asyncio.Lock()
        if self._account is not None:
            log.info("ledger signer attached: %s", self._account.address)

    @property
    def can_write(self) -> bool:
        return self._account is not None

    @staticmethod
    def _checksum(address: str) -> str:
        return AsyncWeb3.to_checksum_address(address)

    async def active_session(self, tutor_address: str) -> Optional[LedgerSessionRecord]:
        raw = await self._contract.functions.activeSessions(self._checksum(tutor_address)).call()
        return normalize_session_struct(raw)

    async def session_history(self, ledger_session_id: int) -> Optional[LedgerSessionRecord]:
        raw = await self._contract.functions.sessionHistory(int(ledger_session_id)).call()
        record = normalize_session_struct(raw)
        if record is None or (record.ledger_session_id == 0 and record.start_time == 0):
            return None
        return record

    async def end_session(self, tutor_address: str) -> LedgerReceipt:
        if self._account is None:
            raise LedgerWriteError("no signer configured")
        # One in-flight transaction per signer keeps nonces ordered.
        async with self._write_lock:
            sender = self._account.address
            tx = await self._contract.functions.endSession(self._checksum(tutor_address)).build_transaction(
                {
                    "from": sender,
                    "nonce": await self._w3.eth.get_transaction_count(sender, "pending"),
                    "chainId": await self._w3.eth.chain_id,
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            hash_hex = AsyncWeb3.to_hex(tx_hash)
            log.info("endSession submitted tutor=%s tx=%s", tutor_address, hash_hex)
            receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._timeout)
        if receipt.get("status") != 1:
            raise LedgerWriteError(f"endSession reverted (tx={hash_hex})")
        return LedgerReceipt(
            tx_hash=hash_hex,
            confirmed=True,
            block_number=receipt.get("blockNumber"),
        )

    async def tutor_info(self, address: str) -> TutorInfo:
        name, languages, rate, total, rating, registered = await self._contract.functions.getTutor(
            self._checksum(address)
        ).call()
        return TutorInfo(
            address=address.lower(),
            name=name or f"Tutor_{address[-4:]}",
            languages=list(languages or []),
            rate_per_second_wei=int(rate),
            total_sessions=int(total),
            rating=float(rating),
            is_registered=bool(registered),
        )

    async def student_info(self, address: str) -> StudentInfo:
        name, total, avg, registered = await self._contract.functions.getStudent(self._checksum(address)).call()
        return StudentInfo(
            address=address.lower(),
            name=name or f"Student_{address[-4:]}",
            total_sessions=int(total),
            average_rating=float(avg),
            is_registered=bool(registered),
        )

    async def close(self) -> None:
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
