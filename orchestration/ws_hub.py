# orchestration/ws_hub.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

log = logging.getLogger("tutorlink.orchestration.ws_hub")


class Sender(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass
class Channel:
    """One open real-time connection and the wallet addresses bound to it."""
    channel_id: str
    sender: Sender
    addresses: Set[str] = field(default_factory=set)
    open: bool = True


class ChannelHub:
    """Registry of open channels with an address -> channel index.

    The index can go stale across reconnects, so `resolve` verifies the hit
    and falls back to scanning every channel, repairing the index on success.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, Channel] = {}
        self._by_address: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(self, channel_id: str, sender: Sender) -> Channel:
        ch = Channel(channel_id=channel_id, sender=sender)
        async with self._lock:
            self._channels[channel_id] = ch
        return ch

    async def bind(self, channel_id: str, address: str) -> bool:
        """Attach an address to a channel; the newest binding wins the index."""
        addr = address.strip().lower()
        async with self._lock:
            ch = self._channels.get(channel_id)
            if ch is None:
                return False
            ch.addresses.add(addr)
            self._by_address[addr] = channel_id
        log.debug("address %s bound to channel %s", addr, channel_id)
        return True

    async def unregister(self, channel_id: str) -> None:
        async with self._lock:
            ch = self._channels.pop(channel_id, None)
            if ch is None:
                return
            ch.open = False
            for addr in ch.addresses:
                if self._by_address.get(addr) == channel_id:
                    del self._by_address[addr]

    def lookup(self, address: str) -> Optional[Channel]:
        """Direct index lookup; None when missing or pointing at a closed channel."""
        cid = self._by_address.get(address.strip().lower())
        if cid is None:
            return None
        ch = self._channels.get(cid)
        if ch is None or not ch.open:
            return None
        return ch

    def scan(self, address: str) -> Optional[Channel]:
        """Linear scan of open channels; repairs the index on a hit."""
        addr = address.strip().lower()
        for ch in list(self._channels.values()):
            if ch.open and addr in ch.addresses:
                self._by_address[addr] = ch.channel_id
                return ch
        return None

    def resolve(self, address: str) -> Tuple[Optional[Channel], str]:
        """Direct lookup, then scan. Returns the channel and the path (direct|scan) tried last."""
        ch = self.lookup(address)
        if ch is not None:
            return ch, "direct"
        return self.scan(address), "scan"

    def channels(self) -> List[Channel]:
        return [ch for ch in self._channels.values() if ch.open]

    async def send(self, channel: Channel, data: Any) -> None:
        """Send to one channel; a failing channel is dropped and the error re-raised."""
        try:
            await channel.sender.send_json(data)
        except Exception:
            await self.unregister(channel.channel_id)
            raise

    async def broadcast(self, data: Any) -> int:
        """Send to every open channel. Returns how many accepted the message."""
        dead = []
        delivered = 0
        for ch in self.channels():
            try:
                await ch.sender.send_json(data)
                delivered += 1
            except Exception:
                dead.append(ch.channel_id)  # client that went away is removed
        for cid in dead:
            await self.unregister(cid)
        return delivered

    async def close(self) -> None:
        async with self._lock:
            for ch in self._channels.values():
                ch.open = False
            self._channels.clear()
            self._by_address.clear()
