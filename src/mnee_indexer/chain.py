"""
Chain access for the commerce contract.

``ChainClient`` wraps an ``AsyncWeb3`` instance and knows how to read the chain
height, block timestamps and the contract's event logs. A contract binding is
an immutable ``BoundContract`` value; the sync loop keeps the current one and
swaps it for a new value through ``rebind`` whenever the resolved address
changes, which is what makes a redeployed contract transparent.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

import aiohttp
from eth_abi.exceptions import DecodingError
from eth_utils import to_hex
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from mnee_indexer.exceptions import ChainUnavailableError, ConfigurationError, DecodeError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    PLACED = "OrderPlaced"
    REFUNDED = "OrderRefunded"


COMMERCE_EVENTS_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "name": EventKind.PLACED.value,
        "type": "event",
        "inputs": [
            {"indexed": False, "internalType": "uint256", "name": "orderId", "type": "uint256"},
            {"indexed": False, "internalType": "address", "name": "buyer", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "name": EventKind.REFUNDED.value,
        "type": "event",
        "inputs": [
            {"indexed": False, "internalType": "uint256", "name": "orderId", "type": "uint256"},
        ],
    },
]

EVENT_SIGNATURES = {
    EventKind.PLACED: "OrderPlaced(uint256,address,uint256)",
    EventKind.REFUNDED: "OrderRefunded(uint256)",
}
EVENT_TOPICS = {kind: to_hex(Web3.keccak(text=sig)) for kind, sig in EVENT_SIGNATURES.items()}

# Errors that mean "the node could not answer", as opposed to "the answer was bad"
CHAIN_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError, Web3Exception)
DECODE_ERRORS = (Web3Exception, DecodingError, ValueError, TypeError, KeyError, AttributeError)


@dataclass(frozen=True)
class RawEvent:
    """A decoded contract log, as returned by a range query."""

    kind: EventKind
    args: dict[str, Any]
    tx_hash: str
    block_number: int
    log_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


def block_chunks(from_block: int, to_block: int, max_span: int) -> Iterator[tuple[int, int]]:
    """Split an inclusive block range into inclusive chunks of at most ``max_span`` blocks."""
    if max_span < 1:
        raise ValueError("max_span must be positive")
    start = from_block
    while start <= to_block:
        end = min(to_block, start + max_span - 1)
        yield start, end
        start = end + 1


class ChainClient:
    """Node-level access: height, block metadata, event logs, contract binding."""

    def __init__(
        self,
        w3: AsyncWeb3,
        *,
        max_block_range: int = 10_000,
        timestamp_cache_size: int = 1024,
    ) -> None:
        self._w3 = w3
        self.max_block_range = max(1, int(max_block_range))
        self._timestamp_cache_size = max(1, int(timestamp_cache_size))
        self._timestamps: OrderedDict[int, datetime] = OrderedDict()

    @classmethod
    def from_url(cls, rpc_url: str, *, timeout: float = 10.0, **kwargs: Any) -> ChainClient:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
        )
        return cls(AsyncWeb3(provider), **kwargs)

    async def close(self) -> None:
        """Release the provider's HTTP session, if it keeps one."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is None:
            return
        try:
            await disconnect()
        except CHAIN_ERRORS as exc:
            logger.debug("Error closing RPC provider: %s", exc, extra={"event": "chain.close_failed"})

    async def current_height(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except CHAIN_ERRORS as exc:
            raise ChainUnavailableError(
                f"Could not read latest block number: {exc}",
                details={"call": "eth_blockNumber"},
            ) from exc

    async def block_timestamp(self, block_number: int) -> datetime:
        cached = self._timestamps.get(block_number)
        if cached is not None:
            self._timestamps.move_to_end(block_number)
            return cached
        try:
            block = await self._w3.eth.get_block(block_number)
            timestamp = datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc)
        except CHAIN_ERRORS as exc:
            raise ChainUnavailableError(
                f"Could not fetch block {block_number}: {exc}",
                details={"call": "eth_getBlockByNumber", "block": block_number},
            ) from exc
        self._timestamps[block_number] = timestamp
        if len(self._timestamps) > self._timestamp_cache_size:
            self._timestamps.popitem(last=False)
        return timestamp

    def clear_cache(self) -> None:
        """Forget cached block timestamps (block numbers are reused after a chain reset)."""
        self._timestamps.clear()

    def bind(self, address: str) -> BoundContract:
        try:
            checksum = Web3.to_checksum_address(address)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Invalid contract address {address!r}",
                details={"address": address},
            ) from exc
        contract = self._w3.eth.contract(address=checksum, abi=COMMERCE_EVENTS_ABI)
        return BoundContract(address=checksum, contract=contract, client=self)

    async def get_logs(
        self,
        contract: Any,
        kind: EventKind,
        from_block: int,
        to_block: int,
    ) -> list[RawEvent]:
        """Return every ``kind`` log of ``contract`` in [from_block, to_block], in chain order."""
        if from_block > to_block:
            return []
        events: list[RawEvent] = []
        for start, end in block_chunks(from_block, to_block, self.max_block_range):
            try:
                logs = await self._w3.eth.get_logs(
                    {
                        "address": contract.address,
                        "fromBlock": start,
                        "toBlock": end,
                        "topics": [EVENT_TOPICS[kind]],
                    }
                )
            except CHAIN_ERRORS as exc:
                raise ChainUnavailableError(
                    f"Could not query {kind.value} logs in [{start}, {end}]: {exc}",
                    details={"call": "eth_getLogs", "from_block": start, "to_block": end},
                ) from exc
            for log in logs:
                try:
                    events.append(decode_log(contract, kind, log))
                except DecodeError as exc:
                    logger.warning(
                        "Skipping undecodable %s log: %s",
                        kind.value,
                        exc,
                        extra={"event": "chain.log_undecodable", "tx_hash": exc.tx_hash},
                    )
        events.sort(key=lambda event: event.position)
        return events


def decode_log(contract: Any, kind: EventKind, log: Any) -> RawEvent:
    """Decode one raw log entry with the contract's event ABI."""
    tx_hash = _hex_or_none(_get(log, "transactionHash"))
    try:
        decoded = getattr(contract.events, kind.value)().process_log(log)
        decoded_hash = _hex_or_none(decoded["transactionHash"])
        if not decoded_hash:
            raise ValueError("log has no transaction hash")
        return RawEvent(
            kind=kind,
            args=dict(decoded["args"]),
            tx_hash=decoded_hash,
            block_number=int(decoded["blockNumber"]),
            log_index=int(decoded.get("logIndex") or 0),
        )
    except DECODE_ERRORS as exc:
        raise DecodeError(f"Malformed {kind.value} log: {exc}", tx_hash=tx_hash) from exc


def _get(log: Any, key: str) -> Any:
    try:
        return log[key]
    except (KeyError, TypeError, IndexError):
        return None


def _hex_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return to_hex(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class BoundContract:
    """The commerce contract at one address. Replaced wholesale, never mutated."""

    address: str
    contract: Any = field(compare=False, repr=False)
    client: ChainClient = field(compare=False, repr=False)

    def matches(self, address: str | None) -> bool:
        return bool(address) and self.address.lower() == address.lower()

    async def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[RawEvent]:
        return await self.client.get_logs(self.contract, kind, from_block, to_block)


def rebind(current: BoundContract | None, client: ChainClient, address: str) -> BoundContract:
    """Return ``current`` if it is bound to ``address``, otherwise a fresh binding."""
    if current is not None and current.matches(address):
        return current
    bound = client.bind(address)
    logger.info(
        "Updating contract connection to %s",
        bound.address,
        extra={
            "event": "chain.contract_bound",
            "address": bound.address,
            "previous_address": current.address if current else None,
        },
    )
    return bound
