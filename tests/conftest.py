"""
Test configuration and fixtures
"""
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

# Add src to Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(src_path))

import json

import pytest
from web3 import Web3

from mnee_indexer.chain import BoundContract, EventKind, RawEvent
from mnee_indexer.exceptions import ChainUnavailableError
from mnee_indexer.storage import InMemoryCheckpointStore, InMemoryOrderStore

COMMERCE_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
REDEPLOYED_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
BUYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
CHAIN_ID = 31337
GENESIS_TIME = 1_700_000_000


def tx_hash_for(seed: int) -> str:
    return "0x" + f"{seed:064x}"


def placed_event(order_id, amount, block, *, buyer=BUYER, tx_hash=None, log_index=0, decimals=18):
    """OrderPlaced with ``amount`` given in whole tokens."""
    raw = int(Decimal(str(amount)).scaleb(decimals))
    return RawEvent(
        kind=EventKind.PLACED,
        args={"orderId": order_id, "buyer": buyer, "amount": raw},
        tx_hash=tx_hash or tx_hash_for(block * 1000 + log_index + 1),
        block_number=block,
        log_index=log_index,
    )


def refunded_event(order_id, block, *, tx_hash=None, log_index=0):
    return RawEvent(
        kind=EventKind.REFUNDED,
        args={"orderId": order_id},
        tx_hash=tx_hash or tx_hash_for(block * 1000 + log_index + 500),
        block_number=block,
        log_index=log_index,
    )


class FakeChain:
    """Stands in for ``ChainClient``: a height, a list of events per kind, fixed block times."""

    def __init__(self, height=0):
        self.height = height
        self.events = {EventKind.PLACED: [], EventKind.REFUNDED: []}
        self.height_error = None
        self.timestamp_error = None
        self.log_error = None
        self.queries = []
        self.cache_clears = 0
        self.binds = []

    def add(self, *events):
        for event in events:
            self.events[event.kind].append(event)

    async def current_height(self):
        if self.height_error:
            raise self.height_error
        return self.height

    async def block_timestamp(self, block_number):
        if self.timestamp_error:
            raise self.timestamp_error
        return datetime.fromtimestamp(GENESIS_TIME + block_number * 2, tz=timezone.utc)

    def clear_cache(self):
        self.cache_clears += 1

    def bind(self, address):
        checksum = Web3.to_checksum_address(address)
        self.binds.append(checksum)
        return BoundContract(address=checksum, contract=checksum, client=self)

    async def get_logs(self, contract, kind, from_block, to_block):
        self.queries.append((contract, kind, from_block, to_block))
        if self.log_error:
            raise self.log_error
        matching = [e for e in self.events[kind] if from_block <= e.block_number <= to_block]
        return sorted(matching, key=lambda e: e.position)


def node_down():
    return ChainUnavailableError("connection refused", details={"call": "eth_blockNumber"})


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def orders():
    return InMemoryOrderStore()


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointStore()


@pytest.fixture
def descriptor_path(tmp_path):
    path = tmp_path / "contract-addresses.json"
    path.write_text(
        json.dumps(
            {
                "MNEE": "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0",
                "Commerce": COMMERCE_ADDRESS,
                "chainId": CHAIN_ID,
                "deployer": BUYER,
            }
        )
    )
    return path
