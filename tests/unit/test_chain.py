import asyncio

import aiohttp
import pytest
from eth_abi import encode
from web3 import AsyncHTTPProvider, AsyncWeb3

from conftest import BUYER, COMMERCE_ADDRESS, GENESIS_TIME, REDEPLOYED_ADDRESS, tx_hash_for

from mnee_indexer.chain import (
    EVENT_TOPICS,
    BoundContract,
    ChainClient,
    EventKind,
    block_chunks,
    rebind,
)
from mnee_indexer.exceptions import ChainUnavailableError, ConfigurationError


def _topic(kind):
    return bytes.fromhex(EVENT_TOPICS[kind][2:])


def raw_log(kind, values, block, log_index=0, data=None):
    if data is None:
        types = ["uint256", "address", "uint256"] if kind is EventKind.PLACED else ["uint256"]
        data = encode(types, values)
    return {
        "address": COMMERCE_ADDRESS,
        "topics": [_topic(kind)],
        "data": data,
        "blockNumber": block,
        "blockHash": b"\x01" * 32,
        "transactionHash": bytes.fromhex(tx_hash_for(block * 100 + log_index)[2:]),
        "transactionIndex": 0,
        "logIndex": log_index,
        "removed": False,
    }


class FakeEth:
    def __init__(self):
        self.height = 0
        self.logs = []
        self.error = None
        self.log_calls = []
        self.block_calls = []

    @property
    def block_number(self):
        return self._block_number()

    async def _block_number(self):
        if self.error:
            raise self.error
        return self.height

    async def get_logs(self, params):
        self.log_calls.append(params)
        if self.error:
            raise self.error
        topic = bytes.fromhex(params["topics"][0][2:])
        return [
            log
            for log in self.logs
            if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"] and log["topics"][0] == topic
        ]

    async def get_block(self, number):
        self.block_calls.append(number)
        if self.error:
            raise self.error
        return {"number": number, "timestamp": GENESIS_TIME + number}


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth
        self.provider = None


@pytest.fixture
def w3():
    return AsyncWeb3(AsyncHTTPProvider("http://127.0.0.1:8545"))


@pytest.fixture
def eth():
    return FakeEth()


@pytest.fixture
def contract(w3):
    return ChainClient(w3).bind(COMMERCE_ADDRESS).contract


def test_block_chunks_split_inclusive_range():
    assert list(block_chunks(0, 25, 10)) == [(0, 9), (10, 19), (20, 25)]
    assert list(block_chunks(5, 5, 10)) == [(5, 5)]
    assert list(block_chunks(10, 5, 10)) == []


def test_block_chunks_rejects_non_positive_span():
    with pytest.raises(ValueError):
        list(block_chunks(0, 10, 0))


def test_event_topics_match_signatures():
    assert EVENT_TOPICS[EventKind.PLACED] == AsyncWeb3.to_hex(AsyncWeb3.keccak(text="OrderPlaced(uint256,address,uint256)"))
    assert EVENT_TOPICS[EventKind.PLACED] != EVENT_TOPICS[EventKind.REFUNDED]


def test_bind_checksums_address(w3):
    bound = ChainClient(w3).bind(COMMERCE_ADDRESS.lower())

    assert bound.address == COMMERCE_ADDRESS
    assert bound.matches(COMMERCE_ADDRESS.upper().replace("0X", "0x"))
    assert not bound.matches(None)


def test_bind_rejects_invalid_address(w3):
    with pytest.raises(ConfigurationError):
        ChainClient(w3).bind("0x1234")


def test_rebind_keeps_binding_for_same_address(w3):
    client = ChainClient(w3)
    bound = client.bind(COMMERCE_ADDRESS)

    assert rebind(bound, client, COMMERCE_ADDRESS.lower()) is bound


def test_rebind_replaces_binding_for_new_address(w3):
    client = ChainClient(w3)
    bound = client.bind(COMMERCE_ADDRESS)

    rebound = rebind(bound, client, REDEPLOYED_ADDRESS)

    assert rebound is not bound
    assert rebound.address == REDEPLOYED_ADDRESS
    assert bound.address == COMMERCE_ADDRESS
    assert isinstance(rebind(None, client, COMMERCE_ADDRESS), BoundContract)


@pytest.mark.asyncio
async def test_get_logs_decodes_and_orders_events(eth, contract):
    eth.logs = [
        raw_log(EventKind.PLACED, [2, BUYER, 58 * 10**18], block=15, log_index=1),
        raw_log(EventKind.PLACED, [0, BUYER, 48 * 10**18], block=3),
        raw_log(EventKind.PLACED, [1, BUYER, 115 * 10**18], block=15, log_index=0),
        raw_log(EventKind.REFUNDED, [0], block=4),
    ]
    client = ChainClient(FakeWeb3(eth), max_block_range=10)

    events = await client.get_logs(contract, EventKind.PLACED, 0, 25)

    assert [e.args["orderId"] for e in events] == [0, 1, 2]
    assert [e.position for e in events] == [(3, 0), (15, 0), (15, 1)]
    assert events[0].args["buyer"] == BUYER
    assert events[0].args["amount"] == 48 * 10**18
    assert events[0].tx_hash == tx_hash_for(300)
    assert [(c["fromBlock"], c["toBlock"]) for c in eth.log_calls] == [(0, 9), (10, 19), (20, 25)]
    assert all(c["address"] == COMMERCE_ADDRESS for c in eth.log_calls)


@pytest.mark.asyncio
async def test_get_logs_skips_undecodable_log(eth, contract):
    eth.logs = [
        raw_log(EventKind.PLACED, None, block=2, data=b"\x00" * 5),
        raw_log(EventKind.PLACED, [7, BUYER, 99 * 10**18], block=2, log_index=1),
    ]
    client = ChainClient(FakeWeb3(eth))

    events = await client.get_logs(contract, EventKind.PLACED, 0, 10)

    assert [e.args["orderId"] for e in events] == [7]


@pytest.mark.asyncio
async def test_get_logs_empty_range_makes_no_call(eth, contract):
    client = ChainClient(FakeWeb3(eth))

    assert await client.get_logs(contract, EventKind.REFUNDED, 10, 9) == []
    assert eth.log_calls == []


@pytest.mark.asyncio
async def test_get_logs_translates_transport_errors(eth, contract):
    eth.error = aiohttp.ClientConnectionError("refused")
    client = ChainClient(FakeWeb3(eth))

    with pytest.raises(ChainUnavailableError) as exc_info:
        await client.get_logs(contract, EventKind.PLACED, 0, 10)

    assert exc_info.value.recoverable
    assert exc_info.value.details["call"] == "eth_getLogs"


@pytest.mark.asyncio
async def test_current_height(eth):
    eth.height = 321
    client = ChainClient(FakeWeb3(eth))

    assert await client.current_height() == 321


@pytest.mark.asyncio
async def test_current_height_timeout_is_chain_unavailable(eth):
    eth.error = asyncio.TimeoutError()
    client = ChainClient(FakeWeb3(eth))

    with pytest.raises(ChainUnavailableError):
        await client.current_height()


@pytest.mark.asyncio
async def test_block_timestamp_is_cached_per_block(eth):
    client = ChainClient(FakeWeb3(eth), timestamp_cache_size=2)

    first = await client.block_timestamp(50)
    again = await client.block_timestamp(50)
    await client.block_timestamp(51)
    await client.block_timestamp(52)
    await client.block_timestamp(50)

    assert first == again
    assert first.timestamp() == GENESIS_TIME + 50
    assert first.tzinfo is not None
    # 50 was evicted once 51 and 52 were cached
    assert eth.block_calls == [50, 51, 52, 50]


@pytest.mark.asyncio
async def test_clear_cache_forgets_timestamps(eth):
    client = ChainClient(FakeWeb3(eth))
    await client.block_timestamp(5)

    client.clear_cache()
    await client.block_timestamp(5)

    assert eth.block_calls == [5, 5]


@pytest.mark.asyncio
async def test_bound_contract_queries_through_client(eth, w3):
    eth.logs = [raw_log(EventKind.REFUNDED, [4], block=8)]
    contract = ChainClient(w3).bind(COMMERCE_ADDRESS).contract
    client = ChainClient(FakeWeb3(eth))
    bound = BoundContract(address=COMMERCE_ADDRESS, contract=contract, client=client)

    events = await bound.query_events(EventKind.REFUNDED, 0, 10)

    assert len(events) == 1
    assert events[0].kind is EventKind.REFUNDED
    assert events[0].args["orderId"] == 4
