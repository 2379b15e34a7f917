from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from web3.exceptions import ContractLogicError

from conftest import AGENT, POOL, FakeContract
from core.builder_code import has_builder_code
from core.chain import DEFAULT_GAS_LIMIT, Balances, ChainGateway
from core.errors import ChainReadError, ChainWriteError


class FakeEth:
    def __init__(self, estimate=50_000, send_error: Exception | None = None):
        self.estimate = estimate
        self.send_error = send_error
        self.gas_price = 1_000_000
        self.signed_txs: list[dict] = []
        self.nonce_block_ids: list[str] = []

    def get_transaction_count(self, address, block_identifier):
        self.nonce_block_ids.append(block_identifier)
        return 7

    def estimate_gas(self, tx):
        if isinstance(self.estimate, Exception):
            raise self.estimate
        return self.estimate

    def send_raw_transaction(self, raw):
        if self.send_error is not None:
            raise self.send_error
        return bytes.fromhex("12" * 32)

    def get_balance(self, address):
        return 3 * 10 ** 15


class FakeAccount:
    address = AGENT

    def __init__(self, eth: FakeEth):
        self._eth = eth

    def sign_transaction(self, tx):
        self._eth.signed_txs.append(tx)
        return SimpleNamespace(raw_transaction=b"\x02signed")


def _connected_gateway(config, eth: FakeEth) -> ChainGateway:
    gateway = ChainGateway(config)
    gateway._w3 = SimpleNamespace(eth=eth)
    gateway._account = FakeAccount(eth)
    gateway._stable = FakeContract("stable", {"balanceOf": lambda addr: 25_000_000})
    gateway._receipt_token = FakeContract("receipt", {"balanceOf": lambda addr: 75_000_000})
    gateway._initialized = True
    return gateway


def test_submit_appends_attribution_and_buffers_gas(config) -> None:
    eth = FakeEth(estimate=50_000)
    gateway = _connected_gateway(config, eth)

    tx_hash = asyncio.run(gateway.submit(POOL, b"\xde\xad\xbe\xef"))

    assert tx_hash == "0x" + "12" * 32
    tx = eth.signed_txs[0]
    assert tx["data"].startswith(b"\xde\xad\xbe\xef")
    assert has_builder_code(tx["data"])
    assert tx["gas"] == 60_000
    assert tx["nonce"] == 7
    assert eth.nonce_block_ids == ["pending"]
    assert tx["chainId"] == config.chain_id
    assert gateway.get_status()["tx_count"] == 1


def test_reverting_estimate_is_not_broadcast(config) -> None:
    eth = FakeEth(estimate=RuntimeError("execution reverted: AlreadyClaimed"))
    gateway = _connected_gateway(config, eth)

    with pytest.raises(ChainWriteError) as excinfo:
        asyncio.run(gateway.submit(POOL, b""))

    assert "AlreadyClaimed" in excinfo.value.reason
    assert eth.signed_txs == []
    assert gateway.get_status()["tx_count"] == 0


def test_contract_logic_error_is_not_broadcast(config) -> None:
    eth = FakeEth(estimate=ContractLogicError("StakeNotExpired"))
    gateway = _connected_gateway(config, eth)

    with pytest.raises(ChainWriteError):
        asyncio.run(gateway.submit(POOL, b""))

    assert eth.signed_txs == []


def test_estimate_transport_failure_falls_back_to_default_gas(config) -> None:
    eth = FakeEth(estimate=ConnectionError("read timed out"))
    gateway = _connected_gateway(config, eth)

    asyncio.run(gateway.submit(POOL, b""))

    assert eth.signed_txs[0]["gas"] == DEFAULT_GAS_LIMIT


def test_submit_failure_is_sanitized(config) -> None:
    err = RuntimeError(
        "HTTPError for url: https://rpc.example/v2/SECRETKEY\n"
        "Details: nonce too low\nRequest body: 0x" + "ab" * 80
    )
    gateway = _connected_gateway(config, FakeEth(send_error=err))

    with pytest.raises(ChainWriteError) as excinfo:
        asyncio.run(gateway.submit(POOL, b""))

    reason = excinfo.value.reason
    assert "nonce too low" in reason
    assert "SECRETKEY" not in reason
    assert "https://" not in reason
    assert len(reason) <= 120


def test_submit_requires_initialization(config) -> None:
    with pytest.raises(ChainWriteError):
        asyncio.run(ChainGateway(config).submit(POOL, b""))


def test_read_balances_in_raw_units(config) -> None:
    gateway = _connected_gateway(config, FakeEth())

    balances = asyncio.run(gateway.read_balances())

    assert balances == Balances(native=3 * 10 ** 15, liquid_stable=25_000_000, lending_position=75_000_000)
    assert balances.total_stable == 100_000_000
    assert balances.lending_percent == 75
    assert balances.liquid_stable_units == 25.0


def test_read_failure_raises_chain_read_error(config) -> None:
    gateway = _connected_gateway(config, FakeEth())
    gateway._stable = FakeContract("stable", {"balanceOf": lambda addr: ConnectionError("boom")})

    with pytest.raises(ChainReadError):
        asyncio.run(gateway.read_balances())


def test_not_connected_before_initialize(config) -> None:
    assert ChainGateway(config).is_connected() is False
