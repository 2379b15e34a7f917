from __future__ import annotations

import dataclasses
import os
from types import SimpleNamespace

import pytest

from core.chain import Balances
from core.config import AgentConfig
from core.constitution import AssetKind
from core.errors import ChainReadError, ChainWriteError
from core.ledger import Ledger
from core.stake_registry import StakeRecord

AGENT = "0x1111111111111111111111111111111111111111"
STAKING = "0x2222222222222222222222222222222222222222"
STABLE = "0x3333333333333333333333333333333333333333"
POOL = "0x4444444444444444444444444444444444444444"
RECEIPT = "0x5555555555555555555555555555555555555555"
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20

NOW = 1_800_000_000
DAY = 86_400

_CONFIG_ENV_KEYS = (
    "NETWORK", "RPC_URL", "PRIVATE_KEY", "BUILDER_CODE", "STAKING_CONTRACT", "STABLE_TOKEN",
    "LENDING_POOL", "LENDING_RECEIPT_TOKEN", "IDLE_STABLE_THRESHOLD", "TREASURY_WITHDRAW_THRESHOLD",
    "LOW_GAS_THRESHOLD", "LOOP_INTERVAL_SECONDS", "ADVISORY_INTERVAL_MS", "STAKE_SCAN_WINDOW_BLOCKS",
    "LOG_CHUNK_BLOCKS", "STAKER_ALLOWLIST", "OPENAI_API_KEY", "OPENAI_MODEL", "OPENAI_BASE_URL",
    "DB_PATH", "HOST", "PORT", "CORS_ORIGINS",
)


@pytest.fixture(autouse=True)
def isolate_config_from_host_env(monkeypatch: pytest.MonkeyPatch):
    for key in _CONFIG_ENV_KEYS:
        if key in os.environ:
            monkeypatch.delenv(key, raising=False)
    yield


# ============================================================
# FAKES
# ============================================================

class FakeCall:
    def __init__(self, result):
        self._result = result

    def call(self):
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class FakeFunctions:
    def __init__(self, handlers: dict):
        self._handlers = handlers

    def __getattr__(self, name):
        handler = self._handlers[name]
        return lambda *args: FakeCall(handler(*args))


class FakeContract:
    def __init__(self, address: str, handlers: dict | None = None):
        self.address = address
        self.functions = FakeFunctions(handlers or {})
        self.encoded: list[tuple[str, list]] = []

    def encode_abi(self, fn_name: str, args=None):
        self.encoded.append((fn_name, list(args or [])))
        return "0x" + fn_name.encode().hex()


class FakeGateway:
    """Stands in for ChainGateway: canned reads, recorded submissions."""

    def __init__(self):
        self.address = AGENT
        self.balances = Balances(native=10 ** 16, liquid_stable=0, lending_position=0)
        self.fail_reads = False
        self.fail_submit_to: set[str] = set()
        self.submitted: list[tuple[str, bytes, int]] = []
        self.contracts: dict[str, FakeContract] = {}
        self.head = 1_000
        self.logs: list[dict] = []
        self.log_queries: list[dict] = []
        self.fail_logs = False
        self.receipt_ok = True
        self.receipts_waited: list[str] = []

    def contract(self, address: str, abi: list):
        return self.contracts.setdefault(address, FakeContract(address))

    async def call(self, fn_call, op_name: str = "eth_call"):
        return fn_call.call()

    async def read_balances(self, address=None) -> Balances:
        if self.fail_reads:
            raise ChainReadError("read_balances failed: ConnectionError: [rpc]")
        return dataclasses.replace(self.balances)

    async def lending_position(self, address=None) -> int:
        if self.fail_reads:
            raise ChainReadError("lending_position failed")
        return self.balances.lending_position

    async def block_number(self) -> int:
        return self.head

    async def get_logs(self, params: dict) -> list:
        self.log_queries.append(params)
        if self.fail_logs:
            raise ChainReadError("eth_getLogs failed: range too large")
        return [
            row for row in self.logs
            if params["fromBlock"] <= row["blockNumber"] <= params["toBlock"]
        ]

    async def wait_for_receipt(self, tx_hash: str, timeout: int = 120) -> bool:
        self.receipts_waited.append(tx_hash)
        return self.receipt_ok

    async def submit(self, to: str, calldata: bytes = b"", value: int = 0) -> str:
        if to in self.fail_submit_to:
            raise ChainWriteError("ContractLogicError: execution reverted")
        self.submitted.append((to, calldata, value))
        return "0x" + f"{len(self.submitted):064x}"

    def get_status(self) -> dict:
        return {"initialized": True, "network": "base-sepolia", "agent": self.address}


class FakeLending:
    """Stands in for LendingPool. Supplies move the reported position only when `settle` is set."""

    def __init__(self, gateway: FakeGateway):
        self._gateway = gateway
        self.supplied: list[int] = []
        self.withdrawn: list[int] = []
        self.fail = False
        self.settle = False

    async def supply(self, amount: int) -> str:
        if self.fail:
            raise ChainWriteError("ContractLogicError: supply reverted")
        self.supplied.append(amount)
        if self.settle:
            b = self._gateway.balances
            b.liquid_stable -= amount
            b.lending_position += amount
        return "0x" + "ab" * 32

    async def withdraw(self, amount: int) -> str:
        if self.fail:
            raise ChainWriteError("ContractLogicError: withdraw reverted")
        self.withdrawn.append(amount)
        if self.settle:
            b = self._gateway.balances
            b.liquid_stable += amount
            b.lending_position -= amount
        return "0x" + "cd" * 32

    async def position(self) -> int:
        return await self._gateway.lending_position()


class FakeRegistry:
    """Stands in for StakeRegistryReader. resolve() settles the stake like the contract would."""

    def __init__(self):
        self.stakes: dict[str, list[StakeRecord]] = {}
        self.resolved: list[tuple[str, int]] = []
        self.fail_resolve_for: set[tuple[str, int]] = set()
        self.fail_reads_for: set[str] = set()
        self.fail_all_reads = False

    def add(self, stake: StakeRecord) -> None:
        self.stakes.setdefault(stake.staker.lower(), []).append(stake)

    async def list_candidate_stakers(self, window_blocks=None) -> list[str]:
        return [stakes[0].staker for stakes in self.stakes.values() if stakes]

    async def list_all_stakes(self, user: str) -> list[StakeRecord]:
        if self.fail_all_reads or user.lower() in self.fail_reads_for:
            raise ChainReadError(f"getStakeCount failed for {user}")
        return list(self.stakes.get(user.lower(), []))

    async def list_open_stakes(self, user: str) -> list[StakeRecord]:
        return [s for s in await self.list_all_stakes(user) if s.amount > 0 and not s.settled]

    async def resolve(self, user: str, stake_id: int) -> str:
        if (user, stake_id) in self.fail_resolve_for:
            raise ChainWriteError("ContractLogicError: execution reverted: AlreadyClaimed")
        self.resolved.append((user, stake_id))
        self.stakes[user.lower()] = [
            dataclasses.replace(s, settled=True) if s.stake_id == stake_id else s
            for s in self.stakes[user.lower()]
        ]
        return "0x" + f"{len(self.resolved):064x}"

    async def current_week(self) -> int:
        return 7

    async def cohort_info(self, week: int) -> dict:
        return {"week": week, "poolETH": 0.0, "poolUSDC": 12.5}


class FakeCompletions:
    def __init__(self, content=None, error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)


class FakeOpenAI:
    def __init__(self, content=None, error: Exception | None = None):
        self.chat = SimpleNamespace(completions=FakeCompletions(content, error))

    @property
    def calls(self) -> list[dict]:
        return self.chat.completions.calls


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def make_config():
    def _make(**overrides) -> AgentConfig:
        base = {
            "network": "base-sepolia",
            "rpc_url": "http://localhost:8545",
            "chain_id": 84532,
            "explorer_url": "https://sepolia.basescan.org",
            "private_key": "0x" + "11" * 32,
            "builder_code": "proofwell",
            "staking_contract": STAKING,
            "stable_token": STABLE,
            "lending_pool": POOL,
            "lending_receipt_token": RECEIPT,
        }
        base.update(overrides)
        return AgentConfig(**base)

    return _make


@pytest.fixture
def config(make_config) -> AgentConfig:
    return make_config()


@pytest.fixture
def ledger(tmp_path):
    store = Ledger.from_path(str(tmp_path / "agent.db"))
    yield store
    store.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def lending(gateway) -> FakeLending:
    return FakeLending(gateway)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def make_stake():
    def _make(**overrides) -> StakeRecord:
        base = {
            "staker": ALICE,
            "stake_id": 0,
            "amount": 100_000_000,
            "asset": AssetKind.STABLE,
            "goal_seconds": 3_600,
            "start_time": NOW - 30 * DAY,
            "duration_days": 7,
            "successful_days": 5,
            "settled": False,
            "cohort_week": 3,
        }
        base.update(overrides)
        return StakeRecord(**base)

    return _make
