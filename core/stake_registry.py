"""
Stake Registry Reader

Finds stakers on the staking contract, reads their stake records and
classifies each one as pending, resolvable or settled.

Candidate discovery unions two sources:
- Staked* events in a bounded recent block window (queried in chunks,
  public RPCs cap eth_getLogs ranges)
- a static allow-list, so older stakes that are still open are not lost
  once their Staked event falls out of the window
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .chain import native_units, stable_units
from .constitution import AssetKind, TREASURY_LAWS
from .errors import ChainReadError

logger = logging.getLogger("treasury.stakes")


STAKING_ABI = [
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getStakeCount",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "stakeId", "type": "uint256"},
        ],
        "name": "getStake",
        "outputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "goalSeconds", "type": "uint256"},
            {"name": "startTimestamp", "type": "uint256"},
            {"name": "durationDays", "type": "uint256"},
            {"name": "successfulDays", "type": "uint256"},
            {"name": "claimed", "type": "bool"},
            {"name": "isUSDC", "type": "bool"},
            {"name": "cohortWeek", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "stakeId", "type": "uint256"},
        ],
        "name": "resolveExpired",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getCurrentWeek",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "week", "type": "uint256"}],
        "name": "getCohortInfo",
        "outputs": [
            {"name": "poolETH", "type": "uint256"},
            {"name": "poolUSDC", "type": "uint256"},
            {"name": "remainingWinnersETH", "type": "uint256"},
            {"name": "remainingWinnersUSDC", "type": "uint256"},
            {"name": "totalStakersETH", "type": "uint256"},
            {"name": "totalStakersUSDC", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

# StakedX(address indexed user, uint256 indexed stakeId, uint256 amount,
#         uint256 goalSeconds, uint256 durationDays, uint256 startTimestamp, uint256 cohortWeek)
STAKE_EVENT_SIGNATURES = (
    "StakedETH(address,uint256,uint256,uint256,uint256,uint256,uint256)",
    "StakedUSDC(address,uint256,uint256,uint256,uint256,uint256,uint256)",
)


@dataclass(frozen=True)
class StakeRecord:
    staker: str
    stake_id: int
    amount: int               # raw units of `asset`
    asset: AssetKind
    goal_seconds: int
    start_time: int           # unix seconds
    duration_days: int
    successful_days: int
    settled: bool
    cohort_week: int

    @property
    def end_time(self) -> int:
        return self.start_time + self.duration_days * TREASURY_LAWS.SECONDS_PER_DAY

    @property
    def failed_days(self) -> int:
        return max(self.duration_days - self.successful_days, 0)

    @property
    def amount_units(self) -> float:
        if self.asset is AssetKind.STABLE:
            return stable_units(self.amount)
        return native_units(self.amount)

    @classmethod
    def from_tuple(cls, staker: str, stake_id: int, result) -> "StakeRecord":
        amount, goal_seconds, start, duration, successful, claimed, is_usdc, cohort = result
        return cls(
            staker=staker,
            stake_id=int(stake_id),
            amount=int(amount),
            asset=AssetKind.STABLE if is_usdc else AssetKind.NATIVE,
            goal_seconds=int(goal_seconds),
            start_time=int(start),
            duration_days=int(duration),
            successful_days=int(successful),
            settled=bool(claimed),
            cohort_week=int(cohort),
        )


def is_resolvable(record: StakeRecord, now_unix: int) -> bool:
    """Expired and past the contract's grace window, and not yet settled."""
    if record.settled or record.amount <= 0:
        return False
    return now_unix > record.end_time + TREASURY_LAWS.RESOLUTION_BUFFER_SECONDS


def classify(record: StakeRecord, now_unix: int) -> str:
    if record.settled or record.amount <= 0:
        return "settled"
    if is_resolvable(record, now_unix):
        return "resolvable"
    return "pending"


def format_stake(record: StakeRecord) -> str:
    unit = "USDC" if record.asset is AssetKind.STABLE else "ETH"
    return (
        f"{record.staker[:8]}...[{record.stake_id}] | {record.amount_units} {unit} | "
        f"{record.successful_days}/{record.duration_days} days | settled={record.settled}"
    )


def _topic_to_address(topic) -> str:
    hex_topic = topic.hex() if hasattr(topic, "hex") else str(topic)
    clean = hex_topic.lower().replace("0x", "").rjust(64, "0")
    return f"0x{clean[-40:]}"


class StakeRegistryReader:
    """
    Usage:
        registry = StakeRegistryReader(gateway, config)
        for user in await registry.list_candidate_stakers(100_000):
            for stake in await registry.list_open_stakes(user):
                if is_resolvable(stake, now): ...
    """

    def __init__(self, gateway, config):
        self._gateway = gateway
        self._config = config
        self._contract = None

    @property
    def contract(self):
        if self._contract is None:
            self._contract = self._gateway.contract(self._config.staking_contract, STAKING_ABI)
        return self._contract

    # ============================================================
    # DISCOVERY
    # ============================================================

    async def _scan_stake_events(self, window_blocks: int) -> list[str]:
        from web3 import Web3

        current = await self._gateway.block_number()
        start_block = max(0, current - window_blocks)
        chunk = max(1, int(self._config.log_chunk_blocks))
        topics = [Web3.to_hex(Web3.keccak(text=sig)) for sig in STAKE_EVENT_SIGNATURES]
        address = Web3.to_checksum_address(self._config.staking_contract)

        users: list[str] = []
        for start in range(start_block, current + 1, chunk):
            end = min(current, start + chunk - 1)
            logs = await self._gateway.get_logs({
                "address": address,
                "fromBlock": start,
                "toBlock": end,
                "topics": [topics],      # OR across both event kinds
            })
            for row in logs:
                row_topics = row["topics"]
                if len(row_topics) < 2:
                    continue
                users.append(Web3.to_checksum_address(_topic_to_address(row_topics[1])))
        return users

    async def list_candidate_stakers(self, window_blocks: Optional[int] = None) -> list[str]:
        """Event-window stakers unioned with the allow-list, de-duplicated, order kept."""
        from web3 import Web3

        window = window_blocks if window_blocks is not None else self._config.stake_scan_window_blocks
        try:
            observed = await self._scan_stake_events(window)
        except ChainReadError as e:
            logger.warning(f"Stake event scan failed, using allow-list only: {e}")
            observed = []

        seen: dict[str, str] = {}
        for addr in [*observed, *self._config.staker_allowlist]:
            try:
                checksum = Web3.to_checksum_address(addr)
            except ValueError:
                logger.warning(f"Ignoring malformed staker address: {addr!r}")
                continue
            seen.setdefault(checksum.lower(), checksum)
        return list(seen.values())

    # ============================================================
    # STAKE READS
    # ============================================================

    async def stake_count(self, user: str) -> int:
        return int(await self._gateway.call(self.contract.functions.getStakeCount(user), "getStakeCount"))

    async def get_stake(self, user: str, stake_id: int) -> StakeRecord:
        result = await self._gateway.call(self.contract.functions.getStake(user, stake_id), "getStake")
        return StakeRecord.from_tuple(user, stake_id, result)

    async def list_all_stakes(self, user: str) -> list[StakeRecord]:
        """Every stake id 0..next_id-1 for a user, unfiltered, in id order."""
        count = await self.stake_count(user)
        if count <= 0:
            return []
        return list(await asyncio.gather(*(self.get_stake(user, i) for i in range(count))))

    async def list_open_stakes(self, user: str) -> list[StakeRecord]:
        return [s for s in await self.list_all_stakes(user) if s.amount > 0 and not s.settled]

    async def current_week(self) -> int:
        return int(await self._gateway.call(self.contract.functions.getCurrentWeek(), "getCurrentWeek"))

    async def cohort_info(self, week: int) -> dict:
        result = await self._gateway.call(self.contract.functions.getCohortInfo(week), "getCohortInfo")
        pool_eth, pool_usdc, winners_eth, winners_usdc, stakers_eth, stakers_usdc = result
        return {
            "week": int(week),
            "poolETH": native_units(int(pool_eth)),
            "poolUSDC": stable_units(int(pool_usdc)),
            "remainingWinnersETH": int(winners_eth),
            "remainingWinnersUSDC": int(winners_usdc),
            "totalStakersETH": int(stakers_eth),
            "totalStakersUSDC": int(stakers_usdc),
        }

    # ============================================================
    # WRITE
    # ============================================================

    async def resolve(self, user: str, stake_id: int) -> str:
        from web3 import Web3

        data = Web3.to_bytes(hexstr=self.contract.encode_abi("resolveExpired", args=[user, stake_id]))
        return await self._gateway.submit(self.contract.address, data)
