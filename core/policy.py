"""
Policy Engine - Deterministic Treasury Rules

Evaluated once per cycle over a single state snapshot. No I/O happens during
evaluation: each rule returns a Decision whose deferred effect performs the
on-chain call and writes its outcome to the ledger when the orchestrator
executes it.

Rules, in fixed evaluation/execution order:
  1. lending_yield     : position grew by a yield-sized delta since last cycle
  2. lending_supply    : idle stable balance above threshold → deposit excess
  3. resolve_expired   : expired stakes past the grace buffer → resolve
  4. low_gas_warning   : native balance below threshold → log only, no tx
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .chain import Balances, native_units, stable_units
from .constitution import (
    ActionTag, AssetKind, CostCategory, RevenueSource, StateKey, TREASURY_LAWS,
)
from .errors import ChainReadError
from .stake_registry import StakeRecord, format_stake, is_resolvable

logger = logging.getLogger("treasury.policy")


@dataclass
class Decision:
    """Ephemeral: produced each cycle, executed once, never persisted."""
    action: str
    reason: str
    execute: Callable[[], Awaitable[None]]
    transactional: bool = True


@dataclass
class Snapshot:
    """Everything the rules look at, gathered once per cycle."""
    now_unix: int
    balances: Optional[Balances] = None         # None when the balance read failed
    stakes: list[StakeRecord] = field(default_factory=list)


def forfeiture_revenue(stake: StakeRecord) -> float:
    """Treasury share of a failed stake, in stable units. Native stakes have no price feed → 0."""
    if stake.asset is not AssetKind.STABLE or stake.failed_days <= 0:
        return 0.0
    return stake.amount_units * TREASURY_LAWS.FORFEIT_RATE


def yield_delta(current: int, previous: Optional[int]) -> float:
    """Interest accrued since the cursor, or 0 if the delta doesn't look like interest."""
    if previous is None or current <= previous:
        return 0.0
    delta = stable_units(current - previous)
    if TREASURY_LAWS.YIELD_EPSILON < delta <= TREASURY_LAWS.YIELD_CAP:
        return delta
    if delta > TREASURY_LAWS.YIELD_CAP:
        logger.warning(f"Lending position jumped by {delta:.6f} — treated as principal, not yield")
    return 0.0


class PolicyEngine:
    """
    Usage:
        engine = PolicyEngine(config, ledger, lending, registry)
        decisions = engine.evaluate(snapshot, last_position)
        for d in decisions:
            await d.execute()
    """

    def __init__(self, config, ledger, lending, registry):
        self._config = config
        self._ledger = ledger
        self._lending = lending
        self._registry = registry

    # ============================================================
    # EVALUATION
    # ============================================================

    def evaluate(self, snapshot: Snapshot, last_position: Optional[int]) -> list[Decision]:
        decisions: list[Decision] = []
        balances = snapshot.balances

        if balances is not None:
            d = self._rule_yield(balances, last_position)
            if d:
                decisions.append(d)
            d = self._rule_idle_deposit(balances)
            if d:
                decisions.append(d)

        decisions.extend(self._rule_resolve_expired(snapshot))

        if balances is not None:
            d = self._rule_low_gas(balances)
            if d:
                decisions.append(d)

        return decisions

    def _rule_yield(self, balances: Balances, last_position: Optional[int]) -> Optional[Decision]:
        earned = yield_delta(balances.lending_position, last_position)
        if earned <= 0:
            return None

        async def _execute():
            self._ledger.append_revenue(
                RevenueSource.LENDING_YIELD, earned, None, f"Lending pool interest: {earned:.6f} USDC"
            )
            self._ledger.append_action(
                ActionTag.LENDING_YIELD, f"Earned {earned:.6f} USDC yield from lending pool",
                None, earned,
            )

        return Decision(
            action=ActionTag.LENDING_YIELD.value,
            reason=f"Lending position up {earned:.6f} USDC since last cycle",
            execute=_execute,
            transactional=False,
        )

    def _rule_idle_deposit(self, balances: Balances) -> Optional[Decision]:
        threshold = self._config.idle_stable_threshold
        liquid = balances.liquid_stable
        if liquid <= threshold:
            return None

        amount = liquid - threshold // 2   # keep some liquid for ops
        units = stable_units(amount)

        async def _execute():
            tx_hash = await self._lending.supply(amount)
            self._ledger.append_action(
                ActionTag.LENDING_SUPPLY, f"Deposited {units} USDC to lending pool", tx_hash, units
            )
            self._ledger.append_cost(CostCategory.GAS, TREASURY_LAWS.GAS_COST_ESTIMATE, "lending supply tx gas")
            await self.track_principal_move(amount)

        return Decision(
            action=ActionTag.LENDING_SUPPLY.value,
            reason=(
                f"Idle USDC ({balances.liquid_stable_units}) > threshold "
                f"({stable_units(threshold)}) → depositing {units}"
            ),
            execute=_execute,
        )

    def _rule_resolve_expired(self, snapshot: Snapshot) -> list[Decision]:
        decisions = []
        for stake in snapshot.stakes:
            if not is_resolvable(stake, snapshot.now_unix):
                continue
            decisions.append(self._resolve_decision(stake))
        return decisions

    def _resolve_decision(self, stake: StakeRecord) -> Decision:
        failed_days = stake.failed_days
        revenue = forfeiture_revenue(stake)
        user, stake_id = stake.staker, stake.stake_id

        async def _execute():
            tx_hash = await self._registry.resolve(user, stake_id)
            self._ledger.append_action(
                ActionTag.RESOLVE_EXPIRED,
                f"Resolved expired stake for {user}[{stake_id}]: "
                f"{failed_days} failed days of {stake.duration_days}",
                tx_hash, revenue,
            )
            if revenue > 0:
                self._ledger.append_revenue(
                    RevenueSource.TREASURY_SLASH, revenue, tx_hash,
                    f"40% forfeiture from {user}[{stake_id}]",
                )
            self._ledger.append_cost(CostCategory.GAS, TREASURY_LAWS.GAS_COST_ESTIMATE, "resolveExpired tx gas")

        return Decision(
            action=ActionTag.RESOLVE_EXPIRED.value,
            reason=(
                f"Stake {format_stake(stake)} expired + past buffer → resolving "
                f"({failed_days} failed days, ~${revenue:.4f} to treasury)"
            ),
            execute=_execute,
        )

    def _rule_low_gas(self, balances: Balances) -> Optional[Decision]:
        if balances.native >= self._config.low_gas_threshold:
            return None
        eth = balances.native_units

        async def _execute():
            self._ledger.append_action(
                ActionTag.LOW_GAS_WARNING, f"Low ETH: {eth}. Agent needs gas top-up.", None, 0.0, eth
            )

        return Decision(
            action=ActionTag.LOW_GAS_WARNING.value,
            reason=f"ETH balance ({eth}) below threshold ({native_units(self._config.low_gas_threshold)}) — need gas",
            execute=_execute,
            transactional=False,
        )

    # ============================================================
    # LENDING CURSOR
    # ============================================================

    async def track_principal_move(self, delta: int) -> None:
        """
        Move the lending cursor by a principal deposit (+) or withdrawal (-).

        The node may not have mined the tx yet when we re-read, so the cursor
        never lags the expected post-move position; a later shortfall just
        looks like a non-positive delta, never like yield.
        """
        raw = self._ledger.get_scalar(StateKey.LAST_LENDING_POSITION)
        expected = max((int(raw) if raw else 0) + delta, 0)
        try:
            fresh = await self._lending.position()
        except ChainReadError as e:
            logger.warning(f"Lending position re-read failed, using expected value: {e}")
            fresh = None

        if fresh is None:
            position = expected
        elif delta >= 0:
            position = max(fresh, expected)
        else:
            position = min(fresh, expected)
        self._ledger.set_scalar(StateKey.LAST_LENDING_POSITION, position)
