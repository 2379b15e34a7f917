"""
Cycle Orchestrator - One Pass Per Interval

    IDLE → GATHERING → DECIDING → EXECUTING → SETTLED → IDLE

GATHERING  balances + candidate stakers + their open stakes, read in parallel
DECIDING   PolicyEngine.evaluate() over the snapshot; lending cursor moved to
           the snapshot position
EXECUTING  each Decision awaited in order, each in its own error boundary;
           then the advisory module if it is due
SETTLED    cycle bookkeeping + one fixed compute cost entry

A tick that lands while a cycle is still running is skipped, never queued.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .chain import Balances
from .constitution import ActionTag, CostCategory, StateKey, TREASURY_LAWS
from .errors import ChainReadError, LedgerWriteError, sanitize_error
from .policy import Decision, Snapshot
from .stake_registry import StakeRecord

logger = logging.getLogger("treasury.cycle")


class CycleState(Enum):
    IDLE = "idle"
    GATHERING = "gathering"
    DECIDING = "deciding"
    EXECUTING = "executing"
    SETTLED = "settled"


class CycleOrchestrator:
    """
    Usage:
        orchestrator = CycleOrchestrator(config, ledger, gateway, registry, policy, advisor)
        task = asyncio.create_task(orchestrator.run_forever())
    """

    def __init__(self, config, ledger, gateway, registry, policy, advisor=None):
        self._config = config
        self._ledger = ledger
        self._gateway = gateway
        self._registry = registry
        self._policy = policy
        self._advisor = advisor

        self.state = CycleState.IDLE
        self._running: bool = False
        self._task: Optional[asyncio.Task] = None
        self.cycles_skipped: int = 0
        self.started_at: float = time.time()

    @property
    def is_running(self) -> bool:
        return self._running

    def record_startup(self) -> None:
        self._ledger.append_action(
            ActionTag.STARTUP,
            f"Treasury agent started on {self._config.network} | wallet {self._gateway.address}",
        )

    # ============================================================
    # GATHERING
    # ============================================================

    async def _read_balances(self) -> Optional[Balances]:
        try:
            return await self._gateway.read_balances()
        except ChainReadError as e:
            logger.warning(f"Balance read failed, skipping balance rules this cycle: {e}")
            return None

    async def _open_stakes_for(self, user: str) -> list[StakeRecord]:
        try:
            return await self._registry.list_open_stakes(user)
        except ChainReadError as e:
            logger.warning(f"Stake read failed for {user[:10]}..., retry next cycle: {e}")
            return []

    async def _read_stakes(self) -> list[StakeRecord]:
        if not self._config.staking_enabled:
            return []
        stakers = await self._registry.list_candidate_stakers()
        per_user = await asyncio.gather(*(self._open_stakes_for(u) for u in stakers))
        return [stake for stakes in per_user for stake in stakes]

    async def gather(self, now_unix: Optional[int] = None) -> Snapshot:
        now_unix = now_unix if now_unix is not None else int(time.time())
        balances, stakes = await asyncio.gather(self._read_balances(), self._read_stakes())
        return Snapshot(now_unix=now_unix, balances=balances, stakes=stakes)

    # ============================================================
    # EXECUTION
    # ============================================================

    async def _execute(self, decision: Decision, executed: list[str]) -> None:
        logger.info(f"[decide] {decision.action}: {decision.reason}")
        try:
            await decision.execute()
        except LedgerWriteError as e:
            # The effect may already be on-chain: never record it as failed
            logger.critical(
                f"UNCONFIRMED EFFECT — ledger write failed after {decision.action} "
                f"({decision.reason}): {e}. Reconcile manually."
            )
            return
        except Exception as e:
            reason = sanitize_error(e)
            logger.error(f"[decide] Failed {decision.action}: {reason}")
            try:
                self._ledger.append_action(decision.action, f"FAILED: {reason}", None, 0.0, 0.0, False)
            except LedgerWriteError as le:
                logger.critical(f"Could not record failed {decision.action} ({reason}): {le}")
            return
        executed.append(f"{decision.action}: {decision.reason}")

    async def _run_advisory(self, executed: list[str]) -> None:
        if self._advisor is None or not self._advisor.is_due():
            return
        # Rule decisions may have moved funds: advise on fresh balances
        balances = await self._read_balances()
        if balances is None:
            return
        decision = await self._advisor.evaluate(balances)
        if decision is not None:
            await self._execute(decision, executed)

    # ============================================================
    # CYCLE
    # ============================================================

    async def run_cycle(self, now_unix: Optional[int] = None) -> Optional[list[str]]:
        """
        One full pass. Returns the executed "action: reason" lines, or None
        when skipped because another pass is still running.
        """
        if self._running:
            self.cycles_skipped += 1
            logger.warning("Cycle: previous cycle still running — skipping this tick")
            return None
        self._running = True
        try:
            return await self._cycle(now_unix)
        except Exception as e:
            reason = sanitize_error(e)
            logger.error(f"Cycle failed: {reason}")
            try:
                self._ledger.append_action(ActionTag.CYCLE_ERROR, f"Cycle failed: {reason}", success=False)
            except LedgerWriteError as le:
                logger.critical(f"Could not record cycle failure ({reason}): {le}")
            return []
        finally:
            self._running = False
            self.state = CycleState.IDLE

    async def _cycle(self, now_unix: Optional[int]) -> list[str]:
        cycle = int(self._ledger.get_scalar(StateKey.CYCLE_COUNT) or 0) + 1
        self._ledger.set_scalar(StateKey.CYCLE_COUNT, cycle)
        logger.info(f"--- Cycle #{cycle} ---")

        self.state = CycleState.GATHERING
        snapshot = await self.gather(now_unix)

        self.state = CycleState.DECIDING
        raw_cursor = self._ledger.get_scalar(StateKey.LAST_LENDING_POSITION)
        last_position = int(raw_cursor) if raw_cursor else None
        decisions = self._policy.evaluate(snapshot, last_position)
        if snapshot.balances is not None:
            self._ledger.set_scalar(StateKey.LAST_LENDING_POSITION, snapshot.balances.lending_position)

        self.state = CycleState.EXECUTING
        executed: list[str] = []
        for decision in decisions:
            await self._execute(decision, executed)
        await self._run_advisory(executed)

        self.state = CycleState.SETTLED
        self._ledger.set_scalar(StateKey.LAST_CYCLE, datetime.now(timezone.utc).isoformat())
        self._ledger.set_scalar(StateKey.LAST_CYCLE_ACTIONS, json.dumps(executed))
        self._ledger.append_cost(
            CostCategory.COMPUTE, TREASURY_LAWS.COMPUTE_COST_PER_CYCLE, f"Cycle #{cycle} compute"
        )

        if executed:
            logger.info(f"Cycle #{cycle}: {len(executed)} action(s) executed")
        else:
            logger.info(f"Cycle #{cycle}: no actions needed")
        return executed

    # ============================================================
    # LOOP
    # ============================================================

    async def run_forever(self) -> None:
        """First pass immediately, then one tick every loop_interval_seconds."""
        interval = self._config.loop_interval_seconds
        logger.info(f"Cycle loop started (every {interval}s)")
        while True:
            if self._running:
                self.cycles_skipped += 1
                logger.warning("Cycle: previous cycle still running — skipping this tick")
            else:
                self._task = asyncio.create_task(self.run_cycle())
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def get_status(self) -> dict:
        raw_actions = self._ledger.get_scalar(StateKey.LAST_CYCLE_ACTIONS)
        return {
            "state": self.state.value,
            "running": self._running,
            "cycle_count": int(self._ledger.get_scalar(StateKey.CYCLE_COUNT) or 0),
            "last_cycle": self._ledger.get_scalar(StateKey.LAST_CYCLE),
            "last_cycle_actions": json.loads(raw_actions) if raw_actions else [],
            "cycles_skipped": self.cycles_skipped,
            "loop_interval_seconds": self._config.loop_interval_seconds,
            "uptime_seconds": int(time.time() - self.started_at),
        }
