"""
Advisory Decision Module - Model-Assisted Rebalancing

Asks a chat model whether the liquid / lending split should move, at most
once per advisory interval. The deterministic rules in core/policy.py always
run first; this only covers the ambiguous middle ground they leave.

Every call that reaches the provider and returns costs a fixed
model_inference entry and stamps last_model_call, whether or not a
Decision comes out of it. Malformed or out-of-bounds answers produce no
Decision and are only visible in the process log.
"""

import json
import logging
import math
import time
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .chain import Balances, stable_units
from .constitution import ActionTag, CostCategory, StateKey, TREASURY_LAWS
from .errors import ValidationError
from .policy import Decision

logger = logging.getLogger("treasury.advisor")


class AdvisoryResponse(BaseModel):
    """Shape the model must answer with (JSON mode)."""
    action: Literal["none", "deposit", "withdraw"]
    amount_usdc: float = 0.0
    reason: str = Field(default="", max_length=500)

    @field_validator("amount_usdc")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("amount_usdc must be finite")
        return v


def build_prompt(balances: Balances, network: str, withdraw_threshold: int) -> str:
    return (
        f"You are a DeFi treasury agent for a staking protocol on Base ({network}).\n\n"
        "Current state:\n"
        f"- Wallet ETH: {balances.native_units}\n"
        f"- Wallet USDC (liquid): {balances.liquid_stable_units}\n"
        f"- Lending pool position: {balances.lending_position_units}\n"
        f"- Total USDC value: {stable_units(balances.total_stable)}\n"
        f"- % in lending pool: {balances.lending_percent}%\n\n"
        "Rules:\n"
        "- Keep 20-30% liquid for gas and operations\n"
        "- Deposit excess to the lending pool for yield\n"
        "- If the lending position is >80% of total, consider withdrawing some to stay liquid\n"
        f"- Keep at least {stable_units(withdraw_threshold)} USDC liquid\n"
        "- If total value is very small (<$5), don't bother rebalancing\n\n"
        "Should you rebalance? Reply with JSON:\n"
        '{"action": "none" | "deposit" | "withdraw", "amount_usdc": number, "reason": "brief explanation"}'
    )


def parse_advice(content: Optional[str], balances: Balances) -> Optional[AdvisoryResponse]:
    """
    Validate a raw model answer against the current balances.

    Returns None for action "none". Raises ValidationError for anything
    malformed or out of bounds.
    """
    if not content:
        raise ValidationError("empty model response")
    try:
        advice = AdvisoryResponse.model_validate(json.loads(content))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise ValidationError(f"malformed advisory response: {e}") from e

    if advice.action == "none":
        return None
    if advice.amount_usdc <= 0:
        raise ValidationError(f"invalid amount_usdc: {advice.amount_usdc}")

    amount_raw = to_raw(advice.amount_usdc)
    if amount_raw <= 0:
        raise ValidationError(f"amount_usdc {advice.amount_usdc} is below one raw unit")
    if advice.action == "deposit" and amount_raw > balances.liquid_stable:
        raise ValidationError(
            f"deposit {advice.amount_usdc} exceeds liquid balance {balances.liquid_stable_units}"
        )
    if advice.action == "withdraw" and amount_raw > balances.lending_position:
        raise ValidationError(
            f"withdraw {advice.amount_usdc} exceeds lending position {balances.lending_position_units}"
        )
    return advice


def to_raw(amount_units: float) -> int:
    """Floor to whole raw units."""
    return int(amount_units * 10 ** TREASURY_LAWS.STABLE_DECIMALS)


class AdvisoryModule:
    """
    Usage:
        advisor = AdvisoryModule(config, ledger, lending, policy)
        if advisor.is_due():
            decision = await advisor.evaluate(balances)
    """

    def __init__(self, config, ledger, lending, policy, client=None):
        self._config = config
        self._ledger = ledger
        self._lending = lending
        self._policy = policy
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self._config.openai_api_key,
                base_url=self._config.openai_base_url or None,
                timeout=60.0,
            )
        return self._client

    def is_due(self, now_ms: Optional[int] = None) -> bool:
        if not self._config.advisory_enabled:
            return False
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        last = self._ledger.get_scalar(StateKey.LAST_MODEL_CALL)
        if last and now_ms - int(last) < self._config.advisory_interval_ms:
            return False
        return True

    async def evaluate(self, balances: Balances, now_ms: Optional[int] = None) -> Optional[Decision]:
        """One rate-limited model consultation. None when not due, 'none' or invalid."""
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        if not self.is_due(now_ms):
            return None

        from openai import OpenAIError

        prompt = build_prompt(balances, self._config.network, self._config.treasury_withdraw_threshold)
        try:
            response = await self._get_client().chat.completions.create(
                model=self._config.openai_model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                max_tokens=200,
            )
        except OpenAIError as e:
            logger.warning(f"Advisory model call failed: {e}")
            return None

        self._ledger.append_cost(
            CostCategory.MODEL_INFERENCE, TREASURY_LAWS.MODEL_INFERENCE_COST,
            f"{self._config.openai_model} rebalance decision",
        )
        self._ledger.set_scalar(StateKey.LAST_MODEL_CALL, now_ms)

        content = response.choices[0].message.content if response.choices else None
        try:
            advice = parse_advice(content, balances)
        except ValidationError as e:
            logger.warning(f"Advisory response rejected: {e}")
            return None

        if advice is None:
            logger.info("Advisory: no rebalance needed")
            return None
        return self._to_decision(advice)

    def _to_decision(self, advice: AdvisoryResponse) -> Decision:
        amount_raw = to_raw(advice.amount_usdc)
        units = advice.amount_usdc

        if advice.action == "deposit":
            tag = ActionTag.ADVISORY_DEPOSIT

            async def _execute():
                tx_hash = await self._lending.supply(amount_raw)
                self._ledger.append_action(tag, advice.reason or f"Deposited {units} USDC", tx_hash, units)
                self._ledger.append_cost(CostCategory.GAS, TREASURY_LAWS.GAS_COST_ESTIMATE, "advisory supply tx gas")
                await self._policy.track_principal_move(amount_raw)
        else:
            tag = ActionTag.ADVISORY_WITHDRAW

            async def _execute():
                tx_hash = await self._lending.withdraw(amount_raw)
                self._ledger.append_action(tag, advice.reason or f"Withdrew {units} USDC", tx_hash, units)
                self._ledger.append_cost(CostCategory.GAS, TREASURY_LAWS.GAS_COST_ESTIMATE, "advisory withdraw tx gas")
                await self._policy.track_principal_move(-amount_raw)

        return Decision(action=tag.value, reason=f"Advisory: {advice.reason}", execute=_execute)
