from __future__ import annotations

import asyncio
import json

import httpx
import openai
import pytest

from conftest import FakeOpenAI
from core.advisor import AdvisoryModule, parse_advice, to_raw
from core.chain import Balances
from core.constitution import StateKey
from core.errors import ValidationError
from core.policy import PolicyEngine

NOW_MS = 1_800_000_000_000


def _advisor(make_config, ledger, lending, registry, client, **overrides):
    config = make_config(openai_api_key="sk-test", **overrides)
    policy = PolicyEngine(config, ledger, lending, registry)
    return AdvisoryModule(config, ledger, lending, policy, client=client)


def _balances(liquid=30_000_000, position=10_000_000) -> Balances:
    return Balances(native=10 ** 16, liquid_stable=liquid, lending_position=position)


def _answer(action="deposit", amount=5.0, reason="rebalance") -> str:
    return json.dumps({"action": action, "amount_usdc": amount, "reason": reason})


def test_disabled_without_api_key(config, ledger, lending, registry) -> None:
    policy = PolicyEngine(config, ledger, lending, registry)
    client = FakeOpenAI(_answer())
    advisor = AdvisoryModule(config, ledger, lending, policy, client=client)

    assert asyncio.run(advisor.evaluate(_balances(), NOW_MS)) is None
    assert client.calls == []
    assert ledger.total_costs() == 0.0


def test_rate_limited_to_one_call_per_interval(make_config, ledger, lending, registry) -> None:
    client = FakeOpenAI(_answer(action="none"))
    advisor = _advisor(make_config, ledger, lending, registry, client)

    asyncio.run(advisor.evaluate(_balances(), NOW_MS))
    asyncio.run(advisor.evaluate(_balances(), NOW_MS + 60_000))
    asyncio.run(advisor.evaluate(_balances(), NOW_MS + 3_600_000))

    assert len(client.calls) == 2
    assert ledger.get_scalar(StateKey.LAST_MODEL_CALL) == str(NOW_MS + 3_600_000)


def test_every_returned_call_is_costed(make_config, ledger, lending, registry) -> None:
    client = FakeOpenAI("not json at all")
    advisor = _advisor(make_config, ledger, lending, registry, client)

    assert asyncio.run(advisor.evaluate(_balances(), NOW_MS)) is None
    assert ledger.costs_by_category() == [{"category": "model_inference", "total": pytest.approx(0.0001)}]
    assert ledger.get_scalar(StateKey.LAST_MODEL_CALL) == str(NOW_MS)


def test_provider_error_costs_nothing(make_config, ledger, lending, registry) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client = FakeOpenAI(error=openai.APIConnectionError(request=request))
    advisor = _advisor(make_config, ledger, lending, registry, client)

    assert asyncio.run(advisor.evaluate(_balances(), NOW_MS)) is None
    assert ledger.total_costs() == 0.0
    assert ledger.get_scalar(StateKey.LAST_MODEL_CALL) is None


def test_request_uses_json_mode(make_config, ledger, lending, registry) -> None:
    client = FakeOpenAI(_answer(action="none"))
    advisor = _advisor(make_config, ledger, lending, registry, client, openai_model="gpt-test")

    asyncio.run(advisor.evaluate(_balances(), NOW_MS))

    call = client.calls[0]
    assert call["model"] == "gpt-test"
    assert call["response_format"] == {"type": "json_object"}
    assert "% in lending pool: 25%" in call["messages"][0]["content"]


def test_deposit_decision_executes_and_moves_cursor(make_config, ledger, lending, registry) -> None:
    ledger.set_scalar(StateKey.LAST_LENDING_POSITION, 10_000_000)
    client = FakeOpenAI(_answer(action="deposit", amount=5.0))
    advisor = _advisor(make_config, ledger, lending, registry, client)

    decision = asyncio.run(advisor.evaluate(_balances(), NOW_MS))
    assert decision is not None and decision.action == "advisory_deposit"

    asyncio.run(decision.execute())
    assert lending.supplied == [5_000_000]
    assert ledger.recent_actions(1)[0]["type"] == "advisory_deposit"
    assert ledger.get_scalar(StateKey.LAST_LENDING_POSITION) == str(15_000_000)
    assert ledger.total_revenue() == 0.0


def test_withdraw_decision_moves_cursor_down(make_config, ledger, lending, registry, gateway) -> None:
    ledger.set_scalar(StateKey.LAST_LENDING_POSITION, 10_000_000)
    gateway.balances = _balances()
    client = FakeOpenAI(_answer(action="withdraw", amount=4.0))
    advisor = _advisor(make_config, ledger, lending, registry, client)

    decision = asyncio.run(advisor.evaluate(_balances(), NOW_MS))
    asyncio.run(decision.execute())

    assert lending.withdrawn == [4_000_000]
    assert ledger.get_scalar(StateKey.LAST_LENDING_POSITION) == str(6_000_000)


@pytest.mark.parametrize(
    "content",
    [
        _answer(action="deposit", amount=0),
        _answer(action="deposit", amount=-3),
        _answer(action="deposit", amount=1e-7),         # below one raw unit
        _answer(action="deposit", amount=31.0),          # more than liquid
        _answer(action="withdraw", amount=10.5),         # more than position
        _answer(action="swap"),
        json.dumps({"action": "deposit", "amount_usdc": "lots"}),
        '{"action": "deposit", "amount_usdc": NaN}',
        "",
    ],
)
def test_invalid_advice_rejected(content) -> None:
    with pytest.raises(ValidationError):
        parse_advice(content, _balances())


def test_none_action_yields_no_decision() -> None:
    assert parse_advice(_answer(action="none", amount=0), _balances()) is None


def test_amount_floors_to_raw_units() -> None:
    advice = parse_advice(_answer(action="deposit", amount=2.0000009), _balances())
    assert to_raw(advice.amount_usdc) == 2_000_000
