"""
Discipline attestation for a wallet's staking history.

Served by the paid /attestation/{wallet} endpoint. On-chain stake records
are the primary source; once the contract has zeroed a wallet's resolved
stakes, the agent's own resolve_expired log is used instead.

    score = round(success_rate * 100 * (0.5 + 0.5 * min(total_days / 30, 1)))
"""

import re
from datetime import datetime, timezone
from typing import Optional

from .constitution import AssetKind, TREASURY_LAWS
from .stake_registry import StakeRecord

ATTESTATION_SOURCE = "treasury-agent"

_RESOLVE_DETAIL = re.compile(r"(\d+) failed days of (\d+)")


def discipline_score(success_rate: float, total_days: int) -> int:
    """0..100. Zero days of history scores 0; full weight at 30 days."""
    if total_days <= 0:
        return 0
    rate = min(max(success_rate, 0.0), 1.0)
    weight = min(total_days / TREASURY_LAWS.DISCIPLINE_FULL_WEIGHT_DAYS, 1.0)
    return max(0, min(100, round(rate * 100 * (0.5 + 0.5 * weight))))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def empty_attestation(wallet: str) -> dict:
    return {
        "wallet": wallet,
        "isStaking": False,
        "totalStakes": 0,
        "stakeAmount": "0",
        "stakeAsset": "none",
        "daysCompleted": 0,
        "totalDays": 0,
        "successRate": 0,
        "disciplineScore": 0,
        "isActive": False,
        "timestamp": _now_iso(),
        "source": ATTESTATION_SOURCE,
    }


def build_attestation(wallet: str, stakes: list[StakeRecord], now_unix: int) -> dict:
    """Aggregate every live (non-zeroed) stake of a wallet."""
    live = [s for s in stakes if s.amount > 0]
    if not live:
        return empty_attestation(wallet)

    successful = sum(s.successful_days for s in live)
    duration = sum(s.duration_days for s in live)
    stable_total = sum(s.amount for s in live if s.asset is AssetKind.STABLE)
    native_total = sum(s.amount for s in live if s.asset is AssetKind.NATIVE)
    active = any(not s.settled and now_unix < s.end_time for s in live)

    success_rate = min(successful / duration, 1.0) if duration > 0 else 0.0
    if stable_total > 0:
        amount_str = f"{stable_total / 10 ** TREASURY_LAWS.STABLE_DECIMALS} USDC"
    else:
        amount_str = f"{native_total / 10 ** TREASURY_LAWS.NATIVE_DECIMALS} ETH"

    return {
        "wallet": wallet,
        "isStaking": True,
        "totalStakes": len(live),
        "stakeAmount": amount_str,
        "stakeAsset": "USDC" if stable_total > 0 else "ETH",
        "daysCompleted": successful,
        "totalDays": duration,
        "successRate": round(success_rate, 2),
        "disciplineScore": discipline_score(success_rate, duration),
        "isActive": active,
        "timestamp": _now_iso(),
        "source": ATTESTATION_SOURCE,
    }


def attestation_from_ledger(wallet: str, resolved: list[dict]) -> Optional[dict]:
    """
    Rebuild an attestation from resolve_expired rows naming this wallet.
    Rows without a parseable "N failed days of M" detail are ignored.
    """
    failed = 0
    duration = 0
    forfeited = 0.0
    counted = 0
    for row in resolved:
        match = _RESOLVE_DETAIL.search(row.get("description", ""))
        if not match:
            continue
        row_failed, row_duration = int(match.group(1)), int(match.group(2))
        failed += min(row_failed, row_duration)
        duration += row_duration
        forfeited += float(row.get("amount_usdc") or 0.0)
        counted += 1

    if counted == 0:
        return None

    completed = max(duration - failed, 0)
    success_rate = completed / duration if duration > 0 else 0.0
    return {
        **empty_attestation(wallet),
        "isStaking": True,
        "totalStakes": counted,
        "stakeAmount": f"{forfeited:.2f} USDC (forfeited)",
        "stakeAsset": "USDC",
        "daysCompleted": completed,
        "totalDays": duration,
        "successRate": round(success_rate, 2),
        "disciplineScore": discipline_score(success_rate, duration),
        "isActive": False,
    }
