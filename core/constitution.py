"""
TREASURY LAWS - Layer 0 (Immutable)

Hardcoded economic constants and chain defaults for the treasury agent.
Operators tune thresholds through the environment (core/config.py);
the values here are fixed for the life of the code.

Designed for: unattended staking-protocol treasury
"""

from dataclasses import dataclass
from enum import Enum
from typing import Final


class AssetKind(Enum):
    """Asset a stake is denominated in."""
    STABLE = "stable"      # 6-decimal stable asset (USDC)
    NATIVE = "native"      # 18-decimal native asset (ETH)


class ActionTag(str, Enum):
    """Symbolic tags written to the action log."""
    STARTUP = "startup"
    CYCLE_ERROR = "cycle_error"
    LENDING_YIELD = "lending_yield"
    LENDING_SUPPLY = "lending_supply"
    RESOLVE_EXPIRED = "resolve_expired"
    LOW_GAS_WARNING = "low_gas_warning"
    ADVISORY_DEPOSIT = "advisory_deposit"
    ADVISORY_WITHDRAW = "advisory_withdraw"


class RevenueSource(str, Enum):
    LENDING_YIELD = "lending_yield"
    TREASURY_SLASH = "treasury_slash"
    X402_ATTESTATION = "x402_attestation"


class CostCategory(str, Enum):
    COMPUTE = "compute"
    GAS = "gas"
    MODEL_INFERENCE = "model_inference"


class StateKey(str, Enum):
    """RunState cursors. Every cursor read/write goes through the ledger."""
    CYCLE_COUNT = "cycle_count"
    LAST_CYCLE = "last_cycle"
    LAST_CYCLE_ACTIONS = "last_cycle_actions"
    LAST_LENDING_POSITION = "last_lending_position"
    LAST_MODEL_CALL = "last_model_call"


# ============================================================
# TREASURY LAWS
# ============================================================

@dataclass(frozen=True)
class TreasuryLaws:
    """Frozen dataclass = truly immutable at runtime."""

    # --- UNITS ---
    STABLE_DECIMALS: Final[int] = 6
    NATIVE_DECIMALS: Final[int] = 18

    # --- STAKE RESOLUTION ---
    SECONDS_PER_DAY: Final[int] = 86_400
    RESOLUTION_BUFFER_SECONDS: Final[int] = 7 * 86_400   # contract's own grace window
    FORFEIT_RATE: Final[float] = 0.40                    # share of a failed stake sent to treasury

    # --- YIELD DETECTION ---
    YIELD_EPSILON: Final[float] = 0.000001
    YIELD_CAP: Final[float] = 1.0                        # anything bigger is principal, not interest

    # --- FIXED COST ESTIMATES (stable units) ---
    COMPUTE_COST_PER_CYCLE: Final[float] = 0.0006        # $5/mo hosting, 12 cycles/hr
    GAS_COST_ESTIMATE: Final[float] = 0.005              # per L2 tx
    MODEL_INFERENCE_COST: Final[float] = 0.0001          # per advisory call

    # --- PAID ATTESTATION ---
    ATTESTATION_PRICE: Final[float] = 0.01
    ATTESTATION_PRICE_RAW: Final[int] = 10_000           # 0.01 in 6 decimals
    DISCIPLINE_FULL_WEIGHT_DAYS: Final[int] = 30

    # --- API ---
    MAX_ACTIONS_PAGE: Final[int] = 200
    DEFAULT_ACTIONS_PAGE: Final[int] = 50

    # --- ERRORS ---
    MAX_ERROR_REASON_CHARS: Final[int] = 120


TREASURY_LAWS = TreasuryLaws()


ZERO_ADDRESS: Final[str] = "0x0000000000000000000000000000000000000000"


# ============================================================
# CHAIN DEFAULTS
# ============================================================

CHAIN_DEFAULTS = {
    "base": {
        "rpc": "https://mainnet.base.org",
        "chain_id": 8453,
        "stable_token": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",      # USDC
        "lending_pool": "0xA238Dd80C259a72e81d7e4664a9801593F98d1c5",      # Aave V3 Pool
        "lending_receipt": "0x4e65fE4DBa92790696d040ac24Aa414708F5c0Ab",   # aBasUSDC
        "explorer": "https://basescan.org",
        "native_symbol": "ETH",
    },
    "base-sepolia": {
        "rpc": "https://sepolia.base.org",
        "chain_id": 84532,
        "stable_token": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "lending_pool": "0x07eA79F68B2B3df564D0A34F8e19D9B1e339814b",
        "lending_receipt": "0xf53B60F4006cab2b3C4688ce41fD5362427A2A66",
        "explorer": "https://sepolia.basescan.org",
        "native_symbol": "ETH",
    },
}
