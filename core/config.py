"""
Agent configuration, loaded once at process start.

Values come from the environment (main.py calls load_dotenv() first).
The resulting AgentConfig is frozen and shared by every component.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .constitution import CHAIN_DEFAULTS, ZERO_ADDRESS
from .errors import ConfigError

logger = logging.getLogger("treasury.config")


def _env(key: str, fallback: Optional[str] = None) -> str:
    val = os.getenv(key, "") or fallback
    if val is None or val == "":
        raise ConfigError(f"Missing env: {key}")
    return val


def _env_int(key: str, fallback: int) -> int:
    raw = os.getenv(key, "")
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}")


def _default_db_path() -> str:
    # Persistent volume when mounted, cwd otherwise
    data_dir = Path("/data")
    return str(data_dir / "agent.db") if data_dir.is_dir() else str(Path.cwd() / "agent.db")


@dataclass(frozen=True)
class AgentConfig:
    network: str
    rpc_url: str
    chain_id: int
    explorer_url: str
    private_key: str
    builder_code: str

    # Contracts
    staking_contract: str
    stable_token: str
    lending_pool: str
    lending_receipt_token: str

    # Thresholds (raw units)
    idle_stable_threshold: int = 10_000_000              # 10 USDC
    treasury_withdraw_threshold: int = 5_000_000         # 5 USDC
    low_gas_threshold: int = 1_000_000_000_000_000       # 0.001 ETH

    # Loop
    loop_interval_seconds: int = 300
    advisory_interval_ms: int = 3_600_000

    # Stake scanning
    stake_scan_window_blocks: int = 100_000
    log_chunk_blocks: int = 10_000
    staker_allowlist: tuple[str, ...] = field(default_factory=tuple)

    # Model provider
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""

    # Storage / API
    db_path: str = "agent.db"
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: tuple[str, ...] = ("*",)

    @property
    def staking_enabled(self) -> bool:
        return self.staking_contract.lower() != ZERO_ADDRESS

    @property
    def advisory_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build config from environment. Raises ConfigError on missing/invalid values."""
        network = os.getenv("NETWORK", "base").strip().lower()
        defaults = CHAIN_DEFAULTS.get(network)
        if defaults is None:
            raise ConfigError(
                f"Unsupported NETWORK '{network}' (expected one of {sorted(CHAIN_DEFAULTS)})"
            )

        private_key = _env("PRIVATE_KEY")
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key

        allowlist = tuple(
            a.strip() for a in os.getenv("STAKER_ALLOWLIST", "").split(",") if a.strip()
        )
        cors = tuple(
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ) or ("*",)

        cfg = cls(
            network=network,
            rpc_url=_env("RPC_URL", defaults["rpc"]),
            chain_id=defaults["chain_id"],
            explorer_url=defaults["explorer"],
            private_key=private_key,
            builder_code=_env("BUILDER_CODE", "proofwell"),
            staking_contract=_env("STAKING_CONTRACT", ZERO_ADDRESS),
            stable_token=_env("STABLE_TOKEN", defaults["stable_token"]),
            lending_pool=_env("LENDING_POOL", defaults["lending_pool"]),
            lending_receipt_token=_env("LENDING_RECEIPT_TOKEN", defaults["lending_receipt"]),
            idle_stable_threshold=_env_int("IDLE_STABLE_THRESHOLD", 10_000_000),
            treasury_withdraw_threshold=_env_int("TREASURY_WITHDRAW_THRESHOLD", 5_000_000),
            low_gas_threshold=_env_int("LOW_GAS_THRESHOLD", 1_000_000_000_000_000),
            loop_interval_seconds=_env_int("LOOP_INTERVAL_SECONDS", 300),
            advisory_interval_ms=_env_int("ADVISORY_INTERVAL_MS", 3_600_000),
            stake_scan_window_blocks=_env_int("STAKE_SCAN_WINDOW_BLOCKS", 100_000),
            log_chunk_blocks=_env_int("LOG_CHUNK_BLOCKS", 10_000),
            staker_allowlist=allowlist,
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", ""),
            db_path=os.getenv("DB_PATH", "") or _default_db_path(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3001),
            cors_origins=cors,
        )

        if cfg.loop_interval_seconds <= 0:
            raise ConfigError("LOOP_INTERVAL_SECONDS must be positive")
        if cfg.log_chunk_blocks <= 0:
            raise ConfigError("LOG_CHUNK_BLOCKS must be positive")
        if not cfg.builder_code.isascii() or len(cfg.builder_code) > 255:
            raise ConfigError("BUILDER_CODE must be ASCII and at most 255 bytes")

        if not cfg.staking_enabled:
            logger.warning("No STAKING_CONTRACT — stake resolution disabled")
        if not cfg.advisory_enabled:
            logger.warning("No OPENAI_API_KEY — advisory rebalancing disabled (rules-only mode)")

        return cfg
