"""
Stake Treasury Agent - main entry point

Loads config, connects to the chain, wires the components, runs the
decision cycle as a background task and serves the status API.
One file to understand how everything connects.

Usage:
    python main.py
"""

import os
import re
import sys
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class KeyRedactor(logging.Filter):
    """
    Scrubs the signing key from log records.

    Bare 64-hex runs are always masked. Tx hashes and calldata keep their 0x
    prefix and pass through, unless they spell out the configured key.
    """
    _BARE_HEX64 = re.compile(r"(?<![0-9a-fA-Fx])[0-9a-fA-F]{64}(?![0-9a-fA-F])")

    def __init__(self):
        super().__init__()
        self._key: Optional[re.Pattern] = None

    def watch_key(self, private_key: str) -> None:
        bare = private_key[2:] if private_key.lower().startswith("0x") else private_key
        self._key = re.compile(re.escape(bare), re.IGNORECASE) if bare else None

    def scrub(self, text: str) -> str:
        if self._key is not None:
            text = self._key.sub("[REDACTED]", text)
        return self._BARE_HEX64.sub("[REDACTED]", text)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        scrubbed = self.scrub(message)
        if scrubbed != message:
            record.msg, record.args = scrubbed, None
        return True


key_redactor = KeyRedactor()
for _h in logging.root.handlers:
    _h.addFilter(key_redactor)

logger = logging.getLogger("treasury.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.config import AgentConfig
from core.errors import ChainReadError, ConfigError
from core.ledger import Ledger
from core.chain import ChainGateway
from core.lending import LendingPool
from core.stake_registry import StakeRegistryReader
from core.policy import PolicyEngine
from core.advisor import AdvisoryModule
from core.orchestrator import CycleOrchestrator
from api.server import create_app


# ============================================================
# WIRING
# ============================================================

def build_components(config: AgentConfig) -> dict:
    """Connect to the chain and construct every component. Fatal on failure."""
    gateway = ChainGateway(config)
    try:
        gateway.initialize()
    except (ChainReadError, ValueError) as e:
        raise SystemExit(f"Startup failed: {e}")

    ledger = Ledger.from_path(config.db_path)
    lending = LendingPool(gateway, config)
    registry = StakeRegistryReader(gateway, config)
    policy = PolicyEngine(config, ledger, lending, registry)
    advisor = AdvisoryModule(config, ledger, lending, policy)
    orchestrator = CycleOrchestrator(config, ledger, gateway, registry, policy, advisor)

    return {
        "ledger": ledger,
        "gateway": gateway,
        "registry": registry,
        "orchestrator": orchestrator,
    }


def create_treasury_app(config: AgentConfig):
    """Create the fully wired FastAPI app."""
    parts = build_components(config)
    ledger = parts["ledger"]
    gateway = parts["gateway"]
    orchestrator = parts["orchestrator"]

    @asynccontextmanager
    async def lifespan(app):
        """Startup and shutdown."""
        logger.info("=" * 60)
        logger.info("Stake treasury agent starting")
        logger.info(f"Network:  {config.network} (chain {config.chain_id})")
        logger.info(f"Agent:    {gateway.address}")
        logger.info(f"Staking:  {config.staking_contract}")
        logger.info(f"Loop:     every {config.loop_interval_seconds}s")
        logger.info(f"Advisory: {'on' if config.advisory_enabled else 'off'}")
        logger.info("=" * 60)

        orchestrator.record_startup()
        loop_task = asyncio.create_task(orchestrator.run_forever())

        yield

        logger.info("Shutting down...")
        loop_task.cancel()
        await orchestrator.stop()
        ledger.close()
        logger.info("Goodbye.")

    app = create_app(
        config=config,
        ledger=ledger,
        gateway=gateway,
        registry=parts["registry"],
        orchestrator=orchestrator,
    )

    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan

    return app


# ============================================================
# ENTRY POINT
# ============================================================

def main() -> None:
    try:
        config = AgentConfig.from_env()
    except ConfigError as e:
        logger.critical(f"Configuration error: {e}")
        sys.exit(1)

    key_redactor.watch_key(config.private_key)
    app = create_treasury_app(config)
    logger.info(f"Starting server on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
