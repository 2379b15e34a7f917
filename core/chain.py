"""
Chain Gateway - On-Chain Read/Write Layer

Bridges policy decisions (Python) and blockchain execution.
All reads and writes for the agent's own account go through here.

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI: only the functions we call, no compiled JSON needed
- Every submitted transaction carries the attribution suffix (core/builder_code.py)
- Gas estimation + 20% buffer, nonce from the pending pool
- Submission returns on acknowledgment (tx hash), not on confirmation
- No retries here: a failed read raises ChainReadError, a failed write raises
  ChainWriteError with a sanitized reason. The cycle loop decides what to do.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from web3.exceptions import ContractLogicError

from .builder_code import append_builder_code
from .constitution import TREASURY_LAWS
from .errors import ChainReadError, ChainWriteError, sanitize_error

logger = logging.getLogger("treasury.chain")


# ============================================================
# MINIMAL ABI: only functions we call at runtime
# ============================================================

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

DEFAULT_GAS_LIMIT = 200_000


def _is_revert(err: Exception) -> bool:
    return "revert" in str(err).lower()


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class Balances:
    """Agent balances in raw on-chain units."""
    native: int
    liquid_stable: int
    lending_position: int

    @property
    def native_units(self) -> float:
        return self.native / 10 ** TREASURY_LAWS.NATIVE_DECIMALS

    @property
    def liquid_stable_units(self) -> float:
        return self.liquid_stable / 10 ** TREASURY_LAWS.STABLE_DECIMALS

    @property
    def lending_position_units(self) -> float:
        return self.lending_position / 10 ** TREASURY_LAWS.STABLE_DECIMALS

    @property
    def total_stable(self) -> int:
        return self.liquid_stable + self.lending_position

    @property
    def lending_percent(self) -> int:
        total = self.total_stable
        return (self.lending_position * 100) // total if total > 0 else 0


def stable_units(raw: int) -> float:
    return raw / 10 ** TREASURY_LAWS.STABLE_DECIMALS


def native_units(raw: int) -> float:
    return raw / 10 ** TREASURY_LAWS.NATIVE_DECIMALS


# ============================================================
# CHAIN GATEWAY
# ============================================================

class ChainGateway:
    """
    Read/write access to the agent account, its balances and lending position.

    Usage:
        gateway = ChainGateway(config)
        gateway.initialize()                 # raises ChainReadError if RPC unreachable
        balances = await gateway.read_balances()
        tx_hash = await gateway.submit(pool_address, calldata)
    """

    def __init__(self, config):
        self._config = config
        self._w3 = None
        self._account = None
        self._stable = None
        self._receipt_token = None
        self._initialized: bool = False

        self._last_error: str = ""
        self._tx_count: int = 0

    # ============================================================
    # SETUP
    # ============================================================

    def initialize(self) -> None:
        """Connect to the RPC and derive the agent account. Fatal on failure."""
        from web3 import Web3
        from eth_account import Account

        self._account = Account.from_key(self._config.private_key)
        w3 = Web3(Web3.HTTPProvider(self._config.rpc_url, request_kwargs={"timeout": 30}))
        if not w3.is_connected():
            raise ChainReadError(f"Cannot connect to {self._config.network} RPC")

        self._w3 = w3
        self._stable = w3.eth.contract(
            address=Web3.to_checksum_address(self._config.stable_token), abi=ERC20_ABI
        )
        self._receipt_token = w3.eth.contract(
            address=Web3.to_checksum_address(self._config.lending_receipt_token), abi=ERC20_ABI
        )
        self._initialized = True
        logger.info(
            f"Chain gateway connected: {self._config.network} (chain {self._config.chain_id}) | "
            f"agent={self._account.address[:10]}..."
        )

    def is_connected(self) -> bool:
        if self._w3 is None:
            return False
        try:
            return self._w3.is_connected()
        except Exception as e:
            self._last_error = sanitize_error(e)
            return False

    @property
    def address(self) -> str:
        return self._account.address if self._account else ""

    @property
    def w3(self):
        return self._w3

    def contract(self, address: str, abi: list):
        from web3 import Web3
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    @property
    def stable_contract(self):
        return self._stable

    # ============================================================
    # READS
    # ============================================================

    async def _run(self, fn: Callable[[], Any], op_name: str) -> Any:
        try:
            return await asyncio.get_running_loop().run_in_executor(None, fn)
        except Exception as e:
            reason = sanitize_error(e)
            self._last_error = f"{op_name}: {reason}"
            raise ChainReadError(f"{op_name} failed: {reason}") from e

    async def call(self, fn_call, op_name: str = "eth_call") -> Any:
        """Run a bound contract view function, e.g. contract.functions.balanceOf(addr)."""
        return await self._run(fn_call.call, op_name)

    async def block_number(self) -> int:
        return int(await self._run(lambda: self._w3.eth.block_number, "eth_blockNumber"))

    async def get_logs(self, params: dict) -> list:
        return list(await self._run(lambda: self._w3.eth.get_logs(params), "eth_getLogs"))

    async def native_balance(self, address: Optional[str] = None) -> int:
        target = address or self.address
        return int(await self._run(lambda: self._w3.eth.get_balance(target), "eth_getBalance"))

    async def lending_position(self, address: Optional[str] = None) -> int:
        target = address or self.address
        return int(await self.call(self._receipt_token.functions.balanceOf(target), "lending_position"))

    async def read_balances(self, address: Optional[str] = None) -> Balances:
        """Native, liquid stable and lending position, read in parallel."""
        target = address or self.address
        native, liquid, position = await asyncio.gather(
            self.native_balance(target),
            self.call(self._stable.functions.balanceOf(target), "stable_balance"),
            self.lending_position(target),
        )
        return Balances(native=int(native), liquid_stable=int(liquid), lending_position=int(position))

    async def wait_for_receipt(self, tx_hash: str, timeout: int = 120) -> bool:
        """Block until a tx is mined. Returns True on success status."""
        receipt = await self._run(
            lambda: self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout),
            "wait_for_receipt",
        )
        return receipt["status"] == 1

    # ============================================================
    # WRITES
    # ============================================================

    async def submit(self, to: str, calldata: bytes = b"", value: int = 0) -> str:
        """
        Sign and broadcast a transaction with the attribution suffix appended.

        Returns the tx hash as soon as the node accepts it.
        Raises ChainWriteError with a sanitized reason on any failure.
        """
        if not self._initialized:
            raise ChainWriteError("chain gateway not initialized")

        from web3 import Web3

        data = append_builder_code(calldata, self._config.builder_code)
        to_addr = Web3.to_checksum_address(to)
        w3 = self._w3

        def _execute() -> str:
            tx = {
                "from": self._account.address,
                "to": to_addr,
                "data": data,
                "value": int(value),
                "nonce": w3.eth.get_transaction_count(self._account.address, "pending"),
                "gasPrice": w3.eth.gas_price,
                "chainId": self._config.chain_id,
            }

            # Gas estimation + 20% buffer; a revert aborts before signing
            try:
                tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
            except ContractLogicError:
                raise
            except Exception as gas_err:
                if _is_revert(gas_err):
                    raise
                logger.warning(f"Gas estimation failed, using default {DEFAULT_GAS_LIMIT}: {sanitize_error(gas_err)}")
                tx["gas"] = DEFAULT_GAS_LIMIT

            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            return Web3.to_hex(tx_hash)

        try:
            tx_hash = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except Exception as e:
            reason = sanitize_error(e)
            self._last_error = reason
            logger.warning(f"TX ERROR to {to_addr[:10]}...: {reason}")
            raise ChainWriteError(reason) from e

        self._tx_count += 1
        logger.info(f"TX SUBMITTED: {tx_hash} -> {to_addr[:10]}...")
        return tx_hash

    # ============================================================
    # STATUS
    # ============================================================

    def get_explorer_url(self, tx_hash: str) -> str:
        return f"{self._config.explorer_url}/tx/{tx_hash}"

    def get_status(self) -> dict:
        """Status for dashboard / debugging."""
        return {
            "initialized": self._initialized,
            "network": self._config.network,
            "agent": self.address,
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
