"""
Lending pool actions (Aave V3 Pool: supply / withdraw).

Thin layer over the ChainGateway: encodes pool calls and makes sure the pool
may pull the stable asset before a supply.
"""

import logging

from .chain import ERC20_ABI, stable_units
from .errors import ChainWriteError

logger = logging.getLogger("treasury.lending")

POOL_ABI = [
    {
        "inputs": [
            {"name": "asset", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "onBehalfOf", "type": "address"},
            {"name": "referralCode", "type": "uint16"},
        ],
        "name": "supply",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "asset", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "to", "type": "address"},
        ],
        "name": "withdraw",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def _encode(contract, fn_name: str, args: list) -> bytes:
    from web3 import Web3
    return Web3.to_bytes(hexstr=contract.encode_abi(fn_name, args=args))


class LendingPool:
    def __init__(self, gateway, config):
        self._gateway = gateway
        self._config = config
        self._pool = None
        self._token = None

    def _contracts(self):
        if self._pool is None:
            self._pool = self._gateway.contract(self._config.lending_pool, POOL_ABI)
            self._token = self._gateway.contract(self._config.stable_token, ERC20_ABI)
        return self._pool, self._token

    async def ensure_approval(self, amount: int) -> None:
        """Approve the pool to pull `amount` if the current allowance is short."""
        pool, token = self._contracts()
        agent = self._gateway.address
        allowance = await self._gateway.call(
            token.functions.allowance(agent, pool.address), "allowance"
        )
        if int(allowance) >= amount:
            return

        data = _encode(token, "approve", [pool.address, amount])
        tx_hash = await self._gateway.submit(token.address, data)
        # supply() estimates gas against the allowance, so the approval must land first
        if not await self._gateway.wait_for_receipt(tx_hash):
            raise ChainWriteError(f"approval reverted: {tx_hash}")
        logger.info(f"Approved {stable_units(amount)} stable for lending pool")

    async def supply(self, amount: int) -> str:
        await self.ensure_approval(amount)
        pool, token = self._contracts()
        data = _encode(pool, "supply", [token.address, amount, self._gateway.address, 0])
        tx_hash = await self._gateway.submit(pool.address, data)
        logger.info(f"Supplied {stable_units(amount)} stable -> lending pool")
        return tx_hash

    async def withdraw(self, amount: int) -> str:
        pool, token = self._contracts()
        data = _encode(pool, "withdraw", [token.address, amount, self._gateway.address])
        tx_hash = await self._gateway.submit(pool.address, data)
        logger.info(f"Withdrew {stable_units(amount)} stable from lending pool")
        return tx_hash

    async def position(self) -> int:
        return await self._gateway.lending_position()
