"""
Treasury Agent API Server - FastAPI Backend

Endpoints:
- GET  /health                     Heartbeat
- GET  /api/status                 Cycle counters, liveness, self-sustaining ratio, cohort
- GET  /api/balances               Native / liquid stable / lending position
- GET  /api/revenue                Revenue total + by source
- GET  /api/costs                  Cost total + by category
- GET  /api/pnl                    Revenue - costs
- GET  /api/actions?limit=50       Action log, newest first (1..200)
- GET  /api/history                Cumulative revenue/cost series
- GET  /attestation/{wallet}       Paid discipline attestation (x402 headers)
- GET  /v1/attestation/{wallet}    Alias

Everything is read-only except the single revenue append made when an
attestation request carries a payment receipt.
"""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.attestation import attestation_from_ledger, build_attestation
from core.chain import stable_units
from core.constitution import RevenueSource, TREASURY_LAWS
from core.errors import ChainReadError, LedgerWriteError

logger = logging.getLogger("treasury.api")


# ============================================================
# MODELS
# ============================================================

class HealthResponse(BaseModel):
    status: str
    agent: str
    network: str


class PnlResponse(BaseModel):
    revenue: float
    costs: float
    profit: float
    selfSustaining: bool
    ratio: float


def _amount(raw: int, decimals: int) -> dict:
    return {"raw": str(raw), "formatted": str(raw / 10 ** decimals)}


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(config, ledger, gateway, registry, orchestrator=None) -> FastAPI:
    """
    Create FastAPI app wired to the treasury components.

    The caller owns the lifecycle: main.py attaches a lifespan that runs
    the cycle loop; tests build the app around fakes and skip it.
    """
    app = FastAPI(
        title="Stake Treasury Agent",
        description="Unattended treasury loop for an on-chain staking protocol.",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def _payment_headers() -> dict:
        return {
            "X-Payment-Required": "true",
            "X-Payment-Amount": str(TREASURY_LAWS.ATTESTATION_PRICE_RAW),
            "X-Payment-Currency": config.stable_token,
            "X-Payment-Recipient": gateway.address,
        }

    async def _cohort() -> Optional[dict]:
        if not config.staking_enabled:
            return None
        try:
            week = await registry.current_week()
            return await registry.cohort_info(week)
        except ChainReadError as e:
            logger.warning(f"Cohort info unavailable: {e}")
            return None

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok", agent=gateway.address, network=config.network)

    @app.get("/api/status")
    async def status():
        pnl = ledger.pnl()
        cycle = orchestrator.get_status() if orchestrator is not None else {}
        return {
            "agent": gateway.address,
            "network": config.network,
            "stakingContract": config.staking_contract,
            "uptime": {
                "cycleCount": cycle.get("cycle_count", 0),
                "lastCycle": cycle.get("last_cycle") or "never",
                "lastCycleActions": cycle.get("last_cycle_actions", []),
                "loopIntervalSeconds": config.loop_interval_seconds,
                "running": cycle.get("running", False),
                "state": cycle.get("state", "idle"),
                "cyclesSkipped": cycle.get("cycles_skipped", 0),
            },
            "selfSustaining": pnl["selfSustaining"],
            "selfSustainingScore": pnl["ratio"],
            "advisoryEnabled": config.advisory_enabled,
            "cohort": await _cohort(),
            "chain": gateway.get_status(),
        }

    @app.get("/api/balances")
    async def balances():
        try:
            b = await gateway.read_balances()
        except ChainReadError as e:
            logger.warning(f"/api/balances read failed: {e}")
            raise HTTPException(503, "Chain temporarily unavailable")
        return {
            "eth": _amount(b.native, TREASURY_LAWS.NATIVE_DECIMALS),
            "usdc": _amount(b.liquid_stable, TREASURY_LAWS.STABLE_DECIMALS),
            "aUsdc": _amount(b.lending_position, TREASURY_LAWS.STABLE_DECIMALS),
            "totalUsdc": _amount(b.total_stable, TREASURY_LAWS.STABLE_DECIMALS),
            "lendingPercent": b.lending_percent,
        }

    @app.get("/api/revenue")
    async def revenue():
        return {"total": ledger.total_revenue(), "bySource": ledger.revenue_by_source()}

    @app.get("/api/costs")
    async def costs():
        return {"total": ledger.total_costs(), "byCategory": ledger.costs_by_category()}

    @app.get("/api/pnl", response_model=PnlResponse)
    async def pnl():
        return PnlResponse(**ledger.pnl())

    @app.get("/api/actions")
    async def actions(limit: int = TREASURY_LAWS.DEFAULT_ACTIONS_PAGE):
        return {"actions": ledger.recent_actions(limit)}

    @app.get("/api/history")
    async def history():
        return {"history": ledger.financial_history()}

    # ============================================================
    # PAID ATTESTATION (x402)
    # ============================================================

    async def _attestation(wallet: str, request: Request):
        from web3 import Web3

        if not Web3.is_address(wallet):
            raise HTTPException(400, "Invalid wallet address")
        checksum = Web3.to_checksum_address(wallet)

        try:
            stakes = await registry.list_all_stakes(checksum) if config.staking_enabled else []
        except ChainReadError as e:
            logger.error(f"Attestation read failed for {checksum[:10]}...: {e}")
            raise HTTPException(503, "Attestation service temporarily unavailable")

        attestation = build_attestation(checksum, stakes, int(time.time()))
        if not attestation["isStaking"]:
            # Resolved stakes are zeroed on-chain: fall back to our own resolve log
            fallback = attestation_from_ledger(checksum, ledger.resolved_stakes_for_wallet(checksum))
            if fallback is not None:
                attestation = fallback

        receipt = request.headers.get("x-payment-receipt")
        if receipt:
            try:
                ledger.append_revenue(
                    RevenueSource.X402_ATTESTATION, TREASURY_LAWS.ATTESTATION_PRICE, None,
                    f"Attestation query for {checksum}",
                )
            except LedgerWriteError as e:
                logger.critical(
                    f"UNCONFIRMED PAYMENT: x402 attestation for {checksum} receipt={receipt[:80]} "
                    f"not recorded: {e}"
                )
                raise HTTPException(503, "Payment could not be recorded, retry later")
            logger.info(f"x402 attestation paid: {checksum[:10]}... (+{stable_units(TREASURY_LAWS.ATTESTATION_PRICE_RAW)})")

        return JSONResponse(content=attestation, headers=_payment_headers())

    @app.get("/attestation/{wallet}")
    async def attestation(wallet: str, request: Request):
        return await _attestation(wallet, request)

    @app.get("/v1/attestation/{wallet}")
    async def attestation_v1(wallet: str, request: Request):
        return await _attestation(wallet, request)

    return app
