"""
Ledger Store - Durable Financial Record

Source of truth for everything the agent did and what it earned or spent:
- actions:  one row per attempted decision execution (audit / display)
- revenue:  realized income events (authoritative for profit)
- costs:    spend events (authoritative for profit)
- state:    small key/value run cursors (cycle counter, lending cursor, ...)

Financial tables are append-only: no update or delete is exposed.
Profit is always total_revenue() - total_costs(); it is never derived from
the action log.

Concurrency: the cycle loop and API handlers share one Ledger. Every write
is a single-row transaction taken under a process-wide lock, and SQLite runs
in WAL mode so readers never block the writer.
"""

import logging
import threading
from datetime import datetime, timezone
from heapq import merge
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, create_engine, event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .constitution import ActionTag, TREASURY_LAWS
from .errors import LedgerWriteError

logger = logging.getLogger("treasury.ledger")

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# MODELS
# ============================================================

class ActionRecord(Base):
    __tablename__ = "actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=_utcnow, nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False)
    tx_hash = Column(String, nullable=True)
    amount_usdc = Column(Float, default=0.0, nullable=False)
    amount_eth = Column(Float, default=0.0, nullable=False)
    success = Column(Boolean, default=True, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() + "Z",
            "type": self.type,
            "description": self.description,
            "tx_hash": self.tx_hash,
            "amount_usdc": self.amount_usdc,
            "amount_eth": self.amount_eth,
            "success": bool(self.success),
        }


class RevenueEvent(Base):
    __tablename__ = "revenue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=_utcnow, nullable=False, index=True)
    source = Column(String, nullable=False, index=True)
    amount_usdc = Column(Float, nullable=False)
    tx_hash = Column(String, nullable=True)
    description = Column(Text, nullable=True)


class CostEvent(Base):
    __tablename__ = "costs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=_utcnow, nullable=False, index=True)
    category = Column(String, nullable=False, index=True)
    amount_usdc = Column(Float, nullable=False)
    description = Column(Text, nullable=True)


class RunState(Base):
    __tablename__ = "state"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


# ============================================================
# LEDGER
# ============================================================

class Ledger:
    """
    Append-only financial ledger backed by SQLAlchemy.

    Usage:
        ledger = Ledger("sqlite:///agent.db")
        ledger.append_revenue("treasury_slash", 40.0, tx_hash, "40% forfeiture ...")
        profit = ledger.total_revenue() - ledger.total_costs()
    """

    def __init__(self, url: str):
        self.url = url
        self._engine = create_engine(url, future=True)
        if url.startswith("sqlite"):
            event.listen(self._engine, "connect", _sqlite_pragmas)
        self._session_factory = sessionmaker(
            bind=self._engine, autoflush=False, expire_on_commit=False, future=True
        )
        self._write_lock = threading.Lock()
        Base.metadata.create_all(bind=self._engine)

    @classmethod
    def from_path(cls, db_path: str) -> "Ledger":
        return cls(f"sqlite:///{db_path}")

    def close(self) -> None:
        self._engine.dispose()

    # ============================================================
    # WRITES (single row, serialized)
    # ============================================================

    def _insert(self, row) -> None:
        with self._write_lock:
            session = self._session_factory()
            try:
                session.add(row)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise LedgerWriteError(f"{row.__tablename__} insert failed: {e}") from e
            finally:
                session.close()

    def append_action(
        self,
        action_type: str,
        description: str,
        tx_hash: Optional[str] = None,
        amount_usdc: float = 0.0,
        amount_eth: float = 0.0,
        success: bool = True,
    ) -> None:
        self._insert(ActionRecord(
            type=str(getattr(action_type, "value", action_type)),
            description=description,
            tx_hash=tx_hash,
            amount_usdc=float(amount_usdc),
            amount_eth=float(amount_eth),
            success=success,
        ))

    def append_revenue(
        self,
        source: str,
        amount_usdc: float,
        tx_hash: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        self._insert(RevenueEvent(
            source=str(getattr(source, "value", source)),
            amount_usdc=float(amount_usdc),
            tx_hash=tx_hash,
            description=description,
        ))

    def append_cost(self, category: str, amount_usdc: float, description: Optional[str] = None) -> None:
        self._insert(CostEvent(
            category=str(getattr(category, "value", category)),
            amount_usdc=float(amount_usdc),
            description=description,
        ))

    # ============================================================
    # RUN STATE
    # ============================================================

    def get_scalar(self, key: str) -> Optional[str]:
        key = str(getattr(key, "value", key))
        with self._session_factory() as session:
            row = session.get(RunState, key)
            return row.value if row else None

    def set_scalar(self, key: str, value) -> None:
        key = str(getattr(key, "value", key))
        with self._write_lock:
            session = self._session_factory()
            try:
                row = session.get(RunState, key)
                if row is None:
                    session.add(RunState(key=key, value=str(value)))
                else:
                    row.value = str(value)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise LedgerWriteError(f"state write failed for {key}: {e}") from e
            finally:
                session.close()

    # ============================================================
    # READ AGGREGATES
    # ============================================================

    def total_revenue(self) -> float:
        with self._session_factory() as session:
            return float(session.execute(
                select(func.coalesce(func.sum(RevenueEvent.amount_usdc), 0.0))
            ).scalar_one())

    def total_costs(self) -> float:
        with self._session_factory() as session:
            return float(session.execute(
                select(func.coalesce(func.sum(CostEvent.amount_usdc), 0.0))
            ).scalar_one())

    def revenue_by_source(self) -> list[dict]:
        total = func.sum(RevenueEvent.amount_usdc).label("total")
        with self._session_factory() as session:
            rows = session.execute(
                select(RevenueEvent.source, total).group_by(RevenueEvent.source).order_by(total.desc())
            ).all()
        return [{"source": r.source, "total": float(r.total)} for r in rows]

    def costs_by_category(self) -> list[dict]:
        total = func.sum(CostEvent.amount_usdc).label("total")
        with self._session_factory() as session:
            rows = session.execute(
                select(CostEvent.category, total).group_by(CostEvent.category).order_by(total.desc())
            ).all()
        return [{"category": r.category, "total": float(r.total)} for r in rows]

    def pnl(self) -> dict:
        revenue = self.total_revenue()
        costs = self.total_costs()
        return {
            "revenue": revenue,
            "costs": costs,
            "profit": revenue - costs,
            "selfSustaining": revenue > costs,
            "ratio": revenue / costs if costs > 0 else 0,
        }

    def recent_actions(self, limit: int = TREASURY_LAWS.DEFAULT_ACTIONS_PAGE) -> list[dict]:
        limit = max(1, min(int(limit), TREASURY_LAWS.MAX_ACTIONS_PAGE))
        with self._session_factory() as session:
            rows = session.execute(
                select(ActionRecord).order_by(ActionRecord.id.desc()).limit(limit)
            ).scalars().all()
        return [r.to_dict() for r in rows]

    def financial_history(self) -> list[dict]:
        """Cumulative revenue + cost totals after each event, oldest first."""
        with self._session_factory() as session:
            revenue = session.execute(
                select(RevenueEvent.timestamp, RevenueEvent.id, RevenueEvent.amount_usdc)
                .order_by(RevenueEvent.timestamp, RevenueEvent.id)
            ).all()
            costs = session.execute(
                select(CostEvent.timestamp, CostEvent.id, CostEvent.amount_usdc)
                .order_by(CostEvent.timestamp, CostEvent.id)
            ).all()

        events = merge(
            ((r.timestamp, 0, r.id, r.amount_usdc) for r in revenue),
            ((c.timestamp, 1, c.id, c.amount_usdc) for c in costs),
        )
        history = []
        cum_revenue = 0.0
        cum_costs = 0.0
        for ts, kind, _, amount in events:
            if kind == 0:
                cum_revenue += amount
            else:
                cum_costs += amount
            history.append({
                "timestamp": ts.isoformat() + "Z",
                "cumulative_revenue": round(cum_revenue, 6),
                "cumulative_costs": round(cum_costs, 6),
            })
        return history

    def resolved_stakes_for_wallet(self, wallet: str) -> list[dict]:
        """Successful resolve actions naming this wallet (full address, case-insensitive)."""
        needle = f"%{wallet.lower()}%"
        with self._session_factory() as session:
            rows = session.execute(
                select(ActionRecord)
                .where(ActionRecord.type == ActionTag.RESOLVE_EXPIRED.value)
                .where(ActionRecord.success.is_(True))
                .where(func.lower(ActionRecord.description).like(needle))
                .order_by(ActionRecord.id)
            ).scalars().all()
        return [
            {"description": r.description, "amount_usdc": r.amount_usdc, "tx_hash": r.tx_hash}
            for r in rows
        ]

    def count_rows(self) -> dict:
        """Row counts per table (status endpoint / tests)."""
        with self._session_factory() as session:
            return {
                "actions": session.execute(select(func.count(ActionRecord.id))).scalar_one(),
                "revenue": session.execute(select(func.count(RevenueEvent.id))).scalar_one(),
                "costs": session.execute(select(func.count(CostEvent.id))).scalar_one(),
            }


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
