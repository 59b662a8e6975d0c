"""
LEDGER BALANCE CALCULATOR & RECONCILER

A project's balance is the signed sum of its transactions:
- expense       -> subtracts amount
- revenue       -> adds amount
- disbursement  -> adds amount

Replay order is chronological: (date ASC, _id ASC). The ObjectId tie-break
makes same-date ordering deterministic (insertion order).

Total disbursed is derived from `disbursement` transactions; it is never
stored on the project.

The reconciler replays the history and compares each stored balance snapshot
with the expected running balance. It reports drift but does NOT auto-fix.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Dict, Any, List, Iterable
import logging

from core.financial_precision import to_decimal, round_financial, to_float

logger = logging.getLogger(__name__)

DISBURSEMENT = "disbursement"
EXPENSE = "expense"
REVENUE = "revenue"
TRANSACTION_TYPES = (DISBURSEMENT, EXPENSE, REVENUE)

CHRONOLOGICAL_SORT = [("date", 1), ("_id", 1)]


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def signed_effect(transaction_type: str, amount) -> Decimal:
    """Signed contribution of one transaction to the balance"""
    value = to_decimal(amount)
    if transaction_type == EXPENSE:
        return -value
    if transaction_type in (REVENUE, DISBURSEMENT):
        return value
    return Decimal('0')


def sort_chronologically(transactions: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """In-memory equivalent of CHRONOLOGICAL_SORT"""
    return sorted(transactions, key=lambda t: (t.get("date") or datetime.min, t["_id"]))


def replay(transactions: Iterable[Dict[str, Any]], opening_balance=0) -> List[Decimal]:
    """
    Apply each transaction in the given order.
    Returns the running balance after every transaction.
    """
    balance = to_decimal(opening_balance)
    running = []
    for t in transactions:
        balance += signed_effect(t.get("type"), t.get("amount"))
        running.append(balance)
    return running


def compute_balance(transactions: Iterable[Dict[str, Any]], opening_balance=0) -> Decimal:
    balance = to_decimal(opening_balance)
    for t in transactions:
        balance += signed_effect(t.get("type"), t.get("amount"))
    return balance


def sum_by_type(transactions: Iterable[Dict[str, Any]], transaction_type: str) -> Decimal:
    total = Decimal('0')
    for t in transactions:
        if t.get("type") == transaction_type:
            total += to_decimal(t.get("amount"))
    return total


# =============================================================================
# LEDGER SERVICE
# =============================================================================

class LedgerService:
    """Read-side access to a project's transaction history."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def load_history(self, project_id: str, session=None) -> List[Dict[str, Any]]:
        """All transactions of a project in replay order"""
        return await self.db.transactions.find(
            {"project_id": project_id},
            session=session
        ).sort(CHRONOLOGICAL_SORT).to_list(length=None)

    async def current_balance(self, project_id: str, session=None) -> Decimal:
        history = await self.load_history(project_id, session=session)
        return compute_balance(history)

    async def total_disbursed(self, project_id: str, session=None) -> Decimal:
        disbursements = await self.db.transactions.find(
            {"project_id": project_id, "type": DISBURSEMENT},
            session=session
        ).to_list(length=None)
        return sum_by_type(disbursements, DISBURSEMENT)

    async def totals_for_projects(self, project_ids: List[str]) -> Dict[str, float]:
        """Derived total_disbursed for several projects at once"""
        totals = {pid: Decimal('0') for pid in project_ids}
        disbursements = await self.db.transactions.find(
            {"project_id": {"$in": project_ids}, "type": DISBURSEMENT}
        ).to_list(length=None)
        for t in disbursements:
            totals[t["project_id"]] += to_decimal(t.get("amount"))
        return {pid: to_float(total) for pid, total in totals.items()}


# =============================================================================
# RECONCILER
# =============================================================================

class LedgerReconciler:
    """
    Verifies stored balance snapshots against a chronological replay.

    Snapshots are frozen at record time, so they drift when a transaction is
    backdated or an earlier one is deleted. Drift is reported, never rewritten.
    """

    # Tolerance for floating point comparison (0.01 = 1 cent)
    TOLERANCE = Decimal('0.01')

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.ledger = LedgerService(db)

    async def reconcile(self, project_id: str) -> Dict[str, Any]:
        started_at = datetime.utcnow()
        history = await self.ledger.load_history(project_id)
        running = replay(history)

        entries = []
        drift_count = 0
        for transaction, expected in zip(history, running):
            stored = to_decimal(transaction.get("balance"))
            difference = round_financial(stored - expected)
            drifted = abs(difference) >= self.TOLERANCE
            if drifted:
                drift_count += 1
            entries.append({
                "transaction_id": str(transaction["_id"]),
                "date": transaction.get("date"),
                "type": transaction.get("type"),
                "amount": to_float(transaction.get("amount")),
                "stored_balance": to_float(stored),
                "expected_balance": to_float(expected),
                "difference": to_float(difference),
                "drift": drifted
            })

        final_balance = running[-1] if running else Decimal('0')

        if drift_count:
            logger.warning(
                f"[RECONCILE] project={project_id}: {drift_count} of {len(history)} "
                f"snapshots drifted from the chronological balance"
            )
        else:
            logger.info(f"[RECONCILE] project={project_id}: all {len(history)} snapshots consistent")

        return {
            "project_id": project_id,
            "checked": len(history),
            "drift_count": drift_count,
            "final_balance": to_float(final_balance),
            "started_at": started_at,
            "completed_at": datetime.utcnow(),
            "entries": entries
        }
