"""
KPI AGGREGATOR

Read-only project metrics, recomputed from source collections on every call:

    total_spent   = sum(expense amounts)
    total_revenue = sum(revenue amounts)
    margin        = (revenue - spent) / requested_amount * 100   (0 if requested <= 0)
    progress      = approved milestones / all milestones * 100   (0 if none)

margin is returned as a 2-decimal string, progress as a float.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from collections import OrderedDict
from typing import Dict, Any
import logging

from core.financial_precision import (
    to_decimal,
    to_float,
    format_financial,
    calculate_ratio_percentage
)
from core.ledger import LedgerService, EXPENSE, REVENUE, DISBURSEMENT, compute_balance, sum_by_type
from core.project_service import ProjectService

logger = logging.getLogger(__name__)

RECENT_TRANSACTIONS = 10


class KPIAggregator:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.ledger = LedgerService(db)
        self.projects = ProjectService(db)

    async def project_kpis(self, project_id: str) -> Dict[str, Any]:
        project = await self.projects.get_project(project_id)
        history = await self.ledger.load_history(project_id)

        spent = sum_by_type(history, EXPENSE)
        revenue = sum_by_type(history, REVENUE)
        requested = to_decimal(project.get("requested_amount"))

        margin = calculate_ratio_percentage(revenue - spent, requested)

        total_milestones = await self.db.milestones.count_documents({"project_id": project_id})
        completed = await self.db.milestones.count_documents({"project_id": project_id, "status": "approved"})
        progress = (completed / total_milestones * 100) if total_milestones else 0.0

        return {
            "project_id": project_id,
            "total_budget": to_float(requested),
            "total_disbursed": to_float(sum_by_type(history, DISBURSEMENT)),
            "total_spent": to_float(spent),
            "total_revenue": to_float(revenue),
            "margin": format_financial(margin),
            "balance": to_float(compute_balance(history)),
            "completed_milestones": completed,
            "total_milestones": total_milestones,
            "progress": float(progress)
        }

    async def project_analytics(self, project_id: str) -> Dict[str, Any]:
        await self.projects.get_project(project_id)
        history = await self.ledger.load_history(project_id)

        monthly: Dict[str, Dict[str, Any]] = OrderedDict()
        for t in history:
            date = t.get("date")
            if date is None:
                continue
            month = date.strftime("%Y-%m")
            bucket = monthly.setdefault(month, {"expenses": to_decimal(0), "revenue": to_decimal(0)})
            if t.get("type") == EXPENSE:
                bucket["expenses"] += to_decimal(t.get("amount"))
            elif t.get("type") == REVENUE:
                bucket["revenue"] += to_decimal(t.get("amount"))

        return {
            "project_id": project_id,
            "monthly_data": {
                month: {"expenses": to_float(v["expenses"]), "revenue": to_float(v["revenue"])}
                for month, v in monthly.items()
            },
            "recent_transactions": list(reversed(history))[:RECENT_TRANSACTIONS]
        }
