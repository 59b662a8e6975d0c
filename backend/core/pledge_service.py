"""
PLEDGE SERVICE

A pledge is a donor's commitment of funds toward an approved project. It is
not a payment: pledges never touch the ledger. A donor's "my projects" view is
built from the projects they hold a live pledge on.

    pending -> confirmed                (admin)
    pending / confirmed -> cancelled    (pledging donor or admin)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging
import math

from audit_service import AuditService
from permissions import permission_checker
from core.documents import to_object_id
from core.errors import NotFoundError, ForbiddenError, ValidationFailure
from core.financial_precision import to_decimal, to_float, FinancialPrecisionError
from core.project_service import ProjectService, PROJECT_APPROVED
from core.state_machine import StateMachine
from core.version_lock import VersionLock

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
PLEDGE_STATUSES = (PENDING, CONFIRMED, CANCELLED)


class PledgeService:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.projects = ProjectService(db)
        self.version_lock = VersionLock(db)
        self.audit_service = AuditService(db)

        self.machine = (
            StateMachine("pledge")
            .register(PENDING, CONFIRMED, self._handle_confirm, description="Admin confirms")
            .register([PENDING, CONFIRMED], CANCELLED, self._handle_cancel, description="Donor or admin cancels")
        )

    async def get_pledge(self, pledge_id: str) -> Dict[str, Any]:
        pledge = await self.db.pledges.find_one({"_id": to_object_id(pledge_id, "Pledge")})
        if not pledge:
            raise NotFoundError("Pledge", pledge_id)
        return pledge

    async def create_pledge(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        permission_checker.check_role(user, "donor", "admin")

        if not data.get("project_id") or data.get("amount") is None:
            raise ValidationFailure("Project ID and amount are required")

        try:
            amount = to_decimal(data["amount"])
        except FinancialPrecisionError:
            raise ValidationFailure("Amount must be numeric")
        if not amount.is_finite() or amount <= 0:
            raise ValidationFailure("Amount must be greater than zero")

        project_id = str(data["project_id"])
        project = await self.projects.get_project(project_id)
        if project.get("status") != PROJECT_APPROVED:
            raise ValidationFailure("Can only pledge to approved projects")

        now = datetime.utcnow()
        pledge = {
            "project_id": project_id,
            "donor_id": user["user_id"],
            "amount": to_float(amount),
            "status": PENDING,
            "state_history": [],
            "version": 0,
            "created_at": now,
            "updated_at": now
        }

        result = await self.db.pledges.insert_one(pledge)
        pledge["_id"] = result.inserted_id

        await self.audit_service.log_action(
            entity_type="PLEDGE",
            entity_id=str(result.inserted_id),
            action_type="CREATE",
            user_id=user["user_id"],
            project_id=project_id,
            new_value={"amount": pledge["amount"]}
        )

        logger.info(f"[PLEDGE] {user['user_id']} pledged {pledge['amount']} to project:{project_id}")
        return pledge

    async def list_pledges(
        self,
        user: Dict[str, Any],
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """Donors only ever see their own pledges"""
        query: Dict[str, Any] = {}
        if project_id:
            query["project_id"] = project_id
        if status:
            if status not in PLEDGE_STATUSES:
                raise ValidationFailure(
                    f"Invalid pledge status '{status}'. Expected one of {list(PLEDGE_STATUSES)}"
                )
            query["status"] = status
        if user["role"] == "donor":
            query["donor_id"] = user["user_id"]

        pledges = await self.db.pledges.find(query).sort([("created_at", -1), ("_id", -1)]) \
            .skip((page - 1) * limit).limit(limit).to_list(length=limit)
        total = await self.db.pledges.count_documents(query)

        return {
            "pledges": pledges,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0
            }
        }

    async def confirm(self, pledge_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        permission_checker.check_admin_role(user)
        pledge = await self.get_pledge(pledge_id)
        result = await self.machine.transition(pledge, CONFIRMED, context={"user": user})
        return result["handler_result"]

    async def cancel(self, pledge_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        pledge = await self.get_pledge(pledge_id)
        if user["role"] != "admin" and pledge.get("donor_id") != user["user_id"]:
            raise ForbiddenError()
        result = await self.machine.transition(pledge, CANCELLED, context={"user": user})
        return result["handler_result"]

    async def _apply(self, pledge, to_state, context, session):
        user = context["user"]
        updated = await self.version_lock.compare_and_set(
            "pledges",
            "Pledge",
            pledge,
            {"status": to_state},
            expected_status=pledge["status"],
            push={"state_history": self.machine.get_history_entry(pledge["status"], to_state, user["user_id"])},
            session=session
        )

        await self.audit_service.log_action(
            entity_type="PLEDGE",
            entity_id=str(pledge["_id"]),
            action_type=to_state.upper(),
            user_id=user["user_id"],
            project_id=pledge["project_id"],
            old_value={"status": pledge["status"]},
            new_value={"status": to_state},
            session=session
        )

        logger.info(f"[PLEDGE] {pledge['_id']} {pledge['status']} -> {to_state} by {user['user_id']}")
        return updated

    async def _handle_confirm(self, pledge, context, session):
        return await self._apply(pledge, CONFIRMED, context, session)

    async def _handle_cancel(self, pledge, context, session):
        return await self._apply(pledge, CANCELLED, context, session)
