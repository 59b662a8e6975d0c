"""
FUNDING REQUEST APPROVAL ENGINE

    pending -> approved | rejected
    approved / rejected -> pending   (reopen, admin only)

Approval records one `disbursement` transaction of the requested amount. The
id of that transaction is stored on the request; a request that already
carries one never disburses again, even after reopen + re-approve.

The disbursement ceiling (total disbursed must stay within the project's
requested amount) is only checked when enforcement is switched on. It is
checked before any write, against the same project read that the recorder
then claims, so two approvals racing on one project cannot both pass it.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorClient
from datetime import datetime
from typing import Optional, Dict, Any
import logging
import math

from audit_service import AuditService
from permissions import permission_checker
from core.documents import to_object_id
from core.errors import NotFoundError, ValidationFailure
from core.financial_precision import to_decimal, to_float, FinancialPrecisionError
from core.ledger import DISBURSEMENT
from core.project_service import ProjectService
from core.state_machine import StateMachine
from core.transaction_recorder import TransactionRecorder
from core.unit_of_work import unit_of_work
from core.version_lock import VersionLock

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
FUNDING_STATUSES = (PENDING, APPROVED, REJECTED)


class FundingRequestApprovalEngine:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
        enforce_ceiling: bool = False
    ):
        self.db = db
        self.client = client
        self.enforce_ceiling = enforce_ceiling
        self.projects = ProjectService(db)
        self.recorder = TransactionRecorder(db)
        self.version_lock = VersionLock(db)
        self.audit_service = AuditService(db)

        self.machine = StateMachine("funding_request")
        self.machine.register(PENDING, APPROVED, self._handle_approve, description="Admin approves, funds disbursed")
        self.machine.register(PENDING, REJECTED, self._handle_reject, description="Admin rejects")
        self.machine.register([APPROVED, REJECTED], PENDING, self._handle_reopen, description="Admin reopens")

    async def get_request(self, request_id: str, session=None) -> Dict[str, Any]:
        request = await self.db.funding_requests.find_one(
            {"_id": to_object_id(request_id, "Funding request")},
            session=session
        )
        if not request:
            raise NotFoundError("Funding request", request_id)
        return request

    async def list_requests(
        self,
        user: Dict[str, Any],
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            if status not in FUNDING_STATUSES:
                raise ValidationFailure(
                    f"Invalid funding request status '{status}'. Expected one of {list(FUNDING_STATUSES)}"
                )
            query["status"] = status
        if project_id:
            query["project_id"] = project_id
        elif user["role"] == "beneficiary":
            owned = await self.db.projects.find({"beneficiary_id": user["user_id"]}).to_list(length=None)
            query["project_id"] = {"$in": [str(p["_id"]) for p in owned]}

        requests = await self.db.funding_requests.find(query).sort([("created_at", -1), ("_id", -1)]) \
            .skip((page - 1) * limit).limit(limit).to_list(length=limit)
        total = await self.db.funding_requests.count_documents(query)

        return {
            "funding_requests": requests,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0
            }
        }

    async def create_request(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        project_id = str(data["project_id"])
        project = await self.projects.get_project(project_id)
        permission_checker.check_project_write_access(user, project)

        try:
            amount = to_decimal(data.get("requested_amount"))
        except FinancialPrecisionError:
            raise ValidationFailure("Requested amount must be numeric")
        if not amount.is_finite() or amount <= 0:
            raise ValidationFailure("Requested amount must be greater than zero")

        now = datetime.utcnow()
        request = {
            "project_id": project_id,
            "requested_amount": to_float(amount),
            "purpose": data.get("purpose"),
            "budget_breakdown": [
                {"label": item.get("label"), "amount": to_float(item.get("amount"))}
                for item in (data.get("budget_breakdown") or [])
            ],
            "status": PENDING,
            "reviewed_by": None,
            "reviewed_at": None,
            "review_note": None,
            "disbursement_transaction_id": None,
            "state_history": [],
            "version": 0,
            "created_by": user["user_id"],
            "created_at": now,
            "updated_at": now
        }

        result = await self.db.funding_requests.insert_one(request)
        request["_id"] = result.inserted_id

        await self.audit_service.log_action(
            entity_type="FUNDING_REQUEST",
            entity_id=str(result.inserted_id),
            action_type="CREATE",
            user_id=user["user_id"],
            project_id=project_id,
            new_value={"requested_amount": request["requested_amount"], "purpose": request["purpose"]}
        )

        logger.info(f"[FUNDING] Request {result.inserted_id} for {request['requested_amount']} on project:{project_id}")
        return request

    async def approve(self, request_id: str, user: Dict[str, Any], note: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(request_id, APPROVED, user, note)

    async def reject(self, request_id: str, user: Dict[str, Any], note: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(request_id, REJECTED, user, note)

    async def reopen(self, request_id: str, user: Dict[str, Any], note: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(request_id, PENDING, user, note)

    async def _run(self, request_id: str, to_state: str, user: Dict[str, Any], note: Optional[str]):
        permission_checker.check_admin_role(user)
        context = {"user": user, "note": note}

        async with unit_of_work(self.client) as session:
            request = await self.get_request(request_id, session=session)
            result = await self.machine.transition(request, to_state, session=session, context=context)

        return result["handler_result"]

    # =========================================================================
    # TRANSITION HANDLERS
    # =========================================================================

    async def _apply(self, request, to_state, set_fields, context, session) -> Dict[str, Any]:
        user = context["user"]
        history_entry = self.machine.get_history_entry(
            request["status"], to_state, user_id=user["user_id"],
            metadata={"note": context.get("note")} if context.get("note") else None
        )
        updated = await self.version_lock.compare_and_set(
            "funding_requests",
            "Funding request",
            request,
            {"status": to_state, **set_fields},
            expected_status=request["status"],
            push={"state_history": history_entry},
            session=session
        )

        await self.audit_service.log_action(
            entity_type="FUNDING_REQUEST",
            entity_id=str(request["_id"]),
            action_type=to_state.upper(),
            user_id=user["user_id"],
            project_id=request["project_id"],
            old_value={"status": request["status"]},
            new_value={"status": to_state, **set_fields},
            session=session
        )
        return updated

    async def _handle_approve(self, request, context, session):
        user = context["user"]
        needs_disbursement = not request.get("disbursement_transaction_id")

        project = None
        if needs_disbursement:
            # One project read for both the ceiling check and the recorder's claim
            project = await self.projects.get_project(request["project_id"], session=session)
            if self.enforce_ceiling:
                await self.recorder.check_ceiling(
                    project, to_decimal(request.get("requested_amount")), session=session
                )

        updated = await self._apply(
            request, APPROVED,
            {"reviewed_by": user["user_id"], "reviewed_at": datetime.utcnow(), "review_note": context.get("note")},
            context, session
        )

        transaction = None
        if needs_disbursement:
            transaction = await self.recorder.record(
                {
                    "project_id": request["project_id"],
                    "type": DISBURSEMENT,
                    "amount": request["requested_amount"],
                    "category": "funding_request",
                    "description": request.get("purpose") or "Funding request approved"
                },
                user,
                source={"type": "funding_request", "id": str(request["_id"])},
                session=session,
                project=project,
                enforce_ceiling=self.enforce_ceiling
            )
            updated = await self.version_lock.compare_and_set(
                "funding_requests",
                "Funding request",
                updated,
                {"disbursement_transaction_id": str(transaction["_id"])},
                session=session
            )
        else:
            logger.info(
                f"[FUNDING] Request {request['_id']} already disbursed "
                f"(transaction {request['disbursement_transaction_id']}); no new disbursement"
            )

        return {"funding_request": updated, "transaction": transaction}

    async def _handle_reject(self, request, context, session):
        user = context["user"]
        updated = await self._apply(
            request, REJECTED,
            {"reviewed_by": user["user_id"], "reviewed_at": datetime.utcnow(), "review_note": context.get("note")},
            context, session
        )
        return {"funding_request": updated, "transaction": None}

    async def _handle_reopen(self, request, context, session):
        updated = await self._apply(request, PENDING, {"reopened_at": datetime.utcnow()}, context, session)
        return {"funding_request": updated, "transaction": None}
