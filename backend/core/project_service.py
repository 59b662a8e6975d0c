"""
PROJECT SERVICE

Projects are the aggregation root of the ledger. Transactions, milestones and
funding requests reference a project by its string id.

Tranches live embedded in the project document and are released only as a
side effect of milestone approval (see core.milestone_engine).

Project review:

    pending -> approved | rejected   (admin only)

Deleting a project does not cascade; its children keep their project_id.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging
import math

from audit_service import AuditService
from permissions import permission_checker
from core.documents import to_object_id
from core.errors import NotFoundError, ValidationFailure, ConcurrentModificationError
from core.financial_precision import to_float
from core.ledger import LedgerService
from core.state_machine import StateMachine
from core.version_lock import VersionLock, version_filter

logger = logging.getLogger(__name__)

PROJECT_PENDING = "pending"
PROJECT_APPROVED = "approved"
PROJECT_REJECTED = "rejected"
PROJECT_STATUSES = (PROJECT_PENDING, PROJECT_APPROVED, PROJECT_REJECTED, "active", "completed", "suspended")
EDITABLE_FIELDS = ("title", "description", "category", "location", "requested_amount")
TRANCHE_PENDING = "pending"
TRANCHE_RELEASED = "released"


class ProjectService:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.ledger = LedgerService(db)
        self.version_lock = VersionLock(db)
        self.audit_service = AuditService(db)

        self.machine = (
            StateMachine("project")
            .register(PROJECT_PENDING, PROJECT_APPROVED, self._handle_approve, description="Admin approves")
            .register(PROJECT_PENDING, PROJECT_REJECTED, self._handle_reject, description="Admin rejects")
        )

    async def get_project(self, project_id: str, session=None) -> Dict[str, Any]:
        project = await self.db.projects.find_one(
            {"_id": to_object_id(project_id, "Project")},
            session=session
        )
        if not project:
            raise NotFoundError("Project", project_id)
        return project

    async def with_derived_totals(self, project: Dict[str, Any]) -> Dict[str, Any]:
        """Attach total_disbursed computed from the ledger"""
        project_id = str(project["_id"])
        total = await self.ledger.total_disbursed(project_id)
        return {**project, "total_disbursed": to_float(total)}

    async def create_project(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        permission_checker.check_role(user, "beneficiary", "admin")

        if user["role"] == "admin":
            beneficiary_id = data.get("beneficiary_id")
            if not beneficiary_id:
                raise ValidationFailure("beneficiary_id is required when an admin creates a project")
        else:
            beneficiary_id = user["user_id"]

        now = datetime.utcnow()
        project_dict = {
            "title": data["title"],
            "description": data["description"],
            "category": data.get("category"),
            "location": data.get("location"),
            "requested_amount": to_float(data["requested_amount"]),
            "beneficiary_id": str(beneficiary_id),
            "status": PROJECT_PENDING,
            "tranches": [],
            "state_history": [],
            "version": 0,
            "created_by": user["user_id"],
            "created_at": now,
            "updated_at": now
        }

        result = await self.db.projects.insert_one(project_dict)
        project_dict["_id"] = result.inserted_id
        project_id = str(result.inserted_id)

        await self.audit_service.log_action(
            entity_type="PROJECT",
            entity_id=project_id,
            action_type="CREATE",
            user_id=user["user_id"],
            project_id=project_id,
            new_value={"title": project_dict["title"], "requested_amount": project_dict["requested_amount"]}
        )

        logger.info(f"[PROJECT] Created {project_id} for beneficiary:{beneficiary_id}")
        return {**project_dict, "total_disbursed": 0.0}

    async def list_projects(
        self,
        status: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            if status not in PROJECT_STATUSES:
                raise ValidationFailure(
                    f"Invalid project status '{status}'. Expected one of {list(PROJECT_STATUSES)}"
                )
            query["status"] = status
        if category:
            query["category"] = category
        if search:
            query["$or"] = [
                {"title": {"$regex": search, "$options": "i"}},
                {"description": {"$regex": search, "$options": "i"}}
            ]

        projects = await self.db.projects.find(query).sort("created_at", -1) \
            .skip((page - 1) * limit).limit(limit).to_list(length=limit)
        total = await self.db.projects.count_documents(query)

        return {
            "projects": await self._attach_totals(projects),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0
            }
        }

    async def my_projects(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Beneficiaries see what they own, donors what they hold a live pledge on, admins everything"""
        query: Dict[str, Any] = {}
        if user["role"] == "beneficiary":
            query["beneficiary_id"] = user["user_id"]
        elif user["role"] == "donor":
            pledges = await self.db.pledges.find(
                {"donor_id": user["user_id"], "status": {"$ne": "cancelled"}}
            ).to_list(length=None)
            project_ids = []
            for p in pledges:
                try:
                    project_ids.append(ObjectId(str(p["project_id"])))
                except (InvalidId, TypeError, KeyError):
                    logger.warning(f"[PROJECT] Skipping pledge with invalid project id: {p.get('project_id')}")
            query["_id"] = {"$in": project_ids}

        projects = await self.db.projects.find(query).sort("created_at", -1).to_list(length=None)
        return await self._attach_totals(projects)

    async def _attach_totals(self, projects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = [str(p["_id"]) for p in projects]
        totals = await self.ledger.totals_for_projects(ids) if ids else {}
        return [{**p, "total_disbursed": totals.get(str(p["_id"]), 0.0)} for p in projects]

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def update_project(
        self,
        project_id: str,
        data: Dict[str, Any],
        user: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update descriptive fields and the requested amount (owner or admin)"""
        project = await self.get_project(project_id)
        permission_checker.check_project_write_access(user, project)

        update_dict = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) is not None}
        if "requested_amount" in update_dict:
            update_dict["requested_amount"] = to_float(update_dict["requested_amount"])
        if not update_dict:
            return await self.with_derived_totals(project)

        updated = await self.version_lock.compare_and_set("projects", "Project", project, update_dict)

        await self.audit_service.log_action(
            entity_type="PROJECT",
            entity_id=project_id,
            action_type="UPDATE",
            user_id=user["user_id"],
            project_id=project_id,
            old_value={k: project.get(k) for k in update_dict},
            new_value=update_dict
        )

        logger.info(f"[PROJECT] Updated {project_id}: {sorted(update_dict)}")
        return await self.with_derived_totals(updated)

    async def delete_project(self, project_id: str, user: Dict[str, Any]):
        """
        Delete a project (owner or admin). Transactions, milestones, funding
        requests and pledges referencing it are left in place.
        """
        project = await self.get_project(project_id)
        permission_checker.check_project_write_access(user, project)

        result = await self.db.projects.delete_one({"_id": project["_id"], **version_filter(project)})
        if result.deleted_count == 0:
            raise ConcurrentModificationError("Project", project_id)

        await self.audit_service.log_action(
            entity_type="PROJECT",
            entity_id=project_id,
            action_type="DELETE",
            user_id=user["user_id"],
            project_id=project_id,
            old_value={
                "title": project.get("title"),
                "status": project.get("status"),
                "requested_amount": project.get("requested_amount")
            }
        )

        transactions = await self.db.transactions.count_documents({"project_id": project_id})
        milestones = await self.db.milestones.count_documents({"project_id": project_id})
        logger.warning(
            f"[PROJECT] Deleted {project_id}; {transactions} transaction(s) and "
            f"{milestones} milestone(s) still reference it"
        )

    async def approve_project(self, project_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        return await self._transition(project_id, PROJECT_APPROVED, user)

    async def reject_project(
        self,
        project_id: str,
        user: Dict[str, Any],
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._transition(project_id, PROJECT_REJECTED, user, reason)

    async def _transition(self, project_id, to_state, user, reason=None) -> Dict[str, Any]:
        permission_checker.check_admin_role(user)
        project = await self.get_project(project_id)
        result = await self.machine.transition(project, to_state, context={"user": user, "reason": reason})
        return await self.with_derived_totals(result["handler_result"])

    async def _apply(self, project, to_state, set_fields, context, session):
        user = context["user"]
        history_entry = self.machine.get_history_entry(
            project["status"], to_state, user_id=user["user_id"],
            metadata={"reason": context.get("reason")} if context.get("reason") else None
        )
        updated = await self.version_lock.compare_and_set(
            "projects",
            "Project",
            project,
            {"status": to_state, **set_fields},
            expected_status=project["status"],
            push={"state_history": history_entry},
            session=session
        )

        await self.audit_service.log_action(
            entity_type="PROJECT",
            entity_id=str(project["_id"]),
            action_type=to_state.upper(),
            user_id=user["user_id"],
            project_id=str(project["_id"]),
            old_value={"status": project["status"]},
            new_value={"status": to_state, **set_fields},
            session=session
        )
        return updated

    async def _handle_approve(self, project, context, session):
        return await self._apply(
            project, PROJECT_APPROVED,
            {"approved_by": context["user"]["user_id"], "approved_at": datetime.utcnow()},
            context, session
        )

    async def _handle_reject(self, project, context, session):
        return await self._apply(
            project, PROJECT_REJECTED,
            {
                "rejected_by": context["user"]["user_id"],
                "rejected_at": datetime.utcnow(),
                "rejection_reason": context.get("reason")
            },
            context, session
        )

    # =========================================================================
    # TRANCHES
    # =========================================================================

    async def add_tranche(
        self,
        project_id: str,
        data: Dict[str, Any],
        user: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Create a pending tranche tied to one of the project's milestones.
        One tranche per milestone.
        """
        permission_checker.check_admin_role(user)

        project = await self.get_project(project_id)
        milestone_id = str(data["milestone_id"])

        milestone = await self.db.milestones.find_one({"_id": to_object_id(milestone_id, "Milestone")})
        if not milestone or milestone.get("project_id") != project_id:
            raise NotFoundError("Milestone", milestone_id)

        if any(t.get("milestone_id") == milestone_id for t in project.get("tranches", [])):
            raise ValidationFailure(f"Milestone {milestone_id} already has a tranche")

        tranche = {
            "tranche_id": str(ObjectId()),
            "amount": to_float(data["amount"]),
            "status": TRANCHE_PENDING,
            "milestone_id": milestone_id,
            "released_at": None,
            "released_by": None,
            "created_at": datetime.utcnow()
        }

        await self.version_lock.compare_and_set(
            "projects",
            "Project",
            project,
            {"tranches": project.get("tranches", []) + [tranche]}
        )

        await self.audit_service.log_action(
            entity_type="TRANCHE",
            entity_id=tranche["tranche_id"],
            action_type="CREATE",
            user_id=user["user_id"],
            project_id=project_id,
            new_value={"amount": tranche["amount"], "milestone_id": milestone_id}
        )

        logger.info(f"[TRANCHE] Created {tranche['tranche_id']} ({tranche['amount']}) on project:{project_id}")
        return tranche
