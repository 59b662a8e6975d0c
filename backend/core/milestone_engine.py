"""
MILESTONE APPROVAL ENGINE

Milestone lifecycle:

    not_started -> pending -> evidence_submitted -> approved
                                                 -> rejected
    approved / rejected -> pending   (reopen, admin only)

Evidence can be (re)submitted from not_started, pending or evidence_submitted
and always replaces the stored list. Decisions are final unless reopened.

On approval, a milestone carrying a tranche_amount releases the matching
pending tranche of its project and records a `disbursement` transaction through
the Transaction Recorder. A tranche is released at most once, so reopening and
re-approving never disburses twice. No matching tranche: approval still
succeeds and the release is skipped.

Every transition is a compare-and-set on (status, version); all writes of one
operation share a unit of work.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorClient
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from audit_service import AuditService
from permissions import permission_checker
from core.documents import to_object_id
from core.errors import NotFoundError, ValidationFailure
from core.financial_precision import to_decimal, to_float
from core.ledger import DISBURSEMENT
from core.project_service import ProjectService, TRANCHE_PENDING, TRANCHE_RELEASED
from core.state_machine import StateMachine, InvalidTransitionError
from core.transaction_recorder import TransactionRecorder
from core.unit_of_work import unit_of_work
from core.version_lock import VersionLock

logger = logging.getLogger(__name__)

NOT_STARTED = "not_started"
PENDING = "pending"
EVIDENCE_SUBMITTED = "evidence_submitted"
APPROVED = "approved"
REJECTED = "rejected"
MILESTONE_STATUSES = (NOT_STARTED, PENDING, EVIDENCE_SUBMITTED, APPROVED, REJECTED)


class MilestoneApprovalEngine:

    def __init__(self, db: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None):
        self.db = db
        self.client = client
        self.projects = ProjectService(db)
        self.recorder = TransactionRecorder(db)
        self.version_lock = VersionLock(db)
        self.audit_service = AuditService(db)
        self.machine = self._build_machine()

    def _build_machine(self) -> StateMachine:
        machine = StateMachine("milestone")
        machine.register(NOT_STARTED, PENDING, self._handle_start,
                         description="Beneficiary starts work")
        machine.register([NOT_STARTED, PENDING, EVIDENCE_SUBMITTED], EVIDENCE_SUBMITTED, self._handle_evidence,
                         description="Evidence submitted (replaces previous evidence)")
        machine.register(EVIDENCE_SUBMITTED, APPROVED, self._handle_approve,
                         description="Admin approves, tranche released")
        machine.register([PENDING, EVIDENCE_SUBMITTED], REJECTED, self._handle_reject,
                         description="Admin rejects")
        machine.register([APPROVED, REJECTED], PENDING, self._handle_reopen,
                         description="Admin reopens a decision")
        return machine

    # =========================================================================
    # READS
    # =========================================================================

    async def get_milestone(self, milestone_id: str, session=None) -> Dict[str, Any]:
        milestone = await self.db.milestones.find_one(
            {"_id": to_object_id(milestone_id, "Milestone")},
            session=session
        )
        if not milestone:
            raise NotFoundError("Milestone", milestone_id)
        return milestone

    async def list_milestones(
        self,
        project_id: Optional[str] = None,
        status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if project_id:
            query["project_id"] = project_id
        if status:
            if status not in MILESTONE_STATUSES:
                raise ValidationFailure(
                    f"Invalid milestone status '{status}'. Expected one of {list(MILESTONE_STATUSES)}"
                )
            query["status"] = status
        return await self.db.milestones.find(query).sort([("target_date", 1), ("_id", 1)]).to_list(length=None)

    # =========================================================================
    # COMMANDS
    # =========================================================================

    async def create_milestone(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        project_id = str(data["project_id"])
        project = await self.projects.get_project(project_id)
        permission_checker.check_project_write_access(user, project)

        tranche_amount = data.get("tranche_amount")
        now = datetime.utcnow()
        milestone = {
            "project_id": project_id,
            "title": data["title"],
            "description": data.get("description"),
            "target_date": data.get("target_date"),
            "status": NOT_STARTED,
            "tranche_amount": to_float(tranche_amount) if tranche_amount is not None else None,
            "evidence": [],
            "approved_by": None,
            "approved_at": None,
            "state_history": [],
            "version": 0,
            "created_by": user["user_id"],
            "created_at": now,
            "updated_at": now
        }

        result = await self.db.milestones.insert_one(milestone)
        milestone["_id"] = result.inserted_id

        await self.audit_service.log_action(
            entity_type="MILESTONE",
            entity_id=str(result.inserted_id),
            action_type="CREATE",
            user_id=user["user_id"],
            project_id=project_id,
            new_value={"title": milestone["title"], "tranche_amount": milestone["tranche_amount"]}
        )
        return milestone

    async def start(self, milestone_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._run(milestone_id, PENDING, user, owner_allowed=True)
        return result["milestone"]

    async def submit_evidence(
        self,
        milestone_id: str,
        evidence: List[Any],
        user: Dict[str, Any]
    ) -> Dict[str, Any]:
        if not isinstance(evidence, list):
            raise ValidationFailure("Evidence must be a list")

        uploaded_at = datetime.utcnow()
        items = []
        for item in evidence:
            if isinstance(item, dict):
                url, description = item.get("url"), item.get("description")
            else:
                url, description = item, None
            if not url:
                raise ValidationFailure("Every evidence item needs a url")
            items.append({"url": str(url), "description": description, "uploaded_at": uploaded_at})

        result = await self._run(milestone_id, EVIDENCE_SUBMITTED, user, owner_allowed=True,
                                 context={"evidence": items})
        return result["milestone"]

    async def approve(self, milestone_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """
        Approve a milestone and release its tranche.

        Returns {"milestone": ..., "release": {"tranche", "transaction"} or None}
        """
        return await self._run(milestone_id, APPROVED, user)

    async def reject(self, milestone_id: str, user: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
        result = await self._run(milestone_id, REJECTED, user, context={"reason": reason})
        return result["milestone"]

    async def reopen(self, milestone_id: str, user: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
        result = await self._run(milestone_id, PENDING, user, context={"reason": reason, "reopen": True})
        return result["milestone"]

    async def _run(
        self,
        milestone_id: str,
        to_state: str,
        user: Dict[str, Any],
        owner_allowed: bool = False,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        context = {**(context or {}), "user": user}

        async with unit_of_work(self.client) as session:
            milestone = await self.get_milestone(milestone_id, session=session)

            if owner_allowed:
                project = await self.projects.get_project(milestone["project_id"], session=session)
                permission_checker.check_project_write_access(user, project)
            else:
                permission_checker.check_admin_role(user)

            # start and reopen share the target state; each owns its own source states
            if to_state == PENDING:
                status = milestone.get("status")
                sources = (APPROVED, REJECTED) if context.get("reopen") else (NOT_STARTED,)
                if status not in sources:
                    raise InvalidTransitionError(
                        "milestone", status, PENDING, self.machine.get_allowed_transitions(status)
                    )

            result = await self.machine.transition(milestone, to_state, session=session, context=context)

        return result["handler_result"]

    # =========================================================================
    # TRANSITION HANDLERS
    # =========================================================================

    async def _apply(
        self,
        milestone: Dict[str, Any],
        to_state: str,
        set_fields: Dict[str, Any],
        context: Dict[str, Any],
        session
    ) -> Dict[str, Any]:
        user = context["user"]
        history_entry = self.machine.get_history_entry(
            milestone["status"], to_state, user_id=user["user_id"],
            metadata={"reason": context.get("reason")} if context.get("reason") else None
        )
        updated = await self.version_lock.compare_and_set(
            "milestones",
            "Milestone",
            milestone,
            {"status": to_state, **set_fields},
            expected_status=milestone["status"],
            push={"state_history": history_entry},
            session=session
        )

        await self.audit_service.log_action(
            entity_type="MILESTONE",
            entity_id=str(milestone["_id"]),
            action_type=to_state.upper(),
            user_id=user["user_id"],
            project_id=milestone["project_id"],
            old_value={"status": milestone["status"]},
            new_value={"status": to_state, **{k: v for k, v in set_fields.items() if k != "evidence"}},
            session=session
        )
        return updated

    async def _handle_start(self, milestone, context, session):
        updated = await self._apply(milestone, PENDING, {}, context, session)
        return {"milestone": updated}

    async def _handle_evidence(self, milestone, context, session):
        updated = await self._apply(
            milestone, EVIDENCE_SUBMITTED, {"evidence": context["evidence"]}, context, session
        )
        logger.info(f"[MILESTONE] Evidence replaced on {milestone['_id']}: {len(context['evidence'])} item(s)")
        return {"milestone": updated}

    async def _handle_approve(self, milestone, context, session):
        user = context["user"]
        updated = await self._apply(
            milestone, APPROVED,
            {"approved_by": user["user_id"], "approved_at": datetime.utcnow()},
            context, session
        )

        release = None
        if milestone.get("tranche_amount"):
            release = await self._release_tranche(updated, user, session)

        return {"milestone": updated, "release": release}

    async def _handle_reject(self, milestone, context, session):
        user = context["user"]
        updated = await self._apply(
            milestone, REJECTED,
            {
                "rejected_by": user["user_id"],
                "rejected_at": datetime.utcnow(),
                "rejection_reason": context.get("reason")
            },
            context, session
        )
        return {"milestone": updated}

    async def _handle_reopen(self, milestone, context, session):
        updated = await self._apply(milestone, PENDING, {"reopened_at": datetime.utcnow()}, context, session)
        return {"milestone": updated}

    # =========================================================================
    # TRANCHE RELEASE
    # =========================================================================

    async def _release_tranche(
        self,
        milestone: Dict[str, Any],
        user: Dict[str, Any],
        session
    ) -> Optional[Dict[str, Any]]:
        milestone_id = str(milestone["_id"])
        project = await self.projects.get_project(milestone["project_id"], session=session)
        tranches = project.get("tranches") or []

        index = next(
            (i for i, t in enumerate(tranches) if str(t.get("milestone_id")) == milestone_id),
            None
        )
        if index is None:
            logger.info(f"[TRANCHE] No tranche linked to milestone {milestone_id}; release skipped")
            return None

        tranche = tranches[index]
        if tranche.get("status") != TRANCHE_PENDING:
            logger.info(
                f"[TRANCHE] Tranche {tranche.get('tranche_id')} for milestone {milestone_id} "
                f"already {tranche.get('status')}; not released again"
            )
            return None

        amount = to_decimal(tranche.get("amount") or 0)
        released = {
            **tranche,
            "status": TRANCHE_RELEASED,
            "released_at": datetime.utcnow(),
            "released_by": user["user_id"]
        }
        new_tranches = list(tranches)
        new_tranches[index] = released

        project = await self.version_lock.compare_and_set(
            "projects", "Project", project, {"tranches": new_tranches}, session=session
        )

        transaction = None
        if amount > 0:
            transaction = await self.recorder.record(
                {
                    "project_id": milestone["project_id"],
                    "type": DISBURSEMENT,
                    "amount": amount,
                    "category": "tranche",
                    "description": f"Tranche released for milestone '{milestone.get('title')}'"
                },
                user,
                source={"type": "milestone", "id": milestone_id, "tranche_id": tranche.get("tranche_id")},
                session=session,
                project=project
            )

        await self.audit_service.log_action(
            entity_type="TRANCHE",
            entity_id=str(tranche.get("tranche_id")),
            action_type="RELEASE",
            user_id=user["user_id"],
            project_id=milestone["project_id"],
            old_value={"status": tranche.get("status")},
            new_value={"status": TRANCHE_RELEASED, "amount": to_float(amount)},
            session=session
        )

        logger.info(
            f"[TRANCHE] Released {tranche.get('tranche_id')} ({to_float(amount)}) "
            f"for milestone {milestone_id} on project:{milestone['project_id']}"
        )
        return {"tranche": released, "transaction": transaction}
