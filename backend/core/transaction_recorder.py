"""
TRANSACTION RECORDER

Appends a signed transaction (expense / revenue / disbursement) to a project's
history. The `balance` stored on the new transaction is a snapshot of the
project balance at record time:

    balance = replay(all existing transactions, chronological) + effect(new)

The snapshot is frozen; later edits or deletions of earlier transactions do not
rewrite it (core.ledger.LedgerReconciler reports the drift).

Before inserting, the recorder claims the project with a version compare-and-set
on the project document it read. Two ledger writes racing on one project read
the same version, so the second claim fails with ConcurrentModificationError
instead of inserting a snapshot that misses the first write. The optional
disbursement ceiling is checked against that same project read and history.

All disbursements go through here, either recorded by an admin or emitted by
the milestone / funding request approval engines with a `source` reference.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorClient
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List
import logging
import math

from audit_service import AuditService
from permissions import permission_checker
from core.documents import to_object_id
from core.errors import NotFoundError, ForbiddenError, ValidationFailure, DisbursementCeilingError
from core.financial_precision import to_decimal, to_float, FinancialPrecisionError
from core.ledger import LedgerService, TRANSACTION_TYPES, DISBURSEMENT, compute_balance, signed_effect, sum_by_type
from core.project_service import ProjectService
from core.unit_of_work import unit_of_work
from core.version_lock import VersionLock

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = ("category", "description", "proof_url")


class TransactionRecorder:

    def __init__(self, db: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None):
        self.db = db
        self.client = client
        self.ledger = LedgerService(db)
        self.projects = ProjectService(db)
        self.version_lock = VersionLock(db)
        self.audit_service = AuditService(db)

    def _validate(self, data: Dict[str, Any]):
        if not data.get("project_id") or not data.get("type") or data.get("amount") is None:
            raise ValidationFailure("Project ID, type, and amount are required")

        if data["type"] not in TRANSACTION_TYPES:
            raise ValidationFailure(
                f"Invalid transaction type '{data['type']}'. Expected one of {list(TRANSACTION_TYPES)}"
            )

        try:
            amount = to_decimal(data["amount"])
        except FinancialPrecisionError:
            raise ValidationFailure("Amount must be numeric")

        if not amount.is_finite() or amount <= 0:
            raise ValidationFailure("Amount must be greater than zero")

        return amount

    async def check_ceiling(
        self,
        project: Dict[str, Any],
        amount: Decimal,
        history: Optional[List[Dict[str, Any]]] = None,
        session=None
    ):
        """
        Raise DisbursementCeilingError if disbursing `amount` would take the
        project's total disbursed above its requested amount.
        """
        project_id = str(project["_id"])
        if history is None:
            history = await self.ledger.load_history(project_id, session=session)

        ceiling = to_decimal(project.get("requested_amount") or 0)
        disbursed = sum_by_type(history, DISBURSEMENT)

        if disbursed + amount > ceiling:
            logger.warning(
                f"[LEDGER] Ceiling exceeded on project:{project_id}: "
                f"disbursed={to_float(disbursed)} + {to_float(amount)} > {to_float(ceiling)}"
            )
            raise DisbursementCeilingError(project_id, to_float(disbursed), to_float(amount), to_float(ceiling))

    async def record(
        self,
        data: Dict[str, Any],
        user: Dict[str, Any],
        source: Optional[Dict[str, Any]] = None,
        session=None,
        project: Optional[Dict[str, Any]] = None,
        enforce_ceiling: bool = False
    ) -> Dict[str, Any]:
        """
        Record a transaction and return it with its balance snapshot.

        Args:
            data: project_id, type, amount, optional category/description/date/proof_url
            user: caller identity {user_id, role}
            source: set by the approval engines; None for manually recorded transactions
            session: Mongo session when running inside a caller's unit of work
            project: the project document as already read by the caller; the
                claim is made against its version
            enforce_ceiling: reject a disbursement that would exceed the
                project's requested amount

        Raises:
            ValidationFailure, DisbursementCeilingError, NotFoundError,
            ForbiddenError, ConcurrentModificationError
        """
        if session is None and self.client is not None:
            async with unit_of_work(self.client) as own_session:
                return await self._record(data, user, source, own_session, project, enforce_ceiling)
        return await self._record(data, user, source, session, project, enforce_ceiling)

    async def _record(self, data, user, source, session, project, enforce_ceiling) -> Dict[str, Any]:
        amount = self._validate(data)
        project_id = str(data["project_id"])

        if project is None:
            project = await self.projects.get_project(project_id, session=session)

        if source is None:
            permission_checker.check_role(user, "beneficiary", "admin")
            permission_checker.check_project_write_access(user, project)
            if data["type"] == DISBURSEMENT and user["role"] != "admin":
                raise ForbiddenError("Only admins or approvals may record disbursements")
            source = {"type": "manual", "id": None}

        history = await self.ledger.load_history(project_id, session=session)

        if enforce_ceiling and data["type"] == DISBURSEMENT:
            await self.check_ceiling(project, amount, history=history)

        balance = compute_balance(history) + signed_effect(data["type"], amount)

        now = datetime.utcnow()
        date = data.get("date") or now
        if date.tzinfo is not None:
            # Stored as naive UTC like every other timestamp
            date = date.astimezone(timezone.utc).replace(tzinfo=None)

        # Claim the project; a concurrent ledger write on it fails here
        await self.version_lock.compare_and_set(
            "projects", "Project", project, {"ledger_updated_at": now}, session=session
        )

        transaction = {
            "project_id": project_id,
            "type": data["type"],
            "category": data.get("category"),
            "amount": to_float(amount),
            "description": data.get("description"),
            "date": date,
            "balance": to_float(balance),
            "proof_url": data.get("proof_url"),
            "source": source,
            "created_by": user["user_id"],
            "created_at": now,
            "updated_at": now
        }

        result = await self.db.transactions.insert_one(transaction, session=session)
        transaction["_id"] = result.inserted_id
        transaction_id = str(result.inserted_id)

        await self.audit_service.log_action(
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            action_type="CREATE",
            user_id=user["user_id"],
            project_id=project_id,
            new_value={
                "type": transaction["type"],
                "amount": transaction["amount"],
                "balance": transaction["balance"],
                "source": source
            },
            session=session
        )

        logger.info(
            f"[LEDGER] Recorded {transaction['type']} {transaction['amount']} on project:{project_id} "
            f"(prior transactions={len(history)}, balance={transaction['balance']})"
        )
        return transaction

    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        transaction = await self.db.transactions.find_one(
            {"_id": to_object_id(transaction_id, "Transaction")}
        )
        if not transaction:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    async def list_transactions(
        self,
        user: Dict[str, Any],
        project_id: Optional[str] = None,
        transaction_type: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 50
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if project_id:
            query["project_id"] = project_id
        if transaction_type:
            query["type"] = transaction_type
        if category:
            query["category"] = category

        # Beneficiaries only see their own projects unless they ask for one explicitly
        if user["role"] == "beneficiary" and not project_id:
            owned = await self.db.projects.find({"beneficiary_id": user["user_id"]}).to_list(length=None)
            query["project_id"] = {"$in": [str(p["_id"]) for p in owned]}

        transactions = await self.db.transactions.find(query).sort([("date", -1), ("_id", -1)]) \
            .skip((page - 1) * limit).limit(limit).to_list(length=limit)
        total = await self.db.transactions.count_documents(query)

        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if limit else 0
            }
        }

    async def list_for_project(self, project_id: str) -> List[Dict[str, Any]]:
        await self.projects.get_project(project_id)
        return await self.db.transactions.find({"project_id": project_id}) \
            .sort([("date", -1), ("_id", -1)]).to_list(length=None)

    async def update_transaction(
        self,
        transaction_id: str,
        data: Dict[str, Any],
        user: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Update descriptive fields only. Type, amount, date and balance are immutable.
        Only the creator or an admin may update.
        """
        transaction = await self.get_transaction(transaction_id)

        if user["role"] != "admin" and transaction.get("created_by") != user["user_id"]:
            raise ForbiddenError()

        update_dict = {k: data[k] for k in MUTABLE_FIELDS if data.get(k)}
        if not update_dict:
            return transaction

        update_dict["updated_at"] = datetime.utcnow()
        await self.db.transactions.update_one(
            {"_id": transaction["_id"]},
            {"$set": update_dict}
        )

        await self.audit_service.log_action(
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            action_type="UPDATE",
            user_id=user["user_id"],
            project_id=transaction["project_id"],
            old_value={k: transaction.get(k) for k in MUTABLE_FIELDS},
            new_value={k: v for k, v in update_dict.items() if k in MUTABLE_FIELDS}
        )

        return {**transaction, **update_dict}

    async def delete_transaction(self, transaction_id: str, user: Dict[str, Any]):
        """Explicit privileged deletion. Later snapshots are not recomputed."""
        permission_checker.check_admin_role(user)
        transaction = await self.get_transaction(transaction_id)

        await self.db.transactions.delete_one({"_id": transaction["_id"]})

        await self.audit_service.log_action(
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            action_type="DELETE",
            user_id=user["user_id"],
            project_id=transaction["project_id"],
            old_value={
                "type": transaction.get("type"),
                "amount": transaction.get("amount"),
                "balance": transaction.get("balance")
            }
        )

        logger.warning(
            f"[LEDGER] Deleted transaction {transaction_id} on project:{transaction['project_id']}; "
            f"later balance snapshots are left as recorded"
        )
