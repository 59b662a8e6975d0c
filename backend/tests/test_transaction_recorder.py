"""
Transaction recorder tests: balance snapshots, ownership, validation
"""
import asyncio
import pytest
from datetime import datetime, timezone

from core.errors import (
    ForbiddenError, NotFoundError, ValidationFailure, DisbursementCeilingError, ConcurrentModificationError
)
from core.ledger import LedgerReconciler
from core.transaction_recorder import TransactionRecorder


class TestRecord:

    async def test_snapshot_uses_chronological_prior_balance(self, db, project_id, admin, owner):
        """disbursement D, expense 100, revenue 50 -> next prior balance is D - 50"""
        recorder = TransactionRecorder(db)
        await recorder.record({"project_id": project_id, "type": "disbursement", "amount": 1000,
                               "date": datetime(2024, 1, 1)}, admin)
        await recorder.record({"project_id": project_id, "type": "expense", "amount": 100,
                               "date": datetime(2024, 1, 2)}, owner)
        await recorder.record({"project_id": project_id, "type": "revenue", "amount": 50,
                               "date": datetime(2024, 1, 3)}, owner)

        latest = await recorder.record({"project_id": project_id, "type": "expense", "amount": 10,
                                        "date": datetime(2024, 1, 4)}, owner)

        # prior balance 950, minus this expense
        assert latest["balance"] == 940.0

    async def test_defaults_and_manual_source(self, db, project_id, owner):
        recorder = TransactionRecorder(db)
        transaction = await recorder.record(
            {"project_id": project_id, "type": "revenue", "amount": "12.345", "category": "sales"},
            owner
        )

        assert transaction["amount"] == 12.35
        assert transaction["balance"] == 12.35
        assert transaction["source"] == {"type": "manual", "id": None}
        assert transaction["created_by"] == owner["user_id"]
        assert isinstance(transaction["date"], datetime)

    async def test_aware_date_is_stored_as_naive_utc(self, db, project_id, owner):
        recorder = TransactionRecorder(db)
        transaction = await recorder.record(
            {"project_id": project_id, "type": "expense", "amount": 5,
             "date": datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)},
            owner
        )
        assert transaction["date"] == datetime(2024, 6, 1, 12, 0)

    async def test_record_claims_project_version(self, db, project, project_id, owner):
        """Each ledger write bumps the project version; totals stay derived"""
        await TransactionRecorder(db).record(
            {"project_id": project_id, "type": "expense", "amount": 30}, owner
        )
        stored = await db.projects.find_one({"_id": project["_id"]})
        assert stored["version"] == 1
        assert stored["ledger_updated_at"] is not None
        assert "total_disbursed" not in stored

    async def test_audit_entry_written(self, db, project_id, owner):
        transaction = await TransactionRecorder(db).record(
            {"project_id": project_id, "type": "expense", "amount": 30}, owner
        )
        log = await db.audit_logs.find_one({"entity_id": str(transaction["_id"])})
        assert log["action_type"] == "CREATE"
        assert log["entity_type"] == "TRANSACTION"


class TestRecordRejections:

    async def test_non_owner_beneficiary_is_forbidden(self, db, project_id, other_beneficiary):
        with pytest.raises(ForbiddenError):
            await TransactionRecorder(db).record(
                {"project_id": project_id, "type": "expense", "amount": 10}, other_beneficiary
            )

    async def test_donor_is_forbidden(self, db, project_id, donor):
        with pytest.raises(ForbiddenError):
            await TransactionRecorder(db).record(
                {"project_id": project_id, "type": "revenue", "amount": 10}, donor
            )

    async def test_beneficiary_cannot_record_disbursement(self, db, project_id, owner):
        with pytest.raises(ForbiddenError):
            await TransactionRecorder(db).record(
                {"project_id": project_id, "type": "disbursement", "amount": 10}, owner
            )

    async def test_unknown_project(self, db, missing_id, admin):
        with pytest.raises(NotFoundError):
            await TransactionRecorder(db).record(
                {"project_id": missing_id, "type": "expense", "amount": 10}, admin
            )

    async def test_malformed_project_id_is_not_found(self, db, admin):
        with pytest.raises(NotFoundError):
            await TransactionRecorder(db).record(
                {"project_id": "not-an-id", "type": "expense", "amount": 10}, admin
            )

    async def test_missing_project_id(self, db, admin):
        with pytest.raises(ValidationFailure):
            await TransactionRecorder(db).record({"type": "expense", "amount": 10}, admin)

    @pytest.mark.parametrize("data", [
        {"type": "refund", "amount": 10},
        {"type": "expense", "amount": 0},
        {"type": "expense", "amount": -5},
        {"type": "expense", "amount": "ten"},
        {"type": "expense"},
    ])
    async def test_invalid_input(self, db, project_id, admin, data):
        with pytest.raises(ValidationFailure):
            await TransactionRecorder(db).record({**data, "project_id": project_id}, admin)


class TestReadUpdateDelete:

    async def test_list_scopes_beneficiary_to_own_projects(self, db, project_id, owner, other_beneficiary):
        recorder = TransactionRecorder(db)
        await recorder.record({"project_id": project_id, "type": "expense", "amount": 10}, owner)

        own = await recorder.list_transactions(owner)
        others = await recorder.list_transactions(other_beneficiary)

        assert own["pagination"]["total"] == 1
        assert others["pagination"]["total"] == 0

    async def test_list_newest_first_with_pagination(self, db, project_id, owner):
        recorder = TransactionRecorder(db)
        for day in (1, 2, 3):
            await recorder.record({"project_id": project_id, "type": "revenue", "amount": day,
                                   "date": datetime(2024, 1, day)}, owner)

        page = await recorder.list_transactions(owner, project_id=project_id, page=1, limit=2)

        assert [t["amount"] for t in page["transactions"]] == [3.0, 2.0]
        assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    async def test_update_only_touches_descriptive_fields(self, db, project_id, owner):
        recorder = TransactionRecorder(db)
        transaction = await recorder.record({"project_id": project_id, "type": "expense", "amount": 10}, owner)

        updated = await recorder.update_transaction(
            str(transaction["_id"]),
            {"description": "cement", "amount": 9999},
            owner
        )

        assert updated["description"] == "cement"
        assert updated["amount"] == 10.0
        assert updated["balance"] == -10.0

    async def test_update_by_other_user_forbidden(self, db, project_id, owner, other_beneficiary):
        recorder = TransactionRecorder(db)
        transaction = await recorder.record({"project_id": project_id, "type": "expense", "amount": 10}, owner)
        with pytest.raises(ForbiddenError):
            await recorder.update_transaction(str(transaction["_id"]), {"description": "x"}, other_beneficiary)

    async def test_delete_is_admin_only(self, db, project_id, owner, admin):
        recorder = TransactionRecorder(db)
        transaction = await recorder.record({"project_id": project_id, "type": "expense", "amount": 10}, owner)

        with pytest.raises(ForbiddenError):
            await recorder.delete_transaction(str(transaction["_id"]), owner)

        await recorder.delete_transaction(str(transaction["_id"]), admin)
        with pytest.raises(NotFoundError):
            await recorder.get_transaction(str(transaction["_id"]))


def _yield_after_history_read(monkeypatch, recorder):
    """Suspend after reading the history, the way Motor suspends at every I/O call"""
    real_load_history = recorder.ledger.load_history

    async def load_history(project_id, session=None):
        history = await real_load_history(project_id, session=session)
        await asyncio.sleep(0)
        return history

    monkeypatch.setattr(recorder.ledger, "load_history", load_history)


class TestConcurrentLedgerWrites:
    """Concurrent writes on one project collide on the project version"""

    async def test_interleaved_records_one_wins(self, db, monkeypatch, project_id, owner):
        recorder = TransactionRecorder(db)
        _yield_after_history_read(monkeypatch, recorder)

        results = await asyncio.gather(
            recorder.record({"project_id": project_id, "type": "revenue", "amount": 100}, owner),
            recorder.record({"project_id": project_id, "type": "revenue", "amount": 50}, owner),
            return_exceptions=True
        )

        conflicts = [r for r in results if isinstance(r, ConcurrentModificationError)]
        recorded = [r for r in results if isinstance(r, dict)]
        assert len(conflicts) == 1
        assert len(recorded) == 1
        assert await db.transactions.count_documents({"project_id": project_id}) == 1

        report = await LedgerReconciler(db).reconcile(project_id)
        assert report["drift_count"] == 0

    async def test_stale_project_read_is_refused(self, db, project, project_id, owner):
        recorder = TransactionRecorder(db)
        await recorder.record({"project_id": project_id, "type": "revenue", "amount": 100}, owner)

        with pytest.raises(ConcurrentModificationError):
            await recorder.record(
                {"project_id": project_id, "type": "expense", "amount": 20}, owner, project=project
            )
        assert await db.transactions.count_documents({"project_id": project_id}) == 1

    async def test_ceiling_checked_before_any_write(self, db, project, project_id, admin):
        recorder = TransactionRecorder(db)
        await recorder.record({"project_id": project_id, "type": "disbursement", "amount": 800}, admin,
                              enforce_ceiling=True)

        with pytest.raises(DisbursementCeilingError) as exc:
            await recorder.record({"project_id": project_id, "type": "disbursement", "amount": 300}, admin,
                                  enforce_ceiling=True)

        assert exc.value.total_disbursed == 800.0
        assert exc.value.ceiling == 1000.0
        stored = await db.projects.find_one({"_id": project["_id"]})
        assert stored["version"] == 1
        assert await db.transactions.count_documents({"project_id": project_id}) == 1

    async def test_ceiling_ignores_expenses(self, db, project_id, admin, owner):
        recorder = TransactionRecorder(db)
        await recorder.record({"project_id": project_id, "type": "expense", "amount": 5000}, owner,
                              enforce_ceiling=True)
        transaction = await recorder.record(
            {"project_id": project_id, "type": "disbursement", "amount": 1000}, admin, enforce_ceiling=True
        )
        assert transaction["balance"] == -4000.0
