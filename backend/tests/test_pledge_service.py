"""
Pledge service tests: creation rules, donor scoping, confirm/cancel and the donor's projects view
"""
import pytest

from core.errors import ForbiddenError, NotFoundError, ValidationFailure
from core.pledge_service import PledgeService
from core.project_service import ProjectService
from core.state_machine import InvalidTransitionError


@pytest.fixture
def pledges(db):
    return PledgeService(db)


@pytest.fixture
async def approved_project_id(db, project_id, admin):
    await ProjectService(db).approve_project(project_id, admin)
    return project_id


class TestCreate:

    async def test_donor_pledges_to_approved_project(self, db, pledges, approved_project_id, donor):
        pledge = await pledges.create_pledge({"project_id": approved_project_id, "amount": "250.004"}, donor)

        assert pledge["status"] == "pending"
        assert pledge["donor_id"] == donor["user_id"]
        assert pledge["amount"] == 250.0
        # a pledge is a commitment, not a payment
        assert await db.transactions.count_documents({}) == 0

    async def test_pending_project_refuses_pledges(self, pledges, project_id, donor):
        with pytest.raises(ValidationFailure):
            await pledges.create_pledge({"project_id": project_id, "amount": 100}, donor)

    async def test_beneficiary_cannot_pledge(self, pledges, approved_project_id, owner):
        with pytest.raises(ForbiddenError):
            await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, owner)

    @pytest.mark.parametrize("amount", [0, -5, "lots", None])
    async def test_invalid_amount(self, pledges, approved_project_id, donor, amount):
        with pytest.raises(ValidationFailure):
            await pledges.create_pledge({"project_id": approved_project_id, "amount": amount}, donor)

    async def test_unknown_project(self, pledges, missing_id, donor):
        with pytest.raises(NotFoundError):
            await pledges.create_pledge({"project_id": missing_id, "amount": 100}, donor)


class TestListing:

    async def test_donor_sees_only_own_pledges(self, pledges, approved_project_id, donor, admin):
        other_donor = {"user_id": "donor-2", "role": "donor"}
        await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, donor)
        await pledges.create_pledge({"project_id": approved_project_id, "amount": 200}, other_donor)

        mine = await pledges.list_pledges(donor)
        assert [p["amount"] for p in mine["pledges"]] == [100.0]
        assert (await pledges.list_pledges(admin))["pagination"]["total"] == 2
        assert (await pledges.list_pledges(admin, project_id=approved_project_id, status="pending"))[
            "pagination"]["total"] == 2

    async def test_unknown_status_rejected(self, pledges, admin):
        with pytest.raises(ValidationFailure):
            await pledges.list_pledges(admin, status="paid")


class TestConfirmAndCancel:

    async def test_admin_confirms_then_donor_cancels(self, pledges, approved_project_id, donor, admin):
        pledge = await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, donor)
        pledge_id = str(pledge["_id"])

        confirmed = await pledges.confirm(pledge_id, admin)
        assert confirmed["status"] == "confirmed"

        cancelled = await pledges.cancel(pledge_id, donor)
        assert cancelled["status"] == "cancelled"
        assert [h["to_state"] for h in cancelled["state_history"]] == ["confirmed", "cancelled"]

    async def test_only_admin_confirms(self, pledges, approved_project_id, donor):
        pledge = await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, donor)
        with pytest.raises(ForbiddenError):
            await pledges.confirm(str(pledge["_id"]), donor)

    async def test_other_donor_cannot_cancel(self, pledges, approved_project_id, donor):
        pledge = await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, donor)
        with pytest.raises(ForbiddenError):
            await pledges.cancel(str(pledge["_id"]), {"user_id": "donor-2", "role": "donor"})

    async def test_cancelled_pledge_cannot_be_confirmed(self, pledges, approved_project_id, donor, admin):
        pledge = await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, donor)
        await pledges.cancel(str(pledge["_id"]), donor)
        with pytest.raises(InvalidTransitionError):
            await pledges.confirm(str(pledge["_id"]), admin)


class TestDonorProjects:
    """A donor's "my projects" view follows their live pledges"""

    async def test_my_projects_lists_pledged_projects(self, db, pledges, approved_project_id, donor):
        projects = ProjectService(db)
        assert await projects.my_projects(donor) == []

        pledge = await pledges.create_pledge({"project_id": approved_project_id, "amount": 100}, donor)
        mine = await projects.my_projects(donor)
        assert [str(p["_id"]) for p in mine] == [approved_project_id]
        assert mine[0]["total_disbursed"] == 0.0

        await pledges.cancel(str(pledge["_id"]), donor)
        assert await projects.my_projects(donor) == []
