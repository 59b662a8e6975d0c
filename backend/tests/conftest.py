"""
Shared fixtures: an in-memory Motor database (mongomock-motor), caller
identities and a TestClient wired to that database.
"""
import os

os.environ.setdefault("ENSURE_INDEXES_ON_STARTUP", "false")
os.environ.setdefault("MONGO_TRANSACTIONS", "false")
os.environ.setdefault("ENFORCE_DISBURSEMENT_CEILING", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from core.project_service import ProjectService


ADMIN = {"user_id": "admin-1", "role": "admin"}
OWNER = {"user_id": "beneficiary-1", "role": "beneficiary"}
OTHER_BENEFICIARY = {"user_id": "beneficiary-2", "role": "beneficiary"}
DONOR = {"user_id": "donor-1", "role": "donor"}


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client["aid_ledger_test"]


@pytest.fixture
def admin():
    return dict(ADMIN)


@pytest.fixture
def owner():
    return dict(OWNER)


@pytest.fixture
def other_beneficiary():
    return dict(OTHER_BENEFICIARY)


@pytest.fixture
def donor():
    return dict(DONOR)


@pytest.fixture
async def project(db, owner):
    """A project owned by `owner` with requested_amount 1000"""
    return await ProjectService(db).create_project(
        {
            "title": "Community well",
            "description": "Borehole and hand pump for the village school",
            "category": "water",
            "location": "Kisumu",
            "requested_amount": 1000
        },
        owner
    )


@pytest.fixture
def project_id(project):
    return str(project["_id"])


@pytest.fixture
def missing_id():
    return str(ObjectId())
