from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from typing import Optional
import logging

from config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


def get_client() -> AsyncIOMotorClient:
    """Lazily create the shared Motor client"""
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.mongo_url)
        logger.info(f"MongoDB client created for database: {settings.db_name}")
    return _client


def get_db() -> AsyncIOMotorDatabase:
    """FastAPI dependency: the application database"""
    return get_client()[settings.db_name]


def get_transaction_client() -> Optional[AsyncIOMotorClient]:
    """
    FastAPI dependency: the client used to open session transactions.
    Returns None when MONGO_TRANSACTIONS is disabled.
    """
    if not settings.mongo_transactions:
        return None
    return get_client()


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """
    Create the indexes the ledger relies on.
    Chronological replay reads transactions by (project_id, date, _id).
    """
    await db.transactions.create_index(
        [("project_id", ASCENDING), ("date", ASCENDING), ("_id", ASCENDING)],
        name="idx_transactions_project_chronological"
    )
    await db.transactions.create_index(
        [("project_id", ASCENDING), ("type", ASCENDING)],
        name="idx_transactions_project_type"
    )
    await db.transactions.create_index(
        [("source.type", ASCENDING), ("source.id", ASCENDING)],
        name="idx_transactions_source"
    )
    await db.milestones.create_index(
        [("project_id", ASCENDING), ("status", ASCENDING)],
        name="idx_milestones_project_status"
    )
    await db.funding_requests.create_index(
        [("project_id", ASCENDING), ("created_at", DESCENDING)],
        name="idx_funding_requests_project"
    )
    await db.projects.create_index(
        [("beneficiary_id", ASCENDING)],
        name="idx_projects_beneficiary"
    )
    await db.pledges.create_index(
        [("donor_id", ASCENDING), ("status", ASCENDING)],
        name="idx_pledges_donor"
    )
    await db.pledges.create_index(
        [("project_id", ASCENDING), ("created_at", DESCENDING)],
        name="idx_pledges_project"
    )
    await db.audit_logs.create_index(
        [("project_id", ASCENDING), ("timestamp", DESCENDING)],
        name="idx_audit_logs_project"
    )
    logger.info("Ledger indexes ensured")
