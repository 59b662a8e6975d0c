"""
UNIT OF WORK

Runs a multi-document mutation inside a MongoDB session transaction when a
client is supplied; otherwise yields no session and writes are applied one by
one (each still version-checked).

A transient transaction error (a write conflict with another transaction on
the same document) aborts the transaction and surfaces as
ConcurrentModificationError, like a failed version check.

Usage:
    async with unit_of_work(self.client) as session:
        await self.db.milestones.update_one(..., session=session)
        await self.db.projects.update_one(..., session=session)
"""

from contextlib import asynccontextmanager
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from typing import Optional
import logging

from core.errors import ConcurrentModificationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(client: Optional[AsyncIOMotorClient]):
    if client is None:
        yield None
        return

    async with await client.start_session() as session:
        try:
            async with session.start_transaction():
                # Transaction commits on context exit, aborts if the body raises
                yield session
        except PyMongoError as e:
            if not e.has_error_label("TransientTransactionError"):
                raise
            logger.warning(f"[UNIT_OF_WORK] Transaction aborted on write conflict: {e}")
            raise ConcurrentModificationError("Document", "in this unit of work") from e
