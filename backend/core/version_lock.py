"""
VERSION LOCK ENGINE

Optimistic concurrency for mutable ledger documents (projects, milestones,
funding requests).

Every such document carries an integer `version`. An update is applied with a
filter on the version that was read (and, for status transitions, on the status
that was read) and increments it. If another writer got there first the filter
matches nothing and ConcurrentModificationError is raised. No retries.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from core.errors import ConcurrentModificationError

logger = logging.getLogger(__name__)


def version_filter(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Filter clause matching the version held by `doc`"""
    if "version" not in doc:
        return {"version": {"$exists": False}}
    return {"version": doc["version"]}


class VersionLock:
    """Compare-and-set updates keyed on the document version."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def compare_and_set(
        self,
        collection_name: str,
        entity: str,
        doc: Dict[str, Any],
        set_fields: Dict[str, Any],
        expected_status: Optional[str] = None,
        push: Optional[Dict[str, Any]] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Apply `set_fields` to `doc` only if it is unchanged since it was read.

        Args:
            collection_name: Mongo collection holding the document
            entity: Entity label used in errors and logs
            doc: The document as read (must carry _id)
            set_fields: Fields to $set
            expected_status: When given, status must still equal this value
            push: Optional $push clause (e.g. state_history entry)

        Returns:
            The updated document

        Raises:
            ConcurrentModificationError if the version (or status) moved
        """
        query = {"_id": doc["_id"], **version_filter(doc)}
        if expected_status is not None:
            query["status"] = expected_status

        update = {
            "$set": {**set_fields, "updated_at": datetime.utcnow()},
            "$inc": {"version": 1}
        }
        if push:
            update["$push"] = push

        result = await self.db[collection_name].find_one_and_update(
            query,
            update,
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if result is None:
            logger.warning(
                f"[VERSION_LOCK] Conflict on {entity} {doc['_id']} "
                f"(expected version={doc.get('version')}, status={expected_status})"
            )
            raise ConcurrentModificationError(entity, str(doc["_id"]))

        logger.debug(f"[VERSION_LOCK] {entity} {doc['_id']} -> v{result.get('version')}")
        return result
