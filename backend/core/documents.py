from bson import ObjectId, Decimal128
from bson.errors import InvalidId
from datetime import datetime
from typing import Any, Dict, Optional

from core.errors import NotFoundError


def to_object_id(value: Any, entity: str) -> ObjectId:
    """Parse an identifier; malformed identifiers are reported as not found"""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(entity, str(value))


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]], id_field: str = "id") -> Optional[Dict[str, Any]]:
    """
    Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime).
    The Mongo `_id` is exposed under `id_field`.
    """
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            result[id_field] = str(value)
        else:
            result[key] = _serialize_value(value)
    return result
