from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

from .errors import NotFound


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def oid(s: str) -> ObjectId:
    """Parse an id for Mongo lookups. Malformed ids cannot exist, so they are reported as missing."""
    try:
        return ObjectId(s)
    except (InvalidId, TypeError):
        raise NotFound("not found")


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a stored document into its JSON shape: `_id` -> `id`, ObjectIds and datetimes to strings."""
    if doc is None:
        return None
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = _iso(v)
        elif isinstance(v, dict):
            out[k] = to_public(v)
        elif isinstance(v, list):
            out[k] = [to_public(x) if isinstance(x, dict) else x for x in v]
        else:
            out[k] = v
    return out
