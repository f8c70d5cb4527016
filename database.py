"""
MongoDB access for the marketplace.

The client is created lazily by pymongo, so importing this module never
blocks on the server. Collections are named after the lowercased schema
class (User -> "user").
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document stamped with created_at/updated_at and return it with its _id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    res = database[collection].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["product"].create_index([("maker", ASCENDING)])
    database["review"].create_index([("product", ASCENDING), ("tester", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", database.name)


def attach_users(database, docs: List[Dict], field: str, fields: Iterable[str]) -> List[Dict]:
    """Replace the user id stored under ``field`` with a small user summary.

    All referenced users are fetched in one query. Ids that do not resolve
    are left as None.
    """
    ids = set()
    for d in docs:
        ref = d.get(field)
        if ref and ObjectId.is_valid(ref):
            ids.add(ObjectId(ref))
    projection = {f: 1 for f in fields}
    users = {str(u["_id"]): u for u in database["user"].find({"_id": {"$in": list(ids)}}, projection)} if ids else {}
    for d in docs:
        u = users.get(d.get(field))
        d[field] = {"id": str(u["_id"]), **{f: u.get(f) for f in fields}} if u else None
    return docs
