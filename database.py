"""
MongoDB access for the YouthGuard API.

``db`` is None when DATABASE_URL is not configured so the app can still start
and answer health checks.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from logger import get_logger

log = get_logger("database")


def get_database(url: Optional[str] = None, name: Optional[str] = None) -> Optional[Database]:
    url = url or config.DATABASE_URL
    if not url:
        log.warning("DATABASE_URL not set, running without a database")
        return None
    client = MongoClient(url, tz_aware=True)
    return client[name or config.DATABASE_NAME]


def ensure_indexes(database: Database) -> None:
    database["users"].create_index([("email", ASCENDING)], unique=True)
    database["users"].create_index([("kind", ASCENDING)])
    database["users"].create_index([("accountStatus", ASCENDING)])
    database["users"].create_index([("location.state", ASCENDING)])
    database["courses"].create_index([("createdAt", DESCENDING)])
    database["lessons"].create_index([("courseId", ASCENDING), ("orderIndex", ASCENDING)])
    database["enrollments"].create_index([("userId", ASCENDING), ("courseId", ASCENDING)], unique=True)
    database["jobs"].create_index([("isActive", ASCENDING), ("createdAt", DESCENDING)])
    database["applications"].create_index([("applicantId", ASCENDING), ("jobId", ASCENDING)], unique=True)
    database["progress"].create_index([("userId", ASCENDING), ("courseId", ASCENDING)], unique=True)
    database["messages"].create_index([("conversationId", ASCENDING), ("createdAt", DESCENDING)])
    database["conversations"].create_index([("participants.user", ASCENDING), ("lastActivity", DESCENDING)])
    database["conversations"].create_index([("lastActivity", DESCENDING)])
    database["conversations"].create_index(
        [("directKey", ASCENDING)], unique=True, partialFilterExpression={"type": "direct", "status": "active"}
    )
    log.info("Indexes ensured")


db = get_database()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(
    collection_name: str,
    data: Union[BaseModel, Dict[str, Any]],
    database: Optional[Database] = None,
    session=None,
) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump(by_alias=True) if isinstance(data, BaseModel) else dict(data)
    now = _now()
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    result = target[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)
