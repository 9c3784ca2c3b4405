"""
Repositories: one per collection, all sharing ``BaseRepository``.

Documents leave a repository as plain dicts with ``id`` (string) instead of
``_id``. Missing documents are ``None``; only store failures raise, and they
are normalized to ValidationError / DuplicateError / CastError first.
"""
import logging
import math
import re
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, OperationFailure

import config
from database import _now, create_document
from errors import AppError, CastError, DuplicateError, ValidationError, duplicate_key_field, field_errors
from logger import get_logger, log_event, redact
from schemas import (
    Application,
    Conversation,
    Course,
    Document,
    Enrollment,
    Job,
    Lesson,
    Message,
    Progress,
    User,
)

log = get_logger("repository")

SortSpec = List[Tuple[str, int]]

# Fields never copied into a populated reference.
SECRET_FIELDS = ("password", "emailVerificationToken", "emailVerificationExpires")

# What another user may see of an account through ``populate``.
PUBLIC_USER_FIELDS = ("firstName", "lastName", "kind", "profilePicture")

# Standalone servers accept sessions but refuse transactions with this code.
ILLEGAL_OPERATION = 20


def to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError) as exc:
        raise CastError(f"Invalid id: {value}") from exc


def parse_sort(value: Union[None, str, SortSpec]) -> Optional[SortSpec]:
    """``"-createdAt,title"`` -> ``[("createdAt", -1), ("title", 1)]``"""
    if not value:
        return None
    if not isinstance(value, str):
        return list(value)
    spec = []
    for part in re.split(r"[,\s]+", value.strip()):
        if not part:
            continue
        if part.startswith("-"):
            spec.append((part[1:], DESCENDING))
        else:
            spec.append((part.lstrip("+"), ASCENDING))
    return spec or None


def parse_fields(value: Union[None, str, Sequence[str]]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [f for f in re.split(r"[,\s]+", value.strip()) if f]
    return list(value)


def projection_for(select: Union[None, str, Sequence[str]]) -> Optional[Dict[str, int]]:
    fields = [f for f in parse_fields(select) if f.lstrip("+-") not in ("id", "_id")]
    if not fields:
        return None
    if all(f.startswith("-") for f in fields):
        return {f[1:]: 0 for f in fields}
    return {f.lstrip("+"): 1 for f in fields if not f.startswith("-")}


def build_pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    has_next = page < total_pages
    has_prev = page > 1
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalCount": total,
        "limit": limit,
        "hasNextPage": has_next,
        "hasPrevPage": has_prev,
        "nextPage": page + 1 if has_next else None,
        "prevPage": page - 1 if has_prev else None,
    }


def direct_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted((user_a, user_b)))


class BaseRepository:
    """CRUD, pagination and error normalization over one collection.

    Subclasses set ``collection_name``, ``schema`` and ``entity`` and may
    declare ``unique_fields`` (tuples of stored field names backed by unique
    indexes), ``hidden_fields`` (stripped unless ``include_hidden``),
    ``references`` (field -> collection, for ``populate``), ``reference_fields``
    (field -> the only fields a populated reference exposes) and ``scope``
    (criteria applied to every query).
    """

    collection_name: str = ""
    schema: Type[Document] = Document
    entity: str = "Document"
    unique_fields: Tuple[Tuple[str, ...], ...] = ()
    hidden_fields: Tuple[str, ...] = ()
    references: Dict[str, str] = {}
    reference_fields: Dict[str, Tuple[str, ...]] = {}
    scope: Dict[str, Any] = {}

    def __init__(self, database: Database):
        self.db = database
        self.collection = database[self.collection_name]

    # ----------------------
    # Internals
    # ----------------------
    def _handle_error(self, operation: str, exc: Exception, data: Any = None) -> Exception:
        log_event(
            log,
            logging.WARNING if isinstance(exc, AppError) else logging.ERROR,
            f"{self.entity} {operation} failed",
            entity=self.entity,
            operation=operation,
            outcome="error",
            error=str(exc),
            data=redact(data),
        )
        if isinstance(exc, AppError):
            return exc
        if isinstance(exc, DuplicateKeyError):
            return self._duplicate(exc, data)
        if isinstance(exc, PydanticValidationError):
            return ValidationError(errors=field_errors(exc))
        if isinstance(exc, InvalidId):
            return CastError(f"Invalid {self.entity} id")
        return exc

    def _duplicate(self, exc: DuplicateKeyError, data: Any) -> DuplicateError:
        return DuplicateError(duplicate_key_field(exc) or self._duplicate_field(data) or "value")

    def _duplicate_field(self, data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        for fields in self.unique_fields:
            if not all(f in data for f in fields):
                continue
            criteria = {f: data[f] for f in fields}
            if "_id" in data:
                criteria["_id"] = {"$ne": data["_id"]}
            if self.collection.find_one(criteria, {"_id": 1}) is not None:
                return fields[0]
        return None

    @contextmanager
    def _operation(self, name: str, data: Any = None):
        try:
            yield
        except Exception as exc:
            mapped = self._handle_error(name, exc, data)
            if mapped is exc:
                raise
            raise mapped from exc
        log_event(log, logging.DEBUG, f"{self.entity} {name}", entity=self.entity, operation=name, outcome="ok")

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            model = self.schema.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(errors=field_errors(exc)) from exc
        return model.model_dump(by_alias=True)

    def _criteria(self, criteria: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query = dict(self.scope)
        for key, value in (criteria or {}).items():
            if key not in ("id", "_id"):
                query[key] = value
            elif isinstance(value, dict) and "$in" in value:
                query["_id"] = {"$in": [to_object_id(v) for v in value["$in"]]}
            else:
                query["_id"] = to_object_id(value)
        return query

    def _object_id(self, id: Any) -> Optional[ObjectId]:
        try:
            return to_object_id(id)
        except CastError:
            log_event(log, logging.WARNING, f"Invalid {self.entity} id", entity=self.entity, id=str(id))
            return None

    def _shape(self, doc: Optional[Dict[str, Any]], options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        options = options or {}
        shaped = {"id": str(doc["_id"])}
        shaped.update((k, v) for k, v in doc.items() if k != "_id")
        if not options.get("include_hidden"):
            for field in self.hidden_fields:
                shaped.pop(field, None)
        for field in parse_fields(options.get("populate")):
            self._populate(shaped, field)
        return shaped

    def _populate(self, doc: Dict[str, Any], field: str) -> None:
        target = self.references.get(field)
        value = doc.get(field)
        if not target or not value:
            return
        try:
            fields = self.reference_fields.get(field)
            projection = {f: 1 for f in fields} if fields else None
            ref = self.db[target].find_one({"_id": to_object_id(value)}, projection)
        except CastError:
            return
        if ref is not None:
            ref = {"id": str(ref.pop("_id")), **{k: v for k, v in ref.items() if k not in SECRET_FIELDS}}
            doc[field] = ref

    def _sort(self, options: Dict[str, Any]) -> SortSpec:
        spec = parse_sort(options.get("sort")) or [("createdAt", DESCENDING)]
        if not any(key == "_id" for key, _ in spec):
            spec.append(("_id", spec[0][1]))
        return spec

    # ----------------------
    # Writes
    # ----------------------
    def create(self, data: Dict[str, Any], session=None) -> Dict[str, Any]:
        with self._operation("create", data):
            doc = self._validate(data)
            doc["createdAt"] = doc["updatedAt"] = _now()
            try:
                new_id = create_document(self.collection_name, doc, database=self.db, session=session)
            except DuplicateKeyError as exc:
                raise self._duplicate(exc, doc) from exc
            doc["_id"] = ObjectId(new_id)
        return self._shape(doc)

    def create_many(self, items: Iterable[Dict[str, Any]], session=None) -> List[Dict[str, Any]]:
        with self._operation("create_many"):
            now = _now()
            docs = [{**self._validate(item), "createdAt": now, "updatedAt": now} for item in items]
            if docs:
                self.collection.insert_many(docs, session=session)
        return [self._shape(d) for d in docs]

    def update(self, id: Any, patch: Dict[str, Any], options: Optional[Dict[str, Any]] = None, session=None) -> Optional[Dict[str, Any]]:
        """Validate ``patch`` merged over the stored document, then ``$set`` the patched fields."""
        oid = self._object_id(id)
        if oid is None:
            return None
        with self._operation("update", patch):
            current = self.collection.find_one({"_id": oid, **self.scope}, session=session)
            if current is None:
                return None
            if not patch:
                return self._shape(current, options)
            merged = {**current, **patch}
            validated = self._validate(merged)
            changes = {k: validated[k] for k in patch if k in validated}
            changes["updatedAt"] = _now()
            try:
                doc = self.collection.find_one_and_update(
                    {"_id": oid},
                    {"$set": changes},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
            except DuplicateKeyError as exc:
                raise self._duplicate(exc, {**changes, "_id": oid}) from exc
        return self._shape(doc, options)

    def update_many(self, criteria: Dict[str, Any], changes: Dict[str, Any], session=None) -> int:
        """Raw ``$set`` over every match, without schema validation."""
        with self._operation("update_many", changes):
            result = self.collection.update_many(
                self._criteria(criteria), {"$set": {**changes, "updatedAt": _now()}}, session=session
            )
        return result.modified_count

    def modify(
        self,
        id: Any,
        operators: Dict[str, Any],
        where: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Optional[Dict[str, Any]]:
        """Apply store-native atomic operators (``$inc``, ``$push``, ``$pull``, ``$addToSet``, ``$set``).

        ``where`` narrows the match so the write only happens if extra
        conditions hold; ``None`` means nothing matched.
        """
        oid = self._object_id(id)
        if oid is None:
            return None
        update = {k: dict(v) for k, v in operators.items()}
        update.setdefault("$set", {})["updatedAt"] = _now()
        with self._operation("modify", operators):
            doc = self.collection.find_one_and_update(
                {"_id": oid, **self.scope, **(where or {})},
                update,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        return self._shape(doc, options)

    def delete(self, id: Any, options: Optional[Dict[str, Any]] = None, session=None) -> Optional[Dict[str, Any]]:
        oid = self._object_id(id)
        if oid is None:
            return None
        with self._operation("delete"):
            doc = self.collection.find_one_and_delete({"_id": oid, **self.scope}, session=session)
        return self._shape(doc, options)

    def delete_many(self, criteria: Dict[str, Any], session=None) -> int:
        with self._operation("delete_many", criteria):
            result = self.collection.delete_many(self._criteria(criteria), session=session)
        return result.deleted_count

    # ----------------------
    # Reads
    # ----------------------
    def find_by_id(self, id: Any, options: Optional[Dict[str, Any]] = None, session=None) -> Optional[Dict[str, Any]]:
        oid = self._object_id(id)
        if oid is None:
            return None
        options = options or {}
        with self._operation("find_by_id"):
            doc = self.collection.find_one({"_id": oid, **self.scope}, projection_for(options.get("select")), session=session)
        return self._shape(doc, options)

    def find_one(self, criteria: Dict[str, Any], options: Optional[Dict[str, Any]] = None, session=None) -> Optional[Dict[str, Any]]:
        options = options or {}
        with self._operation("find_one", criteria):
            doc = self.collection.find_one(self._criteria(criteria), projection_for(options.get("select")), session=session)
        return self._shape(doc, options)

    def find_many(self, criteria: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, session=None) -> Dict[str, Any]:
        """Return a page: ``{documents, pagination}``.

        The count and the fetch are independent reads, so ``totalCount`` can
        drift from what the page shows under concurrent writes.
        """
        options = options or {}
        page = max(int(options.get("page") or 1), 1)
        limit = max(int(options.get("limit") or config.DEFAULT_PAGE_SIZE), 1)
        with self._operation("find_many", criteria):
            query = self._criteria(criteria)
            cursor = (
                self.collection.find(query, projection_for(options.get("select")), session=session)
                .sort(self._sort(options))
                .skip((page - 1) * limit)
                .limit(limit)
            )
            documents = [self._shape(d, options) for d in cursor]
            total = self.collection.count_documents(query, session=session)
        return {"documents": documents, "pagination": build_pagination(page, limit, total)}

    def find_all(self, criteria: Optional[Dict[str, Any]] = None, sort: Union[None, str, SortSpec] = None, session=None) -> List[Dict[str, Any]]:
        with self._operation("find_all", criteria):
            cursor = self.collection.find(self._criteria(criteria), session=session)
            cursor = cursor.sort(self._sort({"sort": sort}))
            return [self._shape(d) for d in cursor]

    def count(self, criteria: Optional[Dict[str, Any]] = None, session=None) -> int:
        with self._operation("count", criteria):
            return self.collection.count_documents(self._criteria(criteria), session=session)

    def exists(self, criteria: Dict[str, Any], session=None) -> bool:
        with self._operation("exists", criteria):
            return self.collection.find_one(self._criteria(criteria), {"_id": 1}, session=session) is not None

    def aggregate(self, pipeline: List[Dict[str, Any]], session=None) -> List[Dict[str, Any]]:
        stages = ([{"$match": dict(self.scope)}] if self.scope else []) + list(pipeline)
        with self._operation("aggregate"):
            return list(self.collection.aggregate(stages, session=session))

    def with_transaction(self, op: Callable[[Any], Any]) -> Any:
        """Run ``op(session)`` in a transaction; errors roll back and propagate.

        Without transaction support (disabled, a store without sessions or a
        standalone server) ``op`` runs with ``session=None``.
        """
        with self._operation("transaction"):
            if not config.TRANSACTIONS_ENABLED:
                return op(None)
            client = self.db.client
            try:
                session = client.start_session()
            except NotImplementedError:
                log.debug("Sessions unsupported, running without a transaction")
                return op(None)
            with session:
                if client.topology_description.topology_type_name == "Single":
                    log.debug("Standalone server, running without a transaction")
                    return op(None)
                try:
                    return session.with_transaction(op)
                except OperationFailure as exc:
                    if exc.code != ILLEGAL_OPERATION:
                        raise
                    log.warning("Transactions refused by the server, running without one")
                    return op(None)


# ----------------------
# Users
# ----------------------
class UserRepository(BaseRepository):
    collection_name = "users"
    schema = User
    entity = "User"
    unique_fields = (("email",),)
    hidden_fields = SECRET_FIELDS

    def find_by_email(self, email: str, include_secrets: bool = False) -> Optional[Dict[str, Any]]:
        return self.find_one({"email": email.strip().lower()}, {"include_hidden": include_secrets})

    def find_by_verification_token(self, hashed_token: str) -> Optional[Dict[str, Any]]:
        return self.find_one({"emailVerificationToken": hashed_token}, {"include_hidden": True})

    def search(self, text: str, kind: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        pattern = {"$regex": re.escape(text.strip()), "$options": "i"}
        criteria: Dict[str, Any] = {"$or": [{"firstName": pattern}, {"lastName": pattern}, {"email": pattern}]}
        if kind:
            criteria["kind"] = kind
        return self.find_many(criteria, options)

    def statistics(self) -> List[Dict[str, Any]]:
        return self.aggregate(
            [
                {
                    "$group": {
                        "_id": "$kind",
                        "count": {"$sum": 1},
                        "active": {"$sum": {"$cond": [{"$eq": ["$accountStatus", "active"]}, 1, 0]}},
                    }
                },
                {"$sort": {"_id": 1}},
            ]
        )


class YouthRepository(UserRepository):
    entity = "Youth"
    scope = {"kind": "Youth"}


# ----------------------
# Courses
# ----------------------
class CourseRepository(BaseRepository):
    collection_name = "courses"
    schema = Course
    entity = "Course"
    references = {"createdBy": "users"}
    reference_fields = {"createdBy": PUBLIC_USER_FIELDS}

    def adjust_enrollment_count(self, id: str, delta: int, session=None) -> Optional[Dict[str, Any]]:
        where = {"enrollmentCount": {"$gte": 1}} if delta < 0 else None
        return self.modify(id, {"$inc": {"enrollmentCount": delta}}, where=where, session=session)


class LessonRepository(BaseRepository):
    collection_name = "lessons"
    schema = Lesson
    entity = "Lesson"
    references = {"courseId": "courses"}

    def for_course(self, course_id: str) -> List[Dict[str, Any]]:
        return self.find_all({"courseId": course_id}, sort="orderIndex")


class EnrollmentRepository(BaseRepository):
    collection_name = "enrollments"
    schema = Enrollment
    entity = "Enrollment"
    unique_fields = (("userId", "courseId"),)
    references = {"courseId": "courses", "userId": "users"}
    reference_fields = {"userId": PUBLIC_USER_FIELDS}

    def statistics(self, course_id: str) -> List[Dict[str, Any]]:
        return self.aggregate(
            [
                {"$match": {"courseId": course_id}},
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "averageProgress": {"$avg": "$progressPercentage"}}},
                {"$sort": {"_id": 1}},
            ]
        )


# ----------------------
# Jobs
# ----------------------
class JobRepository(BaseRepository):
    collection_name = "jobs"
    schema = Job
    entity = "Job"
    references = {"postedBy": "users"}
    reference_fields = {"postedBy": PUBLIC_USER_FIELDS}


class ApplicationRepository(BaseRepository):
    collection_name = "applications"
    schema = Application
    entity = "Application"
    unique_fields = (("applicantId", "jobId"),)
    references = {"jobId": "jobs", "applicantId": "users", "employerId": "users"}
    reference_fields = {"applicantId": PUBLIC_USER_FIELDS, "employerId": PUBLIC_USER_FIELDS}

    def statistics(self) -> List[Dict[str, Any]]:
        return self.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}, {"$sort": {"_id": 1}}])


# ----------------------
# Progress
# ----------------------
class ProgressRepository(BaseRepository):
    collection_name = "progress"
    schema = Progress
    entity = "Progress"
    unique_fields = (("userId", "courseId"),)
    references = {"courseId": "courses", "userId": "users"}
    reference_fields = {"userId": PUBLIC_USER_FIELDS}

    def for_user_course(self, user_id: str, course_id: str) -> Optional[Dict[str, Any]]:
        return self.find_one({"userId": user_id, "courseId": course_id})


# ----------------------
# Messaging
# ----------------------
class ConversationRepository(BaseRepository):
    collection_name = "conversations"
    schema = Conversation
    entity = "Conversation"
    references = {"createdBy": "users", "lastMessage": "messages"}
    reference_fields = {"createdBy": PUBLIC_USER_FIELDS}
    unique_fields = (("directKey",),)

    def find_direct(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        return self.find_one({"type": "direct", "status": "active", "directKey": direct_key(user_a, user_b)})

    def find_by_join_token(self, token: str) -> Optional[Dict[str, Any]]:
        return self.find_one({"privacy.joinLink.token": token})

    def for_user(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = dict(options or {})
        options.setdefault("sort", "-lastActivity")
        return self.find_many({"participants.user": user_id, "status": {"$ne": "deleted"}}, options)


class MessageRepository(BaseRepository):
    collection_name = "messages"
    schema = Message
    entity = "Message"
    references = {"senderId": "users", "receiverId": "users", "conversationId": "conversations"}
    reference_fields = {"senderId": PUBLIC_USER_FIELDS, "receiverId": PUBLIC_USER_FIELDS}

    def unread_for(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.find_many({"receiverId": user_id, "isRead": False}, options)
