"""
Services: business rules layered over the repositories.

``BaseService`` mirrors the repository CRUD surface and runs the optional
hooks around each call (validate -> transform -> repository -> transform
output). Cross-entity operations compose repositories explicitly and use
``with_transaction`` where both writes must land together.

``context`` is always the acting user (a shaped user document) or None.
"""
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import config
from auth import hash_password, verify_password
from errors import AuthenticationError, ConflictError, DuplicateError, NotFoundError, PermissionDeniedError, ValidationError
from logger import get_logger, log_event
from repositories import (
    ApplicationRepository,
    BaseRepository,
    ConversationRepository,
    CourseRepository,
    EnrollmentRepository,
    JobRepository,
    LessonRepository,
    MessageRepository,
    ProgressRepository,
    UserRepository,
    YouthRepository,
    direct_key,
)
from schemas import PASSWORD_RE, Skill

log = get_logger("service")

Listener = Callable[[Dict[str, Any]], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("kind") == "Administrator"


def _owner_or_admin(user: Optional[Dict[str, Any]], owner_id: Optional[str], message: str = "Forbidden") -> None:
    if not user or not (is_admin(user) or user["id"] == owner_id):
        raise PermissionDeniedError(message)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Hooks:
    """Optional extension points run around the generic CRUD calls.

    validate_* raise to abort before any repository call; transform_* return
    the (possibly new) data; can_delete raises to refuse a delete.
    """

    validate_create: Optional[Callable[[Dict[str, Any], Any], None]] = None
    transform_create: Optional[Callable[[Dict[str, Any], Any], Dict[str, Any]]] = None
    validate_update: Optional[Callable[[str, Dict[str, Any], Any], None]] = None
    transform_update: Optional[Callable[[str, Dict[str, Any], Any], Dict[str, Any]]] = None
    transform_entity: Optional[Callable[[Dict[str, Any], Any], Dict[str, Any]]] = None
    can_delete: Optional[Callable[[Dict[str, Any], Any], None]] = None


class BaseService:
    entity = "document"

    def __init__(self, repository: BaseRepository, hooks: Optional[Hooks] = None):
        self.repository = repository
        self.hooks = hooks or Hooks()
        self._listeners: Dict[str, List[Listener]] = {}

    # ----------------------
    # Events
    # ----------------------
    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, action: str, document: Dict[str, Any]) -> None:
        event = f"{self.entity}:{action}"
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(document)
            except Exception:
                log.exception("Listener for %s failed", event)

    # ----------------------
    # CRUD
    # ----------------------
    def _output(self, document: Optional[Dict[str, Any]], context: Any = None) -> Optional[Dict[str, Any]]:
        if document is None or self.hooks.transform_entity is None:
            return document
        return self.hooks.transform_entity(document, context)

    def create(self, data: Dict[str, Any], context: Any = None, session=None) -> Dict[str, Any]:
        data = dict(data)
        if self.hooks.validate_create:
            self.hooks.validate_create(data, context)
        if self.hooks.transform_create:
            data = self.hooks.transform_create(data, context)
        document = self.repository.create(data, session=session)
        self.emit("created", document)
        log_event(log, logging.INFO, f"{self.entity} created", id=document["id"])
        return self._output(document, context)

    def find_by_id(self, id: str, options: Optional[Dict[str, Any]] = None, context: Any = None) -> Optional[Dict[str, Any]]:
        return self._output(self.repository.find_by_id(id, options), context)

    def find_one(self, criteria: Dict[str, Any], options: Optional[Dict[str, Any]] = None, context: Any = None) -> Optional[Dict[str, Any]]:
        return self._output(self.repository.find_one(criteria, options), context)

    def find_many(self, criteria: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None, context: Any = None) -> Dict[str, Any]:
        page = self.repository.find_many(criteria, options)
        page["documents"] = [self._output(d, context) for d in page["documents"]]
        return page

    def update(self, id: str, patch: Dict[str, Any], context: Any = None, session=None) -> Optional[Dict[str, Any]]:
        patch = dict(patch)
        if self.hooks.validate_update:
            self.hooks.validate_update(id, patch, context)
        if self.hooks.transform_update:
            patch = self.hooks.transform_update(id, patch, context)
        document = self.repository.update(id, patch, session=session)
        if document is not None and patch:
            self.emit("updated", document)
        return self._output(document, context)

    def delete(self, id: str, context: Any = None) -> Optional[Dict[str, Any]]:
        existing = self.repository.find_by_id(id)
        if existing is None:
            return None
        if self.hooks.can_delete:
            self.hooks.can_delete(existing, context)
        document = self.repository.delete(id)
        if document is not None:
            self.emit("deleted", document)
        return self._output(document, context)

    def count(self, criteria: Optional[Dict[str, Any]] = None) -> int:
        return self.repository.count(criteria)

    def exists(self, criteria: Dict[str, Any]) -> bool:
        return self.repository.exists(criteria)

    def with_transaction(self, op: Callable[[Any], Any]) -> Any:
        return self.repository.with_transaction(op)


# ----------------------
# Users
# ----------------------
def _check_password(password: Optional[str], field: str = "password") -> None:
    if not password or not PASSWORD_RE.match(password):
        raise ValidationError(
            errors=[
                {
                    "field": field,
                    "message": "Password must be at least 8 characters with uppercase, lowercase and a number",
                    "value": None,
                }
            ]
        )


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


class UserService(BaseService):
    entity = "user"

    def __init__(self, repository: UserRepository):
        super().__init__(
            repository,
            Hooks(
                validate_create=self._validate_create,
                transform_create=self._hash_on_create,
                transform_update=self._hash_on_update,
            ),
        )

    def _validate_create(self, data, context):
        _check_password(data.get("password"))

    def _hash_on_create(self, data, context):
        data["password"] = hash_password(data["password"])
        return data

    def _hash_on_update(self, id, patch, context):
        if "password" in patch:
            _check_password(patch["password"])
            patch["password"] = hash_password(patch["password"])
        return patch

    def register(self, data: Dict[str, Any]):
        """Create a pending account; returns ``(user, raw_verification_token)``."""
        data = dict(data)
        data.setdefault("kind", "Youth")
        if data["kind"] == "Administrator":
            raise ValidationError(
                "Administrator accounts cannot self-register",
                errors=[{"field": "kind", "message": "Administrator accounts cannot self-register", "value": "Administrator"}],
            )
        raw_token = secrets.token_hex(32)
        data.update(
            accountStatus="pending",
            isEmailVerified=False,
            emailVerificationToken=hash_token(raw_token),
            emailVerificationExpires=_now() + timedelta(hours=24),
        )
        return self.create(data), raw_token

    def authenticate(self, email: str, password: str) -> Dict[str, Any]:
        user = self.repository.find_by_email(email, include_secrets=True)
        if user is None:
            raise AuthenticationError("Invalid email or password")
        lock_until = _aware(user.get("lockUntil"))
        if lock_until and lock_until > _now():
            raise AuthenticationError("Account is locked due to too many failed login attempts. Try again later")
        if user["accountStatus"] in ("suspended", "deactivated"):
            raise AuthenticationError(f"Account is {user['accountStatus']}")
        if not verify_password(password, user["password"]):
            self._record_failed_login(user)
            raise AuthenticationError("Invalid email or password")
        log_event(log, logging.INFO, "User logged in", id=user["id"])
        return self.repository.modify(user["id"], {"$set": {"loginAttempts": 0, "lockUntil": None, "lastLogin": _now()}})

    def _record_failed_login(self, user: Dict[str, Any]) -> None:
        lock_until = _aware(user.get("lockUntil"))
        if lock_until and lock_until <= _now():
            self.repository.modify(user["id"], {"$set": {"loginAttempts": 1, "lockUntil": None}})
            return
        updated = self.repository.modify(user["id"], {"$inc": {"loginAttempts": 1}})
        if updated and updated["loginAttempts"] >= config.MAX_LOGIN_ATTEMPTS:
            self.repository.modify(
                user["id"], {"$set": {"lockUntil": _now() + timedelta(minutes=config.LOCK_MINUTES)}}
            )
            log_event(log, logging.WARNING, "Account locked", id=user["id"], attempts=updated["loginAttempts"])

    def verify_email(self, raw_token: str) -> Dict[str, Any]:
        user = self.repository.find_by_verification_token(hash_token(raw_token))
        expires = _aware(user.get("emailVerificationExpires")) if user else None
        if user is None or not expires or expires < _now():
            raise ValidationError("Invalid or expired verification token")
        changes = {"isEmailVerified": True, "emailVerificationToken": None, "emailVerificationExpires": None}
        if user["accountStatus"] == "pending":
            changes["accountStatus"] = "active"
        document = self.repository.modify(user["id"], {"$set": changes})
        self.emit("updated", document)
        return document

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        user = self.update(user_id, patch)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> Dict[str, Any]:
        user = self.repository.find_by_id(user_id, {"include_hidden": True})
        if user is None:
            raise NotFoundError("User not found")
        if not verify_password(current_password, user["password"]):
            raise ValidationError("Current password is incorrect", field="currentPassword")
        _check_password(new_password, "newPassword")
        return self.update(user_id, {"password": new_password})

    def search(self, text: str, kind: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.repository.search(text, kind, options)

    def set_status(self, user_id: str, status: str, reason: Optional[str], admin: Dict[str, Any]) -> Dict[str, Any]:
        if user_id == admin["id"]:
            raise ValidationError("Administrators cannot change their own status")
        user = self.update(
            user_id,
            {"accountStatus": status, "statusReason": reason, "isActive": status in ("pending", "active")},
            context=admin,
        )
        if user is None:
            raise NotFoundError("User not found")
        log_event(log, logging.INFO, "User status changed", id=user_id, status=status, by=admin["id"])
        return user

    def statistics(self) -> Dict[str, Any]:
        rows = self.repository.statistics()
        by_kind = [{"kind": r["_id"], "count": r["count"], "active": r["active"]} for r in rows]
        return {
            "total": sum(r["count"] for r in by_kind),
            "active": sum(r["active"] for r in by_kind),
            "byKind": by_kind,
        }


class YouthService(BaseService):
    entity = "youth"

    def __init__(self, repository: YouthRepository):
        super().__init__(repository, Hooks(validate_update=self._only_self))

    def _only_self(self, id, patch, context):
        _owner_or_admin(context, id, "You can only update your own profile")

    def list_youth(self, state: Optional[str] = None, skill: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        criteria: Dict[str, Any] = {}
        if state:
            criteria["location.state"] = state
        if skill:
            criteria["youth.skills.name"] = {"$regex": f"^{re.escape(skill)}$", "$options": "i"}
        return self.find_many(criteria, options)

    def get(self, youth_id: str) -> Dict[str, Any]:
        youth = self.find_by_id(youth_id)
        if youth is None:
            raise NotFoundError("Youth not found")
        return youth

    def update_profile(self, youth_id: str, profile: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        current = self.get(youth_id)
        merged = {**(current.get("youth") or {}), **profile}
        youth = self.update(youth_id, {"youth": merged}, context=actor)
        return youth

    def _modify(self, youth_id: str, operators: Dict[str, Any], actor: Dict[str, Any], where=None) -> Optional[Dict[str, Any]]:
        _owner_or_admin(actor, youth_id, "You can only update your own profile")
        document = self.repository.modify(youth_id, operators, where=where)
        if document is not None:
            self.emit("updated", document)
        return document

    def add_skill(self, youth_id: str, skill: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        entry = Skill.model_validate(skill).model_dump(by_alias=True)
        document = self._modify(
            youth_id, {"$push": {"youth.skills": entry}}, actor, where={"youth.skills.name": {"$ne": entry["name"]}}
        )
        if document is None:
            self.get(youth_id)
            raise ConflictError(f"Skill '{entry['name']}' already exists")
        return document

    def remove_skill(self, youth_id: str, name: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        document = self._modify(youth_id, {"$pull": {"youth.skills": {"name": name}}}, actor)
        if document is None:
            raise NotFoundError("Youth not found")
        return document

    def add_interest(self, youth_id: str, interest: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        document = self._modify(youth_id, {"$addToSet": {"youth.interests": interest.strip()}}, actor)
        if document is None:
            raise NotFoundError("Youth not found")
        return document

    def remove_interest(self, youth_id: str, interest: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        document = self._modify(youth_id, {"$pull": {"youth.interests": interest}}, actor)
        if document is None:
            raise NotFoundError("Youth not found")
        return document


# ----------------------
# Courses
# ----------------------
class CourseService(BaseService):
    entity = "course"

    def __init__(self, repository: CourseRepository, lessons: LessonRepository):
        super().__init__(
            repository,
            Hooks(
                validate_create=self._instructors_only,
                transform_create=self._set_creator,
                validate_update=self._creator_only,
                can_delete=self._can_delete,
            ),
        )
        self.lessons = lessons

    def _instructors_only(self, data, context):
        if not context or context.get("kind") not in ("Mentor", "Administrator"):
            raise PermissionDeniedError("Only mentors and administrators can create courses")

    def _set_creator(self, data, context):
        if context:
            data["createdBy"] = context["id"]
        data["enrollmentCount"] = 0
        return data

    def _creator_only(self, id, patch, context):
        course = self.repository.find_by_id(id)
        if course is not None:
            _owner_or_admin(context, course["createdBy"], "Only the course creator can modify this course")
        patch.pop("createdBy", None)
        patch.pop("enrollmentCount", None)

    def _can_delete(self, course, context):
        _owner_or_admin(context, course["createdBy"], "Only the course creator can delete this course")

    def add_lesson(self, course_id: str, data: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        course = self.repository.find_by_id(course_id)
        if course is None:
            raise NotFoundError("Course not found")
        _owner_or_admin(actor, course["createdBy"], "Only the course creator can add lessons")
        lesson = self.lessons.create({**data, "courseId": course_id})
        self.emit("updated", course)
        return lesson

    def list_lessons(self, course_id: str) -> List[Dict[str, Any]]:
        if self.repository.find_by_id(course_id) is None:
            raise NotFoundError("Course not found")
        return self.lessons.for_course(course_id)


class EnrollmentService(BaseService):
    entity = "enrollment"

    def __init__(self, repository: EnrollmentRepository, courses: CourseRepository):
        super().__init__(repository)
        self.courses = courses

    def enroll(self, user_id: str, course_id: str) -> Dict[str, Any]:
        course = self.courses.find_by_id(course_id)
        if course is None or not course.get("isActive", True):
            raise NotFoundError("Course not found or not active")
        existing = self.repository.find_one({"userId": user_id, "courseId": course_id})
        if existing is not None and existing["status"] != "dropped":
            raise ConflictError("Already enrolled in this course")

        def op(session):
            if existing is not None:
                enrollment = self.repository.modify(
                    existing["id"],
                    {"$set": {"status": "active", "isActive": True, "enrollmentDate": _now()}},
                    session=session,
                )
            else:
                enrollment = self.repository.create({"userId": user_id, "courseId": course_id}, session=session)
            self.courses.adjust_enrollment_count(course_id, 1, session=session)
            return enrollment

        try:
            enrollment = self.with_transaction(op)
        except DuplicateError as exc:
            raise ConflictError("Already enrolled in this course") from exc
        self.emit("created" if existing is None else "updated", enrollment)
        return enrollment

    def unenroll(self, user_id: str, course_id: str) -> Dict[str, Any]:
        existing = self.repository.find_one({"userId": user_id, "courseId": course_id})
        if existing is None or existing["status"] == "dropped":
            raise NotFoundError("Enrollment not found")

        def op(session):
            enrollment = self.repository.modify(
                existing["id"], {"$set": {"status": "dropped", "isActive": False}}, session=session
            )
            self.courses.adjust_enrollment_count(course_id, -1, session=session)
            return enrollment

        enrollment = self.with_transaction(op)
        self.emit("updated", enrollment)
        return enrollment

    def for_user(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = dict(options or {})
        options.setdefault("populate", "courseId")
        return self.find_many({"userId": user_id}, options)

    def course_statistics(self, course_id: str) -> Dict[str, Any]:
        course = self.courses.find_by_id(course_id)
        if course is None:
            raise NotFoundError("Course not found")
        rows = self.repository.statistics(course_id)
        return {
            "courseId": course_id,
            "enrollmentCount": course["enrollmentCount"],
            "byStatus": [
                {"status": r["_id"], "count": r["count"], "averageProgress": round(r.get("averageProgress") or 0, 2)}
                for r in rows
            ],
        }


# ----------------------
# Jobs
# ----------------------
class JobService(BaseService):
    entity = "job"

    def __init__(self, repository: JobRepository):
        super().__init__(
            repository,
            Hooks(
                validate_create=self._employers_only,
                transform_create=self._set_poster,
                validate_update=self._poster_only,
                can_delete=self._can_delete,
            ),
        )

    def _employers_only(self, data, context):
        if not context or context.get("kind") not in ("Employer", "Administrator"):
            raise PermissionDeniedError("Only employers can post jobs")

    def _set_poster(self, data, context):
        data["postedBy"] = context["id"]
        data["applicationsCount"] = 0
        return data

    def _poster_only(self, id, patch, context):
        job = self.repository.find_by_id(id)
        if job is not None:
            _owner_or_admin(context, job["postedBy"], "Only the employer who posted this job can modify it")
        patch.pop("postedBy", None)
        patch.pop("applicationsCount", None)

    def _can_delete(self, job, context):
        _owner_or_admin(context, job["postedBy"], "Only the employer who posted this job can delete it")


class ApplicationService(BaseService):
    entity = "application"

    def __init__(self, repository: ApplicationRepository, jobs: JobRepository):
        super().__init__(repository)
        self.jobs = jobs

    def submit(self, applicant: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        if applicant.get("kind") != "Youth":
            raise PermissionDeniedError("Only youth accounts can apply for jobs")
        job = self.jobs.find_by_id(data.get("jobId"))
        if job is None:
            raise NotFoundError("Job not found")
        deadline = _aware(job.get("applicationDeadline"))
        if not job.get("isActive") or (deadline and deadline < _now()):
            raise ValidationError("This job is no longer accepting applications")
        now = _now()
        document = {
            **data,
            "applicantId": applicant["id"],
            "employerId": job["postedBy"],
            "status": "Pending",
            "appliedDate": now,
            "statusHistory": [{"status": "Pending", "changedAt": now, "changedBy": applicant["id"]}],
        }

        def op(session):
            application = self.repository.create(document, session=session)
            self.jobs.modify(job["id"], {"$inc": {"applicationsCount": 1}}, session=session)
            return application

        try:
            application = self.with_transaction(op)
        except DuplicateError as exc:
            raise ConflictError("Application already exists for this job") from exc
        self.emit("created", application)
        log_event(log, logging.INFO, "Application submitted", id=application["id"], job=job["id"])
        return application

    def _visible_to(self, application: Dict[str, Any], user: Dict[str, Any]) -> bool:
        return is_admin(user) or user["id"] in (application["applicantId"], application.get("employerId"))

    def get(self, application_id: str, user: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        application = self.find_by_id(application_id, options)
        if application is None:
            raise NotFoundError("Application not found")
        if not self._visible_to(application, user):
            raise PermissionDeniedError("You cannot view this application")
        return application

    def list_for(self, user: Dict[str, Any], criteria: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        criteria = dict(criteria)
        if not is_admin(user):
            key = "employerId" if user.get("kind") == "Employer" else "applicantId"
            criteria[key] = user["id"]
        return self.find_many(criteria, options)

    def for_job(self, job_id: str, user: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        job = self.jobs.find_by_id(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        _owner_or_admin(user, job["postedBy"], "Only the employer who posted this job can view its applications")
        return self.find_many({"jobId": job_id}, options)

    def for_applicant(self, applicant_id: str, user: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        _owner_or_admin(user, applicant_id, "You can only view your own applications")
        return self.find_many({"applicantId": applicant_id}, options)

    def _reviewable(self, application_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        application = self.repository.find_by_id(application_id)
        if application is None:
            raise NotFoundError("Application not found")
        _owner_or_admin(user, application.get("employerId"), "Only the employer can manage this application")
        return application

    def update_status(self, application_id: str, status: str, note: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
        self._reviewable(application_id, user)
        now = _now()
        entry = {"status": status, "changedAt": now, "changedBy": user["id"], "note": note}
        changes: Dict[str, Any] = {"status": status, "reviewedDate": now}
        if note:
            changes["feedback"] = note
        document = self.repository.modify(application_id, {"$set": changes, "$push": {"statusHistory": entry}})
        self.emit("updated", document)
        return document

    def schedule_interview(self, application_id: str, interview: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        self._reviewable(application_id, user)
        now = _now()
        entry = {"status": "Interview", "changedAt": now, "changedBy": user["id"], "note": "Interview scheduled"}
        document = self.repository.modify(
            application_id,
            {"$set": {"interview": interview, "status": "Interview", "reviewedDate": now}, "$push": {"statusHistory": entry}},
        )
        self.emit("updated", document)
        return document

    def add_communication(self, application_id: str, message: str, user: Dict[str, Any]) -> Dict[str, Any]:
        application = self.repository.find_by_id(application_id)
        if application is None:
            raise NotFoundError("Application not found")
        if not self._visible_to(application, user):
            raise PermissionDeniedError("You cannot message on this application")
        entry = {"sender": user["id"], "message": message, "sentAt": _now(), "isRead": False}
        document = self.repository.modify(application_id, {"$push": {"communications": entry}})
        self.emit("updated", document)
        return document

    def statistics(self) -> Dict[str, Any]:
        rows = self.repository.statistics()
        return {
            "total": sum(r["count"] for r in rows),
            "byStatus": [{"status": r["_id"], "count": r["count"]} for r in rows],
        }


# ----------------------
# Progress
# ----------------------
class ProgressService(BaseService):
    """Per (user, course) progress. Lesson entries are rewritten as a whole
    through ``update`` so every change is validated against the schema."""

    entity = "progress"

    def __init__(self, repository: ProgressRepository, lessons: LessonRepository, courses: CourseRepository):
        super().__init__(repository)
        self.lessons = lessons
        self.courses = courses

    def _load(self, user_id: str, course_id: str, lesson_id: str) -> Dict[str, Any]:
        if self.courses.find_by_id(course_id) is None:
            raise NotFoundError("Course not found")
        lesson = self.lessons.find_by_id(lesson_id)
        if lesson is None or lesson["courseId"] != course_id:
            raise NotFoundError("Lesson not found in this course")
        progress = self.repository.for_user_course(user_id, course_id)
        if progress is None:
            try:
                progress = self.create({"userId": user_id, "courseId": course_id})
            except DuplicateError:
                progress = self.repository.for_user_course(user_id, course_id)
        return progress

    @staticmethod
    def _entry(progress: Dict[str, Any], lesson_id: str) -> Dict[str, Any]:
        for entry in progress["lessons"]:
            if entry["lessonId"] == lesson_id:
                return entry
        entry = {"lessonId": lesson_id, "status": "not_started", "timeSpent": 0, "quiz": {"attempts": []}}
        progress["lessons"].append(entry)
        return entry

    @staticmethod
    def _touch(progress: Dict[str, Any], now: datetime) -> None:
        tracking = progress["timeTracking"]
        tracking["lastActivityAt"] = now
        streak = tracking["streakDays"]
        today = now.date()
        last = streak.get("lastActiveDate")
        if last == today.isoformat():
            return
        if last == (today - timedelta(days=1)).isoformat():
            streak["current"] = streak.get("current", 0) + 1
        else:
            streak["current"] = 1
        streak["longest"] = max(streak.get("longest", 0), streak["current"])
        streak["lastActiveDate"] = today.isoformat()

    def _recompute(self, progress: Dict[str, Any], now: datetime) -> None:
        metrics = progress["metrics"]
        total = self.lessons.count({"courseId": progress["courseId"]})
        completed = sum(1 for e in progress["lessons"] if e["status"] == "completed")
        quizzes = [e["quiz"] for e in progress["lessons"] if e["quiz"].get("attempts")]
        metrics["totalLessons"] = total
        metrics["lessonsCompleted"] = completed
        metrics["quizzesPassed"] = sum(1 for q in quizzes if q.get("passed"))
        metrics["averageQuizScore"] = round(sum(q["bestScore"] for q in quizzes) / len(quizzes), 2) if quizzes else 0
        progress["percentage"] = min(100, round(completed / total * 100)) if total else 0
        if progress["percentage"] >= 100 and progress["status"] != "completed":
            progress["status"] = "completed"
            progress["completedAt"] = now
        elif progress["status"] == "not_started":
            progress["status"] = "in_progress"

    def _save(self, progress: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        self._touch(progress, now)
        self._recompute(progress, now)
        fields = ("lessons", "metrics", "timeTracking", "percentage", "status", "completedAt")
        return self.update(progress["id"], {k: progress.get(k) for k in fields})

    def start_lesson(self, user_id: str, course_id: str, lesson_id: str) -> Dict[str, Any]:
        progress = self._load(user_id, course_id, lesson_id)
        now = _now()
        entry = self._entry(progress, lesson_id)
        if entry["status"] == "not_started":
            entry["status"] = "in_progress"
            entry["startedAt"] = now
        return self._save(progress, now)

    def complete_lesson(self, user_id: str, course_id: str, lesson_id: str) -> Dict[str, Any]:
        progress = self._load(user_id, course_id, lesson_id)
        now = _now()
        entry = self._entry(progress, lesson_id)
        if entry["status"] != "completed":
            entry["status"] = "completed"
            entry["startedAt"] = entry.get("startedAt") or now
            entry["completedAt"] = now
        return self._save(progress, now)

    def record_time(self, user_id: str, course_id: str, lesson_id: str, minutes: float) -> Dict[str, Any]:
        if minutes <= 0:
            raise ValidationError("Time spent must be positive", field="minutes")
        progress = self._load(user_id, course_id, lesson_id)
        now = _now()
        entry = self._entry(progress, lesson_id)
        entry["timeSpent"] = entry.get("timeSpent", 0) + minutes
        if entry["status"] == "not_started":
            entry["status"] = "in_progress"
            entry["startedAt"] = now
        tracking = progress["timeTracking"]
        tracking["totalTimeSpent"] = tracking.get("totalTimeSpent", 0) + minutes
        tracking["totalSessions"] = tracking.get("totalSessions", 0) + 1
        return self._save(progress, now)

    def submit_quiz(self, user_id: str, course_id: str, lesson_id: str, result: Dict[str, Any]) -> Dict[str, Any]:
        progress = self._load(user_id, course_id, lesson_id)
        now = _now()
        quiz = self._entry(progress, lesson_id)["quiz"]
        attempts = quiz.setdefault("attempts", [])
        attempts.append({**result, "attemptNumber": len(attempts) + 1, "completedAt": now})
        quiz["totalAttempts"] = len(attempts)
        quiz["bestScore"] = max(a["score"] for a in attempts)
        if result.get("passed") and not quiz.get("passed"):
            quiz["passed"] = True
            quiz["firstPassedAt"] = now
        return self._save(progress, now)

    def for_user(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.find_many({"userId": user_id}, options)

    def for_course(self, user_id: str, course_id: str) -> Dict[str, Any]:
        progress = self.repository.for_user_course(user_id, course_id)
        if progress is None:
            raise NotFoundError("No progress recorded for this course")
        return progress

    def statistics(self, user_id: str) -> Dict[str, Any]:
        records = self.repository.find_all({"userId": user_id})
        return {
            "totalCourses": len(records),
            "completedCourses": sum(1 for p in records if p["status"] == "completed"),
            "inProgressCourses": sum(1 for p in records if p["status"] == "in_progress"),
            "lessonsCompleted": sum(p["metrics"]["lessonsCompleted"] for p in records),
            "quizzesPassed": sum(p["metrics"]["quizzesPassed"] for p in records),
            "totalTimeSpent": sum(p["timeTracking"]["totalTimeSpent"] for p in records),
            "averagePercentage": round(sum(p["percentage"] for p in records) / len(records), 2) if records else 0,
            "longestStreak": max((p["timeTracking"]["streakDays"]["longest"] for p in records), default=0),
        }


# ----------------------
# Messaging
# ----------------------
ROLE_PERMISSIONS = {
    "admin": {
        "canSendMessages": True,
        "canAddParticipants": True,
        "canRemoveParticipants": True,
        "canEditConversation": True,
        "canDeleteMessages": True,
    },
    "moderator": {
        "canSendMessages": True,
        "canAddParticipants": True,
        "canRemoveParticipants": True,
        "canEditConversation": False,
        "canDeleteMessages": True,
    },
    "member": {
        "canSendMessages": True,
        "canAddParticipants": False,
        "canRemoveParticipants": False,
        "canEditConversation": False,
        "canDeleteMessages": False,
    },
}

SETTING_ROLES = {
    "all_members": ("admin", "moderator", "member"),
    "moderators_and_admins": ("admin", "moderator"),
    "admins_only": ("admin",),
}


def participant_entry(user_id: str, role: str = "member", invited_by: Optional[str] = None) -> Dict[str, Any]:
    return {
        "user": user_id,
        "role": role,
        "permissions": dict(ROLE_PERMISSIONS[role]),
        "status": "active",
        "joinedAt": _now(),
        "invitedBy": invited_by,
    }


def active_participant(conversation: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
    for p in conversation["participants"]:
        if p["user"] == user_id and p["status"] in ("active", "muted"):
            return p
    return None


def can_perform(conversation: Dict[str, Any], user_id: str, action: str) -> bool:
    """Whether ``user_id`` may ``send``, ``add``, ``remove`` or ``edit`` in the conversation."""
    participant = active_participant(conversation, user_id)
    if participant is None:
        return False
    role, permissions, settings = participant["role"], participant["permissions"], conversation["settings"]
    if action == "send":
        return (
            participant["status"] == "active"
            and permissions.get("canSendMessages", True)
            and role in SETTING_ROLES[settings["whoCanSendMessages"]]
        )
    if action == "add":
        return permissions.get("canAddParticipants") or role in SETTING_ROLES[settings["whoCanAddParticipants"]]
    if action == "remove":
        return role == "admin" or bool(permissions.get("canRemoveParticipants"))
    if action == "edit":
        return role == "admin" or bool(permissions.get("canEditConversation"))
    return False


class ConversationService(BaseService):
    entity = "conversation"

    def __init__(self, repository: ConversationRepository, users: UserRepository):
        super().__init__(repository, Hooks(transform_create=self._seed_participants))
        self.users = users

    def _require_user(self, user_id: str) -> Dict[str, Any]:
        user = self.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _seed_participants(self, data, context):
        creator = context["id"]
        others = [u for u in dict.fromkeys(data.pop("participantIds", None) or []) if u != creator]
        for user_id in others:
            self._require_user(user_id)
        data["createdBy"] = creator
        data["participants"] = [participant_entry(creator, "admin")] + [
            participant_entry(u, "member", invited_by=creator) for u in others
        ]
        data["lastActivity"] = _now()
        return data

    def start(self, data: Dict[str, Any], creator: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("type") == "direct":
            others = [u for u in data.get("participantIds") or [] if u != creator["id"]]
            if len(others) != 1:
                raise ValidationError("Direct conversations need exactly one other participant")
            return self.create_direct(creator["id"], others[0])
        return self.create(data, context=creator)

    def create_direct(self, user_id: str, other_id: str) -> Dict[str, Any]:
        if user_id == other_id:
            raise ValidationError("Cannot start a conversation with yourself")
        self._require_user(other_id)
        existing = self.repository.find_direct(user_id, other_id)
        if existing is not None:
            return existing
        try:
            conversation = self.repository.create(
                {
                    "type": "direct",
                    "createdBy": user_id,
                    "directKey": direct_key(user_id, other_id),
                    "participants": [participant_entry(user_id, "admin"), participant_entry(other_id, "admin")],
                    "lastActivity": _now(),
                }
            )
        except DuplicateError:
            # Lost a race with the other participant; theirs wins.
            existing = self.repository.find_one({"type": "direct", "status": "active", "directKey": direct_key(user_id, other_id)})
            if existing is None:
                raise
            return existing
        self.emit("created", conversation)
        return conversation

    def get(self, conversation_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        conversation = self.find_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if active_participant(conversation, user["id"]) is None and not is_admin(user):
            raise PermissionDeniedError("You are not a participant in this conversation")
        return conversation

    def for_user(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.repository.for_user(user_id, options)

    def _save_participants(self, conversation: Dict[str, Any], participants: List[Dict[str, Any]], **extra) -> Dict[str, Any]:
        document = self.update(conversation["id"], {"participants": participants, "lastActivity": _now(), **extra})
        return document

    def add_participant(self, conversation_id: str, actor: Dict[str, Any], user_id: str, role: str = "member") -> Dict[str, Any]:
        conversation = self.get(conversation_id, actor)
        if conversation["type"] == "direct":
            raise ValidationError("Direct conversations cannot have more than 2 participants")
        if not can_perform(conversation, actor["id"], "add"):
            raise PermissionDeniedError("You cannot add participants to this conversation")
        self._require_user(user_id)
        if active_participant(conversation, user_id) is not None:
            raise ConflictError("User is already a participant")
        previous = next((p for p in conversation["participants"] if p["user"] == user_id), None)
        if previous is not None and previous["status"] == "blocked":
            raise PermissionDeniedError("User is blocked from this conversation")
        participants = [p for p in conversation["participants"] if p["user"] != user_id]
        participants.append(participant_entry(user_id, role, invited_by=actor["id"]))
        return self._save_participants(conversation, participants)

    def remove_participant(self, conversation_id: str, actor: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        conversation = self.get(conversation_id, actor)
        if conversation["type"] == "direct":
            raise ValidationError("Participants cannot be removed from a direct conversation")
        leaving = user_id == actor["id"]
        if leaving and not conversation["settings"]["allowMembersToLeave"]:
            raise PermissionDeniedError("Members are not allowed to leave this conversation")
        if not leaving and not can_perform(conversation, actor["id"], "remove"):
            raise PermissionDeniedError("You cannot remove participants from this conversation")
        target = active_participant(conversation, user_id)
        if target is None:
            raise NotFoundError("Participant not found")
        target.update(status="left", leftAt=_now())
        return self._save_participants(conversation, conversation["participants"])

    def change_role(self, conversation_id: str, actor: Dict[str, Any], user_id: str, role: str) -> Dict[str, Any]:
        conversation = self.get(conversation_id, actor)
        caller = active_participant(conversation, actor["id"])
        if not is_admin(actor) and (caller is None or caller["role"] != "admin"):
            raise PermissionDeniedError("Only conversation admins can change roles")
        target = active_participant(conversation, user_id)
        if target is None:
            raise NotFoundError("Participant not found")
        target.update(role=role, permissions=dict(ROLE_PERMISSIONS[role]))
        return self._save_participants(conversation, conversation["participants"])

    def create_join_link(
        self, conversation_id: str, actor: Dict[str, Any], expires_in_days: Optional[int] = None, usage_limit: Optional[int] = None
    ) -> Dict[str, Any]:
        conversation = self.get(conversation_id, actor)
        if conversation["type"] == "direct":
            raise ValidationError("Direct conversations cannot have join links")
        if not can_perform(conversation, actor["id"], "edit"):
            raise PermissionDeniedError("You cannot edit this conversation")
        link = {
            "enabled": True,
            "token": secrets.token_hex(16),
            "expiresAt": _now() + timedelta(days=expires_in_days) if expires_in_days else None,
            "usageLimit": usage_limit,
            "usageCount": 0,
        }
        privacy = {**conversation["privacy"], "joinLink": link}
        self.update(conversation_id, {"privacy": privacy})
        return link

    def join_by_link(self, token: str, user: Dict[str, Any]) -> Dict[str, Any]:
        conversation = self.repository.find_by_join_token(token)
        link = conversation["privacy"]["joinLink"] if conversation else None
        if link is None or not link.get("enabled"):
            raise NotFoundError("Invalid join link")
        expires = _aware(link.get("expiresAt"))
        if expires and expires < _now():
            raise ValidationError("Join link has expired")
        if link.get("usageLimit") and link["usageCount"] >= link["usageLimit"]:
            raise ValidationError("Join link usage limit reached")
        if active_participant(conversation, user["id"]) is not None:
            return conversation
        participants = [p for p in conversation["participants"] if p["user"] != user["id"]]
        participants.append(participant_entry(user["id"], "member"))
        privacy = {**conversation["privacy"], "joinLink": {**link, "usageCount": link["usageCount"] + 1}}
        return self._save_participants(conversation, participants, privacy=privacy)

    def record_message(self, conversation_id: str, message_id: str, session=None) -> Optional[Dict[str, Any]]:
        return self.repository.modify(
            conversation_id,
            {"$set": {"lastMessage": message_id, "lastActivity": _now()}, "$inc": {"messageCount": 1}},
            session=session,
        )


class MessageService(BaseService):
    entity = "message"

    def __init__(self, repository: MessageRepository, conversations: ConversationService):
        super().__init__(repository)
        self.conversations = conversations

    def send(self, sender: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("conversationId"):
            conversation = self.conversations.find_by_id(data["conversationId"])
            if conversation is None:
                raise NotFoundError("Conversation not found")
        elif data.get("receiverId"):
            conversation = self.conversations.create_direct(sender["id"], data["receiverId"])
        else:
            raise ValidationError("Either conversationId or receiverId is required")
        if not can_perform(conversation, sender["id"], "send"):
            raise PermissionDeniedError("You cannot send messages in this conversation")
        receiver = None
        if conversation["type"] == "direct":
            receiver = next(p["user"] for p in conversation["participants"] if p["user"] != sender["id"])
        document = {
            "conversationId": conversation["id"],
            "senderId": sender["id"],
            "receiverId": receiver,
            "content": data.get("content"),
        }

        def op(session):
            message = self.repository.create(document, session=session)
            self.conversations.record_message(conversation["id"], message["id"], session=session)
            return message

        message = self.with_transaction(op)
        message["recipients"] = [
            p["user"] for p in conversation["participants"] if p["status"] == "active" and p["user"] != sender["id"]
        ]
        self.emit("created", message)
        return message

    def for_conversation(self, conversation_id: str, user: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.conversations.get(conversation_id, user)
        return self.find_many({"conversationId": conversation_id}, options)

    def _visible(self, message_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        message = self.repository.find_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        self.conversations.get(message["conversationId"], user)
        return message

    def mark_read(self, message_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        message = self._visible(message_id, user)
        if message["senderId"] == user["id"] or message.get("isRead"):
            return message
        document = self.repository.modify(message_id, {"$set": {"isRead": True, "readAt": _now()}})
        self.emit("updated", document)
        return document

    def unread(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.repository.unread_for(user_id, options)

    def add_reaction(self, message_id: str, user: Dict[str, Any], emoji: str) -> Dict[str, Any]:
        self._visible(message_id, user)
        document = self.repository.modify(message_id, {"$addToSet": {"reactions": {"userId": user["id"], "emoji": emoji}}})
        self.emit("updated", document)
        return document

    def remove_reaction(self, message_id: str, user: Dict[str, Any], emoji: str) -> Dict[str, Any]:
        self._visible(message_id, user)
        document = self.repository.modify(message_id, {"$pull": {"reactions": {"userId": user["id"], "emoji": emoji}}})
        self.emit("updated", document)
        return document
