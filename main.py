import logging
import os
import time
import uuid
from datetime import date, datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import Field
from pymongo.database import Database
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import create_token, get_current_user, require_admin, user_from_token
from container import SERVICES, build_container
from controllers import body, crud_router, page_options, paged, parse_query, success, use
from database import db, ensure_indexes
from errors import UploadError, ValidationError, register_error_handlers
from logger import get_logger, log_event, request_context, setup_logging
from relay import Relay
from schemas import (
    AccountStatus,
    ApplicationStatus,
    ConversationType,
    Difficulty,
    Document,
    Interview,
    Kind,
    ParticipantRole,
)

setup_logging()
log = get_logger("http")

STARTED = time.monotonic()
PICTURE_FIELD = "profilePicture"


# ----------------------
# Request models
# ----------------------
# Field rules live on the document schemas; request models only shape input.
class RegisterRequest(Document):
    first_name: str
    last_name: str
    email: str
    phone_number: str
    date_of_birth: str
    gender: str
    location: Dict[str, Any]
    password: str
    kind: Kind = "Youth"
    bio: Optional[str] = None
    youth: Optional[Dict[str, Any]] = None
    mentor: Optional[Dict[str, Any]] = None
    employer: Optional[Dict[str, Any]] = None


class LoginRequest(Document):
    email: str
    password: str


class VerifyEmailRequest(Document):
    token: str


class ProfileUpdate(Document):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    bio: Optional[str] = None
    youth: Optional[Dict[str, Any]] = None
    mentor: Optional[Dict[str, Any]] = None
    employer: Optional[Dict[str, Any]] = None
    administrator: Optional[Dict[str, Any]] = None


class PasswordChange(Document):
    current_password: str
    new_password: str


class StatusUpdate(Document):
    status: AccountStatus
    reason: Optional[str] = None


class YouthProfileUpdate(Document):
    education: Optional[Dict[str, Any]] = None
    employment_status: Optional[str] = None
    skills: Optional[List[Dict[str, Any]]] = None
    interests: Optional[List[str]] = None


class SkillRequest(Document):
    name: str
    level: str = "beginner"


class InterestRequest(Document):
    interest: str = Field(..., min_length=1, max_length=50)


class CourseCreate(Document):
    title: str
    description: str
    category: str
    instructor: str
    duration: float
    difficulty: Difficulty = "Beginner"
    thumbnail: Optional[str] = None
    is_active: bool = True


class CourseUpdate(Document):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    instructor: Optional[str] = None
    duration: Optional[float] = None
    difficulty: Optional[Difficulty] = None
    thumbnail: Optional[str] = None
    is_active: Optional[bool] = None


class LessonCreate(Document):
    title: str
    content: str
    video_url: Optional[str] = None
    duration: int
    order_index: int
    is_preview: bool = False


class JobCreate(Document):
    title: str
    description: str
    company: str
    location: str
    job_type: str
    salary_min: float = 0
    salary_max: Optional[float] = None
    requirements: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    application_deadline: datetime
    is_active: bool = True


class JobUpdate(Document):
    title: Optional[str] = None
    description: Optional[str] = None
    company: Optional[str] = None
    location: Optional[str] = None
    job_type: Optional[str] = None
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    requirements: Optional[List[str]] = None
    skills: Optional[List[str]] = None
    application_deadline: Optional[datetime] = None
    is_active: Optional[bool] = None


class ApplicationCreate(Document):
    job_id: str
    cover_letter: str
    resume_url: str


class ApplicationStatusUpdate(Document):
    status: ApplicationStatus
    note: Optional[str] = None


class CommunicationRequest(Document):
    message: str = Field(..., min_length=1, max_length=2000)


class TimeRequest(Document):
    minutes: float


class QuizRequest(Document):
    score: float = Field(..., ge=0, le=100)
    total_questions: int = Field(0, ge=0)
    correct_answers: int = Field(0, ge=0)
    passed: bool = False


class ConversationCreate(Document):
    type: ConversationType = "group"
    name: Optional[str] = None
    description: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    settings: Optional[Dict[str, Any]] = None


class DirectRequest(Document):
    user_id: str


class ParticipantAdd(Document):
    user_id: str
    role: ParticipantRole = "member"


class RoleUpdate(Document):
    role: ParticipantRole


class JoinLinkRequest(Document):
    expires_in_days: Optional[int] = Field(None, ge=1)
    usage_limit: Optional[int] = Field(None, ge=1)


class MessageCreate(Document):
    conversation_id: Optional[str] = None
    receiver_id: Optional[str] = None
    content: str


class ReactionRequest(Document):
    emoji: str = Field(..., min_length=1, max_length=16)


# ----------------------
# Auth & users
# ----------------------
auth_router = APIRouter(prefix="/auth")
users_router = APIRouter(prefix="/users")
admin_router = APIRouter(prefix="/admin")


@auth_router.post("/register", status_code=201)
def register(payload: RegisterRequest, users=use("userService")):
    user, raw_token = users.register(body(payload))
    data = {"user": user, "token": create_token(user)}
    if not config.is_production():
        data["verificationToken"] = raw_token
    return success(data, "Registration successful. Please verify your email", status_code=201)


@auth_router.post("/login")
def login(payload: LoginRequest, users=use("userService")):
    user = users.authenticate(payload.email, payload.password)
    return success({"token": create_token(user), "user": user}, "Login successful")


@auth_router.post("/verify-email")
def verify_email(payload: VerifyEmailRequest, users=use("userService")):
    return success(users.verify_email(payload.token), "Email verified successfully")


@users_router.get("/profile")
def get_profile(current=Depends(get_current_user), users=use("userService")):
    return success(users.get_profile(current["id"]), "Profile retrieved successfully")


@users_router.put("/profile")
def update_profile(payload: ProfileUpdate, current=Depends(get_current_user), users=use("userService")):
    return success(users.update_profile(current["id"], body(payload)), "Profile updated successfully")


@users_router.put("/password")
def change_password(payload: PasswordChange, current=Depends(get_current_user), users=use("userService")):
    users.change_password(current["id"], payload.current_password, payload.new_password)
    return success(None, "Password changed successfully")


def _store_picture(user_id: str, upload: UploadFile, content: bytes) -> str:
    suffix = Path(upload.filename or "").suffix.lower() or ".img"
    name = f"{user_id}-{uuid.uuid4().hex}{suffix}"
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    with open(os.path.join(config.UPLOAD_DIR, name), "wb") as fh:
        fh.write(content)
    return f"/uploads/{name}"


@users_router.post("/profile/picture")
async def upload_picture(request: Request, current=Depends(get_current_user), users=use("userService")):
    form = await request.form()
    files = [(key, value) for key, value in form.multi_items() if isinstance(value, UploadFile)]
    if any(key != PICTURE_FIELD for key, _ in files):
        raise UploadError("LIMIT_UNEXPECTED_FILE")
    if len(files) > 1:
        raise UploadError("LIMIT_FILE_COUNT")
    if not files:
        raise ValidationError("No file uploaded", field=PICTURE_FIELD)
    upload = files[0][1]
    if not (upload.content_type or "").startswith("image/"):
        raise ValidationError("Only image files are allowed", field=PICTURE_FIELD)
    content = await upload.read(config.MAX_UPLOAD_BYTES + 1)
    if len(content) > config.MAX_UPLOAD_BYTES:
        raise UploadError("LIMIT_FILE_SIZE")
    path = await run_in_threadpool(_store_picture, current["id"], upload, content)
    user = await run_in_threadpool(users.update_profile, current["id"], {PICTURE_FIELD: path})
    return success(user, "Profile picture updated successfully")


@users_router.get("/search")
def search_users(request: Request, q: str = Query(..., min_length=1), kind: Optional[Kind] = None,
                 current=Depends(get_current_user), users=use("userService")):
    return paged(users.search(q, kind, page_options(request)), "Users retrieved successfully")


@users_router.get("/{user_id}/applications")
def user_applications(user_id: str, request: Request, current=Depends(get_current_user),
                      applications=use("applicationService")):
    page = applications.for_applicant(user_id, current, page_options(request))
    return paged(page, "Applications retrieved successfully")


@admin_router.get("/users")
def admin_list_users(request: Request, current=Depends(get_current_user), users=use("userService")):
    require_admin(current)
    criteria, options = parse_query(request.query_params)
    return paged(users.find_many(criteria, options), "Users retrieved successfully")


@admin_router.get("/users/statistics")
def admin_user_statistics(current=Depends(get_current_user), users=use("userService")):
    require_admin(current)
    return success(users.statistics(), "User statistics retrieved successfully")


@admin_router.put("/users/{user_id}/status")
def admin_set_status(user_id: str, payload: StatusUpdate, current=Depends(get_current_user), users=use("userService")):
    require_admin(current)
    user = users.set_status(user_id, payload.status, payload.reason, current)
    return success(user, "User status updated successfully")


@admin_router.get("/applications/statistics")
def admin_application_statistics(current=Depends(get_current_user), applications=use("applicationService")):
    require_admin(current)
    return success(applications.statistics(), "Application statistics retrieved successfully")


# ----------------------
# Youth
# ----------------------
youth_router = APIRouter(prefix="/youth")


@youth_router.get("")
def list_youth(request: Request, state: Optional[str] = None, skill: Optional[str] = None,
               current=Depends(get_current_user), youth=use("youthService")):
    return paged(youth.list_youth(state, skill, page_options(request)), "Youth retrieved successfully")


@youth_router.get("/{youth_id}")
def get_youth(youth_id: str, current=Depends(get_current_user), youth=use("youthService")):
    return success(youth.get(youth_id), "Youth retrieved successfully")


@youth_router.put("/{youth_id}")
def update_youth(youth_id: str, payload: YouthProfileUpdate, current=Depends(get_current_user), youth=use("youthService")):
    return success(youth.update_profile(youth_id, body(payload), current), "Youth profile updated successfully")


@youth_router.post("/{youth_id}/skills", status_code=201)
def add_skill(youth_id: str, payload: SkillRequest, current=Depends(get_current_user), youth=use("youthService")):
    return success(youth.add_skill(youth_id, body(payload), current), "Skill added successfully", status_code=201)


@youth_router.delete("/{youth_id}/skills/{name}")
def remove_skill(youth_id: str, name: str, current=Depends(get_current_user), youth=use("youthService")):
    return success(youth.remove_skill(youth_id, name, current), "Skill removed successfully")


@youth_router.post("/{youth_id}/interests", status_code=201)
def add_interest(youth_id: str, payload: InterestRequest, current=Depends(get_current_user), youth=use("youthService")):
    return success(youth.add_interest(youth_id, payload.interest, current), "Interest added successfully", status_code=201)


@youth_router.delete("/{youth_id}/interests/{interest}")
def remove_interest(youth_id: str, interest: str, current=Depends(get_current_user), youth=use("youthService")):
    return success(youth.remove_interest(youth_id, interest, current), "Interest removed successfully")


# ----------------------
# Courses, lessons, enrollments
# ----------------------
courses_router = APIRouter(prefix="/courses")
enrollments_router = APIRouter(prefix="/enrollments")


@courses_router.post("/{course_id}/lessons", status_code=201)
def add_lesson(course_id: str, payload: LessonCreate, current=Depends(get_current_user), courses=use("courseService")):
    lesson = courses.add_lesson(course_id, body(payload), current)
    return success(lesson, "Lesson created successfully", status_code=201)


@courses_router.get("/{course_id}/lessons")
def list_lessons(course_id: str, courses=use("courseService")):
    return success(courses.list_lessons(course_id), "Lessons retrieved successfully")


@courses_router.post("/{course_id}/enroll", status_code=201)
def enroll(course_id: str, current=Depends(get_current_user), enrollments=use("enrollmentService")):
    enrollment = enrollments.enroll(current["id"], course_id)
    return success(enrollment, "Enrolled successfully", status_code=201)


@courses_router.post("/{course_id}/unenroll")
def unenroll(course_id: str, current=Depends(get_current_user), enrollments=use("enrollmentService")):
    return success(enrollments.unenroll(current["id"], course_id), "Unenrolled successfully")


@courses_router.get("/{course_id}/statistics")
def course_statistics(course_id: str, current=Depends(get_current_user), enrollments=use("enrollmentService")):
    return success(enrollments.course_statistics(course_id), "Course statistics retrieved successfully")


@enrollments_router.get("")
def my_enrollments(request: Request, current=Depends(get_current_user), enrollments=use("enrollmentService")):
    return paged(enrollments.for_user(current["id"], page_options(request)), "Enrollments retrieved successfully")


# ----------------------
# Jobs & applications
# ----------------------
jobs_router = APIRouter(prefix="/jobs")
applications_router = APIRouter(prefix="/applications")


@jobs_router.get("/{job_id}/applications")
def job_applications(job_id: str, request: Request, current=Depends(get_current_user),
                     applications=use("applicationService")):
    return paged(applications.for_job(job_id, current, page_options(request)), "Applications retrieved successfully")


@applications_router.post("", status_code=201)
def submit_application(payload: ApplicationCreate, current=Depends(get_current_user),
                       applications=use("applicationService")):
    application = applications.submit(current, body(payload))
    return success(application, "Application submitted successfully", status_code=201)


@applications_router.get("")
def list_applications(request: Request, current=Depends(get_current_user), applications=use("applicationService")):
    criteria, options = parse_query(request.query_params)
    return paged(applications.list_for(current, criteria, options), "Applications retrieved successfully")


@applications_router.get("/{application_id}")
def get_application(application_id: str, request: Request, current=Depends(get_current_user),
                    applications=use("applicationService")):
    application = applications.get(application_id, current, page_options(request))
    return success(application, "Application retrieved successfully")


@applications_router.put("/{application_id}/status")
def update_application_status(application_id: str, payload: ApplicationStatusUpdate,
                              current=Depends(get_current_user), applications=use("applicationService")):
    application = applications.update_status(application_id, payload.status, payload.note, current)
    return success(application, "Application status updated successfully")


@applications_router.post("/{application_id}/interview")
def schedule_interview(application_id: str, payload: Interview, current=Depends(get_current_user),
                       applications=use("applicationService")):
    application = applications.schedule_interview(application_id, body(payload), current)
    return success(application, "Interview scheduled successfully")


@applications_router.post("/{application_id}/communication", status_code=201)
def add_communication(application_id: str, payload: CommunicationRequest, current=Depends(get_current_user),
                      applications=use("applicationService")):
    application = applications.add_communication(application_id, payload.message, current)
    return success(application, "Message added successfully", status_code=201)


# ----------------------
# Progress
# ----------------------
progress_router = APIRouter(prefix="/progress")


@progress_router.get("")
def my_progress(request: Request, current=Depends(get_current_user), progress=use("progressService")):
    return paged(progress.for_user(current["id"], page_options(request)), "Progress retrieved successfully")


@progress_router.get("/statistics")
def progress_statistics(current=Depends(get_current_user), progress=use("progressService")):
    return success(progress.statistics(current["id"]), "Progress statistics retrieved successfully")


@progress_router.get("/{course_id}")
def course_progress(course_id: str, current=Depends(get_current_user), progress=use("progressService")):
    return success(progress.for_course(current["id"], course_id), "Progress retrieved successfully")


@progress_router.post("/{course_id}/lessons/{lesson_id}/start")
def start_lesson(course_id: str, lesson_id: str, current=Depends(get_current_user), progress=use("progressService")):
    return success(progress.start_lesson(current["id"], course_id, lesson_id), "Lesson started")


@progress_router.post("/{course_id}/lessons/{lesson_id}/complete")
def complete_lesson(course_id: str, lesson_id: str, current=Depends(get_current_user), progress=use("progressService")):
    return success(progress.complete_lesson(current["id"], course_id, lesson_id), "Lesson completed")


@progress_router.post("/{course_id}/lessons/{lesson_id}/time")
def record_time(course_id: str, lesson_id: str, payload: TimeRequest, current=Depends(get_current_user),
                progress=use("progressService")):
    record = progress.record_time(current["id"], course_id, lesson_id, payload.minutes)
    return success(record, "Time recorded")


@progress_router.post("/{course_id}/lessons/{lesson_id}/quiz")
def submit_quiz(course_id: str, lesson_id: str, payload: QuizRequest, current=Depends(get_current_user),
                progress=use("progressService")):
    record = progress.submit_quiz(current["id"], course_id, lesson_id, payload.model_dump(by_alias=True))
    return success(record, "Quiz attempt recorded")


# ----------------------
# Conversations & messages
# ----------------------
conversations_router = APIRouter(prefix="/conversations")
messages_router = APIRouter(prefix="/messages")


@conversations_router.post("", status_code=201)
def create_conversation(payload: ConversationCreate, current=Depends(get_current_user),
                        conversations=use("conversationService")):
    data = {k: v for k, v in body(payload).items() if v is not None}
    data["type"] = payload.type
    return success(conversations.start(data, current), "Conversation created successfully", status_code=201)


@conversations_router.post("/direct")
def direct_conversation(payload: DirectRequest, current=Depends(get_current_user),
                        conversations=use("conversationService")):
    conversation = conversations.create_direct(current["id"], payload.user_id)
    return success(conversation, "Conversation retrieved successfully")


@conversations_router.get("")
def my_conversations(request: Request, current=Depends(get_current_user), conversations=use("conversationService")):
    page = conversations.for_user(current["id"], page_options(request))
    return paged(page, "Conversations retrieved successfully")


@conversations_router.post("/join/{token}")
def join_conversation(token: str, current=Depends(get_current_user), conversations=use("conversationService")):
    return success(conversations.join_by_link(token, current), "Joined conversation successfully")


@conversations_router.get("/{conversation_id}")
def get_conversation(conversation_id: str, current=Depends(get_current_user), conversations=use("conversationService")):
    return success(conversations.get(conversation_id, current), "Conversation retrieved successfully")


@conversations_router.post("/{conversation_id}/participants")
def add_participant(conversation_id: str, payload: ParticipantAdd, current=Depends(get_current_user),
                    conversations=use("conversationService")):
    conversation = conversations.add_participant(conversation_id, current, payload.user_id, payload.role)
    return success(conversation, "Participant added successfully")


@conversations_router.delete("/{conversation_id}/participants/{user_id}")
def remove_participant(conversation_id: str, user_id: str, current=Depends(get_current_user),
                       conversations=use("conversationService")):
    conversation = conversations.remove_participant(conversation_id, current, user_id)
    return success(conversation, "Participant removed successfully")


@conversations_router.put("/{conversation_id}/participants/{user_id}/role")
def change_participant_role(conversation_id: str, user_id: str, payload: RoleUpdate,
                            current=Depends(get_current_user), conversations=use("conversationService")):
    conversation = conversations.change_role(conversation_id, current, user_id, payload.role)
    return success(conversation, "Participant role updated successfully")


@conversations_router.post("/{conversation_id}/join-link", status_code=201)
def create_join_link(conversation_id: str, payload: JoinLinkRequest, current=Depends(get_current_user),
                     conversations=use("conversationService")):
    link = conversations.create_join_link(conversation_id, current, payload.expires_in_days, payload.usage_limit)
    return success(link, "Join link created successfully", status_code=201)


@conversations_router.get("/{conversation_id}/messages")
def conversation_messages(conversation_id: str, request: Request, current=Depends(get_current_user),
                          messages=use("messageService")):
    page = messages.for_conversation(conversation_id, current, page_options(request))
    return paged(page, "Messages retrieved successfully")


@messages_router.post("", status_code=201)
def send_message(payload: MessageCreate, current=Depends(get_current_user), messages=use("messageService")):
    return success(messages.send(current, body(payload)), "Message sent successfully", status_code=201)


@messages_router.get("/unread")
def unread_messages(request: Request, current=Depends(get_current_user), messages=use("messageService")):
    return paged(messages.unread(current["id"], page_options(request)), "Unread messages retrieved successfully")


@messages_router.put("/{message_id}/read")
def mark_read(message_id: str, current=Depends(get_current_user), messages=use("messageService")):
    return success(messages.mark_read(message_id, current), "Message marked as read")


@messages_router.post("/{message_id}/reactions")
def add_reaction(message_id: str, payload: ReactionRequest, current=Depends(get_current_user),
                 messages=use("messageService")):
    return success(messages.add_reaction(message_id, current, payload.emoji), "Reaction added")


@messages_router.delete("/{message_id}/reactions")
def remove_reaction(message_id: str, emoji: str = Query(..., min_length=1), current=Depends(get_current_user),
                    messages=use("messageService")):
    return success(messages.remove_reaction(message_id, current, emoji), "Reaction removed")


ROUTERS = (
    auth_router,
    users_router,
    admin_router,
    youth_router,
    courses_router,
    crud_router("/courses", "courseService", "Course", CourseCreate, CourseUpdate),
    enrollments_router,
    jobs_router,
    crud_router("/jobs", "jobService", "Job", JobCreate, JobUpdate),
    applications_router,
    progress_router,
    conversations_router,
    messages_router,
)


# ----------------------
# Static uploads
# ----------------------
class UploadFiles(StaticFiles):
    """Read-only uploads; StaticFiles never lists directories, dotfiles are refused."""

    async def get_response(self, path: str, scope):
        if any(part.startswith(".") for part in PurePosixPath(path).parts):
            raise StarletteHTTPException(status_code=403, detail="Forbidden")
        return await super().get_response(path, scope)


# ----------------------
# Startup: seed admin
# ----------------------
def seed_admin(services: Dict[str, Any]) -> None:
    if not (config.ADMIN_EMAIL and config.ADMIN_PASSWORD):
        return
    users = services["userService"]
    if users.repository.find_by_email(config.ADMIN_EMAIL) is not None:
        return
    users.create(
        {
            "kind": "Administrator",
            "email": config.ADMIN_EMAIL,
            "password": config.ADMIN_PASSWORD,
            "firstName": "System",
            "lastName": "Administrator",
            "phoneNumber": "+2348000000000",
            "dateOfBirth": date(1990, 1, 1),
            "gender": "other",
            "location": {"state": "FCT", "city": "Abuja"},
            "accountStatus": "active",
            "isEmailVerified": True,
        }
    )
    log_event(log, logging.INFO, "Administrator account seeded", email=config.ADMIN_EMAIL)


def relay_messages(relay: Relay):
    def listener(message: Dict[str, Any]) -> None:
        payload = jsonable_encoder(message)
        for recipient in message.get("recipients", ()):
            relay.publish(recipient, "receive_message", payload)

    return listener


# ----------------------
# App factory
# ----------------------
def create_app(database: Optional[Database] = None, rate_limit: Optional[str] = None) -> FastAPI:
    app = FastAPI(title="YouthGuard API", version=config.APP_VERSION)
    container = build_container(database) if database is not None else None
    services = {name: container.resolve(name) for name in SERVICES} if container else {}
    relay = Relay()
    app.state.services = services
    app.state.relay = relay
    if services:
        services["messageService"].on("message:created", relay_messages(relay))

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[rate_limit or config.RATE_LIMIT],
        enabled=bool(rate_limit) or config.RATE_LIMIT_ENABLED,
    )
    app.state.limiter = limiter

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        status = response.status_code
        if request.url.path == "/health" and status == 200:
            return response
        context = request_context(
            request.method,
            request.url.path,
            status,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
            ip=request.client.host if request.client else None,
        )
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        log_event(log, level, "Request", **context)
        return response

    register_error_handlers(app)

    @app.on_event("startup")
    def prepare_database():
        if database is None:
            return
        ensure_indexes(database)
        try:
            seed_admin(services)
        except Exception:
            log.exception("Administrator seeding failed")

    @app.get("/")
    @limiter.exempt
    def root():
        return {"message": "YouthGuard API running"}

    @app.get("/health")
    @limiter.exempt
    def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - STARTED, 3),
            "environment": config.ENVIRONMENT,
            "version": config.APP_VERSION,
        }

    @app.websocket("/ws")
    async def websocket_relay(websocket: WebSocket, token: Optional[str] = None):
        users = services.get("userService")
        if users is None or not token:
            await websocket.close(code=1008)
            return
        try:
            user = await run_in_threadpool(user_from_token, token, users.repository)
        except Exception as exc:
            log_event(log, logging.WARNING, "Relay connection refused", error=str(exc))
            await websocket.close(code=1008)
            return
        await relay.serve(websocket, user["id"])

    for router in ROUTERS:
        app.include_router(router, prefix="/api")

    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", UploadFiles(directory=config.UPLOAD_DIR, html=False), name="uploads")
    return app


app = create_app(db)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
