"""
Database Schemas for the YouthGuard platform

Each Pydantic model describes the documents of one MongoDB collection. Field
names are snake_case in Python and camelCase in the stored documents and in
the JSON API (e.g. ``first_name`` <-> ``firstName``).

Collections:
- users: every account; ``kind`` selects the Youth/Mentor/Employer/Administrator profile group
- courses, lessons, enrollments
- jobs, applications
- progress: one per (user, course)
- conversations, messages
"""
import re
from datetime import date, datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _utc(value: Any) -> Any:
    if isinstance(value, str) and len(value) == 10:
        value = date.fromisoformat(value)
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def age_on(birth: datetime, today: date) -> int:
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return years


# ----------------------
# Users
# ----------------------
Kind = Literal["Youth", "Mentor", "Employer", "Administrator"]
AccountStatus = Literal["pending", "active", "suspended", "deactivated"]

NIGERIAN_STATES = (
    "Abia", "Adamawa", "Akwa Ibom", "Anambra", "Bauchi", "Bayelsa", "Benue", "Borno",
    "Cross River", "Delta", "Ebonyi", "Edo", "Ekiti", "Enugu", "FCT", "Gombe", "Imo",
    "Jigawa", "Kaduna", "Kano", "Katsina", "Kebbi", "Kogi", "Kwara", "Lagos", "Nasarawa",
    "Niger", "Ogun", "Ondo", "Osun", "Oyo", "Plateau", "Rivers", "Sokoto", "Taraba",
    "Yobe", "Zamfara",
)

PHONE_RE = re.compile(r"^(\+234|0)[789][01]\d{8}$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).{8,}$")
MIN_AGE = 16


class Location(Document):
    state: str
    city: str = Field(..., min_length=1)
    address: Optional[str] = None

    @field_validator("state")
    @classmethod
    def known_state(cls, v: str) -> str:
        if v not in NIGERIAN_STATES:
            raise ValueError("Please select a valid Nigerian state")
        return v


class Skill(Document):
    name: str = Field(..., min_length=1, max_length=50)
    level: Literal["beginner", "intermediate", "advanced", "expert"] = "beginner"


class Education(Document):
    level: Optional[Literal["primary", "secondary", "tertiary", "vocational", "none"]] = None
    institution: Optional[str] = None
    field_of_study: Optional[str] = None
    graduation_year: Optional[int] = Field(None, ge=1950, le=2100)


class YouthProfile(Document):
    education: Optional[Education] = None
    employment_status: Optional[Literal["unemployed", "employed", "self-employed", "student"]] = None
    skills: List[Skill] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)


class MentorProfile(Document):
    expertise: List[str] = Field(default_factory=list)
    years_of_experience: int = Field(0, ge=0)
    availability: Optional[str] = None


class EmployerProfile(Document):
    company_name: Optional[str] = None
    industry: Optional[str] = None
    company_size: Optional[Literal["1-10", "11-50", "51-200", "201-500", "500+"]] = None
    website: Optional[str] = None


class AdministratorProfile(Document):
    permissions: List[str] = Field(default_factory=list)


PROFILE_GROUPS = {
    "Youth": ("youth", YouthProfile),
    "Mentor": ("mentor", MentorProfile),
    "Employer": ("employer", EmployerProfile),
    "Administrator": ("administrator", AdministratorProfile),
}


class User(Document):
    """One account. ``kind`` decides which profile group may be populated."""

    kind: Kind = Field(..., description="Account kind")
    email: EmailStr = Field(..., description="Login email, stored lowercase")
    password: str = Field(..., description="bcrypt hash")
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    phone_number: str
    date_of_birth: datetime
    gender: Literal["male", "female", "other"]
    location: Location
    profile_picture: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    is_active: bool = True
    is_email_verified: bool = False
    account_status: AccountStatus = "pending"
    status_reason: Optional[str] = None
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    login_attempts: int = Field(0, ge=0)
    lock_until: Optional[datetime] = None

    youth: Optional[YouthProfile] = None
    mentor: Optional[MentorProfile] = None
    employer: Optional[EmployerProfile] = None
    administrator: Optional[AdministratorProfile] = None

    @field_validator("email", mode="before")
    @classmethod
    def lowercase_email(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("first_name", "last_name", "bio", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone_number")
    @classmethod
    def nigerian_phone(cls, v: str) -> str:
        compact = re.sub(r"\s+", "", v)
        if not PHONE_RE.match(compact):
            raise ValueError("Please provide a valid Nigerian phone number")
        return compact

    @field_validator("date_of_birth", "email_verification_expires", "last_login", "lock_until", mode="before")
    @classmethod
    def utc_datetime(cls, v: Any) -> Any:
        return _utc(v)

    @field_validator("date_of_birth")
    @classmethod
    def old_enough(cls, v: datetime) -> datetime:
        if age_on(v, datetime.now(timezone.utc).date()) < MIN_AGE:
            raise ValueError(f"Must be at least {MIN_AGE} years old")
        return v

    @field_validator("profile_picture")
    @classmethod
    def picture_path(cls, v: Optional[str]) -> Optional[str]:
        if v and not re.match(r"^(https?://|/)", v):
            raise ValueError("Profile picture must be a valid URL or file path")
        return v

    @model_validator(mode="after")
    def single_profile_group(self) -> "User":
        for kind, (attr, model) in PROFILE_GROUPS.items():
            if kind == self.kind:
                if getattr(self, attr) is None:
                    setattr(self, attr, model())
            elif getattr(self, attr) is not None:
                raise ValueError(f"'{attr}' profile is not allowed for {self.kind} accounts")
        return self


# ----------------------
# Courses
# ----------------------
Difficulty = Literal["Beginner", "Intermediate", "Advanced"]


class Course(Document):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    instructor: str = Field(..., min_length=1)
    duration: float = Field(..., gt=0, description="Hours")
    difficulty: Difficulty = "Beginner"
    thumbnail: Optional[str] = None
    enrollment_count: int = Field(0, ge=0)
    rating: float = Field(0, ge=0, le=5)
    is_active: bool = True
    created_by: str = Field(..., description="Creator user id")


class Lesson(Document):
    course_id: str
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    video_url: Optional[str] = None
    duration: int = Field(..., gt=0, description="Minutes")
    order_index: int = Field(..., ge=0)
    is_preview: bool = False


class Enrollment(Document):
    user_id: str
    course_id: str
    enrollment_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: Literal["active", "completed", "dropped", "paused"] = "active"
    completion_date: Optional[datetime] = None
    progress_percentage: float = Field(0, ge=0, le=100)
    last_accessed_at: Optional[datetime] = None
    is_active: bool = True


# ----------------------
# Jobs
# ----------------------
class Job(Document):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    job_type: Literal["Full-time", "Part-time", "Contract", "Internship"]
    salary_min: float = Field(0, ge=0)
    salary_max: Optional[float] = Field(None, ge=0)
    requirements: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    application_deadline: datetime
    is_active: bool = True
    posted_by: str
    applications_count: int = Field(0, ge=0)

    @field_validator("application_deadline", mode="before")
    @classmethod
    def utc_deadline(cls, v: Any) -> Any:
        return _utc(v)

    @model_validator(mode="after")
    def salary_range(self) -> "Job":
        if self.salary_max is not None and self.salary_max < self.salary_min:
            raise ValueError("salaryMax cannot be lower than salaryMin")
        return self


ApplicationStatus = Literal["Pending", "Reviewed", "Interview", "Accepted", "Rejected"]


class StatusChange(Document):
    status: ApplicationStatus
    changed_at: datetime
    changed_by: str
    note: Optional[str] = None


class Interview(Document):
    scheduled_at: datetime
    type: Literal["in_person", "phone", "video"] = "video"
    location: Optional[str] = None
    notes: Optional[str] = None
    interviewer: Optional[str] = None


class Communication(Document):
    sender: str
    message: str = Field(..., min_length=1, max_length=2000)
    sent_at: datetime
    is_read: bool = False


class Application(Document):
    job_id: str
    applicant_id: str
    employer_id: Optional[str] = None
    cover_letter: str = Field(..., min_length=1)
    resume_url: str = Field(..., min_length=1)
    status: ApplicationStatus = "Pending"
    status_history: List[StatusChange] = Field(default_factory=list)
    feedback: str = ""
    applied_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reviewed_date: Optional[datetime] = None
    interview: Optional[Interview] = None
    communications: List[Communication] = Field(default_factory=list)


# ----------------------
# Progress
# ----------------------
class QuizAttempt(Document):
    attempt_number: int = Field(..., ge=1)
    completed_at: datetime
    score: float = Field(..., ge=0, le=100)
    total_questions: int = Field(0, ge=0)
    correct_answers: int = Field(0, ge=0)
    passed: bool = False


class QuizState(Document):
    attempts: List[QuizAttempt] = Field(default_factory=list)
    total_attempts: int = 0
    best_score: float = 0
    passed: bool = False
    first_passed_at: Optional[datetime] = None


class LessonProgress(Document):
    lesson_id: str
    status: Literal["not_started", "in_progress", "completed"] = "not_started"
    time_spent: float = Field(0, ge=0, description="Minutes")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    quiz: QuizState = Field(default_factory=QuizState)


class ProgressMetrics(Document):
    total_lessons: int = Field(0, ge=0)
    lessons_completed: int = Field(0, ge=0)
    quizzes_passed: int = Field(0, ge=0)
    average_quiz_score: float = 0


class Streak(Document):
    current: int = 0
    longest: int = 0
    last_active_date: Optional[str] = None


class TimeTracking(Document):
    total_time_spent: float = 0
    total_sessions: int = 0
    last_activity_at: Optional[datetime] = None
    streak_days: Streak = Field(default_factory=Streak)


class Progress(Document):
    user_id: str
    course_id: str
    lessons: List[LessonProgress] = Field(default_factory=list)
    metrics: ProgressMetrics = Field(default_factory=ProgressMetrics)
    time_tracking: TimeTracking = Field(default_factory=TimeTracking)
    percentage: int = Field(0, ge=0, le=100)
    status: Literal["not_started", "in_progress", "completed"] = "not_started"
    completed_at: Optional[datetime] = None


# ----------------------
# Messaging
# ----------------------
ParticipantRole = Literal["admin", "moderator", "member"]


class ParticipantPermissions(Document):
    can_send_messages: bool = True
    can_add_participants: bool = False
    can_remove_participants: bool = False
    can_edit_conversation: bool = False
    can_delete_messages: bool = False


class ParticipantSettings(Document):
    notifications: Literal["all", "mentions_only", "none"] = "all"
    last_read_message: Optional[str] = None
    last_read_at: Optional[datetime] = None


class Participant(Document):
    user: str
    role: ParticipantRole = "member"
    permissions: ParticipantPermissions = Field(default_factory=ParticipantPermissions)
    status: Literal["active", "muted", "blocked", "left"] = "active"
    settings: ParticipantSettings = Field(default_factory=ParticipantSettings)
    joined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    left_at: Optional[datetime] = None
    invited_by: Optional[str] = None


class ConversationSettings(Document):
    who_can_add_participants: Literal["admins_only", "moderators_and_admins", "all_members"] = "admins_only"
    who_can_send_messages: Literal["all_members", "moderators_and_admins", "admins_only"] = "all_members"
    allow_members_to_leave: bool = True


class JoinLink(Document):
    enabled: bool = False
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_count: int = 0


class Privacy(Document):
    visibility: Literal["public", "private", "secret"] = "private"
    join_link: JoinLink = Field(default_factory=JoinLink)


ConversationType = Literal["direct", "group", "support", "announcement"]


class Conversation(Document):
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    type: ConversationType
    participants: List[Participant] = Field(default_factory=list)
    created_by: str
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    status: Literal["active", "archived", "deleted", "suspended"] = "active"
    # Sorted participant pair; unique among active direct conversations.
    direct_key: Optional[str] = None
    last_message: Optional[str] = None
    last_activity: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message_count: int = Field(0, ge=0)
    privacy: Privacy = Field(default_factory=Privacy)
    category: Optional[
        Literal["general", "work", "education", "support", "social", "project", "team", "announcement", "feedback"]
    ] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        return [t.strip().lower() for t in v if t.strip()]

    @model_validator(mode="after")
    def type_rules(self) -> "Conversation":
        if self.type == "group" and not (self.name and self.name.strip()):
            raise ValueError("Group conversations must have a name")
        if self.type == "direct":
            active = [p for p in self.participants if p.status == "active"]
            if len(active) != 2:
                raise ValueError("Direct conversations must have exactly 2 active participants")
        return self


class Reaction(Document):
    user_id: str
    emoji: str = Field(..., min_length=1, max_length=16)


class Message(Document):
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    content: str = Field(..., min_length=1, max_length=5000)
    is_read: bool = False
    read_at: Optional[datetime] = None
    reactions: List[Reaction] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def strip_content(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v
