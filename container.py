"""
Dependency container.

Factories receive the container, so a service factory resolves its
repositories and passes them to the constructor. Everything is resolved once
at startup; nothing is resolved per request.
"""
from typing import Any, Callable, Dict, Set

from pymongo.database import Database

from logger import get_logger
from repositories import (
    ApplicationRepository,
    ConversationRepository,
    CourseRepository,
    EnrollmentRepository,
    JobRepository,
    LessonRepository,
    MessageRepository,
    ProgressRepository,
    UserRepository,
    YouthRepository,
)
from services import (
    ApplicationService,
    ConversationService,
    CourseService,
    EnrollmentService,
    JobService,
    MessageService,
    ProgressService,
    UserService,
    YouthService,
)

log = get_logger("container")

Factory = Callable[["Container"], Any]


class ContainerError(Exception):
    pass


class Container:
    def __init__(self):
        self._factories: Dict[str, Factory] = {}
        self._singleton: Dict[str, bool] = {}
        self._instances: Dict[str, Any] = {}
        self._resolving: Set[str] = set()

    def register(self, name: str, factory: Factory, singleton: bool = True) -> None:
        if name in self._factories:
            raise ContainerError(f"Service '{name}' is already registered")
        self._factories[name] = factory
        self._singleton[name] = singleton

    def resolve(self, name: str) -> Any:
        if name not in self._factories:
            raise ContainerError(f"Service '{name}' is not registered")
        if name in self._instances:
            return self._instances[name]
        if name in self._resolving:
            raise ContainerError(f"Circular dependency detected while resolving '{name}'")
        self._resolving.add(name)
        try:
            instance = self._factories[name](self)
        finally:
            self._resolving.discard(name)
        if self._singleton[name]:
            self._instances[name] = instance
        return instance


REPOSITORIES = {
    "userRepository": UserRepository,
    "youthRepository": YouthRepository,
    "courseRepository": CourseRepository,
    "lessonRepository": LessonRepository,
    "enrollmentRepository": EnrollmentRepository,
    "jobRepository": JobRepository,
    "applicationRepository": ApplicationRepository,
    "progressRepository": ProgressRepository,
    "conversationRepository": ConversationRepository,
    "messageRepository": MessageRepository,
}

SERVICES = (
    "userService",
    "youthService",
    "courseService",
    "enrollmentService",
    "jobService",
    "applicationService",
    "progressService",
    "conversationService",
    "messageService",
)


def build_container(database: Database) -> Container:
    container = Container()
    for name, repository_class in REPOSITORIES.items():
        container.register(name, lambda c, cls=repository_class: cls(database))

    container.register("userService", lambda c: UserService(c.resolve("userRepository")))
    container.register("youthService", lambda c: YouthService(c.resolve("youthRepository")))
    container.register(
        "courseService", lambda c: CourseService(c.resolve("courseRepository"), c.resolve("lessonRepository"))
    )
    container.register(
        "enrollmentService",
        lambda c: EnrollmentService(c.resolve("enrollmentRepository"), c.resolve("courseRepository")),
    )
    container.register("jobService", lambda c: JobService(c.resolve("jobRepository")))
    container.register(
        "applicationService",
        lambda c: ApplicationService(c.resolve("applicationRepository"), c.resolve("jobRepository")),
    )
    container.register(
        "progressService",
        lambda c: ProgressService(
            c.resolve("progressRepository"), c.resolve("lessonRepository"), c.resolve("courseRepository")
        ),
    )
    container.register(
        "conversationService",
        lambda c: ConversationService(c.resolve("conversationRepository"), c.resolve("userRepository")),
    )
    container.register(
        "messageService",
        lambda c: MessageService(c.resolve("messageRepository"), c.resolve("conversationService")),
    )

    for name in SERVICES:
        container.resolve(name)
    log.info("Container ready with %d services", len(SERVICES))
    return container
