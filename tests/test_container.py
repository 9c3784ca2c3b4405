import pytest

from container import SERVICES, Container, ContainerError, build_container
from repositories import UserRepository
from services import UserService


def test_register_twice_fails():
    container = Container()
    container.register("a", lambda c: 1)
    with pytest.raises(ContainerError, match="already registered"):
        container.register("a", lambda c: 2)


def test_resolve_unregistered_fails():
    with pytest.raises(ContainerError, match="not registered"):
        Container().resolve("missing")


def test_singletons_are_cached():
    container = Container()
    container.register("single", lambda c: object())
    container.register("fresh", lambda c: object(), singleton=False)
    assert container.resolve("single") is container.resolve("single")
    assert container.resolve("fresh") is not container.resolve("fresh")


def test_factory_receives_container():
    container = Container()
    container.register("config", lambda c: {"name": "yg"})
    container.register("service", lambda c: ("service", c.resolve("config")))
    assert container.resolve("service") == ("service", {"name": "yg"})


def test_cycle_is_detected():
    container = Container()
    container.register("a", lambda c: c.resolve("b"))
    container.register("b", lambda c: c.resolve("a"))
    with pytest.raises(ContainerError, match="Circular dependency"):
        container.resolve("a")
    # the in-progress markers were cleared, so the same error repeats
    with pytest.raises(ContainerError, match="Circular dependency"):
        container.resolve("b")


def test_marker_cleared_when_factory_raises():
    calls = []

    def flaky(c):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first call fails")
        return "ok"

    container = Container()
    container.register("flaky", flaky)
    with pytest.raises(RuntimeError):
        container.resolve("flaky")
    assert container.resolve("flaky") == "ok"


def test_build_container_wires_services(database):
    container = build_container(database)
    for name in SERVICES:
        assert container.resolve(name) is container.resolve(name)
    users = container.resolve("userService")
    assert isinstance(users, UserService)
    assert isinstance(users.repository, UserRepository)
    assert container.resolve("messageService").conversations is container.resolve("conversationService")
