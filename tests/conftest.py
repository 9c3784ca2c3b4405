import os
import tempfile

os.environ.pop("DATABASE_URL", None)
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="youthguard-uploads-")

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token
from container import SERVICES, build_container
from database import ensure_indexes
from main import create_app


def user_data(kind="Youth", email="ada@example.com", **overrides):
    data = {
        "kind": kind,
        "email": email,
        "password": "Password123!",
        "firstName": "Ada",
        "lastName": "Obi",
        "phoneNumber": "+2348012345678",
        "dateOfBirth": "2000-01-01",
        "gender": "female",
        "location": {"state": "Lagos", "city": "Ikeja"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def database():
    client = mongomock.MongoClient(tz_aware=True)
    db = client["youthguard_test"]
    ensure_indexes(db)
    return db


@pytest.fixture
def services(database):
    container = build_container(database)
    return {name: container.resolve(name) for name in SERVICES}


@pytest.fixture
def make_user(services):
    """Create an account directly (any kind, including Administrator)."""
    counter = {"n": 0}

    def factory(kind="Youth", email=None, **overrides):
        counter["n"] += 1
        email = email or f"{kind.lower()}{counter['n']}@example.com"
        return services["userService"].create(user_data(kind, email, accountStatus="active", **overrides))

    return factory


@pytest.fixture
def app(database):
    return create_app(database)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def app_services(app):
    return app.state.services


@pytest.fixture
def login_as(app_services):
    """Create a user in the app's store and return ``(user, headers)``."""
    counter = {"n": 0}

    def factory(kind="Youth", **overrides):
        counter["n"] += 1
        email = f"{kind.lower()}-{counter['n']}@example.com"
        user = app_services["userService"].create(user_data(kind, email, accountStatus="active", **overrides))
        return user, {"Authorization": f"Bearer {create_token(user)}"}

    return factory
