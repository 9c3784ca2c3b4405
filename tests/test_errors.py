import jwt
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from errors import (
    ConflictError,
    DuplicateError,
    NotFoundError,
    UploadError,
    ValidationError,
    classify,
    duplicate_key_field,
)
from main import create_app


def test_duplicate_key_with_key_pattern():
    exc = DuplicateKeyError("E11000 duplicate key error", 11000, {"keyPattern": {"email": 1}})
    assert duplicate_key_field(exc) == "email"
    result = classify(exc)
    assert result["statusCode"] == 409
    assert result["field"] == "email"
    assert result["message"] == "Email already exists"


def test_duplicate_key_from_message():
    exc = DuplicateKeyError(
        "E11000 duplicate key error collection: youthguard.applications index: applicantId_1_jobId_1 dup key", 11000
    )
    assert duplicate_key_field(exc) == "applicantId"


@pytest.mark.parametrize(
    "exc,status,message",
    [
        (jwt.ExpiredSignatureError("expired"), 401, "Authentication failed: Token has expired"),
        (jwt.InvalidSignatureError("bad"), 401, "Authentication failed: Invalid token"),
        (StarletteHTTPException(status_code=429), 429, "Too many requests, please try again later"),
        (UploadError("LIMIT_FILE_SIZE"), 400, "File too large"),
        (UploadError("LIMIT_UNEXPECTED_FILE"), 400, "Unexpected file field"),
        (NotFoundError("Course not found"), 404, "Course not found"),
        (ConflictError("Already enrolled in this course"), 409, "Already enrolled in this course"),
        (RuntimeError("boom"), 500, "boom"),
    ],
)
def test_classify(exc, status, message):
    result = classify(exc)
    assert result["statusCode"] == status
    assert result["message"] == message


def test_store_errors_keep_details():
    errors = [{"field": "title", "message": "required", "value": None}]
    assert classify(ValidationError(errors=errors))["errors"] == errors
    assert classify(DuplicateError("email"))["field"] == "email"


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"]["statusCode"] == 404


def test_malformed_json(client):
    response = client.post(
        "/api/auth/login", content="{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Invalid JSON in request body"


def test_request_validation_lists_fields(client):
    response = client.post("/api/auth/login", json={"email": "a@example.com"})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["message"] == "Validation failed"
    assert [e["field"] for e in error["errors"]] == ["password"]


def test_invalid_token(client):
    response = client.get("/api/users/profile", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Authentication failed: Invalid token"


def test_missing_database_is_a_server_error():
    client = TestClient(create_app(None), raise_server_exceptions=False)
    response = client.post("/api/auth/login", json={"email": "a@example.com", "password": "Password123!"})
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["message"] == "Database not configured"
    assert "stack" in error


def test_production_hides_server_details(monkeypatch):
    monkeypatch.setattr(config, "ENVIRONMENT", "production")
    client = TestClient(create_app(None), raise_server_exceptions=False)
    response = client.post("/api/auth/login", json={"email": "a@example.com", "password": "Password123!"})
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["message"] == "Internal Server Error"
    assert "stack" not in error


def test_health_works_without_database():
    response = TestClient(create_app(None)).get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
