"""Error responses share one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>}
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from storegate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from storegate.api.schemas import Envelope, ErrorBody, RegisterRequest
from storegate.service.errors import ConflictError, ForbiddenError, NotFoundError
from storegate.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_details_accept_list(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"field": "email", "message": "invalid email address"}],
        )
        assert error.details[0]["field"] == "email"

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_codes(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[429] == "rate_limited"
        assert _STATUS_TO_CODE[503] == "service_unavailable"

    def test_unknown_statuses_fall_back(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(502) == "server_error"


class TestRegisterRequest:
    def _valid(self, **overrides):
        body = {
            "name": "Store Owner",
            "email": "owner@example.com",
            "password": "UserPassword123!",
            "confirm_password": "UserPassword123!",
        }
        body.update(overrides)
        return body

    def test_accepts_valid_body(self):
        assert RegisterRequest(**self._valid()).email == "owner@example.com"

    @pytest.mark.parametrize(
        "password",
        ["short1!", "alllowercase123!", "ALLUPPERCASE123!", "NoDigitsHere!", "NoSpecials123"],
    )
    def test_password_policy(self, password):
        with pytest.raises(PydanticValidationError):
            RegisterRequest(**self._valid(password=password, confirm_password=password))

    def test_passwords_must_match(self):
        with pytest.raises(PydanticValidationError):
            RegisterRequest(**self._valid(confirm_password="OtherPassword123!"))

    def test_name_too_short(self):
        with pytest.raises(PydanticValidationError):
            RegisterRequest(**self._valid(name="A"))


class Payload(BaseModel):
    email: str
    count: int


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("already exists", detail={"field": "email"})

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("admin access required")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("user not found")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/down")
    async def down():
        raise StoreUnavailable("pool timeout after 2.0s on db-primary")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def validate(body: Payload):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


def test_service_error_envelope(client):
    response = client.get("/conflict")
    assert response.status_code == 409
    assert response.json() == {
        "status": "error",
        "data": None,
        "error": {"code": "conflict", "message": "already exists", "details": {"field": "email"}},
    }


def test_forbidden_and_not_found(client):
    assert client.get("/forbidden").json()["error"]["code"] == "forbidden"
    missing = client.get("/missing")
    assert missing.status_code == 404
    assert missing.json()["error"]["details"] is None


def test_constraint_violation_is_conflict(client):
    response = client.get("/constraint")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"


def test_store_unavailable_hides_internals(client):
    response = client.get("/down")
    assert response.status_code == 503
    error = response.json()["error"]
    assert error["message"] == "service temporarily unavailable"
    assert "db-primary" not in response.text


def test_unhandled_exception_is_generic_500(client):
    response = client.get("/boom")
    assert response.status_code == 500
    assert response.json()["error"] == {
        "code": "server_error",
        "message": "internal server error",
        "details": None,
    }
    assert "secret internals" not in response.text


def test_request_validation_lists_fields(client):
    response = client.post("/validate", json={"email": "a@example.com", "count": "many"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"][0]["field"] == "count"
    assert body["error"]["details"][0]["message"]


def test_unknown_route_uses_envelope(client):
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
