from uuid import UUID, uuid4

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from cutpro.auth_utils import hash_password, verify_password
from cutpro.identity import ANONYMOUS_COOKIE_NAME, IdentityKind, create_session, resolve_identity
from cutpro.main import app


def _register(client: TestClient) -> dict:
    res = client.post(
        "/api/v1/auth/register",
        json={"email": f"user-{uuid4().hex[:8]}@example.com", "password": "Secret123!", "fullName": "Test User"},
    )
    assert res.status_code == 201
    return res.json()


def test_anonymous_owner_cookie_is_issued_and_reused() -> None:
    client = TestClient(app)
    first = client.get("/api/v1/me")
    assert first.status_code == 200
    assert first.json()["kind"] == "anonymous"
    issued = first.cookies.get(ANONYMOUS_COOKIE_NAME)
    assert issued == first.json()["ownerId"]

    second = client.get("/api/v1/me")
    assert second.json()["ownerId"] == issued


def test_register_scopes_data_to_user() -> None:
    client = TestClient(app)
    auth = _register(client)
    headers = {"Authorization": f"Bearer {auth['token']}"}

    me = client.get("/api/v1/me", headers=headers).json()
    assert me["kind"] == "authenticated"
    assert me["ownerId"] == auth["userId"]
    assert me["email"] == auth["email"]

    res = client.post(
        "/api/v1/transactions",
        json={"kind": "income", "amount": 75, "category": "Salário", "description": "Freela"},
        headers=headers,
    )
    assert res.status_code == 201
    state = client.get("/api/v1/state", headers=headers).json()
    assert len(state["transactions"]) == 1
    assert state["profile"]["ownerId"] == auth["userId"]


def test_login_logout_cycle() -> None:
    client = TestClient(app)
    auth = _register(client)

    bad = client.post("/api/v1/auth/login", json={"email": auth["email"], "password": "WrongPass1!"})
    assert bad.status_code == 401

    login = client.post("/api/v1/auth/login", json={"email": auth["email"], "password": "Secret123!"})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}
    assert client.get("/api/v1/me", headers=headers).json()["kind"] == "authenticated"

    out = client.post("/api/v1/auth/logout", headers=headers)
    assert out.json()["dropped"] is True
    assert client.get("/api/v1/me", headers=headers).status_code == 401


def test_duplicate_email_returns_409() -> None:
    client = TestClient(app)
    auth = _register(client)
    res = client.post("/api/v1/auth/register", json={"email": auth["email"], "password": "Secret123!"})
    assert res.status_code == 409


def test_invalid_owner_header_returns_400() -> None:
    client = TestClient(app)
    res = client.get("/api/v1/profile", headers={"X-Owner-Id": "not-a-uuid"})
    assert res.status_code == 400


def test_resolve_identity_variants() -> None:
    owner = uuid4()
    token = create_session(owner)

    authed = resolve_identity(authorization=f"Bearer {token}")
    assert authed.kind == IdentityKind.authenticated and authed.owner_id == owner

    by_cookie = resolve_identity(session_token=token, owner_cookie=str(uuid4()))
    assert by_cookie.owner_id == owner

    anon = resolve_identity(owner_cookie=str(owner))
    assert anon.kind == IdentityKind.anonymous and not anon.issued

    fresh = resolve_identity(owner_cookie="garbage")
    assert fresh.issued and isinstance(fresh.owner_id, UUID)

    with pytest.raises(HTTPException):
        resolve_identity(authorization="Token abc")
    with pytest.raises(HTTPException):
        resolve_identity(authorization="Bearer unknown")


def test_anonymous_id_cannot_claim_registered_user() -> None:
    owner_client = TestClient(app)
    auth = _register(owner_client)
    res = owner_client.post(
        "/api/v1/transactions",
        json={"kind": "income", "amount": 999, "category": "Salário", "description": "private"},
        headers={"Authorization": f"Bearer {auth['token']}"},
    )
    assert res.status_code == 201

    other = TestClient(app)
    headers = {"X-Owner-Id": auth["userId"]}
    assert other.get("/api/v1/state", headers=headers).status_code == 403
    res = other.post(
        "/api/v1/transactions",
        json={"kind": "expense", "amount": 1, "category": "Outros", "description": "x"},
        headers=headers,
    )
    assert res.status_code == 403

    cookie = {"Cookie": f"{ANONYMOUS_COOKIE_NAME}={auth['userId']}"}
    assert TestClient(app).get("/api/v1/transactions", headers=cookie).status_code == 403

    own = owner_client.get("/api/v1/transactions", headers={"Authorization": f"Bearer {auth['token']}"}).json()
    assert [t["description"] for t in own] == ["private"]


def test_resolve_identity_refuses_registered_anonymous_id() -> None:
    registered = uuid4()

    def is_registered(owner_id: UUID) -> bool:
        return owner_id == registered

    with pytest.raises(HTTPException) as exc:
        resolve_identity(owner_header=str(registered), is_registered=is_registered)
    assert exc.value.status_code == 403
    with pytest.raises(HTTPException):
        resolve_identity(owner_cookie=str(registered), is_registered=is_registered)

    token = create_session(registered)
    assert resolve_identity(session_token=token, is_registered=is_registered).owner_id == registered
    assert resolve_identity(owner_header=str(uuid4()), is_registered=is_registered).kind == IdentityKind.anonymous


def test_password_hash_format() -> None:
    stored = hash_password("Secret123!", iterations=1000)
    scheme, iterations, salt, digest = stored.split("$")
    assert (scheme, iterations) == ("pbkdf2_sha256", "1000")
    assert salt and digest
    assert verify_password("Secret123!", stored)
    assert not verify_password("wrong-password", stored)
    assert not verify_password("Secret123!", "sha256$abc$def")
