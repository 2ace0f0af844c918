"""
tests/test_register_routes.py -- Integration tests for POST /api/auth/register.

Every test starts from an empty database (bare_client), so the first
registration takes the bootstrap path.

Coverage:
  - first-user bootstrap: Developer, key in the body ignored and left unconsumed
  - keyed registration: key permission granted, single-use key then rejected
  - public registration: Visitor
  - rejected key -> 400 key_rejected with the reason, never a Visitor account
  - duplicate username / email -> 409, short password -> 400
  - passwords with surrounding spaces register and log in unchanged
  - [M4] the last active Developer cannot be demoted
"""

from __future__ import annotations

from fastapi.testclient import TestClient


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client: TestClient, username: str, **extra):
    body = {"username": username, "email": f"{username}@example.com", "role": "Analyst", "password": "secret123"}
    body.update(extra)
    return client.post("/api/auth/register", json=body)


def _bootstrap(client: TestClient) -> tuple[int, str]:
    """Register the first account (Developer) and return (id, token)."""
    resp = _register(client, "founder", role="Director")
    assert resp.status_code == 201, resp.text
    token = client.post("/api/auth/login", json={"username": "founder", "password": "secret123"}).json()[
        "access_token"
    ]
    return resp.json()["user"]["id"], token


def _mint(client: TestClient, token: str, key_type: str = "single_use", permission: str = "Operator") -> str:
    resp = client.post("/api/chaves", json={"type": key_type, "permission": permission}, headers=_auth(token))
    assert resp.status_code == 201, resp.text
    return resp.json()["key"]


def test_first_user_flag_flips(bare_client: TestClient) -> None:
    assert bare_client.get("/api/auth/first-user").json()["is_first_user"] is True
    _bootstrap(bare_client)
    assert bare_client.get("/api/auth/first-user").json()["is_first_user"] is False


def test_first_user_becomes_developer(bare_client: TestClient) -> None:
    resp = _register(bare_client, "founder", accessKey="IGNORED-CODE")
    assert resp.status_code == 201
    data = resp.json()
    assert data["user"]["permission"] == "Developer"
    assert data["message"] == "First user created with Developer permission."
    assert "password_hash" not in data["user"]


def test_keyed_registration(bare_client: TestClient) -> None:
    _, token = _bootstrap(bare_client)
    code = _mint(bare_client, token, "single_use", "Operator")

    resp = _register(bare_client, "invited", accessKey=code)
    assert resp.status_code == 201, resp.text
    assert resp.json()["user"]["permission"] == "Operator"

    again = _register(bare_client, "latecomer", accessKey=code)
    assert again.status_code == 400
    error = again.json()["error"]
    assert error["code"] == "key_rejected"
    assert error["detail"] == "exhausted"

    users = bare_client.get("/api/users", params={"search": "latecomer"}, headers=_auth(token)).json()
    assert users == [], "A rejected key must not fall back to a Visitor account"


def test_snake_case_key_field_accepted(bare_client: TestClient) -> None:
    _, token = _bootstrap(bare_client)
    code = _mint(bare_client, token, "permanent", "User")
    resp = _register(bare_client, "snake", access_key=code)
    assert resp.json()["user"]["permission"] == "User"


def test_public_registration_is_visitor(bare_client: TestClient) -> None:
    _bootstrap(bare_client)
    resp = _register(bare_client, "walkin")
    assert resp.status_code == 201
    assert resp.json()["user"]["permission"] == "Visitor"
    assert resp.json()["message"] == "User registered with Visitor permission."


def test_unknown_key_rejected(bare_client: TestClient) -> None:
    _bootstrap(bare_client)
    resp = _register(bare_client, "guesser", accessKey="NOT-A-REAL-KEY")
    assert resp.status_code == 400
    assert resp.json()["error"]["detail"] == "not_found"


def test_duplicates_rejected(bare_client: TestClient) -> None:
    _bootstrap(bare_client)
    assert _register(bare_client, "founder", email="other@example.com").status_code == 409
    dup_email = _register(bare_client, "someone", email="founder@example.com")
    assert dup_email.status_code == 409
    assert dup_email.json()["error"]["code"] == "duplicate_email"


def test_short_password_rejected(bare_client: TestClient) -> None:
    assert _register(bare_client, "founder", password="123").status_code == 400
    assert bare_client.get("/api/auth/first-user").json()["is_first_user"] is True


def test_password_kept_exactly_as_typed(bare_client: TestClient) -> None:
    _bootstrap(bare_client)
    resp = _register(bare_client, "ana", email="  ana@example.com ", password="  hunter22  ")
    assert resp.status_code == 201, resp.text
    assert resp.json()["user"]["email"] == "ana@example.com"

    login = bare_client.post("/api/auth/login", json={"username": "ana", "password": "  hunter22  "})
    assert login.status_code == 200, login.text
    trimmed = bare_client.post("/api/auth/login", json={"username": "ana", "password": "hunter22"})
    assert trimmed.status_code == 401


def test_unknown_role_rejected(bare_client: TestClient) -> None:
    resp = _register(bare_client, "founder", role="Astronaut")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_last_developer_is_protected(bare_client: TestClient) -> None:
    """[M4] With a single Developer, demoting them or changing their permission is refused."""
    dev_id, token = _bootstrap(bare_client)

    assert bare_client.post(f"/api/users/{dev_id}/demote", headers=_auth(token)).status_code == 400
    change = bare_client.put(f"/api/users/{dev_id}/permission", json={"permission": "User"}, headers=_auth(token))
    assert change.status_code == 400
    assert bare_client.get(f"/api/users/{dev_id}", headers=_auth(token)).json()["permission"] == "Developer"


def test_second_developer_can_be_demoted(bare_client: TestClient) -> None:
    _, token = _bootstrap(bare_client)
    code = _mint(bare_client, token, "single_use", "Developer")
    second = _register(bare_client, "deputy", accessKey=code).json()["user"]["id"]
    resp = bare_client.post(f"/api/users/{second}/demote", headers=_auth(token))
    assert resp.status_code == 200
    assert resp.json()["permission"] == "Administrator"
