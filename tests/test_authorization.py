"""
tests/test_authorization.py -- Permission guard behaviour across the API.

Covers:
  - Only the Bearer scheme is accepted (Basic, bare tokens, empty Bearer -> 401)
  - Administrator-or-Developer routes: Visitor/User/Operator get 403 forbidden,
    Administrator and Developer are admitted
  - Developer-only route: Administrator gets 403
  - Read routes admit any authenticated caller
  - A forbidden request never mutates state
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.permissions import Permission


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestBearerScheme:
    def test_basic_scheme_rejected(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/auth/profile", headers={"Authorization": f"Basic {token}"})
        assert resp.status_code == 401

    def test_bare_token_rejected(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/auth/profile", headers={"Authorization": token})
        assert resp.status_code == 401

    def test_empty_bearer_rejected(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/auth/profile", headers={"Authorization": "Bearer "})
        assert resp.status_code == 401

    def test_scheme_is_case_insensitive(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/auth/profile", headers={"Authorization": f"bearer {token}"})
        assert resp.status_code == 200


class TestAdminGuard:
    @pytest.mark.parametrize("permission", [Permission.VISITOR, Permission.USER, Permission.OPERATOR])
    def test_below_administrator_forbidden(self, api_client, make_user, permission) -> None:
        client, _token, _uid = api_client
        _, token = make_user(permission=permission)
        resp = client.get("/api/chaves", headers=_auth(token))
        assert resp.status_code == 403, f"{permission.value} should be forbidden, got {resp.status_code}"
        assert resp.json()["error"]["code"] == "forbidden"

    @pytest.mark.parametrize("permission", [Permission.ADMINISTRATOR, Permission.DEVELOPER])
    def test_administrator_and_developer_admitted(self, api_client, make_user, permission) -> None:
        client, _token, _uid = api_client
        _, token = make_user(permission=permission)
        assert client.get("/api/chaves", headers=_auth(token)).status_code == 200

    def test_forbidden_create_has_no_effect(self, api_client, make_user) -> None:
        client, admin_token, _uid = api_client
        _, token = make_user(permission=Permission.OPERATOR)
        body = {
            "username": "sneaky",
            "email": "sneaky@example.com",
            "role": "Intern",
            "password": "secret123",
        }
        assert client.post("/api/users", json=body, headers=_auth(token)).status_code == 403
        listing = client.get("/api/users", params={"search": "sneaky"}, headers=_auth(admin_token)).json()
        assert listing == []


class TestDeveloperGuard:
    def test_administrator_cannot_set_permission_directly(self, api_client, make_user) -> None:
        client, _token, _uid = api_client
        target, _ = make_user(permission=Permission.USER)
        _, admin_token = make_user(permission=Permission.ADMINISTRATOR)
        resp = client.put(
            f"/api/users/{target}/permission", json={"permission": "Operator"}, headers=_auth(admin_token)
        )
        assert resp.status_code == 403

    def test_developer_sets_permission(self, api_client, make_user) -> None:
        client, token, _uid = api_client
        target, _ = make_user(permission=Permission.USER)
        resp = client.put(f"/api/users/{target}/permission", json={"permission": "Operator"}, headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["permission"] == "Operator"


class TestReadAccess:
    @pytest.mark.parametrize("path", ["/api/users", "/api/users/stats/summary", "/api/logs"])
    def test_visitor_can_read(self, api_client, make_user, path) -> None:
        client, _token, _uid = api_client
        _, token = make_user(permission=Permission.VISITOR)
        assert client.get(path, headers=_auth(token)).status_code == 200
