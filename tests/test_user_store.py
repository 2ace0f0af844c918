"""
tests/test_user_store.py -- Unit tests for UserStore (auth/store.py) and AuditLog (audit/store.py).

Covers:
  - UNIQUE username / email enforced by the database
  - create_first_user inserts only while the table is empty
  - list_users filters (search, permission, status) and paging
  - stats() zero-fills every status and permission
  - update_user rejects fields outside the mutable set
  - AuditLog: append-only, newest first, field truncation, default limit
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from audit.store import AuditLog
from auth.models import User
from auth.permissions import Permission, Role, UserStatus


def _user(username: str, email: str | None = None) -> User:
    return User(
        username=username,
        email=email or f"{username}@example.com",
        role=Role.INTERN,
        permission=Permission.USER,
        password_hash="$argon2id$placeholder",
    )


class TestUserStore:
    def test_duplicate_username_rejected_by_db(self, services) -> None:
        services.users.create_user(_user("ana"))
        with pytest.raises(IntegrityError):
            services.users.create_user(_user("ana", "other@example.com"))

    def test_duplicate_email_rejected_by_db(self, services) -> None:
        services.users.create_user(_user("ana"))
        with pytest.raises(IntegrityError):
            services.users.create_user(_user("bia", "ana@example.com"))

    def test_defaults_on_insert(self, services) -> None:
        uid = services.users.create_user(_user("ana"))
        user = services.users.get_by_id(uid)
        assert user.status is UserStatus.ACTIVE
        assert user.created_at and user.updated_at
        assert user.last_login is None

    def test_create_first_user_only_into_empty_table(self, services) -> None:
        uid = services.users.create_first_user(_user("ana"))
        assert uid is not None
        stored = services.users.get_by_id(uid)
        assert stored.username == "ana"
        assert stored.role is Role.INTERN
        assert stored.phone is None

        assert services.users.create_first_user(_user("bia")) is None
        assert services.users.get_by_username("bia") is None
        assert services.users.count() == 1

    def test_list_filters(self, services, seed) -> None:
        seed("alice", Permission.OPERATOR)
        seed("bob", Permission.USER)
        seed("carol", Permission.OPERATOR, status=UserStatus.BLOCKED)

        operators = services.users.list_users(permission=Permission.OPERATOR)
        assert {u.username for u in operators} == {"alice", "carol"}

        active_ops = services.users.list_users(permission=Permission.OPERATOR, status=UserStatus.ACTIVE)
        assert [u.username for u in active_ops] == ["alice"]

        assert [u.username for u in services.users.list_users(search="bo")] == ["bob"]
        assert len(services.users.list_users(search="example.com")) == 3

    def test_list_paging(self, services, seed) -> None:
        for i in range(5):
            seed(f"user{i}")
        first = services.users.list_users(limit=2)
        second = services.users.list_users(limit=2, offset=2)
        assert len(first) == 2 and len(second) == 2
        assert not {u.id for u in first} & {u.id for u in second}

    def test_count_active(self, services, seed) -> None:
        seed("d1", Permission.DEVELOPER)
        seed("d2", Permission.DEVELOPER, status=UserStatus.INACTIVE)
        assert services.users.count_active(Permission.DEVELOPER) == 1

    def test_stats_zero_fill(self, services, seed) -> None:
        seed("ana", Permission.ADMINISTRATOR)
        stats = services.users.stats()
        assert stats["total"] == 1
        assert stats["by_permission"]["Administrator"] == 1
        assert stats["by_permission"]["Visitor"] == 0
        assert stats["by_status"]["Active"] == 1
        assert stats["by_status"]["Blocked"] == 0

    def test_update_rejects_unknown_field(self, services, seed) -> None:
        uid = seed("ana")
        with pytest.raises(ValueError):
            services.users.update_user(uid, id=99)

    def test_update_missing_user(self, services) -> None:
        assert services.users.update_user(404, phone="123") is False

    def test_set_status(self, services, seed) -> None:
        uid = seed("ana")
        services.users.set_status(uid, UserStatus.BLOCKED)
        assert services.users.get_by_id(uid).is_active is False


class TestAuditLog:
    def test_recent_is_newest_first(self, services) -> None:
        for action in ("first", "second", "third"):
            services.audit.record(action)
        assert [e.action for e in services.audit.recent()] == ["third", "second", "first"]

    def test_recent_limit(self, services) -> None:
        log = AuditLog(services.engine, recent_limit=2)
        for i in range(4):
            log.record(f"event{i}")
        assert len(log.recent()) == 2
        assert len(log.recent(limit=3)) == 3

    def test_fields_are_truncated(self, services) -> None:
        entry = services.audit.record("a" * 150, ip_address="1" * 60)
        assert len(entry.action) == 100
        assert len(entry.ip_address) == 45
        stored = services.audit.recent(1)[0]
        assert stored.action == entry.action

    def test_public_view(self, services) -> None:
        entry = services.audit.record("login", user_id=3, detail="ok", ip_address="10.1.1.1")
        view = entry.public_view()
        assert view["action"] == "login"
        assert view["user_id"] == 3
        assert view["ip_address"] == "10.1.1.1"
