"""Tests for the in-memory credential store."""

from datetime import timedelta

import pytest

from forkauth.storage.common import token_digest
from forkauth.storage.errors import ConstraintViolation
from forkauth.storage.models import RefreshSession, utcnow


class TestAccounts:
    def test_email_is_normalized_and_unique(self, store):
        account = store.create_account("  Someone@Example.COM ")
        assert account.email == "someone@example.com"
        assert store.get_account_by_email("SOMEONE@example.com").id == account.id
        with pytest.raises(ConstraintViolation):
            store.create_account("someone@example.com")

    def test_returned_records_are_copies(self, store):
        account = store.create_account("copy@example.com", permission_overrides=["order:read"])
        account.permission_overrides.append("user:delete")
        account.is_active = False

        fresh = store.get_account(account.id)
        assert fresh.permission_overrides == ["order:read"]
        assert fresh.is_active

    def test_permission_overrides_sorted_and_deduplicated(self, store):
        account = store.create_account("p@example.com")
        updated = store.set_permission_overrides(account.id, ["order:read", "menu:read", "order:read"])
        assert updated.permission_overrides == ["menu:read", "order:read"]

    def test_list_filters_by_role(self, store):
        store.create_account("a@example.com", role="customer")
        store.create_account("b@example.com", role="admin")
        assert [a.email for a in store.list_accounts(role="admin")] == ["b@example.com"]
        assert len(store.list_accounts()) == 2
        assert len(store.list_accounts(limit=1)) == 1

    def test_save_password_requires_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_delete_removes_credentials_and_sessions(self, store):
        account = store.create_account("gone@example.com")
        store.save_password(account.id, "hash", "argon2id")
        store.create_refresh_session(
            RefreshSession.new(account.id, token_digest("t"), timedelta(days=1))
        )

        assert store.delete_account(account.id)
        assert store.get_password_record(account.id) is None
        assert store.refresh_sessions == {}
        assert not store.delete_account(account.id)


class TestRefreshSessions:
    def test_session_requires_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_refresh_session(
                RefreshSession.new("missing", token_digest("t"), timedelta(days=1))
            )

    def test_consume_revokes(self, store):
        account = store.create_account("s@example.com")
        digest = token_digest("t")
        store.create_refresh_session(RefreshSession.new(account.id, digest, timedelta(days=1)))

        now = utcnow()
        assert store.consume_refresh_session(digest, now).account_id == account.id
        assert store.consume_refresh_session(digest, now) is None
        assert store.get_active_refresh_session(digest, now) is None

    def test_expired_not_active(self, store):
        account = store.create_account("s@example.com")
        digest = token_digest("t")
        store.create_refresh_session(RefreshSession.new(account.id, digest, timedelta(minutes=1)))
        later = utcnow() + timedelta(minutes=2)
        assert store.get_active_refresh_session(digest, later) is None
        assert store.consume_refresh_session(digest, later) is None

    def test_revoke_existing_twice(self, store):
        account = store.create_account("s@example.com")
        digest = token_digest("t")
        store.create_refresh_session(RefreshSession.new(account.id, digest, timedelta(days=1)))
        assert store.revoke_refresh_session(digest)
        assert store.revoke_refresh_session(digest)
        assert not store.revoke_refresh_session(token_digest("other"))


class TestServiceAccounts:
    def _create(self, store, name="orders", client_id="svc_1"):
        return store.create_service_account(
            name=name,
            client_id=client_id,
            service_name="order-service",
            scopes=["order-service:read"],
            secret_hash="hash",
        )

    def test_unique_name_and_client_id(self, store):
        self._create(store)
        with pytest.raises(ConstraintViolation):
            self._create(store, client_id="svc_2")
        with pytest.raises(ConstraintViolation):
            self._create(store, name="other")

    def test_rename_conflict(self, store):
        first = self._create(store)
        self._create(store, name="payments", client_id="svc_2")
        with pytest.raises(ConstraintViolation):
            store.update_service_account(first.id, name="payments")

    def test_secret_hash_kept_apart(self, store):
        account = self._create(store)
        assert not hasattr(account, "secret_hash")
        assert store.get_client_secret_hash(account.id) == "hash"
        assert store.save_client_secret(account.id, "hash2")
        assert store.get_client_secret_hash(account.id) == "hash2"
        assert not store.save_client_secret("missing", "x")

    def test_touch(self, store):
        account = self._create(store)
        when = utcnow()
        store.touch_service_account(account.id, when)
        assert store.get_service_account(account.id).last_used_at == when
