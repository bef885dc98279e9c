"""PostgresStore behaviour against a scripted connection, no database required."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from vendorportal.storage.common import build_mfa_cipher, encrypt_secret
from vendorportal.storage.errors import ConstraintViolation
from vendorportal.storage.models import BackupCode, RoleKind, StaffRole, TwoFactorAuth, VendorRole
from vendorportal.storage.postgres import PostgresStore

KEY = "postgres-unit-test-key"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount
        self.batches = []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def executemany(self, sql, params):
        self.batches.append((sql, list(params)))

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeConnection:
    """Returns queued results in order and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.cursors = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    def cursor(self):
        cur = FakeCursor()
        self.cursors.append(cur)
        return cur

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def make_store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(results)
    store.pool = FakePool(conn)
    store._mfa_cipher = build_mfa_cipher(KEY)
    return store, conn


def _user_row(**overrides):
    row = {
        "id": "u-1",
        "email": "vendor@example.com",
        "password_hash": "hash",
        "roles": [{"role": "vendor_admin", "vendor_id": "v-1"}],
        "is_active": True,
        "email_verified": False,
        "token_version": 2,
        "login_attempts": 0,
        "lock_until": None,
        "password_changed_at": None,
        "last_login_at": None,
        "created_at": NOW,
        "profile": {"name": "V"},
    }
    row.update(overrides)
    return row


def test_user_row_mapping_reads_jsonb_roles():
    user = PostgresStore._user_from_row(_user_row())
    assert user.roles == (VendorRole(RoleKind.VENDOR_ADMIN, "v-1"),)
    assert user.token_version == 2
    assert user.profile == {"name": "V"}


def test_user_row_mapping_tolerates_text_columns_and_nulls():
    user = PostgresStore._user_from_row(
        _user_row(roles='[{"role": "elika_admin", "vendor_id": null}]', profile=None, token_version=None)
    )
    assert user.roles == (StaffRole(RoleKind.ELIKA_ADMIN),)
    assert user.profile == {}
    assert user.token_version == 0


def test_create_user_serializes_roles():
    store, conn = make_store(FakeCursor([_user_row()]))
    store.create_user(
        "Vendor@Example.com", "hash", roles=[VendorRole(RoleKind.VENDOR_ADMIN, "v-1")]
    )
    _, params = conn.statements[0]
    assert params[1] == "vendor@example.com"
    assert json.loads(params[3]) == [{"role": "vendor_admin", "vendor_id": "v-1"}]


def test_create_user_duplicate_email():
    store, _ = make_store(errors.UniqueViolation())
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("dup@example.com", "hash")
    assert exc_info.value.field == "email"


def test_record_failed_login_is_single_statement():
    store, conn = make_store(FakeCursor([_user_row(login_attempts=5, lock_until=NOW)]))
    user = store.record_failed_login(
        "u-1", max_attempts=5, lock_until=NOW + timedelta(hours=2), now=NOW
    )
    assert user.login_attempts == 5
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE app_user SET login_attempts = CASE")
    assert params["max_attempts"] == 5


def test_get_user_with_malformed_id_skips_query():
    store, conn = make_store()
    assert store.get_user("not-a-uuid") is None
    assert conn.statements == []


def test_increment_token_version_missing_user():
    store, _ = make_store(FakeCursor([]))
    assert store.increment_token_version("missing") is None


def test_revoke_refresh_token_reports_change():
    store, conn = make_store(FakeCursor([{"id": "t-1"}]), FakeCursor([]))
    assert store.revoke_refresh_token("h", "Logout", NOW) is True
    assert store.revoke_refresh_token("h", "Logout", NOW) is False
    assert "AND NOT revoked" in conn.statements[0][0]


def test_refresh_token_for_missing_user():
    from vendorportal.storage.models import RefreshToken

    store, _ = make_store(errors.ForeignKeyViolation())
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(
            RefreshToken(
                id="t-1", token_hash="h", user_id="ghost", expires_at=NOW, created_at=NOW
            )
        )


def test_upsert_two_factor_encrypts_and_writes_codes():
    store, conn = make_store(FakeCursor([{"user_id": "u-1"}]))
    record = TwoFactorAuth(
        user_id="u-1",
        secret="JBSWY3DPEHPK3PXP",
        backup_codes=(BackupCode("h1"), BackupCode("h2")),
        created_at=NOW,
    )
    assert store.upsert_two_factor(record) is record
    insert_sql, insert_params = conn.statements[0]
    assert "WHERE NOT two_factor_auth.enabled OR %s" in insert_sql
    assert insert_params[1] != "JBSWY3DPEHPK3PXP"
    assert insert_params[-1] is False
    _, rows = conn.cursors[0].batches[0]
    assert [row[1:3] for row in rows] == [(0, "h1"), (1, "h2")]


def test_upsert_two_factor_refused_when_enabled():
    store, conn = make_store(FakeCursor([]))
    record = TwoFactorAuth(user_id="u-1", secret="JBSWY3DPEHPK3PXP", created_at=NOW)
    assert store.upsert_two_factor(record) is None
    assert len(conn.statements) == 1
    assert conn.cursors == []


def test_get_two_factor_decrypts_secret():
    cipher = build_mfa_cipher(KEY)
    store, _ = make_store(
        FakeCursor(
            [
                {
                    "user_id": "u-1",
                    "secret": encrypt_secret(cipher, "JBSWY3DPEHPK3PXP"),
                    "enabled": True,
                    "created_at": NOW,
                    "last_used_at": None,
                    "enabled_at": NOW,
                }
            ]
        ),
        FakeCursor([{"code_hash": "h1", "used": True, "used_at": NOW}, {"code_hash": "h2", "used": False}]),
    )
    record = store.get_two_factor("u-1")
    assert record.secret == "JBSWY3DPEHPK3PXP"
    assert record.unused_backup_codes == 1


def test_consume_backup_code_miss_skips_touch():
    store, conn = make_store(FakeCursor([]))
    assert store.consume_backup_code("u-1", "nope", NOW) is False
    assert len(conn.statements) == 1
    assert "FOR UPDATE OF c" in conn.statements[0][0]


def test_purge_reports_rowcounts():
    store, _ = make_store(FakeCursor(rowcount=3), FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    removed = store.purge_expired_tokens(
        NOW, revoked_before=NOW - timedelta(days=7), used_before=NOW - timedelta(days=1)
    )
    assert removed == {"refresh_tokens": 3, "email_verifications": 1, "password_resets": 0}
