from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vendorportal.logging import get_logger
from vendorportal.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_json_object,
    parse_roles,
    safe_row_value,
    serialize_roles,
)
from vendorportal.storage.errors import ConstraintViolation
from vendorportal.storage.models import (
    BackupCode,
    DeviceContext,
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    RoleAssignment,
    TwoFactorAuth,
    User,
    new_id,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = (
    "app_user",
    "refresh_token",
    "email_verification_token",
    "password_reset_token",
    "two_factor_auth",
    "two_factor_backup_code",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Credential store backed by Postgres.

    Counters and single-use consumption are expressed as single
    ``UPDATE ... RETURNING`` statements so concurrent requests cannot lose
    updates.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def install_schema(self) -> None:
        """Apply ``schema.sql``; statements are idempotent."""
        with self._connect() as conn:
            conn.execute(SCHEMA_PATH.read_text())
        self.logger.info("postgres_schema_installed", path=str(SCHEMA_PATH))

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply vendorportal/storage/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing; case-insensitive email uniqueness depends on it."
                )

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            roles=parse_roles(row.get("roles")),
            is_active=bool(safe_row_value(row, "is_active", True)),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            token_version=int(safe_row_value(row, "token_version", 0)),
            login_attempts=int(safe_row_value(row, "login_attempts", 0)),
            lock_until=row.get("lock_until"),
            password_changed_at=row.get("password_changed_at"),
            last_login_at=row.get("last_login_at"),
            created_at=safe_row_value(row, "created_at", datetime.now(timezone.utc)),
            profile=parse_json_object(row.get("profile")),
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            device=DeviceContext(
                user_agent=row.get("user_agent"),
                ip_address=row.get("ip_address"),
                device_id=row.get("device_id"),
            ),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _verification_from_row(row: Dict[str, Any]) -> EmailVerificationToken:
        return EmailVerificationToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            email=row["email"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used=bool(row.get("used", False)),
            used_at=row.get("used_at"),
        )

    @staticmethod
    def _reset_from_row(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            email=row["email"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            used=bool(row.get("used", False)),
            used_at=row.get("used_at"),
        )

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Iterable[RoleAssignment] = (),
        profile: Optional[Dict] = None,
        is_active: bool = True,
        email_verified: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, roles, is_active, email_verified, profile, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        json.dumps(serialize_roles(roles)),
                        is_active,
                        email_verified,
                        json.dumps(profile or {}),
                        created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"}, field="email")
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", ((email or "").strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "password_hash = %s, password_changed_at = %s, login_attempts = 0, lock_until = NULL",
            (password_hash, changed_at),
        )

    def set_user_roles(self, user_id: str, roles: Iterable[RoleAssignment]) -> Optional[User]:
        return self._update_user(user_id, "roles = %s", (json.dumps(serialize_roles(roles)),))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "email_verified = TRUE", ())

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        # SET expressions see the pre-update row, so both columns derive from the same snapshot
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    login_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                        ELSE login_attempts + 1
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until > %(now)s THEN lock_until
                        WHEN (CASE
                                WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                                ELSE login_attempts + 1
                              END) >= %(max_attempts)s THEN %(lock_until)s
                        ELSE NULL
                    END,
                    updated_at = now()
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": lock_until,
                    "user_id": user_id,
                },
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_user(
            user_id, "login_attempts = 0, lock_until = NULL, last_login_at = %s", (now,)
        )

    def increment_token_version(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    # -- refresh tokens --------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, token_hash, user_id, user_agent, ip_address, device_id,
                        created_at, expires_at, revoked, revoked_at, revoked_reason, last_used_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_id,
                        token.device.user_agent,
                        token.device.ip_address,
                        token.device.device_id,
                        token.created_at,
                        token.expires_at,
                        token.revoked,
                        token.revoked_at,
                        token.revoked_reason,
                        token.last_used_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}, field="token_hash"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def touch_refresh_token(self, token_hash: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET last_used_at = %s WHERE token_hash = %s",
                (now, token_hash),
            )

    def revoke_refresh_token(self, token_hash: str, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE token_hash = %s AND NOT revoked
                RETURNING id
                """,
                (now, reason, token_hash),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND NOT revoked
                """,
                (now, reason, user_id),
            )
            return cur.rowcount

    # -- verification and reset tokens ----------------------------------

    def replace_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM email_verification_token WHERE user_id = %s", (token.user_id,)
                )
                conn.execute(
                    """
                    INSERT INTO email_verification_token (id, token_hash, user_id, email, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_id,
                        token.email,
                        token.created_at,
                        token.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "verification token already exists", {"field": "token_hash"}, field="token_hash"
            )
        return token

    def consume_email_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_verification_token SET used = TRUE, used_at = %(now)s
                WHERE token_hash = %(token_hash)s AND NOT used AND expires_at > %(now)s
                RETURNING *
                """,
                {"now": now, "token_hash": token_hash},
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def replace_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM password_reset_token WHERE user_id = %s", (token.user_id,))
                conn.execute(
                    """
                    INSERT INTO password_reset_token (
                        id, token_hash, user_id, email, ip_address, user_agent, created_at, expires_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_id,
                        token.email,
                        token.ip_address,
                        token.user_agent,
                        token.created_at,
                        token.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "reset token already exists", {"field": "token_hash"}, field="token_hash"
            )
        return token

    def get_password_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def consume_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %(now)s
                WHERE token_hash = %(token_hash)s AND NOT used AND expires_at > %(now)s
                RETURNING *
                """,
                {"now": now, "token_hash": token_hash},
            ).fetchone()
        return self._reset_from_row(row) if row else None

    # -- two-factor ------------------------------------------------------

    def upsert_two_factor(
        self, record: TwoFactorAuth, *, replace_enabled: bool = False
    ) -> Optional[TwoFactorAuth]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO two_factor_auth (user_id, secret, enabled, created_at, last_used_at, enabled_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = EXCLUDED.enabled,
                        created_at = EXCLUDED.created_at,
                        last_used_at = EXCLUDED.last_used_at,
                        enabled_at = EXCLUDED.enabled_at
                    WHERE NOT two_factor_auth.enabled OR %s
                    RETURNING user_id
                    """,
                    (
                        record.user_id,
                        encrypt_secret(self._mfa_cipher, record.secret),
                        record.enabled,
                        record.created_at,
                        record.last_used_at,
                        record.enabled_at,
                        replace_enabled,
                    ),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "DELETE FROM two_factor_backup_code WHERE user_id = %s", (record.user_id,)
                )
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO two_factor_backup_code (user_id, position, code_hash, used, used_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        [
                            (record.user_id, idx, code.code_hash, code.used, code.used_at)
                            for idx, code in enumerate(record.backup_codes)
                        ],
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": record.user_id}
            )
        return record

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_auth WHERE user_id = %s", (user_id,)
            ).fetchone()
            if not row:
                return None
            code_rows = conn.execute(
                "SELECT * FROM two_factor_backup_code WHERE user_id = %s ORDER BY position",
                (user_id,),
            ).fetchall()
        return TwoFactorAuth(
            user_id=str(row["user_id"]),
            secret=decrypt_secret(self._mfa_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            backup_codes=tuple(
                BackupCode(
                    code_hash=code["code_hash"],
                    used=bool(code.get("used", False)),
                    used_at=code.get("used_at"),
                )
                for code in code_rows
            ),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
            enabled_at=row.get("enabled_at"),
        )

    def set_two_factor_enabled(
        self, user_id: str, enabled: bool, now: datetime
    ) -> Optional[TwoFactorAuth]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_auth SET enabled = %s, enabled_at = %s
                WHERE user_id = %s RETURNING user_id
                """,
                (enabled, now if enabled else None, user_id),
            ).fetchone()
        return self.get_two_factor(user_id) if row else None

    def touch_two_factor(self, user_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE two_factor_auth SET last_used_at = %s WHERE user_id = %s",
                (now, user_id),
            )

    def consume_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_backup_code SET used = TRUE, used_at = %(now)s
                WHERE id = (
                    SELECT c.id FROM two_factor_backup_code c
                    JOIN two_factor_auth t ON t.user_id = c.user_id
                    WHERE c.user_id = %(user_id)s AND c.code_hash = %(code_hash)s
                      AND NOT c.used AND t.enabled
                    ORDER BY c.position
                    LIMIT 1
                    FOR UPDATE OF c
                )
                AND NOT used
                RETURNING id
                """,
                {"now": now, "user_id": user_id, "code_hash": code_hash},
            ).fetchone()
            if not row:
                return False
            conn.execute(
                "UPDATE two_factor_auth SET last_used_at = %s WHERE user_id = %s",
                (now, user_id),
            )
        return True

    # -- housekeeping ----------------------------------------------------

    def purge_expired_tokens(
        self,
        now: datetime,
        *,
        revoked_before: datetime,
        used_before: datetime,
    ) -> Dict[str, int]:
        with self._connect() as conn:
            refresh = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expires_at <= %s OR (revoked AND revoked_at < %s)
                """,
                (now, revoked_before),
            ).rowcount
            verifications = conn.execute(
                """
                DELETE FROM email_verification_token
                WHERE expires_at <= %s OR (used AND used_at < %s)
                """,
                (now, used_before),
            ).rowcount
            resets = conn.execute(
                """
                DELETE FROM password_reset_token
                WHERE expires_at <= %s OR (used AND used_at < %s)
                """,
                (now, used_before),
            ).rowcount
        return {
            "refresh_tokens": refresh,
            "email_verifications": verifications,
            "password_resets": resets,
        }
