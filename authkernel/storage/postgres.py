from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    Account,
    ActivityEvent,
    SocialLink,
    VerificationTicket,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        display_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS role (
        name TEXT PRIMARY KEY
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_role (
        account_id BIGINT NOT NULL REFERENCES account(id),
        role_name TEXT NOT NULL REFERENCES role(name),
        PRIMARY KEY (account_id, role_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_ticket (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id),
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS social_link (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id),
        provider TEXT NOT NULL,
        provider_subject_id TEXT NOT NULL,
        provider_email TEXT,
        linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_subject_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_event (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT REFERENCES account(id),
        type TEXT NOT NULL,
        message TEXT,
        occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS activity_event_account_idx ON activity_event (account_id, occurred_at DESC)",
)

_ACCOUNT_SELECT = """
    SELECT a.*, COALESCE(
        (SELECT array_agg(r.role_name ORDER BY r.role_name) FROM account_role r WHERE r.account_id = a.id),
        '{}'
    ) AS roles
    FROM account a
"""


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ensured", statements=len(_SCHEMA_STATEMENTS))

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified", False)),
            display_name=row.get("display_name"),
            roles=set(row.get("roles") or ()),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_ticket(row: dict) -> VerificationTicket:
        return VerificationTicket(
            id=int(row["id"]),
            account_id=int(row["account_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used=bool(row.get("used", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_event(row: dict) -> ActivityEvent:
        account_id = row.get("account_id")
        return ActivityEvent(
            id=int(row["id"]),
            account_id=int(account_id) if account_id is not None else None,
            type=row["type"],
            message=row.get("message"),
            occurred_at=row.get("occurred_at") or utcnow(),
        )

    def _fetch_account(self, conn, account_id: int) -> Optional[Account]:
        row = conn.execute(_ACCOUNT_SELECT + " WHERE a.id = %s", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        email_verified: bool = False,
    ) -> Account:
        role_names = sorted(set(roles or ()))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (email, password_hash, email_verified, display_name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, password_hash, email_verified, display_name),
                ).fetchone()
                for role in role_names:
                    conn.execute(
                        "INSERT INTO account_role (account_id, role_name) VALUES (%s, %s)",
                        (row["id"], role),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"roles": role_names})
        return self._row_to_account({**row, "roles": role_names})

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            return self._fetch_account(conn, account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                _ACCOUNT_SELECT + " WHERE lower(a.email) = lower(%s)", (email.strip(),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def mark_email_verified(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE account SET email_verified = true, updated_at = now() WHERE id = %s RETURNING id",
                (account_id,),
            ).fetchone()
            if not updated:
                return None
            return self._fetch_account(conn, account_id)

    def add_role(self, account_id: int, role: str) -> Optional[Account]:
        try:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT id FROM account WHERE id = %s", (account_id,)
                ).fetchone()
                if not exists:
                    return None
                inserted = conn.execute(
                    """
                    INSERT INTO account_role (account_id, role_name) VALUES (%s, %s)
                    ON CONFLICT (account_id, role_name) DO NOTHING
                    RETURNING role_name
                    """,
                    (account_id, role),
                ).fetchone()
                if inserted:
                    conn.execute(
                        "UPDATE account SET updated_at = now() WHERE id = %s", (account_id,)
                    )
                return self._fetch_account(conn, account_id)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"role": role})

    # -- roles --------------------------------------------------------------

    def seed_roles(self, names: Iterable[str]) -> List[str]:
        created: List[str] = []
        with self._connect() as conn:
            for name in names:
                row = conn.execute(
                    "INSERT INTO role (name) VALUES (%s) ON CONFLICT (name) DO NOTHING RETURNING name",
                    (name,),
                ).fetchone()
                if row:
                    created.append(row["name"])
        return created

    def list_roles(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM role ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    # -- verification tickets -----------------------------------------------

    def create_verification_ticket(
        self, account_id: int, token: str, expires_at: datetime
    ) -> VerificationTicket:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO verification_ticket (account_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("ticket token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for ticket", {"account_id": account_id}
            )
        return self._row_to_ticket(row)

    def get_verification_ticket(self, token: str) -> Optional[VerificationTicket]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_ticket WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_ticket(row) if row else None

    def redeem_verification_ticket(
        self, token: str, now: datetime
    ) -> Optional[Account]:
        # Both updates share one connection, so they commit together
        with self._connect() as conn:
            ticket = conn.execute(
                """
                UPDATE verification_ticket SET used = true
                WHERE token = %s AND used = false AND expires_at > %s
                RETURNING account_id
                """,
                (token, now),
            ).fetchone()
            if not ticket:
                return None
            conn.execute(
                "UPDATE account SET email_verified = true, updated_at = now() WHERE id = %s",
                (ticket["account_id"],),
            )
            return self._fetch_account(conn, ticket["account_id"])

    # -- social links -------------------------------------------------------

    def create_social_link(
        self,
        account_id: int,
        provider: str,
        provider_subject_id: str,
        provider_email: Optional[str] = None,
    ) -> SocialLink:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO social_link (account_id, provider, provider_subject_id, provider_email)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, provider, provider_subject_id, provider_email),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "social link already exists",
                {"provider": provider, "field": "provider_subject_id"},
            )
        return SocialLink(
            id=int(row["id"]),
            account_id=int(row["account_id"]),
            provider=row["provider"],
            provider_subject_id=row["provider_subject_id"],
            provider_email=row.get("provider_email"),
            linked_at=row.get("linked_at") or utcnow(),
        )

    def get_account_by_social_link(
        self, provider: str, provider_subject_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                _ACCOUNT_SELECT
                + " JOIN social_link s ON s.account_id = a.id"
                " WHERE s.provider = %s AND s.provider_subject_id = %s",
                (provider, provider_subject_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    # -- activity -----------------------------------------------------------

    def record_activity(
        self, account_id: Optional[int], type: str, message: Optional[str] = None
    ) -> ActivityEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO activity_event (account_id, type, message)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (account_id, type, message),
            ).fetchone()
        return self._row_to_event(row)

    def list_activity(
        self, account_id: int, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[ActivityEvent], int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM activity_event WHERE account_id = %s
                ORDER BY occurred_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                (account_id, limit, offset),
            ).fetchall()
            total = conn.execute(
                "SELECT count(*) AS total FROM activity_event WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        return [self._row_to_event(row) for row in rows], int(total["total"])
