"""
auth/store.py -- SQLAlchemy Core persistence layer for user profiles.

Pattern: Repository + Data Mapper. ProfileStore is the repository;
_row_to_profile is the mapper. Route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(subject) is enforced in SQL. It is the only consistency boundary
  the login flow relies on: two concurrent callbacks for the same subject
  (double click, replayed callback URL) race on the INSERT, exactly one wins,
  and exactly one of them reports first_login=True [P1].

Reconciliation [P1]:
  SQLite / PostgreSQL: INSERT ... ON CONFLICT (subject) DO NOTHING, then an
      UPDATE in the same transaction when nothing was inserted.
  Other dialects: plain INSERT inside a SAVEPOINT; the unique constraint's
      IntegrityError selects the update path.
  Never select-then-insert.

Timeouts:
  SQLite gets a busy timeout, PostgreSQL a connect timeout and a statement
  timeout, both from PROFILE_STORE_TIMEOUT_SECONDS. A store call fails with
  UpstreamError(profile_store_error) rather than hanging.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import Pool

from auth.errors import UpstreamError
from auth.models import IdentityClaims, Profile, ReconcileResult

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_profiles = Table(
    "profiles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subject", String(255), nullable=False, unique=True),  # provider's stable user ID
    Column("display_name", Text),
    Column("email", Text),
    Column("phone", Text),
    Column("address", Text),
    Column("zip", String(16)),
    Column("city", Text),
    Column("personal_number_hash", String(64)),  # HMAC-SHA256 hex, never the raw value
    Column("needs_contact_info", Integer, nullable=False, server_default="1"),
    Column("accept_terms", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during the login upsert.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect_args(db_url: str, timeout_seconds: float) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if db_url.startswith("postgresql"):
        return {
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    return {}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ProfileStore:
    """Repository for Profile entities.

    Usage:
        store = ProfileStore("sqlite:///va_profiles.db")
        result = store.reconcile_login(claims, personal_number_hash=None)
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0, poolclass: type[Pool] | None = None) -> None:
        engine_kwargs: dict[str, Any] = {
            "connect_args": _connect_args(db_url, timeout_seconds),
            "pool_pre_ping": True,
        }
        # In-memory SQLite URIs need an explicit pool (StaticPool keeps the
        # one connection, and with it the database, alive).
        if poolclass is not None:
            engine_kwargs["poolclass"] = poolclass
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Login reconciliation [P1]
    # ------------------------------------------------------------------

    def reconcile_login(self, claims: IdentityClaims, personal_number_hash: str | None) -> ReconcileResult:
        """Insert-or-update the profile for claims.subject in one transaction.

        New subject: row created with needs_contact_info=1, last_login_at=now,
            the personal number hash if present; first_login=True.
        Known subject: last_login_at/updated_at stamped, display_name refreshed
            when the provider sent one, email/phone/personal_number_hash only
            filled when currently empty; needs_contact_info untouched;
            first_login=False.

        Raises:
            UpstreamError: profile_store_error on any database failure.
        """
        now = _now_iso()
        new_row = {
            "subject": claims.subject,
            "display_name": claims.display_name,
            "email": claims.email,
            "phone": claims.phone_number,
            "personal_number_hash": personal_number_hash,
            "needs_contact_info": 1,
            "accept_terms": 0,
            "last_login_at": now,
            "created_at": now,
            "updated_at": now,
        }
        refresh: dict[str, Any] = {
            "last_login_at": now,
            "updated_at": now,
            # Fill-only: never overwrite what the user entered on completion.
            "email": func.coalesce(_profiles.c.email, claims.email),
            "phone": func.coalesce(_profiles.c.phone, claims.phone_number),
            "personal_number_hash": func.coalesce(_profiles.c.personal_number_hash, personal_number_hash),
        }
        if claims.display_name:
            refresh["display_name"] = claims.display_name

        try:
            with self.engine.begin() as conn:
                inserted = self._insert_if_absent(conn, new_row)
                if not inserted:
                    conn.execute(_profiles.update().where(_profiles.c.subject == claims.subject).values(**refresh))
                row = conn.execute(_profiles.select().where(_profiles.c.subject == claims.subject)).fetchone()
        except SQLAlchemyError as exc:
            raise UpstreamError("profile_store_error", type(exc).__name__) from exc

        if row is None:
            raise UpstreamError("profile_store_error", "profile row missing after upsert")
        return ReconcileResult(profile=_row_to_profile(row), first_login=inserted)

    def _insert_if_absent(self, conn: Connection, values: dict[str, Any]) -> bool:
        """INSERT values unless a row with the same subject exists. Returns True if inserted."""
        dialect = self.engine.dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert(_profiles).values(**values).on_conflict_do_nothing(index_elements=["subject"])
            return conn.execute(stmt).rowcount == 1

        savepoint = conn.begin_nested()
        try:
            conn.execute(_profiles.insert().values(**values))
        except SAIntegrityError:
            savepoint.rollback()
            return False
        savepoint.commit()
        return True

    # ------------------------------------------------------------------
    # Profile completion
    # ------------------------------------------------------------------

    def complete_profile(
        self,
        subject: str,
        *,
        email: str | None,
        phone: str | None,
        address: str | None,
        zip_code: str | None,
        city: str | None,
    ) -> Profile:
        """Write contact details, record terms acceptance, clear needs_contact_info.

        Creates the row if the subject has no profile yet (a session can
        outlive a wiped store).

        Raises:
            UpstreamError: profile_store_error on any database failure.
        """
        now = _now_iso()
        contact = {
            "email": email,
            "phone": phone,
            "address": address,
            "zip": zip_code,
            "city": city,
            "needs_contact_info": 0,
            "accept_terms": 1,
            "updated_at": now,
        }
        try:
            with self.engine.begin() as conn:
                inserted = self._insert_if_absent(conn, {"subject": subject, "created_at": now, **contact})
                if not inserted:
                    conn.execute(_profiles.update().where(_profiles.c.subject == subject).values(**contact))
                row = conn.execute(_profiles.select().where(_profiles.c.subject == subject)).fetchone()
        except SQLAlchemyError as exc:
            raise UpstreamError("profile_store_error", type(exc).__name__) from exc
        return _row_to_profile(row)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_subject(self, subject: str) -> Profile | None:
        """Look up a profile by provider subject. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_profiles.select().where(_profiles.c.subject == subject)).fetchone()
        except SQLAlchemyError as exc:
            raise UpstreamError("profile_store_error", type(exc).__name__) from exc
        return _row_to_profile(row) if row is not None else None

    def ping(self) -> bool:
        """Return True if the store answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_profile(row) -> Profile:
    return Profile(
        id=row.id,
        subject=row.subject,
        display_name=row.display_name,
        email=row.email,
        phone=row.phone,
        address=row.address,
        zip=row.zip,
        city=row.city,
        personal_number_hash=row.personal_number_hash,
        needs_contact_info=bool(row.needs_contact_info),
        accept_terms=bool(row.accept_terms),
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
