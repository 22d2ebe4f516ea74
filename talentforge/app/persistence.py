from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _install_sqlite_locking(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two readers race
    # into a lock upgrade. Taking the write lock up front serializes writers.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """SQLAlchemy Core tables for the ingestion engine. SQLite or PostgreSQL URLs."""

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        is_sqlite = self.database_url.startswith("sqlite")
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
            connect_args={"timeout": 30, "check_same_thread": False} if is_sqlite else {},
        )
        if is_sqlite:
            _install_sqlite_locking(self.engine)
        self.metadata = MetaData()
        self.webhook_events = Table(
            "webhook_events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("provider", String(20), nullable=False),
            Column("event_type", String(100), nullable=False),
            Column("event_id", String(255), nullable=False),
            Column("related_entity_ref", String(255), nullable=True),
            Column("payload_json", Text, nullable=False),
            Column("event_json", Text, nullable=False),
            Column("status", String(20), nullable=False),
            Column("attempts", Integer, nullable=False, default=0),
            Column("max_attempts", Integer, nullable=False, default=3),
            Column("last_attempt_at", DateTime, nullable=True),
            Column("next_retry_at", DateTime, nullable=True),
            Column("error_message", Text, nullable=True),
            Column("processed_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
            Index("ix_webhook_events_status_retry", "status", "next_retry_at"),
        )
        self.candidates = Table(
            "candidates",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("company_id", String(120), nullable=False),
            Column("name", String(200), nullable=False),
            Column("email", String(320), nullable=True),
            Column("created_at", DateTime, nullable=False),
        )
        self.interviews = Table(
            "interviews",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("company_id", String(120), nullable=False),
            Column("candidate_id", String(64), nullable=True),
            Column("status", String(20), nullable=False),
            Column("recording_status", String(20), nullable=False),
            Column("transcript_status", String(20), nullable=False),
            Column("external_meeting_ref", String(255), nullable=True, index=True),
            Column("scheduled_at", DateTime, nullable=False),
            Column("duration_minutes", Integer, nullable=False),
            Column("recording_url", Text, nullable=True),
            Column("recording_duration_seconds", Integer, nullable=True),
            Column("recording_file_size", Integer, nullable=True),
            Column("recording_processed_at", DateTime, nullable=True),
            Column("transcript_processed_at", DateTime, nullable=True),
            Column("last_webhook_event_type", String(100), nullable=True),
            Column("last_webhook_received_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("company_id", String(120), nullable=False),
            Column("name", String(200), nullable=False),
            Column("status", String(20), nullable=False),
            Column("total_recipients", Integer, nullable=False, default=0),
            Column("total_sent", Integer, nullable=False, default=0),
            Column("total_opened", Integer, nullable=False, default=0),
            Column("total_clicked", Integer, nullable=False, default=0),
            Column("total_replied", Integer, nullable=False, default=0),
            Column("total_bounced", Integer, nullable=False, default=0),
            Column("total_complained", Integer, nullable=False, default=0),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.campaign_sends = Table(
            "campaign_sends",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("campaign_id", String(64), nullable=False),
            Column("candidate_id", String(64), nullable=False),
            Column("provider_message_id", String(255), nullable=True, index=True),
            Column("status", String(20), nullable=False),
            Column("sent_at", DateTime, nullable=True),
            Column("delivered_at", DateTime, nullable=True),
            Column("opened_at", DateTime, nullable=True),
            Column("clicked_at", DateTime, nullable=True),
            Column("replied_at", DateTime, nullable=True),
            Column("bounced_at", DateTime, nullable=True),
            Column("complained_at", DateTime, nullable=True),
            Column("error_message", Text, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.email_suppressions = Table(
            "email_suppressions",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("company_id", String(120), nullable=False),
            Column("email", String(320), nullable=False),
            Column("reason", String(20), nullable=False),
            Column("source", String(255), nullable=True),
            Column("created_at", DateTime, nullable=False),
            UniqueConstraint("company_id", "email", name="uq_email_suppressions_company_email"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    @contextmanager
    def transaction(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        """Yield ``conn`` unchanged when given, otherwise a fresh committing transaction."""
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as new_conn:
            yield new_conn

    def insert_or_ignore(self, conn: Connection, table: Table, values: dict[str, Any]) -> bool:
        """Insert a row unless it collides with a unique constraint. True when inserted."""
        dialect = conn.dialect.name
        if dialect == "sqlite":
            statement = sqlite.insert(table).values(**values).on_conflict_do_nothing()
        elif dialect == "postgresql":
            statement = postgresql.insert(table).values(**values).on_conflict_do_nothing()
        else:
            try:
                with conn.begin_nested():
                    conn.execute(table.insert().values(**values))
            except IntegrityError:
                return False
            return True
        result = conn.execute(statement)
        return result.rowcount == 1

    def dispose(self) -> None:
        self.engine.dispose()
