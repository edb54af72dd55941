"""
SQLAlchemy engine and session factory for the metric store.

Tables: metric_snapshots, report_uploads, action_deliveries and
migration_runs. Alembic owns the schema; create_app() only imports the
models so they register on Base.

Local dev runs on SQLite. Production runs on Postgres, where every
statement is capped by DB_STATEMENT_TIMEOUT_MS so a stuck backfill batch
fails its run instead of holding row locks.

get_session() returns a fresh session every call. Ingestion workers, the
backfill loop and request handlers each open one and close it themselves.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from goalboard.config import DATABASE_URL, DB_STATEMENT_TIMEOUT_MS, INGEST_MAX_WORKERS


class Base(DeclarativeBase):
    pass


def normalize_url(raw: str) -> str:
    # Hosted Postgres injects postgres:// but SQLAlchemy 2.x requires postgresql://
    if raw.startswith('postgres://'):
        return 'postgresql://' + raw[len('postgres://'):]
    return raw


url = normalize_url(DATABASE_URL)

if url.startswith('sqlite'):
    engine = create_engine(url, connect_args={'check_same_thread': False})
else:
    connect_args = {}
    if DB_STATEMENT_TIMEOUT_MS:
        connect_args['options'] = f'-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}'
    # One session per ingestion worker, plus request handlers
    engine = create_engine(
        url, pool_pre_ping=True, connect_args=connect_args,
        pool_size=max(5, INGEST_MAX_WORKERS), max_overflow=10,
    )

SessionLocal = sessionmaker(bind=engine)


def describe_database() -> str:
    """The engine URL with its password masked, for logs and CLI output."""
    return engine.url.render_as_string(hide_password=True)


def get_session():
    """Return a new DB session; the caller closes it."""
    return SessionLocal()
