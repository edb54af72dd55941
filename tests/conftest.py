"""Shared test fixtures."""
from datetime import date, datetime, timezone

import pytest
from unittest.mock import patch
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from goalboard.database import Base

# Modules that bind get_session at import time
SESSION_USERS = [
    'goalboard.database.get_session',
    'goalboard.pipeline.ingest.get_session',
    'goalboard.pipeline.migration.get_session',
    'goalboard.services.db.get_session',
    'goalboard.routes.reports.get_session',
]


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created.

    StaticPool keeps one connection so ingestion worker threads see the
    same in-memory database as the test.
    """
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # pysqlite opens and commits transactions on its own, which breaks
    # SAVEPOINT. Hand transaction control to SQLAlchemy.
    @event.listens_for(engine, 'connect')
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin(conn):
        conn.exec_driver_sql('BEGIN')

    import goalboard.models.metric_snapshot
    import goalboard.models.report_upload
    import goalboard.models.action_delivery
    import goalboard.models.db_migration_run
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_session):
    """Route every get_session() call to the test session.

    close() is disabled so code that closes its session in a finally block
    does not invalidate the shared test session.
    """
    _real_close = db_session.close
    db_session.close = lambda: None
    patchers = [patch(target, return_value=db_session) for target in SESSION_USERS]
    for p in patchers:
        p.start()
    yield db_session
    for p in patchers:
        p.stop()
    db_session.close = _real_close


@pytest.fixture(autouse=True)
def single_ingest_worker():
    """All code shares one test session, so ingestion runs one worker at a time."""
    with patch('goalboard.pipeline.ingest.INGEST_MAX_WORKERS', 1):
        yield


@pytest.fixture
def app():
    """Flask test app."""
    from goalboard import create_app
    app = create_app()
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def make_snapshot(db_session):
    """Factory fixture: persist a MetricSnapshot and return it."""
    from goalboard.models.metric_snapshot import MetricSnapshot
    from goalboard.pipeline.cycles import compute_cycle_info

    def _make(with_cycle=True, **overrides):
        defaults = dict(
            representative_id='rep-001',
            representative_name='Ana Souza',
            team='CARTEIRA_I',
            report_date=date(2025, 3, 10),
            activity=80.0,
            revenue_per_asset=95.5,
            revenue=110.0,
            recorded_at=datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc),
        )
        defaults.update(overrides)
        snapshot = MetricSnapshot(**defaults)
        if with_cycle:
            compute_cycle_info(snapshot.report_date).apply_to(snapshot)
        db_session.add(snapshot)
        db_session.commit()
        return snapshot
    return _make


@pytest.fixture
def make_row():
    """Factory fixture: a raw upload row for a CARTEIRA_I representative."""
    def _make(**overrides):
        row = {
            'representative_id': 'rep-001',
            'representative_name': 'Ana Souza',
            'team': 'CARTEIRA_I',
            'report_date': '2025-03-10',
            'activity': 80.0,
            'revenue_per_asset': 95.5,
            'revenue': 110.0,
        }
        row.update(overrides)
        return row
    return _make


class FakeRedis:
    """Minimal in-memory Redis fake for circuit breaker tests."""

    def __init__(self):
        self.get_store = {}
        self.hash_store = {}

    def get(self, key):
        return self.get_store.get(key)

    def set(self, key, value):
        self.get_store[key] = value

    def incr(self, key):
        val = int(self.get_store.get(key, 0)) + 1
        self.get_store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.get_store.pop(k, None)
            self.hash_store.pop(k, None)

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that applies queued commands on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def _queue(*args):
            self._ops.append((name, args))
            return self
        return _queue

    def execute(self):
        for name, args in self._ops:
            getattr(self._redis, name)(*args)
        self._ops = []


@pytest.fixture
def fake_redis():
    """In-memory Redis fake with dict-backed storage."""
    return FakeRedis()


@pytest.fixture
def health_client(fake_redis):
    """Flask test client whose circuit breakers run against fake_redis."""
    from goalboard import create_app
    with patch('goalboard.extensions.redis_client', fake_redis):
        app = create_app()
    app.config['TESTING'] = True
    with app.test_client() as c:
        yield c
