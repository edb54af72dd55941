"""
Postgres-backed migration run record — the retained final report of a
cycle backfill job. Mirrors the Redis MigrationJob.
"""
from sqlalchemy import Column, Text, Integer, Float, DateTime, JSON
from sqlalchemy.sql import func

from goalboard.database import Base


class DbMigrationRun(Base):
    __tablename__ = 'migration_runs'

    id = Column(Text, primary_key=True)
    status = Column(Text, nullable=False, default='not_started')
    requested_by = Column(Text, nullable=True)
    total_records = Column(Integer, default=0)
    records_migrated = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    duration_seconds = Column(Float, nullable=True)
    records_per_second = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)
