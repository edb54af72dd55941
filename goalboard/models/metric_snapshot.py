"""
MetricSnapshot model — one representative's metrics as of one report upload.

Snapshots are append-only. Ingestion never edits an existing row; the cycle
backfill is the only writer that touches one, and only its cycle columns.
"""
from sqlalchemy import Column, Integer, Text, Float, Date, DateTime, Index
from sqlalchemy.sql import func

from goalboard.config import METRICS
from goalboard.database import Base


class MetricSnapshot(Base):
    __tablename__ = 'metric_snapshots'
    __table_args__ = (
        Index('ix_metric_snapshots_rep_recorded', 'representative_id', 'recorded_at'),
        Index('ix_metric_snapshots_rep_cycle', 'representative_id', 'cycle_number'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    representative_id = Column(Text, nullable=False)
    representative_name = Column(Text, nullable=False, default='')
    team = Column(Text, nullable=False)
    report_date = Column(Date, nullable=False)

    # Metrics: null when the team does not report them
    activity = Column(Float, nullable=True)
    revenue_per_asset = Column(Float, nullable=True)
    revenue = Column(Float, nullable=True)
    multibrand_per_asset = Column(Float, nullable=True)
    conversions = Column(Float, nullable=True)
    upa = Column(Float, nullable=True)

    # Cycle metadata: null until stamped at ingestion or backfilled
    cycle_number = Column(Integer, nullable=True)
    cycle_start_date = Column(Date, nullable=True)
    cycle_end_date = Column(Date, nullable=True)
    day_in_cycle = Column(Integer, nullable=True)
    total_cycle_days = Column(Integer, nullable=True)

    upload_id = Column(Text, nullable=True, index=True)
    submitted_by = Column(Text, nullable=True)

    # Ordering key for "latest". Set once on insert.
    recorded_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    def metric_values(self):
        """Return {metric: value} for every non-null metric column."""
        return {m: getattr(self, m) for m in METRICS if getattr(self, m) is not None}

    @property
    def has_cycle_info(self):
        return self.cycle_number is not None

    def to_dict(self):
        return {
            'id': self.id,
            'representative_id': self.representative_id,
            'representative_name': self.representative_name,
            'team': self.team,
            'report_date': self.report_date.isoformat() if self.report_date else None,
            'metrics': self.metric_values(),
            'cycle_number': self.cycle_number,
            'cycle_start_date': self.cycle_start_date.isoformat() if self.cycle_start_date else None,
            'cycle_end_date': self.cycle_end_date.isoformat() if self.cycle_end_date else None,
            'day_in_cycle': self.day_in_cycle,
            'total_cycle_days': self.total_cycle_days,
            'upload_id': self.upload_id,
            'submitted_by': self.submitted_by,
            'recorded_at': self.recorded_at.isoformat() if self.recorded_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
