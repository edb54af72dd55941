"""
ReportUpload — audit record of one ingestion batch.
"""
from sqlalchemy import Column, Text, Integer, DateTime, JSON
from sqlalchemy.sql import func

from goalboard.database import Base


class ReportUpload(Base):
    __tablename__ = 'report_uploads'

    id = Column(Text, primary_key=True)
    submitted_by = Column(Text, nullable=False)
    filename = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default='processing')
    rows_received = Column(Integer, default=0)
    rows_rejected = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    changed_count = Column(Integer, default=0)
    actions_submitted_count = Column(Integer, default=0)
    actions_failed_count = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'submitted_by': self.submitted_by,
            'filename': self.filename,
            'status': self.status,
            'rows_received': self.rows_received or 0,
            'rows_rejected': self.rows_rejected or 0,
            'processed_count': self.processed_count or 0,
            'changed_count': self.changed_count or 0,
            'actions_submitted_count': self.actions_submitted_count or 0,
            'actions_failed_count': self.actions_failed_count or 0,
            'error_count': len(self.errors or []),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
