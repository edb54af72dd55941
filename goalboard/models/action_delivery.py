"""
ActionDelivery — one action log submission per changed metric per upload.

(upload_id, snapshot_id, metric) is unique, so a change can be claimed for
delivery at most once within an ingestion run.
"""
from sqlalchemy import Column, Integer, Text, Float, DateTime, UniqueConstraint
from sqlalchemy.sql import func

from goalboard.database import Base


class ActionDelivery(Base):
    __tablename__ = 'action_deliveries'
    __table_args__ = (
        UniqueConstraint('upload_id', 'snapshot_id', 'metric', name='uq_action_delivery_change'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(Text, nullable=False, index=True)
    snapshot_id = Column(Integer, nullable=False)
    representative_id = Column(Text, nullable=False)
    metric = Column(Text, nullable=False)
    action_id = Column(Text, nullable=False)
    previous_value = Column(Float, nullable=True)
    new_value = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    status = Column(Text, nullable=False, default='pending')
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    delivered_at = Column(DateTime(timezone=True), nullable=True)
