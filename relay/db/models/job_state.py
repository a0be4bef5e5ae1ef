"""
Job State Model - one row per named singleton job.

Holds the job lease (locked_by / locked_at) and an opaque resumable state blob
with its SHA-256 checksum.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON

from relay.core.clock import utcnow
from relay.db.database import Base


class JobState(Base):
    __tablename__ = "job_states"

    id = Column(Integer, primary_key=True)
    job_name = Column(String(120), nullable=False, unique=True)
    state = Column(JSON, nullable=False, default=dict)
    checksum = Column(String(64), nullable=False)

    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(String(120), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
