"""
Audit trail of the writes this service performs on the FHIR servers.

FHIR resources themselves live on the servers; only who changed what is
kept locally.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, String, Uuid

from study_designer.models.database import Base


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="create | update | operation")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(128), nullable=False)
    detail = Column(JSON, comment="Context for the action")
    timestamp = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
