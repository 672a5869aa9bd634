"""Stage trail for a single gift card pipeline execution."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from salon_referrals.db.base import Base


class GiftCardRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class GiftCardRun(Base):
    __tablename__ = "giftcard_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    correlation_id = Column(String, nullable=False, unique=True)
    trigger_type = Column(String, nullable=False)
    square_event_id = Column(String, nullable=True, index=True)
    square_event_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    stage = Column(String, nullable=True)
    status = Column(
        SqlEnum(
            GiftCardRunStatus,
            name="giftcard_run_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=GiftCardRunStatus.PENDING,
        server_default=GiftCardRunStatus.PENDING.value,
    )
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    context = Column(JSON, nullable=True)
    resumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
