"""Fixture model: curated request/response examples and their version links."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, DateTime, Text, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class FixtureStatus(str, enum.Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"


class FixtureSource(str, enum.Enum):
    CONSUMER = "consumer"
    PROVIDER = "provider"
    MANUAL = "manual"


class Fixture(Base):
    __tablename__ = "fixtures"
    __table_args__ = (UniqueConstraint("tenant_id", "hash", name="uq_fixtures_tenant_hash"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(String(255), nullable=False)
    spec_type: Mapped[str] = mapped_column(String(20), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)  # SHA-256 of operation + data
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FixtureStatus.DRAFT.value)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_from: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    approved_by: Mapped[str] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str] = mapped_column(String(255), nullable=True)
    rejected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class FixtureServiceVersion(Base):
    """Join row: a fixture has been observed against a service version."""

    __tablename__ = "fixture_service_versions"

    fixture_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fixtures.id", ondelete="CASCADE"), primary_key=True
    )
    service_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("service_versions.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
