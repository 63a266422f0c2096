"""Deployment model: which service version is live in which environment."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Text, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class DeploymentStatus(str, enum.Enum):
    SUCCESSFUL = "successful"
    FAILED = "failed"


class Deployment(Base):
    __tablename__ = "deployments"
    __table_args__ = (
        # At most one active row per (tenant, service, environment)
        Index(
            "uq_deployments_one_active",
            "tenant_id",
            "service_id",
            "environment",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    service: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    service_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("service_versions.id"), nullable=True
    )
    git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    environment: Mapped[str] = mapped_column(String(100), nullable=False)
    deployed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    deployed_by: Mapped[str] = mapped_column(String(255), nullable=False, default="unknown")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeploymentStatus.SUCCESSFUL.value
    )
    failure_reason: Mapped[str] = mapped_column(Text, nullable=True)
