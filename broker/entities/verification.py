"""VerificationTask and VerificationResult models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class VerificationTask(Base):
    """Recorded consumer interactions a provider version must replay."""

    __tablename__ = "verification_tasks"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "consumer_id",
            "consumer_version",
            "provider_id",
            name="uq_verification_tasks_consumer_provider",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_version: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    consumer: Mapped[str] = mapped_column(String(255), nullable=False)
    consumer_version: Mapped[str] = mapped_column(String(100), nullable=False)
    consumer_git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    environment: Mapped[str] = mapped_column(String(100), nullable=False)
    interactions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class VerificationResult(Base):
    """Append-only outcome of replaying one task."""

    __tablename__ = "verification_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("verification_tasks.id"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_version: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    consumer: Mapped[str] = mapped_column(String(255), nullable=True)
    consumer_version: Mapped[str] = mapped_column(String(100), nullable=True)
    results: Mapped[list] = mapped_column(JSON, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
