"""Service dependency model: a consumer version's use of a provider."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class DependencyStatus(str, enum.Enum):
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    FAILED = "failed"


class ServiceDependency(Base):
    """Tracks which consumer versions depend on which providers."""

    __tablename__ = "service_dependencies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    consumer_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    consumer_version: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    provider_version: Mapped[str] = mapped_column(String(100), nullable=False)
    environment: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DependencyStatus.PENDING_VERIFICATION.value
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    # One task can serve several dependencies of the same consumer version
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("verification_tasks.id"), nullable=True, index=True
    )

    def __repr__(self):
        return f"<ServiceDependency({self.consumer_id}@{self.consumer_version} -> {self.provider_id})>"
