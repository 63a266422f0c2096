"""Contract model: one consumer version's observed use of one provider version."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class ContractStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DEPRECATED = "deprecated"


class Contract(Base):
    __tablename__ = "contracts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "consumer_id",
            "consumer_version",
            "provider_id",
            "provider_version",
            name="uq_contracts_tenant_pair",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    consumer_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    consumer: Mapped[str] = mapped_column(String(255), nullable=False)
    consumer_version: Mapped[str] = mapped_column(String(100), nullable=False)
    consumer_git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    provider_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_version: Mapped[str] = mapped_column(String(100), nullable=False)
    environment: Mapped[str] = mapped_column(String(100), nullable=False)
    spec_type: Mapped[str] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ContractStatus.ACTIVE.value)
    first_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<Contract({self.consumer}@{self.consumer_version} -> {self.provider}@{self.provider_version})>"
