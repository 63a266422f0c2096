"""Interaction model: a recorded consumer -> provider call."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, DateTime, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class Interaction(Base):
    __tablename__ = "interactions"
    __table_args__ = (UniqueConstraint("tenant_id", "hash", name="uq_interactions_tenant_hash"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=True)
    consumer_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=True)
    service: Mapped[str] = mapped_column(String(255), nullable=False)
    consumer: Mapped[str] = mapped_column(String(255), nullable=False)
    consumer_version: Mapped[str] = mapped_column(String(100), nullable=False)
    consumer_git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    environment: Mapped[str] = mapped_column(String(100), nullable=False)
    operation: Mapped[str] = mapped_column(String(255), nullable=False)
    request: Mapped[dict] = mapped_column(JSON, nullable=False)
    response: Mapped[dict] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    client_info: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    contract_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contracts.id"), nullable=True, index=True
    )
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
