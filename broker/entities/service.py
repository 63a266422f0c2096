"""Service and ServiceVersion models: tenant-scoped service identities."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from broker.database import Base


class SpecType(str, enum.Enum):
    OPENAPI = "openapi"
    GRAPHQL = "graphql"
    ASYNCAPI = "asyncapi"
    GRPC = "grpc"
    SOAP = "soap"


def _new_id() -> str:
    return str(uuid.uuid4())


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_services_tenant_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    spec_type: Mapped[str] = mapped_column(String(20), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    package_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    git_repository_url: Mapped[str] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<Service({self.tenant_id}/{self.name})>"


class ServiceVersion(Base):
    """An immutable snapshot of a service's spec and metadata at a version string."""

    __tablename__ = "service_versions"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "service_id", "version", name="uq_service_versions_tenant_service_version"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(36), ForeignKey("services.id"), nullable=False)
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    spec_type: Mapped[str] = mapped_column(String(20), nullable=True)
    spec: Mapped[dict] = mapped_column(JSON, nullable=True)  # filled once, may arrive later
    git_sha: Mapped[str] = mapped_column(String(40), nullable=True)
    package_json: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="auto-created")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

