"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(sa.inspect(bind).get_table_names())

    if "services" in existing_tables:
        return

    op.create_table(
        "services",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("spec_type", sa.String(20), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("package_json", sa.JSON, nullable=False),
        sa.Column("git_repository_url", sa.String(500), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_services_tenant_name"),
    )

    op.create_table(
        "service_versions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("version", sa.String(100), nullable=False),
        sa.Column("spec_type", sa.String(20), nullable=True),
        sa.Column("spec", sa.JSON, nullable=True),
        sa.Column("git_sha", sa.String(40), nullable=True),
        sa.Column("package_json", sa.JSON, nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "tenant_id", "service_id", "version", name="uq_service_versions_tenant_service_version"
        ),
    )

    op.create_table(
        "fixtures",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("service", sa.String(255), nullable=False),
        sa.Column("operation", sa.String(255), nullable=False),
        sa.Column("spec_type", sa.String(20), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("created_from", sa.JSON, nullable=False),
        sa.Column("approved_by", sa.String(255), nullable=True),
        _timestamp("approved_at"),
        sa.Column("rejected_by", sa.String(255), nullable=True),
        _timestamp("rejected_at"),
        sa.Column("notes", sa.Text, nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("tenant_id", "hash", name="uq_fixtures_tenant_hash"),
    )

    op.create_table(
        "fixture_service_versions",
        sa.Column(
            "fixture_id",
            sa.String(36),
            sa.ForeignKey("fixtures.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "service_version_id",
            sa.String(36),
            sa.ForeignKey("service_versions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "deployments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("service", sa.String(255), nullable=False),
        sa.Column("version", sa.String(100), nullable=False),
        sa.Column(
            "service_version_id", sa.String(36), sa.ForeignKey("service_versions.id"), nullable=True
        ),
        sa.Column("git_sha", sa.String(40), nullable=True),
        sa.Column("environment", sa.String(100), nullable=False),
        _timestamp("deployed_at"),
        sa.Column("deployed_by", sa.String(255), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("failure_reason", sa.Text, nullable=True),
    )
    op.create_index(
        "uq_deployments_one_active",
        "deployments",
        ["tenant_id", "service_id", "environment"],
        unique=True,
        postgresql_where=sa.text("active"),
        sqlite_where=sa.text("active = 1"),
    )

    op.create_table(
        "contracts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("consumer_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("consumer", sa.String(255), nullable=False),
        sa.Column("consumer_version", sa.String(100), nullable=False),
        sa.Column("consumer_git_sha", sa.String(40), nullable=True),
        sa.Column("provider_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("provider", sa.String(255), nullable=False),
        sa.Column("provider_version", sa.String(100), nullable=False),
        sa.Column("environment", sa.String(100), nullable=False),
        sa.Column("spec_type", sa.String(20), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        _timestamp("first_seen"),
        _timestamp("last_seen"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "tenant_id",
            "consumer_id",
            "consumer_version",
            "provider_id",
            "provider_version",
            name="uq_contracts_tenant_pair",
        ),
    )

    op.create_table(
        "interactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("provider_id", sa.String(36), sa.ForeignKey("services.id"), nullable=True),
        sa.Column("consumer_id", sa.String(36), sa.ForeignKey("services.id"), nullable=True),
        sa.Column("service", sa.String(255), nullable=False),
        sa.Column("consumer", sa.String(255), nullable=False),
        sa.Column("consumer_version", sa.String(100), nullable=False),
        sa.Column("consumer_git_sha", sa.String(40), nullable=True),
        sa.Column("environment", sa.String(100), nullable=False),
        sa.Column("operation", sa.String(255), nullable=False),
        sa.Column("request", sa.JSON, nullable=False),
        sa.Column("response", sa.JSON, nullable=False),
        _timestamp("timestamp"),
        sa.Column("duration", sa.Integer, nullable=False),
        sa.Column("client_info", sa.JSON, nullable=False),
        sa.Column("contract_id", sa.String(36), sa.ForeignKey("contracts.id"), nullable=True, index=True),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.UniqueConstraint("tenant_id", "hash", name="uq_interactions_tenant_hash"),
    )

    op.create_table(
        "verification_tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("provider_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("consumer_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("provider", sa.String(255), nullable=False),
        sa.Column("provider_version", sa.String(100), nullable=False),
        sa.Column("provider_git_sha", sa.String(40), nullable=True),
        sa.Column("consumer", sa.String(255), nullable=False),
        sa.Column("consumer_version", sa.String(100), nullable=False),
        sa.Column("consumer_git_sha", sa.String(40), nullable=True),
        sa.Column("environment", sa.String(100), nullable=False),
        sa.Column("interactions", sa.JSON, nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "tenant_id",
            "consumer_id",
            "consumer_version",
            "provider_id",
            name="uq_verification_tasks_consumer_provider",
        ),
    )

    op.create_table(
        "service_dependencies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("consumer_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("consumer_version", sa.String(100), nullable=False),
        sa.Column("provider_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("provider_version", sa.String(100), nullable=False),
        sa.Column("environment", sa.String(100), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        _timestamp("registered_at"),
        _timestamp("verified_at"),
        sa.Column(
            "task_id",
            sa.String(36),
            sa.ForeignKey("verification_tasks.id"),
            nullable=True,
            index=True,
        ),
    )

    op.create_table(
        "verification_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column(
            "task_id",
            sa.String(36),
            sa.ForeignKey("verification_tasks.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("provider_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("consumer_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("provider", sa.String(255), nullable=False),
        sa.Column("provider_version", sa.String(100), nullable=False),
        sa.Column("provider_git_sha", sa.String(40), nullable=True),
        sa.Column("consumer", sa.String(255), nullable=True),
        sa.Column("consumer_version", sa.String(100), nullable=True),
        sa.Column("results", sa.JSON, nullable=False),
        _timestamp("submitted_at"),
    )


def downgrade() -> None:
    op.drop_table("verification_results")
    op.drop_table("service_dependencies")
    op.drop_table("verification_tasks")
    op.drop_table("interactions")
    op.drop_table("contracts")
    op.drop_index("uq_deployments_one_active", table_name="deployments")
    op.drop_table("deployments")
    op.drop_table("fixture_service_versions")
    op.drop_table("fixtures")
    op.drop_table("service_versions")
    op.drop_table("services")
