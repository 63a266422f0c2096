"""Deployment records and the one-active-version-per-environment rule."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from broker.entities.deployment import Deployment, DeploymentStatus
from broker.entities.interaction import Interaction
from broker.entities.service import Service
from broker.entities.service_dependency import ServiceDependency
from broker.entities.verification import VerificationResult, VerificationTask
from engine import notify
from engine.errors import DuplicateSuppressed, NotFound, StateConflict, ValidationError
from engine.semver_match import compatibility_level
from engine.verification import summarize
from engine.versions import ServiceVersionResolver

logger = logging.getLogger(__name__)

COMPATIBILITY_LEVELS = ("none", "patch", "minor")


@dataclass
class DependencyCheck:
    service: str
    version: str
    verified: bool
    actively_deployed: bool
    semver_compatible: Optional[str] = None
    nearest_verified_version: Optional[str] = None
    interaction_count: int = 0


@dataclass
class DeployabilityReport:
    can_deploy: bool
    message: str
    providers: list[DependencyCheck] = field(default_factory=list)
    consumers: list[DependencyCheck] = field(default_factory=list)
    issues: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _passed(result: VerificationResult) -> bool:
    summary = summarize(result.results)
    return summary["passed"] == summary["total"]


class DeploymentTracker:
    def __init__(self, db: AsyncSession, tenant_id: str, events=None, retry_attempts: int = 3):
        self.db = db
        self.tenant_id = tenant_id
        self.events = events
        self.retry_attempts = max(1, retry_attempts)
        self.versions = ServiceVersionResolver(db, tenant_id)

    async def _locked_service(self, name: str) -> Service:
        result = await self.db.execute(
            select(Service)
            .where(Service.tenant_id == self.tenant_id, Service.name == name)
            .with_for_update()
        )
        service = result.scalar_one_or_none()
        if service is None:
            raise NotFound(
                f"Service '{name}' not found. Register the service first.", service=name
            )
        return service

    async def _activate(
        self,
        service_name: str,
        version: str,
        environment: str,
        git_sha: Optional[str],
        deployed_by: Optional[str],
    ) -> Deployment:
        service = await self._locked_service(service_name)
        service_version = await self.versions.find_version(service_name, version)
        if service_version is None:
            raise NotFound(
                f"Service version not found: {service_name}@{version}. Register this version "
                "first through spec upload, service registration or interaction recording.",
                service=service_name,
                version=version,
            )

        await self.db.execute(
            update(Deployment)
            .where(
                Deployment.tenant_id == self.tenant_id,
                Deployment.service_id == service.id,
                Deployment.environment == environment,
                Deployment.active.is_(True),
            )
            .values(active=False)
        )
        deployment = Deployment(
            tenant_id=self.tenant_id,
            service_id=service.id,
            service=service_name,
            version=version,
            service_version_id=service_version.id,
            git_sha=git_sha or service_version.git_sha,
            environment=environment,
            deployed_at=datetime.now(timezone.utc),
            deployed_by=deployed_by or "unknown",
            active=True,
            status=DeploymentStatus.SUCCESSFUL.value,
        )
        self.db.add(deployment)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicateSuppressed(
                f"Concurrent activation of {service_name} in {environment}"
            ) from exc
        await self.db.refresh(deployment)
        return deployment

    async def deploy(
        self,
        service: str,
        version: str,
        environment: str,
        git_sha: Optional[str] = None,
        deployed_by: Optional[str] = None,
    ) -> Deployment:
        """Make ``service@version`` the active deployment in ``environment``.

        Deactivating the previous row and inserting the new one commit
        together; a concurrent activation that trips the one-active index is
        retried against the fresh state.
        """
        if not service or not version or not environment:
            raise ValidationError("Missing required fields: service, version, environment")

        for attempt in range(1, self.retry_attempts + 1):
            try:
                deployment = await self._activate(
                    service, version, environment, git_sha, deployed_by
                )
                break
            except DuplicateSuppressed:
                logger.warning(
                    "Deploy of %s@%s to %s lost an activation race (attempt %d/%d)",
                    service,
                    version,
                    environment,
                    attempt,
                    self.retry_attempts,
                )
        else:
            raise StateConflict(
                f"Could not activate {service}@{version} in {environment}: concurrent deployments",
                service=service,
                environment=environment,
            )

        logger.info("Deployed %s@%s to %s", service, version, environment)
        await notify.emit(
            self.events,
            self.tenant_id,
            notify.DEPLOYMENT_CREATED,
            {
                "id": deployment.id,
                "service": service,
                "version": version,
                "environment": environment,
                "status": deployment.status,
                "deployed_by": deployment.deployed_by,
                "git_sha": deployment.git_sha,
            },
        )
        return deployment

    async def record_failure(
        self,
        service: str,
        version: str,
        environment: str,
        reason: Optional[str] = None,
        git_sha: Optional[str] = None,
        deployed_by: Optional[str] = None,
    ) -> Deployment:
        """Record a failed rollout. The active deployment is left untouched."""
        if not service or not version or not environment:
            raise ValidationError("Missing required fields: service, version, environment")
        service_row = await self.versions.require_service(service)
        service_version = await self.versions.find_version(service, version)

        deployment = Deployment(
            tenant_id=self.tenant_id,
            service_id=service_row.id,
            service=service,
            version=version,
            service_version_id=service_version.id if service_version else None,
            git_sha=git_sha,
            environment=environment,
            deployed_at=datetime.now(timezone.utc),
            deployed_by=deployed_by or "unknown",
            active=False,
            status=DeploymentStatus.FAILED.value,
            failure_reason=reason,
        )
        self.db.add(deployment)
        await self.db.commit()
        await self.db.refresh(deployment)
        logger.info("Recorded failed deployment of %s@%s to %s", service, version, environment)
        await notify.emit(
            self.events,
            self.tenant_id,
            notify.DEPLOYMENT_CREATED,
            {
                "id": deployment.id,
                "service": service,
                "version": version,
                "environment": environment,
                "status": deployment.status,
                "failure_reason": reason,
            },
        )
        return deployment

    async def list_active(
        self, environment: Optional[str] = None, include_inactive: bool = False
    ) -> list[Deployment]:
        stmt = select(Deployment).where(Deployment.tenant_id == self.tenant_id)
        if environment:
            stmt = stmt.where(Deployment.environment == environment)
        if not include_inactive:
            stmt = stmt.where(
                Deployment.active.is_(True),
                Deployment.status == DeploymentStatus.SUCCESSFUL.value,
            )
        result = await self.db.execute(stmt.order_by(Deployment.deployed_at.desc()))
        return list(result.scalars().all())

    async def history(
        self, service: str, environment: Optional[str] = None, limit: int = 50
    ) -> list[Deployment]:
        stmt = select(Deployment).where(
            Deployment.tenant_id == self.tenant_id, Deployment.service == service
        )
        if environment:
            stmt = stmt.where(Deployment.environment == environment)
        result = await self.db.execute(stmt.order_by(Deployment.deployed_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def _active_version(self, service: str, environment: str) -> Optional[str]:
        result = await self.db.execute(
            select(Deployment.version).where(
                Deployment.tenant_id == self.tenant_id,
                Deployment.service == service,
                Deployment.environment == environment,
                Deployment.active.is_(True),
                Deployment.status == DeploymentStatus.SUCCESSFUL.value,
            )
        )
        return result.scalars().first()

    async def _verifications(
        self, provider: str, consumer: str, consumer_version: str
    ) -> list[VerificationResult]:
        result = await self.db.execute(
            select(VerificationResult)
            .join(VerificationTask, VerificationResult.task_id == VerificationTask.id)
            .where(
                VerificationResult.tenant_id == self.tenant_id,
                VerificationResult.provider == provider,
                VerificationTask.consumer == consumer,
                VerificationTask.consumer_version == consumer_version,
            )
            .order_by(VerificationResult.submitted_at.desc())
        )
        return list(result.scalars().all())

    async def _interaction_count(self, provider: str, consumer: str, consumer_version: str) -> int:
        result = await self.db.execute(
            select(func.count(Interaction.id)).where(
                Interaction.tenant_id == self.tenant_id,
                Interaction.service == provider,
                Interaction.consumer == consumer,
                Interaction.consumer_version == consumer_version,
            )
        )
        return result.scalar() or 0

    @staticmethod
    def _evaluate(
        verifications: list[VerificationResult], provider_version: str, allowed: str
    ) -> tuple[bool, Optional[str], Optional[str]]:
        """Return (verified, semver_compatible, nearest_verified_version)."""
        passing = [v for v in verifications if _passed(v)]
        if any(v.provider_version == provider_version for v in passing):
            return True, "none", None

        allowed_rank = COMPATIBILITY_LEVELS.index(allowed)
        for verification in passing:
            level = compatibility_level(provider_version, verification.provider_version)
            if level is not None and COMPATIBILITY_LEVELS.index(level) <= allowed_rank:
                return True, level, verification.provider_version

        nearest = passing[0].provider_version if passing else None
        return False, None, nearest

    async def can_i_deploy(
        self,
        service: str,
        version: str,
        environment: str,
        semver_compatibility: str = "none",
    ) -> DeployabilityReport:
        """Check ``service@version`` against what is live in ``environment``.

        As a consumer, every provider it depends on must be deployed there
        with a passing verification for that provider version. As a provider,
        every deployed consumer depending on it must have verified against
        ``version``. ``semver_compatibility`` widens "that version" to patch
        or minor drift.
        """
        if not service or not version or not environment:
            raise ValidationError("Missing required parameters: service, version, environment")
        if semver_compatibility not in COMPATIBILITY_LEVELS:
            raise ValidationError(
                "Invalid semver_compatibility value. Must be none, patch, or minor",
                allowed=list(COMPATIBILITY_LEVELS),
            )

        service_row = await self.versions.get_service(service)
        if service_row is None:
            return DeployabilityReport(
                can_deploy=False,
                message=f"Service {service} not found",
                issues=[
                    {
                        "type": "not_deployed",
                        "service": service,
                        "version": version,
                        "reason": f"Service {service} not found",
                    }
                ],
            )

        report = DeployabilityReport(can_deploy=True, message="")
        provider_svc = aliased(Service)
        consumer_svc = aliased(Service)

        # This version as a consumer: its providers must be live and verified
        result = await self.db.execute(
            select(provider_svc.name)
            .select_from(ServiceDependency)
            .join(provider_svc, ServiceDependency.provider_id == provider_svc.id)
            .where(
                ServiceDependency.tenant_id == self.tenant_id,
                ServiceDependency.consumer_id == service_row.id,
                ServiceDependency.consumer_version == version,
            )
            .distinct()
        )
        for provider_name in result.scalars().all():
            deployed = await self._active_version(provider_name, environment)
            if deployed is None:
                report.issues.append(
                    {
                        "type": "not_deployed",
                        "service": provider_name,
                        "version": "any",
                        "reason": f"Required provider is not deployed in {environment}",
                    }
                )
                report.providers.append(
                    DependencyCheck(provider_name, "unknown", verified=False, actively_deployed=False)
                )
                continue

            verifications = await self._verifications(provider_name, service, version)
            verified, compatible, nearest = self._evaluate(
                verifications, deployed, semver_compatibility
            )
            if not verified:
                report.issues.append(self._verification_issue(provider_name, deployed, nearest))
            report.providers.append(
                DependencyCheck(
                    provider_name,
                    deployed,
                    verified=verified,
                    actively_deployed=True,
                    semver_compatible=compatible,
                    nearest_verified_version=nearest,
                    interaction_count=await self._interaction_count(provider_name, service, version),
                )
            )

        # This version as a provider: deployed consumers must have verified it
        result = await self.db.execute(
            select(consumer_svc.name, ServiceDependency.consumer_version)
            .select_from(ServiceDependency)
            .join(consumer_svc, ServiceDependency.consumer_id == consumer_svc.id)
            .join(
                Deployment,
                (Deployment.service_id == ServiceDependency.consumer_id)
                & (Deployment.version == ServiceDependency.consumer_version),
            )
            .where(
                ServiceDependency.tenant_id == self.tenant_id,
                ServiceDependency.provider_id == service_row.id,
                Deployment.tenant_id == self.tenant_id,
                Deployment.environment == environment,
                Deployment.active.is_(True),
            )
            .distinct()
        )
        for consumer_name, consumer_version in result.all():
            verifications = await self._verifications(service, consumer_name, consumer_version)
            verified, compatible, nearest = self._evaluate(
                verifications, version, semver_compatibility
            )
            if not verified:
                report.issues.append(
                    {
                        "type": "verification_failed",
                        "service": consumer_name,
                        "version": consumer_version,
                        "reason": f"{service}@{version} has not been verified against "
                        f"{consumer_name}@{consumer_version}",
                    }
                )
            report.consumers.append(
                DependencyCheck(
                    consumer_name,
                    consumer_version,
                    verified=verified,
                    actively_deployed=True,
                    semver_compatible=compatible,
                    nearest_verified_version=nearest,
                    interaction_count=await self._interaction_count(
                        service, consumer_name, consumer_version
                    ),
                )
            )

        report.can_deploy = not report.issues
        if not report.providers and not report.consumers:
            report.message = (
                f"{service}@{version} has no dependencies or dependents and is safe to deploy"
            )
        elif report.can_deploy:
            report.message = f"{service}@{version} can be deployed to {environment}"
        else:
            report.message = (
                f"{service}@{version} cannot be deployed to {environment}: "
                f"{len(report.issues)} issue(s)"
            )
        return report

    @staticmethod
    def _verification_issue(provider: str, deployed: str, nearest: Optional[str]) -> dict:
        issue = {
            "type": "verification_failed",
            "service": provider,
            "version": deployed,
            "reason": "Verification pending or failed" if nearest else "No verified versions found",
        }
        if nearest:
            suggestion = compatibility_level(deployed, nearest)
            if suggestion in ("patch", "minor"):
                issue["suggestion"] = (
                    f"Use semver_compatibility={suggestion} to allow version {nearest}"
                )
        return issue
