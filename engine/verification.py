"""Verification tasks, result ingestion and dependency-status propagation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from broker.entities.service import Service
from broker.entities.service_dependency import DependencyStatus, ServiceDependency
from broker.entities.verification import VerificationResult, VerificationTask
from engine import notify
from engine.errors import InvalidIdentifier, NotFound, ValidationError
from engine.interactions import InteractionRecorder, interaction_payload
from engine.upsert import insert_or_ignore
from engine.versions import ServiceVersionResolver

logger = logging.getLogger(__name__)


def summarize(results: list[dict]) -> dict[str, int]:
    total = len(results)
    passed = sum(1 for r in results if r.get("success"))
    return {"total": total, "passed": passed, "failed": total - passed}


class VerificationCoordinator:
    def __init__(self, db: AsyncSession, tenant_id: str, events=None):
        self.db = db
        self.tenant_id = tenant_id
        self.events = events
        self.versions = ServiceVersionResolver(db, tenant_id)
        self.interactions = InteractionRecorder(db, tenant_id)

    # -- dependencies ----------------------------------------------------

    async def register_dependency(
        self,
        consumer: str,
        consumer_version: str,
        provider: str,
        provider_version: str,
        environment: str,
    ) -> tuple[ServiceDependency, VerificationTask]:
        """Record that consumer@version depends on provider@version and queue
        the verification task that will settle it."""
        await self.versions.ensure_version(consumer, consumer_version, commit=False)
        await self.versions.ensure_version(provider, provider_version, commit=False)
        consumer_service = await self.versions.require_service(consumer)
        provider_service = await self.versions.require_service(provider)

        result = await self.db.execute(
            select(ServiceDependency).where(
                ServiceDependency.tenant_id == self.tenant_id,
                ServiceDependency.consumer_id == consumer_service.id,
                ServiceDependency.consumer_version == consumer_version,
                ServiceDependency.provider_id == provider_service.id,
                ServiceDependency.provider_version == provider_version,
                ServiceDependency.environment == environment,
            )
        )
        dependency = result.scalar_one_or_none()
        if dependency is None:
            dependency = ServiceDependency(
                tenant_id=self.tenant_id,
                consumer_id=consumer_service.id,
                consumer_version=consumer_version,
                provider_id=provider_service.id,
                provider_version=provider_version,
                environment=environment,
                status=DependencyStatus.PENDING_VERIFICATION.value,
            )
            self.db.add(dependency)
            await self.db.flush()
            logger.info(
                "Registered dependency %s@%s -> %s@%s (%s)",
                consumer,
                consumer_version,
                provider,
                provider_version,
                environment,
            )

        task, _ = await self.create_task(
            consumer, consumer_version, provider, provider_version, environment
        )
        if dependency.task_id != task.id:
            dependency.task_id = task.id
            await self.db.commit()
        await self.db.refresh(dependency)
        return dependency, task

    async def list_dependencies(
        self,
        environment: Optional[str] = None,
        status: Optional[str] = None,
        consumer: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        consumer_svc = aliased(Service)
        provider_svc = aliased(Service)
        stmt = (
            select(ServiceDependency, consumer_svc.name, provider_svc.name)
            .join(consumer_svc, ServiceDependency.consumer_id == consumer_svc.id)
            .join(provider_svc, ServiceDependency.provider_id == provider_svc.id)
            .where(ServiceDependency.tenant_id == self.tenant_id)
        )
        if environment:
            stmt = stmt.where(ServiceDependency.environment == environment)
        if status:
            stmt = stmt.where(ServiceDependency.status == status)
        if consumer:
            stmt = stmt.where(consumer_svc.name == consumer)
        if provider:
            stmt = stmt.where(provider_svc.name == provider)
        result = await self.db.execute(stmt.order_by(ServiceDependency.registered_at.desc()))
        return [
            {
                "id": dep.id,
                "consumer": consumer_name,
                "consumer_version": dep.consumer_version,
                "provider": provider_name,
                "provider_version": dep.provider_version,
                "environment": dep.environment,
                "status": dep.status,
                "registered_at": dep.registered_at,
                "verified_at": dep.verified_at,
            }
            for dep, consumer_name, provider_name in result.all()
        ]

    # -- tasks -----------------------------------------------------------

    async def create_task(
        self,
        consumer: str,
        consumer_version: str,
        provider: str,
        provider_version: str,
        environment: str,
        provider_git_sha: Optional[str] = None,
        consumer_git_sha: Optional[str] = None,
    ) -> tuple[VerificationTask, bool]:
        """Create or refresh the task for consumer@version against provider.

        The task carries every interaction recorded from that consumer
        version to the provider, regardless of the environment it was
        recorded in.
        """
        consumer_service = await self.versions.require_service(consumer)
        provider_service = await self.versions.require_service(provider)

        recorded = await self.interactions.list_for_provider(
            provider, consumer=consumer, consumer_version=consumer_version
        )
        interactions = [interaction_payload(i) for i in recorded]

        task_id = await insert_or_ignore(
            self.db,
            VerificationTask,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": self.tenant_id,
                "provider_id": provider_service.id,
                "consumer_id": consumer_service.id,
                "provider": provider,
                "provider_version": provider_version,
                "provider_git_sha": provider_git_sha,
                "consumer": consumer,
                "consumer_version": consumer_version,
                "consumer_git_sha": consumer_git_sha,
                "environment": environment,
                "interactions": interactions,
                "created_at": datetime.now(timezone.utc),
            },
            conflict_columns=("tenant_id", "consumer_id", "consumer_version", "provider_id"),
        )
        created = task_id is not None

        result = await self.db.execute(
            select(VerificationTask).where(
                VerificationTask.tenant_id == self.tenant_id,
                VerificationTask.consumer_id == consumer_service.id,
                VerificationTask.consumer_version == consumer_version,
                VerificationTask.provider_id == provider_service.id,
            )
        )
        task = result.scalar_one()
        if not created:
            task.provider_version = provider_version
            task.environment = environment
            task.interactions = interactions
            task.provider_git_sha = provider_git_sha or task.provider_git_sha
            task.consumer_git_sha = consumer_git_sha or task.consumer_git_sha
        await self.db.commit()
        await self.db.refresh(task)

        if created:
            logger.info(
                "Created verification task %s: %s@%s -> %s (%d interactions)",
                task.id,
                consumer,
                consumer_version,
                provider,
                len(interactions),
            )
            await notify.emit(
                self.events,
                self.tenant_id,
                notify.VERIFICATION_CREATED,
                {
                    "task_id": task.id,
                    "provider": provider,
                    "consumer": consumer,
                    "consumer_version": consumer_version,
                    "environment": environment,
                },
            )
        return task, created

    async def get_task(self, task_id: str) -> VerificationTask:
        try:
            uuid.UUID(str(task_id))
        except ValueError:
            raise InvalidIdentifier("Invalid task ID format", task_id=task_id) from None

        result = await self.db.execute(
            select(VerificationTask).where(
                VerificationTask.tenant_id == self.tenant_id, VerificationTask.id == task_id
            )
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise NotFound("Verification task not found", task_id=task_id)
        return task

    async def list_pending_tasks(self, provider: Optional[str] = None) -> list[VerificationTask]:
        """Tasks that no result references yet."""
        stmt = (
            select(VerificationTask)
            .outerjoin(VerificationResult, VerificationResult.task_id == VerificationTask.id)
            .where(VerificationTask.tenant_id == self.tenant_id, VerificationResult.id.is_(None))
        )
        if provider:
            stmt = stmt.where(VerificationTask.provider == provider)
        result = await self.db.execute(stmt.order_by(VerificationTask.created_at))
        return list(result.scalars().all())

    async def list_tasks(
        self, provider: str, environment: Optional[str] = None
    ) -> list[VerificationTask]:
        stmt = select(VerificationTask).where(
            VerificationTask.tenant_id == self.tenant_id, VerificationTask.provider == provider
        )
        if environment:
            stmt = stmt.where(VerificationTask.environment == environment)
        result = await self.db.execute(stmt.order_by(VerificationTask.created_at.desc()))
        return list(result.scalars().all())

    # -- results ---------------------------------------------------------

    async def submit_result(
        self,
        provider: str,
        task_id: str,
        provider_version: str,
        results: list[dict],
        provider_git_sha: Optional[str] = None,
    ) -> dict[str, Any]:
        """Persist a verification result and settle every dependency the task serves.

        Returns ``{"status": "received", "summary": ..., "dependency_status_updated": bool}``.
        """
        if not isinstance(results, list) or not all(isinstance(r, dict) for r in results):
            raise ValidationError("results must be a list of objects")
        if not provider_version:
            raise ValidationError("Missing required field: provider_version")

        task = await self.get_task(task_id)
        provider_service = await self.versions.get_service(provider)
        if provider_service is None:
            raise NotFound(f"Provider service '{provider}' not found", provider=provider)
        if task.provider_id != provider_service.id:
            raise NotFound(
                f"Verification task not found for provider '{provider}'", task_id=task.id
            )
        consumer_service = await self.versions.get_service(task.consumer)
        if consumer_service is None:
            raise NotFound(f"Consumer service '{task.consumer}' not found", consumer=task.consumer)

        record = VerificationResult(
            tenant_id=self.tenant_id,
            task_id=task.id,
            provider_id=provider_service.id,
            consumer_id=consumer_service.id,
            provider=provider,
            provider_version=provider_version,
            provider_git_sha=provider_git_sha,
            consumer=task.consumer,
            consumer_version=task.consumer_version,
            results=results,
            submitted_at=datetime.now(timezone.utc),
        )
        self.db.add(record)
        await self.db.flush()

        summary = summarize(results)
        dependency_status_updated = await self._settle_dependencies(task.id)

        await self.db.commit()
        logger.info(
            "Verification received for %s@%s task %s: %d/%d passed",
            provider,
            provider_version,
            task.id,
            summary["passed"],
            summary["total"],
        )
        await notify.emit(
            self.events,
            self.tenant_id,
            notify.VERIFICATION_COMPLETED,
            {
                "result_id": record.id,
                "task_id": task.id,
                "provider": provider,
                "provider_version": provider_version,
                "consumer": task.consumer,
                "consumer_version": task.consumer_version,
                "summary": summary,
            },
        )
        return {
            "status": "received",
            "result_id": record.id,
            "summary": summary,
            "dependency_status_updated": dependency_status_updated,
        }

    async def _settle_dependencies(self, task_id: str) -> bool:
        """Derive the status of every dependency served by the task from its newest result."""
        result = await self.db.execute(
            select(ServiceDependency).where(
                ServiceDependency.tenant_id == self.tenant_id,
                ServiceDependency.task_id == task_id,
            )
        )
        dependencies = list(result.scalars().all())
        if not dependencies:
            return False

        result = await self.db.execute(
            select(VerificationResult)
            .where(
                VerificationResult.tenant_id == self.tenant_id,
                VerificationResult.task_id == task_id,
            )
            .order_by(VerificationResult.submitted_at.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
        if latest is None:
            return False

        summary = summarize(latest.results)
        verified = summary["passed"] == summary["total"]
        for dependency in dependencies:
            if verified:
                dependency.status = DependencyStatus.VERIFIED.value
                dependency.verified_at = latest.submitted_at
            else:
                dependency.status = DependencyStatus.FAILED.value
            logger.info("Dependency %s is now %s", dependency.id, dependency.status)
        return True

    async def history(self, provider: str, limit: int = 50) -> list[dict[str, Any]]:
        result = await self.db.execute(
            select(VerificationResult)
            .where(
                VerificationResult.tenant_id == self.tenant_id,
                VerificationResult.provider == provider,
            )
            .order_by(VerificationResult.submitted_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": r.id,
                "provider": r.provider,
                "provider_version": r.provider_version,
                "consumer": r.consumer,
                "consumer_version": r.consumer_version,
                "task_id": r.task_id,
                "submitted_at": r.submitted_at,
                "summary": summarize(r.results),
            }
            for r in result.scalars().all()
        ]

    async def stats(self, provider: str, days: int = 30) -> dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        result = await self.db.execute(
            select(VerificationResult)
            .where(
                VerificationResult.tenant_id == self.tenant_id,
                VerificationResult.provider == provider,
                VerificationResult.submitted_at >= since,
            )
            .order_by(VerificationResult.submitted_at.desc())
        )
        recent = list(result.scalars().all())

        total_tests = 0
        total_passed = 0
        daily: dict[str, list[int]] = {}
        for r in recent:
            summary = summarize(r.results)
            total_tests += summary["total"]
            total_passed += summary["passed"]
            day = daily.setdefault(str(r.submitted_at.date()), [0, 0])
            day[0] += summary["passed"]
            day[1] += summary["total"]
        # Last seven days with results, oldest first
        trends = [
            {"date": date, "pass_rate": passed / total if total else 0.0}
            for date, (passed, total) in sorted(daily.items())[-7:]
        ]

        consumers = await self.db.execute(
            select(VerificationTask.consumer)
            .where(
                VerificationTask.tenant_id == self.tenant_id,
                VerificationTask.provider == provider,
            )
            .distinct()
        )
        return {
            "total_verifications": len(recent),
            "average_pass_rate": total_passed / total_tests if total_tests else 0.0,
            "total_interactions_tested": total_tests,
            "unique_consumers": len(consumers.all()),
            "recent_trends": trends,
        }
