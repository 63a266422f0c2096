"""Service and service-version identity resolution.

Every producer of a version (spec upload, interaction recording, service
registration, fixture proposal) calls ``ensure_version`` independently, so it
must be idempotent and safe against concurrent first-creation.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.entities.service import Service, ServiceVersion
from engine import notify
from engine.errors import NotFound, ValidationError
from engine.semver_match import resolve_version
from engine.specs import detect_spec_type, load_spec_document
from engine.upsert import insert_or_ignore

logger = logging.getLogger(__name__)


class ServiceVersionResolver:
    def __init__(self, db: AsyncSession, tenant_id: str, events=None):
        self.db = db
        self.tenant_id = tenant_id
        self.events = events

    async def get_service(self, name: str) -> Optional[Service]:
        result = await self.db.execute(
            select(Service).where(Service.tenant_id == self.tenant_id, Service.name == name)
        )
        return result.scalar_one_or_none()

    async def require_service(self, name: str) -> Service:
        service = await self.get_service(name)
        if service is None:
            raise NotFound(f"Service '{name}' not found. Register it first.", service=name)
        return service

    async def list_services(self) -> list[Service]:
        result = await self.db.execute(
            select(Service).where(Service.tenant_id == self.tenant_id).order_by(Service.name)
        )
        return list(result.scalars().all())

    async def ensure_service(
        self, name: str, package_json: Optional[dict] = None
    ) -> tuple[Service, bool]:
        service = await self.get_service(name)
        if service is not None:
            return service, False

        inserted = await insert_or_ignore(
            self.db,
            Service,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": self.tenant_id,
                "name": name,
                "description": f"Auto-created service for {name}",
                "package_json": package_json or {},
            },
            conflict_columns=("tenant_id", "name"),
        )
        service = await self.get_service(name)
        if inserted:
            logger.info("Auto-created service %s for tenant %s", name, self.tenant_id)
        return service, inserted is not None

    async def register_service(
        self,
        name: str,
        spec_type: Optional[str] = None,
        description: Optional[str] = None,
        git_repository_url: Optional[str] = None,
        package_json: Optional[dict] = None,
    ) -> tuple[Service, bool]:
        """Create the service or refresh its metadata. Returns (service, created)."""
        service, created = await self.ensure_service(name, package_json)
        if spec_type:
            service.spec_type = spec_type
        if description:
            service.description = description
        if git_repository_url:
            service.git_repository_url = git_repository_url
        if package_json:
            service.package_json = package_json
        await self.db.commit()
        await self.db.refresh(service)
        return service, created

    async def find_version(self, service_name: str, version: str) -> Optional[ServiceVersion]:
        result = await self.db.execute(
            select(ServiceVersion)
            .join(Service, ServiceVersion.service_id == Service.id)
            .where(
                Service.tenant_id == self.tenant_id,
                Service.name == service_name,
                ServiceVersion.tenant_id == self.tenant_id,
                ServiceVersion.version == version,
            )
        )
        return result.scalar_one_or_none()

    async def list_versions(self, service_name: str) -> list[ServiceVersion]:
        """All versions of a service, newest first."""
        result = await self.db.execute(
            select(ServiceVersion)
            .join(Service, ServiceVersion.service_id == Service.id)
            .where(
                Service.tenant_id == self.tenant_id,
                Service.name == service_name,
                ServiceVersion.tenant_id == self.tenant_id,
            )
            .order_by(ServiceVersion.created_at.desc())
        )
        return list(result.scalars().all())

    async def ensure_version(
        self,
        service_name: str,
        version: str,
        spec: Optional[dict] = None,
        spec_type: Optional[str] = None,
        git_sha: Optional[str] = None,
        package_json: Optional[dict] = None,
        created_by: Optional[str] = None,
        replace_spec: bool = False,
        commit: bool = True,
    ) -> str:
        """Return the id of ``service_name@version``, creating both if needed.

        The spec is fill-once: an existing version only takes a new spec when
        it had none, or when ``replace_spec`` is set.
        """
        service, _ = await self.ensure_service(service_name, package_json)
        if spec_type and not service.spec_type:
            service.spec_type = spec_type

        existing = await self.find_version(service_name, version)
        if existing is None:
            await insert_or_ignore(
                self.db,
                ServiceVersion,
                {
                    "id": str(uuid.uuid4()),
                    "tenant_id": self.tenant_id,
                    "service_id": service.id,
                    "version": version,
                    "spec": spec,
                    "spec_type": spec_type,
                    "git_sha": git_sha,
                    "package_json": package_json,
                    "created_by": created_by or "auto-created",
                },
                conflict_columns=("tenant_id", "service_id", "version"),
            )
            existing = await self.find_version(service_name, version)
            logger.info("Ensured version %s@%s", service_name, version)
        elif spec and (not existing.spec or replace_spec):
            existing.spec = spec
            existing.spec_type = spec_type or existing.spec_type
            existing.git_sha = git_sha or existing.git_sha
            existing.package_json = package_json or existing.package_json
            logger.info("Attached spec to %s@%s", service_name, version)

        if commit:
            await self.db.commit()
        return existing.id

    async def upload_spec(
        self,
        service_name: str,
        version: str,
        raw_spec,
        spec_type: Optional[str] = None,
        git_sha: Optional[str] = None,
        package_json: Optional[dict] = None,
        uploaded_by: Optional[str] = None,
        replace: bool = False,
    ) -> ServiceVersion:
        """Parse and attach a spec document to ``service_name@version``."""
        if not service_name or not version:
            raise ValidationError("Missing required fields: service and version")
        spec = load_spec_document(raw_spec)
        spec_type = spec_type or detect_spec_type(spec)
        if not spec_type:
            raise ValidationError("Could not detect spec type; pass spec_type explicitly")

        version_id = await self.ensure_version(
            service_name,
            version,
            spec=spec,
            spec_type=spec_type,
            git_sha=git_sha,
            package_json=package_json,
            created_by=uploaded_by,
            replace_spec=replace,
        )
        row = await self.find_version(service_name, version)
        await self.db.refresh(row)
        logger.info("Spec uploaded for %s@%s (%s)", service_name, version, spec_type)
        await notify.emit(
            self.events,
            self.tenant_id,
            notify.SPEC_UPLOADED,
            {"service": service_name, "version": version, "version_id": version_id, "spec_type": spec_type},
        )
        return row

    async def resolve(self, service_name: str, requested: str) -> ServiceVersion:
        """Resolve ``latest``, an exact version or a semver range to a version row."""
        await self.require_service(service_name)
        versions = await self.list_versions(service_name)
        return resolve_version(requested, versions)
