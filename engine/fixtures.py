"""Fixture lifecycle: proposal with content-hash dedup, curation, and the
fixture <-> service-version links that mocks and verification read."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.entities.fixture import Fixture, FixtureServiceVersion, FixtureSource, FixtureStatus
from broker.entities.service import Service, ServiceVersion
from engine import notify
from engine.errors import EngineError, NotFound, StateConflict, ValidationError
from engine.hashing import fixture_hash
from engine.upsert import insert_or_ignore
from engine.versions import ServiceVersionResolver

logger = logging.getLogger(__name__)

_SOURCES = {s.value for s in FixtureSource}


@dataclass
class FixtureProposal:
    service: Optional[str]
    service_version: Optional[str]
    operation: Optional[str]
    data: Any
    source: str = FixtureSource.CONSUMER.value
    priority: Optional[int] = None
    created_from: dict = field(default_factory=dict)
    notes: Optional[str] = None


def validate_fixture_data(data: Any) -> None:
    """Structural check of a fixture's ``data`` block.

    ``response`` is required; ``request`` and ``state`` are optional mappings.
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid fixture data: expected an object")
    if not data.get("response"):
        raise ValidationError("Invalid fixture data: 'response' is required")
    for key in ("request", "state"):
        if data.get(key) is not None and not isinstance(data[key], dict):
            raise ValidationError(f"Invalid fixture data: '{key}' must be an object")


class FixtureStore:
    def __init__(self, db: AsyncSession, tenant_id: str, events=None):
        self.db = db
        self.tenant_id = tenant_id
        self.events = events
        self.versions = ServiceVersionResolver(db, tenant_id)

    # -- lookups ---------------------------------------------------------

    async def get(self, fixture_id: str) -> Fixture:
        result = await self.db.execute(
            select(Fixture).where(Fixture.tenant_id == self.tenant_id, Fixture.id == fixture_id)
        )
        fixture = result.scalar_one_or_none()
        if fixture is None:
            raise NotFound("Fixture not found", fixture_id=fixture_id)
        return fixture

    async def _find_by_hash(self, content_hash: str) -> Optional[Fixture]:
        result = await self.db.execute(
            select(Fixture).where(Fixture.tenant_id == self.tenant_id, Fixture.hash == content_hash)
        )
        return result.scalar_one_or_none()

    async def versions_for(self, fixture_ids: Iterable[str]) -> dict[str, list[str]]:
        """Attached version strings per fixture, oldest attachment first."""
        ids = list(fixture_ids)
        attached: dict[str, list[str]] = defaultdict(list)
        if not ids:
            return attached
        result = await self.db.execute(
            select(FixtureServiceVersion.fixture_id, ServiceVersion.version)
            .join(ServiceVersion, FixtureServiceVersion.service_version_id == ServiceVersion.id)
            .where(
                FixtureServiceVersion.tenant_id == self.tenant_id,
                FixtureServiceVersion.fixture_id.in_(ids),
            )
            .order_by(FixtureServiceVersion.created_at, ServiceVersion.created_at)
        )
        for fixture_id, version in result.all():
            attached[fixture_id].append(version)
        return attached

    def _versioned_query(self, service: str, version: str, status: Optional[str]):
        stmt = (
            select(Fixture)
            .join(FixtureServiceVersion, FixtureServiceVersion.fixture_id == Fixture.id)
            .join(ServiceVersion, FixtureServiceVersion.service_version_id == ServiceVersion.id)
            .join(Service, ServiceVersion.service_id == Service.id)
            .where(
                Fixture.tenant_id == self.tenant_id,
                Fixture.service == service,
                Service.tenant_id == self.tenant_id,
                Service.name == service,
                ServiceVersion.version == version,
            )
        )
        if status:
            stmt = stmt.where(Fixture.status == status)
        return stmt

    async def list_for_mock(
        self, service: str, version: str, status: str = FixtureStatus.APPROVED.value
    ) -> list[Fixture]:
        """Fixtures attached to ``service@version`` in mock tie-break order.

        Higher priority first; among equal priority the newest fixture first.
        """
        result = await self.db.execute(
            self._versioned_query(service, version, status).order_by(
                Fixture.priority.desc(), Fixture.created_at.desc()
            )
        )
        return list(result.scalars().all())

    async def list_for_service(
        self,
        service: str,
        version: Optional[str] = None,
        status: Optional[str] = FixtureStatus.APPROVED.value,
    ) -> list[Fixture]:
        if version:
            stmt = self._versioned_query(service, version, status)
        else:
            stmt = select(Fixture).where(
                Fixture.tenant_id == self.tenant_id, Fixture.service == service
            )
            if status:
                stmt = stmt.where(Fixture.status == status)
        result = await self.db.execute(
            stmt.order_by(Fixture.priority.desc(), Fixture.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_operation(
        self,
        service: str,
        version: str,
        operation: str,
        status: Optional[str] = FixtureStatus.APPROVED.value,
    ) -> list[Fixture]:
        result = await self.db.execute(
            self._versioned_query(service, version, status)
            .where(Fixture.operation == operation)
            .order_by(Fixture.priority.desc(), Fixture.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_pending(self, service: Optional[str] = None) -> list[Fixture]:
        stmt = select(Fixture).where(
            Fixture.tenant_id == self.tenant_id, Fixture.status == FixtureStatus.DRAFT.value
        )
        if service:
            stmt = stmt.where(Fixture.service == service)
        result = await self.db.execute(stmt.order_by(Fixture.created_at.desc()))
        return list(result.scalars().all())

    # -- proposal --------------------------------------------------------

    async def _attach(self, fixture_id: str, version_id: str) -> bool:
        inserted = await insert_or_ignore(
            self.db,
            FixtureServiceVersion,
            {
                "fixture_id": fixture_id,
                "service_version_id": version_id,
                "tenant_id": self.tenant_id,
                "created_at": datetime.now(timezone.utc),
            },
            conflict_columns=("fixture_id", "service_version_id"),
        )
        return inserted is not None

    async def propose(self, proposal: FixtureProposal) -> tuple[Fixture, bool]:
        """Store a proposed fixture, or attach its version to an identical one.

        Returns ``(fixture, created)``. Identical ``(operation, data)`` never
        yields a second row for a tenant: a proposal that loses the insert
        race attaches its version to the winner instead.
        """
        validate_fixture_data(proposal.data)
        if not proposal.service or not proposal.operation:
            raise ValidationError("Missing required fields: service and operation")
        if not proposal.service_version:
            raise ValidationError("Missing required field: service_version")
        if proposal.source not in _SOURCES:
            raise ValidationError(
                f"Invalid fixture source '{proposal.source}'", allowed=sorted(_SOURCES)
            )

        service = await self.versions.get_service(proposal.service)
        if service is None:
            raise NotFound(
                f"Service '{proposal.service}' not found. Upload a spec for it first.",
                service=proposal.service,
            )
        spec_type = service.spec_type
        if not spec_type:
            raise ValidationError(
                f"Service '{proposal.service}' has no spec type. Upload a spec first.",
                service=proposal.service,
            )

        version_id = await self.versions.ensure_version(
            proposal.service, proposal.service_version, commit=False
        )
        content_hash = fixture_hash(proposal.operation, proposal.data)

        existing = await self._find_by_hash(content_hash)
        if existing is not None:
            return await self._matched(existing, version_id, proposal.service_version)

        created_from = dict(proposal.created_from or {})
        created_from.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        fixture_id = await insert_or_ignore(
            self.db,
            Fixture,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": self.tenant_id,
                "service": proposal.service,
                "operation": proposal.operation,
                "spec_type": spec_type,
                "hash": content_hash,
                "status": FixtureStatus.DRAFT.value,
                "source": proposal.source,
                "priority": 1 if proposal.priority is None else proposal.priority,
                "data": proposal.data,
                "created_from": created_from,
                "notes": proposal.notes,
                "created_at": datetime.now(timezone.utc),
            },
            conflict_columns=("tenant_id", "hash"),
        )
        if fixture_id is None:
            winner = await self._find_by_hash(content_hash)
            logger.info("Concurrent proposal for %s resolved to fixture %s", content_hash[:12], winner.id)
            return await self._matched(winner, version_id, proposal.service_version)

        await self._attach(fixture_id, version_id)
        await self.db.commit()
        fixture = await self.get(fixture_id)
        logger.info(
            "Proposed fixture for %s.%s from %s",
            proposal.service,
            proposal.operation,
            proposal.source,
        )
        await notify.emit(
            self.events,
            self.tenant_id,
            notify.FIXTURE_CREATED,
            self._payload(fixture, [proposal.service_version]),
        )
        return fixture, True

    async def propose_batch(self, proposals: list[FixtureProposal]) -> dict:
        """Propose each fixture independently; one bad proposal does not stop the rest."""
        summary = {"total": len(proposals), "created": 0, "duplicates": 0, "errors": 0, "results": []}
        for proposal in proposals:
            try:
                fixture, created = await self.propose(proposal)
            except EngineError as exc:
                await self.db.rollback()
                summary["errors"] += 1
                summary["results"].append({"status": "error", "error": exc.message})
                continue
            key = "created" if created else "duplicates"
            summary[key] += 1
            summary["results"].append(
                {"fixture_id": fixture.id, "status": "created" if created else "duplicate"}
            )
        return summary

    async def _matched(
        self, fixture: Fixture, version_id: str, version: str
    ) -> tuple[Fixture, bool]:
        attached = await self._attach(fixture.id, version_id)
        await self.db.commit()
        await self.db.refresh(fixture)
        if attached:
            logger.info("Attached %s@%s to existing fixture %s", fixture.service, version, fixture.id)
            await notify.emit(
                self.events,
                self.tenant_id,
                notify.FIXTURE_UPDATED,
                self._payload(fixture, [version]),
            )
        return fixture, False

    # -- curation --------------------------------------------------------

    async def _transition(
        self,
        fixture_id: str,
        allowed_from: Optional[set[str]],
        to_status: str,
        actor: str,
        notes: Optional[str],
    ) -> Fixture:
        fixture = await self.get(fixture_id)
        if allowed_from is not None and fixture.status not in allowed_from:
            raise StateConflict(
                f"Fixture is {fixture.status}; cannot move to {to_status}",
                fixture_id=fixture_id,
                status=fixture.status,
            )

        now = datetime.now(timezone.utc)
        fixture.status = to_status
        if to_status == FixtureStatus.APPROVED.value:
            fixture.approved_by = actor
            fixture.approved_at = now
        else:
            fixture.rejected_by = actor
            fixture.rejected_at = now
        if notes is not None:
            fixture.notes = notes
        await self.db.commit()
        await self.db.refresh(fixture)

        versions = (await self.versions_for([fixture.id])).get(fixture.id, [])
        await notify.emit(
            self.events,
            self.tenant_id,
            notify.FIXTURE_STATUS_CHANGE,
            self._payload(fixture, versions, actor=actor),
        )
        return fixture

    async def approve(self, fixture_id: str, approved_by: str, notes: Optional[str] = None) -> Fixture:
        fixture = await self._transition(
            fixture_id, None, FixtureStatus.APPROVED.value, approved_by, notes
        )
        logger.info("Approved fixture %s by %s", fixture_id, approved_by)
        return fixture

    async def reject(self, fixture_id: str, rejected_by: str, notes: Optional[str] = None) -> Fixture:
        fixture = await self._transition(
            fixture_id,
            {FixtureStatus.DRAFT.value},
            FixtureStatus.REJECTED.value,
            rejected_by,
            notes,
        )
        logger.info("Rejected fixture %s by %s", fixture_id, rejected_by)
        return fixture

    async def revoke(self, fixture_id: str, revoked_by: str, notes: Optional[str] = None) -> Fixture:
        fixture = await self._transition(
            fixture_id,
            {FixtureStatus.APPROVED.value},
            FixtureStatus.REJECTED.value,
            revoked_by,
            notes,
        )
        logger.info("Revoked fixture %s by %s", fixture_id, revoked_by)
        return fixture

    async def update(
        self, fixture_id: str, priority: Optional[int] = None, notes: Optional[str] = None
    ) -> Fixture:
        fixture = await self.get(fixture_id)
        if priority is not None:
            if priority < 0:
                raise ValidationError("priority must be non-negative")
            fixture.priority = priority
        if notes is not None:
            fixture.notes = notes
        await self.db.commit()
        await self.db.refresh(fixture)
        logger.info("Updated fixture %s", fixture_id)

        versions = (await self.versions_for([fixture.id])).get(fixture.id, [])
        await notify.emit(
            self.events, self.tenant_id, notify.FIXTURE_UPDATED, self._payload(fixture, versions)
        )
        return fixture

    async def delete(self, fixture_id: str) -> None:
        fixture = await self.get(fixture_id)
        versions = (await self.versions_for([fixture.id])).get(fixture.id, [])
        payload = self._payload(fixture, versions)

        await self.db.execute(
            delete(FixtureServiceVersion).where(FixtureServiceVersion.fixture_id == fixture.id)
        )
        await self.db.delete(fixture)
        await self.db.commit()
        logger.info("Deleted fixture %s", fixture_id)
        await notify.emit(self.events, self.tenant_id, notify.FIXTURE_DELETED, payload)

    @staticmethod
    def _payload(fixture: Fixture, versions: list[str], **extra) -> dict:
        return {
            "fixture_id": fixture.id,
            "service": fixture.service,
            "operation": fixture.operation,
            "status": fixture.status,
            "versions": versions,
            **extra,
        }
