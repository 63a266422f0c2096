"""Recorded consumer -> provider interactions, the raw material of verification tasks."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.entities.interaction import Interaction
from engine.contracts import ContractStore
from engine.errors import ValidationError
from engine.hashing import interaction_hash
from engine.upsert import insert_or_ignore
from engine.versions import ServiceVersionResolver

logger = logging.getLogger(__name__)


@dataclass
class InteractionRecord:
    service: Optional[str]
    consumer: Optional[str]
    consumer_version: Optional[str]
    operation: Optional[str]
    request: dict = field(default_factory=dict)
    response: dict = field(default_factory=dict)
    environment: str = "test"
    consumer_git_sha: Optional[str] = None
    provider_version: Optional[str] = None
    duration: int = 0
    client_info: dict = field(default_factory=dict)
    timestamp: Optional[datetime] = None


class InteractionRecorder:
    def __init__(self, db: AsyncSession, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id
        self.versions = ServiceVersionResolver(db, tenant_id)
        self.contracts = ContractStore(db, tenant_id)

    async def record(self, record: InteractionRecord) -> tuple[Interaction, bool]:
        """Store an interaction unless an identical one was already recorded."""
        missing = [
            name
            for name in ("service", "consumer", "consumer_version", "operation")
            if not getattr(record, name)
        ]
        if missing:
            raise ValidationError(
                "Missing required interaction fields: " + ", ".join(missing), missing=missing
            )

        await self.versions.ensure_version(
            record.consumer, record.consumer_version, git_sha=record.consumer_git_sha, commit=False
        )
        consumer = await self.versions.get_service(record.consumer)
        provider, _ = await self.versions.ensure_service(record.service)
        contract = await self.contracts.touch(
            consumer,
            record.consumer_version,
            provider,
            await self._provider_version(record),
            record.environment,
            consumer_git_sha=record.consumer_git_sha,
        )

        content_hash = interaction_hash(
            record.service,
            record.consumer,
            record.consumer_version,
            record.operation,
            record.request,
            record.response,
        )
        interaction_id = await insert_or_ignore(
            self.db,
            Interaction,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": self.tenant_id,
                "provider_id": provider.id,
                "consumer_id": consumer.id,
                "service": record.service,
                "consumer": record.consumer,
                "consumer_version": record.consumer_version,
                "consumer_git_sha": record.consumer_git_sha,
                "environment": record.environment,
                "operation": record.operation,
                "request": record.request,
                "response": record.response,
                "timestamp": record.timestamp or datetime.now(timezone.utc),
                "duration": record.duration,
                "client_info": record.client_info,
                "hash": content_hash,
                "contract_id": contract.id,
            },
            conflict_columns=("tenant_id", "hash"),
        )
        await self.db.commit()

        result = await self.db.execute(
            select(Interaction).where(
                Interaction.tenant_id == self.tenant_id, Interaction.hash == content_hash
            )
        )
        interaction = result.scalar_one()
        if interaction_id is not None:
            logger.info(
                "Recorded interaction %s -> %s.%s",
                record.consumer,
                record.service,
                record.operation,
            )
        return interaction, interaction_id is not None

    async def _provider_version(self, record: InteractionRecord) -> str:
        """The version the consumer called, else the provider's newest registered one."""
        if record.provider_version:
            return record.provider_version
        versions = await self.versions.list_versions(record.service)
        return versions[0].version if versions else "unknown"

    async def list_for_provider(
        self,
        service: str,
        consumer: Optional[str] = None,
        consumer_version: Optional[str] = None,
        environment: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Interaction]:
        stmt = select(Interaction).where(
            Interaction.tenant_id == self.tenant_id, Interaction.service == service
        )
        if consumer:
            stmt = stmt.where(Interaction.consumer == consumer)
        if consumer_version:
            stmt = stmt.where(Interaction.consumer_version == consumer_version)
        if environment:
            stmt = stmt.where(Interaction.environment == environment)
        stmt = stmt.order_by(Interaction.timestamp.desc())
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())


def interaction_payload(interaction: Interaction) -> dict[str, Any]:
    """The shape a provider replays during verification."""
    return {
        "id": interaction.id,
        "service": interaction.service,
        "consumer": interaction.consumer,
        "consumer_version": interaction.consumer_version,
        "environment": interaction.environment,
        "contract_id": interaction.contract_id,
        "operation": interaction.operation,
        "request": interaction.request,
        "response": interaction.response,
    }
