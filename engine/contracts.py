"""Contracts: the consumer-version -> provider-version pairs observed through
recorded interactions, with lifecycle status and interaction counts."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.entities.contract import Contract, ContractStatus
from broker.entities.interaction import Interaction
from broker.entities.service import Service
from engine.errors import NotFound, ValidationError
from engine.upsert import insert_or_ignore

logger = logging.getLogger(__name__)

_STATUSES = {s.value for s in ContractStatus}


class ContractStore:
    def __init__(self, db: AsyncSession, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    async def touch(
        self,
        consumer: Service,
        consumer_version: str,
        provider: Service,
        provider_version: str,
        environment: str,
        consumer_git_sha: Optional[str] = None,
    ) -> Contract:
        """Create the contract for this pair, or mark an existing one as seen now.

        Does not commit.
        """
        now = datetime.now(timezone.utc)
        created = await insert_or_ignore(
            self.db,
            Contract,
            {
                "id": str(uuid.uuid4()),
                "tenant_id": self.tenant_id,
                "consumer_id": consumer.id,
                "consumer": consumer.name,
                "consumer_version": consumer_version,
                "consumer_git_sha": consumer_git_sha,
                "provider_id": provider.id,
                "provider": provider.name,
                "provider_version": provider_version,
                "environment": environment,
                "spec_type": provider.spec_type,
                "status": ContractStatus.ACTIVE.value,
                "first_seen": now,
                "last_seen": now,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=(
                "tenant_id", "consumer_id", "consumer_version", "provider_id", "provider_version"
            ),
        )

        result = await self.db.execute(
            select(Contract).where(
                Contract.tenant_id == self.tenant_id,
                Contract.consumer_id == consumer.id,
                Contract.consumer_version == consumer_version,
                Contract.provider_id == provider.id,
                Contract.provider_version == provider_version,
            )
        )
        contract = result.scalar_one()
        if created is not None:
            logger.info(
                "New contract %s@%s -> %s@%s",
                consumer.name,
                consumer_version,
                provider.name,
                provider_version,
            )
        else:
            contract.last_seen = now
            contract.updated_at = now
            if consumer_git_sha:
                contract.consumer_git_sha = consumer_git_sha
        return contract

    def _counted(self):
        return (
            select(Contract, func.count(Interaction.id).label("interaction_count"))
            .outerjoin(Interaction, Interaction.contract_id == Contract.id)
            .where(Contract.tenant_id == self.tenant_id)
            .group_by(Contract.id)
        )

    async def list_contracts(
        self,
        provider: Optional[str] = None,
        consumer: Optional[str] = None,
        environment: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[tuple[Contract, int]]:
        """Contracts with their interaction counts, most recently seen first."""
        stmt = self._counted()
        if provider:
            stmt = stmt.where(Contract.provider == provider)
        if consumer:
            stmt = stmt.where(Contract.consumer == consumer)
        if environment:
            stmt = stmt.where(Contract.environment == environment)
        if status:
            stmt = stmt.where(Contract.status == status)
        stmt = stmt.order_by(Contract.last_seen.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return [(contract, count) for contract, count in result.all()]

    async def get(self, contract_id: str) -> tuple[Contract, int]:
        result = await self.db.execute(self._counted().where(Contract.id == contract_id))
        row = result.one_or_none()
        if row is None:
            raise NotFound("Contract not found", contract_id=contract_id)
        contract, count = row
        return contract, count

    async def interactions(self, contract_id: str, limit: int = 100) -> list[Interaction]:
        await self.get(contract_id)
        result = await self.db.execute(
            select(Interaction)
            .where(Interaction.tenant_id == self.tenant_id, Interaction.contract_id == contract_id)
            .order_by(Interaction.timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def set_status(self, contract_id: str, status: Optional[str]) -> tuple[Contract, int]:
        if status not in _STATUSES:
            raise ValidationError(
                "Invalid status. Must be active, archived, or deprecated", status=status
            )
        contract, count = await self.get(contract_id)
        if contract.status != status:
            logger.info("Contract %s: %s -> %s", contract.id, contract.status, status)
            contract.status = status
            contract.updated_at = datetime.now(timezone.utc)
            await self.db.commit()
        return contract, count

    async def recalculate_counts(self) -> dict:
        """Counts are derived from interaction links at read time, so nothing is rewritten."""
        result = await self.db.execute(
            select(func.count(Contract.id)).where(Contract.tenant_id == self.tenant_id)
        )
        total = result.scalar_one()
        return {
            "message": "Interaction counts are computed from linked interactions",
            "updated": 0,
            "total_contracts": total,
        }
