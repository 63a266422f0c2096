"""Request-scoped dependencies: tenant, caller identity and engine components."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from broker.config import settings
from broker.database import get_db
from engine.contracts import ContractStore
from engine.deployments import DeploymentTracker
from engine.fixtures import FixtureStore
from engine.interactions import InteractionRecorder
from engine.mock import HandlerCache, MockSynthesizer
from engine.notify import EventDispatcher
from engine.verification import VerificationCoordinator
from engine.versions import ServiceVersionResolver


async def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    """Tenant from X-Tenant-Id. Falls back to the default tenant only in debug mode."""
    if x_tenant_id:
        return x_tenant_id
    if settings.debug:
        return settings.default_tenant_id
    raise HTTPException(status_code=400, detail="Missing X-Tenant-Id header")


async def get_actor(x_actor: str | None = Header(default=None)) -> str:
    return x_actor or "unknown"


def get_events(request: Request) -> EventDispatcher:
    return request.app.state.events


def get_handler_cache(request: Request) -> HandlerCache:
    return request.app.state.handler_cache


def get_resolver(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    events: EventDispatcher = Depends(get_events),
) -> ServiceVersionResolver:
    return ServiceVersionResolver(db, tenant_id, events)


def get_fixture_store(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    events: EventDispatcher = Depends(get_events),
) -> FixtureStore:
    return FixtureStore(db, tenant_id, events)


def get_mock_synthesizer(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    cache: HandlerCache = Depends(get_handler_cache),
) -> MockSynthesizer:
    return MockSynthesizer(db, tenant_id, cache)


def get_interaction_recorder(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> InteractionRecorder:
    return InteractionRecorder(db, tenant_id)


def get_contract_store(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> ContractStore:
    return ContractStore(db, tenant_id)


def get_verification(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    events: EventDispatcher = Depends(get_events),
) -> VerificationCoordinator:
    return VerificationCoordinator(db, tenant_id, events)


def get_deployment_tracker(
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    events: EventDispatcher = Depends(get_events),
) -> DeploymentTracker:
    return DeploymentTracker(db, tenant_id, events, retry_attempts=settings.deploy_retry_attempts)
