"""Dependency registration and provider verification endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from broker.dependencies import get_verification
from broker.schemas.verification import (
    DependencyCreate,
    DependencyRegistered,
    DependencyResponse,
    VerificationHistoryEntry,
    VerificationReceived,
    VerificationStats,
    VerificationSubmit,
    VerificationTaskResponse,
)
from engine.verification import VerificationCoordinator

router = APIRouter(tags=["verification"])


@router.post("/dependencies", response_model=DependencyRegistered, status_code=201)
async def register_dependency(
    body: DependencyCreate,
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    """Declare that a consumer version depends on a provider version."""
    dependency, task = await coordinator.register_dependency(
        body.consumer,
        body.consumer_version,
        body.provider,
        body.provider_version,
        body.environment,
    )
    listed = await coordinator.list_dependencies(
        environment=body.environment, consumer=body.consumer, provider=body.provider
    )
    entry = next(d for d in listed if d["id"] == dependency.id)
    return DependencyRegistered(dependency=DependencyResponse(**entry), task_id=task.id)


@router.get("/dependencies", response_model=list[DependencyResponse])
async def list_dependencies(
    environment: str | None = None,
    status: str | None = None,
    consumer: str | None = None,
    provider: str | None = None,
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    return await coordinator.list_dependencies(
        environment=environment, status=status, consumer=consumer, provider=provider
    )


@router.get("/verification/pending", response_model=list[VerificationTaskResponse])
async def list_pending_tasks(
    provider: str | None = None,
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    """Tasks with no submitted result yet."""
    return await coordinator.list_pending_tasks(provider)


@router.get("/verification/{provider}", response_model=list[VerificationTaskResponse])
async def list_tasks(
    provider: str,
    environment: str | None = None,
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    return await coordinator.list_tasks(provider, environment)


@router.post("/verification/{provider}", response_model=VerificationReceived)
async def submit_result(
    provider: str,
    body: VerificationSubmit,
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    """Submit the outcome of replaying a task's interactions."""
    return await coordinator.submit_result(
        provider,
        body.task_id,
        body.provider_version,
        [r.model_dump(exclude_none=True) for r in body.results],
        provider_git_sha=body.provider_git_sha,
    )


@router.get("/verification/{provider}/history", response_model=list[VerificationHistoryEntry])
async def verification_history(
    provider: str,
    limit: int = Query(default=50, le=500),
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    return await coordinator.history(provider, limit)


@router.get("/verification/{provider}/stats", response_model=VerificationStats)
async def verification_stats(
    provider: str,
    days: int = Query(default=30, ge=1, le=365),
    coordinator: VerificationCoordinator = Depends(get_verification),
):
    return await coordinator.stats(provider, days)
