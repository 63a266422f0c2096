"""Deployment tracking and can-i-deploy endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from broker.dependencies import get_actor, get_deployment_tracker
from broker.schemas.deployments import (
    CanIDeployResponse,
    DeploymentCreate,
    DeploymentFailure,
    DeploymentResponse,
)
from engine.deployments import DeploymentTracker

router = APIRouter(tags=["deployments"])


@router.post("/deployments", response_model=DeploymentResponse, status_code=201)
async def deploy(
    body: DeploymentCreate,
    tracker: DeploymentTracker = Depends(get_deployment_tracker),
    actor: str = Depends(get_actor),
):
    """Record ``service@version`` as the active deployment in an environment."""
    return await tracker.deploy(
        body.service,
        body.version,
        body.environment,
        git_sha=body.git_sha,
        deployed_by=body.deployed_by or actor,
    )


@router.post("/deployments/failed", response_model=DeploymentResponse, status_code=201)
async def record_failed_deployment(
    body: DeploymentFailure,
    tracker: DeploymentTracker = Depends(get_deployment_tracker),
    actor: str = Depends(get_actor),
):
    return await tracker.record_failure(
        body.service,
        body.version,
        body.environment,
        reason=body.failure_reason,
        git_sha=body.git_sha,
        deployed_by=body.deployed_by or actor,
    )


@router.get("/deployments/active", response_model=list[DeploymentResponse])
async def list_active(
    environment: str | None = None,
    include_inactive: bool = False,
    tracker: DeploymentTracker = Depends(get_deployment_tracker),
):
    return await tracker.list_active(environment, include_inactive=include_inactive)


@router.get("/deployments/{service}/history", response_model=list[DeploymentResponse])
async def deployment_history(
    service: str,
    environment: str | None = None,
    limit: int = Query(default=50, le=500),
    tracker: DeploymentTracker = Depends(get_deployment_tracker),
):
    return await tracker.history(service, environment, limit)


@router.get("/can-i-deploy", response_model=CanIDeployResponse)
async def can_i_deploy(
    service: str,
    version: str,
    environment: str,
    semver_compatibility: str = "none",
    tracker: DeploymentTracker = Depends(get_deployment_tracker),
):
    """Whether ``service@version`` is safe to deploy to ``environment``."""
    report = await tracker.can_i_deploy(service, version, environment, semver_compatibility)
    return report.to_dict()
