"""Pydantic schemas for deployment and can-i-deploy endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class DeploymentCreate(BaseModel):
    service: str
    version: str
    environment: str
    git_sha: str | None = None
    deployed_by: str | None = None


class DeploymentFailure(DeploymentCreate):
    failure_reason: str | None = None


class DeploymentResponse(BaseModel):
    id: str
    service: str
    version: str
    environment: str
    git_sha: str | None = None
    deployed_at: datetime
    deployed_by: str
    active: bool
    status: str
    failure_reason: str | None = None

    model_config = {"from_attributes": True}


class DependencyCheckResponse(BaseModel):
    service: str
    version: str
    verified: bool
    actively_deployed: bool
    semver_compatible: str | None = None
    nearest_verified_version: str | None = None
    interaction_count: int = 0


class DeployIssue(BaseModel):
    type: str
    service: str
    version: str
    reason: str
    suggestion: str | None = None


class CanIDeployResponse(BaseModel):
    can_deploy: bool
    message: str
    providers: list[DependencyCheckResponse] = []
    consumers: list[DependencyCheckResponse] = []
    issues: list[DeployIssue] = []
