"""Pydantic schemas for dependency, interaction and verification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class InteractionCreate(BaseModel):
    service: str | None = None
    consumer: str | None = None
    consumer_version: str | None = None
    consumer_git_sha: str | None = None
    provider_version: str | None = None
    environment: str = "test"
    operation: str | None = None
    request: dict = {}
    response: dict = {}
    timestamp: datetime | None = None
    duration: int = 0
    client_info: dict = {}


class InteractionRecorded(BaseModel):
    status: str
    id: str


class InteractionResponse(BaseModel):
    id: str
    service: str
    consumer: str
    consumer_version: str
    consumer_git_sha: str | None = None
    environment: str
    operation: str
    request: dict
    response: dict
    timestamp: datetime
    duration: int
    contract_id: str | None = None

    model_config = {"from_attributes": True}


class DependencyCreate(BaseModel):
    consumer: str
    consumer_version: str
    provider: str
    provider_version: str
    environment: str


class DependencyResponse(BaseModel):
    id: str
    consumer: str
    consumer_version: str
    provider: str
    provider_version: str
    environment: str
    status: str
    registered_at: datetime
    verified_at: datetime | None = None


class DependencyRegistered(BaseModel):
    dependency: DependencyResponse
    task_id: str


class VerificationTaskResponse(BaseModel):
    id: str
    provider: str
    provider_version: str
    consumer: str
    consumer_version: str
    environment: str
    interactions: list[dict] = []
    created_at: datetime

    model_config = {"from_attributes": True}


class InteractionOutcome(BaseModel):
    interaction_id: str | None = None
    success: bool
    error: str | None = None
    actual_response: Any = None


class VerificationSubmit(BaseModel):
    task_id: str
    provider_version: str
    provider_git_sha: str | None = None
    results: list[InteractionOutcome]


class VerificationSummary(BaseModel):
    total: int
    passed: int
    failed: int


class VerificationReceived(BaseModel):
    status: str
    result_id: str
    summary: VerificationSummary
    dependency_status_updated: bool


class VerificationHistoryEntry(BaseModel):
    id: str
    provider: str
    provider_version: str
    consumer: str | None = None
    consumer_version: str | None = None
    task_id: str
    submitted_at: datetime
    summary: VerificationSummary


class PassRatePoint(BaseModel):
    date: str
    pass_rate: float


class VerificationStats(BaseModel):
    total_verifications: int
    average_pass_rate: float = Field(ge=0, le=1)
    total_interactions_tested: int
    unique_consumers: int
    recent_trends: list[PassRatePoint]
