"""Pydantic schemas for contract endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ContractResponse(BaseModel):
    id: str
    consumer: str
    consumer_version: str
    consumer_git_sha: str | None = None
    provider: str
    provider_version: str
    environment: str
    spec_type: str | None = None
    status: str
    interaction_count: int = 0
    first_seen: datetime
    last_seen: datetime
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ContractUpdate(BaseModel):
    status: str | None = None


class CountsRecalculated(BaseModel):
    message: str
    updated: int
    total_contracts: int
