"""Pydantic schemas for fixture endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from broker.entities.fixture import FixtureSource


class FixtureCreate(BaseModel):
    # Presence checks happen in the engine so callers get its error messages
    service: str | None = None
    service_version: str | None = None
    operation: str | None = None
    data: Any = None
    source: FixtureSource = FixtureSource.CONSUMER
    priority: int | None = Field(default=None, ge=0)
    created_from: dict = {}
    notes: str | None = None


class FixtureBatchCreate(BaseModel):
    fixtures: list[FixtureCreate]


class FixtureBatchItem(BaseModel):
    fixture_id: str | None = None
    status: str
    error: str | None = None


class FixtureBatchResponse(BaseModel):
    total: int
    created: int
    duplicates: int
    errors: int
    results: list[FixtureBatchItem]


class FixtureDecision(BaseModel):
    notes: str | None = None
    actor: str | None = None


class FixtureUpdate(BaseModel):
    priority: int | None = Field(default=None, ge=0)
    notes: str | None = None


class FixtureResponse(BaseModel):
    id: str
    service: str
    operation: str
    spec_type: str
    status: str
    source: str
    priority: int
    data: dict
    created_from: dict = {}
    hash: str
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    notes: str | None = None
    created_at: datetime
    # Derived from the fixture/version links for older clients
    service_version: str | None = None
    service_versions: list[str] = []

    model_config = {"from_attributes": True}
