"""Pydantic schemas for service, version and spec endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from broker.entities.service import SpecType


class ServiceCreate(BaseModel):
    name: str
    spec_type: SpecType | None = None
    description: str | None = None
    git_repository_url: str | None = None
    package_json: dict | None = None


class ServiceResponse(BaseModel):
    id: str
    name: str
    spec_type: str | None = None
    description: str | None = None
    git_repository_url: str | None = None
    package_json: dict = {}
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ServiceVersionCreate(BaseModel):
    version: str
    spec: dict | None = None
    spec_type: SpecType | None = None
    git_sha: str | None = None
    package_json: dict | None = None
    replace_spec: bool = False


class ServiceVersionResponse(BaseModel):
    id: str
    version: str
    spec_type: str | None = None
    has_spec: bool = False
    git_sha: str | None = None
    created_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ServiceVersionDetail(ServiceVersionResponse):
    spec: dict | None = None


class SpecUpload(BaseModel):
    version: str
    spec: Any
    spec_type: SpecType | None = None
    git_sha: str | None = None
    package_json: dict | None = None
    replace: bool = False


class SpecUploadResponse(BaseModel):
    service: str
    version: str
    version_id: str
    spec_type: str
    operations: int
