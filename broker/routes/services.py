"""Service registration, version and spec upload endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from broker.dependencies import get_actor, get_resolver
from broker.entities.service import ServiceVersion
from broker.schemas.services import (
    ServiceCreate,
    ServiceResponse,
    ServiceVersionCreate,
    ServiceVersionDetail,
    ServiceVersionResponse,
    SpecUpload,
    SpecUploadResponse,
)
from engine.specs import list_operations
from engine.versions import ServiceVersionResolver

router = APIRouter(tags=["services"])


def _version_to_response(row: ServiceVersion) -> ServiceVersionResponse:
    return ServiceVersionResponse(
        id=row.id,
        version=row.version,
        spec_type=row.spec_type,
        has_spec=bool(row.spec),
        git_sha=row.git_sha,
        created_by=row.created_by,
        created_at=row.created_at,
    )


@router.post("/services", response_model=ServiceResponse)
async def register_service(
    body: ServiceCreate,
    resolver: ServiceVersionResolver = Depends(get_resolver),
):
    """Register a service, or refresh the metadata of an existing one."""
    service, created = await resolver.register_service(
        body.name,
        spec_type=body.spec_type.value if body.spec_type else None,
        description=body.description,
        git_repository_url=body.git_repository_url,
        package_json=body.package_json,
    )
    payload = ServiceResponse.model_validate(service).model_dump(mode="json")
    return JSONResponse(payload, status_code=201 if created else 200)


@router.get("/services", response_model=list[ServiceResponse])
async def list_services(resolver: ServiceVersionResolver = Depends(get_resolver)):
    return await resolver.list_services()


@router.get("/services/{name}", response_model=ServiceResponse)
async def get_service(name: str, resolver: ServiceVersionResolver = Depends(get_resolver)):
    return await resolver.require_service(name)


@router.get("/services/{name}/versions", response_model=list[ServiceVersionResponse])
async def list_versions(name: str, resolver: ServiceVersionResolver = Depends(get_resolver)):
    """All versions of a service, newest first."""
    await resolver.require_service(name)
    return [_version_to_response(row) for row in await resolver.list_versions(name)]


@router.post("/services/{name}/versions", response_model=ServiceVersionResponse, status_code=201)
async def create_version(
    name: str,
    body: ServiceVersionCreate,
    resolver: ServiceVersionResolver = Depends(get_resolver),
    actor: str = Depends(get_actor),
):
    """Ensure ``name@version`` exists. Safe to repeat."""
    await resolver.ensure_version(
        name,
        body.version,
        spec=body.spec,
        spec_type=body.spec_type.value if body.spec_type else None,
        git_sha=body.git_sha,
        package_json=body.package_json,
        created_by=actor,
        replace_spec=body.replace_spec,
    )
    return _version_to_response(await resolver.find_version(name, body.version))


@router.get("/services/{name}/versions/resolve", response_model=ServiceVersionDetail)
async def resolve_version(
    name: str,
    version: str = Query(default="latest"),
    resolver: ServiceVersionResolver = Depends(get_resolver),
):
    """Resolve ``latest``, an exact version or a semver range."""
    row = await resolver.resolve(name, version)
    return ServiceVersionDetail(**_version_to_response(row).model_dump(), spec=row.spec)


@router.post("/specs/{service}", response_model=SpecUploadResponse, status_code=201)
async def upload_spec(
    service: str,
    body: SpecUpload,
    resolver: ServiceVersionResolver = Depends(get_resolver),
    actor: str = Depends(get_actor),
):
    """Attach a spec to ``service@version``. An existing spec is kept unless ``replace`` is set."""
    row = await resolver.upload_spec(
        service,
        body.version,
        body.spec,
        spec_type=body.spec_type.value if body.spec_type else None,
        git_sha=body.git_sha,
        package_json=body.package_json,
        uploaded_by=actor,
        replace=body.replace,
    )
    return SpecUploadResponse(
        service=service,
        version=row.version,
        version_id=row.id,
        spec_type=row.spec_type,
        operations=len(list_operations(row.spec or {})),
    )
