"""Fixture proposal and curation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from broker.dependencies import get_actor, get_fixture_store
from broker.entities.fixture import Fixture
from broker.schemas.fixtures import (
    FixtureBatchCreate,
    FixtureBatchResponse,
    FixtureCreate,
    FixtureDecision,
    FixtureResponse,
    FixtureUpdate,
)
from engine.fixtures import FixtureProposal, FixtureStore

router = APIRouter(prefix="/fixtures", tags=["fixtures"])


async def _serialize(store: FixtureStore, fixtures: list[Fixture]) -> list[FixtureResponse]:
    """Attach the legacy ``service_version``/``service_versions`` fields."""
    attached = await store.versions_for(f.id for f in fixtures)
    responses = []
    for fixture in fixtures:
        versions = attached.get(fixture.id, [])
        response = FixtureResponse.model_validate(fixture)
        response.service_versions = list(dict.fromkeys(versions))
        response.service_version = versions[-1] if versions else None
        responses.append(response)
    return responses


async def _serialize_one(store: FixtureStore, fixture: Fixture) -> FixtureResponse:
    return (await _serialize(store, [fixture]))[0]


def _decision(body: FixtureDecision | None, actor: str) -> tuple[str, str | None]:
    if body is None:
        return actor, None
    return body.actor or actor, body.notes


def _to_proposal(body: FixtureCreate) -> FixtureProposal:
    return FixtureProposal(
        service=body.service,
        service_version=body.service_version,
        operation=body.operation,
        data=body.data,
        source=body.source.value,
        priority=body.priority,
        created_from=body.created_from,
        notes=body.notes,
    )


@router.post("", response_model=FixtureResponse, status_code=201)
async def propose_fixture(body: FixtureCreate, store: FixtureStore = Depends(get_fixture_store)):
    """Propose a fixture. 201 when stored, 200 when it matched an existing one."""
    fixture, created = await store.propose(_to_proposal(body))
    payload = (await _serialize_one(store, fixture)).model_dump(mode="json")
    return JSONResponse(payload, status_code=201 if created else 200)


@router.post("/batch", response_model=FixtureBatchResponse)
async def propose_fixtures(
    body: FixtureBatchCreate, store: FixtureStore = Depends(get_fixture_store)
):
    return await store.propose_batch([_to_proposal(item) for item in body.fixtures])


@router.get("/pending", response_model=list[FixtureResponse])
async def list_pending(service: str | None = None, store: FixtureStore = Depends(get_fixture_store)):
    """Draft fixtures awaiting review."""
    return await _serialize(store, await store.list_pending(service))


@router.get("/service/{service}", response_model=list[FixtureResponse])
async def list_for_service(
    service: str,
    version: str | None = None,
    operation: str | None = None,
    status: str | None = "approved",
    store: FixtureStore = Depends(get_fixture_store),
):
    if operation and version:
        fixtures = await store.list_for_operation(service, version, operation, status)
    else:
        fixtures = await store.list_for_service(service, version, status)
        if operation:
            fixtures = [f for f in fixtures if f.operation == operation]
    return await _serialize(store, fixtures)


@router.get("/{fixture_id}", response_model=FixtureResponse)
async def get_fixture(fixture_id: str, store: FixtureStore = Depends(get_fixture_store)):
    return await _serialize_one(store, await store.get(fixture_id))


@router.post("/{fixture_id}/approve", response_model=FixtureResponse)
async def approve_fixture(
    fixture_id: str,
    body: FixtureDecision | None = None,
    store: FixtureStore = Depends(get_fixture_store),
    actor: str = Depends(get_actor),
):
    fixture = await store.approve(fixture_id, *_decision(body, actor))
    return await _serialize_one(store, fixture)


@router.post("/{fixture_id}/reject", response_model=FixtureResponse)
async def reject_fixture(
    fixture_id: str,
    body: FixtureDecision | None = None,
    store: FixtureStore = Depends(get_fixture_store),
    actor: str = Depends(get_actor),
):
    """Reject a draft fixture."""
    fixture = await store.reject(fixture_id, *_decision(body, actor))
    return await _serialize_one(store, fixture)


@router.post("/{fixture_id}/revoke", response_model=FixtureResponse)
async def revoke_fixture(
    fixture_id: str,
    body: FixtureDecision | None = None,
    store: FixtureStore = Depends(get_fixture_store),
    actor: str = Depends(get_actor),
):
    """Withdraw approval from an approved fixture."""
    fixture = await store.revoke(fixture_id, *_decision(body, actor))
    return await _serialize_one(store, fixture)


@router.patch("/{fixture_id}", response_model=FixtureResponse)
async def update_fixture(
    fixture_id: str, body: FixtureUpdate, store: FixtureStore = Depends(get_fixture_store)
):
    fixture = await store.update(fixture_id, priority=body.priority, notes=body.notes)
    return await _serialize_one(store, fixture)


@router.delete("/{fixture_id}", status_code=204)
async def delete_fixture(fixture_id: str, store: FixtureStore = Depends(get_fixture_store)):
    await store.delete(fixture_id)
    return Response(status_code=204)
