"""Interaction recording endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from broker.dependencies import get_interaction_recorder
from broker.schemas.verification import InteractionCreate, InteractionRecorded, InteractionResponse
from engine.interactions import InteractionRecord, InteractionRecorder

router = APIRouter(prefix="/interactions", tags=["interactions"])


@router.post("", response_model=InteractionRecorded, status_code=201)
async def record_interaction(
    body: InteractionCreate,
    recorder: InteractionRecorder = Depends(get_interaction_recorder),
):
    """Record a consumer call. Identical interactions are stored once."""
    interaction, created = await recorder.record(InteractionRecord(**body.model_dump()))
    return JSONResponse(
        {"status": "recorded" if created else "duplicate", "id": interaction.id},
        status_code=201 if created else 200,
    )


@router.get("/{service}", response_model=list[InteractionResponse])
async def list_interactions(
    service: str,
    consumer: str | None = None,
    version: str | None = Query(default=None, description="Consumer version"),
    environment: str | None = None,
    limit: int = Query(default=100, le=1000),
    recorder: InteractionRecorder = Depends(get_interaction_recorder),
):
    return await recorder.list_for_provider(
        service,
        consumer=consumer,
        consumer_version=version,
        environment=environment,
        limit=limit,
    )
