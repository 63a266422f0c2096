"""Contract listing and lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from broker.dependencies import get_contract_store
from broker.entities.contract import Contract
from broker.schemas.contracts import ContractResponse, ContractUpdate, CountsRecalculated
from broker.schemas.verification import InteractionResponse
from engine.contracts import ContractStore

router = APIRouter(prefix="/contracts", tags=["contracts"])


def _to_response(contract: Contract, interaction_count: int) -> ContractResponse:
    response = ContractResponse.model_validate(contract)
    response.interaction_count = interaction_count
    return response


@router.get("", response_model=list[ContractResponse])
async def list_contracts(
    provider: str | None = None,
    consumer: str | None = None,
    environment: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, le=1000),
    store: ContractStore = Depends(get_contract_store),
):
    """List contracts with interaction counts, most recently seen first."""
    rows = await store.list_contracts(
        provider=provider, consumer=consumer, environment=environment, status=status, limit=limit
    )
    return [_to_response(contract, count) for contract, count in rows]


@router.post("/recalculate-counts", response_model=CountsRecalculated)
async def recalculate_counts(store: ContractStore = Depends(get_contract_store)):
    return await store.recalculate_counts()


@router.get("/{contract_id}", response_model=ContractResponse)
async def get_contract(contract_id: str, store: ContractStore = Depends(get_contract_store)):
    return _to_response(*await store.get(contract_id))


@router.get("/{contract_id}/interactions", response_model=list[InteractionResponse])
async def list_contract_interactions(
    contract_id: str,
    limit: int = Query(default=100, le=1000),
    store: ContractStore = Depends(get_contract_store),
):
    return await store.interactions(contract_id, limit=limit)


@router.patch("/{contract_id}", response_model=ContractResponse)
async def update_contract(
    contract_id: str,
    body: ContractUpdate,
    store: ContractStore = Depends(get_contract_store),
):
    """Move a contract between active, archived and deprecated."""
    return _to_response(*await store.set_status(contract_id, body.status))
