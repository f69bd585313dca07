"""Pool funding and reward payout endpoints."""

from fastapi import APIRouter, Depends

from ..models import Currency
from ..schemas.api import AllocationResponse, FundRequest, RewardRequest, TransactionResponse
from ..services.principal import Principal
from ..services.reward_service import RewardService
from .deps import get_principal, get_reward_service

router = APIRouter(prefix="/repositories", tags=["rewards"])


@router.post("/{repo_id}/fund", response_model=TransactionResponse)
async def fund_repository(
    repo_id: int,
    body: FundRequest,
    principal: Principal = Depends(get_principal),
    service: RewardService = Depends(get_reward_service),
) -> TransactionResponse:
    """
    Add funds to a repository's reward pool.

    Send the same idempotency_key to retry safely after a timeout or a
    pending response.
    """
    tx = await service.fund_repository(
        principal, repo_id, body.currency, body.amount, body.idempotency_key
    )
    return TransactionResponse(tx_hash=tx.tx_hash, block_number=tx.block_number)


@router.post("/{repo_id}/issues/{issue_id}/reward", response_model=TransactionResponse)
async def allocate_reward(
    repo_id: int,
    issue_id: int,
    body: RewardRequest,
    principal: Principal = Depends(get_principal),
    service: RewardService = Depends(get_reward_service),
) -> TransactionResponse:
    """Pay an issue bounty; repeating the call returns the original payout."""
    tx = await service.allocate_reward(
        principal, repo_id, issue_id, body.currency, body.amount, body.recipient_wallet
    )
    return TransactionResponse(tx_hash=tx.tx_hash, block_number=tx.block_number)


@router.get("/{repo_id}/issues/{issue_id}/reward", response_model=AllocationResponse)
async def get_reward(
    repo_id: int,
    issue_id: int,
    currency: Currency,
    principal: Principal = Depends(get_principal),
    service: RewardService = Depends(get_reward_service),
) -> AllocationResponse:
    allocation = await service.get_allocation(principal, repo_id, issue_id, currency)
    return AllocationResponse.model_validate(allocation)
