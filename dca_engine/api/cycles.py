"""
Cycle trigger endpoint.

Called by the scheduler once per period. A hold or a batch with failed
wallets answers 200; only a fatal cycle answers 500.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import settings
from ..core.strategies.dca import BatchOrchestrator, get_ledger

router = APIRouter(prefix="/v1/cycles", tags=["Cycles"])


class RunCycleRequest(BaseModel):
    """Optional trigger parameters."""
    wallet: Optional[str] = Field(None, description="Restrict the cycle to one smart account or owner")
    simulate: bool = Field(False, description="Quote and validate only; submit nothing")


def get_orchestrator() -> BatchOrchestrator:
    """Orchestrator wired to the configured ledger and collaborators."""
    return BatchOrchestrator(ledger=get_ledger())


def verify_internal_key(x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key")) -> bool:
    """Verify the scheduler's shared secret when one is configured."""
    if settings.internal_api_key and x_internal_key != settings.internal_api_key:
        raise HTTPException(status_code=401, detail="Invalid internal API key")
    return True


@router.post("/run")
async def run_cycle(
    request: Optional[RunCycleRequest] = None,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_internal_key),
):
    request = request or RunCycleRequest()
    result = await orchestrator.run_cycle(wallet_filter=request.wallet, simulate=request.simulate)
    return JSONResponse(status_code=500 if result.fatal else 200, content=result.to_dict())
