"""
Delegation API Endpoints

Records a user's signed grant (one per owner, upserted) and revokes it.
The signing itself happens in the user's wallet.
"""

from typing import Any, Dict, List, Optional

from eth_utils import is_address
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from ..core.delegation import Delegation, DelegationStatus
from ..core.strategies.dca import Ledger, get_ledger

router = APIRouter(prefix="/v1/delegations", tags=["Delegations"])


# =============================================================================
# Request/Response Models
# =============================================================================


class CaveatRequest(BaseModel):
    enforcer: str
    terms: str = "0x"
    args: str = "0x"


class SignedDelegationRequest(BaseModel):
    """The delegation struct exactly as the user signed it."""
    delegate: str
    delegator: str
    authority: Optional[str] = None
    caveats: List[CaveatRequest] = Field(default_factory=list)
    salt: str = "0"
    signature: str


class UpsertDelegationRequest(BaseModel):
    """Request to record or replace an owner's delegation."""
    owner: str = Field(..., description="User wallet that granted the delegation")
    smart_account: str = Field(..., alias="smartAccount", description="Smart account holding the funds")
    delegation: SignedDelegationRequest
    delegation_hash: Optional[str] = Field(None, alias="delegationHash")
    max_amount_per_swap: Optional[str] = Field(
        None, alias="maxAmountPerSwap", description="Per-swap cap in input-token base units"
    )

    class Config:
        populate_by_name = True

    @field_validator("owner", "smart_account")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError(f"Invalid address: {value}")
        return value

    @field_validator("max_amount_per_swap")
    @classmethod
    def _check_cap(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (not value.isdigit() or int(value) <= 0):
            raise ValueError("maxAmountPerSwap must be a positive integer string")
        return value


# =============================================================================
# Helper Functions
# =============================================================================


def _delegation_to_response(delegation: Delegation) -> Dict[str, Any]:
    window = delegation.time_window
    return {
        "owner": delegation.owner,
        "smartAccount": delegation.smart_account,
        "delegate": delegation.delegate,
        "status": delegation.status.value,
        "callsUsed": delegation.calls_used,
        "validUntil": window.valid_until if window else None,
        "allowedTargets": list(delegation.allowed_targets),
        "allowedSelectors": list(delegation.allowed_selectors),
    }


# =============================================================================
# Endpoints
# =============================================================================


@router.put("")
async def upsert_delegation(
    request: UpsertDelegationRequest,
    ledger: Ledger = Depends(get_ledger),
) -> Dict[str, Any]:
    if request.delegation.delegator.lower() != request.smart_account.lower():
        raise HTTPException(status_code=400, detail="Delegator must be the smart account")

    signed = request.delegation.model_dump(exclude_none=True)
    delegation = Delegation.from_record(
        {
            "owner": request.owner,
            "smartAccount": request.smart_account,
            "delegationHash": request.delegation_hash,
            "delegationData": signed,
            "status": DelegationStatus.ACTIVE.value,
            "maxAmountPerSwap": request.max_amount_per_swap,
        }
    )
    if not delegation.has_signature:
        raise HTTPException(status_code=400, detail="Delegation missing signature")

    await ledger.upsert_delegation(delegation)
    return _delegation_to_response(delegation)


@router.get("/{owner}")
async def get_delegation(owner: str, ledger: Ledger = Depends(get_ledger)) -> Dict[str, Any]:
    delegation = await ledger.get_delegation(owner)
    if delegation is None:
        raise HTTPException(status_code=404, detail="Delegation not found")
    return _delegation_to_response(delegation)


@router.delete("/{owner}")
async def revoke_delegation(owner: str, ledger: Ledger = Depends(get_ledger)) -> Dict[str, Any]:
    if not await ledger.revoke_delegation(owner):
        raise HTTPException(status_code=404, detail="Delegation not found")
    return {"owner": owner, "status": DelegationStatus.REVOKED.value}
