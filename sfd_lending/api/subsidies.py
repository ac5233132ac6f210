"""
Subsidy endpoints
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, status

from .schemas import AllocateGrantRequest
from .system import LendingSystem, get_actor_id, get_lending_system
from ..models import GrantStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def allocate_grant(
    request: AllocateGrantRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Allocate a subsidy grant to an SFD"""
    grant = system.subsidy_ledger.allocate_grant(
        sfd_id=request.sfd_id,
        amount=request.amount,
        actor_id=actor_id,
        end_date=request.end_date,
    )
    return grant.to_dict()


@router.get("/sfd/{sfd_id}")
def list_grants(
    sfd_id: str,
    status: Optional[GrantStatus] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Grants of an SFD"""
    return {"grants": [grant.to_dict() for grant in system.subsidy_ledger.list_grants(sfd_id, status)]}


@router.get("/{subsidy_id}")
def get_grant(subsidy_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get grant details"""
    return system.subsidy_ledger.get_grant(subsidy_id).to_dict()


@router.get("/{subsidy_id}/usage")
def list_usage(subsidy_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Usage ledger of a grant"""
    system.subsidy_ledger.get_grant(subsidy_id)
    return {"usage": [entry.to_dict() for entry in system.subsidy_ledger.list_usage(subsidy_id)]}


@router.get("/{subsidy_id}/available")
def check_available_funds(
    subsidy_id: str,
    amount: Decimal,
    system: LendingSystem = Depends(get_lending_system)
):
    """Whether the grant can cover an amount"""
    return {
        "subsidy_id": subsidy_id,
        "amount": str(amount),
        "available": system.subsidy_ledger.has_available_funds(subsidy_id, amount),
    }


@router.post("/{subsidy_id}/revoke")
def revoke_grant(
    subsidy_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Revoke an active grant"""
    return system.subsidy_ledger.revoke_grant(subsidy_id, actor_id).to_dict()
