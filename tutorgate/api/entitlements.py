"""Entitlement summary API (read-only)."""
from fastapi import APIRouter, Request

from tutorgate.features.entitlements.service import describe_entitlement


router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


@router.get("/me")
def get_my_entitlement(request: Request):
    """
    Tier, quota usage and billing dates for the calling identity.

    Never creates an identity record or links a code.
    """
    summary = describe_entitlement(
        dict(request.headers),
        peer_address=request.client.host if request.client else None,
    )
    return {"data": summary}
