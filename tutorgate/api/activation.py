"""
Activation API.

- POST /v1/activation/claim: claim an activation code on this device

Errors:
    404 invalid_code, 410 code_revoked, 409 device_mismatch
"""
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from tutorgate.core.errors import ConflictError, GoneError, NotFoundError
from tutorgate.features.activation.service import claim_activation_code
from tutorgate.models.verdict import ErrorKind


router = APIRouter(prefix="/v1/activation", tags=["activation"])


class ClaimRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    device_id: str = Field(min_length=1, max_length=255)


class ClaimResponse(BaseModel):
    success: bool
    code: str
    state: str
    pairing_code: Optional[str] = None
    pairing_expires_at: Optional[str] = None


_CLAIM_ERRORS = {
    ErrorKind.INVALID_CODE: (NotFoundError, "invalid_code"),
    ErrorKind.CODE_REVOKED: (GoneError, "code_revoked"),
    ErrorKind.DEVICE_MISMATCH: (ConflictError, "device_mismatch"),
}


@router.post("/claim", response_model=ClaimResponse)
def claim(payload: ClaimRequest):
    result = claim_activation_code(payload.code, payload.device_id)
    if not result.success:
        error_cls, code = _CLAIM_ERRORS[result.kind]
        raise error_cls(
            result.message or code,
            code=code,
            details={"kind": result.kind.value, "hint": result.message},
        )
    return ClaimResponse(
        success=True,
        code=result.code,
        state=result.state.value,
        pairing_code=result.pairing_token,
        pairing_expires_at=result.pairing_expires_at.isoformat() if result.pairing_expires_at else None,
    )
