from fastapi import APIRouter, Depends
from typing import Optional

from models import BloodRequestCreate, ClaimBody
from services import claims, obligations
from services import get_current_user, require_donor, require_hospital
from services.errors import ForbiddenError

router = APIRouter(prefix="/requests", tags=["Blood Requests"])

@router.post("")
async def create_blood_request(request_data: BloodRequestCreate, current_user: dict = Depends(require_donor)):
    if await obligations.is_donor_blocked(current_user["id"]):
        raise ForbiddenError("Account blocked: an obligation is more than 21 days overdue", code="DONOR_BLOCKED")

    request = await claims.create_request(
        donor_id=current_user["id"],
        blood_group=request_data.blood_group,
        units=request_data.units,
        urgency=request_data.urgency,
        patient_hospital=request_data.patient_hospital,
        recipient_actor_id=request_data.recipient_actor_id,
        reason=request_data.reason,
    )
    return {"ok": True, "request_id": request["request_id"], "id": request["id"], "request": request}

@router.get("/claimable")
async def get_claimable_requests(
    blood_group: Optional[str] = None,
    current_user: dict = Depends(require_hospital)
):
    requests = await claims.claimable_requests(blood_group=blood_group)
    return {"ok": True, "requests": requests}

@router.get("/{request_id}")
async def get_blood_request(request_id: str, current_user: dict = Depends(get_current_user)):
    request = await claims.get_request(request_id)
    return {"ok": True, "request": request}

@router.patch("/{request_id}/claim")
async def claim_request(request_id: str, body: ClaimBody, current_user: dict = Depends(require_hospital)):
    request = await claims.get_request(request_id)
    updated = await claims.claim(request["id"], current_user["id"], body.decision)
    return {"ok": True, "request": updated}
