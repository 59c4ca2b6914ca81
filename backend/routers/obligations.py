from fastapi import APIRouter, Depends

from models import ObligationIssue, ReturnVerify, ActorRole
from services import obligations
from services import get_current_user, require_donor, require_hospital
from services.errors import ForbiddenError

router = APIRouter(prefix="/obligations", tags=["Obligations"])
return_router = APIRouter(prefix="/returns", tags=["Returns"])

def _check_donor_scope(current_user: dict, donor_id: str):
    if current_user["role"] == ActorRole.DONOR.value and current_user["id"] != donor_id:
        raise ForbiddenError("Donors can only access their own obligations")

@router.post("")
async def create_obligation(data: ObligationIssue, current_user: dict = Depends(get_current_user)):
    _check_donor_scope(current_user, data.donor_id)
    obligation = await obligations.issue_obligation(data.request_id, data.donor_id)
    return {"ok": True, "obligation": obligation}

@router.get("/donor/{donor_id}")
async def get_donor_obligations(donor_id: str, current_user: dict = Depends(get_current_user)):
    _check_donor_scope(current_user, donor_id)
    summary = await obligations.donor_summary(donor_id)
    return {"ok": True, **summary}

@router.get("/{obligation_id}")
async def get_obligation(obligation_id: str, current_user: dict = Depends(get_current_user)):
    obligation = await obligations.assess(obligation_id)
    _check_donor_scope(current_user, obligation["donor_id"])
    return {"ok": True, "obligation": obligation}

@router.patch("/{obligation_id}/extend")
async def extend_obligation(obligation_id: str, current_user: dict = Depends(require_donor)):
    donor_id = None if current_user["role"] == ActorRole.ADMIN.value else current_user["id"]
    obligation = await obligations.extend_obligation(obligation_id, donor_id=donor_id)
    return {
        "ok": True,
        "message": "Extension granted",
        "new_due_date": obligation["due_date"],
        "obligation": obligation,
    }

@router.post("/{obligation_id}/returns")
async def create_return_request(obligation_id: str, current_user: dict = Depends(require_donor)):
    return_request = await obligations.request_return(obligation_id, current_user["id"])
    return {"ok": True, "message": "Return request submitted", "return_request": return_request}

# Returns
@return_router.patch("/{return_request_id}")
async def verify_return_request(
    return_request_id: str,
    data: ReturnVerify,
    current_user: dict = Depends(require_hospital)
):
    result = await obligations.verify_return(
        return_request_id,
        current_user["id"],
        data.decision,
        declared_unit_ids=data.declared_unit_ids,
        declared_expiry=data.declared_expiry,
        declared_blood_group=data.declared_blood_group,
        comments=data.comments,
    )
    return {"ok": True, **result}
