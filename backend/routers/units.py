from fastapi import APIRouter, Depends
from typing import Optional

from models import BloodUnitCreate, UnitIssue
from services import ledger
from services import get_current_user, require_hospital

router = APIRouter(prefix="/units", tags=["Blood Units"])
ledger_router = APIRouter(prefix="/ledger", tags=["Ledger"])

@router.post("")
async def create_blood_unit(unit_data: BloodUnitCreate, current_user: dict = Depends(require_hospital)):
    unit = await ledger.intake_unit(current_user["id"], unit_data)
    return {"ok": True, "bag_id": unit["bag_id"], "id": unit["id"], "unit": unit}

@router.get("")
async def get_blood_units(
    status: Optional[str] = None,
    blood_group: Optional[str] = None,
    current_user: dict = Depends(require_hospital)
):
    units = await ledger.list_units(current_user["id"], status=status, blood_group=blood_group)
    return {"ok": True, "units": units}

@router.post("/{bag_id}/issue")
async def issue_blood_unit(bag_id: str, data: UnitIssue, current_user: dict = Depends(require_hospital)):
    unit = await ledger.mark_unit_issued(bag_id, data.request_id, actor_id=current_user["id"])
    return {"ok": True, "unit": unit}

# Ledger
@ledger_router.get("")
async def get_ledger_entries(limit: int = 50, current_user: dict = Depends(get_current_user)):
    entries = await ledger.list_entries(current_user["id"], limit=min(max(limit, 1), 200))
    return {"ok": True, "entries": entries}
