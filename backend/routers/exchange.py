from fastapi import APIRouter, Depends
from typing import Optional

from services import exchange
from services import require_hospital

router = APIRouter(prefix="/exchange", tags=["Exchange"])

@router.get("/pool")
async def get_exchange_pool(blood_group: Optional[str] = None, current_user: dict = Depends(require_hospital)):
    units = await exchange.exchange_pool(blood_group=blood_group)
    # own listings are shown under /mine
    units = [u for u in units if u["current_owner_id"] != current_user["id"]]
    return {"ok": True, "units": units}

@router.get("/mine")
async def get_my_listings(current_user: dict = Depends(require_hospital)):
    units = await exchange.my_listings(current_user["id"])
    return {"ok": True, "units": units}

@router.get("/metrics")
async def get_wastage_metrics(current_user: dict = Depends(require_hospital)):
    metrics = await exchange.wastage_metrics(current_user["id"])
    return {"ok": True, **metrics}

@router.get("/{bag_id}/eligibility")
async def get_eligibility(bag_id: str, current_user: dict = Depends(require_hospital)):
    result = await exchange.eligibility_for(bag_id)
    return {"ok": True, "bag_id": bag_id, **result.model_dump()}

@router.post("/{bag_id}/list")
async def list_for_exchange(bag_id: str, current_user: dict = Depends(require_hospital)):
    unit = await exchange.list_unit(bag_id, current_user["id"])
    return {"ok": True, "unit": unit}

@router.post("/{bag_id}/transfer")
async def claim_listing(bag_id: str, current_user: dict = Depends(require_hospital)):
    result = await exchange.transfer_unit(bag_id, current_user["id"])
    return {"ok": True, **result}
