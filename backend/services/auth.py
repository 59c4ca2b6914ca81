"""
Caller identity.
Authentication happens upstream; the gateway forwards the verified actor as
X-Actor-Id / X-Actor-Role headers and this module only reads them.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from models import ActorRole


async def get_current_user(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> dict:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown actor role '{x_actor_role}'")
    return {"id": x_actor_id.strip(), "role": role.value}


def require_role(*roles: ActorRole):
    """Dependency factory; admins pass every role check."""
    allowed = {r.value for r in roles} | {ActorRole.ADMIN.value}

    async def checker(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user["role"] not in allowed:
            names = " or ".join(r.value for r in roles)
            raise HTTPException(status_code=403, detail=f"Only {names} actors can perform this action")
        return current_user

    return checker


require_donor = require_role(ActorRole.DONOR)
require_hospital = require_role(ActorRole.HOSPITAL)
