from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from fanbilling.auth.deps import require_artist
from fanbilling.models import TierCreateReq
from fanbilling.services import tiers

router = APIRouter(tags=["artist"])


@router.post("/api/artist/tiers")
def create_tier(body: TierCreateReq, principal=Depends(require_artist)) -> Dict[str, Any]:
    tier = tiers.create_tier(
        principal["user_sub"],
        body.name,
        body.description,
        body.minimum_price,
        artist_email=principal.get("email"),
    )
    return {"tier": tier}


@router.get("/api/artist/tiers")
def list_tiers(principal=Depends(require_artist)) -> Dict[str, Any]:
    return {"tiers": tiers.list_tiers(principal["user_sub"])}
