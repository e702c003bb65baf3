from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["misc"])


@router.get("/api/ping")
async def ping():
    return {"ok": True}
