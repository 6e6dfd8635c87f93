from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from ..backend import Backend, get_backend
from ..errors import ValidationError
from ..identity import Identity, get_identity, require_role
from ..schemas.listings import ApprovalStatus, SortKey, SortOrder, SortSpec

router = APIRouter()


@router.get("/listings")
async def listings_for_review(
    approvalStatus: Optional[ApprovalStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sortBy: SortKey = "createdAt",
    sortOrder: SortOrder = "desc",
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    sort = SortSpec(sortBy=sortBy, sortOrder=sortOrder)
    return await backend.moderation.list_for_review(caller, approvalStatus, page, limit, sort)


@router.put("/listings")
async def decide_listing(
    payload: dict = Body(...),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    # Checked before reading the body so non-admins get the same answer for every listing id
    require_role(caller)
    listing_id = payload.get("listingId")
    action = payload.get("action")
    if not listing_id or not action:
        raise ValidationError("Missing required fields: listingId and action")
    listing = await backend.moderation.decide(str(listing_id), caller, str(action), payload.get("rejectionReason"))
    verb = "approved" if listing["approvalStatus"] == "approved" else "rejected"
    return {"listing": listing, "message": f"Listing {verb} successfully"}


@router.get("/listings/breakdown")
async def status_breakdown(caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    require_role(caller)
    return {"statusBreakdown": await backend.moderation.status_breakdown()}


@router.post("/listings/{listing_id}/reopen")
async def reopen_listing(listing_id: str, caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    return await backend.moderation.reopen(listing_id, caller)


@router.get("/listings/{listing_id}/history")
async def listing_history(listing_id: str, caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    return {"items": await backend.moderation.history(listing_id, caller)}
