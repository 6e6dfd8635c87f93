from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from ..backend import Backend, get_backend
from ..errors import UpstreamCollaboratorFailure, validate_model
from ..identity import Identity, get_identity, get_optional_identity
from ..schemas.listings import (
    ApprovalStatus,
    Category,
    Condition,
    ListingFilters,
    PriceSuggestionRequest,
    PricingType,
    SortKey,
    SortOrder,
    SortSpec,
    Status,
)

router = APIRouter()


@router.get("")
async def query_listings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[Category] = None,
    subCategory: Optional[str] = None,
    university: Optional[str] = None,
    status: Status = "active",
    pricingType: Optional[PricingType] = None,
    condition: Optional[Condition] = None,
    sellerId: Optional[str] = None,
    search: Optional[str] = None,
    minPrice: Optional[float] = Query(None, ge=0),
    maxPrice: Optional[float] = Query(None, ge=0),
    approvalStatus: Optional[ApprovalStatus] = None,
    sortBy: SortKey = "createdAt",
    sortOrder: SortOrder = "desc",
    caller: Optional[Identity] = Depends(get_optional_identity),
    backend: Backend = Depends(get_backend),
):
    filters = validate_model(ListingFilters, {
        "category": category,
        "subCategory": subCategory,
        "university": university,
        "status": status,
        "pricingType": pricingType,
        "condition": condition,
        "sellerId": sellerId,
        "search": search,
        "minPrice": minPrice,
        "maxPrice": maxPrice,
        "approvalStatus": approvalStatus,
    })
    sort = SortSpec(sortBy=sortBy, sortOrder=sortOrder)
    return await backend.listings.query(filters, sort, page, limit, caller)


@router.get("/mine")
async def my_listings(
    includeRemoved: bool = False,
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    items = await backend.listings.list_owned(caller.identity_id, include_removed=includeRemoved)
    return {"items": items}


@router.post("", status_code=201)
async def create_listing(
    payload: dict = Body(...),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    return await backend.listings.create(caller, payload)


@router.post("/suggest-price")
async def suggest_price(
    payload: dict = Body(...),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    advisor = backend.listings.advisor
    if advisor is None:
        raise UpstreamCollaboratorFailure("price suggestions are not configured")
    req = validate_model(PriceSuggestionRequest, payload)
    return await advisor.suggest_price(req.title, description=req.description, condition=req.condition, image_url=req.imageUrl)


@router.get("/{listing_id}")
async def get_listing(
    listing_id: str,
    caller: Optional[Identity] = Depends(get_optional_identity),
    backend: Backend = Depends(get_backend),
):
    return await backend.listings.get_visible(listing_id, caller)


@router.patch("/{listing_id}")
async def update_listing(
    listing_id: str,
    payload: dict = Body(...),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    return await backend.listings.update_owned(listing_id, caller.identity_id, payload)


@router.delete("/{listing_id}")
async def delete_listing(
    listing_id: str,
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    listing = await backend.listings.soft_delete(listing_id, caller.identity_id)
    return {"ok": True, "id": listing["id"], "status": listing["status"]}
