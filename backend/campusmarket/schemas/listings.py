from typing import Any, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..config import get_list_setting

Category = Literal["item", "service"]
PricingType = Literal["fixed", "bidding", "hourly"]
Condition = Literal["new", "likeNew", "good", "fair", "poor"]
Visibility = Literal["university", "all"]
Status = Literal["active", "sold", "expired", "removed"]
OwnerStatus = Literal["active", "sold", "expired"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
SortKey = Literal["createdAt", "updatedAt", "price", "title", "views"]
SortOrder = Literal["asc", "desc"]


def normalize_tags(v: Any) -> List[str]:
    """Accept a list or a comma separated string; trim, drop empties, keep first occurrence."""
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    if not isinstance(v, (list, tuple)):
        raise ValueError("tags must be a list or a comma separated string")
    out: List[str] = []
    for t in v:
        s = str(t).strip()
        if s and s not in out:
            out.append(s)
    return out


def check_image_uri(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"Invalid image URI: {uri}")
    allowed = get_list_setting("MEDIA_ALLOWED_HOSTS")
    if allowed and parsed.hostname not in allowed:
        raise ValueError(f"Image host not allowed: {parsed.hostname}")
    return uri


class _ListingContent(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("tags", mode="before", check_fields=False)
    @classmethod
    def _tags(cls, v: Any) -> Any:
        return normalize_tags(v)

    @field_validator("images", check_fields=False)
    @classmethod
    def _images(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [check_image_uri(u) for u in v]


class ListingCreate(_ListingContent):
    # Server-owned fields (status, approval, seller) are ignored if a client sends them
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=2000)
    category: Category
    subCategory: str = Field(min_length=1)
    price: float = Field(ge=0, allow_inf_nan=False)
    pricingType: PricingType
    condition: Optional[Condition] = None
    images: List[str] = []
    visibility: Visibility = "university"
    tags: List[str] = []

    @model_validator(mode="after")
    def _per_category(self) -> "ListingCreate":
        if self.category == "item":
            if not self.images:
                raise ValueError("At least one image is required")
            if self.condition is None:
                raise ValueError("Condition is required for items")
        else:
            self.condition = None
        return self


class ListingUpdate(_ListingContent):
    """Owner-editable content fields. Anything else (approval fields included) is rejected."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    subCategory: Optional[str] = Field(default=None, min_length=1)
    price: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    pricingType: Optional[PricingType] = None
    condition: Optional[Condition] = None
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    visibility: Optional[Visibility] = None
    status: Optional[OwnerStatus] = None


class ListingFilters(BaseModel):
    category: Optional[Category] = None
    subCategory: Optional[str] = None
    university: Optional[str] = None
    status: Status = "active"
    pricingType: Optional[PricingType] = None
    condition: Optional[Condition] = None
    sellerId: Optional[str] = None
    search: Optional[str] = None
    minPrice: Optional[float] = Field(default=None, ge=0)
    maxPrice: Optional[float] = Field(default=None, ge=0)
    # Honoured for admins only; everyone else is pinned to "approved"
    approvalStatus: Optional[ApprovalStatus] = None


class SortSpec(BaseModel):
    sortBy: SortKey = "createdAt"
    sortOrder: SortOrder = "desc"


class PriceSuggestionRequest(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    condition: Optional[str] = None
    imageUrl: Optional[str] = None
