"""Listing predicate construction.

A `ListingCriteria` is built once per request from the client filters and the
resolved caller, and can be rendered as a Mongo filter or evaluated directly
against a document (memory backend). The approval and visibility constraints
are added here from the caller's role, never read from the request.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..identity import Identity, is_admin
from ..schemas.listings import ListingFilters, SortSpec

EQUALITY_FIELDS = {
    "category": "category",
    "subCategory": "subCategory",
    "university": "sellerUniversity",
    "pricingType": "pricingType",
    "condition": "condition",
    "sellerId": "sellerId",
}


@dataclass
class ListingCriteria:
    equals: Dict[str, Any] = field(default_factory=dict)
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    search: Optional[str] = None
    restrict_visibility: bool = False
    caller_university: Optional[str] = None
    exclude_statuses: Tuple[str, ...] = ()

    @property
    def search_terms(self) -> List[str]:
        return [t for t in (self.search or "").split() if t]

    def to_mongo(self) -> Dict[str, Any]:
        q: Dict[str, Any] = dict(self.equals)
        if self.exclude_statuses and "status" not in q:
            q["status"] = {"$nin": list(self.exclude_statuses)}
        if self.min_price is not None or self.max_price is not None:
            price: Dict[str, float] = {}
            if self.min_price is not None:
                price["$gte"] = self.min_price
            if self.max_price is not None:
                price["$lte"] = self.max_price
            q["price"] = price
        ors: List[Dict[str, Any]] = []
        if self.search:
            pattern = re.escape(self.search)
            ors.append({"$or": [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
                {"tags": {"$in": [re.compile(re.escape(t), re.IGNORECASE) for t in self.search_terms]}},
            ]})
        if self.restrict_visibility:
            if self.caller_university:
                ors.append({"$or": [
                    {"visibility": "all"},
                    {"visibility": "university", "sellerUniversity": self.caller_university},
                ]})
            else:
                q["visibility"] = "all"
        if len(ors) == 1:
            q.update(ors[0])
        elif ors:
            q["$and"] = ors
        return q

    def matches(self, doc: Dict[str, Any]) -> bool:
        for k, v in self.equals.items():
            if doc.get(k) != v:
                return False
        if doc.get("status") in self.exclude_statuses:
            return False
        price = doc.get("price")
        if self.min_price is not None and (price is None or price < self.min_price):
            return False
        if self.max_price is not None and (price is None or price > self.max_price):
            return False
        if self.search and not self._matches_search(doc):
            return False
        if self.restrict_visibility:
            vis = doc.get("visibility")
            if vis == "all":
                return True
            if not self.caller_university:
                return False
            return vis == "university" and doc.get("sellerUniversity") == self.caller_university
        return True

    def _matches_search(self, doc: Dict[str, Any]) -> bool:
        needle = self.search.lower()
        if needle in str(doc.get("title") or "").lower():
            return True
        if needle in str(doc.get("description") or "").lower():
            return True
        tags = [str(t).lower() for t in doc.get("tags") or []]
        return any(term.lower() in tag for term in self.search_terms for tag in tags)


def build_criteria(filters: ListingFilters, caller: Optional[Identity]) -> ListingCriteria:
    admin = is_admin(caller)
    status = filters.status
    if not admin and status == "removed":
        # soft-deleted listings are owner/admin only, like unapproved ones
        status = "active"
    equals: Dict[str, Any] = {"status": status}
    if admin:
        if filters.approvalStatus:
            equals["approvalStatus"] = filters.approvalStatus
    else:
        equals["approvalStatus"] = "approved"
    for name, db_field in EQUALITY_FIELDS.items():
        value = getattr(filters, name)
        if value:
            equals[db_field] = value
    search = (filters.search or "").strip() or None
    return ListingCriteria(
        equals=equals,
        min_price=filters.minPrice,
        max_price=filters.maxPrice,
        search=search,
        restrict_visibility=not admin,
        caller_university=caller.university if caller else None,
    )


def mongo_sort(sort: SortSpec) -> List[Tuple[str, int]]:
    direction = 1 if sort.sortOrder == "asc" else -1
    return [(sort.sortBy, direction), ("_id", direction)]


def sort_documents(docs: List[Dict[str, Any]], sort: SortSpec) -> List[Dict[str, Any]]:
    def key(d: Dict[str, Any]):
        v = d.get(sort.sortBy)
        # missing values sort first ascending, like Mongo's null ordering
        return (v is not None, v if v is not None else 0, str(d.get("_id")))

    return sorted(docs, key=key, reverse=sort.sortOrder == "desc")


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }


def empty_stats() -> Dict[str, Any]:
    return {
        "totalListings": 0,
        "averagePrice": 0,
        "minPrice": 0,
        "maxPrice": 0,
        "categories": [],
        "universities": [],
    }


def stats_pipeline(match: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"$match": match},
        {"$group": {
            "_id": None,
            "totalListings": {"$sum": 1},
            "averagePrice": {"$avg": "$price"},
            "minPrice": {"$min": "$price"},
            "maxPrice": {"$max": "$price"},
            "categories": {"$addToSet": "$category"},
            "universities": {"$addToSet": "$sellerUniversity"},
        }},
    ]


def breakdown_pipeline(match: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"$match": match},
        {"$group": {"_id": "$category", "count": {"$sum": 1}, "averagePrice": {"$avg": "$price"}}},
        {"$sort": {"count": -1, "_id": 1}},
    ]


def finish_stats(row: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not row:
        return empty_stats()
    row = dict(row)
    row.pop("_id", None)
    row["categories"] = sorted(c for c in row.get("categories") or [] if c is not None)
    row["universities"] = sorted(u for u in row.get("universities") or [] if u is not None)
    return row


def compute_stats(docs: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not docs:
        return empty_stats()
    prices = [d["price"] for d in docs if d.get("price") is not None]
    return finish_stats({
        "totalListings": len(docs),
        "averagePrice": sum(prices) / len(prices) if prices else None,
        "minPrice": min(prices) if prices else None,
        "maxPrice": max(prices) if prices else None,
        "categories": list({d.get("category") for d in docs}),
        "universities": list({d.get("sellerUniversity") for d in docs}),
    })


def compute_breakdown(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    groups: Dict[Any, List[float]] = {}
    for d in docs:
        groups.setdefault(d.get("category"), []).append(d.get("price") or 0)
    rows = [
        {"category": cat, "count": len(prices), "averagePrice": sum(prices) / len(prices)}
        for cat, prices in groups.items()
    ]
    rows.sort(key=lambda r: (-r["count"], str(r["category"])))
    return rows
