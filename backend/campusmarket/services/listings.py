import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument

from ..documents import new_id, oid, to_public, utcnow
from ..errors import Conflict, Forbidden, NotFound, UpstreamCollaboratorFailure, ValidationError, validate_model
from ..identity import Identity, is_admin
from ..mongo import LISTINGS
from ..schemas.listings import ListingCreate, ListingFilters, ListingUpdate, SortSpec
from .geo import sanitize_locations
from .listing_query import (
    ListingCriteria,
    breakdown_pipeline,
    build_criteria,
    compute_breakdown,
    compute_stats,
    finish_stats,
    mongo_sort,
    pagination,
    sort_documents,
    stats_pipeline,
)

log = logging.getLogger("uvicorn.error")

CONTENT_FIELDS = ("title", "description", "category", "subCategory", "price", "pricingType",
                  "condition", "images", "visibility", "tags")


class MemoryListingRepository:
    """Process-local listing storage used when MongoDB is not configured."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc, _id=new_id())
        self._docs[doc["_id"]] = doc
        return copy.deepcopy(doc)

    async def get(self, listing_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(listing_id)
        return copy.deepcopy(doc) if doc else None

    async def update(
        self,
        listing_id: str,
        set_fields: Dict[str, Any],
        unset_fields: Iterable[str] = (),
        expect: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply one update to one document; None when missing or `expect` does not hold."""
        doc = self._docs.get(listing_id)
        if doc is None:
            return None
        if expect and any(doc.get(k) != v for k, v in expect.items()):
            return None
        doc.update(copy.deepcopy(set_fields))
        for k in unset_fields:
            doc.pop(k, None)
        return copy.deepcopy(doc)

    async def increment_views(self, listing_id: str) -> None:
        doc = self._docs.get(listing_id)
        if doc is not None:
            doc["views"] = int(doc.get("views") or 0) + 1

    def _matching(self, criteria: ListingCriteria) -> List[Dict[str, Any]]:
        return [d for d in self._docs.values() if criteria.matches(d)]

    async def find(self, criteria: ListingCriteria, sort: SortSpec, skip: int, limit: int) -> List[Dict[str, Any]]:
        docs = sort_documents(self._matching(criteria), sort)
        return copy.deepcopy(docs[skip:skip + limit])

    async def count(self, criteria: ListingCriteria) -> int:
        return len(self._matching(criteria))

    async def stats(self, criteria: ListingCriteria) -> Dict[str, Any]:
        return compute_stats(self._matching(criteria))

    async def category_breakdown(self, criteria: ListingCriteria) -> List[Dict[str, Any]]:
        return compute_breakdown(self._matching(criteria))

    async def approval_breakdown(self) -> List[Dict[str, Any]]:
        counts: Dict[str, int] = {}
        for d in self._docs.values():
            key = d.get("approvalStatus") or "pending"
            counts[key] = counts.get(key, 0) + 1
        return [{"approvalStatus": k, "count": v} for k, v in counts.items()]


class MongoListingRepository:
    def __init__(self, mdb) -> None:
        self.coll = mdb[LISTINGS]

    @staticmethod
    def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is not None:
            doc["_id"] = str(doc["_id"])
        return doc

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        res = await self.coll.insert_one(doc)
        doc["_id"] = str(res.inserted_id)
        return doc

    async def get(self, listing_id: str) -> Optional[Dict[str, Any]]:
        return self._out(await self.coll.find_one({"_id": oid(listing_id)}))

    async def update(
        self,
        listing_id: str,
        set_fields: Dict[str, Any],
        unset_fields: Iterable[str] = (),
        expect: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        q: Dict[str, Any] = {"_id": oid(listing_id)}
        q.update(expect or {})
        update: Dict[str, Any] = {"$set": set_fields}
        unset = {k: "" for k in unset_fields}
        if unset:
            update["$unset"] = unset
        doc = await self.coll.find_one_and_update(q, update, return_document=ReturnDocument.AFTER)
        return self._out(doc)

    async def increment_views(self, listing_id: str) -> None:
        await self.coll.update_one({"_id": oid(listing_id)}, {"$inc": {"views": 1}})

    async def find(self, criteria: ListingCriteria, sort: SortSpec, skip: int, limit: int) -> List[Dict[str, Any]]:
        cursor = self.coll.find(criteria.to_mongo()).sort(mongo_sort(sort)).skip(skip).limit(limit)
        return [self._out(d) async for d in cursor]

    async def count(self, criteria: ListingCriteria) -> int:
        return await self.coll.count_documents(criteria.to_mongo())

    async def stats(self, criteria: ListingCriteria) -> Dict[str, Any]:
        rows = await self.coll.aggregate(stats_pipeline(criteria.to_mongo())).to_list(length=1)
        return finish_stats(rows[0] if rows else None)

    async def category_breakdown(self, criteria: ListingCriteria) -> List[Dict[str, Any]]:
        rows = await self.coll.aggregate(breakdown_pipeline(criteria.to_mongo())).to_list(length=None)
        return [{"category": r["_id"], "count": r["count"], "averagePrice": r["averagePrice"]} for r in rows]

    async def approval_breakdown(self) -> List[Dict[str, Any]]:
        pipeline = [{"$group": {"_id": {"$ifNull": ["$approvalStatus", "pending"]}, "count": {"$sum": 1}}}]
        rows = await self.coll.aggregate(pipeline).to_list(length=None)
        return [{"approvalStatus": r["_id"], "count": r["count"]} for r in rows]


class ListingStore:
    def __init__(self, repo, advisor=None) -> None:
        self.repo = repo
        self.advisor = advisor

    async def _suggestion(self, payload: ListingCreate) -> Optional[Dict[str, Any]]:
        if self.advisor is None:
            return None
        try:
            return await self.advisor.suggest_price(
                payload.title,
                description=payload.description,
                condition=payload.condition,
                image_url=payload.images[0] if payload.images else None,
            )
        except UpstreamCollaboratorFailure as e:
            log.warning("Price suggestion skipped: %s", e.message)
            return None

    async def create(self, owner: Identity, attrs: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(attrs, dict):
            raise ValidationError("listing body must be an object")
        payload = validate_model(ListingCreate, attrs)
        locations = sanitize_locations(attrs.get("locations"))
        now = utcnow()
        doc: Dict[str, Any] = payload.model_dump()
        doc.update({
            "sellerId": owner.identity_id,
            "sellerUniversity": owner.university or "Unknown University",
            "status": "active",
            "approvalStatus": "pending",
            "locations": locations,
            "views": 0,
            "createdAt": now,
            "updatedAt": now,
        })
        suggestion = await self._suggestion(payload)
        if suggestion:
            doc["priceSuggestion"] = suggestion
        created = await self.repo.insert(doc)
        log.info("Listing %s created by %s (pending review)", created["_id"], owner.identity_id)
        return to_public(created)

    async def query(
        self,
        filters: ListingFilters,
        sort: SortSpec,
        page: int,
        page_size: int,
        caller: Optional[Identity],
    ) -> Dict[str, Any]:
        if page < 1 or not 1 <= page_size <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        criteria = build_criteria(filters, caller)
        docs = await self.repo.find(criteria, sort, (page - 1) * page_size, page_size)
        total = await self.repo.count(criteria)
        return {
            "listings": [to_public(d) for d in docs],
            "pagination": pagination(page, page_size, total),
            "stats": await self.repo.stats(criteria),
            "categoryBreakdown": await self.repo.category_breakdown(criteria),
            "filters": dict(filters.model_dump(exclude_none=True), **sort.model_dump()),
        }

    async def _load(self, listing_id: str) -> Dict[str, Any]:
        doc = await self.repo.get(listing_id)
        if doc is None:
            raise NotFound("Listing not found")
        return doc

    async def get_by_id(self, listing_id: str) -> Dict[str, Any]:
        return to_public(await self._load(listing_id))

    async def get_visible(self, listing_id: str, caller: Optional[Identity]) -> Dict[str, Any]:
        """Read path for callers: owners and admins see every state, others only live approved listings."""
        doc = await self._load(listing_id)
        owner = caller is not None and caller.identity_id == doc.get("sellerId")
        if owner or is_admin(caller):
            return to_public(doc)
        if doc.get("approvalStatus") != "approved" or doc.get("status") == "removed":
            raise NotFound("Listing not found")
        if doc.get("visibility") == "university" and (caller is None or caller.university != doc.get("sellerUniversity")):
            raise NotFound("Listing not found")
        await self.repo.increment_views(listing_id)
        doc["views"] = int(doc.get("views") or 0) + 1
        return to_public(doc)

    async def update_owned(self, listing_id: str, caller_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(patch, dict):
            raise ValidationError("update body must be an object")
        doc = await self._load(listing_id)
        if doc.get("sellerId") != caller_id:
            raise Forbidden("You can only edit your own listings")
        changes = validate_model(ListingUpdate, patch).model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("No valid updates provided")
        if doc.get("status") == "removed":
            raise Conflict("Listing has been removed")
        status = changes.pop("status", None)
        merged = {k: doc.get(k) for k in CONTENT_FIELDS}
        merged.update(changes)
        content = validate_model(ListingCreate, merged).model_dump()
        set_fields = {k: content[k] for k in changes}
        if status:
            set_fields["status"] = status
        set_fields["updatedAt"] = utcnow()
        updated = await self.repo.update(listing_id, set_fields)
        if updated is None:
            raise NotFound("Listing not found")
        return to_public(updated)

    async def soft_delete(self, listing_id: str, caller_id: str) -> Dict[str, Any]:
        doc = await self._load(listing_id)
        if doc.get("sellerId") != caller_id:
            raise Forbidden("You can only delete your own listings")
        if doc.get("status") == "removed":
            return to_public(doc)
        updated = await self.repo.update(listing_id, {"status": "removed", "updatedAt": utcnow()})
        if updated is None:
            raise NotFound("Listing not found")
        return to_public(updated)

    async def list_owned(self, owner_id: str, include_removed: bool = False) -> List[Dict[str, Any]]:
        criteria = ListingCriteria(
            equals={"sellerId": owner_id},
            exclude_statuses=() if include_removed else ("removed",),
        )
        docs = await self.repo.find(criteria, SortSpec(), 0, 1000)
        return [to_public(d) for d in docs]
