"""Admin approval state machine for listings.

    pending --approve--> approved
    pending --reject---> rejected
    approved|rejected --reopen--> pending

In permissive mode (the default) a decided listing may be decided again and
the new decision overwrites the old one. Strict mode only lets decisions
leave ``pending``; anything else is a Conflict.
"""
import copy
import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from ..documents import new_id, to_public, utcnow
from ..errors import Conflict, InvalidAction, NotFound, ValidationError
from ..identity import ADMIN_ROLES, Identity, require_role
from ..mongo import ADMIN_ACTIONS
from ..schemas.listings import SortSpec
from .listing_query import ListingCriteria, pagination

log = logging.getLogger("uvicorn.error")

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
APPROVAL_STATES = (PENDING, APPROVED, REJECTED)
ACTIONS = {"approve": APPROVED, "reject": REJECTED}


def can_transition(current: Optional[str], target: str, strict: bool = True) -> bool:
    current = current or PENDING
    if target == PENDING:
        return current in (APPROVED, REJECTED)
    if target not in (APPROVED, REJECTED):
        return False
    return current == PENDING or not strict


class MemoryAdminActionLog:
    def __init__(self) -> None:
        self._entries: List[Dict[str, Any]] = []

    async def record(self, entry: Dict[str, Any]) -> None:
        self._entries.append(dict(entry, _id=new_id()))

    async def for_target(self, target_id: str) -> List[Dict[str, Any]]:
        # newest first; entries are appended in time order
        return [copy.deepcopy(e) for e in reversed(self._entries) if e.get("targetId") == target_id]


class MongoAdminActionLog:
    def __init__(self, mdb) -> None:
        self.coll = mdb[ADMIN_ACTIONS]

    async def record(self, entry: Dict[str, Any]) -> None:
        await self.coll.insert_one(dict(entry))

    async def for_target(self, target_id: str) -> List[Dict[str, Any]]:
        cursor = self.coll.find({"targetId": target_id}).sort([("createdAt", -1), ("_id", -1)])
        return [d async for d in cursor]


class ModerationPipeline:
    def __init__(self, repo, audit=None, strict: bool = False) -> None:
        self.repo = repo
        self.audit = audit
        self.strict = strict

    async def _record(self, admin: Identity, action_type: str, listing_id: str, action: str, reason: Optional[str] = None) -> None:
        if self.audit is None:
            return
        entry = {
            "adminId": admin.identity_id,
            "actionType": action_type,
            "targetId": listing_id,
            "action": action,
            "reason": reason,
            "createdAt": utcnow(),
        }
        try:
            await self.audit.record(entry)
        except PyMongoError as e:
            log.warning("Admin action audit write failed for listing %s: %s", listing_id, e)

    async def decide(
        self,
        listing_id: str,
        admin: Optional[Identity],
        action: str,
        rejection_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        # Role first: a non-admin learns nothing about the listing
        admin = require_role(admin, ADMIN_ROLES)
        target = ACTIONS.get(action)
        if target is None:
            raise InvalidAction('Invalid action. Must be "approve" or "reject"')
        reason = str(rejection_reason or "").strip()
        if target == REJECTED and not reason:
            raise ValidationError("Rejection reason is required when rejecting a listing")

        doc = await self.repo.get(listing_id)
        if doc is None:
            raise NotFound("Listing not found")
        current = doc.get("approvalStatus") or PENDING
        if not can_transition(current, target, self.strict):
            raise Conflict(f"Listing is already {current}")

        now = utcnow()
        set_fields: Dict[str, Any] = {
            "approvalStatus": target,
            "approvedBy": admin.identity_id,
            "approvedAt": now,
            "updatedAt": now,
        }
        unset = ()
        if target == REJECTED:
            set_fields["rejectionReason"] = reason
        else:
            unset = ("rejectionReason",)
        expect = {"approvalStatus": current} if self.strict else None
        updated = await self.repo.update(listing_id, set_fields, unset_fields=unset, expect=expect)
        if updated is None:
            if self.strict:
                raise Conflict("Listing was reviewed by someone else")
            raise NotFound("Listing not found")

        log.info("Listing %s %s by %s", listing_id, target, admin.identity_id)
        await self._record(admin, "listing-approval", listing_id, action, reason if target == REJECTED else None)
        return to_public(updated)

    async def reopen(self, listing_id: str, admin: Optional[Identity]) -> Dict[str, Any]:
        """Send a decided listing back to review."""
        admin = require_role(admin, ADMIN_ROLES)
        doc = await self.repo.get(listing_id)
        if doc is None:
            raise NotFound("Listing not found")
        current = doc.get("approvalStatus") or PENDING
        if not can_transition(current, PENDING):
            raise Conflict("Listing is already pending review")
        updated = await self.repo.update(
            listing_id,
            {"approvalStatus": PENDING, "updatedAt": utcnow()},
            unset_fields=("approvedBy", "approvedAt", "rejectionReason"),
            expect={"approvalStatus": current},
        )
        if updated is None:
            raise Conflict("Listing was reviewed by someone else")
        log.info("Listing %s reopened for review by %s", listing_id, admin.identity_id)
        await self._record(admin, "listing-reopen", listing_id, "reopen")
        return to_public(updated)

    async def status_breakdown(self) -> List[Dict[str, Any]]:
        counts = {s: 0 for s in APPROVAL_STATES}
        for row in await self.repo.approval_breakdown():
            counts[row["approvalStatus"]] = counts.get(row["approvalStatus"], 0) + row["count"]
        return [{"approvalStatus": k, "count": v} for k, v in counts.items()]

    async def list_for_review(
        self,
        admin: Optional[Identity],
        approval_status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort: Optional[SortSpec] = None,
    ) -> Dict[str, Any]:
        require_role(admin, ADMIN_ROLES)
        if approval_status is not None and approval_status not in APPROVAL_STATES:
            raise ValidationError(f"approvalStatus must be one of {', '.join(APPROVAL_STATES)}")
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        sort = sort or SortSpec()
        criteria = ListingCriteria(equals={"approvalStatus": approval_status} if approval_status else {})
        docs = await self.repo.find(criteria, sort, (page - 1) * limit, limit)
        total = await self.repo.count(criteria)
        return {
            "listings": [to_public(d) for d in docs],
            "pagination": pagination(page, limit, total),
            "statusBreakdown": await self.status_breakdown(),
            "filters": {"approvalStatus": approval_status, **sort.model_dump()},
        }

    async def history(self, listing_id: str, admin: Optional[Identity]) -> List[Dict[str, Any]]:
        require_role(admin, ADMIN_ROLES)
        if self.audit is None:
            return []
        return [to_public(e) for e in await self.audit.for_target(listing_id)]
