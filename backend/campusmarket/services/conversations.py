from __future__ import annotations

import asyncio
import copy
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..documents import new_id, oid, to_public, utcnow
from ..errors import Forbidden, NotFound, ValidationError
from ..identity import public_profile
from ..mongo import CONVERSATIONS, MESSAGES
from ..schemas.listings import check_image_uri

log = logging.getLogger("uvicorn.error")


def participants_key(a: str, b: str) -> str:
    return "|".join(sorted([a, b]))


def summary_text(content: str, images: List[str]) -> str:
    if content:
        return content
    return f"📷 {len(images)} image(s)"


def page_window(page: int, page_size: int, total: int) -> Optional[Tuple[int, int]]:
    """Map a chronological page onto a newest-first (skip, limit) window.

    Page 1 holds the oldest messages, so concatenating pages 1..n gives the
    conversation in order. None when the page lies past the end.
    """
    start = (page - 1) * page_size
    if start >= total:
        return None
    end = min(page * page_size, total)
    return total - end, end - start


class MemoryConversationRepository:
    def __init__(self) -> None:
        self._convs: Dict[str, Dict[str, Any]] = {}
        self._messages: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def find_or_create(self, key: str, doc: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        # Lookup and insert happen under one lock so concurrent callers see a single conversation
        async with self._lock:
            for c in self._convs.values():
                if c["participantsKey"] == key and c.get("listingId") == doc.get("listingId"):
                    return copy.deepcopy(c), False
            doc = dict(doc, _id=new_id())
            self._convs[doc["_id"]] = doc
            self._messages[doc["_id"]] = []
            return copy.deepcopy(doc), True

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = self._convs.get(conversation_id)
        return copy.deepcopy(doc) if doc else None

    async def list_for(self, identity_id: str) -> List[Dict[str, Any]]:
        rows = [copy.deepcopy(c) for c in self._convs.values() if identity_id in c["participants"]]
        rows.sort(key=lambda c: c["lastMessageAt"], reverse=True)
        return rows

    async def update_summary(self, conversation_id: str, text: str, at: datetime) -> None:
        doc = self._convs.get(conversation_id)
        if doc is not None:
            doc.update({"lastMessage": text, "lastMessageAt": at, "updatedAt": at})

    async def insert_message(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc, _id=new_id())
        self._messages.setdefault(doc["conversationId"], []).append(doc)
        return copy.deepcopy(doc)

    async def count_messages(self, conversation_id: str) -> int:
        return len(self._messages.get(conversation_id, []))

    async def messages_newest_first(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        msgs = list(reversed(self._messages.get(conversation_id, [])))
        return copy.deepcopy(msgs[skip:skip + limit])

    async def latest_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        msgs = self._messages.get(conversation_id) or []
        return copy.deepcopy(msgs[-1]) if msgs else None

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        changed = 0
        for m in self._messages.get(conversation_id, []):
            if m["senderId"] != reader_id and not m["read"]:
                m["read"] = True
                changed += 1
        return changed

    async def count_unread(self, conversation_id: str, reader_id: str) -> int:
        return sum(1 for m in self._messages.get(conversation_id, []) if m["senderId"] != reader_id and not m["read"])


class MongoConversationRepository:
    def __init__(self, mdb) -> None:
        self.convs = mdb[CONVERSATIONS]
        self.msgs = mdb[MESSAGES]

    @staticmethod
    def _out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is not None:
            doc["_id"] = str(doc["_id"])
        return doc

    async def find_or_create(self, key: str, doc: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        q = {"participantsKey": key, "listingId": doc.get("listingId")}
        insert = {k: v for k, v in doc.items() if k not in q}
        try:
            before = await self.convs.find_one_and_update(
                q,
                {"$setOnInsert": insert},
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError:
            # Lost the upsert race against the unique index; the winner's document is there now
            before = await self.convs.find_one(q)
        if before is not None:
            return self._out(before), False
        return self._out(await self.convs.find_one(q)), True

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._out(await self.convs.find_one({"_id": oid(conversation_id)}))

    async def list_for(self, identity_id: str) -> List[Dict[str, Any]]:
        cursor = self.convs.find({"participants": identity_id}).sort("lastMessageAt", -1)
        return [self._out(d) async for d in cursor]

    async def update_summary(self, conversation_id: str, text: str, at: datetime) -> None:
        await self.convs.update_one(
            {"_id": oid(conversation_id)},
            {"$set": {"lastMessage": text, "lastMessageAt": at, "updatedAt": at}},
        )

    async def insert_message(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        res = await self.msgs.insert_one(doc)
        doc["_id"] = str(res.inserted_id)
        return doc

    async def count_messages(self, conversation_id: str) -> int:
        return await self.msgs.count_documents({"conversationId": conversation_id})

    async def messages_newest_first(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        cursor = (
            self.msgs.find({"conversationId": conversation_id})
            .sort([("createdAt", -1), ("_id", -1)])
            .skip(skip)
            .limit(limit)
        )
        return [self._out(d) async for d in cursor]

    async def latest_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.messages_newest_first(conversation_id, 0, 1)
        return rows[0] if rows else None

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        res = await self.msgs.update_many(
            {"conversationId": conversation_id, "senderId": {"$ne": reader_id}, "read": False},
            {"$set": {"read": True}},
        )
        return res.modified_count

    async def count_unread(self, conversation_id: str, reader_id: str) -> int:
        return await self.msgs.count_documents(
            {"conversationId": conversation_id, "senderId": {"$ne": reader_id}, "read": False}
        )


class ConversationStore:
    def __init__(self, repo, users=None) -> None:
        self.repo = repo
        self.users = users

    async def find_or_create(self, buyer_id: str, seller_id: str, listing_id: Optional[str] = None) -> Tuple[Dict[str, Any], bool]:
        if not buyer_id or not seller_id:
            raise ValidationError("buyerId and sellerId are required")
        if buyer_id == seller_id:
            raise ValidationError("Cannot start a conversation with yourself")
        key = participants_key(buyer_id, seller_id)
        now = utcnow()
        doc = {
            "participants": sorted([buyer_id, seller_id]),
            "participantsKey": key,
            "listingId": listing_id or None,
            "lastMessage": "",
            "lastMessageAt": now,
            "createdAt": now,
            "updatedAt": now,
        }
        conv, created = await self.repo.find_or_create(key, doc)
        if created:
            log.info("Conversation %s opened between %s (listing %s)", conv["_id"], key, listing_id)
        return to_public(conv), created

    async def get_for_participant(self, conversation_id: str, identity_id: str) -> Dict[str, Any]:
        conv = await self.repo.get(conversation_id)
        if conv is None:
            raise NotFound("Conversation not found")
        if identity_id not in conv.get("participants", []):
            raise Forbidden("Not a participant of this conversation")
        return conv

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        images: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        if content is not None and not isinstance(content, str):
            raise ValidationError("content must be a string")
        if images is not None and not isinstance(images, (list, tuple)):
            raise ValidationError("images must be a list of URIs")
        content = (content or "").strip()
        try:
            images = [check_image_uri(str(u)) for u in images or []]
        except ValueError as e:
            raise ValidationError(str(e))
        if not content and not images:
            raise ValidationError("Message must have either content or images")
        await self.get_for_participant(conversation_id, sender_id)

        now = utcnow()
        message = await self.repo.insert_message({
            "conversationId": conversation_id,
            "senderId": sender_id,
            "content": content,
            "images": images,
            "read": False,
            "createdAt": now,
        })
        # The summary is a cache over the message stream; the message stands even if this fails
        try:
            await self.repo.update_summary(conversation_id, summary_text(content, images), now)
        except PyMongoError as e:
            log.warning("Conversation %s summary update failed: %s", conversation_id, e)
        return to_public(message)

    async def list_messages(self, conversation_id: str, viewer_id: str, page: int = 1, page_size: int = 50) -> Dict[str, Any]:
        if page < 1 or not 1 <= page_size <= 200:
            raise ValidationError("page must be >= 1 and limit between 1 and 200")
        await self.get_for_participant(conversation_id, viewer_id)
        total = await self.repo.count_messages(conversation_id)
        window = page_window(page, page_size, total)
        items: List[Dict[str, Any]] = []
        if window is not None:
            items = await self.repo.messages_newest_first(conversation_id, *window)
            # Fetched newest-first; callers always get chronological order
            items.reverse()
        pages = math.ceil(total / page_size)
        return {
            "items": [to_public(m) for m in items],
            "pagination": {
                "page": page,
                "limit": page_size,
                "total": total,
                "pages": pages,
                "hasNext": page < pages,
                "hasPrev": page > 1,
            },
        }

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        await self.get_for_participant(conversation_id, reader_id)
        return await self.repo.mark_read(conversation_id, reader_id)

    async def list_for(self, identity_id: str) -> List[Dict[str, Any]]:
        out = []
        for conv in await self.repo.list_for(identity_id):
            row = to_public(conv)
            row["unreadCount"] = await self.repo.count_unread(conv["_id"], identity_id)
            other = next((p for p in conv["participants"] if p != identity_id), identity_id)
            profile = await self.users.get(other) if self.users is not None else None
            row["otherParticipant"] = public_profile(other, profile)
            out.append(row)
        return out

    async def rebuild_summary(self, conversation_id: str) -> Dict[str, Any]:
        """Recompute lastMessage/lastMessageAt from the stored messages."""
        conv = await self.repo.get(conversation_id)
        if conv is None:
            raise NotFound("Conversation not found")
        latest = await self.repo.latest_message(conversation_id)
        if latest is None:
            text, at = "", conv.get("createdAt") or utcnow()
        else:
            text, at = summary_text(latest.get("content") or "", latest.get("images") or []), latest["createdAt"]
        await self.repo.update_summary(conversation_id, text, at)
        return to_public(await self.repo.get(conversation_id))
