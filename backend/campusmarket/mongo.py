import os
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

MONGODB_URI = os.getenv("MONGODB_URI")
MONGODB_DB_NAME = os.getenv("MONGODB_DB_NAME", "campusmarket")

LISTINGS = "listings"
CONVERSATIONS = "conversations"
MESSAGES = "messages"
USERS = "users"
ADMIN_ACTIONS = "admin_actions"

# Allow disabling Mongo for local/dev runs by setting MONGO_ENABLED=false
_MONGO_ENABLED = os.getenv("MONGO_ENABLED", "true").lower() in {"1", "true", "yes"}

_mongo_client: Optional[AsyncIOMotorClient] = (
    AsyncIOMotorClient(MONGODB_URI, tz_aware=True) if (MONGODB_URI and _MONGO_ENABLED) else None
)


def mongo_enabled() -> bool:
    return _mongo_client is not None


async def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    if _mongo_client is None:
        return None
    return _mongo_client[MONGODB_DB_NAME]


def close_mongo() -> None:
    if _mongo_client is not None:
        _mongo_client.close()


async def ensure_indexes(mdb: AsyncIOMotorDatabase) -> None:
    listings = mdb[LISTINGS]
    await listings.create_index([("category", 1), ("subCategory", 1)])
    await listings.create_index([("sellerId", 1)])
    await listings.create_index([("sellerUniversity", 1)])
    await listings.create_index([("status", 1), ("approvalStatus", 1), ("visibility", 1)])
    await listings.create_index([("createdAt", -1)])
    await listings.create_index([("locations", "2dsphere")])

    conv = mdb[CONVERSATIONS]
    # Unique conversation: participantsKey + listingId
    await conv.create_index([("participantsKey", 1), ("listingId", 1)], unique=True, name="unique_convo")
    await conv.create_index([("participants", 1), ("lastMessageAt", -1)], name="participant_recent")

    msg = mdb[MESSAGES]
    await msg.create_index([("conversationId", 1), ("createdAt", -1), ("_id", -1)], name="convo_cursor_desc")

    await mdb[USERS].create_index([("userId", 1)], unique=True)
