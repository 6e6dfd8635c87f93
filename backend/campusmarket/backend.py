import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Request

from .config import load_server_config_from_mongo, strict_transitions
from .identity import MemoryUserDirectory, MongoUserDirectory
from .mongo import ensure_indexes, get_mongo_db, mongo_enabled
from .services.advisor import advisor_from_settings
from .services.conversations import ConversationStore, MemoryConversationRepository, MongoConversationRepository
from .services.listings import ListingStore, MemoryListingRepository, MongoListingRepository
from .services.moderation import MemoryAdminActionLog, ModerationPipeline, MongoAdminActionLog

logger = logging.getLogger("uvicorn.error")


@dataclass
class Backend:
    kind: str
    listings: ListingStore
    moderation: ModerationPipeline
    conversations: ConversationStore
    users: Any
    mdb: Any = None


def memory_backend(advisor=None, strict: Optional[bool] = None) -> Backend:
    listing_repo = MemoryListingRepository()
    users = MemoryUserDirectory()
    return Backend(
        kind="memory",
        listings=ListingStore(listing_repo, advisor=advisor),
        moderation=ModerationPipeline(
            listing_repo,
            audit=MemoryAdminActionLog(),
            strict=strict_transitions() if strict is None else strict,
        ),
        conversations=ConversationStore(MemoryConversationRepository(), users=users),
        users=users,
    )


async def mongo_backend(mdb, advisor=None, strict: Optional[bool] = None) -> Backend:
    await ensure_indexes(mdb)
    listing_repo = MongoListingRepository(mdb)
    users = MongoUserDirectory(mdb)
    return Backend(
        kind="mongo",
        listings=ListingStore(listing_repo, advisor=advisor),
        moderation=ModerationPipeline(
            listing_repo,
            audit=MongoAdminActionLog(mdb),
            strict=strict_transitions() if strict is None else strict,
        ),
        conversations=ConversationStore(MongoConversationRepository(mdb), users=users),
        users=users,
        mdb=mdb,
    )


async def select_backend() -> Backend:
    """Prefer MongoDB when configured and reachable, else fall back to in-memory storage."""
    if mongo_enabled():
        try:
            mdb = await get_mongo_db()
            if mdb is None:
                raise RuntimeError("Mongo client not available")
            await mdb.command("ping")
            # Runtime config first: it can change moderation strictness and the advisor URL
            try:
                await load_server_config_from_mongo(mdb)
            except Exception as ce:
                logger.warning("Loading server config failed: %s", ce)
            backend = await mongo_backend(mdb, advisor=advisor_from_settings())
            logger.info("Database connected: MongoDB")
            return backend
        except Exception as e:
            logger.warning("MongoDB unavailable, using in-memory storage: %s", e)
    else:
        logger.info("MongoDB not configured, using in-memory storage")
    return memory_backend(advisor=advisor_from_settings())


def get_backend(request: Request) -> Backend:
    return request.app.state.backend
