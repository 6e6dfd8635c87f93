from fastapi import APIRouter, Depends
from pymongo.errors import PyMongoError

from ..backend import Backend, get_backend
from ..realtime import RealtimeHub, get_hub

router = APIRouter()


@router.get("")
def root():
    return {"status": "ok"}


@router.get("/db")
async def db_health(backend: Backend = Depends(get_backend), hub: RealtimeHub = Depends(get_hub)):
    realtime = {"sessions": len(hub.sessions), "rooms": len(hub.rooms)}
    if backend.mdb is None:
        return {"status": "degraded", "database": "memory", "realtime": realtime}
    try:
        await backend.mdb.command("ping")
        return {"status": "ok", "database": "mongo", "realtime": realtime}
    except PyMongoError as e:
        return {"status": "error", "database": "mongo", "detail": e.__class__.__name__, "realtime": realtime}
