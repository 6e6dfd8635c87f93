import logging

from fastapi import APIRouter, Body, Depends

from ..backend import Backend, get_backend
from ..errors import NotFound, validate_model
from ..identity import Identity, get_identity, own_profile, public_profile
from ..schemas.users import UserProfileSync

router = APIRouter()
log = logging.getLogger("uvicorn.error")


@router.post("/sync")
async def sync_profile(
    payload: dict = Body(...),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    profile = validate_model(UserProfileSync, payload)
    doc = await backend.users.upsert(caller.identity_id, **profile.model_dump(exclude_unset=True))
    log.info("Profile synced for %s", caller.identity_id)
    return own_profile(caller.identity_id, doc)


@router.get("/me")
async def my_profile(caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    return own_profile(caller.identity_id, await backend.users.get(caller.identity_id))


@router.get("/{user_id}")
async def get_user(user_id: str, caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    doc = await backend.users.get(user_id)
    if doc is None:
        raise NotFound("User not found")
    return public_profile(user_id, doc)
