"""Caller identity resolution and the role capability check.

Authentication itself belongs to the external identity provider: a bearer
token is either a provider-issued JWT (verified against its JWKS endpoint) or,
in dev mode, the identity id itself. Roles and universities are looked up in
the ``users`` collection; unknown identities are plain students.
"""
from dataclasses import dataclass
from typing import Any, Collection, Dict, Optional

import jwt
from fastapi import Header, Request
from jwt import PyJWKClient
from starlette.concurrency import run_in_threadpool

from .errors import Unauthenticated, Unauthorized
from .mongo import USERS

STUDENT = "student"
ADMIN = "admin"
SUPERADMIN = "superadmin"
ROLES = frozenset({STUDENT, ADMIN, SUPERADMIN})
ADMIN_ROLES = frozenset({ADMIN, SUPERADMIN})


@dataclass(frozen=True)
class Identity:
    identity_id: str
    role: str = STUDENT
    university: Optional[str] = None


def has_role(identity: Optional[Identity], roles: Collection[str]) -> bool:
    return identity is not None and identity.role in roles


def is_admin(identity: Optional[Identity]) -> bool:
    return has_role(identity, ADMIN_ROLES)


def require_role(identity: Optional[Identity], roles: Collection[str] = ADMIN_ROLES) -> Identity:
    """The one place that decides whether a caller holds one of `roles`."""
    if identity is None:
        raise Unauthenticated("Authentication required")
    if identity.role not in roles:
        raise Unauthorized("Admin access required")
    return identity


PUBLIC_PROFILE_FIELDS = ("firstName", "lastName", "university", "profilePicture")


def public_profile(user_id: str, doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """What other users may see of `user_id`: name, university and picture, never email."""
    doc = doc or {}
    out: Dict[str, Any] = {"userId": user_id}
    for k in PUBLIC_PROFILE_FIELDS:
        out[k] = doc.get(k)
    return out


def own_profile(user_id: str, doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = doc or {}
    out = public_profile(user_id, doc)
    out["email"] = doc.get("email")
    out["role"] = doc.get("role") if doc.get("role") in ROLES else STUDENT
    return out


class MemoryUserDirectory:
    def __init__(self) -> None:
        self._users: Dict[str, Dict[str, Any]] = {}

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        doc = self._users.get(user_id)
        return dict(doc) if doc else None

    async def upsert(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        doc = self._users.setdefault(user_id, {"userId": user_id, "role": STUDENT})
        doc.update(fields)
        return dict(doc)


class MongoUserDirectory:
    def __init__(self, mdb) -> None:
        self.coll = mdb[USERS]

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.coll.find_one({"userId": user_id}, {"_id": 0})

    async def upsert(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        update: Dict[str, Any] = {"$set": dict(fields, userId=user_id)}
        if "role" not in fields:
            update["$setOnInsert"] = {"role": STUDENT}
        await self.coll.update_one({"userId": user_id}, update, upsert=True)
        return await self.get(user_id) or {}


class IdentityResolver:
    def __init__(
        self,
        directory,
        jwks_url: Optional[str] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        dev: bool = False,
    ) -> None:
        self.directory = directory
        self.issuer = issuer
        self.audience = audience
        self.dev = dev
        self._jwks = PyJWKClient(jwks_url) if jwks_url else None

    def _decode(self, token: str) -> Dict[str, Any]:
        signing_key = self._jwks.get_signing_key_from_jwt(token).key
        options = {"require": ["exp", "iat", "sub"], "verify_aud": self.audience is not None}
        return jwt.decode(token, signing_key, algorithms=["RS256"], audience=self.audience, issuer=self.issuer, options=options)

    async def _identity_id(self, token: str) -> str:
        if self._jwks is not None:
            try:
                claims = await run_in_threadpool(self._decode, token)
            except jwt.PyJWTError as e:
                raise Unauthenticated(f"invalid token: {e}")
            return str(claims["sub"])
        if self.dev:
            return token
        raise Unauthenticated("identity provider not configured")

    async def resolve(self, token: Optional[str]) -> Identity:
        token = (token or "").strip()
        if not token:
            raise Unauthenticated("Authentication required")
        identity_id = await self._identity_id(token)
        user = await self.directory.get(identity_id) or {}
        role = user.get("role")
        if role not in ROLES:
            role = STUDENT
        return Identity(identity_id=identity_id, role=role, university=user.get("university") or None)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


async def get_identity(request: Request, authorization: Optional[str] = Header(default=None)) -> Identity:
    return await request.app.state.resolver.resolve(_bearer(authorization))


async def get_optional_identity(request: Request, authorization: Optional[str] = Header(default=None)) -> Optional[Identity]:
    token = _bearer(authorization)
    if token is None:
        return None
    return await request.app.state.resolver.resolve(token)
