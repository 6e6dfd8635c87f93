from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ..backend import Backend, get_backend
from ..errors import Forbidden, MarketplaceError, ValidationError, validate_model
from ..identity import Identity, get_identity
from ..realtime import RealtimeHub, Session, get_hub

router = APIRouter()
log = logging.getLogger("uvicorn.error")


class ConversationCreateRequest(BaseModel):
    sellerId: str = Field(..., description="userId of the listing owner")
    buyerId: Optional[str] = Field(default=None, description="defaults to the caller")
    listingId: Optional[str] = Field(default=None, description="listing this chat is about")


class SendMessageRequest(BaseModel):
    content: Optional[str] = None
    images: List[str] = []


def message_event(conversation_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "receive-message", "conversationId": conversation_id, "message": message}


def _own_session(hub: RealtimeHub, session_id: Optional[str], caller: Identity) -> Optional[str]:
    """The X-Session-Id header, if it names a live session of the caller; else None."""
    if not session_id:
        return None
    session = hub.sessions.get(session_id)
    if session is None or session.identity_id != caller.identity_id:
        return None
    return session_id


@router.post("/conversations")
async def find_or_create_conversation(
    payload: ConversationCreateRequest,
    response: Response,
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    buyer_id = payload.buyerId or caller.identity_id
    if caller.identity_id not in (buyer_id, payload.sellerId):
        raise Forbidden("You can only open conversations you take part in")
    if payload.listingId:
        # 404 for unknown listings instead of a dangling reference
        await backend.listings.get_by_id(payload.listingId)
    conv, created = await backend.conversations.find_or_create(buyer_id, payload.sellerId, payload.listingId)
    response.status_code = 201 if created else 200
    return conv


@router.get("/conversations")
async def list_conversations(caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    return {"items": await backend.conversations.list_for(caller.identity_id)}


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
):
    return await backend.conversations.list_messages(conversation_id, caller.identity_id, page, limit)


@router.post("/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    x_session_id: Optional[str] = Header(default=None),
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    message = await backend.conversations.append_message(conversation_id, caller.identity_id, payload.content, payload.images)
    hub.publish(
        conversation_id,
        message_event(conversation_id, message),
        origin_session_id=_own_session(hub, x_session_id, caller),
        sender_id=caller.identity_id,
    )
    return message


@router.patch("/{conversation_id}/messages/mark-read")
async def mark_read(
    conversation_id: str,
    caller: Identity = Depends(get_identity),
    backend: Backend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    updated = await backend.conversations.mark_read(conversation_id, caller.identity_id)
    if updated:
        hub.publish(
            conversation_id,
            {"type": "read", "conversationId": conversation_id, "readerId": caller.identity_id},
            sender_id=caller.identity_id,
        )
    return {"ok": True, "updated": updated}


@router.post("/{conversation_id}/rebuild-summary")
async def rebuild_summary(conversation_id: str, caller: Identity = Depends(get_identity), backend: Backend = Depends(get_backend)):
    await backend.conversations.get_for_participant(conversation_id, caller.identity_id)
    return await backend.conversations.rebuild_summary(conversation_id)


# --- WebSocket transport for the realtime hub ---
async def _pump(websocket: WebSocket, session: Session) -> None:
    while True:
        event = await session.outbox.get()
        if event is None:
            return
        await websocket.send_json(event)


async def _handle_event(data: Any, session: Session, backend: Backend, hub: RealtimeHub) -> None:
    if not isinstance(data, dict):
        raise ValidationError("events must be JSON objects")
    kind = data.get("type")
    conversation_id = str(data.get("conversationId") or "")
    if kind in ("join-conversation", "leave-conversation", "send-message", "typing") and not conversation_id:
        raise ValidationError("conversationId required")

    if kind == "join-conversation":
        await backend.conversations.get_for_participant(conversation_id, session.identity_id)
        hub.join(session.session_id, conversation_id)
        session.deliver({"type": "joined", "conversationId": conversation_id})
    elif kind == "leave-conversation":
        hub.leave(session.session_id, conversation_id)
        session.deliver({"type": "left", "conversationId": conversation_id})
    elif kind == "send-message":
        payload = validate_model(SendMessageRequest, {"content": data.get("content"), "images": data.get("images") or []})
        message = await backend.conversations.append_message(
            conversation_id, session.identity_id, payload.content, payload.images
        )
        hub.publish(conversation_id, message_event(conversation_id, message), origin_session_id=session.session_id)
        session.deliver({"type": "message-sent", "conversationId": conversation_id, "message": message})
    elif kind == "typing":
        if conversation_id not in session.rooms:
            raise Forbidden("join the conversation first")
        hub.publish(
            conversation_id,
            {"type": "typing", "conversationId": conversation_id, "userId": session.identity_id, "isTyping": bool(data.get("isTyping", True))},
            origin_session_id=session.session_id,
        )
    else:
        raise ValidationError(f"unknown event type: {kind}")


@router.websocket("/ws")
async def chat_ws(websocket: WebSocket):
    app = websocket.app
    try:
        identity = await app.state.resolver.resolve(websocket.query_params.get("token"))
    except MarketplaceError:
        # Closing before accept rejects the handshake
        await websocket.close(code=4401)
        return
    await websocket.accept()
    hub: RealtimeHub = app.state.hub
    backend: Backend = app.state.backend
    session = hub.register(Session(identity.identity_id))
    writer = asyncio.create_task(_pump(websocket, session))
    session.deliver({"type": "connected", "sessionId": session.session_id})
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                session.deliver({"type": "error", "code": "VALIDATION_ERROR", "message": "invalid JSON"})
                continue
            try:
                await _handle_event(data, session, backend, hub)
            except MarketplaceError as e:
                session.deliver({"type": "error", **e.to_detail()})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(session.session_id)
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)
