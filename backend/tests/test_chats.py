import asyncio

import pytest
from pymongo.errors import PyMongoError

from campusmarket.documents import utcnow
from campusmarket.errors import ValidationError
from campusmarket.services.conversations import (
    ConversationStore,
    MemoryConversationRepository,
    page_window,
    participants_key,
)
from conftest import auth


@pytest.fixture
def listing(create_listing, approve):
    l = create_listing()
    approve(l["id"])
    return l


@pytest.fixture
def conversation(client, listing):
    r = client.post("/chats/conversations", json={"sellerId": "seller1", "listingId": listing["id"]}, headers=auth("buyer1"))
    assert r.status_code == 201, r.text
    return r.json()


def _send(client, conversation_id, user, content=None, images=None, session_id=None):
    headers = auth(user)
    if session_id:
        headers["X-Session-Id"] = session_id
    body = {"content": content}
    if images is not None:
        body["images"] = images
    return client.post(f"/chats/{conversation_id}/messages", json=body, headers=headers)


def test_find_or_create_is_order_independent(client, listing, conversation):
    again = client.post("/chats/conversations", json={"sellerId": "seller1", "listingId": listing["id"]}, headers=auth("buyer1"))
    assert again.status_code == 200
    assert again.json()["id"] == conversation["id"]

    from_seller = client.post(
        "/chats/conversations",
        json={"sellerId": "seller1", "buyerId": "buyer1", "listingId": listing["id"]},
        headers=auth("seller1"),
    )
    assert from_seller.json()["id"] == conversation["id"]
    assert conversation["participants"] == ["buyer1", "seller1"]
    assert conversation["lastMessage"] == ""


def test_conversations_are_scoped_per_listing(client, create_listing, conversation):
    other = create_listing(title="Another book")
    r = client.post("/chats/conversations", json={"sellerId": "seller1", "listingId": other["id"]}, headers=auth("buyer1"))
    assert r.status_code == 201
    assert r.json()["id"] != conversation["id"]


def test_find_or_create_rejects_bad_requests(client, listing):
    r = client.post("/chats/conversations", json={"sellerId": "seller1"}, headers=auth("seller1"))
    assert r.status_code == 400

    r = client.post(
        "/chats/conversations",
        json={"sellerId": "seller1", "buyerId": "buyer2", "listingId": listing["id"]},
        headers=auth("buyer1"),
    )
    assert r.status_code == 403

    r = client.post("/chats/conversations", json={"sellerId": "seller1", "listingId": "000000000000000000000000"}, headers=auth("buyer1"))
    assert r.status_code == 404


def test_concurrent_find_or_create_yields_one_conversation():
    store = ConversationStore(MemoryConversationRepository())

    async def scenario():
        calls = []
        for i in range(10):
            if i % 2:
                calls.append(store.find_or_create("buyer1", "seller1", "L1"))
            else:
                calls.append(store.find_or_create("seller1", "buyer1", "L1"))
        return await asyncio.gather(*calls)

    results = asyncio.run(scenario())
    assert len({conv["id"] for conv, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1
    assert len(store.repo._convs) == 1


def test_send_message_updates_summary(client, conversation):
    r = _send(client, conversation["id"], "buyer1", "Is this available?")
    assert r.status_code == 201
    message = r.json()
    assert message["content"] == "Is this available?"
    assert message["senderId"] == "buyer1"
    assert message["read"] is False

    convs = client.get("/chats/conversations", headers=auth("seller1")).json()["items"]
    assert convs[0]["id"] == conversation["id"]
    assert convs[0]["lastMessage"] == "Is this available?"
    assert convs[0]["unreadCount"] == 1


def test_image_only_message_summary(client, conversation):
    r = _send(client, conversation["id"], "seller1", images=["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"])
    assert r.status_code == 201
    convs = client.get("/chats/conversations", headers=auth("buyer1")).json()["items"]
    assert convs[0]["lastMessage"] == "📷 2 image(s)"


def test_empty_message_is_rejected_and_not_stored(client, conversation):
    for content in (None, "", "   "):
        r = _send(client, conversation["id"], "buyer1", content, images=[])
        assert r.status_code == 400
        assert r.json()["detail"]["message"] == "Message must have either content or images"
    page = client.get(f"/chats/{conversation['id']}/messages", headers=auth("buyer1")).json()
    assert page["items"] == []
    assert page["pagination"]["total"] == 0


def test_only_participants_can_read_or_write(client, conversation):
    assert _send(client, conversation["id"], "buyer2", "hi").status_code == 403
    assert client.get(f"/chats/{conversation['id']}/messages", headers=auth("buyer2")).status_code == 403
    assert client.patch(f"/chats/{conversation['id']}/messages/mark-read", headers=auth("buyer2")).status_code == 403
    assert _send(client, "000000000000000000000000", "buyer1", "hi").status_code == 404


def test_messages_are_chronological_across_pages(client, conversation):
    sent = []
    for i in range(5):
        user = "buyer1" if i % 2 == 0 else "seller1"
        sent.append(_send(client, conversation["id"], user, f"message {i}").json()["id"])

    seen = []
    for page in (1, 2, 3):
        body = client.get(f"/chats/{conversation['id']}/messages", params={"page": page, "limit": 2}, headers=auth("buyer1")).json()
        seen.extend(m["id"] for m in body["items"])
        assert body["pagination"]["pages"] == 3
    assert seen == sent

    past_end = client.get(f"/chats/{conversation['id']}/messages", params={"page": 4, "limit": 2}, headers=auth("buyer1")).json()
    assert past_end["items"] == []
    assert past_end["pagination"]["hasNext"] is False


def test_mark_read_is_idempotent(client, conversation):
    _send(client, conversation["id"], "buyer1", "one")
    _send(client, conversation["id"], "buyer1", "two")
    _send(client, conversation["id"], "seller1", "three")

    url = f"/chats/{conversation['id']}/messages/mark-read"
    assert client.patch(url, headers=auth("seller1")).json() == {"ok": True, "updated": 2}
    assert client.patch(url, headers=auth("seller1")).json() == {"ok": True, "updated": 0}

    items = client.get(f"/chats/{conversation['id']}/messages", headers=auth("seller1")).json()["items"]
    assert [m["read"] for m in items] == [True, True, False]

    assert client.patch(url, headers=auth("buyer1")).json()["updated"] == 1
    assert client.get("/chats/conversations", headers=auth("buyer1")).json()["items"][0]["unreadCount"] == 0


class BrokenSummaryRepository(MemoryConversationRepository):
    async def update_summary(self, conversation_id, text, at):
        raise PyMongoError("write concern timeout")


def test_summary_failure_does_not_lose_the_message():
    store = ConversationStore(BrokenSummaryRepository())

    async def scenario():
        conv, _ = await store.find_or_create("buyer1", "seller1", "L1")
        message = await store.append_message(conv["id"], "buyer1", "hello")
        page = await store.list_messages(conv["id"], "seller1")
        stored = await store.repo.get(conv["id"])
        return message, page, stored

    message, page, stored = asyncio.run(scenario())
    assert [m["id"] for m in page["items"]] == [message["id"]]
    assert stored["lastMessage"] == ""


def test_rebuild_summary_recomputes_from_messages():
    repo = MemoryConversationRepository()
    store = ConversationStore(repo)

    async def scenario():
        conv, _ = await store.find_or_create("buyer1", "seller1", None)
        await store.append_message(conv["id"], "buyer1", "first")
        await store.append_message(conv["id"], "seller1", None, ["https://cdn.example.com/x.jpg"])
        await repo.update_summary(conv["id"], "stale", utcnow())
        return await store.rebuild_summary(conv["id"])

    rebuilt = asyncio.run(scenario())
    assert rebuilt["lastMessage"] == "📷 1 image(s)"


def test_rebuild_summary_endpoint(client, conversation):
    _send(client, conversation["id"], "buyer1", "hello")
    r = client.post(f"/chats/{conversation['id']}/rebuild-summary", headers=auth("seller1"))
    assert r.status_code == 200
    assert r.json()["lastMessage"] == "hello"
    assert client.post(f"/chats/{conversation['id']}/rebuild-summary", headers=auth("buyer2")).status_code == 403


def test_store_rejects_self_conversation():
    store = ConversationStore(MemoryConversationRepository())
    with pytest.raises(ValidationError):
        asyncio.run(store.find_or_create("buyer1", "buyer1", "L1"))


def test_page_window():
    # 5 messages, newest-first skip/limit for each chronological page of 2
    assert page_window(1, 2, 5) == (3, 2)
    assert page_window(2, 2, 5) == (1, 2)
    assert page_window(3, 2, 5) == (0, 1)
    assert page_window(4, 2, 5) is None
    assert page_window(1, 50, 0) is None


def test_participants_key_is_order_independent():
    assert participants_key("a", "b") == participants_key("b", "a") == "a|b"


def test_store_rejects_non_text_content():
    store = ConversationStore(MemoryConversationRepository())

    async def scenario():
        conv, _ = await store.find_or_create("buyer1", "seller1", "L1")
        for content, images in ((123, None), ("hi", 5), (None, "https://cdn.example.com/a.jpg")):
            with pytest.raises(ValidationError):
                await store.append_message(conv["id"], "buyer1", content, images)
        return await store.list_messages(conv["id"], "buyer1")

    assert asyncio.run(scenario())["items"] == []
