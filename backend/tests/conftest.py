import asyncio
import os

os.environ["MONGO_ENABLED"] = "false"
os.environ["DEV_MODE"] = "true"
os.environ.pop("AUTH_JWKS_URL", None)
os.environ.pop("PRICE_ADVISOR_URL", None)
os.environ.pop("MEDIA_ALLOWED_HOSTS", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from campusmarket.backend import memory_backend  # noqa: E402
from campusmarket.config import reset_settings  # noqa: E402
from campusmarket.main import create_app  # noqa: E402

USERS = {
    "seller1": {"role": "student", "university": "MIT"},
    "buyer1": {"role": "student", "university": "MIT"},
    "buyer2": {"role": "student", "university": "Harvard"},
    "admin1": {"role": "admin", "university": "MIT"},
    "root1": {"role": "superadmin"},
}


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {user_id}"}


def item_payload(**overrides) -> dict:
    body = {
        "title": "Calculus textbook",
        "description": "Stewart, 8th edition, a few highlights",
        "category": "item",
        "subCategory": "Textbooks",
        "price": 40,
        "pricingType": "fixed",
        "condition": "good",
        "images": ["https://cdn.example.com/img/calc.jpg"],
        "visibility": "all",
        "tags": "math, calculus",
        "locations": [{"type": "Point", "coordinates": [-71.0942, 42.3601], "name": "Main campus"}],
    }
    body.update(overrides)
    return body


def seed_users(backend) -> None:
    async def _seed():
        for uid, fields in USERS.items():
            await backend.users.upsert(uid, **fields)

    asyncio.run(_seed())


@pytest.fixture(autouse=True)
def _settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def backend():
    b = memory_backend(strict=False)
    seed_users(b)
    return b


@pytest.fixture
def client(backend):
    with TestClient(create_app(backend)) as c:
        yield c


@pytest.fixture
def create_listing(client):
    def _create(seller: str = "seller1", **overrides) -> dict:
        r = client.post("/listings", json=item_payload(**overrides), headers=auth(seller))
        assert r.status_code == 201, r.text
        return r.json()

    return _create


@pytest.fixture
def approve(client):
    def _approve(listing_id: str, admin: str = "admin1") -> dict:
        r = client.put("/admin/listings", json={"listingId": listing_id, "action": "approve"}, headers=auth(admin))
        assert r.status_code == 200, r.text
        return r.json()["listing"]

    return _approve
