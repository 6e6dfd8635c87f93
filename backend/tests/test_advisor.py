import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from campusmarket.backend import memory_backend
from campusmarket.errors import UpstreamCollaboratorFailure
from campusmarket.main import create_app
from campusmarket.services.advisor import PriceAdvisor
from conftest import auth, item_payload, seed_users


def _advisor(handler):
    return PriceAdvisor("http://advisor.test/", transport=httpx.MockTransport(handler))


def test_suggest_price_parses_response():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"minPrice": "30", "maxPrice": 20, "category": "Textbooks"})

    out = asyncio.run(_advisor(handler).suggest_price("Calculus", condition="good"))
    assert out == {"minPrice": 20.0, "maxPrice": 30.0, "category": "Textbooks"}
    assert seen["url"] == "http://advisor.test/suggest-price"
    assert seen["body"]["product"] == "Calculus"


@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "boom"}),
    httpx.Response(200, json={"minPrice": "cheap"}),
    httpx.Response(200, json=[1, 2]),
    httpx.Response(200, content=b"<html>"),
])
def test_suggest_price_failures(response):
    with pytest.raises(UpstreamCollaboratorFailure):
        asyncio.run(_advisor(lambda request: response).suggest_price("Calculus"))


def test_suggest_price_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamCollaboratorFailure):
        asyncio.run(_advisor(handler).suggest_price("Calculus"))


def _client_with(advisor):
    backend = memory_backend(advisor=advisor, strict=False)
    seed_users(backend)
    return TestClient(create_app(backend))


def test_create_stores_suggestion_when_advisor_answers():
    advisor = _advisor(lambda request: httpx.Response(200, json={"minPrice": 25, "maxPrice": 45}))
    with _client_with(advisor) as client:
        r = client.post("/listings", json=item_payload(), headers=auth("seller1"))
        assert r.status_code == 201
        assert r.json()["priceSuggestion"] == {"minPrice": 25.0, "maxPrice": 45.0}

        r = client.post("/listings/suggest-price", json={"title": "Calculus"}, headers=auth("seller1"))
        assert r.status_code == 200
        assert r.json()["maxPrice"] == 45.0


def test_create_survives_advisor_outage():
    advisor = _advisor(lambda request: httpx.Response(503))
    with _client_with(advisor) as client:
        r = client.post("/listings", json=item_payload(), headers=auth("seller1"))
        assert r.status_code == 201
        assert "priceSuggestion" not in r.json()

        r = client.post("/listings/suggest-price", json={"title": "Calculus"}, headers=auth("seller1"))
        assert r.status_code == 503
        assert r.json()["detail"]["code"] == "UPSTREAM_FAILURE"
