from conftest import auth, item_payload


def _ids(body):
    return [l["id"] for l in body["listings"]]


def test_item_without_images_is_rejected(client):
    r = client.post("/listings", json=item_payload(images=[]), headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"] == {"code": "VALIDATION_ERROR", "message": "At least one image is required"}


def test_item_requires_condition(client):
    body = item_payload()
    body.pop("condition")
    r = client.post("/listings", json=body, headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"]["message"] == "Condition is required for items"


def test_service_drops_condition_and_needs_no_images(client):
    body = item_payload(category="service", subCategory="Tutoring", pricingType="hourly", images=[], title="Calc tutoring")
    r = client.post("/listings", json=body, headers=auth("seller1"))
    assert r.status_code == 201, r.text
    assert r.json()["condition"] is None


def test_create_sets_server_owned_fields(client):
    body = item_payload(approvalStatus="approved", sellerId="someone-else", views=99)
    r = client.post("/listings", json=body, headers=auth("seller1"))
    assert r.status_code == 201
    listing = r.json()
    assert listing["approvalStatus"] == "pending"
    assert listing["status"] == "active"
    assert listing["sellerId"] == "seller1"
    assert listing["sellerUniversity"] == "MIT"
    assert listing["views"] == 0


def test_tags_are_normalized(create_listing):
    listing = create_listing(tags=" math, ,calculus,math ,  ")
    assert listing["tags"] == ["math", "calculus"]


def test_image_uri_must_be_http(client):
    r = client.post("/listings", json=item_payload(images=["ftp://files.example.com/a.jpg"]), headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_invalid_locations_are_dropped_not_defaulted(create_listing):
    listing = create_listing(locations=[
        {"type": "Point", "coordinates": [200, 10]},
        {"type": "Point", "coordinates": ["abc", 10]},
        {"type": "Point", "coordinates": [-71.1, 42.37], "name": "Library"},
    ])
    assert len(listing["locations"]) == 1
    assert listing["locations"][0]["coordinates"] == [-71.1, 42.37]
    assert listing["locations"][0]["name"] == "Library"


def test_locations_errors(client):
    r = client.post("/listings", json=item_payload(locations=[]), headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

    r = client.post("/listings", json=item_payload(locations=[{"coordinates": [0, 95]}]), headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "GEO_FORMAT_ERROR"


def test_create_requires_authentication(client):
    r = client.post("/listings", json=item_payload())
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "UNAUTHENTICATED"


def test_public_query_only_returns_approved(client, create_listing, approve):
    pending = create_listing(title="Pending lamp")
    live = create_listing(title="Approved lamp")
    approve(live["id"])

    for params in ({}, {"approvalStatus": "pending"}, {"approvalStatus": "rejected"}, {"search": "lamp"}):
        for headers in ({}, auth("buyer1")):
            body = client.get("/listings", params=params, headers=headers).json()
            assert pending["id"] not in _ids(body)
            assert all(l["approvalStatus"] == "approved" for l in body["listings"])

    admin_view = client.get("/listings", params={"approvalStatus": "pending"}, headers=auth("admin1")).json()
    assert _ids(admin_view) == [pending["id"]]


def test_university_visibility(client, create_listing, approve):
    campus_only = create_listing(title="Dorm fridge", visibility="university")
    approve(campus_only["id"])

    assert campus_only["id"] in _ids(client.get("/listings", headers=auth("buyer1")).json())
    assert campus_only["id"] not in _ids(client.get("/listings", headers=auth("buyer2")).json())
    assert campus_only["id"] not in _ids(client.get("/listings").json())

    assert client.get(f"/listings/{campus_only['id']}", headers=auth("buyer1")).status_code == 200
    assert client.get(f"/listings/{campus_only['id']}", headers=auth("buyer2")).status_code == 404


def test_stats_reflect_active_filter(client, create_listing, approve):
    for title, sub, price in (("Calculus", "Textbooks", 40), ("Physics", "Textbooks", 60), ("Laptop", "Electronics", 500)):
        approve(create_listing(title=title, subCategory=sub, price=price)["id"])
    create_listing(title="Chemistry", subCategory="Textbooks", price=10)  # still pending

    body = client.get("/listings", params={"subCategory": "Textbooks"}, headers=auth("buyer1")).json()
    assert body["pagination"]["total"] == 2
    stats = body["stats"]
    assert stats["totalListings"] == 2
    assert stats["averagePrice"] == 50
    assert stats["minPrice"] == 40
    assert stats["maxPrice"] == 60
    assert stats["categories"] == ["item"]
    assert body["categoryBreakdown"] == [{"category": "item", "count": 2, "averagePrice": 50}]
    assert body["filters"]["subCategory"] == "Textbooks"


def test_empty_result_has_zero_stats(client):
    body = client.get("/listings", params={"search": "nothing-matches"}).json()
    assert body["listings"] == []
    assert body["stats"]["totalListings"] == 0
    assert body["pagination"]["pages"] == 0
    assert body["pagination"]["hasNext"] is False


def test_search_title_description_and_tags(client, create_listing, approve):
    a = create_listing(title="Graphing calculator", tags="ti-84", description="works fine")
    b = create_listing(title="Desk", tags="furniture, oak", description="Solid (oak) desk")
    for l in (a, b):
        approve(l["id"])

    assert _ids(client.get("/listings", params={"search": "CALCULATOR"}).json()) == [a["id"]]
    assert _ids(client.get("/listings", params={"search": "ti-84"}).json()) == [a["id"]]
    # regex metacharacters are matched literally
    assert _ids(client.get("/listings", params={"search": "(oak)"}).json()) == [b["id"]]
    assert _ids(client.get("/listings", params={"search": "furn"}).json()) == [b["id"]]


def test_price_range_sort_and_pagination(client, create_listing, approve):
    for price in (30, 10, 20, 50):
        approve(create_listing(title=f"Item {price}", price=price)["id"])

    body = client.get("/listings", params={"minPrice": 15, "sortBy": "price", "sortOrder": "asc", "limit": 2}).json()
    assert [l["price"] for l in body["listings"]] == [20, 30]
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2, "hasNext": True, "hasPrev": False}

    page2 = client.get("/listings", params={"minPrice": 15, "sortBy": "price", "sortOrder": "asc", "limit": 2, "page": 2}).json()
    assert [l["price"] for l in page2["listings"]] == [50]


def test_query_rejects_bad_limit(client):
    r = client.get("/listings", params={"limit": 500})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_get_pending_listing_is_hidden_from_others(client, create_listing):
    listing = create_listing()
    assert client.get(f"/listings/{listing['id']}", headers=auth("seller1")).status_code == 200
    assert client.get(f"/listings/{listing['id']}", headers=auth("admin1")).status_code == 200
    assert client.get(f"/listings/{listing['id']}", headers=auth("buyer1")).status_code == 404
    assert client.get(f"/listings/{listing['id']}").status_code == 404


def test_get_unknown_listing(client):
    r = client.get("/listings/000000000000000000000000", headers=auth("seller1"))
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "NOT_FOUND"


def test_non_owner_reads_count_views(client, create_listing, approve):
    listing = create_listing()
    approve(listing["id"])
    assert client.get(f"/listings/{listing['id']}", headers=auth("buyer1")).json()["views"] == 1
    assert client.get(f"/listings/{listing['id']}").json()["views"] == 2
    assert client.get(f"/listings/{listing['id']}", headers=auth("seller1")).json()["views"] == 2


def test_update_owned(client, create_listing):
    listing = create_listing()
    url = f"/listings/{listing['id']}"

    r = client.patch(url, json={"price": 35}, headers=auth("buyer1"))
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "FORBIDDEN"

    r = client.patch(url, json={"approvalStatus": "approved"}, headers=auth("seller1"))
    assert r.status_code == 400

    r = client.patch(url, json={}, headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"]["message"] == "No valid updates provided"

    r = client.patch(url, json={"images": []}, headers=auth("seller1"))
    assert r.status_code == 400
    assert r.json()["detail"]["message"] == "At least one image is required"

    r = client.patch(url, json={"price": 35, "status": "sold", "tags": "a,b"}, headers=auth("seller1"))
    assert r.status_code == 200, r.text
    updated = r.json()
    assert updated["price"] == 35
    assert updated["status"] == "sold"
    assert updated["tags"] == ["a", "b"]
    assert updated["approvalStatus"] == "pending"


def test_soft_delete_is_idempotent(client, create_listing):
    listing = create_listing()
    url = f"/listings/{listing['id']}"

    assert client.delete(url, headers=auth("buyer1")).status_code == 403
    for _ in range(2):
        r = client.delete(url, headers=auth("seller1"))
        assert r.status_code == 200
        assert r.json() == {"ok": True, "id": listing["id"], "status": "removed"}

    assert client.patch(url, json={"price": 1}, headers=auth("seller1")).status_code == 409
    mine = client.get("/listings/mine", headers=auth("seller1")).json()["items"]
    assert listing["id"] not in [l["id"] for l in mine]
    mine_all = client.get("/listings/mine", params={"includeRemoved": True}, headers=auth("seller1")).json()["items"]
    assert listing["id"] in [l["id"] for l in mine_all]


def test_my_listings_include_every_approval_state(client, create_listing, approve):
    a = create_listing(title="A")
    b = create_listing(title="B")
    approve(b["id"])
    create_listing(seller="buyer1", title="Not mine")
    mine = client.get("/listings/mine", headers=auth("seller1")).json()["items"]
    assert sorted(l["id"] for l in mine) == sorted([a["id"], b["id"]])


def test_suggest_price_without_advisor(client):
    r = client.post("/listings/suggest-price", json={"title": "Calculus"}, headers=auth("seller1"))
    assert r.status_code == 503
    assert r.json()["detail"]["code"] == "UPSTREAM_FAILURE"


def test_removed_listings_stay_hidden_from_public_queries(client, create_listing, approve):
    listing = create_listing()
    approve(listing["id"])
    client.delete(f"/listings/{listing['id']}", headers=auth("seller1"))

    for headers in ({}, auth("buyer1"), auth("seller1")):
        body = client.get("/listings", params={"status": "removed"}, headers=headers).json()
        assert listing["id"] not in _ids(body)

    admin_view = client.get("/listings", params={"status": "removed"}, headers=auth("admin1")).json()
    assert _ids(admin_view) == [listing["id"]]
